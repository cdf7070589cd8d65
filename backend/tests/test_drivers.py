from __future__ import annotations

import pytest

from iracing_core import DriverLookup, DriverRecord, UpstreamError
from iracing_core.drivers import pick_driver


def test_exact_match_wins_over_earlier_substring() -> None:
    drivers = [
        DriverRecord(display_name="John Smith Jr", customer_id=1),
        DriverRecord(display_name="John Smith", customer_id=2),
    ]

    assert pick_driver("john smith", drivers).customer_id == 2


def test_substring_match_when_no_exact_match() -> None:
    drivers = [DriverRecord(display_name="Max Example", customer_id=3), DriverRecord(display_name="Maxine", customer_id=4)]

    assert pick_driver("EXAMPLE", drivers).customer_id == 3
    assert pick_driver("nobody", drivers) is None
    assert pick_driver("  ", drivers) is None


@pytest.mark.asyncio
async def test_search_found(fake_upstream, upstream) -> None:
    fake_upstream.serve(
        "/data/lookup/drivers",
        [{"cust_id": 10, "display_name": "Lando Example II"}, {"cust_id": 11, "display_name": "Lando Example"}],
    )

    result = await DriverLookup(upstream).search("Lando Example")

    assert result == {"exists": True, "name": "Lando Example", "id": 11}
    params = fake_upstream.calls("/data/lookup/drivers")[0].url.params
    assert params["search_term"] == "Lando Example"
    assert params["lowerbound"] == "1"
    assert params["upperbound"] == "25"


@pytest.mark.asyncio
async def test_search_not_found(fake_upstream, upstream) -> None:
    fake_upstream.serve("/data/lookup/drivers", [])

    assert await DriverLookup(upstream).search("Ghost") == {"exists": False}


@pytest.mark.asyncio
async def test_search_upstream_failure_propagates(upstream) -> None:
    with pytest.raises(UpstreamError):
        await DriverLookup(upstream).search("Anyone")
