from __future__ import annotations

import asyncio
import datetime as dt
import json

import pytest

from iracing_core import DataStore, LifecycleState, NormalizedRace
from iracing_core.store import clamp_page

from conftest import NOW


def _race(minutes: float, series_id: int = 101, cars=("MX-5 Cup",), title: str = "Rookie Mazda") -> NormalizedRace:
    return NormalizedRace(
        title=title,
        start_time=NOW + dt.timedelta(minutes=minutes),
        track_name="Lime Rock Park",
        lifecycle_state=LifecycleState.PRACTICE,
        license_level=1,
        car_class=74,
        car_class_name="MX-5 Cup",
        number_of_racers=12,
        series_id=series_id,
        available_cars=list(cars),
    )


@pytest.mark.parametrize(
    "page, size, expected",
    [
        (1, 10, (1, 10)),
        (0, 10, (1, 10)),
        (-3, 0, (1, 1)),
        ("2", "5", (2, 5)),
        ("x", None, (1, 10)),
        (4, 1000, (4, 100)),
    ],
)
def test_clamp_page(page, size, expected) -> None:
    assert clamp_page(page, size) == expected


def test_upsert_is_idempotent(local_settings) -> None:
    store = DataStore(local_settings)

    store.upsert([_race(10), _race(30, series_id=202)])
    store.upsert([_race(10), _race(30, series_id=202)])

    rows = json.loads(store.local_races_path.read_text())
    assert len(rows) == 2
    assert store.count() == 2


def test_upsert_updates_fields_and_merges_cars(local_settings) -> None:
    store = DataStore(local_settings)

    store.upsert([_race(10, cars=["MX-5 Cup"])])
    store.upsert([_race(10, cars=["MX-5 Cup", "MX-5 Cup 2016"], title="Renamed")])

    result = store.page(now=NOW)
    assert result["total"] == 1
    race = result["rows"][0]
    assert race.title == "Renamed"
    assert race.available_cars == ["MX-5 Cup", "MX-5 Cup 2016"]


def test_page_filters_to_visible_window_and_recomputes_state(local_settings) -> None:
    store = DataStore(local_settings)
    store.upsert([_race(-5), _race(10), _race(30, series_id=202), _race(45, series_id=303), _race(60)])

    result = store.page(now=NOW)

    assert result["total"] == 3
    assert [race.series_id for race in result["rows"]] == [101, 202, 303]
    assert [race.lifecycle_state for race in result["rows"]] == [
        LifecycleState.QUALIFYING,
        LifecycleState.PRACTICE,
        LifecycleState.PRACTICE,
    ]


def test_pages_partition_the_match(local_settings) -> None:
    store = DataStore(local_settings)
    store.upsert([_race(5 + index, series_id=100 + index) for index in range(7)])

    pages = [store.page(page, 3, now=NOW) for page in (1, 2, 3, 4)]

    assert [len(result["rows"]) for result in pages] == [3, 3, 1, 0]
    assert {result["total"] for result in pages} == {7}
    seen = [race.series_id for result in pages for race in result["rows"]]
    assert seen == [100 + index for index in range(7)]


def test_descending_order(local_settings) -> None:
    store = DataStore(local_settings)
    store.upsert([_race(5, series_id=1), _race(20, series_id=2)])

    result = store.page(1, 10, ascending=False, now=NOW)

    assert [race.series_id for race in result["rows"]] == [2, 1]


def test_empty_store(local_settings) -> None:
    store = DataStore(local_settings)

    assert store.page(now=NOW) == {"rows": [], "total": 0}
    assert store.count() == 0
    assert store.upsert([]) == {"upserted": 0, "failed": 0, "errors": []}


def test_unreadable_rows_are_skipped(local_settings) -> None:
    store = DataStore(local_settings)
    store.upsert([_race(10)])
    rows = json.loads(store.local_races_path.read_text())
    rows.append({"series_id": 9, "start_time": "garbage"})
    store.local_races_path.write_text(json.dumps(rows))

    result = store.page(now=NOW)

    assert result["total"] == 1


@pytest.mark.asyncio
async def test_concurrent_upserts_keep_every_race(local_settings) -> None:
    store = DataStore(local_settings)
    store.upsert([_race(1 + index * 0.1, series_id=1000 + index) for index in range(300)])

    await asyncio.gather(
        *(asyncio.to_thread(store.upsert, [_race(5, series_id=2000 + index)]) for index in range(40))
    )

    rows = json.loads(store.local_races_path.read_text())
    assert len(rows) == 340
    assert store.count() == 340
    assert list(store.data_dir.glob(".*.tmp")) == []


def test_races_without_series_id_are_not_stored(local_settings) -> None:
    store = DataStore(local_settings)

    summary = store.upsert([_race(10, series_id=0, title="Unknown Series"), _race(10, series_id=0), _race(10)])

    assert summary["upserted"] == 1
    assert summary["failed"] == 2
    assert all("missing series_id" in error for error in summary["errors"])
    assert store.count() == 1
