from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List

import httpx
import pytest

from iracing_core import DataStore, LifecycleState, NormalizedRace, PersistenceError
from iracing_core import store as store_module

from conftest import NOW


def _race(minutes: float, series_id: int, cars=("Porsche 963 GTP",)) -> NormalizedRace:
    return NormalizedRace(
        title="IMSA",
        start_time=NOW + dt.timedelta(minutes=minutes),
        track_name="Daytona",
        lifecycle_state=LifecycleState.QUALIFYING,
        license_level=4,
        car_class=4029,
        car_class_name="GTP",
        number_of_racers=30,
        series_id=series_id,
        available_cars=list(cars),
    )


class _RecordingClient:
    requests: List[Dict[str, Any]] = []
    fail_series: set = set()
    rows: List[Dict[str, Any]] = []
    content_range = "0-0/0"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        pass

    def __enter__(self) -> "_RecordingClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - nothing to clean
        return None

    def post(self, endpoint: str, params: Dict[str, Any], json: Any, headers: Dict[str, str]) -> httpx.Response:
        _RecordingClient.requests.append({"method": "POST", "endpoint": endpoint, "params": params, "json": json, "headers": headers})
        request = httpx.Request("POST", endpoint)
        if json and json[0].get("series_id") in _RecordingClient.fail_series:
            return httpx.Response(409, request=request, json={"message": "conflict on races"})
        return httpx.Response(201, request=request)

    def get(self, endpoint: str, params: Any, headers: Dict[str, str]) -> httpx.Response:
        _RecordingClient.requests.append({"method": "GET", "endpoint": endpoint, "params": params, "headers": headers})
        request = httpx.Request("GET", endpoint)
        return httpx.Response(
            200,
            request=request,
            json=_RecordingClient.rows,
            headers={"content-range": _RecordingClient.content_range},
        )


class _DummyHTTPX:
    Client = _RecordingClient
    HTTPError = httpx.HTTPError
    HTTPStatusError = httpx.HTTPStatusError


@pytest.fixture
def remote_store(monkeypatch: pytest.MonkeyPatch, tmp_path) -> DataStore:
    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "test-key")
    monkeypatch.setattr(store_module, "httpx", _DummyHTTPX)
    _RecordingClient.requests = []
    _RecordingClient.fail_series = set()
    _RecordingClient.rows = []
    _RecordingClient.content_range = "0-0/0"
    return DataStore(data_dir=tmp_path)


def test_upsert_targets_natural_key(remote_store: DataStore) -> None:
    summary = remote_store.upsert([_race(10, 101, cars=["Porsche 963 GTP", "BMW M Hybrid V8"])])

    assert summary == {"upserted": 1, "failed": 0, "errors": []}
    race_request, cars_request = _RecordingClient.requests
    assert race_request["endpoint"] == "https://example.supabase.co/rest/v1/official_races"
    assert race_request["params"] == {"on_conflict": "series_id,start_time"}
    assert race_request["headers"]["Prefer"] == "resolution=merge-duplicates,return=minimal"
    assert race_request["headers"]["Authorization"] == "Bearer test-key"
    assert race_request["json"][0]["start_time"] == (NOW + dt.timedelta(minutes=10)).isoformat()
    assert "state" not in race_request["json"][0]

    assert cars_request["endpoint"].endswith("/official_race_cars")
    assert cars_request["params"] == {"on_conflict": "series_id,start_time,car_name"}
    assert [row["car_name"] for row in cars_request["json"]] == ["Porsche 963 GTP", "BMW M Hybrid V8"]


def test_upsert_reports_failures_per_race(remote_store: DataStore) -> None:
    _RecordingClient.fail_series = {202}

    summary = remote_store.upsert([_race(10, 101), _race(20, 202), _race(30, 303)])

    assert summary["upserted"] == 2
    assert summary["failed"] == 1
    assert len(summary["errors"]) == 1
    assert summary["errors"][0].startswith("202@")
    assert "conflict on races" in summary["errors"][0]


def test_upsert_skips_car_rows_when_there_are_none(remote_store: DataStore) -> None:
    remote_store.upsert([_race(10, 101, cars=[])])

    assert len(_RecordingClient.requests) == 1


def test_page_reads_window_with_exact_count(remote_store: DataStore) -> None:
    _RecordingClient.rows = [
        {
            "series_id": 101,
            "start_time": (NOW + dt.timedelta(minutes=12)).isoformat(),
            "title": "IMSA",
            "track_name": "Daytona",
            "license_level": 4,
            "car_class": 4029,
            "car_class_name": "GTP",
            "number_of_racers": 30,
            "official_race_cars": [{"car_name": "Porsche 963 GTP"}, {"car_name": "Porsche 963 GTP"}],
        }
    ]
    _RecordingClient.content_range = "10-10/11"

    result = remote_store.page(2, 10, now=NOW)

    assert result["total"] == 11
    race = result["rows"][0]
    assert race.available_cars == ["Porsche 963 GTP"]
    assert race.lifecycle_state is LifecycleState.QUALIFYING

    request = _RecordingClient.requests[0]
    params = dict(request["params"])
    assert request["headers"]["Prefer"] == "count=exact"
    assert params["offset"] == "10"
    assert params["limit"] == "10"
    assert params["order"] == "start_time.asc,series_id.asc"
    assert "official_race_cars(car_name)" in params["select"]
    start_filters = [value for key, value in request["params"] if key == "start_time"]
    assert start_filters == [f"gt.{NOW.isoformat()}", f"lte.{(NOW + dt.timedelta(minutes=45)).isoformat()}"]


def test_page_failure_raises_persistence_error(remote_store: DataStore, monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_get(self, endpoint, params, headers):
        raise httpx.ConnectError("unreachable", request=httpx.Request("GET", endpoint))

    monkeypatch.setattr(_RecordingClient, "get", broken_get)

    with pytest.raises(PersistenceError):
        remote_store.page(now=NOW)


def test_count_uses_content_range(remote_store: DataStore) -> None:
    _RecordingClient.content_range = "0-0/57"

    assert remote_store.count() == 57
    assert _RecordingClient.requests[0]["params"]["limit"] == 1
