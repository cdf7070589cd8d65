from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from .errors import UpstreamError
from .race_guide import RawSession, as_int, parse_sessions
from .upstream import UpstreamClient


@dataclass(frozen=True)
class SeriesEntry:
    series_id: int
    series_name: str
    category_id: int = 0
    car_class_ids: List[int] = field(default_factory=list)
    allowed_licenses: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class TrackEntry:
    track_id: int
    track_name: str


@dataclass(frozen=True)
class CarEntry:
    car_class_id: int
    car_name: str
    car_class_name: str = ""


@dataclass(frozen=True)
class DriverRecord:
    display_name: str
    customer_id: int

    def as_dict(self) -> Dict[str, Any]:
        return {"display_name": self.display_name, "customer_id": self.customer_id}


@dataclass(frozen=True)
class LeagueSeason:
    season_id: int
    season_name: str
    active: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {"season_id": self.season_id, "season_name": self.season_name, "active": self.active}


def _int_list(values: Any, key: str) -> List[int]:
    """Collect ints from a list of ints or a list of dicts carrying ``key``."""
    result: List[int] = []
    if not isinstance(values, list):
        return result
    for item in values:
        raw = item.get(key) if isinstance(item, dict) else item
        number = as_int(raw)
        if number is not None and number not in result:
            result.append(number)
    return result


def _rows(payload: Any, key: str | None, endpoint: str) -> List[Dict[str, Any]]:
    if key and isinstance(payload, dict):
        payload = payload.get(key)
    if not isinstance(payload, list):
        raise UpstreamError(f"Unexpected payload from {endpoint}: {type(payload).__name__}", body=payload)
    return [row for row in payload if isinstance(row, dict)]


def parse_series(rows: Iterable[Dict[str, Any]]) -> List[SeriesEntry]:
    entries: List[SeriesEntry] = []
    for row in rows:
        series_id = as_int(row.get("series_id"))
        if series_id is None:
            continue
        car_class_ids = _int_list(row.get("car_class_ids"), "car_class_id") or _int_list(
            row.get("car_classes"), "car_class_id"
        )
        entries.append(
            SeriesEntry(
                series_id=series_id,
                series_name=str(row.get("series_name") or "").strip() or "Unknown Series",
                category_id=as_int(row.get("category_id")) or 0,
                car_class_ids=car_class_ids,
                allowed_licenses=_int_list(row.get("allowed_licenses"), "license_group"),
            )
        )
    return entries


def parse_tracks(rows: Iterable[Dict[str, Any]]) -> List[TrackEntry]:
    entries: List[TrackEntry] = []
    for row in rows:
        track_id = as_int(row.get("track_id"))
        name = str(row.get("track_name") or "").strip()
        if track_id is None or not name:
            continue
        entries.append(TrackEntry(track_id=track_id, track_name=name))
    return entries


def parse_cars(rows: Iterable[Dict[str, Any]]) -> List[CarEntry]:
    """One ``CarEntry`` per (car class, car); cars listed in several classes appear once per class."""
    entries: List[CarEntry] = []
    for row in rows:
        name = str(row.get("car_name") or "").strip()
        if not name:
            continue
        class_name = str(row.get("car_class_name") or "").strip()
        class_ids = _int_list(row.get("car_class_ids"), "car_class_id")
        single = as_int(row.get("car_class_id"))
        if single is not None and single not in class_ids:
            class_ids.insert(0, single)
        for class_id in class_ids:
            entries.append(CarEntry(car_class_id=class_id, car_name=name, car_class_name=class_name))
    return entries


def parse_drivers(rows: Iterable[Dict[str, Any]]) -> List[DriverRecord]:
    drivers: List[DriverRecord] = []
    for row in rows:
        customer_id = as_int(row.get("cust_id"))
        name = str(row.get("display_name") or row.get("name") or "").strip()
        if customer_id is None or not name:
            continue
        drivers.append(DriverRecord(display_name=name, customer_id=customer_id))
    return drivers


class CatalogFetcher:
    """Reference catalogs used to enrich the race guide."""

    def __init__(self, client: UpstreamClient) -> None:
        self.client = client

    async def fetch_series(self) -> List[SeriesEntry]:
        payload = await self.client.request("GET", "/data/series/get")
        return parse_series(_rows(payload, None, "/data/series/get"))

    async def fetch_tracks(self) -> List[TrackEntry]:
        payload = await self.client.request("GET", "/data/track/get")
        return parse_tracks(_rows(payload, None, "/data/track/get"))

    async def fetch_cars(self) -> List[CarEntry]:
        payload = await self.client.request("GET", "/data/car/get")
        return parse_cars(_rows(payload, None, "/data/car/get"))

    async def fetch_league_roster(self, league_id: int) -> List[DriverRecord]:
        payload = await self.client.request("GET", "/data/league/roster", params={"league_id": league_id})
        return parse_drivers(_rows(payload, "roster", "/data/league/roster"))

    async def fetch_league_seasons(self, league_id: int, retired: bool = False) -> List[LeagueSeason]:
        params = {"league_id": league_id, "retired": "true" if retired else "false"}
        payload = await self.client.request("GET", "/data/league/seasons", params=params)
        seasons: List[LeagueSeason] = []
        for row in _rows(payload, "seasons", "/data/league/seasons"):
            season_id = as_int(row.get("season_id"))
            if season_id is None:
                continue
            seasons.append(
                LeagueSeason(
                    season_id=season_id,
                    season_name=str(row.get("season_name") or "").strip(),
                    active=bool(row.get("active")),
                )
            )
        return seasons

    async def fetch_league_season_sessions(self, league_id: int, season_id: int) -> List[RawSession]:
        params = {"league_id": league_id, "season_id": season_id}
        payload = await self.client.request("GET", "/data/league/season_sessions", params=params)
        return parse_sessions(_rows(payload, "sessions", "/data/league/season_sessions"))
