from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .catalog import CarEntry, SeriesEntry, TrackEntry
from .race_guide import RawSession, parse_timestamp

UNKNOWN_SERIES = "Unknown Series"
UNKNOWN_TRACK = "Unknown Track"
UNKNOWN_CAR_CLASS = "Unknown"

QUALIFYING_WINDOW = dt.timedelta(minutes=15)
PRACTICE_WINDOW = dt.timedelta(minutes=45)
MINUTES_PER_LAP = 2


class LifecycleState(str, enum.Enum):
    SCHEDULED = "Scheduled"
    PRACTICE = "Practice"
    QUALIFYING = "Qualifying"
    RACING = "Racing"


PUBLISHED_STATES = (LifecycleState.QUALIFYING, LifecycleState.PRACTICE)
_STATE_ORDER = {LifecycleState.QUALIFYING: 0, LifecycleState.PRACTICE: 1}


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def classify(start_time: dt.datetime, now: dt.datetime | None = None) -> LifecycleState:
    """Lifecycle state of a race from its time to start.

    Racing once started, Qualifying within 15 minutes of the start, Practice
    within 45 minutes, Scheduled before that.
    """
    if start_time.tzinfo is None:
        start_time = start_time.replace(tzinfo=dt.timezone.utc)
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=dt.timezone.utc)
    remaining = start_time - now
    if remaining <= dt.timedelta(0):
        return LifecycleState.RACING
    if remaining <= QUALIFYING_WINDOW:
        return LifecycleState.QUALIFYING
    if remaining <= PRACTICE_WINDOW:
        return LifecycleState.PRACTICE
    return LifecycleState.SCHEDULED


def visibility_window(now: dt.datetime | None = None) -> tuple[dt.datetime, dt.datetime]:
    """Start-time bounds (exclusive, inclusive) of the races currently published."""
    now = now or utc_now()
    return now, now + PRACTICE_WINDOW


def estimate_end_time(session: RawSession) -> dt.datetime:
    if session.end_time is not None:
        return session.end_time
    if session.race_lap_limit:
        return session.start_time + dt.timedelta(minutes=MINUTES_PER_LAP * session.race_lap_limit)
    if session.race_time_limit:
        return session.start_time + dt.timedelta(minutes=session.race_time_limit)
    return session.start_time


@dataclass
class NormalizedRace:
    title: str
    start_time: dt.datetime
    track_name: str
    lifecycle_state: LifecycleState
    license_level: int
    car_class: int
    car_class_name: str
    number_of_racers: int
    series_id: int
    available_cars: List[str] = field(default_factory=list)
    end_time: Optional[dt.datetime] = None
    category_id: int = 0
    session_id: Optional[int] = None
    subsession_id: Optional[int] = None

    @property
    def key(self) -> tuple[int, str]:
        return self.series_id, self.start_time.isoformat()

    def refresh_state(self, now: dt.datetime | None = None) -> "NormalizedRace":
        self.lifecycle_state = classify(self.start_time, now)
        return self

    def as_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "track_name": self.track_name,
            "state": self.lifecycle_state.value,
            "license_level": self.license_level,
            "car_class": self.car_class,
            "car_class_name": self.car_class_name,
            "number_of_racers": self.number_of_racers,
            "series_id": self.series_id,
            "category_id": self.category_id,
            "available_cars": list(self.available_cars),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any], now: dt.datetime | None = None) -> "NormalizedRace":
        """Rebuild a race from a stored row; the lifecycle state is recomputed, never read."""
        start_time = parse_timestamp(row.get("start_time"))
        if start_time is None:
            raise ValueError(f"Stored race has no valid start_time: {row!r}")
        return cls(
            title=str(row.get("title") or UNKNOWN_SERIES),
            start_time=start_time,
            end_time=parse_timestamp(row.get("end_time")),
            track_name=str(row.get("track_name") or UNKNOWN_TRACK),
            lifecycle_state=classify(start_time, now),
            license_level=int(row.get("license_level") or 1),
            car_class=int(row.get("car_class") or 0),
            car_class_name=str(row.get("car_class_name") or UNKNOWN_CAR_CLASS),
            number_of_racers=int(row.get("number_of_racers") or 0),
            series_id=int(row.get("series_id") or 0),
            category_id=int(row.get("category_id") or 0),
            available_cars=[str(name) for name in row.get("available_cars") or []],
        )


def sort_key(race: NormalizedRace) -> tuple:
    return race.start_time, _STATE_ORDER.get(race.lifecycle_state, 2), race.series_id


class RaceNormalizer:
    """Joins the race guide with the reference catalogs and picks the published races."""

    def __init__(
        self,
        series: Iterable[SeriesEntry] = (),
        tracks: Iterable[TrackEntry] = (),
        cars: Iterable[CarEntry] = (),
    ) -> None:
        self.series_by_id: Dict[int, SeriesEntry] = {entry.series_id: entry for entry in series}
        self.tracks_by_id: Dict[int, TrackEntry] = {entry.track_id: entry for entry in tracks}
        self.cars_by_class: Dict[int, List[CarEntry]] = {}
        for car in cars:
            self.cars_by_class.setdefault(car.car_class_id, []).append(car)

    def track_name(self, session: RawSession) -> str:
        if session.track_id is not None:
            entry = self.tracks_by_id.get(session.track_id)
            if entry is not None:
                return entry.track_name
        return session.track_name or UNKNOWN_TRACK

    def available_cars(self, car_class_ids: Sequence[int]) -> List[str]:
        names: List[str] = []
        seen: set[str] = set()
        for class_id in car_class_ids:
            for car in self.cars_by_class.get(class_id, []):
                if car.car_name in seen:
                    continue
                seen.add(car.car_name)
                names.append(car.car_name)
        return names

    def car_class_name(self, car_class_ids: Sequence[int]) -> str:
        for class_id in car_class_ids:
            cars = self.cars_by_class.get(class_id)
            if cars:
                return cars[0].car_class_name or cars[0].car_name
        return UNKNOWN_CAR_CLASS

    def join_one(self, session: RawSession, now: dt.datetime | None = None) -> NormalizedRace:
        series = self.series_by_id.get(session.series_id) if session.series_id is not None else None

        if series is not None:
            title = series.series_name
            category_id = series.category_id
            class_ids = list(series.car_class_ids)
        else:
            title = UNKNOWN_SERIES
            category_id = 0
            class_ids = []

        if class_ids:
            car_class = class_ids[0]
        else:
            car_class = session.car_class_id or 0

        if session.license_group is not None:
            license_level = session.license_group
        elif series is not None and series.allowed_licenses:
            license_level = min(series.allowed_licenses)
        else:
            license_level = 1

        return NormalizedRace(
            title=title,
            start_time=session.start_time,
            end_time=estimate_end_time(session),
            track_name=self.track_name(session),
            lifecycle_state=classify(session.start_time, now),
            license_level=license_level,
            car_class=car_class,
            car_class_name=self.car_class_name(class_ids) if series is not None else UNKNOWN_CAR_CLASS,
            number_of_racers=session.entry_count,
            series_id=session.series_id or 0,
            category_id=category_id,
            available_cars=self.available_cars(class_ids),
            session_id=session.session_id,
            subsession_id=session.subsession_id,
        )

    def join(self, sessions: Iterable[RawSession], now: dt.datetime | None = None) -> List[NormalizedRace]:
        now = now or utc_now()
        return [self.join_one(session, now) for session in sessions]

    def normalize(self, sessions: Iterable[RawSession], now: dt.datetime | None = None) -> List[NormalizedRace]:
        """Joined races currently in Qualifying or Practice, soonest first."""
        published = [race for race in self.join(sessions, now) if race.lifecycle_state in PUBLISHED_STATES]
        published.sort(key=sort_key)
        return published
