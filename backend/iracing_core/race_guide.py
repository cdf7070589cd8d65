from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .errors import UpstreamError
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)

RACE_GUIDE_PATH = "/data/season/race_guide"
RESULTS_PATH = "/data/results/get"


def as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_timestamp(value: Any) -> Optional[dt.datetime]:
    """Parse an upstream ISO-8601 timestamp into an aware UTC datetime."""
    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


@dataclass(frozen=True)
class RawSession:
    """One race guide entry, as the upstream returned it."""

    series_id: Optional[int]
    start_time: dt.datetime
    session_id: Optional[int] = None
    subsession_id: Optional[int] = None
    season_id: Optional[int] = None
    track_id: Optional[int] = None
    track_name: Optional[str] = None
    end_time: Optional[dt.datetime] = None
    license_group: Optional[int] = None
    entry_count: int = 0
    race_lap_limit: Optional[int] = None
    race_time_limit: Optional[int] = None  # minutes
    car_class_id: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, row: Dict[str, Any]) -> Optional["RawSession"]:
        start_time = parse_timestamp(row.get("start_time"))
        if start_time is None:
            return None

        track = row.get("track") if isinstance(row.get("track"), dict) else {}
        track_name = str(track.get("track_name") or row.get("track_name") or "").strip() or None

        entry_count = as_int(row.get("entry_count"))
        if entry_count is None:
            entry_count = as_int(row.get("num_drivers")) or 0

        return cls(
            series_id=as_int(row.get("series_id")),
            start_time=start_time,
            session_id=as_int(row.get("session_id")),
            subsession_id=as_int(row.get("subsession_id")),
            season_id=as_int(row.get("season_id")),
            track_id=as_int(track.get("track_id", row.get("track_id"))),
            track_name=track_name,
            end_time=parse_timestamp(row.get("end_time")),
            license_group=as_int(row.get("license_group")),
            entry_count=entry_count,
            race_lap_limit=as_int(row.get("race_lap_limit")),
            race_time_limit=as_int(row.get("race_time_limit")),
            car_class_id=as_int(row.get("car_class_id", row.get("car_class"))),
            raw=row,
        )


@dataclass(frozen=True)
class SessionResult:
    customer_id: int
    display_name: str
    finish_position: Optional[int] = None
    car_name: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "display_name": self.display_name,
            "finish_position": self.finish_position,
            "car_name": self.car_name,
        }


def parse_sessions(rows: Iterable[Dict[str, Any]]) -> List[RawSession]:
    sessions: List[RawSession] = []
    skipped = 0
    for row in rows:
        session = RawSession.from_payload(row)
        if session is None:
            skipped += 1
            continue
        sessions.append(session)
    if skipped:
        logger.warning("Skipped %d race guide entries without a usable start_time", skipped)
    return sessions


class RaceGuideFetcher:
    def __init__(self, client: UpstreamClient) -> None:
        self.client = client

    async def fetch_schedule(self) -> List[RawSession]:
        """Fetch the live race guide. A body without a ``sessions`` list is fatal."""
        payload = await self.client.request("GET", RACE_GUIDE_PATH)
        sessions = payload.get("sessions") if isinstance(payload, dict) else None
        if not isinstance(sessions, list):
            raise UpstreamError("Invalid race guide response from iRacing API", body=payload)
        return parse_sessions(row for row in sessions if isinstance(row, dict))

    async def fetch_session_results(self, subsession_id: int) -> List[SessionResult]:
        """Racers of the race simsession of ``subsession_id``, in finishing order."""
        payload = await self.client.request("GET", RESULTS_PATH, params={"subsession_id": subsession_id})
        if not isinstance(payload, dict):
            raise UpstreamError("Invalid results response from iRacing API", body=payload)

        simsessions = [item for item in payload.get("session_results") or [] if isinstance(item, dict)]
        if not simsessions:
            return []
        race = next(
            (item for item in simsessions if str(item.get("simsession_type_name", "")).lower() == "race"),
            simsessions[-1],
        )

        results: List[SessionResult] = []
        for row in race.get("results") or []:
            if not isinstance(row, dict):
                continue
            customer_id = as_int(row.get("cust_id"))
            if customer_id is None:
                continue
            position = as_int(row.get("finish_position"))
            results.append(
                SessionResult(
                    customer_id=customer_id,
                    display_name=str(row.get("display_name") or "").strip(),
                    # upstream positions are zero-based
                    finish_position=position + 1 if position is not None else None,
                    car_name=str(row.get("car_name") or "").strip(),
                )
            )
        results.sort(key=lambda item: item.finish_position if item.finish_position is not None else 10_000)
        return results
