from __future__ import annotations

import datetime as dt
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from .config import Settings
from .errors import PersistenceError
from .race import NormalizedRace, visibility_window
from .race_guide import parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

RACE_COLUMNS = (
    "series_id",
    "start_time",
    "end_time",
    "title",
    "track_name",
    "license_level",
    "car_class",
    "car_class_name",
    "number_of_racers",
    "category_id",
)
RACE_CONFLICT_TARGET = "series_id,start_time"
CAR_CONFLICT_TARGET = "series_id,start_time,car_name"


def clamp_page(page: Any, page_size: Any) -> Tuple[int, int]:
    try:
        page_value = int(page)
    except (TypeError, ValueError):
        page_value = 1
    try:
        size_value = int(page_size)
    except (TypeError, ValueError):
        size_value = DEFAULT_PAGE_SIZE
    return max(1, page_value), min(max(1, size_value), MAX_PAGE_SIZE)


def _iso(value: dt.datetime) -> str:
    return value.astimezone(dt.timezone.utc).isoformat()


class DataStore:
    """Reconciles normalized races into Supabase and serves paginated reads.

    Races are keyed by their natural key ``(series_id, start_time)``; the cars
    available in a race live in a child table keyed by
    ``(series_id, start_time, car_name)``. Without Supabase configuration the
    same semantics run against a local JSON file.
    """

    def __init__(self, settings: Settings | None = None, data_dir: Path | None = None) -> None:
        self.settings = settings or Settings()
        self.data_dir = Path(data_dir or self.settings.data_dir)

        self.supabase_url = self.settings.supabase_url
        self.supabase_key = self.settings.supabase_key
        self.supabase_schema = self.settings.supabase_schema
        self.supabase_races_table = self.settings.races_table
        self.supabase_race_cars_table = self.settings.race_cars_table
        self.local_races_path = self.data_dir / "official_races_local.json"
        # Guards every read-modify-write of the local JSON file.
        self._local_lock = threading.Lock()

    @property
    def remote(self) -> bool:
        return bool(self.supabase_url and self.supabase_key and self.supabase_races_table)

    # ------------------------------------------------------------------
    # Writes

    def upsert(self, races: Iterable[NormalizedRace]) -> Dict[str, Any]:
        """Upsert races and their car rows. Failures are reported per race, not raised."""
        summary: Dict[str, Any] = {"upserted": 0, "failed": 0, "errors": []}
        races = self._with_natural_key(list(races), summary)
        if not races:
            return summary

        if not self.remote:
            with self._local_lock:
                local = self._upsert_local(races)
            local["failed"] += summary["failed"]
            local["errors"] = summary["errors"] + local["errors"]
            return local

        with httpx.Client(timeout=10.0) as client:
            for race in races:
                label = f"{race.series_id}@{_iso(race.start_time)}"
                try:
                    self._upsert_race_remote(client, race)
                    self._upsert_race_cars_remote(client, race)
                except httpx.HTTPStatusError as exc:
                    detail = self._extract_supabase_detail(exc.response) or str(exc)
                    logger.warning("Supabase upsert failed for race %s: %s", label, detail)
                    summary["failed"] += 1
                    summary["errors"].append(f"{label}: {detail}")
                except httpx.HTTPError as exc:
                    logger.warning("Supabase upsert unavailable for race %s: %s", label, exc)
                    summary["failed"] += 1
                    summary["errors"].append(f"{label}: {exc}")
                else:
                    summary["upserted"] += 1

        logger.info("Upserted %d races to Supabase (%d failed)", summary["upserted"], summary["failed"])
        return summary

    # ------------------------------------------------------------------
    # Reads

    def page(
        self,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        ascending: bool = True,
        now: dt.datetime | None = None,
    ) -> Dict[str, Any]:
        """Return ``{"rows": [...], "total": n}`` for the races currently published.

        Only races starting within the next 45 minutes are matched; ``total``
        counts the whole match, independent of the page window.
        """
        page, page_size = clamp_page(page, page_size)
        lower, upper = visibility_window(now)

        if not self.remote:
            return self._page_local(page, page_size, ascending, lower, upper, now)

        direction = "asc" if ascending else "desc"
        endpoint = self._supabase_endpoint(self.supabase_races_table)
        headers = self._supabase_headers("count=exact", include_content_profile=False)
        select = ",".join(RACE_COLUMNS)
        if self.supabase_race_cars_table:
            select = f"{select},{self.supabase_race_cars_table}(car_name)"
        params: List[Tuple[str, str]] = [
            ("select", select),
            ("start_time", f"gt.{_iso(lower)}"),
            ("start_time", f"lte.{_iso(upper)}"),
            ("order", f"start_time.{direction},series_id.{direction}"),
            ("offset", str((page - 1) * page_size)),
            ("limit", str(page_size)),
        ]

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.get(endpoint, params=params, headers=headers)
                response.raise_for_status()
                rows = response.json()
        except httpx.HTTPError as exc:
            raise PersistenceError(f"Failed to fetch races from Supabase: {exc}") from exc

        if not isinstance(rows, list):
            raise PersistenceError("Unexpected payload from Supabase races endpoint")

        races = [self._race_from_remote_row(row, now) for row in rows if isinstance(row, dict)]
        total = self._total_from_content_range(response.headers.get("content-range"))
        if total is None:
            total = (page - 1) * page_size + len(races)
        return {"rows": races, "total": total}

    def count(self) -> int:
        """Total number of stored races, published or not."""
        if not self.remote:
            with self._local_lock:
                return len(self._load_local_races())

        endpoint = self._supabase_endpoint(self.supabase_races_table)
        headers = self._supabase_headers("count=exact", include_content_profile=False)
        params = {"select": "series_id", "limit": 1}
        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.get(endpoint, params=params, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PersistenceError(f"Failed to count races in Supabase: {exc}") from exc

        total = self._total_from_content_range(response.headers.get("content-range"))
        return total or 0

    # ------------------------------------------------------------------
    # Local backlog synchronisation

    def sync_local_backlog(self) -> Dict[str, Any]:
        """Push races stored in the local JSON file to Supabase."""
        if not self.remote:
            raise RuntimeError("Supabase configuration is required to sync local backlog")

        with self._local_lock:
            rows = self._load_local_races()
        result: Dict[str, Any] = {"synced": 0, "remaining": 0, "errors": []}
        if not rows:
            return result

        races: List[NormalizedRace] = []
        for row in rows:
            try:
                races.append(NormalizedRace.from_row(row))
            except (TypeError, ValueError) as exc:
                result["errors"].append(str(exc))

        summary = self.upsert(races)
        result["synced"] = summary["upserted"]
        result["errors"].extend(summary["errors"])
        result["remaining"] = len(rows) - result["synced"]

        if result["remaining"] == 0:
            with self._local_lock:
                self._remove_local_file(self.local_races_path)
        return result

    @staticmethod
    def _with_natural_key(races: List[NormalizedRace], summary: Dict[str, Any]) -> List[NormalizedRace]:
        """Drop races without a series id; they would all collide on `(0, start_time)`."""
        keyed: List[NormalizedRace] = []
        for race in races:
            if race.series_id:
                keyed.append(race)
                continue
            label = f"{race.title}@{_iso(race.start_time)}"
            logger.warning("Skipping race %s without a series_id", label)
            summary["failed"] += 1
            summary["errors"].append(f"{label}: missing series_id")
        return keyed

    # ---- internal Supabase helpers -------------------------------------------------

    def _supabase_endpoint(self, table: str) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1/{table}"

    def _supabase_headers(self, prefer: str | None = None, include_content_profile: bool = True) -> Dict[str, str]:
        headers = {
            "apikey": self.supabase_key,
            "Authorization": f"Bearer {self.supabase_key}",
            "Accept": "application/json",
        }
        if include_content_profile and self.supabase_schema and self.supabase_schema != "public":
            headers["Content-Profile"] = self.supabase_schema
        if self.supabase_schema and self.supabase_schema != "public":
            headers["Accept-Profile"] = self.supabase_schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    @staticmethod
    def _race_record(race: NormalizedRace) -> Dict[str, Any]:
        return {
            "series_id": race.series_id,
            "start_time": _iso(race.start_time),
            "end_time": _iso(race.end_time) if race.end_time else None,
            "title": race.title,
            "track_name": race.track_name,
            "license_level": race.license_level,
            "car_class": race.car_class,
            "car_class_name": race.car_class_name,
            "number_of_racers": race.number_of_racers,
            "category_id": race.category_id,
        }

    def _upsert_race_remote(self, client: httpx.Client, race: NormalizedRace) -> None:
        endpoint = self._supabase_endpoint(self.supabase_races_table)
        headers = self._supabase_headers("resolution=merge-duplicates,return=minimal")
        headers["Content-Type"] = "application/json"
        params = {"on_conflict": RACE_CONFLICT_TARGET}
        response = client.post(endpoint, params=params, json=[self._race_record(race)], headers=headers)
        response.raise_for_status()

    def _upsert_race_cars_remote(self, client: httpx.Client, race: NormalizedRace) -> None:
        if not (self.supabase_race_cars_table and race.available_cars):
            return
        endpoint = self._supabase_endpoint(self.supabase_race_cars_table)
        headers = self._supabase_headers("resolution=merge-duplicates,return=minimal")
        headers["Content-Type"] = "application/json"
        params = {"on_conflict": CAR_CONFLICT_TARGET}
        start_time = _iso(race.start_time)
        records = [
            {"series_id": race.series_id, "start_time": start_time, "car_name": name}
            for name in race.available_cars
        ]
        response = client.post(endpoint, params=params, json=records, headers=headers)
        response.raise_for_status()

    def _race_from_remote_row(self, row: Dict[str, Any], now: dt.datetime | None) -> NormalizedRace:
        children = row.get(self.supabase_race_cars_table) if self.supabase_race_cars_table else None
        cars: List[str] = []
        if isinstance(children, list):
            for child in children:
                name = child.get("car_name") if isinstance(child, dict) else None
                if isinstance(name, str) and name and name not in cars:
                    cars.append(name)
        record = dict(row)
        record["available_cars"] = cars
        try:
            return NormalizedRace.from_row(record, now)
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"Unreadable race row from Supabase: {exc}") from exc

    @staticmethod
    def _total_from_content_range(value: str | None) -> Optional[int]:
        # PostgREST answers "0-9/42", or "*/0" for an empty match.
        if not value or "/" not in value:
            return None
        total = value.rsplit("/", 1)[1].strip()
        if total == "*":
            return None
        try:
            return int(total)
        except ValueError:
            return None

    def _extract_supabase_detail(self, response: httpx.Response | None) -> str | None:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        if isinstance(payload, list) and payload:
            payload = payload[0]
        if isinstance(payload, dict):
            for key in ("message", "detail", "error", "hint", "code"):
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None

    # ---- local fallback ------------------------------------------------------------

    def _load_local_races(self) -> List[Dict[str, Any]]:
        data = self._read_json_file(self.local_races_path, [])
        if not isinstance(data, list):
            return []
        return [row for row in data if isinstance(row, dict)]

    @staticmethod
    def _local_key(row: Dict[str, Any]) -> Tuple[int, str] | None:
        start_time = parse_timestamp(row.get("start_time"))
        try:
            series_id = int(row.get("series_id"))
        except (TypeError, ValueError):
            return None
        if start_time is None:
            return None
        return series_id, _iso(start_time)

    def _upsert_local(self, races: List[NormalizedRace]) -> Dict[str, Any]:
        rows = self._load_local_races()
        index: Dict[Tuple[int, str], Dict[str, Any]] = {}
        for row in rows:
            key = self._local_key(row)
            if key is not None:
                index[key] = row

        for race in races:
            record = self._race_record(race)
            key = (race.series_id, record["start_time"])
            cars = list(index.get(key, {}).get("available_cars") or [])
            for name in race.available_cars:
                if name not in cars:
                    cars.append(name)
            record["available_cars"] = cars
            record["updated_at"] = self._utc_now_iso()
            index[key] = record

        ordered = sorted(index.values(), key=lambda row: (row["start_time"], row["series_id"]))
        self._write_json_file(self.local_races_path, ordered)
        return {"upserted": len(races), "failed": 0, "errors": []}

    def _page_local(
        self,
        page: int,
        page_size: int,
        ascending: bool,
        lower: dt.datetime,
        upper: dt.datetime,
        now: dt.datetime | None,
    ) -> Dict[str, Any]:
        matching: List[NormalizedRace] = []
        with self._local_lock:
            rows = self._load_local_races()
        for row in rows:
            try:
                race = NormalizedRace.from_row(row, now)
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable local race row: %s", exc)
                continue
            if lower < race.start_time <= upper:
                matching.append(race)

        matching.sort(key=lambda race: (race.start_time, race.series_id), reverse=not ascending)
        offset = (page - 1) * page_size
        return {"rows": matching[offset : offset + page_size], "total": len(matching)}

    def _read_json_file(self, path: Path, default: Any) -> Any:
        try:
            if not path.exists():
                return default
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Falling back to default for %s due to read error: %s", path, exc)
            return default

    def _write_json_file(self, path: Path, data: Any) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Readers only ever see the previous or the new file, never a partial one.
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(data, handle, indent=2, sort_keys=True)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise PersistenceError(f"Failed to write local data store {path}") from exc

    def _remove_local_file(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:  # pragma: no cover - unlikely but logged for diagnosis
            logger.warning("Failed to remove local data store %s: %s", path, exc)

    @staticmethod
    def _utc_now_iso() -> str:
        return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
