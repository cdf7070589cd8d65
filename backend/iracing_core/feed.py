from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, Dict, List

from .catalog import CatalogFetcher
from .race import NormalizedRace, RaceNormalizer, utc_now
from .race_guide import RaceGuideFetcher
from .store import DataStore, clamp_page

logger = logging.getLogger(__name__)


class RaceFeed:
    """Fetch, normalize, reconcile and read back the official race list.

    Reads are always served from the store after reconciliation so the store
    stays the single source of truth for what API clients see.
    """

    def __init__(self, catalog: CatalogFetcher, race_guide: RaceGuideFetcher, store: DataStore) -> None:
        self.catalog = catalog
        self.race_guide = race_guide
        self.store = store

    async def refresh(self, now: dt.datetime | None = None) -> List[NormalizedRace]:
        """Fetch the race guide and catalogs concurrently and return the published races.

        A failed schedule fetch propagates; a failed catalog degrades to the
        "Unknown ..." fallbacks.
        """
        schedule, series, tracks, cars = await asyncio.gather(
            self.race_guide.fetch_schedule(),
            self.catalog.fetch_series(),
            self.catalog.fetch_tracks(),
            self.catalog.fetch_cars(),
            return_exceptions=True,
        )
        if isinstance(schedule, BaseException):
            raise schedule

        catalogs: Dict[str, Any] = {"series": series, "tracks": tracks, "cars": cars}
        for name, result in catalogs.items():
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Catalog %s unavailable, using fallbacks: %s", name, result)
                catalogs[name] = []

        normalizer = RaceNormalizer(catalogs["series"], catalogs["tracks"], catalogs["cars"])
        races = normalizer.normalize(schedule, now or utc_now())
        logger.info("Normalized %d published races from %d sessions", len(races), len(schedule))
        return races

    async def official_races(self, page: int = 1, limit: int = 10, now: dt.datetime | None = None) -> Dict[str, Any]:
        page, limit = clamp_page(page, limit)
        now = now or utc_now()

        races = await self.refresh(now)
        if races:
            summary = await asyncio.to_thread(self.store.upsert, races)
            if summary["errors"]:
                logger.error(
                    "Failed to reconcile %d of %d races: %s",
                    summary["failed"],
                    len(races),
                    "; ".join(summary["errors"]),
                )

        result = await asyncio.to_thread(self.store.page, page, limit, True, now)
        return {
            "races": [race.as_dict() for race in result["rows"]],
            "total": result["total"],
            "page": page,
            "limit": limit,
        }
