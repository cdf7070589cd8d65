from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .catalog import DriverRecord, parse_drivers
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)

LOOKUP_PATH = "/data/lookup/drivers"


def pick_driver(name: str, drivers: List[DriverRecord]) -> Optional[DriverRecord]:
    """Exact case-insensitive match first, then the first case-insensitive substring match."""
    needle = name.strip().lower()
    if not needle:
        return None
    for driver in drivers:
        if driver.display_name.lower() == needle:
            return driver
    for driver in drivers:
        if needle in driver.display_name.lower():
            return driver
    return None


class DriverLookup:
    def __init__(self, client: UpstreamClient, lowerbound: int = 1, upperbound: int = 25) -> None:
        self.client = client
        self.lowerbound = lowerbound
        self.upperbound = upperbound

    async def search(self, display_name: str) -> Dict[str, Any]:
        """Look a display name up in the member directory.

        Returns ``{"exists": False}`` when nothing matches; upstream failures
        propagate as ``UpstreamError``.
        """
        params = {
            "search_term": display_name,
            "lowerbound": self.lowerbound,
            "upperbound": self.upperbound,
        }
        payload = await self.client.request("GET", LOOKUP_PATH, params=params)
        rows = payload if isinstance(payload, list) else []
        drivers = parse_drivers(row for row in rows if isinstance(row, dict))
        logger.debug("Driver lookup for %r returned %d candidates", display_name, len(drivers))

        match = pick_driver(display_name, drivers)
        if match is None:
            return {"exists": False}
        return {"exists": True, "name": match.display_name, "id": match.customer_id}
