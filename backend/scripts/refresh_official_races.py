"""CLI helper that runs one authenticated fetch cycle and reconciles the results."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Dict, List

from iracing_core import (
    AuthManager,
    CatalogFetcher,
    DataStore,
    PersistenceError,
    RaceFeed,
    RaceGuideFetcher,
    Settings,
    UpstreamClient,
    UpstreamError,
)


def _format_races(races: List[Dict[str, object]]) -> str:
    lines = []
    for race in races:
        lines.append(
            f"  {race['start_time']}  {str(race['state']).ljust(10)} {race['title']} @ {race['track_name']}"
        )
    return "\n".join(lines) or "  (no races in the visibility window)"


async def refresh(page: int, limit: int) -> int:
    settings = Settings()
    upstream = UpstreamClient.from_settings(settings)
    try:
        auth = AuthManager.from_settings(upstream, settings)
        if not await auth.ensure_authenticated():
            print("ERROR: could not log in to iRacing", file=sys.stderr)
            return 1

        store = DataStore(settings)
        feed = RaceFeed(CatalogFetcher(upstream), RaceGuideFetcher(upstream), store)
        try:
            result = await feed.official_races(page=page, limit=limit)
        except (UpstreamError, PersistenceError) as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1
    finally:
        await upstream.aclose()

    target = "Supabase" if store.remote else str(store.local_races_path)
    print(f"Official races ({target}): {result['total']} published, page {result['page']}")
    print(_format_races(result["races"]))
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--page", type=int, default=1)
    parser.add_argument("--limit", type=int, default=10)
    args = parser.parse_args()

    logging.basicConfig(level=Settings().log_level.upper())
    return asyncio.run(refresh(args.page, args.limit))


if __name__ == "__main__":
    raise SystemExit(main())
