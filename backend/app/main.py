from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from iracing_core import (
    AuthError,
    AuthManager,
    CatalogFetcher,
    DataStore,
    DriverLookup,
    PersistenceError,
    RaceFeed,
    RaceGuideFetcher,
    Settings,
    UpstreamClient,
    UpstreamError,
)

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Everything a request needs, built once per process and shared by all routes."""

    settings: Settings
    upstream: UpstreamClient
    auth: AuthManager
    catalog: CatalogFetcher
    race_guide: RaceGuideFetcher
    drivers: DriverLookup
    store: DataStore
    feed: RaceFeed

    @classmethod
    def build(cls, settings: Settings | None = None, **upstream_kwargs: Any) -> "AppContext":
        settings = settings or Settings()
        upstream = UpstreamClient.from_settings(settings, **upstream_kwargs)
        catalog = CatalogFetcher(upstream)
        race_guide = RaceGuideFetcher(upstream)
        store = DataStore(settings)
        return cls(
            settings=settings,
            upstream=upstream,
            auth=AuthManager.from_settings(upstream, settings),
            catalog=catalog,
            race_guide=race_guide,
            drivers=DriverLookup(upstream),
            store=store,
            feed=RaceFeed(catalog, race_guide, store),
        )

    async def close(self) -> None:
        await self.auth.stop()
        await self.upstream.aclose()


class OfficialRaceModel(BaseModel):
    title: str
    start_time: str
    end_time: Optional[str] = None
    track_name: str
    state: str
    license_level: int
    car_class: int
    car_class_name: str
    number_of_racers: int
    series_id: int
    category_id: int = 0
    available_cars: List[str] = Field(default_factory=list)


class OfficialRaceListResponse(BaseModel):
    races: List[OfficialRaceModel]
    total: int
    page: int
    limit: int


class RaceCountResponse(BaseModel):
    total: int


class DriverSearchResponse(BaseModel):
    exists: bool
    name: Optional[str] = None
    id: Optional[int] = None
    message: Optional[str] = None


class DriverModel(BaseModel):
    display_name: str
    customer_id: int


class LeagueRosterResponse(BaseModel):
    drivers: List[DriverModel]


class LeagueSeasonModel(BaseModel):
    season_id: int
    season_name: str
    active: bool = False


class LeagueSeasonsResponse(BaseModel):
    seasons: List[LeagueSeasonModel]


class SessionResultModel(BaseModel):
    customer_id: int
    display_name: str
    finish_position: Optional[int] = None
    car_name: str = ""


class SessionResultsResponse(BaseModel):
    results: List[SessionResultModel]


def context(request: Request) -> AppContext:
    return request.app.state.context


async def require_session(ctx: AppContext = Depends(context)) -> AppContext:
    try:
        ctx.auth.require_session()
        if not await ctx.auth.verify():
            raise AuthError("iRacing session rejected by the API")
    except AuthError as exc:
        logger.warning("Rejecting request: %s", exc)
        raise HTTPException(status_code=401, detail="Authentication failed") from exc
    return ctx


def _bad_gateway(message: str, exc: Exception) -> HTTPException:
    logger.error("%s: %s", message, exc)
    if isinstance(exc, UpstreamError):
        internal = f"{type(exc).__name__}: upstream status {exc.status if exc.status is not None else 'n/a'}"
    else:
        internal = f"{type(exc).__name__}: {exc}"
    return HTTPException(status_code=502, detail={"error": message, "internal": internal})


def create_app(app_context: AppContext | None = None) -> FastAPI:
    settings = app_context.settings if app_context else Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(level=settings.log_level.upper())
        ctx = app_context or AppContext.build(settings)
        app.state.context = ctx
        try:
            if await ctx.auth.ensure_authenticated():
                logger.info("Successfully logged in to iRacing API")
            else:
                logger.error("Failed to log in to iRacing API")
        except Exception:
            logger.exception("Error during iRacing API login")
        ctx.auth.start()
        try:
            yield
        finally:
            await ctx.close()

    app = FastAPI(title="iRacing Official Races API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "OK"}

    @app.get("/api/official-races", response_model=OfficialRaceListResponse)
    async def official_races(
        page: int = Query(default=1),
        limit: int = Query(default=10),
        ctx: AppContext = Depends(require_session),
    ):
        try:
            result = await ctx.feed.official_races(page=page, limit=limit)
        except UpstreamError as exc:
            raise _bad_gateway("Failed to fetch official races", exc) from exc
        except PersistenceError as exc:
            raise _bad_gateway("Failed to load official races", exc) from exc
        return OfficialRaceListResponse(**result)

    @app.get("/api/official-races/count", response_model=RaceCountResponse)
    def official_races_count(ctx: AppContext = Depends(context)):
        try:
            total = ctx.store.count()
        except PersistenceError as exc:
            raise _bad_gateway("Failed to count official races", exc) from exc
        return RaceCountResponse(total=total)

    @app.get("/api/search-iracing-name", response_model=DriverSearchResponse, response_model_exclude_none=True)
    async def search_iracing_name(
        name: str = Query(default=""),
        ctx: AppContext = Depends(require_session),
    ):
        if not name.strip():
            raise HTTPException(status_code=400, detail="Name parameter is required")
        try:
            result: Dict[str, Any] = await ctx.drivers.search(name)
        except UpstreamError as exc:
            raise _bad_gateway("An error occurred while searching for the iRacing name", exc) from exc
        if not result.get("exists"):
            return DriverSearchResponse(exists=False, message=f"No iRacing driver found for '{name}'")
        return DriverSearchResponse(**result)

    @app.get("/api/leagues/{league_id}/roster", response_model=LeagueRosterResponse)
    async def league_roster(league_id: int, ctx: AppContext = Depends(require_session)):
        try:
            drivers = await ctx.catalog.fetch_league_roster(league_id)
        except UpstreamError as exc:
            raise _bad_gateway("Failed to fetch league roster", exc) from exc
        return LeagueRosterResponse(drivers=[DriverModel(**driver.as_dict()) for driver in drivers])

    @app.get("/api/leagues/{league_id}/seasons", response_model=LeagueSeasonsResponse)
    async def league_seasons(
        league_id: int,
        retired: bool = Query(default=False),
        ctx: AppContext = Depends(require_session),
    ):
        try:
            seasons = await ctx.catalog.fetch_league_seasons(league_id, retired=retired)
        except UpstreamError as exc:
            raise _bad_gateway("Failed to fetch league seasons", exc) from exc
        return LeagueSeasonsResponse(seasons=[LeagueSeasonModel(**season.as_dict()) for season in seasons])

    @app.get("/api/results/{subsession_id}", response_model=SessionResultsResponse)
    async def session_results(subsession_id: int, ctx: AppContext = Depends(require_session)):
        try:
            results = await ctx.race_guide.fetch_session_results(subsession_id)
        except UpstreamError as exc:
            raise _bad_gateway("Failed to fetch session results", exc) from exc
        return SessionResultsResponse(results=[SessionResultModel(**row.as_dict()) for row in results])

    return app


app = create_app()


def run() -> None:
    settings = Settings()
    uvicorn.run("app.main:app", host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
