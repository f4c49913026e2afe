from __future__ import annotations

from dataclasses import replace
from functools import lru_cache
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Path, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger

from . import schemas
from .core.config import settings
from .db import init_db
from .errors import DataUnavailableError, GroupNotFoundError
from .services.cache import CachedResult
from .services.views import CachedViews, ViewParams, build_cached_views, default_anchor

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"

app = FastAPI(title="TradeLedger API", version="0.1.0", debug=settings.debug)


@lru_cache
def get_views() -> CachedViews:
    return build_cached_views(settings)


@app.on_event("startup")
def on_startup() -> None:
    """Validate configuration and initialize the database when the API boots."""

    settings.validate_runtime()
    init_db()
    if settings.cache_worker_enabled:
        from pipelines.cache_warmup import start_background_warmup

        app.state.cache_warmup = start_background_warmup(get_views(), settings)


@app.on_event("shutdown")
def on_shutdown() -> None:
    warmup = getattr(app.state, "cache_warmup", None)
    if warmup is not None:
        warmup.stop()
    if get_views.cache_info().currsize:
        get_views().cache.shutdown(wait=False)


@app.exception_handler(DataUnavailableError)
def _data_unavailable(request: Request, exc: DataUnavailableError) -> JSONResponse:
    if isinstance(exc.cause, GroupNotFoundError):
        return JSONResponse(status_code=404, content={"ok": False, "error": str(exc.cause)})
    logger.warning("Serving 503 for {}: {}", request.url.path, exc)
    return JSONResponse(status_code=503, content={"ok": False, "error": str(exc)})


@app.exception_handler(GroupNotFoundError)
def _group_not_found(request: Request, exc: GroupNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"ok": False, "error": str(exc)})


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


def _parse_leagues(raw: str | None) -> tuple[str, ...]:
    if not raw or raw.strip().upper() == "ALL":
        return tuple(settings.default_leagues)
    leagues = tuple(sorted({part.strip().upper() for part in raw.split(",") if part.strip()}))
    return leagues or tuple(settings.default_leagues)


def _view_params(
    *,
    range: Annotated[
        str,
        Query(description="Time range (ALL|D30|D90)", pattern="^(ALL|D30|D90|all|d30|d90)$"),
    ] = "ALL",
    anchor: Annotated[
        int | None,
        Query(description="Window end (epoch seconds); defaults to the current UTC hour", ge=0),
    ] = None,
    leagues: Annotated[
        str | None,
        Query(description="Comma-separated leagues, or ALL"),
    ] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int | None, Query(ge=1, alias="pageSize")] = None,
) -> ViewParams:
    """Normalize shared window and paging query parameters."""

    range_name = range.upper()
    if anchor is None and range_name != "ALL":
        anchor = default_anchor()
    return ViewParams(
        leagues=_parse_leagues(leagues),
        range=range_name,
        anchor=anchor,
        page=page,
        page_size=settings.clamp_page_size(page_size),
    )


def _respond(result: CachedResult) -> dict[str, Any]:
    return {"ok": True, **result.payload.to_dict(), "cache": result.meta.to_dict()}


@app.get("/cache/leaderboard", response_model=schemas.LeaderboardResponse, tags=["leaderboard"])
def leaderboard(
    params: ViewParams = Depends(_view_params),
    views: CachedViews = Depends(get_views),
):
    """Subjects ranked by ROI within the requested window."""

    return _respond(views.fetch("leaderboard", params))


@app.get("/cache/groups", response_model=schemas.GroupLeaderboardResponse, tags=["groups"])
def groups_leaderboard(
    params: ViewParams = Depends(_view_params),
    views: CachedViews = Depends(get_views),
):
    """Groups ranked by the combined ROI of their members' attributed activity."""

    return _respond(views.fetch("group_leaderboard", params))


@app.get(
    "/cache/groups/{slug}/members",
    response_model=schemas.GroupMembersResponse,
    tags=["groups"],
)
def group_members(
    slug: Annotated[str, Path(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")],
    params: ViewParams = Depends(_view_params),
    views: CachedViews = Depends(get_views),
):
    """Members of one group with metrics restricted to their membership intervals."""

    return _respond(views.fetch("group_members", replace(params, group=slug.lower())))


@app.get(
    "/cache/user/{address}/trades",
    response_model=schemas.UserTradesResponse,
    tags=["users"],
)
def user_trades(
    address: Annotated[str, Path(pattern=ADDRESS_PATTERN)],
    params: ViewParams = Depends(_view_params),
    views: CachedViews = Depends(get_views),
):
    """A subject's latest activity, windowed by event time."""

    return _respond(views.fetch("user_trades", replace(params, subject=address.lower())))


@app.get(
    "/cache/user/{address}/portfolio",
    response_model=schemas.PortfolioResponse,
    tags=["users"],
)
def user_portfolio(
    address: Annotated[str, Path(pattern=ADDRESS_PATTERN)],
    params: ViewParams = Depends(_view_params),
    views: CachedViews = Depends(get_views),
):
    """Open positions, realized results and per-position history for one subject."""

    return _respond(views.fetch("portfolio", replace(params, subject=address.lower())))
