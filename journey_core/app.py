"""
FastAPI application for journey-core.

Lifespan manages the httpx client, the two TfL clients (interactive and
autofetch keys), the snapshot cache, the status and journey services.
Routes: /v1/status, /v1/status/refresh, /v1/stations/search, /v1/journeys,
/health.
Optional API key authentication on /v1/* endpoints.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Security
from fastapi.security import APIKeyHeader

from journey_core.config import AppConfig, load_config
from journey_core.dispatch import DispatchError, ResilientFetcher
from journey_core.journeys import JourneyPlanningError, JourneyService
from journey_core.models import (
    JourneyPlanResponse,
    JourneyRequest,
    SnapshotInfo,
    StationSearchResponse,
    StatusResponse,
)
from journey_core.rotation import RotationState
from journey_core.snapshots import SOURCE_CRON, InMemorySnapshotStore, StatusSnapshotCache
from journey_core.stations import search_stations
from journey_core.status import StatusService
from journey_core.tfl_client import TflClient

logger = logging.getLogger(__name__)

# Global references set during lifespan
_status_service: Optional[StatusService] = None
_snapshot_cache: Optional[StatusSnapshotCache] = None
_tfl_client: Optional[TflClient] = None
_journey_service: Optional[JourneyService] = None
_config: Optional[AppConfig] = None


def build_tfl_client(
    http_client: httpx.AsyncClient, config: AppConfig, keys: list[str]
) -> TflClient:
    """A TfL client with its own rotation state over `keys`."""
    fetcher = ResilientFetcher(
        http_client=http_client,
        rotation=RotationState(keys),
        base_url=config.tfl_base_url,
        timeout=config.request_timeout,
        default_cooldown=config.default_cooldown,
    )
    return TflClient(fetcher)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: load config, create HTTP client, TfL clients, snapshot cache."""
    global _status_service, _snapshot_cache, _tfl_client, _journey_service, _config

    # Configure logging
    log_level = os.environ.get("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    _config = load_config()
    logger.info(
        "Loaded config: %d TfL keys, %d autofetch keys, max_snapshot_age=%d",
        len(_config.credential_pool()),
        len(_config.autofetch_pool()),
        _config.max_snapshot_age,
    )

    async with httpx.AsyncClient() as http_client:
        _tfl_client = build_tfl_client(http_client, _config, _config.credential_pool())
        refresh_client = build_tfl_client(http_client, _config, _config.autofetch_pool())
        _snapshot_cache = StatusSnapshotCache(
            store=InMemorySnapshotStore(),
            client=_tfl_client,
            refresh_client=refresh_client,
            max_age=_config.max_snapshot_age,
            modes=_config.status_modes,
        )
        _status_service = StatusService(snapshots=_snapshot_cache, tfl_client=_tfl_client)
        _journey_service = JourneyService(tfl_client=_tfl_client)
        logger.info("Journey core ready")
        yield

    _status_service = None
    _snapshot_cache = None
    _tfl_client = None
    _journey_service = None
    _config = None


app = FastAPI(
    title="Journey Core API",
    version="1.0.0",
    description="""
Live London transport status and station search on top of the TfL unified API.

## Features

- **Snapshot-cached status**: line status served from a recent snapshot, refreshed on demand
- **Key failover**: rate-limited TfL keys are benched and the next key is tried
- **Query-aware**: lines matching a free-text query are listed first
- **Ranked search**: station search results ordered by name relevance
- **Journey planning**: TfL journeys with next departures at each boarding stop

## Authentication

Optional API key via `X-API-Key` header. The `/health` endpoint is always unauthenticated.
    """.strip(),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "status", "description": "Line status for London transport modes"},
        {"name": "stations", "description": "Station search"},
        {"name": "journeys", "description": "Journey planning"},
        {"name": "health", "description": "Service health check"},
    ],
    docs_url="/docs",
    redoc_url="/redoc",
)


# ---------------------------------------------------------------------------
# Authentication dependency
# ---------------------------------------------------------------------------

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(
    api_key: Optional[str] = Security(api_key_header),
) -> None:
    """Check API key if one is configured."""
    if _config is None or _config.api_key is None:
        return  # No auth configured
    if api_key != _config.api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def _split(value: Optional[str]) -> Optional[list[str]]:
    if not value:
        return None
    return [part for part in value.split(",") if part] or None


def _upstream_error(exc: DispatchError) -> HTTPException:
    status_code = 503 if exc.is_rate_limit else 502
    return HTTPException(status_code=status_code, detail=str(exc))


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get(
    "/health",
    tags=["health"],
    summary="Health check",
    response_description="Service is healthy",
)
async def health():
    """
    Health check endpoint for monitoring and Docker health checks.

    Always returns HTTP 200. No authentication required.
    """
    return {"status": "healthy"}


@app.get(
    "/v1/status",
    response_model=StatusResponse,
    dependencies=[Depends(verify_api_key)],
    tags=["status"],
    summary="Line status",
    response_description="Line statuses, per-mode summaries and upcoming arrivals",
)
async def get_status(
    mode: Optional[str] = Query(default=None, description="Comma-separated mode names"),
    lines: Optional[str] = Query(default=None, description="Comma-separated line ids or names"),
    q: Optional[str] = Query(default=None, description="Free-text query, e.g. 'victoria and central'"),
    limit: Optional[int] = Query(default=None, description="Page size (default 10, max 50)"),
    offset: Optional[int] = Query(default=None, description="Page offset"),
):
    """
    Return current line status, served from a snapshot no older than the
    configured maximum age when possible.

    Lines matching `q` are listed first and their ids are returned in
    `matched_line_ids`.
    """
    if _status_service is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    try:
        return await _status_service.get_status(
            modes=_split(mode), lines=_split(lines), query=q, limit=limit, offset=offset
        )
    except DispatchError as exc:
        logger.error("Status request failed: %s", exc)
        raise _upstream_error(exc) from exc


@app.post(
    "/v1/status/refresh",
    response_model=SnapshotInfo,
    dependencies=[Depends(verify_api_key)],
    tags=["status"],
    summary="Refresh status snapshot",
    response_description="Metadata of the snapshot just stored",
)
async def refresh_status():
    """Fetch live status with the autofetch keys and store it. Intended for cron."""
    if _snapshot_cache is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    try:
        snapshot = await _snapshot_cache.refresh(SOURCE_CRON)
    except DispatchError as exc:
        logger.error("Scheduled status refresh failed: %s", exc)
        raise _upstream_error(exc) from exc
    return SnapshotInfo(
        source=snapshot.source,
        valid_at=snapshot.valid_at,
        line_count=len(snapshot.payload),
    )


@app.get(
    "/v1/stations/search",
    response_model=StationSearchResponse,
    dependencies=[Depends(verify_api_key)],
    tags=["stations"],
    summary="Search stations",
    responses={
        400: {
            "description": "Query too short",
            "content": {
                "application/json": {
                    "example": {"detail": "Search query must be at least 2 characters"}
                }
            },
        },
    },
)
async def search(
    q: str = Query(default="", description="Station name, at least 2 characters"),
    modes: Optional[str] = Query(default=None, description="Comma-separated mode names"),
    limit: int = Query(default=20, ge=1, le=100),
):
    """Return stations matching `q`, best matches first."""
    if _tfl_client is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    try:
        return await search_stations(_tfl_client, q, _split(modes), limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except DispatchError as exc:
        logger.error("Station search failed: %s", exc)
        raise _upstream_error(exc) from exc


@app.post(
    "/v1/journeys",
    response_model=JourneyPlanResponse,
    dependencies=[Depends(verify_api_key)],
    tags=["journeys"],
    summary="Plan a journey",
    response_description="Up to three journeys with enriched legs",
    responses={
        400: {
            "description": "Locations missing or not found",
            "content": {
                "application/json": {"example": {"detail": "Could not find destination: Atlantis"}}
            },
        },
    },
)
async def plan_journey(request: JourneyRequest):
    """
    Plan a journey between two stations (names or "lat,lon").

    Each leg carries `enhancements`: end-point names, distance, walking
    directions for walking legs, and the next departures at the boarding stop.
    """
    if _journey_service is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    try:
        return await _journey_service.plan(request)
    except JourneyPlanningError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    except DispatchError as exc:
        logger.error("Journey planning failed: %s", exc)
        raise _upstream_error(exc) from exc
