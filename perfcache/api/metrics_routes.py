"""PERFCACHE — Metrics API Routes."""

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ValidationError

from perfcache.core.errors import UnsupportedPlatform
from perfcache.core.logging import get_logger
from perfcache.core.periods import DateRange
from perfcache.engine.service import MetricsEngine
from perfcache.models.summary_models import ResolveResult

logger = get_logger("api.metrics")

router = APIRouter(prefix="/metrics", tags=["Metrics"])


def get_engine(request: Request) -> MetricsEngine:
    """Dependency: the engine built at startup."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Metrics engine not initialised")
    return engine


def _range(start: date, end: date) -> DateRange:
    try:
        return DateRange(start=start, end=end)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid date range: {start} → {end}") from e


# ── Request Models ──


class RefreshRequest(BaseModel):
    """Request body for POST /metrics/refresh."""

    client_id: str
    platform: str
    start: date
    end: date

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"client_id": "hotel-a", "platform": "meta", "start": "2026-10-01", "end": "2026-10-31"},
            ]
        }
    }


# ── Endpoints ──


@router.get("", response_model=ResolveResult)
async def get_metrics(
    client_id: str = Query(..., min_length=1),
    platform: str = Query(..., description="Upstream platform, e.g. meta or google"),
    start: date = Query(..., description="First day (YYYY-MM-DD)"),
    end: date = Query(..., description="Last day, inclusive (YYYY-MM-DD)"),
    engine: MetricsEngine = Depends(get_engine),
):
    """Resolve metrics for a client, platform and date range.

    Failures come back as a result with ``success=false``; only bad input
    is rejected with 400.
    """
    rng = _range(start, end)
    try:
        return await engine.resolver.resolve(client_id, platform, rng)
    except UnsupportedPlatform as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/refresh", response_model=ResolveResult)
async def refresh_metrics(
    request: RefreshRequest,
    engine: MetricsEngine = Depends(get_engine),
):
    """Force a live fetch for the range and write the result through."""
    rng = _range(request.start, request.end)
    try:
        return await engine.resolver.force_refresh(request.client_id, request.platform, rng)
    except UnsupportedPlatform as e:
        raise HTTPException(status_code=400, detail=str(e))
