"""PERFCACHE — Lifecycle API Routes.

Manual triggers for the scheduled archival and retention jobs.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from perfcache.api.metrics_routes import get_engine
from perfcache.core.periods import PeriodType
from perfcache.engine.lifecycle import ArchivalReport, LifecycleStatus, PruneReport
from perfcache.engine.service import MetricsEngine

router = APIRouter(prefix="/lifecycle", tags=["Lifecycle"])


class PruneRequest(BaseModel):
    """Request body for POST /lifecycle/prune."""

    horizon_periods: Optional[int] = Field(None, ge=1)
    """Whole periods to keep, current one included. Defaults to the configured horizon."""
    period_type: PeriodType = PeriodType.MONTH


@router.post("/archive/monthly", response_model=ArchivalReport)
async def archive_monthly(engine: MetricsEngine = Depends(get_engine)):
    return engine.lifecycle.run_monthly_archival()


@router.post("/archive/weekly", response_model=ArchivalReport)
async def archive_weekly(engine: MetricsEngine = Depends(get_engine)):
    return engine.lifecycle.run_weekly_archival()


@router.post("/prune", response_model=PruneReport)
async def prune(request: PruneRequest, engine: MetricsEngine = Depends(get_engine)):
    """Delete archive entries older than the retention horizon."""
    try:
        return engine.lifecycle.prune_retention(request.horizon_periods, request.period_type)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/status", response_model=LifecycleStatus)
async def lifecycle_status(engine: MetricsEngine = Depends(get_engine)):
    return engine.lifecycle.get_lifecycle_status()
