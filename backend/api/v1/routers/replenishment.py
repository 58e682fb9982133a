"""
Replenishment Router — Trigger runs and inspect per-pair assessments.

  POST /api/v1/replenishment/runs
      Execute one full run (forecast → plan → decide → execute) and
      return the RunReport.
  GET  /api/v1/replenishment/forecasts/{product_id}/{location_id}
      Read-only forecast, stockout projection, plan and risk for a pair.
"""

from datetime import date

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.deps import get_alert_sink, get_db, get_forecast_cache
from core.cache import ForecastCache
from core.errors import ExternalDependencyError, RecordNotFoundError, RunCancelledError
from integrations.base import AlertSink, LocationRef
from integrations.sql_store import SqlInventoryStore, SqlOutcomeSink, SqlPurchaseOrderSink, SqlTransferSink
from pipeline.run import PairAssessor, ReplenishmentRun, RunContext

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/replenishment", tags=["replenishment"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class RunRequest(BaseModel):
    as_of: date | None = None


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/runs")
async def create_run(
    body: RunRequest | None = None,
    db: async_sessionmaker[AsyncSession] = Depends(get_db),
    alert_sink: AlertSink = Depends(get_alert_sink),
    cache: ForecastCache = Depends(get_forecast_cache),
):
    """Execute a replenishment run and return its report."""
    context = RunContext()
    if body and body.as_of:
        context.as_of = body.as_of

    run = ReplenishmentRun(
        SqlInventoryStore(db),
        SqlPurchaseOrderSink(db),
        SqlTransferSink(db),
        SqlOutcomeSink(db),
        alert_sink,
        cache=cache,
    )
    try:
        report = await run.execute(context)
    except ExternalDependencyError as exc:
        raise HTTPException(status_code=503, detail=f"Run aborted: {exc}")
    except RunCancelledError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return report.to_dict()


@router.get("/forecasts/{product_id}/{location_id}")
async def get_pair_assessment(
    product_id: str,
    location_id: str,
    as_of: date | None = Query(None),
    db: async_sessionmaker[AsyncSession] = Depends(get_db),
    cache: ForecastCache = Depends(get_forecast_cache),
):
    """Forecast, stockout projection, replenishment plan and risk for one pair."""
    store = SqlInventoryStore(db)
    context = RunContext()
    if as_of:
        context.as_of = as_of

    try:
        locations = await store.get_all_active_locations()
        location = next((loc for loc in locations if loc.location_id == location_id), None)
        if location is None:
            location = LocationRef(location_id=location_id, name=location_id)
        assessment = await PairAssessor(store, cache=cache).assess(product_id, location, context)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ExternalDependencyError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return assessment.to_dict()
