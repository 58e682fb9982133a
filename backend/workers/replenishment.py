"""
Replenishment Worker — Scheduled end-to-end replenishment run.

Schedule: crontab(hour=2, minute=30) — nightly
Queue: replenishment

Builds SQL-backed collaborators, runs ReplenishmentRun once and returns the
RunReport as a dict. A run aborted by ExternalDependencyError is retried
by Celery as a whole; nothing is half-applied because each decision either
executed or failed before the abort.
"""

import asyncio
from datetime import date

import structlog

from alerts.engine import FanOutAlertSink, RedisAlertSink
from core.cache import RedisForecastCache
from core.config import get_settings
from core.errors import ExternalDependencyError
from db.session import build_engine, build_sessionmaker
from integrations.base import AlertSink
from integrations.sql_store import (
    SqlAlertSink,
    SqlInventoryStore,
    SqlOutcomeSink,
    SqlPurchaseOrderSink,
    SqlTransferSink,
)
from pipeline.run import ReplenishmentRun, RunContext
from workers.celery_app import celery_app

logger = structlog.get_logger()


def build_alert_sink(session_factory) -> AlertSink:
    """Persist alerts and publish them for the notification layer."""
    return FanOutAlertSink(SqlAlertSink(session_factory), RedisAlertSink())


def build_forecast_cache():
    return RedisForecastCache()


async def _execute_run(run_id: str, as_of: str | None = None) -> dict:
    settings = get_settings()
    engine = build_engine(settings.database_url)
    cache = build_forecast_cache()
    try:
        session_factory = build_sessionmaker(engine)
        run = ReplenishmentRun(
            SqlInventoryStore(session_factory),
            SqlPurchaseOrderSink(session_factory),
            SqlTransferSink(session_factory),
            SqlOutcomeSink(session_factory),
            build_alert_sink(session_factory),
            cache=cache,
        )
        context = RunContext(run_id=run_id)
        if as_of:
            context.as_of = date.fromisoformat(as_of)
        report = await run.execute(context)
        return report.to_dict()
    finally:
        if isinstance(cache, RedisForecastCache):
            await cache.close()
        await engine.dispose()


@celery_app.task(
    name="workers.replenishment.run_replenishment",
    bind=True,
    max_retries=3,
    default_retry_delay=300,
    acks_late=True,
)
def run_replenishment(self, as_of: str | None = None):
    """
    Forecast → plan → decide → execute for every active (product, location).

    Args:
        as_of: ISO date to plan for (defaults to today, UTC)
    """
    run_id = self.request.id or "manual"
    logger.info("replenishment.started", run_id=run_id, as_of=as_of)

    try:
        report = asyncio.run(_execute_run(run_id, as_of))
    except ExternalDependencyError as exc:
        logger.error("replenishment.failed", run_id=run_id, error=str(exc))
        raise self.retry(exc=exc)

    logger.info(
        "replenishment.completed",
        run_id=run_id,
        executed=report["decisions_executed"],
        failed=report["decisions_failed"],
        superseded=report["decisions_superseded"],
    )
    return report
