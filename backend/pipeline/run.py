"""
Replenishment Run — One end-to-end pass of the engine.

Phases:
  1. Discover pairs      active locations × stocked products
  2. Assess (parallel)   history → forecast (cached) → stockout, plan, risk
  3. Recommend           reorder / transfer / risk_mitigation decisions
  4. Plan (serial)       dedup, conflict resolution, ordering, slots
  5. Execute             ≤ K in flight, per-key locks
  6. Alert + report      stockout alerts, RunReport with outcome summary

Cancellation is honoured between phases; a decision that has started
executing always finishes. ExternalDependencyError after retries aborts
the run without a report.
"""

import asyncio
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

import structlog

from alerts.engine import build_stockout_alerts, deduplicate_alerts, publish_alerts
from core.cache import ForecastCache, forecast_cache_key
from core.config import get_settings
from core.errors import ExternalDependencyError, RecordNotFoundError, RunCancelledError
from decisions.executor import ExecutionEngine, ExecutionResult
from decisions.models import DecisionLedger, DecisionStatus
from decisions.queue import DecisionQueue, ExecutionPlan
from integrations.base import (
    AlertSink,
    CatalogEntry,
    InventoryStore,
    LocationRef,
    OutcomeSink,
    PurchaseOrderSink,
    TransferSink,
    call_with_retry,
)
from inventory.optimizer import ReplenishmentCalculator
from inventory.recommendations import PairAssessment, RecommendationGenerator, assess_pair
from inventory.risk import RiskScorer
from ml.forecaster import DemandForecast, DemandForecaster

logger = structlog.get_logger()


# ── Context ───────────────────────────────────────────────────────────────


@dataclass
class RunContext:
    """Per-run state passed through the pipeline instead of ambient globals."""

    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    as_of: date = field(default_factory=lambda: datetime.utcnow().date())
    started_at: datetime = field(default_factory=datetime.utcnow)
    catalog: dict[str, CatalogEntry] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self):
        self.log = logger.bind(run_id=self.run_id)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self, phase: str) -> None:
        if self.cancelled:
            self.log.warning("run.cancelled", phase=phase)
            raise RunCancelledError(f"Run {self.run_id} cancelled before {phase}")


# ── Report ────────────────────────────────────────────────────────────────


@dataclass
class RunReport:
    run_id: str
    as_of: date
    pairs_assessed: int = 0
    pairs_skipped_insufficient_data: int = 0
    pairs_missing_reference_data: int = 0
    recommendations_generated: int = 0
    decisions_executed: int = 0
    decisions_failed: int = 0
    decisions_superseded: int = 0
    decisions_duplicate: int = 0
    decisions_left_queued: int = 0
    alerts_emitted: int = 0
    outcome_summary: dict[str, dict[str, Any]] = field(default_factory=dict)
    timings_ms: dict[str, float] = field(default_factory=dict)
    results: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "as_of": self.as_of.isoformat(),
            "pairs_assessed": self.pairs_assessed,
            "pairs_skipped_insufficient_data": self.pairs_skipped_insufficient_data,
            "pairs_missing_reference_data": self.pairs_missing_reference_data,
            "recommendations_generated": self.recommendations_generated,
            "decisions_executed": self.decisions_executed,
            "decisions_failed": self.decisions_failed,
            "decisions_superseded": self.decisions_superseded,
            "decisions_duplicate": self.decisions_duplicate,
            "decisions_left_queued": self.decisions_left_queued,
            "alerts_emitted": self.alerts_emitted,
            "outcome_summary": self.outcome_summary,
            "timings_ms": self.timings_ms,
            "results": self.results,
        }


def summarize_outcomes(results: list[ExecutionResult]) -> dict[str, dict[str, Any]]:
    """Success pattern per decision kind: counts, success rate, mean execution time."""
    grouped: dict[str, list[ExecutionResult]] = defaultdict(list)
    for result in results:
        grouped[result.decision_type].append(result)

    summary = {}
    for kind in sorted(grouped):
        group = grouped[kind]
        executed = sum(1 for r in group if r.success)
        summary[kind] = {
            "executed": executed,
            "failed": len(group) - executed,
            "success_rate": round(executed / len(group), 4),
            "mean_execution_ms": round(sum(r.execution_ms for r in group) / len(group), 3),
        }
    return summary


# ── Assessment ────────────────────────────────────────────────────────────


class PairAssessor:
    """Read inputs for one (product, location) and compute its assessment."""

    def __init__(
        self,
        store: InventoryStore,
        *,
        cache: ForecastCache | None = None,
        forecaster: DemandForecaster | None = None,
        calculator: ReplenishmentCalculator | None = None,
        scorer: RiskScorer | None = None,
    ):
        settings = get_settings()
        self.store = store
        self.cache = cache
        self.forecaster = forecaster or DemandForecaster(horizon_days=settings.forecast_horizon_days)
        self.calculator = calculator or ReplenishmentCalculator()
        self.scorer = scorer or RiskScorer()
        self.window_days = settings.forecast_window_days
        self.timeout = settings.store_timeout_seconds
        self.attempts = settings.store_retry_attempts
        self.max_wait = settings.store_retry_max_wait_seconds

    async def read(self, fn, operation: str):
        return await call_with_retry(
            fn, timeout=self.timeout, attempts=self.attempts, max_wait=self.max_wait, operation=operation
        )

    async def catalog_for(self, product_id: str, context: RunContext) -> CatalogEntry:
        entry = context.catalog.get(product_id)
        if entry is None:
            entry = await self.read(lambda: self.store.get_catalog(product_id), "get_catalog")
            context.catalog[product_id] = entry
        return entry

    async def forecast_for(self, product_id: str, location_id: str, as_of: date) -> DemandForecast:
        since = as_of - timedelta(days=self.window_days)
        samples = await self.read(
            lambda: self.store.get_consumption_history(product_id, location_id, since),
            "get_consumption_history",
        )
        if self.cache is None:
            return self.forecaster.forecast(product_id, location_id, samples, as_of)

        key = forecast_cache_key(product_id, location_id, as_of, samples, self.forecaster.horizon_days)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached
        forecast = self.forecaster.forecast(product_id, location_id, samples, as_of)
        await self.cache.set(key, forecast)
        return forecast

    async def assess(self, product_id: str, location: LocationRef, context: RunContext) -> PairAssessment:
        forecast = await self.forecast_for(product_id, location.location_id, context.as_of)
        stock = await self.read(
            lambda: self.store.get_current_stock(product_id, location.location_id), "get_current_stock"
        )
        catalog = await self.catalog_for(product_id, context)
        return assess_pair(
            forecast,
            stock,
            catalog,
            location,
            context.as_of,
            calculator=self.calculator,
            scorer=self.scorer,
        )


# ── Run ───────────────────────────────────────────────────────────────────


class ReplenishmentRun:
    """Wire collaborators together and execute one run."""

    def __init__(
        self,
        store: InventoryStore,
        po_sink: PurchaseOrderSink,
        transfer_sink: TransferSink,
        outcome_sink: OutcomeSink,
        alert_sink: AlertSink,
        *,
        cache: ForecastCache | None = None,
        assessor: PairAssessor | None = None,
        generator: RecommendationGenerator | None = None,
        workers: int | None = None,
        max_in_flight: int | None = None,
    ):
        settings = get_settings()
        self.store = store
        self.po_sink = po_sink
        self.transfer_sink = transfer_sink
        self.outcome_sink = outcome_sink
        self.alert_sink = alert_sink
        self.assessor = assessor or PairAssessor(store, cache=cache)
        self.generator = generator or RecommendationGenerator()
        self.workers = workers or settings.forecast_workers
        self.max_in_flight = max_in_flight or settings.max_in_flight_decisions
        self.timeout = settings.store_timeout_seconds

    async def discover_pairs(self) -> list[tuple[str, LocationRef]]:
        locations = await self.assessor.read(self.store.get_all_active_locations, "get_all_active_locations")
        pairs = []
        for location in locations:
            products = await self.assessor.read(
                lambda: self.store.get_stocked_products(location.location_id), "get_stocked_products"
            )
            pairs.extend((product_id, location) for product_id in products)
        return pairs

    async def assess_all(self, pairs: list[tuple[str, LocationRef]], context: RunContext) -> tuple[list, int]:
        """Assess pairs on a bounded worker pool. Returns (assessments, missing_reference_count)."""
        semaphore = asyncio.Semaphore(self.workers)

        async def worker(product_id: str, location: LocationRef) -> PairAssessment | None:
            async with semaphore:
                try:
                    return await self.assessor.assess(product_id, location, context)
                except RecordNotFoundError as exc:
                    context.log.warning(
                        "run.pair_skipped",
                        product_id=product_id,
                        location_id=location.location_id,
                        reason=str(exc),
                    )
                    return None

        tasks: list[asyncio.Task] = []
        try:
            async with asyncio.TaskGroup() as tg:
                for product_id, location in pairs:
                    tasks.append(tg.create_task(worker(product_id, location)))
        except BaseExceptionGroup as group:
            dependency = next((e for e in group.exceptions if isinstance(e, ExternalDependencyError)), None)
            raise (dependency or group.exceptions[0]) from None

        outcomes = [t.result() for t in tasks]
        assessments = [a for a in outcomes if a is not None]
        return assessments, len(outcomes) - len(assessments)

    async def execute(self, context: RunContext | None = None) -> RunReport:
        context = context or RunContext()
        log = context.log
        report = RunReport(run_id=context.run_id, as_of=context.as_of)
        ledger = DecisionLedger()
        log.info("run.started", as_of=context.as_of.isoformat())

        try:
            started = time.perf_counter()
            pairs = await self.discover_pairs()
            assessments, missing = await self.assess_all(pairs, context)
            report.timings_ms["assess"] = _elapsed_ms(started)
            report.pairs_assessed = len(assessments)
            report.pairs_missing_reference_data = missing
            report.pairs_skipped_insufficient_data = sum(1 for a in assessments if not a.forecast.is_actionable)

            context.check_cancelled("recommend")
            started = time.perf_counter()
            now = datetime.utcnow()
            decisions = self.generator.generate(assessments, now=now)
            report.recommendations_generated = len(decisions)
            report.timings_ms["recommend"] = _elapsed_ms(started)

            context.check_cancelled("plan")
            started = time.perf_counter()
            plan: ExecutionPlan = DecisionQueue(max_in_flight=self.max_in_flight, ledger=ledger).build(
                decisions, now=now
            )
            report.decisions_superseded = len(plan.superseded)
            report.decisions_duplicate = len(plan.duplicates)
            report.timings_ms["plan"] = _elapsed_ms(started)

            context.check_cancelled("execute")
            started = time.perf_counter()
            engine = ExecutionEngine(
                self.store,
                self.po_sink,
                self.transfer_sink,
                self.outcome_sink,
                self.alert_sink,
                ledger=ledger,
                max_in_flight=self.max_in_flight,
            )
            results = await engine.execute_plan(plan, run_id=context.run_id)
            report.timings_ms["execute"] = _elapsed_ms(started)

            started = time.perf_counter()
            alerts = deduplicate_alerts(build_stockout_alerts(assessments))
            emitted = await publish_alerts(self.alert_sink, alerts, timeout=self.timeout)
            report.alerts_emitted = emitted + engine.alerts_emitted
            report.timings_ms["alerts"] = _elapsed_ms(started)
        except ExternalDependencyError as exc:
            log.error("run.aborted", error=str(exc))
            raise

        report.decisions_executed = ledger.count(DecisionStatus.EXECUTED)
        report.decisions_failed = ledger.count(DecisionStatus.FAILED)
        report.decisions_left_queued = ledger.count(DecisionStatus.QUEUED)
        report.outcome_summary = summarize_outcomes(results)
        report.results = [r.to_dict() for r in results]

        log.info(
            "run.completed",
            pairs=report.pairs_assessed,
            recommendations=report.recommendations_generated,
            executed=report.decisions_executed,
            failed=report.decisions_failed,
            superseded=report.decisions_superseded,
            alerts=report.alerts_emitted,
        )
        return report


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)
