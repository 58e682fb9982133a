"""
Execution Engine — Apply queued decisions against inventory state.

Dispatch is exhaustive over the closed decision kinds:
  ReorderDecision        → re-check reorder point, raise on-order, emit PO
  TransferDecision       → check source stock, move units, emit transfer
  RiskMitigationDecision → re-check risk, emit mitigation alert

Concurrency:
  - at most K decisions in flight (semaphore, FIFO in plan order)
  - mutations on one (product, location) row are serialized by a per-key
    lock; transfers take both keys in sorted order
  - lock → read → validate → mutate → unlock; sink calls happen after unlock
  - each decision runs shielded from cancellation once it starts

Outcomes:
  - ExecutionPreconditionFailed → decision failed, run continues
  - ExternalDependencyError     → decision failed, error re-raised (run aborts)
  - replaying an executed decision id returns the recorded result
"""

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, assert_never

import structlog

from alerts.engine import build_decision_failed_alert, build_mitigation_alert
from core.config import get_settings
from core.errors import ExecutionPreconditionFailed, ExternalDependencyError
from decisions.models import (
    AnyDecision,
    Decision,
    DecisionLedger,
    DecisionStatus,
    ReorderDecision,
    RiskMitigationDecision,
    TransferDecision,
)
from decisions.queue import ExecutionPlan
from integrations.base import (
    AlertRecord,
    AlertSink,
    InventoryStore,
    LocationStock,
    OutcomeSink,
    PurchaseOrderSink,
    StockKey,
    TransferSink,
    call_with_retry,
    call_with_timeout,
)
from inventory.recommendations import po_priority

logger = structlog.get_logger()


@dataclass
class ExecutionResult:
    decision_id: str
    decision_type: str
    success: bool
    status: DecisionStatus
    impact: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    execution_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "type": self.decision_type,
            "success": self.success,
            "status": self.status.value,
            "impact": self.impact,
            "error": self.error,
            "execution_ms": self.execution_ms,
        }


class KeyedLocks:
    """One asyncio.Lock per (product, location)."""

    def __init__(self):
        self._locks: dict[StockKey, asyncio.Lock] = {}

    def lock_for(self, key: StockKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, *keys: StockKey) -> AsyncIterator[None]:
        # Sorted acquisition order rules out deadlock between transfers
        ordered = sorted(set(keys))
        acquired = []
        try:
            for key in ordered:
                lock = self.lock_for(key)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class ExecutionEngine:
    """Execute an ExecutionPlan with bounded concurrency."""

    def __init__(
        self,
        store: InventoryStore,
        po_sink: PurchaseOrderSink,
        transfer_sink: TransferSink,
        outcome_sink: OutcomeSink,
        alert_sink: AlertSink,
        *,
        ledger: DecisionLedger | None = None,
        max_in_flight: int | None = None,
        timeout: float | None = None,
        retry_attempts: int | None = None,
        retry_max_wait: float | None = None,
    ):
        settings = get_settings()
        self.store = store
        self.po_sink = po_sink
        self.transfer_sink = transfer_sink
        self.outcome_sink = outcome_sink
        self.alert_sink = alert_sink
        self.ledger = ledger or DecisionLedger()
        self.max_in_flight = max_in_flight or settings.max_in_flight_decisions
        self.timeout = timeout or settings.store_timeout_seconds
        self.retry_attempts = retry_attempts or settings.store_retry_attempts
        self.retry_max_wait = retry_max_wait if retry_max_wait is not None else settings.store_retry_max_wait_seconds
        self.locks = KeyedLocks()
        self._results: dict[str, ExecutionResult] = {}
        self._in_progress: dict[str, asyncio.Future] = {}
        self.alerts_emitted = 0

    @property
    def results(self) -> dict[str, ExecutionResult]:
        return dict(self._results)

    # ── Public ────────────────────────────────────────────────────────────

    async def execute_plan(self, plan: ExecutionPlan, run_id: str | None = None) -> list[ExecutionResult]:
        """Run every queued entry, ≤ K at a time, in plan order."""
        semaphore = asyncio.Semaphore(self.max_in_flight)

        async def worker(decision: Decision) -> ExecutionResult:
            async with semaphore:
                return await self.execute(decision, run_id=run_id)

        tasks: list[asyncio.Task] = []
        try:
            async with asyncio.TaskGroup() as tg:
                for entry in plan.entries:
                    tasks.append(tg.create_task(worker(entry.decision)))
        except BaseExceptionGroup as group:
            dependency = next((e for e in group.exceptions if isinstance(e, ExternalDependencyError)), None)
            raise (dependency or group.exceptions[0]) from None

        return [t.result() for t in tasks]

    async def execute(self, decision: Decision, run_id: str | None = None) -> ExecutionResult:
        """Execute one decision. Idempotent per decision_id."""
        cached = self._results.get(decision.decision_id)
        if cached is not None:
            logger.info("execution.replayed", decision_id=decision.decision_id, status=cached.status.value)
            return cached

        pending = self._in_progress.get(decision.decision_id)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._in_progress[decision.decision_id] = future
        try:
            # Once started, a decision runs to executed/failed even if the run is cancelled
            result = await asyncio.shield(self._execute_once(decision, run_id))
        except BaseException as exc:
            if isinstance(exc, asyncio.CancelledError):
                future.cancel()
            elif not future.done():
                future.set_exception(exc)
                future.exception()  # mark retrieved
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._in_progress.pop(decision.decision_id, None)

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def _execute_once(self, decision: Decision, run_id: str | None) -> ExecutionResult:
        log = logger.bind(run_id=run_id, decision_id=decision.decision_id, decision_type=decision.kind.value)
        self._ensure_queued(decision)
        self.ledger.transition(decision.decision_id, DecisionStatus.EXECUTING)
        started = time.perf_counter()

        try:
            impact = await self._dispatch(decision)
        except ExecutionPreconditionFailed as exc:
            result = self._finish(decision, started, success=False, error=str(exc))
            log.warning("execution.failed", error=str(exc))
            await self._report(result, decision, run_id)
            await self._alert(build_decision_failed_alert(decision, str(exc)))
            return result
        except ExternalDependencyError as exc:
            result = self._finish(decision, started, success=False, error=str(exc))
            log.error("execution.dependency_failed", error=str(exc))
            raise

        result = self._finish(decision, started, success=True, impact=impact)
        log.info("execution.succeeded", execution_ms=result.execution_ms)
        await self._report(result, decision, run_id)
        return result

    def _ensure_queued(self, decision: Decision) -> None:
        self.ledger.register(decision)
        if self.ledger.status(decision.decision_id) == DecisionStatus.PROPOSED:
            self.ledger.transition(decision.decision_id, DecisionStatus.QUEUED)

    def _finish(
        self,
        decision: Decision,
        started: float,
        *,
        success: bool,
        impact: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> ExecutionResult:
        status = DecisionStatus.EXECUTED if success else DecisionStatus.FAILED
        self.ledger.transition(decision.decision_id, status, error)
        result = ExecutionResult(
            decision_id=decision.decision_id,
            decision_type=decision.kind.value,
            success=success,
            status=status,
            impact=impact or {},
            error=error,
            execution_ms=round((time.perf_counter() - started) * 1000, 3),
        )
        self._results[decision.decision_id] = result
        return result

    async def _report(self, result: ExecutionResult, decision: Decision, run_id: str | None) -> None:
        await call_with_timeout(
            lambda: self.outcome_sink.emit_decision_outcome(
                result.decision_id,
                result.status.value,
                result.impact,
                run_id=run_id,
                decision_type=decision.kind.value,
                error=result.error,
            ),
            timeout=self.timeout,
            operation="emit_decision_outcome",
        )

    async def _alert(self, alert: AlertRecord) -> None:
        await call_with_timeout(
            lambda: self.alert_sink.emit_alert(alert.alert_type, alert.severity, alert.payload),
            timeout=self.timeout,
            operation="emit_alert",
        )
        self.alerts_emitted += 1

    # ── Dispatch ──────────────────────────────────────────────────────────

    async def _dispatch(self, decision: AnyDecision) -> dict[str, Any]:
        match decision:
            case ReorderDecision():
                return await self._execute_reorder(decision)
            case TransferDecision():
                return await self._execute_transfer(decision)
            case RiskMitigationDecision():
                return await self._execute_mitigation(decision)
            case _:
                assert_never(decision)

    async def _read_stock(self, product_id: str, location_id: str) -> LocationStock:
        return await call_with_retry(
            lambda: self.store.get_current_stock(product_id, location_id),
            timeout=self.timeout,
            attempts=self.retry_attempts,
            max_wait=self.retry_max_wait,
            operation="get_current_stock",
        )

    async def _execute_reorder(self, decision: ReorderDecision) -> dict[str, Any]:
        key = (decision.product_id, decision.location_id)
        async with self.locks.hold(key):
            stock = await self._read_stock(*key)
            position = stock.current_quantity + stock.on_order_quantity
            if decision.reorder_point is not None and position > decision.reorder_point:
                raise ExecutionPreconditionFailed(
                    f"inventory position {position} is above reorder point {decision.reorder_point}"
                )

            quantity = decision.quantity
            if stock.max_capacity is not None:
                headroom = stock.max_capacity - position
                if headroom <= 0:
                    raise ExecutionPreconditionFailed(f"no capacity headroom at {decision.location_id}")
                quantity = min(quantity, headroom)
            if quantity <= 0:
                raise ExecutionPreconditionFailed("nothing to order")

            updated = await call_with_timeout(
                lambda: self.store.apply_stock_delta(*key, on_order_delta=quantity),
                timeout=self.timeout,
                operation="apply_stock_delta",
            )

        priority = po_priority(decision.days_until_stockout)
        try:
            po_id = await call_with_timeout(
                lambda: self.po_sink.emit_purchase_order(
                    decision.supplier_id,
                    decision.product_id,
                    decision.location_id,
                    quantity,
                    priority,
                    decision_id=decision.decision_id,
                ),
                timeout=self.timeout,
                operation="emit_purchase_order",
            )
        except ExternalDependencyError:
            await self._compensate(
                lambda: self.store.apply_stock_delta(*key, on_order_delta=-quantity),
                decision,
            )
            raise

        return {
            "action": decision.action,
            "po_id": po_id,
            "po_priority": priority,
            "units_ordered": quantity,
            "requested_units": decision.quantity,
            "on_hand": updated.current_quantity,
            "on_order": updated.on_order_quantity,
        }

    async def _execute_transfer(self, decision: TransferDecision) -> dict[str, Any]:
        source = (decision.product_id, decision.from_location_id)
        target = (decision.product_id, decision.to_location_id)
        async with self.locks.hold(source, target):
            source_stock = await self._read_stock(*source)
            if source_stock.current_quantity < decision.quantity:
                raise ExecutionPreconditionFailed(
                    f"source {decision.from_location_id} has {source_stock.current_quantity} units, "
                    f"transfer needs {decision.quantity}"
                )
            target_stock = await self._read_stock(*target)
            if (
                target_stock.max_capacity is not None
                and target_stock.current_quantity + decision.quantity > target_stock.max_capacity
            ):
                raise ExecutionPreconditionFailed(f"destination {decision.to_location_id} lacks capacity")

            after_source, after_target = await call_with_timeout(
                lambda: self.store.apply_transfer(
                    decision.product_id, decision.from_location_id, decision.to_location_id, decision.quantity
                ),
                timeout=self.timeout,
                operation="apply_transfer",
            )

        try:
            transfer_id = await call_with_timeout(
                lambda: self.transfer_sink.emit_transfer_recommendation(
                    decision.from_location_id,
                    decision.to_location_id,
                    decision.product_id,
                    decision.quantity,
                    decision.priority,
                    decision_id=decision.decision_id,
                ),
                timeout=self.timeout,
                operation="emit_transfer_recommendation",
            )
        except ExternalDependencyError:
            await self._compensate(
                lambda: self.store.apply_transfer(
                    decision.product_id, decision.to_location_id, decision.from_location_id, decision.quantity
                ),
                decision,
            )
            raise

        return {
            "transfer_id": transfer_id,
            "units_moved": decision.quantity,
            "source_after": after_source.current_quantity,
            "destination_after": after_target.current_quantity,
            "transfer_cost": decision.transfer_cost,
            "estimated_savings": decision.estimated_savings,
        }

    async def _execute_mitigation(self, decision: RiskMitigationDecision) -> dict[str, Any]:
        stock = await self._read_stock(decision.product_id, decision.location_id)
        position = stock.current_quantity + stock.on_order_quantity
        if (
            decision.reorder_point is not None
            and "transfer_surplus" not in decision.strategies
            and position > decision.reorder_point
        ):
            raise ExecutionPreconditionFailed(
                f"risk cleared: inventory position {position} above reorder point {decision.reorder_point}"
            )

        await self._alert(build_mitigation_alert(decision, stock.current_quantity))
        return {
            "risk_level": decision.risk_level,
            "strategies": list(decision.strategies),
            "alerted": True,
            "current_stock": stock.current_quantity,
        }

    async def _compensate(self, undo, decision: Decision) -> None:
        """Reverse a stock mutation whose follow-up sink call failed."""
        try:
            async with self.locks.hold(*(key for key, _ in decision.targets())):
                await call_with_timeout(undo, timeout=self.timeout, operation="compensate")
        except (ExternalDependencyError, ExecutionPreconditionFailed) as exc:
            logger.error("execution.compensation_failed", decision_id=decision.decision_id, error=str(exc))
