"""
Collaborator Interfaces — Abstract boundary of the replenishment engine.

The engine never talks to a database, a purchasing system or a notification
channel directly. Every input arrives through an InventoryStore and every
side effect leaves through a sink, so the same pipeline can run behind a
REST facade, a Celery worker or a replay simulation.

Inputs:
  - get_consumption_history(product, location, since) → [ConsumptionSample]
  - get_current_stock(product, location)              → LocationStock
  - get_catalog(product)                              → CatalogEntry
  - get_all_active_locations()                        → [LocationRef]

Outputs:
  - PurchaseOrderSink.emit_purchase_order(...)        → po_id
  - TransferSink.emit_transfer_recommendation(...)
  - OutcomeSink.emit_decision_outcome(...)
  - AlertSink.emit_alert(type, severity, payload)
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, TypeVar

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.errors import ExternalDependencyError

logger = structlog.get_logger()

T = TypeVar("T")

# (product_id, location_id): the unit of locking and conflict detection
StockKey = tuple[str, str]


# ── Records ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ConsumptionSample:
    """One day of consumption for a (product, location). Append-only fact."""

    product_id: str
    location_id: str
    sample_date: date
    quantity_consumed: float


@dataclass(frozen=True)
class LocationStock:
    """Current stock position of a product at a location."""

    product_id: str
    location_id: str
    current_quantity: int
    on_order_quantity: int = 0
    max_capacity: int | None = None
    last_updated: datetime | None = None

    @property
    def key(self) -> StockKey:
        return (self.product_id, self.location_id)


@dataclass(frozen=True)
class CatalogEntry:
    """Product reference data joined with its supplier terms."""

    product_id: str
    sku: str
    name: str
    category: str | None
    unit_cost: float | None
    unit_price: float | None
    supplier_id: str | None
    lead_time_days: int
    supplier_min_order: int
    order_cost: float | None = None


@dataclass(frozen=True)
class LocationRef:
    """An active stocking location."""

    location_id: str
    name: str
    region: str | None = None


@dataclass
class AlertRecord:
    """Alert handed to an AlertSink."""

    alert_type: str
    severity: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


# ── Store ─────────────────────────────────────────────────────────────────


class InventoryStore(ABC):
    """Read access to consumption/stock/catalog plus guarded stock mutations."""

    @abstractmethod
    async def get_consumption_history(
        self, product_id: str, location_id: str, since: date
    ) -> list[ConsumptionSample]:
        """Daily consumption on or after `since`, ordered by date. Missing days are absent."""
        ...

    @abstractmethod
    async def get_current_stock(self, product_id: str, location_id: str) -> LocationStock:
        ...

    @abstractmethod
    async def get_catalog(self, product_id: str) -> CatalogEntry:
        ...

    @abstractmethod
    async def get_all_active_locations(self) -> list[LocationRef]:
        ...

    @abstractmethod
    async def get_stocked_products(self, location_id: str) -> list[str]:
        """Product ids carried at a location."""
        ...

    @abstractmethod
    async def apply_stock_delta(
        self,
        product_id: str,
        location_id: str,
        delta: int = 0,
        on_order_delta: int = 0,
    ) -> LocationStock:
        """
        Atomically adjust on-hand and on-order quantities.

        Raises ExecutionPreconditionFailed if the row is missing or the
        result would be negative.
        """
        ...

    @abstractmethod
    async def apply_transfer(
        self,
        product_id: str,
        from_location_id: str,
        to_location_id: str,
        quantity: int,
    ) -> tuple[LocationStock, LocationStock]:
        """Move stock between locations in one transaction. Same guards as apply_stock_delta."""
        ...


# ── Sinks ─────────────────────────────────────────────────────────────────


class PurchaseOrderSink(ABC):
    @abstractmethod
    async def emit_purchase_order(
        self,
        supplier_id: str | None,
        product_id: str,
        location_id: str,
        quantity: int,
        priority: str,
        decision_id: str | None = None,
    ) -> str:
        """Create a PO in the external system of record. Returns its id."""
        ...


class TransferSink(ABC):
    @abstractmethod
    async def emit_transfer_recommendation(
        self,
        from_location_id: str,
        to_location_id: str,
        product_id: str,
        quantity: int,
        priority: str,
        decision_id: str | None = None,
    ) -> str:
        ...


class OutcomeSink(ABC):
    @abstractmethod
    async def emit_decision_outcome(
        self,
        decision_id: str,
        status: str,
        impact: dict[str, Any],
        *,
        run_id: str | None = None,
        decision_type: str | None = None,
        error: str | None = None,
    ) -> None:
        ...


class AlertSink(ABC):
    @abstractmethod
    async def emit_alert(self, alert_type: str, severity: str, payload: dict[str, Any]) -> None:
        ...


# ── Call-site guards ──────────────────────────────────────────────────────


async def call_with_timeout(fn: Callable[[], Awaitable[T]], *, timeout: float, operation: str) -> T:
    """Single attempt with a timeout. Used for writes, which are never retried."""
    try:
        return await asyncio.wait_for(fn(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ExternalDependencyError(f"{operation} timed out after {timeout}s") from exc


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    attempts: int,
    max_wait: float,
    operation: str,
) -> T:
    """
    Read from a collaborator with a per-attempt timeout and bounded
    exponential backoff. Raises ExternalDependencyError when exhausted.
    """
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(min=0.1, max=max_wait),
        retry=retry_if_exception_type(ExternalDependencyError),
        reraise=True,
    ):
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                logger.warning(
                    "external.retry",
                    operation=operation,
                    attempt=attempt.retry_state.attempt_number,
                )
            return await call_with_timeout(fn, timeout=timeout, operation=operation)
    raise ExternalDependencyError(f"{operation} failed")  # pragma: no cover
