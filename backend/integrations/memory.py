"""
In-memory collaborators for replay/simulation runs and tests.

Same contracts as the SQL implementation: guarded mutations raise
ExecutionPreconditionFailed instead of letting stock go negative, and
every emitted side effect is kept in a list for inspection.
"""

import uuid
from collections import defaultdict
from dataclasses import replace
from datetime import date, datetime
from typing import Any

from core.errors import ExecutionPreconditionFailed, RecordNotFoundError
from integrations.base import (
    AlertRecord,
    AlertSink,
    CatalogEntry,
    ConsumptionSample,
    InventoryStore,
    LocationRef,
    LocationStock,
    OutcomeSink,
    PurchaseOrderSink,
    StockKey,
    TransferSink,
)


class InMemoryInventoryStore(InventoryStore):
    def __init__(self):
        self.locations: dict[str, LocationRef] = {}
        self.catalog: dict[str, CatalogEntry] = {}
        self.stock: dict[StockKey, LocationStock] = {}
        self.samples: dict[StockKey, list[ConsumptionSample]] = defaultdict(list)

    # ── Seeding ───────────────────────────────────────────────────────────

    def add_location(self, location_id: str, name: str | None = None, region: str | None = None) -> LocationRef:
        ref = LocationRef(location_id=location_id, name=name or location_id, region=region)
        self.locations[location_id] = ref
        return ref

    def add_product(self, entry: CatalogEntry) -> None:
        self.catalog[entry.product_id] = entry

    def set_stock(
        self,
        product_id: str,
        location_id: str,
        current_quantity: int,
        on_order_quantity: int = 0,
        max_capacity: int | None = None,
    ) -> LocationStock:
        stock = LocationStock(
            product_id=product_id,
            location_id=location_id,
            current_quantity=current_quantity,
            on_order_quantity=on_order_quantity,
            max_capacity=max_capacity,
            last_updated=datetime.utcnow(),
        )
        self.stock[stock.key] = stock
        return stock

    def add_samples(self, samples: list[ConsumptionSample]) -> None:
        for sample in samples:
            self.samples[(sample.product_id, sample.location_id)].append(sample)

    # ── InventoryStore ────────────────────────────────────────────────────

    async def get_consumption_history(
        self, product_id: str, location_id: str, since: date
    ) -> list[ConsumptionSample]:
        samples = [s for s in self.samples.get((product_id, location_id), []) if s.sample_date >= since]
        return sorted(samples, key=lambda s: s.sample_date)

    async def get_current_stock(self, product_id: str, location_id: str) -> LocationStock:
        stock = self.stock.get((product_id, location_id))
        if stock is None:
            raise RecordNotFoundError(f"No stock row for {product_id}@{location_id}")
        return stock

    async def get_catalog(self, product_id: str) -> CatalogEntry:
        entry = self.catalog.get(product_id)
        if entry is None:
            raise RecordNotFoundError(f"Unknown product {product_id}")
        return entry

    async def get_all_active_locations(self) -> list[LocationRef]:
        return [self.locations[k] for k in sorted(self.locations)]

    async def get_stocked_products(self, location_id: str) -> list[str]:
        return sorted(p for (p, loc) in self.stock if loc == location_id)

    async def apply_stock_delta(
        self,
        product_id: str,
        location_id: str,
        delta: int = 0,
        on_order_delta: int = 0,
    ) -> LocationStock:
        stock = await self.get_current_stock(product_id, location_id)
        updated = self._adjusted(stock, delta, on_order_delta)
        self.stock[stock.key] = updated
        return updated

    async def apply_transfer(
        self,
        product_id: str,
        from_location_id: str,
        to_location_id: str,
        quantity: int,
    ) -> tuple[LocationStock, LocationStock]:
        if quantity <= 0:
            raise ExecutionPreconditionFailed("transfer quantity must be positive")
        source = await self.get_current_stock(product_id, from_location_id)
        target = await self.get_current_stock(product_id, to_location_id)
        new_source = self._adjusted(source, -quantity, 0)
        new_target = self._adjusted(target, quantity, 0)
        self.stock[source.key] = new_source
        self.stock[target.key] = new_target
        return new_source, new_target

    @staticmethod
    def _adjusted(stock: LocationStock, delta: int, on_order_delta: int) -> LocationStock:
        current = stock.current_quantity + delta
        on_order = stock.on_order_quantity + on_order_delta
        if current < 0 or on_order < 0:
            raise ExecutionPreconditionFailed(
                f"Stock change {delta:+d} (on order {on_order_delta:+d}) would go negative "
                f"at {stock.product_id}@{stock.location_id}"
            )
        return replace(stock, current_quantity=current, on_order_quantity=on_order, last_updated=datetime.utcnow())


class RecordingSinks(PurchaseOrderSink, TransferSink, OutcomeSink, AlertSink):
    """All four sinks in one object; emitted records are kept in order."""

    def __init__(self):
        self.purchase_orders: list[dict[str, Any]] = []
        self.transfers: list[dict[str, Any]] = []
        self.outcomes: list[dict[str, Any]] = []
        self.alerts: list[AlertRecord] = []

    async def emit_purchase_order(
        self,
        supplier_id: str | None,
        product_id: str,
        location_id: str,
        quantity: int,
        priority: str,
        decision_id: str | None = None,
    ) -> str:
        po_id = str(uuid.uuid4())
        self.purchase_orders.append(
            {
                "po_id": po_id,
                "supplier_id": supplier_id,
                "product_id": product_id,
                "location_id": location_id,
                "quantity": quantity,
                "priority": priority,
                "decision_id": decision_id,
            }
        )
        return po_id

    async def emit_transfer_recommendation(
        self,
        from_location_id: str,
        to_location_id: str,
        product_id: str,
        quantity: int,
        priority: str,
        decision_id: str | None = None,
    ) -> str:
        transfer_id = str(uuid.uuid4())
        self.transfers.append(
            {
                "transfer_id": transfer_id,
                "from_location_id": from_location_id,
                "to_location_id": to_location_id,
                "product_id": product_id,
                "quantity": quantity,
                "priority": priority,
                "decision_id": decision_id,
            }
        )
        return transfer_id

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
        self.outcomes.append(
            {
                "decision_id": decision_id,
                "status": status,
                "impact": impact,
                "run_id": run_id,
                "decision_type": decision_type,
                "error": error,
            }
        )

    async def emit_alert(self, alert_type: str, severity: str, payload: dict[str, Any]) -> None:
        self.alerts.append(AlertRecord(alert_type=alert_type, severity=severity, payload=dict(payload)))
