"""
SQL Collaborators — InventoryStore and sinks over SQLAlchemy async sessions.

Stock mutations are single guarded UPDATE statements:

  UPDATE location_stock
     SET current_quantity = current_quantity + :delta, ...
   WHERE product_id = :p AND location_id = :l
     AND current_quantity + :delta >= 0

A zero rowcount means the guard refused the change (or the row is absent),
so non-negative stock holds across processes, not just inside one engine.
Every SQLAlchemyError surfaces as ExternalDependencyError.
"""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import get_settings
from core.errors import ExecutionPreconditionFailed, ExternalDependencyError, RecordNotFoundError
from db import models
from integrations.base import (
    AlertSink,
    CatalogEntry,
    ConsumptionSample,
    InventoryStore,
    LocationRef,
    LocationStock,
    OutcomeSink,
    PurchaseOrderSink,
    TransferSink,
)

logger = structlog.get_logger()


@asynccontextmanager
async def _translate_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("sql.error", operation=operation, error=str(exc))
        raise ExternalDependencyError(f"{operation} failed: {exc}") from exc


def _to_stock(row: models.LocationStock) -> LocationStock:
    return LocationStock(
        product_id=row.product_id,
        location_id=row.location_id,
        current_quantity=row.current_quantity,
        on_order_quantity=row.on_order_quantity,
        max_capacity=row.max_capacity,
        last_updated=row.last_updated,
    )


class SqlInventoryStore(InventoryStore):
    """InventoryStore backed by the replenishment schema."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        settings = get_settings()
        self.session_factory = session_factory
        self.default_lead_time_days = settings.default_lead_time_days
        self.default_min_order = settings.default_supplier_min_order

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get_consumption_history(
        self, product_id: str, location_id: str, since: date
    ) -> list[ConsumptionSample]:
        async with _translate_errors("get_consumption_history"), self.session_factory() as db:
            result = await db.execute(
                select(
                    models.ConsumptionSample.sample_date,
                    func.sum(models.ConsumptionSample.quantity_consumed).label("quantity"),
                )
                .where(
                    models.ConsumptionSample.product_id == product_id,
                    models.ConsumptionSample.location_id == location_id,
                    models.ConsumptionSample.sample_date >= since,
                )
                .group_by(models.ConsumptionSample.sample_date)
                .order_by(models.ConsumptionSample.sample_date)
            )
            return [
                ConsumptionSample(
                    product_id=product_id,
                    location_id=location_id,
                    sample_date=row.sample_date,
                    quantity_consumed=float(row.quantity),
                )
                for row in result.all()
            ]

    async def get_current_stock(self, product_id: str, location_id: str) -> LocationStock:
        async with _translate_errors("get_current_stock"), self.session_factory() as db:
            row = await self._stock_row(db, product_id, location_id)
            if row is None:
                raise RecordNotFoundError(f"No stock row for {product_id}@{location_id}")
            return _to_stock(row)

    async def get_catalog(self, product_id: str) -> CatalogEntry:
        async with _translate_errors("get_catalog"), self.session_factory() as db:
            result = await db.execute(
                select(models.Product, models.Supplier)
                .outerjoin(models.Supplier, models.Product.supplier_id == models.Supplier.supplier_id)
                .where(models.Product.product_id == product_id)
            )
            row = result.first()
            if row is None:
                raise RecordNotFoundError(f"Unknown product {product_id}")
            product, supplier = row
            return CatalogEntry(
                product_id=product.product_id,
                sku=product.sku,
                name=product.name,
                category=product.category,
                unit_cost=product.unit_cost,
                unit_price=product.unit_price,
                supplier_id=product.supplier_id,
                lead_time_days=supplier.lead_time_days if supplier else self.default_lead_time_days,
                supplier_min_order=(
                    supplier.min_order_quantity
                    if supplier and supplier.min_order_quantity is not None
                    else self.default_min_order
                ),
                order_cost=supplier.cost_per_order if supplier else None,
            )

    async def get_all_active_locations(self) -> list[LocationRef]:
        async with _translate_errors("get_all_active_locations"), self.session_factory() as db:
            result = await db.execute(
                select(models.Location).where(models.Location.is_active.is_(True)).order_by(models.Location.location_id)
            )
            return [
                LocationRef(location_id=loc.location_id, name=loc.name, region=loc.region)
                for loc in result.scalars().all()
            ]

    async def get_stocked_products(self, location_id: str) -> list[str]:
        async with _translate_errors("get_stocked_products"), self.session_factory() as db:
            result = await db.execute(
                select(models.LocationStock.product_id)
                .where(models.LocationStock.location_id == location_id)
                .order_by(models.LocationStock.product_id)
            )
            return list(result.scalars().all())

    # ── Guarded mutations ─────────────────────────────────────────────────

    async def apply_stock_delta(
        self,
        product_id: str,
        location_id: str,
        delta: int = 0,
        on_order_delta: int = 0,
    ) -> LocationStock:
        async with _translate_errors("apply_stock_delta"), self.session_factory() as db:
            async with db.begin():
                await self._guarded_update(db, product_id, location_id, delta, on_order_delta)
            row = await self._stock_row(db, product_id, location_id)
            logger.info(
                "stock.adjusted",
                product_id=product_id,
                location_id=location_id,
                delta=delta,
                on_order_delta=on_order_delta,
                current_quantity=row.current_quantity,
            )
            return _to_stock(row)

    async def apply_transfer(
        self,
        product_id: str,
        from_location_id: str,
        to_location_id: str,
        quantity: int,
    ) -> tuple[LocationStock, LocationStock]:
        if quantity <= 0:
            raise ExecutionPreconditionFailed("transfer quantity must be positive")
        async with _translate_errors("apply_transfer"), self.session_factory() as db:
            # One transaction: both rows move or neither does
            async with db.begin():
                await self._guarded_update(db, product_id, from_location_id, -quantity, 0)
                await self._guarded_update(db, product_id, to_location_id, quantity, 0)
            source = await self._stock_row(db, product_id, from_location_id)
            target = await self._stock_row(db, product_id, to_location_id)
            logger.info(
                "stock.transferred",
                product_id=product_id,
                from_location=from_location_id,
                to_location=to_location_id,
                quantity=quantity,
            )
            return _to_stock(source), _to_stock(target)

    # ── Internals ─────────────────────────────────────────────────────────

    async def _stock_row(self, db: AsyncSession, product_id: str, location_id: str) -> models.LocationStock | None:
        result = await db.execute(
            select(models.LocationStock)
            .where(
                models.LocationStock.product_id == product_id,
                models.LocationStock.location_id == location_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _guarded_update(
        self, db: AsyncSession, product_id: str, location_id: str, delta: int, on_order_delta: int
    ) -> None:
        table = models.LocationStock
        result = await db.execute(
            update(table)
            .where(
                table.product_id == product_id,
                table.location_id == location_id,
                table.current_quantity + delta >= 0,
                table.on_order_quantity + on_order_delta >= 0,
            )
            .values(
                current_quantity=table.current_quantity + delta,
                on_order_quantity=table.on_order_quantity + on_order_delta,
                last_updated=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return
        if await self._stock_row(db, product_id, location_id) is None:
            raise RecordNotFoundError(f"No stock row for {product_id}@{location_id}")
        raise ExecutionPreconditionFailed(
            f"Stock change {delta:+d} (on order {on_order_delta:+d}) would go negative at {product_id}@{location_id}"
        )


# ── Sinks ─────────────────────────────────────────────────────────────────


class SqlPurchaseOrderSink(PurchaseOrderSink):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def emit_purchase_order(
        self,
        supplier_id: str | None,
        product_id: str,
        location_id: str,
        quantity: int,
        priority: str,
        decision_id: str | None = None,
    ) -> str:
        async with _translate_errors("emit_purchase_order"), self.session_factory() as db:
            po = models.PurchaseOrder(
                po_id=uuid.uuid4(),
                decision_id=decision_id,
                supplier_id=supplier_id,
                product_id=product_id,
                location_id=location_id,
                quantity=quantity,
                priority=priority,
                status="suggested",
            )
            db.add(po)
            await db.commit()
            logger.info(
                "po.created",
                po_id=str(po.po_id),
                product_id=product_id,
                location_id=location_id,
                quantity=quantity,
                priority=priority,
            )
            return str(po.po_id)


class SqlTransferSink(TransferSink):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def emit_transfer_recommendation(
        self,
        from_location_id: str,
        to_location_id: str,
        product_id: str,
        quantity: int,
        priority: str,
        decision_id: str | None = None,
    ) -> str:
        async with _translate_errors("emit_transfer_recommendation"), self.session_factory() as db:
            transfer = models.StockTransfer(
                transfer_id=uuid.uuid4(),
                decision_id=decision_id,
                product_id=product_id,
                from_location_id=from_location_id,
                to_location_id=to_location_id,
                quantity=quantity,
                priority=priority,
                status="requested",
                reason_code="rebalance",
            )
            db.add(transfer)
            await db.commit()
            logger.info(
                "transfer.created",
                transfer_id=str(transfer.transfer_id),
                from_location=from_location_id,
                to_location=to_location_id,
                product=product_id,
                quantity=quantity,
            )
            return str(transfer.transfer_id)


class SqlOutcomeSink(OutcomeSink):
    """One row per decision id; a repeated outcome for the same id is ignored."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

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
        async with self.session_factory() as db:
            db.add(
                models.DecisionOutcome(
                    decision_id=decision_id,
                    run_id=run_id,
                    decision_type=decision_type,
                    status=status,
                    impact=impact,
                    error=error,
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info("outcome.duplicate", decision_id=decision_id)
            except SQLAlchemyError as exc:
                raise ExternalDependencyError(f"emit_decision_outcome failed: {exc}") from exc


class SqlAlertSink(AlertSink):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def emit_alert(self, alert_type: str, severity: str, payload: dict[str, Any]) -> None:
        async with _translate_errors("emit_alert"), self.session_factory() as db:
            db.add(
                models.Alert(
                    location_id=payload.get("location_id"),
                    product_id=payload.get("product_id"),
                    alert_type=alert_type,
                    severity=severity,
                    message=payload.get("message", ""),
                    alert_metadata=payload,
                )
            )
            await db.commit()
