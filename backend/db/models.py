"""
Replenishment Engine Database Models

Tables:
  Reference (read-only to the engine):
  1. suppliers            - Supplier terms (lead time, minimum order, order cost)
  2. products             - Product catalog (unit cost/price, category)
  3. locations            - Active stocking locations (+ region)

  Facts:
  4. consumption_samples  - Append-only consumption per product/location/day
  5. location_stock       - The only mutable shared state (on hand, on order)

  Engine output:
  6. purchase_orders      - POs emitted by reorder decisions
  7. stock_transfers      - Transfers emitted by transfer decisions
  8. alerts               - Alerts handed to the notification layer
  9. decision_outcomes    - One outcome row per executed/failed decision
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# ─── 1. Suppliers ───────────────────────────────────────────────────────────


class Supplier(Base):
    __tablename__ = "suppliers"

    supplier_id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    lead_time_days = Column(Integer, nullable=False, default=7)
    min_order_quantity = Column(Integer, nullable=False, default=50)
    cost_per_order = Column(Float)  # Fixed cost per PO; engine default when null
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("lead_time_days > 0", name="ck_supplier_lead_time_positive"),
        CheckConstraint("min_order_quantity >= 0", name="ck_supplier_min_order_non_negative"),
    )

    products = relationship("Product", back_populates="supplier")


# ─── 2. Products ────────────────────────────────────────────────────────────


class Product(Base):
    __tablename__ = "products"

    product_id = Column(String(64), primary_key=True)
    sku = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    category = Column(String(100))
    unit_cost = Column(Float)
    unit_price = Column(Float)
    supplier_id = Column(String(64), ForeignKey("suppliers.supplier_id"), nullable=True)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_products_category", "category"),
        CheckConstraint("unit_cost >= 0", name="ck_product_cost_positive"),
        CheckConstraint("unit_price >= 0", name="ck_product_price_positive"),
    )

    supplier = relationship("Supplier", back_populates="products")


# ─── 3. Locations ───────────────────────────────────────────────────────────


class Location(Base):
    __tablename__ = "locations"

    location_id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    region = Column(String(100))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_locations_region", "region"),)


# ─── 4. Consumption Samples ────────────────────────────────────────────────


class ConsumptionSample(Base):
    __tablename__ = "consumption_samples"

    sample_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    product_id = Column(String(64), ForeignKey("products.product_id"), nullable=False)
    location_id = Column(String(64), ForeignKey("locations.location_id"), nullable=False)
    sample_date = Column(Date, nullable=False)
    quantity_consumed = Column(Float, nullable=False)
    source = Column(String(50), default="fulfillment")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_consumption_pair_date", "product_id", "location_id", "sample_date"),
        CheckConstraint("quantity_consumed >= 0", name="ck_consumption_non_negative"),
    )


# ─── 5. Location Stock ─────────────────────────────────────────────────────


class LocationStock(Base):
    __tablename__ = "location_stock"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    product_id = Column(String(64), ForeignKey("products.product_id"), nullable=False)
    location_id = Column(String(64), ForeignKey("locations.location_id"), nullable=False)
    current_quantity = Column(Integer, nullable=False, default=0)
    on_order_quantity = Column(Integer, nullable=False, default=0)
    max_capacity = Column(Integer)
    last_updated = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("product_id", "location_id", name="uq_location_stock_pair"),
        CheckConstraint("current_quantity >= 0", name="ck_location_stock_non_negative"),
        CheckConstraint("on_order_quantity >= 0", name="ck_location_stock_on_order_non_negative"),
    )


# ─── 6. Purchase Orders ────────────────────────────────────────────────────


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"

    po_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    decision_id = Column(String(64))
    product_id = Column(String(64), ForeignKey("products.product_id"), nullable=False)
    location_id = Column(String(64), ForeignKey("locations.location_id"), nullable=False)
    supplier_id = Column(String(64), ForeignKey("suppliers.supplier_id"), nullable=True)
    quantity = Column(Integer, nullable=False)
    priority = Column(String(20), nullable=False, default="normal")
    status = Column(String(20), nullable=False, default="suggested")
    suggested_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_po_location_status", "location_id", "status"),
        CheckConstraint("quantity > 0", name="ck_po_quantity_positive"),
        CheckConstraint("priority IN ('urgent', 'normal')", name="ck_po_priority"),
        CheckConstraint(
            "status IN ('suggested', 'approved', 'ordered', 'received', 'cancelled')", name="ck_po_status"
        ),
    )


# ─── 7. Stock Transfers ────────────────────────────────────────────────────


class StockTransfer(Base):
    """Location-to-location movements for surplus → deficit rebalancing."""

    __tablename__ = "stock_transfers"

    transfer_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    decision_id = Column(String(64))
    product_id = Column(String(64), ForeignKey("products.product_id"), nullable=False)
    from_location_id = Column(String(64), ForeignKey("locations.location_id"), nullable=False)
    to_location_id = Column(String(64), ForeignKey("locations.location_id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    priority = Column(String(20), nullable=False, default="medium")
    status = Column(String(20), nullable=False, default="requested")
    reason_code = Column(String(30), default="rebalance")
    requested_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_transfers_status", "status"),
        CheckConstraint("quantity > 0", name="ck_transfer_quantity_positive"),
        CheckConstraint(
            "status IN ('requested', 'approved', 'in_transit', 'received', 'cancelled')", name="ck_transfer_status"
        ),
    )


# ─── 8. Alerts ─────────────────────────────────────────────────────────────


class Alert(Base):
    __tablename__ = "alerts"

    alert_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    location_id = Column(String(64))
    product_id = Column(String(64))
    alert_type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False)
    message = Column(Text, nullable=False, default="")
    alert_metadata = Column("metadata", JSON, default={})
    status = Column(String(20), nullable=False, default="open")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_alerts_status", "status"),
        CheckConstraint(
            "alert_type IN ('stockout_predicted', 'risk_mitigation', 'decision_failed')",
            name="ck_alert_type",
        ),
        CheckConstraint("severity IN ('low', 'medium', 'high', 'critical')", name="ck_alert_severity"),
        CheckConstraint("status IN ('open', 'acknowledged', 'resolved', 'dismissed')", name="ck_alert_status"),
    )


# ─── 9. Decision Outcomes ──────────────────────────────────────────────────


class DecisionOutcome(Base):
    __tablename__ = "decision_outcomes"

    outcome_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    decision_id = Column(String(64), nullable=False, unique=True)
    run_id = Column(String(64))
    decision_type = Column(String(30))
    status = Column(String(20), nullable=False)
    impact = Column(JSON, default={})
    error = Column(Text)
    recorded_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_outcomes_run", "run_id"),
        CheckConstraint("status IN ('executed', 'failed')", name="ck_outcome_status"),
    )
