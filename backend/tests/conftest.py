"""
Test Configuration — Fixtures for collaborators, SQL sessions and the API client.

In-memory collaborators cover the engine itself. SQL tests get a fresh
SQLite file per test so guarded UPDATEs and unique constraints behave like
they do against a real database.
"""

from datetime import date, timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from core.cache import InMemoryForecastCache
from db.session import Base, build_engine, build_sessionmaker
from integrations.base import CatalogEntry, ConsumptionSample, LocationRef
from integrations.memory import InMemoryInventoryStore, RecordingSinks

# Monday; the alternating 8/12 history below gives avg 10, volatility 0.2
AS_OF = date(2024, 1, 1)


def daily_samples(
    product_id: str,
    location_id: str,
    values: list[float],
    end: date = AS_OF,
) -> list[ConsumptionSample]:
    """One sample per day, the last one on end − 1."""
    start = end - timedelta(days=len(values))
    return [
        ConsumptionSample(
            product_id=product_id,
            location_id=location_id,
            sample_date=start + timedelta(days=i),
            quantity_consumed=qty,
        )
        for i, qty in enumerate(values)
    ]


def alternating_history(product_id: str, location_id: str, days: int = 90) -> list[ConsumptionSample]:
    return daily_samples(product_id, location_id, [8 if i % 2 == 0 else 12 for i in range(days)])


def catalog_entry(product_id: str = "P1", **overrides) -> CatalogEntry:
    fields = {
        "product_id": product_id,
        "sku": f"SKU-{product_id}",
        "name": f"Product {product_id}",
        "category": "Dairy",
        "unit_cost": 100.0,
        "unit_price": 150.0,
        "supplier_id": "S1",
        "lead_time_days": 7,
        "supplier_min_order": 50,
        "order_cost": None,
    }
    fields.update(overrides)
    return CatalogEntry(**fields)


@pytest.fixture
def as_of() -> date:
    return AS_OF


@pytest.fixture
def make_samples():
    return daily_samples


@pytest.fixture
def make_catalog():
    return catalog_entry


@pytest.fixture
def store() -> InMemoryInventoryStore:
    return InMemoryInventoryStore()


@pytest.fixture
def sinks() -> RecordingSinks:
    return RecordingSinks()


@pytest.fixture
def reorder_store(store) -> InMemoryInventoryStore:
    """One pair at L1: 50 on hand against ~10/day demand, 7 day lead time."""
    store.add_location("L1", region="north")
    store.add_product(catalog_entry("P1"))
    store.set_stock("P1", "L1", current_quantity=50)
    store.add_samples(alternating_history("P1", "L1"))
    return store


@pytest.fixture
def location() -> LocationRef:
    return LocationRef(location_id="L1", name="Downtown", region="north")


# ── SQL ───────────────────────────────────────────────────────────────────


@pytest.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database file with all tables."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'replenishment.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
async def seeded_sql(session_factory):
    """The reorder scenario persisted: supplier, product, location, stock and 90 days of samples."""
    from db import models

    async with session_factory() as db:
        db.add(models.Supplier(supplier_id="S1", name="Test Distributor", lead_time_days=7, min_order_quantity=50))
        db.add(models.Location(location_id="L1", name="Downtown", region="north"))
        await db.flush()
        db.add(
            models.Product(
                product_id="P1",
                sku="SKU-P1",
                name="Test Product",
                category="Dairy",
                unit_cost=100.0,
                unit_price=150.0,
                supplier_id="S1",
            )
        )
        await db.flush()
        db.add(models.LocationStock(product_id="P1", location_id="L1", current_quantity=50, on_order_quantity=0))
        for sample in alternating_history("P1", "L1"):
            db.add(
                models.ConsumptionSample(
                    product_id=sample.product_id,
                    location_id=sample.location_id,
                    sample_date=sample.sample_date,
                    quantity_consumed=sample.quantity_consumed,
                )
            )
        await db.commit()
    return session_factory


@pytest.fixture
def api_alert_sink() -> RecordingSinks:
    return RecordingSinks()


@pytest.fixture
async def client(seeded_sql, api_alert_sink):
    """Async test client with the session factory, alert sink and cache overridden."""
    from api.deps import get_alert_sink, get_db, get_forecast_cache
    from api.main import app

    alert_sink = api_alert_sink
    cache = InMemoryForecastCache()

    app.dependency_overrides[get_db] = lambda: seeded_sql
    app.dependency_overrides[get_alert_sink] = lambda: alert_sink
    app.dependency_overrides[get_forecast_cache] = lambda: cache

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
