"""
Collaborator package.

The engine reads inventory through an InventoryStore and writes side
effects through sinks:
  - integrations.sql_store  SQLAlchemy async (production)
  - integrations.memory     in-process (replay, simulation, tests)

Usage:
    from integrations.sql_store import SqlInventoryStore
    from db.session import AsyncSessionLocal

    store = SqlInventoryStore(AsyncSessionLocal)
    stock = await store.get_current_stock("P-100", "LAG-01")
"""

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

__all__ = [
    "AlertSink",
    "CatalogEntry",
    "ConsumptionSample",
    "InventoryStore",
    "LocationRef",
    "LocationStock",
    "OutcomeSink",
    "PurchaseOrderSink",
    "TransferSink",
]
