"""
API Dependencies

Dependency injection for sessions, alert delivery and the forecast cache.
Every provider can be swapped with app.dependency_overrides.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts.engine import FanOutAlertSink, RedisAlertSink
from core.cache import ForecastCache, InMemoryForecastCache
from db.session import AsyncSessionLocal
from integrations.base import AlertSink
from integrations.sql_store import SqlAlertSink

_forecast_cache = InMemoryForecastCache()


def get_db() -> async_sessionmaker[AsyncSession]:
    """Session factory the SQL collaborators open short transactions from."""
    return AsyncSessionLocal


def get_alert_sink(db: async_sessionmaker[AsyncSession] = Depends(get_db)) -> AlertSink:
    return FanOutAlertSink(SqlAlertSink(db), RedisAlertSink())


def get_forecast_cache() -> ForecastCache:
    return _forecast_cache
