"""
Forecast Cache — Cross-run key/value store for DemandForecasts.

Forecasts are derived data: a cache entry is only ever a shortcut for a
recomputation that would produce the same bytes. The key carries the
product, location, as-of date and a digest of the samples the forecast was
built from, so any new sample invalidates the entry.

TTL semantics: an entry older than its ttl_seconds is never returned.
"""

import json
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from datetime import date

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from core.config import get_settings
from core.errors import ExternalDependencyError
from integrations.base import ConsumptionSample
from ml.forecaster import DemandForecast, samples_digest

logger = structlog.get_logger()

KEY_PREFIX = "forecast"


def forecast_cache_key(
    product_id: str,
    location_id: str,
    as_of: date,
    samples: Sequence[ConsumptionSample],
    horizon_days: int,
) -> str:
    return f"{KEY_PREFIX}:{product_id}:{location_id}:{as_of.isoformat()}:{horizon_days}:{samples_digest(samples)}"


def default_ttl_seconds() -> int:
    return int(get_settings().forecast_cache_ttl_hours * 3600)


class ForecastCache(ABC):
    @abstractmethod
    async def get(self, key: str) -> DemandForecast | None:
        ...

    @abstractmethod
    async def set(self, key: str, forecast: DemandForecast, ttl_seconds: int | None = None) -> None:
        ...


class InMemoryForecastCache(ForecastCache):
    """
    Per-process cache. `clock` is injectable for tests.

    Expired entries are swept on every write, and at most `max_entries`
    are held (oldest write evicted first).
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, max_entries: int = 10_000):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._clock = clock
        self.max_entries = max_entries
        self._entries: dict[str, tuple[float, DemandForecast]] = {}
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> DemandForecast | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        expires_at, forecast = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return forecast

    async def set(self, key: str, forecast: DemandForecast, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else default_ttl_seconds()
        if ttl <= 0:
            return
        now = self._clock()
        self._sweep(now)
        self._entries.pop(key, None)
        while len(self._entries) >= self.max_entries:
            del self._entries[next(iter(self._entries))]
        self._entries[key] = (now + ttl, forecast)

    def _sweep(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class RedisForecastCache(ForecastCache):
    """Shared cache across workers. Expiry is enforced by Redis (SETEX)."""

    def __init__(self, redis_url: str | None = None, client: aioredis.Redis | None = None):
        self._client = client or aioredis.from_url(redis_url or get_settings().redis_url)

    async def get(self, key: str) -> DemandForecast | None:
        try:
            raw = await self._client.get(key)
        except RedisError as exc:
            raise ExternalDependencyError(f"forecast cache read failed: {exc}") from exc
        if raw is None:
            return None
        try:
            return DemandForecast.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("forecast_cache.corrupt_entry", key=key)
            return None

    async def set(self, key: str, forecast: DemandForecast, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else default_ttl_seconds()
        if ttl <= 0:
            return
        try:
            await self._client.setex(key, ttl, json.dumps(forecast.to_dict()))
        except RedisError as exc:
            raise ExternalDependencyError(f"forecast cache write failed: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()
