"""
Tests for the forecast cache (in-memory and Redis-backed).
"""

import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from core.cache import InMemoryForecastCache, RedisForecastCache, default_ttl_seconds, forecast_cache_key
from core.errors import ExternalDependencyError
from ml.forecaster import DemandForecaster


@pytest.fixture
def forecast(make_samples, as_of):
    return DemandForecaster(horizon_days=7).forecast("P1", "L1", make_samples("P1", "L1", [10.0] * 28), as_of)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.values: dict[str, tuple[int, str]] = {}

    async def get(self, key):
        if self.fail:
            raise RedisConnectionError("down")
        entry = self.values.get(key)
        return entry[1] if entry else None

    async def setex(self, key, ttl, value):
        if self.fail:
            raise RedisConnectionError("down")
        self.values[key] = (ttl, value)

    async def aclose(self):
        pass


# ── Keys ───────────────────────────────────────────────────────────────


class TestCacheKey:
    def test_includes_pair_and_date(self, make_samples, as_of):
        key = forecast_cache_key("P1", "L1", as_of, make_samples("P1", "L1", [1.0]), 30)
        assert key.startswith(f"forecast:P1:L1:{as_of.isoformat()}:30:")

    def test_new_sample_changes_key(self, make_samples, as_of):
        samples = make_samples("P1", "L1", [1.0, 2.0])
        more = make_samples("P1", "L1", [5.0, 1.0, 2.0])
        assert forecast_cache_key("P1", "L1", as_of, samples, 30) != forecast_cache_key("P1", "L1", as_of, more, 30)

    def test_horizon_changes_key(self, make_samples, as_of):
        samples = make_samples("P1", "L1", [1.0])
        assert forecast_cache_key("P1", "L1", as_of, samples, 30) != forecast_cache_key("P1", "L1", as_of, samples, 14)

    def test_default_ttl_within_a_day(self):
        assert 0 < default_ttl_seconds() <= 24 * 3600


# ── In-Memory ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestInMemoryCache:
    async def test_hit_and_miss(self, forecast):
        cache = InMemoryForecastCache()
        assert await cache.get("k") is None
        await cache.set("k", forecast, ttl_seconds=60)
        assert await cache.get("k") == forecast
        assert (cache.hits, cache.misses) == (1, 1)

    async def test_expired_entry_never_returned(self, forecast):
        clock = FakeClock()
        cache = InMemoryForecastCache(clock=clock)
        await cache.set("k", forecast, ttl_seconds=60)

        clock.now = 59.9
        assert await cache.get("k") == forecast
        clock.now = 60.0
        assert await cache.get("k") is None
        assert len(cache) == 0

    async def test_non_positive_ttl_not_stored(self, forecast):
        cache = InMemoryForecastCache()
        await cache.set("k", forecast, ttl_seconds=0)
        assert len(cache) == 0

    async def test_expired_entries_swept_on_write(self, forecast):
        """One write per day with a 1h TTL: yesterday's key is never read again."""
        clock = FakeClock()
        cache = InMemoryForecastCache(clock=clock)
        for day in range(100):
            clock.now = day * 86400.0
            await cache.set(f"forecast:P1:L1:day-{day}", forecast, ttl_seconds=3600)
            assert len(cache) <= 1

    async def test_capped_at_max_entries(self, forecast):
        cache = InMemoryForecastCache(max_entries=2)
        for key in ("a", "b", "c"):
            await cache.set(key, forecast, ttl_seconds=60)
        assert len(cache) == 2
        assert await cache.get("a") is None
        assert await cache.get("c") == forecast

    async def test_max_entries_must_be_positive(self):
        with pytest.raises(ValueError):
            InMemoryForecastCache(max_entries=0)


# ── Redis ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestRedisCache:
    async def test_roundtrip_with_ttl(self, forecast):
        client = FakeRedis()
        cache = RedisForecastCache(client=client)
        await cache.set("k", forecast, ttl_seconds=3600)
        assert client.values["k"][0] == 3600
        assert await cache.get("k") == forecast

    async def test_miss(self):
        assert await RedisForecastCache(client=FakeRedis()).get("missing") is None

    async def test_corrupt_entry_is_a_miss(self):
        client = FakeRedis()
        client.values["k"] = (60, json.dumps({"product_id": "P1"}))
        assert await RedisForecastCache(client=client).get("k") is None

    async def test_unreachable(self, forecast):
        cache = RedisForecastCache(client=FakeRedis(fail=True))
        with pytest.raises(ExternalDependencyError):
            await cache.get("k")
        with pytest.raises(ExternalDependencyError):
            await cache.set("k", forecast, ttl_seconds=60)
