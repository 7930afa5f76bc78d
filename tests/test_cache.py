"""Tests for the metric cache."""

import asyncio
import fnmatch
import json
from datetime import date

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from cellforge.cache.client import CacheClient, InMemoryCache, build_key
from cellforge.config import Settings
from cellforge.models.time_context import Grain


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the cache client."""

    def __init__(self, fail: bool = False) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = fail
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("connection refused")

    async def get(self, key: str) -> str | None:
        self._check()
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self._check()
        self.data[key] = value
        self.ttls[key] = ex

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match: str | None = None):
        self._check()
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self) -> None:
        self.closed = True


class TestBuildKey:
    def test_dimension_order_independent(self):
        """Same dimensions in any order give the same key."""
        a = build_key("metric", "org_1", {"dims": {"a": "1", "b": "2"}, "metric": "rev"})
        b = build_key("metric", "org_1", {"metric": "rev", "dims": {"b": "2", "a": "1"}})
        assert a == b

    def test_key_shape(self):
        """type:org:k:v|k:v with params sorted by name."""
        key = build_key("metric", "org_1", {"start": "2024-01-01", "end": "2024-02-01"})
        assert key == 'metric:org_1:end:"2024-02-01"|start:"2024-01-01"'

    def test_different_values_differ(self):
        """Different params never collide."""
        assert build_key("m", "o", {"dims": {"a": 1}}) != build_key("m", "o", {"dims": {"a": 2}})

    def test_metric_key(self):
        """Metric keys accept dates and grain strings."""
        a = CacheClient.metric_key("org", "revenue", "month", date(2024, 1, 1), "2024-02-01")
        b = CacheClient.metric_key("org", "revenue", Grain.MONTH, "2024-01-01", date(2024, 2, 1))
        assert a == b


class TestInMemoryCache:
    def test_set_get(self):
        """Values round trip until they expire."""
        clock = FakeClock()
        cache = InMemoryCache(clock=clock)
        cache.set("k", 42, ttl_seconds=10)
        assert cache.get("k") == 42

        clock.now += 11
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_delete_pattern(self):
        """Glob patterns delete matching keys only."""
        cache = InMemoryCache()
        cache.set("metric:a:1", 1, 60)
        cache.set("metric:a:2", 2, 60)
        cache.set("other:a:1", 3, 60)
        assert cache.delete_pattern("metric:*") == 2
        assert cache.get("other:a:1") == 3

    def test_purge_expired(self):
        """Expired entries are purged without being read."""
        clock = FakeClock()
        cache = InMemoryCache(clock=clock)
        cache.set("old", 1, 5)
        cache.set("new", 2, 50)
        clock.now += 10
        assert cache.purge_expired() == 1
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_sweeper(self):
        """The background sweeper purges expired keys."""
        clock = FakeClock()
        cache = InMemoryCache(clock=clock)
        cache.set("k", 1, 5)
        clock.now += 10

        cache.start_sweeper(interval_seconds=0.01)
        await asyncio.sleep(0.05)
        assert len(cache) == 0
        await cache.stop_sweeper()


class TestCacheClient:
    @pytest.mark.asyncio
    async def test_memory_only(self):
        """Works without a primary store."""
        client = CacheClient()
        await client.set("k", {"v": 1})
        assert await client.get("k") == {"v": 1}
        assert await client.get("missing") is None

    @pytest.mark.asyncio
    async def test_metric_helpers(self):
        """Metric values come back as floats."""
        client = CacheClient()
        await client.set_metric("org", "revenue", "month", "2024-01-01", "2024-02-01", 325)
        value = await client.get_metric("org", "revenue", "month", "2024-01-01", "2024-02-01")
        assert value == 325.0
        missing = await client.get_metric("org", "revenue", "month", "2024-02-01", "2024-03-01")
        assert missing is None

    @pytest.mark.asyncio
    async def test_primary_used(self):
        """Values go to the primary as json with the TTL."""
        redis = FakeRedis()
        client = CacheClient(primary=redis, ttl_seconds=900)
        await client.set("k", 1.5)
        assert json.loads(redis.data["k"]) == 1.5
        assert redis.ttls["k"] == 900
        assert len(client.memory) == 0
        assert await client.get("k") == 1.5

    @pytest.mark.asyncio
    async def test_primary_down_degrades_to_memory(self):
        """A dead primary never surfaces: memory takes over."""
        client = CacheClient(primary=FakeRedis(fail=True))
        await client.set("k", 7)
        assert await client.get("k") == 7
        assert len(client.memory) == 1

    @pytest.mark.asyncio
    async def test_primary_miss_checks_memory(self):
        """Values written while the primary was down stay readable."""
        redis = FakeRedis(fail=True)
        client = CacheClient(primary=redis)
        await client.set("k", 7)
        redis.fail = False
        assert await client.get("k") == 7

    @pytest.mark.asyncio
    async def test_undecodable_primary_value(self):
        """Garbage in the primary is treated as a miss."""
        redis = FakeRedis()
        redis.data["k"] = "{not json"
        client = CacheClient(primary=redis)
        assert await client.get("k") is None

    @pytest.mark.asyncio
    async def test_delete_both_stores(self):
        """Delete clears primary and memory."""
        redis = FakeRedis()
        client = CacheClient(primary=redis)
        await client.set("k", 1)
        client.memory.set("k", 1, 60)
        await client.delete("k")
        assert "k" not in redis.data
        assert client.memory.get("k") is None

    @pytest.mark.asyncio
    async def test_invalidate_metric(self):
        """Only the named metric's keys are dropped."""
        redis = FakeRedis()
        client = CacheClient(primary=redis)
        await client.set_metric("org", "revenue", "month", "2024-01-01", "2024-02-01", 1)
        await client.set_metric("org", "revenue", "quarter", "2024-01-01", "2024-04-01", 2)
        await client.set_metric("org", "orders", "month", "2024-01-01", "2024-02-01", 3)
        client.memory.set(client.metric_key("org", "revenue", "day", "a", "b"), 4, 60)

        removed = await client.invalidate_metric("org", "revenue")
        assert removed == 3
        assert len(redis.data) == 1
        assert await client.get_metric("org", "orders", "month", "2024-01-01", "2024-02-01") == 3

    @pytest.mark.asyncio
    async def test_aclose(self):
        """Closing stops the sweeper and the primary."""
        redis = FakeRedis()
        client = CacheClient(primary=redis)
        client.memory.start_sweeper(60)
        await client.aclose()
        assert redis.closed

    def test_from_settings_memory_only(self):
        """No redis url means no primary."""
        client = CacheClient.from_settings(Settings(redis_url=None, cache_ttl_seconds=30))
        assert client.primary is None
        assert client.ttl_seconds == 30

    @pytest.mark.asyncio
    async def test_invalidate_metric_covers_cells(self):
        """METRIC() cell values go with the metric's live values."""
        client = CacheClient()
        cell_key = build_key(
            "metric_cell", "org", {"metric": "revenue", "start": "a", "end": "b", "dims": {}}
        )
        other_key = build_key("metric_cell", "org", {"metric": "revenue_eu", "dims": {}})
        await client.set(cell_key, 1)
        await client.set(other_key, 2)

        assert await client.invalidate_metric("org", "revenue") == 1
        assert await client.get(cell_key) is None
        assert await client.get(other_key) == 2
