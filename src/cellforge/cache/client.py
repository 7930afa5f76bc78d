"""Metric cache: redis when available, in-process TTL store otherwise.

the cache is an optimization, never a dependency. if redis is down every
call quietly falls through to the in-memory store and the metric still
resolves - just slower and per-process.

keys look like:

    metric:org_1:dims:{"region":"EU"}|end:"2024-04-01"|grain:"month"|...

params are sorted by name and values json-encoded with sorted keys, so the
same request always lands on the same key no matter how the caller
ordered its dimension map.
"""

import asyncio
import fnmatch
import json
import time
from collections.abc import Callable
from datetime import date
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from cellforge.config import Settings
from cellforge.errors import CacheError
from cellforge.logging import get_logger
from cellforge.models.time_context import Grain

logger = get_logger(__name__)


class InMemoryCache:
    """Process-local TTL store.

    expiry is checked lazily on read; the optional sweeper only keeps memory
    from growing with keys nobody reads again.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[str, tuple[Any, float]] = {}
        self._clock = clock
        self._sweeper: asyncio.Task | None = None

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expiry = entry
        if self._clock() > expiry:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._entries[key] = (value, self._clock() + ttl_seconds)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob pattern (redis MATCH syntax, roughly)."""
        doomed = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expiry) in self._entries.items() if now > expiry]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def start_sweeper(self, interval_seconds: float = 60.0) -> asyncio.Task:
        """Start the periodic purge on the running loop. Idempotent."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep(interval_seconds))
        return self._sweeper

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            purged = self.purge_expired()
            if purged:
                logger.debug("cache_sweep", purged=purged)


def build_key(type_: str, org_id: str, params: dict[str, Any]) -> str:
    """Deterministic composite key: type:org:k1:v1|k2:v2, params sorted by name."""
    parts = [
        f"{name}:{json.dumps(params[name], sort_keys=True, default=str, separators=(',', ':'))}"
        for name in sorted(params)
    ]
    return f"{type_}:{org_id}:{'|'.join(parts)}"


class CacheClient:
    """Keyed get/set/delete with TTL over a primary store and a memory fallback."""

    def __init__(
        self,
        primary: aioredis.Redis | None = None,
        ttl_seconds: int = 900,
        memory: InMemoryCache | None = None,
    ) -> None:
        self.primary = primary
        self.ttl_seconds = ttl_seconds
        self.memory = memory or InMemoryCache()

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheClient":
        primary = None
        if settings.redis_url:
            # from_url doesn't connect yet - a dead redis shows up on first use
            primary = aioredis.from_url(settings.redis_url, decode_responses=True)
            logger.info("cache_redis_configured")
        else:
            logger.info("cache_memory_only")
        return cls(primary=primary, ttl_seconds=settings.cache_ttl_seconds)

    build_key = staticmethod(build_key)

    async def get(self, key: str) -> Any | None:
        if self.primary is not None:
            try:
                value = await self._primary_get(key)
            except CacheError as e:
                logger.warning("cache_primary_get_failed", key=key, error=str(e))
            else:
                if value is not None:
                    return value
        # also covers values written only to memory while the primary was down
        return self.memory.get(key)

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds or self.ttl_seconds
        if self.primary is not None:
            try:
                await self._primary_set(key, value, ttl)
                return
            except CacheError as e:
                logger.warning("cache_primary_set_failed", key=key, error=str(e))
        self.memory.set(key, value, ttl)

    async def delete(self, key: str) -> None:
        self.memory.delete(key)
        if self.primary is not None:
            try:
                await self.primary.delete(key)
            except (RedisError, OSError) as e:
                logger.warning("cache_primary_delete_failed", key=key, error=str(e))

    async def _primary_get(self, key: str) -> Any | None:
        try:
            raw = await self.primary.get(key)
        except (RedisError, OSError) as e:
            raise CacheError(f"redis get failed: {e}") from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            raise CacheError(f"undecodable cache value for {key}") from e

    async def _primary_set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.primary.set(key, json.dumps(value, default=str), ex=ttl)
        except (RedisError, OSError) as e:
            raise CacheError(f"redis set failed: {e}") from e

    # metric helpers

    @staticmethod
    def metric_key(
        org_id: str,
        metric: str,
        grain: Grain | str,
        start: date | str,
        end: date | str,
        dimensions: dict[str, Any] | None = None,
    ) -> str:
        return build_key(
            "metric",
            org_id,
            {
                "metric": metric,
                "grain": Grain(grain).value,
                "start": str(start),
                "end": str(end),
                "dims": dimensions or {},
            },
        )

    async def get_metric(
        self,
        org_id: str,
        metric: str,
        grain: Grain | str,
        start: date | str,
        end: date | str,
        dimensions: dict[str, Any] | None = None,
    ) -> float | None:
        value = await self.get(self.metric_key(org_id, metric, grain, start, end, dimensions))
        return float(value) if value is not None else None

    async def set_metric(
        self,
        org_id: str,
        metric: str,
        grain: Grain | str,
        start: date | str,
        end: date | str,
        value: float,
        dimensions: dict[str, Any] | None = None,
    ) -> None:
        await self.set(self.metric_key(org_id, metric, grain, start, end, dimensions), value)

    async def invalidate_metric(self, org_id: str, metric: str) -> int:
        """Drop every cached value of one metric, all grains and windows.

        covers both live fetches (metric:) and METRIC() cells (metric_cell:).

        returns how many keys were removed across both stores.
        """
        # the metric param sorts after dims and end, so match it anywhere
        pattern = f"metric*:{org_id}:*metric:{json.dumps(metric)}*"
        removed = self.memory.delete_pattern(pattern)

        if self.primary is not None:
            try:
                keys = [key async for key in self.primary.scan_iter(match=pattern)]
                if keys:
                    removed += await self.primary.delete(*keys)
            except (RedisError, OSError) as e:
                logger.warning("cache_invalidate_failed", metric=metric, error=str(e))

        logger.info("cache_invalidated", org_id=org_id, metric=metric, removed=removed)
        return removed

    async def aclose(self) -> None:
        await self.memory.stop_sweeper()
        if self.primary is not None:
            await self.primary.aclose()
