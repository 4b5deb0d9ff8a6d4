"""Timeout-bounded wrapper over the shared Redis client.

The cache is a discardable projection of the relational store. Every call is
bounded by ``CACHE_TIMEOUT_SECONDS``; a timeout or Redis failure becomes a
``CacheError`` internally and is downgraded here to a miss (reads) or a
``False`` result (writes), so no caller ever fails because Redis did.
"""

import asyncio
import logging

import redis.asyncio as redis
from prometheus_client import Counter
from redis.exceptions import RedisError

from shortlinks.errors import CacheError

__all__ = ["FastCache"]

logger = logging.getLogger(__name__)

CACHE_OPERATIONS_TOTAL = Counter(
    "shortlinks_cache_operations_total",
    "Cache operations issued against Redis",
    ["operation"],
)
CACHE_ERRORS_TOTAL = Counter(
    "shortlinks_cache_errors_total",
    "Cache operations that failed or timed out and were downgraded",
    ["operation"],
)


class FastCache:
    """Key-value cache with TTL and graceful degradation."""

    def __init__(self, client: redis.Redis, timeout: float) -> None:
        self._client = client
        self._timeout = timeout

    async def _call(self, operation: str, coro):
        CACHE_OPERATIONS_TOTAL.labels(operation=operation).inc()
        try:
            async with asyncio.timeout(self._timeout):
                return await coro
        except (RedisError, TimeoutError, OSError) as exc:
            CACHE_ERRORS_TOTAL.labels(operation=operation).inc()
            raise CacheError(operation) from exc

    async def get(self, key: str) -> str | None:
        try:
            return await self._call("get", self._client.get(key))
        except CacheError as exc:
            logger.warning(f"Cache read failed for {key}, falling back: {exc.__cause__!r}")
            return None

    async def set(self, key: str, value: str, ttl: int) -> bool:
        try:
            await self._call("setex", self._client.setex(key, ttl, value))
            return True
        except CacheError as exc:
            logger.warning(f"Cache write failed for {key}, skipping: {exc.__cause__!r}")
            return False

    async def ping(self) -> None:
        """Raise ``CacheError`` when Redis is unreachable; used by health checks."""
        await self._call("ping", self._client.ping())
