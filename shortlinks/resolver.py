"""Short-code resolution with cache-aside lookup and redirect event logging.

Flow Diagram — resolve()
========================
::
    ┌─────────────┐
    │ GET code     │  Redis (timeout → treated as miss)
    └──────┬──────┘
    HIT?  │
    ┌─────┴─────┐
    │ NO         │ YES
    ▼            │
┌─────────┐      │
│ SELECT  │      │
│ store   │      │
└────┬────┘      │
 found?          │
 NO → NotFound   │
     ▼           │
┌─────────┐      │
│ SETEX   │      │
│ 1 h TTL │      │
└────┬────┘      │
     └─────┬─────┘
           ▼
    ┌─────────────┐
    │ INSERT      │  best-effort, bounded by EVENT_LOG_TIMEOUT
    │ redirect_   │
    │ events      │
    └──────┬──────┘
           ▼
        long_url

Key Behaviours
===============
- Cache hits are served without touching the store. ShortLink rows are
  immutable, so a hit can be missing after expiry but never wrong.
- Exactly one RedirectEvent insert is attempted per successful resolution.
- A failed or slow event insert is logged and counted; the redirect still
  succeeds. A failing geo lookup stores the event without geo data.
"""

import asyncio
import datetime
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

from prometheus_client import Counter, Histogram
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortlinks.cache import FastCache
from shortlinks.enums import CacheStatus, RequestStatus
from shortlinks.errors import NotFound
from shortlinks.link_store import ShortLinkStore
from shortlinks.models import RedirectEvent, utcnow

__all__ = ["GeoLookup", "RedirectResolver", "Visitor", "no_geo"]

logger = logging.getLogger(__name__)

GeoLookup = Callable[[Optional[str]], Optional[dict[str, Any]]]

RESOLUTION_REQUESTS_TOTAL = Counter(
    "shortlinks_resolution_requests_total",
    "Total short code resolutions",
    ["status", "cache_hit"],
)
RESOLUTION_DURATION = Histogram(
    "shortlinks_resolution_duration_seconds",
    "Time taken to resolve short codes",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25],
)
REDIRECT_EVENTS_TOTAL = Counter(
    "shortlinks_redirect_events_total",
    "Redirect events appended to the store",
    ["status"],
)
GEO_LOOKUP_FAILURES_TOTAL = Counter(
    "shortlinks_geo_lookup_failures_total",
    "Geo lookups that raised and were stored as empty",
)


@dataclass(frozen=True)
class Visitor:
    """Caller metadata captured on each redirect."""

    user_agent: str | None = None
    source_ip: str | None = None


def no_geo(ip: str | None) -> dict[str, Any] | None:
    return None


class RedirectResolver:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: FastCache,
        link_store: ShortLinkStore,
        *,
        geo_lookup: GeoLookup = no_geo,
        event_timeout: float = 1.0,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._link_store = link_store
        self._geo_lookup = geo_lookup
        self._event_timeout = event_timeout
        self._clock = clock

    async def resolve(self, code: str, visitor: Visitor | None = None) -> str:
        """Return the long URL for ``code`` and log the redirect.

        Raises:
            NotFound: no ShortLink has this code.
            StorageError: the store failed or timed out on a cache miss (retryable).
        """
        start_time = time.perf_counter()
        long_url = await self._cache.get(code)
        cache_hit = CacheStatus.HIT if long_url is not None else CacheStatus.MISS

        if long_url is None:
            long_url = await self._link_store.find_long_url(code)
            if long_url is None:
                RESOLUTION_REQUESTS_TOTAL.labels(status=RequestStatus.NOT_FOUND, cache_hit=cache_hit).inc()
                raise NotFound(code)
            await self._link_store.populate_cache(code, long_url)

        await self._log_redirect(code, visitor or Visitor())

        RESOLUTION_DURATION.observe(time.perf_counter() - start_time)
        RESOLUTION_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS, cache_hit=cache_hit).inc()
        return long_url

    async def _log_redirect(self, code: str, visitor: Visitor) -> None:
        try:
            async with asyncio.timeout(self._event_timeout):
                await self._insert_event(code, visitor)
        except (SQLAlchemyError, TimeoutError) as exc:
            REDIRECT_EVENTS_TOTAL.labels(status="failed").inc()
            logger.error(f"Redirect event for {code} not recorded: {exc!r}")
            return
        REDIRECT_EVENTS_TOTAL.labels(status="recorded").inc()

    async def _insert_event(self, code: str, visitor: Visitor) -> None:
        event = RedirectEvent(
            alias=code,
            user_agent=visitor.user_agent,
            source_ip=visitor.source_ip,
            geo=self._lookup_geo(code, visitor.source_ip),
            occurred_at=self._clock(),
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(event)

    def _lookup_geo(self, code: str, ip: str | None) -> dict[str, Any] | None:
        try:
            return self._geo_lookup(ip)
        except Exception as exc:
            GEO_LOOKUP_FAILURES_TOTAL.inc()
            logger.warning(f"Geo lookup failed for redirect of {code}: {exc!r}")
            return None
