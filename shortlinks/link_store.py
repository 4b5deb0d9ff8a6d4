"""Transactional creation and lookup of short links.

Flow Diagram — create()
=======================
::
    ┌─────────────┐
    │ allocator.  │◄──────────────────────┐
    │ reserve()   │                       │ generated code taken
    └──────┬──────┘                       │ (bounded by max_attempts)
           ▼                              │
    ┌─────────────────────────────┐       │
    │ BEGIN                       │       │
    │  re-check alias in txn ─────┼───────┤
    │  INSERT short_links         │       │
    │  flush (unique index) ──────┼───────┘
    │ COMMIT                      │
    └──────┬──────────────────────┘
           ▼
    ┌─────────────┐
    │ SETEX code  │  best-effort, 1 h TTL
    │ → long_url  │
    └─────────────┘

Key Behaviours
===============
- The in-transaction re-check plus the unique indexes are what guarantee
  uniqueness; the allocator's check only narrows the race window.
- A custom alias lost to a concurrent writer surfaces as AliasConflict.
- Database failures roll back and surface as StorageError, never retried.
- Cache population failures are logged and ignored.
"""

import asyncio
import logging
import time

from prometheus_client import Counter, Histogram
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortlinks.allocator import AliasAllocator
from shortlinks.cache import FastCache
from shortlinks.enums import RequestStatus
from shortlinks.errors import AliasConflict, AllocationExhausted, ShortLinkError, StorageError
from shortlinks.models import ShortLink

__all__ = ["ShortLinkStore"]

logger = logging.getLogger(__name__)

LINK_CREATION_REQUESTS_TOTAL = Counter(
    "shortlinks_creation_requests_total",
    "Total short link creation attempts",
    ["status"],
)
LINK_CREATION_DURATION = Histogram(
    "shortlinks_creation_duration_seconds",
    "Time taken to create short links",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)
LATE_CONFLICTS_TOTAL = Counter(
    "shortlinks_late_conflicts_total",
    "Codes found taken inside the insert transaction after a clean check",
)
DATABASE_WRITES_TOTAL = Counter(
    "shortlinks_database_writes_total",
    "Total short link rows committed",
)
DATABASE_READS_TOTAL = Counter(
    "shortlinks_database_reads_total",
    "Total short link lookups against the store",
)


class ShortLinkStore:
    """Owns the write path for ShortLink rows and the resolution cache entry."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: FastCache,
        allocator: AliasAllocator,
        *,
        cache_ttl: int = 3600,
        store_timeout: float = 2.0,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._allocator = allocator
        self.cache_ttl = cache_ttl
        self._store_timeout = store_timeout

    async def create(
        self,
        long_url: str,
        custom_alias: str | None = None,
        topic: str | None = None,
        owner_id: str | None = None,
    ) -> ShortLink:
        """Persist a new short link and populate the resolution cache.

        Raises:
            AliasConflict: the custom alias is taken, possibly by a concurrent writer.
            AllocationExhausted: no generated code survived the retry budget.
            StorageError: the store failed or timed out; nothing was written.
        """
        start_time = time.perf_counter()
        try:
            link = await self._create_with_retry(long_url, custom_alias, topic, owner_id)
        except ShortLinkError as exc:
            LINK_CREATION_DURATION.observe(time.perf_counter() - start_time)
            LINK_CREATION_REQUESTS_TOTAL.labels(status=_status_for(exc)).inc()
            raise

        await self.populate_cache(link.code, link.long_url)

        duration = time.perf_counter() - start_time
        LINK_CREATION_DURATION.observe(duration)
        LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
        logger.info(f"Short link created: {link.code} in {duration:.3f}s")
        return link

    async def find_long_url(self, code: str) -> str | None:
        """Authoritative lookup; exact, case-sensitive match on code."""
        DATABASE_READS_TOTAL.inc()
        try:
            async with asyncio.timeout(self._store_timeout):
                async with self._session_factory() as session:
                    result = await session.execute(select(ShortLink.long_url).where(ShortLink.code == code))
                    return result.scalar_one_or_none()
        except (SQLAlchemyError, TimeoutError) as exc:
            logger.error(f"Link lookup failed for {code}: {exc!r}")
            raise StorageError("find_long_url", retryable=True) from exc

    async def populate_cache(self, code: str, long_url: str) -> None:
        if not await self._cache.set(code, long_url, self.cache_ttl):
            logger.warning(f"Resolution cache not populated for {code}")

    async def _create_with_retry(
        self,
        long_url: str,
        custom_alias: str | None,
        topic: str | None,
        owner_id: str | None,
    ) -> ShortLink:
        max_attempts = self._allocator.max_attempts
        # One budget covers both check-time collisions and insert-time conflicts.
        for attempt in range(1, max_attempts + 1):
            try:
                link = await self._allocator.reserve(custom_alias, long_url, topic, owner_id, attempts=1)
            except AllocationExhausted:
                continue
            if await self._insert(link):
                return link
            LATE_CONFLICTS_TOTAL.inc()
            if link.is_custom:
                raise AliasConflict(custom_alias)
            logger.warning(f"Code {link.code} taken at insert time, retrying ({attempt}/{max_attempts})")
        raise AllocationExhausted(max_attempts)

    async def _insert(self, link: ShortLink) -> bool:
        """Insert inside one transaction; False when the code turned out to be taken."""
        try:
            async with asyncio.timeout(self._store_timeout):
                async with self._session_factory() as session:
                    async with session.begin():
                        if await self._taken_in_transaction(session, link):
                            return False
                        session.add(link)
                        await session.flush()
        except IntegrityError:
            return False
        except (SQLAlchemyError, TimeoutError) as exc:
            logger.error(f"Short link insert failed for {link.code}: {exc!r}")
            raise StorageError("create") from exc
        DATABASE_WRITES_TOTAL.inc()
        return True

    @staticmethod
    async def _taken_in_transaction(session: AsyncSession, link: ShortLink) -> bool:
        if link.is_custom:
            condition = func.lower(ShortLink.code) == link.code.lower()
        else:
            condition = ShortLink.code == link.code
        result = await session.execute(select(ShortLink.id).where(condition).limit(1))
        return result.first() is not None


def _status_for(exc: ShortLinkError) -> RequestStatus:
    if isinstance(exc, AliasConflict):
        return RequestStatus.CONFLICT
    if isinstance(exc, AllocationExhausted):
        return RequestStatus.EXHAUSTED
    return RequestStatus.ERROR
