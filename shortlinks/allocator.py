"""Short-code allocation for new links.

Flow Diagram — reserve()
========================
::
    ┌──────────────┐
    │ custom alias? │
    └──────┬───────┘
     YES   │   NO
    ┌──────┴──────────────┐
    ▼                     ▼
┌──────────────┐   ┌──────────────┐
│ lower(code)  │   │ nanoid code  │◄──┐
│ check        │   └──────┬───────┘   │ collision
└──────┬───────┘          ▼           │ (bounded)
 taken?│           ┌──────────────┐   │
   YES → Alias     │ exact check  ├───┘
   Conflict        └──────┬───────┘
       │ NO               │ free
       ▼                  ▼
    ShortLink (transient, not yet inserted)

Key Behaviours
===============
- Checks are advisory. Between a check and the insert another writer may take
  the same code; ShortLinkStore re-checks inside its transaction and asks for
  a fresh reservation when that happens.
- A taken custom alias fails fast; there is no fallback to generation.
- Generation draws from nanoid's cryptographically secure source.
"""

import asyncio
import datetime
import logging
from collections.abc import Callable

from nanoid import generate
from prometheus_client import Counter
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortlinks.errors import AliasConflict, AllocationExhausted, StorageError
from shortlinks.models import ShortLink, utcnow

__all__ = ["ALPHABET", "AliasAllocator", "generate_short_code"]

logger = logging.getLogger(__name__)

ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

ALLOCATION_COLLISIONS_TOTAL = Counter(
    "shortlinks_allocation_collisions_total",
    "Generated short codes that were already taken at check time",
)
STORE_READS_TOTAL = Counter(
    "shortlinks_allocator_store_reads_total",
    "Existence checks issued by the alias allocator",
)


def generate_short_code(length: int) -> str:
    assert isinstance(length, int) and length > 0, f"length must be a positive integer, got {length!r}"
    return generate(ALPHABET, length)


class AliasAllocator:
    """Produces short codes that are free at check time."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        code_length: int = 8,
        max_attempts: int = 5,
        store_timeout: float = 2.0,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        assert max_attempts > 0, "max_attempts must be positive"
        self._session_factory = session_factory
        self._code_length = code_length
        self.max_attempts = max_attempts
        self._store_timeout = store_timeout
        self._clock = clock

    async def reserve(
        self,
        custom_alias: str | None,
        long_url: str,
        topic: str | None = None,
        owner_id: str | None = None,
        *,
        attempts: int | None = None,
    ) -> ShortLink:
        """Return an unsaved ShortLink whose code was free when checked.

        ``attempts`` caps how many generated candidates are tried; it defaults
        to ``max_attempts``. Custom aliases are checked once regardless.

        Raises:
            AliasConflict: ``custom_alias`` already exists, compared case-insensitively.
            AllocationExhausted: every generated candidate collided.
            StorageError: an existence check failed or timed out.
        """
        if custom_alias:
            if await self.alias_taken(custom_alias):
                raise AliasConflict(custom_alias)
            return self._build(custom_alias, long_url, topic, owner_id, is_custom=True)

        attempts = self.max_attempts if attempts is None else attempts
        for attempt in range(1, attempts + 1):
            candidate = self._generate_code()
            if not await self.code_taken(candidate):
                return self._build(candidate, long_url, topic, owner_id, is_custom=False)
            ALLOCATION_COLLISIONS_TOTAL.inc()
            logger.info(f"Generated code collided on attempt {attempt}/{attempts}")

        raise AllocationExhausted(attempts)

    async def alias_taken(self, alias: str) -> bool:
        return await self._exists(func.lower(ShortLink.code) == alias.lower())

    async def code_taken(self, code: str) -> bool:
        return await self._exists(ShortLink.code == code)

    def _generate_code(self) -> str:
        return generate_short_code(self._code_length)

    async def _exists(self, condition) -> bool:
        STORE_READS_TOTAL.inc()
        try:
            async with asyncio.timeout(self._store_timeout):
                async with self._session_factory() as session:
                    result = await session.execute(select(ShortLink.id).where(condition).limit(1))
                    return result.first() is not None
        except (SQLAlchemyError, TimeoutError) as exc:
            logger.error(f"Alias lookup failed: {exc!r}")
            raise StorageError("alias_lookup", retryable=True) from exc

    def _build(
        self,
        code: str,
        long_url: str,
        topic: str | None,
        owner_id: str | None,
        *,
        is_custom: bool,
    ) -> ShortLink:
        return ShortLink(
            code=code,
            long_url=long_url,
            custom_alias=code if is_custom else None,
            custom_alias_key=code.lower() if is_custom else None,
            is_custom=is_custom,
            topic=topic,
            owner_id=owner_id,
            created_at=self._clock(),
        )
