"""Trailing-window rate limiter gating link creation.

Admission and accounting are two separate store round-trips:

    decision = await limiter.admit(identity)
    if decision.allowed:
        await limiter.record(identity)

Concurrent requests from one identity may all observe ``count < limit`` before
any of them records, so the limit can be overshot by at most the number of
requests in flight for that identity. That overshoot is accepted; the limiter
protects the store from sustained abuse, not from a burst of a few requests.

Identities are never pre-created: an identity with no records counts as zero
and comes into existence with its first ``record``.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
from collections.abc import Callable
from dataclasses import dataclass

from prometheus_client import Counter
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortlinks.enums import RequestStatus
from shortlinks.errors import StorageError
from shortlinks.models import RequestRecord, utcnow

__all__ = ["RateLimitDecision", "RateLimiter"]

logger = logging.getLogger(__name__)

RATE_LIMIT_DECISIONS_TOTAL = Counter(
    "shortlinks_rate_limit_decisions_total",
    "Rate limit admission decisions",
    ["status"],
)


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of an admission check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Max requests per window.
        count: Requests already recorded inside the window.
        retry_after_seconds: Suggested wait when denied (the window duration).
    """

    allowed: bool
    limit: int
    count: int
    retry_after_seconds: int | None = None

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)


class RateLimiter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_requests: int,
        window_seconds: int,
        store_timeout: float = 2.0,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")

        self._session_factory = session_factory
        self.max_requests = max_requests
        self.window = datetime.timedelta(seconds=window_seconds)
        self._store_timeout = store_timeout
        self._clock = clock

    async def admit(self, identity: str) -> RateLimitDecision:
        """Decide admission from the trailing-window count. Records nothing."""
        count = await self.count(identity)
        if count >= self.max_requests:
            RATE_LIMIT_DECISIONS_TOTAL.labels(status=RequestStatus.RATE_LIMITED).inc()
            return RateLimitDecision(
                allowed=False,
                limit=self.max_requests,
                count=count,
                retry_after_seconds=int(self.window.total_seconds()),
            )
        RATE_LIMIT_DECISIONS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
        return RateLimitDecision(allowed=True, limit=self.max_requests, count=count)

    async def record(self, identity: str) -> None:
        """Append one RequestRecord for ``identity``."""
        try:
            async with asyncio.timeout(self._store_timeout):
                async with self._session_factory() as session:
                    async with session.begin():
                        session.add(RequestRecord(identity=identity, occurred_at=self._clock()))
        except (SQLAlchemyError, TimeoutError) as exc:
            logger.error(f"Request record failed: {exc!r}")
            raise StorageError("record_request") from exc

    async def count(self, identity: str) -> int:
        now = self._clock()
        query = (
            select(func.count(RequestRecord.id))
            .where(RequestRecord.identity == identity)
            .where(RequestRecord.occurred_at >= now - self.window)
            .where(RequestRecord.occurred_at <= now)
        )
        try:
            async with asyncio.timeout(self._store_timeout):
                async with self._session_factory() as session:
                    return (await session.execute(query)).scalar_one()
        except (SQLAlchemyError, TimeoutError) as exc:
            logger.error(f"Request count failed: {exc!r}")
            raise StorageError("count_requests", retryable=True) from exc
