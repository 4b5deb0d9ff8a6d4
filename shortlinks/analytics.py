"""Cache-aside analytics over redirect events.

Flow Diagram — get_aggregate()
==============================
::
    ┌──────────────────────┐
    │ GET analytics:<key>  │  Redis (timeout → treated as miss)
    └──────────┬───────────┘
       HIT and parses?
    ┌──────────┴──────────┐
    │ NO                   │ YES → cached aggregate
    ▼                      │
┌───────────────────────┐  │
│ aggregate queries     │  │
│ redirect_events       │  │
│ ⋈ short_links (scope) │  │
└──────────┬────────────┘  │
           ▼               │
┌───────────────────────┐  │
│ SETEX scope TTL       │  │
└──────────┬────────────┘  │
           └───────┬───────┘
                   ▼
             AggregateResult

Key Scheme
==========
::
    alias  analytics:<alias>             300 s
    topic  analytics:topic:<topic>       600 s
    owner  analytics:overall:<ownerId>   600 s

Key Behaviours
===============
- No invalidation on write: a cached aggregate may lag new redirects by at
  most its TTL.
- Unique users are distinct source IPs.
- A cached payload that no longer parses is recomputed.
"""

import asyncio
import datetime
import logging
from collections import Counter as Tally
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from prometheus_client import Counter
from pydantic import ValidationError
from sqlalchemy import distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortlinks.cache import FastCache
from shortlinks.enums import AnalyticsScope, CacheStatus
from shortlinks.errors import StorageError
from shortlinks.models import RedirectEvent, ShortLink, utcnow
from shortlinks.schemas import (
    AggregateResult,
    AliasAnalytics,
    ClicksByDate,
    DeviceTypeStats,
    OsTypeStats,
    OverallAnalytics,
    TopicAnalytics,
    TopicUrlStats,
)
from shortlinks.useragent import classify_device, classify_os

__all__ = ["AnalyticsCache", "AnalyticsTTLs", "cache_key"]

logger = logging.getLogger(__name__)

ANALYTICS_REQUESTS_TOTAL = Counter(
    "shortlinks_analytics_requests_total",
    "Analytics aggregate requests",
    ["scope", "cache_hit"],
)

_RESULT_TYPES: dict[AnalyticsScope, type[AggregateResult]] = {
    AnalyticsScope.ALIAS: AliasAnalytics,
    AnalyticsScope.TOPIC: TopicAnalytics,
    AnalyticsScope.OWNER: OverallAnalytics,
}


@dataclass(frozen=True)
class AnalyticsTTLs:
    alias: int = 300
    topic: int = 600
    owner: int = 600

    def for_scope(self, scope: AnalyticsScope) -> int:
        return {
            AnalyticsScope.ALIAS: self.alias,
            AnalyticsScope.TOPIC: self.topic,
            AnalyticsScope.OWNER: self.owner,
        }[scope]


def cache_key(scope: AnalyticsScope, key: str) -> str:
    if scope is AnalyticsScope.ALIAS:
        return f"analytics:{key}"
    if scope is AnalyticsScope.TOPIC:
        # A topic may share its name with an alias, so topics get their own prefix.
        return f"analytics:topic:{key}"
    return f"analytics:overall:{key}"


class AnalyticsCache:
    """Serves per-alias, per-topic and per-owner aggregates."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: FastCache,
        *,
        base_url: str,
        ttls: AnalyticsTTLs = AnalyticsTTLs(),
        clicks_window_days: int = 7,
        store_timeout: float = 2.0,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._base_url = base_url.rstrip("/")
        self._ttls = ttls
        self._clicks_window_days = clicks_window_days
        self._store_timeout = store_timeout
        self._clock = clock

    async def get_aggregate(self, scope: AnalyticsScope, key: str) -> AggregateResult:
        """Return the aggregate for ``key`` within ``scope``, cached for the scope's TTL.

        Raises:
            StorageError: the aggregate had to be computed and the store failed (retryable).
        """
        result_type = _RESULT_TYPES[scope]
        redis_key = cache_key(scope, key)

        cached = await self._cache.get(redis_key)
        if cached is not None:
            try:
                result = result_type.model_validate_json(cached)
            except ValidationError:
                logger.warning(f"Discarding unreadable analytics entry {redis_key}")
            else:
                ANALYTICS_REQUESTS_TOTAL.labels(scope=scope, cache_hit=CacheStatus.HIT).inc()
                return result

        ANALYTICS_REQUESTS_TOTAL.labels(scope=scope, cache_hit=CacheStatus.MISS).inc()
        try:
            async with asyncio.timeout(self._store_timeout):
                async with self._session_factory() as session:
                    result = await self._compute(session, scope, key)
        except (SQLAlchemyError, TimeoutError) as exc:
            logger.error(f"Analytics aggregation failed for {redis_key}: {exc!r}")
            raise StorageError("analytics", retryable=True) from exc

        await self._cache.set(redis_key, result.model_dump_json(by_alias=True), self._ttls.for_scope(scope))
        return result

    async def alias_stats(self, alias: str) -> AliasAnalytics:
        return await self.get_aggregate(AnalyticsScope.ALIAS, alias)

    async def topic_stats(self, topic: str) -> TopicAnalytics:
        return await self.get_aggregate(AnalyticsScope.TOPIC, topic)

    async def overall_stats(self, owner_id: str) -> OverallAnalytics:
        return await self.get_aggregate(AnalyticsScope.OWNER, owner_id)

    async def _compute(self, session: AsyncSession, scope: AnalyticsScope, key: str) -> AggregateResult:
        if scope is AnalyticsScope.ALIAS:
            return await self._alias_aggregate(session, key)
        if scope is AnalyticsScope.TOPIC:
            return await self._topic_aggregate(session, key)
        return await self._owner_aggregate(session, key)

    async def _alias_aggregate(self, session: AsyncSession, alias: str) -> AliasAnalytics:
        condition = RedirectEvent.alias == alias
        total_clicks, unique_users = await self._totals(session, select(RedirectEvent).where(condition))
        clicks_by_date, os_type, device_type = await self._breakdowns(session, [condition])
        return AliasAnalytics(
            total_clicks=total_clicks,
            unique_users=unique_users,
            clicks_by_date=clicks_by_date,
            os_type=os_type,
            device_type=device_type,
        )

    async def _topic_aggregate(self, session: AsyncSession, topic: str) -> TopicAnalytics:
        events = select(RedirectEvent).join(ShortLink, ShortLink.code == RedirectEvent.alias).where(ShortLink.topic == topic)
        total_clicks, unique_users = await self._totals(session, events)

        per_link = (
            select(
                ShortLink.code,
                func.count(RedirectEvent.id),
                func.count(distinct(RedirectEvent.source_ip)),
            )
            .outerjoin(RedirectEvent, RedirectEvent.alias == ShortLink.code)
            .where(ShortLink.topic == topic)
            .group_by(ShortLink.code)
            .order_by(ShortLink.code)
        )
        rows = (await session.execute(per_link)).all()
        urls = [
            TopicUrlStats(short_url=f"{self._base_url}/{code}", total_clicks=clicks, unique_users=users)
            for code, clicks, users in rows
        ]
        return TopicAnalytics(total_clicks=total_clicks, unique_users=unique_users, urls=urls)

    async def _owner_aggregate(self, session: AsyncSession, owner_id: str) -> OverallAnalytics:
        total_urls = (
            await session.execute(select(func.count(ShortLink.id)).where(ShortLink.owner_id == owner_id))
        ).scalar_one()

        owned = RedirectEvent.alias.in_(select(ShortLink.code).where(ShortLink.owner_id == owner_id))
        total_clicks, unique_users = await self._totals(session, select(RedirectEvent).where(owned))
        clicks_by_date, os_type, device_type = await self._breakdowns(session, [owned])
        return OverallAnalytics(
            total_urls=total_urls,
            total_clicks=total_clicks,
            unique_users=unique_users,
            clicks_by_date=clicks_by_date,
            os_type=os_type,
            device_type=device_type,
        )

    @staticmethod
    async def _totals(session: AsyncSession, events) -> tuple[int, int]:
        scoped = events.subquery()
        query = select(func.count(scoped.c.id), func.count(distinct(scoped.c.source_ip)))
        total_clicks, unique_users = (await session.execute(query)).one()
        return total_clicks, unique_users

    async def _breakdowns(
        self, session: AsyncSession, conditions: list
    ) -> tuple[list[ClicksByDate], list[OsTypeStats], list[DeviceTypeStats]]:
        since = self._clock() - datetime.timedelta(days=self._clicks_window_days)
        timestamps = await session.execute(
            select(RedirectEvent.occurred_at).where(*conditions).where(RedirectEvent.occurred_at >= since)
        )
        clicks_by_date = _clicks_by_date(timestamps.scalars())

        # One row per (agent, ip) pair keeps the transfer bounded by distinct visitors.
        visitors = await session.execute(
            select(RedirectEvent.user_agent, RedirectEvent.source_ip, func.count(RedirectEvent.id))
            .where(*conditions)
            .group_by(RedirectEvent.user_agent, RedirectEvent.source_ip)
        )
        visitor_rows = visitors.all()
        os_type = [
            OsTypeStats(os_name=name, unique_clicks=clicks, unique_users=users)
            for name, clicks, users in _bucket(visitor_rows, classify_os)
        ]
        device_type = [
            DeviceTypeStats(device_name=name, unique_clicks=clicks, unique_users=users)
            for name, clicks, users in _bucket(visitor_rows, classify_device)
        ]
        return clicks_by_date, os_type, device_type


def _clicks_by_date(timestamps: Iterable[datetime.datetime]) -> list[ClicksByDate]:
    per_day = Tally(_utc_date(ts) for ts in timestamps)
    return [ClicksByDate(date=day, click_count=count) for day, count in sorted(per_day.items(), reverse=True)]


def _utc_date(ts: datetime.datetime) -> datetime.date:
    if ts.tzinfo is not None:
        ts = ts.astimezone(datetime.timezone.utc)
    return ts.date()


def _bucket(rows, classify: Callable[[str | None], str]) -> list[tuple[str, int, int]]:
    clicks: Tally[str] = Tally()
    users: dict[str, set[str]] = {}
    for user_agent, source_ip, count in rows:
        name = classify(user_agent)
        clicks[name] += count
        ips = users.setdefault(name, set())
        if source_ip is not None:
            ips.add(source_ip)
    return [(name, clicks[name], len(users[name])) for name in sorted(clicks)]
