"""Analytics cache tests: aggregates per scope and bounded staleness."""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from shortlinks.analytics import AnalyticsCache, cache_key
from shortlinks.enums import AnalyticsScope
from shortlinks.errors import StorageError
from shortlinks.link_store import ShortLinkStore
from shortlinks.resolver import RedirectResolver, Visitor
from shortlinks.schemas import AliasAnalytics, OverallAnalytics, TopicAnalytics

WINDOWS = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"
IPHONE = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148"
ANDROID = "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 Chrome/120.0 Mobile Safari/537.36"


def test_cache_keys() -> None:
    assert cache_key(AnalyticsScope.ALIAS, "promo") == "analytics:promo"
    assert cache_key(AnalyticsScope.TOPIC, "promo") == "analytics:topic:promo"
    assert cache_key(AnalyticsScope.OWNER, "alice") == "analytics:overall:alice"


@pytest.mark.asyncio
async def test_alias_aggregate(analytics: AnalyticsCache, link_store: ShortLinkStore, resolver: RedirectResolver, clock) -> None:
    link = await link_store.create("https://example.com", custom_alias="promo")
    await resolver.resolve("promo", Visitor(WINDOWS, "10.0.0.1"))
    await resolver.resolve("promo", Visitor(WINDOWS, "10.0.0.1"))
    await resolver.resolve("promo", Visitor(IPHONE, "10.0.0.2"))
    await resolver.resolve("promo", Visitor(ANDROID, "10.0.0.3"))

    stats = await analytics.alias_stats(link.code)

    assert isinstance(stats, AliasAnalytics)
    assert stats.total_clicks == 4
    assert stats.unique_users == 3
    assert [(d.date, d.click_count) for d in stats.clicks_by_date] == [(clock().date(), 4)]
    assert {(o.os_name, o.unique_clicks, o.unique_users) for o in stats.os_type} == {
        ("Windows", 2, 1),
        ("iOS", 1, 1),
        ("Android", 1, 1),
    }
    assert {(d.device_name, d.unique_clicks, d.unique_users) for d in stats.device_type} == {
        ("Desktop", 2, 1),
        ("Mobile", 2, 2),
    }


@pytest.mark.asyncio
async def test_alias_without_clicks(analytics: AnalyticsCache) -> None:
    stats = await analytics.alias_stats("unknown")
    assert stats.total_clicks == 0
    assert stats.unique_users == 0
    assert stats.clicks_by_date == []
    assert stats.os_type == []


@pytest.mark.asyncio
async def test_clicks_by_date_covers_last_week_newest_first(
    analytics: AnalyticsCache, link_store: ShortLinkStore, resolver: RedirectResolver, clock
) -> None:
    await link_store.create("https://example.com", custom_alias="promo")
    await resolver.resolve("promo", Visitor(WINDOWS, "10.0.0.1"))
    clock.advance(86400)
    await resolver.resolve("promo", Visitor(WINDOWS, "10.0.0.1"))
    await resolver.resolve("promo", Visitor(WINDOWS, "10.0.0.2"))
    second_day = clock().date()
    clock.advance(7 * 86400)
    await resolver.resolve("promo", Visitor(WINDOWS, "10.0.0.1"))

    stats = await analytics.alias_stats("promo")

    assert stats.total_clicks == 4
    assert [(d.date, d.click_count) for d in stats.clicks_by_date] == [(clock().date(), 1), (second_day, 2)]


@pytest.mark.asyncio
async def test_cached_aggregate_is_stale_until_ttl(
    analytics: AnalyticsCache, link_store: ShortLinkStore, resolver: RedirectResolver, clock
) -> None:
    await link_store.create("https://example.com", custom_alias="promo")
    await resolver.resolve("promo", Visitor(WINDOWS, "10.0.0.1"))
    assert (await analytics.alias_stats("promo")).total_clicks == 1

    await resolver.resolve("promo", Visitor(WINDOWS, "10.0.0.2"))
    assert (await analytics.alias_stats("promo")).total_clicks == 1

    clock.advance(301)
    assert (await analytics.alias_stats("promo")).total_clicks == 2


@pytest.mark.asyncio
async def test_cache_hit_skips_aggregation(analytics: AnalyticsCache, link_store: ShortLinkStore) -> None:
    await link_store.create("https://example.com", custom_alias="promo")
    await analytics.alias_stats("promo")

    with patch.object(analytics, "_compute", wraps=analytics._compute) as compute:
        await analytics.alias_stats("promo")
    compute.assert_not_called()


@pytest.mark.asyncio
async def test_unreadable_cache_entry_is_recomputed(analytics: AnalyticsCache, redis_client) -> None:
    await redis_client.setex("analytics:promo", 300, "{not json")
    stats = await analytics.alias_stats("promo")
    assert stats.total_clicks == 0

    cached = AliasAnalytics.model_validate_json(await redis_client.get("analytics:promo"))
    assert cached == stats


@pytest.mark.asyncio
async def test_cached_payload_uses_camel_case(analytics: AnalyticsCache, redis_client) -> None:
    await analytics.alias_stats("promo")
    payload = await redis_client.get("analytics:promo")
    assert '"totalClicks"' in payload
    assert '"uniqueUsers"' in payload


@pytest.mark.asyncio
async def test_topic_aggregate(analytics: AnalyticsCache, link_store: ShortLinkStore, resolver: RedirectResolver) -> None:
    await link_store.create("https://example.com/a", custom_alias="news1", topic="news")
    await link_store.create("https://example.com/b", custom_alias="news2", topic="news")
    await link_store.create("https://example.com/c", custom_alias="news3", topic="news")
    await link_store.create("https://example.com/d", custom_alias="other", topic="sports")

    await resolver.resolve("news1", Visitor(WINDOWS, "10.0.0.1"))
    await resolver.resolve("news1", Visitor(WINDOWS, "10.0.0.2"))
    await resolver.resolve("news2", Visitor(IPHONE, "10.0.0.1"))
    await resolver.resolve("other", Visitor(WINDOWS, "10.0.0.9"))

    stats = await analytics.topic_stats("news")

    assert isinstance(stats, TopicAnalytics)
    assert stats.total_clicks == 3
    assert stats.unique_users == 2
    assert [(u.short_url, u.total_clicks, u.unique_users) for u in stats.urls] == [
        ("http://test/news1", 2, 2),
        ("http://test/news2", 1, 1),
        ("http://test/news3", 0, 0),
    ]


@pytest.mark.asyncio
async def test_overall_aggregate(analytics: AnalyticsCache, link_store: ShortLinkStore, resolver: RedirectResolver) -> None:
    await link_store.create("https://example.com/a", custom_alias="mine1", owner_id="alice")
    await link_store.create("https://example.com/b", custom_alias="mine2", owner_id="alice")
    await link_store.create("https://example.com/c", custom_alias="theirs", owner_id="bob")

    await resolver.resolve("mine1", Visitor(WINDOWS, "10.0.0.1"))
    await resolver.resolve("mine2", Visitor(ANDROID, "10.0.0.2"))
    await resolver.resolve("theirs", Visitor(WINDOWS, "10.0.0.3"))

    stats = await analytics.overall_stats("alice")

    assert isinstance(stats, OverallAnalytics)
    assert stats.total_urls == 2
    assert stats.total_clicks == 2
    assert stats.unique_users == 2
    assert sum(d.click_count for d in stats.clicks_by_date) == 2
    assert {o.os_name for o in stats.os_type} == {"Windows", "Android"}


@pytest.mark.asyncio
async def test_alias_and_topic_entries_do_not_collide(
    analytics: AnalyticsCache, link_store: ShortLinkStore, resolver: RedirectResolver, redis_client
) -> None:
    await link_store.create("https://example.com/a", custom_alias="news", topic="news")
    await resolver.resolve("news", Visitor(WINDOWS, "10.0.0.1"))

    assert isinstance(await analytics.alias_stats("news"), AliasAnalytics)
    assert isinstance(await analytics.topic_stats("news"), TopicAnalytics)

    assert AliasAnalytics.model_validate_json(await redis_client.get("analytics:news")).total_clicks == 1
    assert TopicAnalytics.model_validate_json(await redis_client.get("analytics:topic:news")).urls[0].short_url.endswith("/news")


@pytest.mark.asyncio
async def test_store_failure_on_miss(cache, clock) -> None:
    def broken_factory():
        raise OperationalError("SELECT", {}, Exception("too many connections"))

    analytics = AnalyticsCache(broken_factory, cache, base_url="http://test", clock=clock)
    with pytest.raises(StorageError) as exc_info:
        await analytics.alias_stats("promo")
    assert exc_info.value.retryable is True

