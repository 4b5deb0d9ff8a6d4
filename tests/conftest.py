"""Shared pytest fixtures for component and API tests.

The relational store is a per-test SQLite file driven through aiosqlite. Every
transaction opens with ``BEGIN IMMEDIATE`` so concurrent writers serialize on
the database lock the way row locks serialize them on PostgreSQL. Redis is
replaced by an in-process double whose key expiry follows the shared test
clock.
"""

import datetime
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from shortlinks.allocator import AliasAllocator
from shortlinks.analytics import AnalyticsCache
from shortlinks.cache import FastCache
from shortlinks.config import Settings
from shortlinks.database import Base
from shortlinks.dependencies import ServiceManager, get_service_manager
from shortlinks.link_store import ShortLinkStore
from shortlinks.main import app
from shortlinks.rate_limiter import RateLimiter
from shortlinks.resolver import RedirectResolver

BASE_URL = "http://test"
STORE_TIMEOUT = 10.0


class MutableClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime.datetime) -> None:
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


class FakeRedis:
    """Subset of redis.asyncio.Redis used by FastCache, with clock-driven expiry."""

    def __init__(self, clock: MutableClock) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, datetime.datetime | None]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(self, key: str, value: str) -> bool:
        self._data[key] = (value, None)
        return True

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self._data[key] = (value, self._clock() + datetime.timedelta(seconds=ttl))
        return True

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self._data.pop(key, None) is not None)

    async def ping(self) -> bool:
        return True

    async def flushdb(self) -> bool:
        self._data.clear()
        return True

    async def aclose(self) -> None:
        self._data.clear()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime.datetime(2026, 3, 2, 12, 0, tzinfo=datetime.timezone.utc))


@pytest.fixture
def settings() -> Settings:
    return Settings(BASE_URL=BASE_URL, STORE_TIMEOUT_SECONDS=STORE_TIMEOUT)


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'shortlinks.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(test_engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(test_engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def redis_client(clock: MutableClock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def cache(redis_client: FakeRedis) -> FastCache:
    return FastCache(redis_client, timeout=0.5)


@pytest.fixture
def allocator(session_factory, clock) -> AliasAllocator:
    return AliasAllocator(session_factory, store_timeout=STORE_TIMEOUT, clock=clock)


@pytest.fixture
def link_store(session_factory, cache, allocator) -> ShortLinkStore:
    return ShortLinkStore(session_factory, cache, allocator, store_timeout=STORE_TIMEOUT)


@pytest.fixture
def rate_limiter(session_factory, clock) -> RateLimiter:
    return RateLimiter(
        session_factory,
        max_requests=10,
        window_seconds=3600,
        store_timeout=STORE_TIMEOUT,
        clock=clock,
    )


@pytest.fixture
def resolver(session_factory, cache, link_store, clock) -> RedirectResolver:
    return RedirectResolver(session_factory, cache, link_store, clock=clock)


@pytest.fixture
def analytics(session_factory, cache, clock) -> AnalyticsCache:
    return AnalyticsCache(session_factory, cache, base_url=BASE_URL, store_timeout=STORE_TIMEOUT, clock=clock)


@pytest_asyncio.fixture
async def manager(settings, session_factory, redis_client, clock) -> ServiceManager:
    service_manager = ServiceManager()
    await service_manager.initialize(
        settings=settings,
        session_factory=session_factory,
        redis_client=redis_client,
        clock=clock,
    )
    return service_manager


@pytest_asyncio.fixture
async def client(manager: ServiceManager) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_service_manager] = lambda: manager

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url=BASE_URL) as ac:
        yield ac

    app.dependency_overrides.clear()
