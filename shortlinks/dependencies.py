"""Dependency injection with a shared service manager.

This module wires the short-link components to their shared resources once at
startup and hands them to the API endpoints, keeping per-request overhead to
building a lightweight RequestContext.

Component Wiring
================
::
    session_factory ──┬─► AliasAllocator ──► ShortLinkStore ──► RedirectResolver
                      ├─► RateLimiter
                      └─► AnalyticsCache
    FastCache(redis) ─┴─► ShortLinkStore, RedirectResolver, AnalyticsCache

How to Use
===========
**Step 1 — Initialize on startup**::
    await _service_manager.initialize()

**Step 2 — Inject in an endpoint**::
    async def endpoint(manager: ServiceManager = Depends(get_service_manager)):
        await manager.link_store.create(...)

**Step 3 — Substitute in tests**::
    manager = ServiceManager()
    await manager.initialize(session_factory=..., redis_client=..., clock=...)
    app.dependency_overrides[get_service_manager] = lambda: manager
"""

import datetime
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortlinks.allocator import AliasAllocator
from shortlinks.analytics import AnalyticsCache, AnalyticsTTLs
from shortlinks.cache import FastCache
from shortlinks.config import Settings, get_settings
from shortlinks.database import async_session
from shortlinks.errors import AuthenticationError
from shortlinks.link_store import ShortLinkStore
from shortlinks.models import utcnow
from shortlinks.rate_limiter import RateLimiter
from shortlinks.redis import close_redis, get_redis
from shortlinks.resolver import GeoLookup, RedirectResolver, Visitor, no_geo

__all__ = [
    "RequestContext",
    "ServiceManager",
    "get_current_owner",
    "get_request_context",
    "get_service_manager",
]


# ============================================================================
# SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Holds the shared resources and the components built on them."""

    _initialized: bool = False

    async def initialize(
        self,
        *,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        redis_client: redis.Redis | None = None,
        geo_lookup: GeoLookup = no_geo,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        """Initialize shared resources once at startup."""
        if self._initialized:
            return

        self.settings = settings or get_settings()
        self.logger = self._setup_logger()
        self.session_factory = session_factory or async_session
        self._owns_cache_client = redis_client is None
        self.cache_client = redis_client or await get_redis()
        self.cache = FastCache(self.cache_client, timeout=self.settings.CACHE_TIMEOUT_SECONDS)

        self.allocator = AliasAllocator(
            self.session_factory,
            code_length=self.settings.SHORT_CODE_LENGTH,
            max_attempts=self.settings.ALLOCATION_MAX_ATTEMPTS,
            store_timeout=self.settings.STORE_TIMEOUT_SECONDS,
            clock=clock,
        )
        self.link_store = ShortLinkStore(
            self.session_factory,
            self.cache,
            self.allocator,
            cache_ttl=self.settings.LINK_CACHE_TTL_SECONDS,
            store_timeout=self.settings.STORE_TIMEOUT_SECONDS,
        )
        self.rate_limiter = RateLimiter(
            self.session_factory,
            max_requests=self.settings.RATE_LIMIT_MAX_REQUESTS,
            window_seconds=self.settings.RATE_LIMIT_WINDOW_SECONDS,
            store_timeout=self.settings.STORE_TIMEOUT_SECONDS,
            clock=clock,
        )
        self.resolver = RedirectResolver(
            self.session_factory,
            self.cache,
            self.link_store,
            geo_lookup=geo_lookup,
            event_timeout=self.settings.EVENT_LOG_TIMEOUT_SECONDS,
            clock=clock,
        )
        self.analytics = AnalyticsCache(
            self.session_factory,
            self.cache,
            base_url=self.settings.BASE_URL,
            ttls=AnalyticsTTLs(
                alias=self.settings.ALIAS_ANALYTICS_TTL_SECONDS,
                topic=self.settings.TOPIC_ANALYTICS_TTL_SECONDS,
                owner=self.settings.OVERALL_ANALYTICS_TTL_SECONDS,
            ),
            clicks_window_days=self.settings.ANALYTICS_CLICKS_WINDOW_DAYS,
            store_timeout=self.settings.STORE_TIMEOUT_SECONDS,
            clock=clock,
        )
        self._initialized = True

    def _setup_logger(self) -> logging.Logger:
        """Setup the service logger once; component loggers propagate to it."""
        logger = logging.getLogger("shortlinks")
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.setLevel(logging.INFO)
        return logger

    def short_url(self, code: str) -> str:
        return f"{self.settings.BASE_URL.rstrip('/')}/{code}"

    async def cleanup(self) -> None:
        """Release shared resources at shutdown.

        Only the shared Redis client opened by initialize() is closed; an
        injected client belongs to the caller.
        """
        if not self._initialized:
            return
        if self._owns_cache_client:
            await close_redis()
            self.logger.info("Redis client closed")
        self._initialized = False


# Global instance
_service_manager = ServiceManager()


# ============================================================================
# LIGHTWEIGHT REQUEST CONTEXT
# ============================================================================


@dataclass
class RequestContext:
    """Per-request tracking data.

    Attributes:
        service_manager: Shared service manager
        request_id: Unique identifier for this request
        trace_id: Correlation ID for distributed tracing
        user_agent: Client user agent string
        client_ip: Client IP address
        owner_id: Identity forwarded by the upstream auth layer, if any
        start_time: Request start timestamp
        tags: Request tags for categorization
    """

    service_manager: ServiceManager
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    trace_id: Optional[str] = None
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None
    owner_id: Optional[str] = None
    start_time: float = field(default_factory=lambda: time.time())
    tags: list[str] = field(default_factory=list)

    @property
    def logger(self) -> logging.LoggerAdapter:
        """Get shared logger with request context."""
        return logging.LoggerAdapter(
            self.service_manager.logger,
            {
                "request_id": self.request_id,
                "trace_id": self.trace_id or self.request_id,
                "client_ip": self.client_ip,
                "user_agent": self.user_agent,
                "tags": ",".join(self.tags),
            },
        )

    @property
    def settings(self) -> Settings:
        return self.service_manager.settings

    @property
    def visitor(self) -> Visitor:
        return Visitor(user_agent=self.user_agent, source_ip=self.client_ip)

    def add_tag(self, tag: str) -> None:
        if tag not in self.tags:
            self.tags.append(tag)

    def get_duration(self) -> float:
        """Get request duration in milliseconds."""
        return (time.time() - self.start_time) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


async def get_service_manager() -> ServiceManager:
    if not _service_manager._initialized:
        await _service_manager.initialize()
    return _service_manager


async def get_request_context(
    request: Request,
    manager: ServiceManager = Depends(get_service_manager),
) -> RequestContext:
    """Build the request context and expose its id to the exception handlers."""
    ctx = RequestContext(
        service_manager=manager,
        request_id=request.headers.get("x-request-id") or str(uuid.uuid4()),
        trace_id=request.headers.get("x-trace-id"),
        user_agent=request.headers.get("user-agent"),
        client_ip=request.client.host if request.client else None,
        owner_id=request.headers.get(manager.settings.OWNER_ID_HEADER),
    )
    request.state.request_id = ctx.request_id
    return ctx


async def get_current_owner(
    request: Request,
    manager: ServiceManager = Depends(get_service_manager),
) -> str:
    """Identity forwarded by the upstream auth layer.

    Raises:
        AuthenticationError: the identity header is missing or blank.
    """
    owner_id = request.headers.get(manager.settings.OWNER_ID_HEADER, "").strip()
    if not owner_id:
        raise AuthenticationError()
    return owner_id
