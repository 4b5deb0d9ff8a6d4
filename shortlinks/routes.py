"""FastAPI route definitions for the short-link REST API.

API Endpoint Overview
=====================
::
    GET  /health
        └─ HealthResponse (200)

    POST /api/shorten
        ├─ ShortenRequest (request body)
        └─ ShortenResponse (201) or 409/422/429/500/503

    GET  /api/analytics/overall          (identity header)
        └─ OverallAnalytics (200) or 401

    GET  /api/analytics/topic/:topic
        └─ TopicAnalytics (200)

    GET  /api/analytics/:alias
        └─ AliasAnalytics (200)

    GET  /:code
        └─ 302 Redirect or 404

Request Flow Diagram — POST /api/shorten
========================================
::
    ┌─────────────┐
    │ Validate    │  422 on bad URL / alias
    │ (Pydantic)  │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ RateLimiter │  429 + Retry-After when over the window limit
    │ admit()     │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ RateLimiter │
    │ record()    │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ LinkStore   │  409 alias taken, 503 exhausted
    │ create()    │
    └──────┬──────┘
           ▼
       201 {shortUrl, createdAt}

Key Behaviours
===============
- Domain errors propagate to the handlers in shortlinks.exception_handlers,
  which map them to status codes and a JSON error body.
- The rate-limit identity is the authenticated owner when one is present,
  otherwise the client IP.
- The static analytics routes are registered before ``/api/analytics/{alias}``
  so "overall" and "topic" are never read as aliases.
"""

import asyncio

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from shortlinks.dependencies import (
    RequestContext,
    ServiceManager,
    get_current_owner,
    get_request_context,
    get_service_manager,
)
from shortlinks.enums import HealthStatus
from shortlinks.errors import CacheError, RateLimitExceeded
from shortlinks.schemas import (
    AliasAnalytics,
    HealthResponse,
    OverallAnalytics,
    ShortenRequest,
    ShortenResponse,
    TopicAnalytics,
)

__all__ = ["router"]

router = APIRouter()


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(ctx: RequestContext = Depends(get_request_context)) -> HealthResponse:
    manager = ctx.service_manager
    db_status = HealthStatus.HEALTHY
    cache_status = HealthStatus.HEALTHY

    try:
        async with asyncio.timeout(ctx.settings.STORE_TIMEOUT_SECONDS):
            async with manager.session_factory() as session:
                await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, TimeoutError) as e:
        ctx.logger.error(f"Database health check failed: {e!r}")
        db_status = HealthStatus.UNHEALTHY

    try:
        await manager.cache.ping()
    except CacheError as e:
        ctx.logger.error(f"Cache health check failed: {e.__cause__!r}")
        cache_status = HealthStatus.UNHEALTHY

    status = (
        HealthStatus.HEALTHY
        if db_status is HealthStatus.HEALTHY and cache_status is HealthStatus.HEALTHY
        else HealthStatus.UNHEALTHY
    )
    return HealthResponse(status=status, database=db_status, cache=cache_status)


@router.post("/api/shorten", response_model=ShortenResponse, status_code=201, tags=["links"])
async def shorten_url(
    payload: ShortenRequest,
    ctx: RequestContext = Depends(get_request_context),
) -> ShortenResponse:
    ctx.add_tag("link_creation")
    manager = ctx.service_manager

    owner_id = (ctx.owner_id or payload.owner_id or "").strip() or None
    identity = owner_id or f"ip:{ctx.client_ip or 'unknown'}"

    decision = await manager.rate_limiter.admit(identity)
    if not decision.allowed:
        ctx.logger.warning(f"Rate limit exceeded for {identity} ({decision.count}/{decision.limit})")
        raise RateLimitExceeded(decision.retry_after_seconds)
    await manager.rate_limiter.record(identity)

    link = await manager.link_store.create(
        payload.long_url,
        custom_alias=payload.custom_alias,
        topic=payload.topic,
        owner_id=owner_id,
    )
    ctx.logger.info(f"Short link {link.code} created in {ctx.get_duration():.1f}ms")
    return ShortenResponse(short_url=manager.short_url(link.code), created_at=link.created_at)


@router.get("/api/analytics/overall", response_model=OverallAnalytics, tags=["analytics"])
async def overall_analytics(
    owner_id: str = Depends(get_current_owner),
    manager: ServiceManager = Depends(get_service_manager),
) -> OverallAnalytics:
    return await manager.analytics.overall_stats(owner_id)


@router.get("/api/analytics/topic/{topic}", response_model=TopicAnalytics, tags=["analytics"])
async def topic_analytics(
    topic: str,
    manager: ServiceManager = Depends(get_service_manager),
) -> TopicAnalytics:
    return await manager.analytics.topic_stats(topic)


@router.get("/api/analytics/{alias}", response_model=AliasAnalytics, tags=["analytics"])
async def alias_analytics(
    alias: str,
    manager: ServiceManager = Depends(get_service_manager),
) -> AliasAnalytics:
    return await manager.analytics.alias_stats(alias)


@router.get("/{short_code}", tags=["redirect"])
async def redirect_to_url(
    short_code: str,
    ctx: RequestContext = Depends(get_request_context),
) -> RedirectResponse:
    ctx.add_tag("redirect")
    long_url = await ctx.service_manager.resolver.resolve(short_code, ctx.visitor)
    return RedirectResponse(url=long_url, status_code=302)
