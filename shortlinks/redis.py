"""Redis client management for the short-link service.

This module provides a lazily created Redis client shared by the resolution
cache and the analytics cache.

Flow Diagram — Redis Operations
=============================
::
    ┌─────────────┐
    │ get_redis()  │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Check global │
    │ client var   │
    └──────┬──────┘
    EXISTS?  │
    ┌─────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Create  │  │ Return  │
│ Redis   │  │ existing│
│ client  │  │ client  │
└─────────┘  └─────────┘

Key Behaviours
===============
- Redis client is created lazily on first access.
- Global client is reused across all requests.
- Connection is properly closed on application shutdown.
- UTF-8 encoding with decode_responses for string operations.
- Socket timeouts mirror CACHE_TIMEOUT_SECONDS so a hung Redis cannot stall a request.

Functions:
    get_redis():  Shared Redis client.
    close_redis():  Cleanup function for shutdown.
"""

import redis.asyncio as redis

from shortlinks.config import get_settings

__all__ = ["close_redis", "get_redis"]

settings = get_settings()

redis_client: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global redis_client
    if redis_client is None:
        redis_client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=settings.CACHE_TIMEOUT_SECONDS,
            socket_timeout=settings.CACHE_TIMEOUT_SECONDS,
        )
    return redis_client


async def close_redis() -> None:
    global redis_client
    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None
