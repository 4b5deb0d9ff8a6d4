"""Configuration management for the short-link service.

This module provides centralized configuration management using Pydantic BaseSettings
with environment variable support and caching for performance.

Flow Diagram — get_settings()
=============================
::
    ┌─────────────┐
    │  Call get_  │
    │  settings() │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Check cache  │
    │ (lru_cache)  │
    └──────┬──────┘
    HIT?  │
    ┌─────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Create  │  │ Return  │
│ Settings│  │ cached  │
│ instance│  │ value   │
└─────────┘  └─────────┘

How to Use
===========
**Step 1 — Import**::
    from shortlinks.config import get_settings

**Step 2 — Get settings**::
    settings = get_settings()
    ttl = settings.LINK_CACHE_TTL_SECONDS

Key Behaviours
===============
- Settings are cached after first access for performance.
- Environment variables override defaults automatically.
- TTLs for analytics are shorter than the resolution TTL; staleness there is
  more tolerable than on the redirect path.

Classes:
    Settings:  Pydantic model for all configuration values.

"""

__all__ = ["Settings", "get_settings"]

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "shortlinks"
    APP_ENV: str = "development"
    BASE_URL: str = "http://localhost:8080"

    # PostgreSQL
    DATABASE_URL: str = "postgresql+asyncpg://shortlinks:shortlinks@db:5432/shortlinks"

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"

    # Alias allocation
    SHORT_CODE_LENGTH: int = 8
    ALLOCATION_MAX_ATTEMPTS: int = 5
    CUSTOM_ALIAS_MIN_LENGTH: int = 3
    CUSTOM_ALIAS_MAX_LENGTH: int = 20
    TOPIC_MAX_LENGTH: int = 64

    # Cache TTLs (seconds)
    LINK_CACHE_TTL_SECONDS: int = 3600
    ALIAS_ANALYTICS_TTL_SECONDS: int = 300
    TOPIC_ANALYTICS_TTL_SECONDS: int = 600
    OVERALL_ANALYTICS_TTL_SECONDS: int = 600
    ANALYTICS_CLICKS_WINDOW_DAYS: int = 7

    # Rate limiting on link creation
    RATE_LIMIT_MAX_REQUESTS: int = 10
    RATE_LIMIT_WINDOW_SECONDS: int = 3600

    # Timeouts on external calls
    STORE_TIMEOUT_SECONDS: float = 2.0
    CACHE_TIMEOUT_SECONDS: float = 0.5
    EVENT_LOG_TIMEOUT_SECONDS: float = 1.0

    # Identity forwarded by the upstream auth layer
    OWNER_ID_HEADER: str = "X-Owner-Id"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
