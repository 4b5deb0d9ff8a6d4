"""Pydantic request/response schemas for the short-link API.

This module provides input validation for link creation and typed payloads
for the analytics aggregates, which are also the serialized form stored in
the analytics cache.

Schema Overview
===============
::
    ShortenRequest  → {longUrl, customAlias?, topic?, ownerId?}
    ShortenResponse ← {shortUrl, createdAt}

    AliasAnalytics   {totalClicks, uniqueUsers, clicksByDate[], osType[], deviceType[]}
    TopicAnalytics   {totalClicks, uniqueUsers, urls[]}
    OverallAnalytics {totalUrls, totalClicks, uniqueUsers, clicksByDate[], osType[], deviceType[]}

Key Behaviours
===============
- JSON field names are camelCase; Python attributes stay snake_case.
- Either form is accepted on input, so cached payloads round-trip.
- Custom aliases are alphanumeric and length-bounded by settings.
- Aliases that would be shadowed by framework routes are rejected.
"""

import datetime

import validators
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from shortlinks.config import get_settings
from shortlinks.enums import HealthStatus

__all__ = [
    "RESERVED_ALIASES",
    "AggregateResult",
    "AliasAnalytics",
    "ClicksByDate",
    "DeviceTypeStats",
    "HealthResponse",
    "OsTypeStats",
    "OverallAnalytics",
    "ShortenRequest",
    "ShortenResponse",
    "TopicAnalytics",
    "TopicUrlStats",
]

settings = get_settings()

# Paths served by the app itself; a short code with these names could never redirect.
RESERVED_ALIASES = frozenset({"docs", "redoc", "health", "metrics"})


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ShortenRequest(CamelModel):
    long_url: str
    custom_alias: str | None = None
    topic: str | None = Field(None, max_length=settings.TOPIC_MAX_LENGTH)
    owner_id: str | None = Field(None, max_length=128)

    @field_validator("long_url")
    @classmethod
    def validate_long_url(cls, v: str) -> str:
        if not validators.url(v):
            raise ValueError("Invalid URL provided")
        return v

    @field_validator("custom_alias")
    @classmethod
    def validate_custom_alias(cls, v: str | None) -> str | None:
        if v is not None:
            if not settings.CUSTOM_ALIAS_MIN_LENGTH <= len(v) <= settings.CUSTOM_ALIAS_MAX_LENGTH:
                raise ValueError(
                    f"Custom alias must be between {settings.CUSTOM_ALIAS_MIN_LENGTH} "
                    f"and {settings.CUSTOM_ALIAS_MAX_LENGTH} characters"
                )
            if not v.isascii() or not v.isalnum():
                raise ValueError("Custom alias must be alphanumeric")
            if v.lower() in RESERVED_ALIASES:
                raise ValueError(f"Custom alias '{v}' is reserved")
        return v


class ShortenResponse(CamelModel):
    short_url: str
    created_at: datetime.datetime


class ClicksByDate(CamelModel):
    date: datetime.date
    click_count: int


class OsTypeStats(CamelModel):
    os_name: str
    unique_clicks: int
    unique_users: int


class DeviceTypeStats(CamelModel):
    device_name: str
    unique_clicks: int
    unique_users: int


class AliasAnalytics(CamelModel):
    total_clicks: int
    unique_users: int
    clicks_by_date: list[ClicksByDate] = []
    os_type: list[OsTypeStats] = []
    device_type: list[DeviceTypeStats] = []


class TopicUrlStats(CamelModel):
    short_url: str
    total_clicks: int
    unique_users: int


class TopicAnalytics(CamelModel):
    total_clicks: int
    unique_users: int
    urls: list[TopicUrlStats] = []


class OverallAnalytics(CamelModel):
    total_urls: int
    total_clicks: int
    unique_users: int
    clicks_by_date: list[ClicksByDate] = []
    os_type: list[OsTypeStats] = []
    device_type: list[DeviceTypeStats] = []


AggregateResult = AliasAnalytics | TopicAnalytics | OverallAnalytics


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus
