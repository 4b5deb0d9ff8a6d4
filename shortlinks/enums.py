"""Shared enums for the short-link service.

This module defines all status and state enums used across the codebase.
Using enums instead of string literals provides type safety and prevents typos.
"""

from enum import StrEnum

__all__ = ["AnalyticsScope", "CacheStatus", "HealthStatus", "RequestStatus"]


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class RequestStatus(StrEnum):
    """Request status values for metrics and logging."""

    SUCCESS = "success"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    EXHAUSTED = "exhausted"
    NOT_FOUND = "not_found"
    ERROR = "error"


class CacheStatus(StrEnum):
    """Cache status values for metrics."""

    HIT = "true"
    MISS = "false"


class AnalyticsScope(StrEnum):
    """Aggregation scopes served by the analytics cache."""

    ALIAS = "alias"
    TOPIC = "topic"
    OWNER = "owner"
