"""Domain error taxonomy for the short-link service.

Every failure a caller can observe is one of these types. Each carries a
stable machine-readable ``code``, a human-readable ``message`` that never
contains query text or driver detail, and the HTTP status it maps to.

Error Map
=========
::
    AliasConflict        409  custom alias already taken
    RateLimitExceeded    429  admission denied, retry after the window
    NotFound             404  unknown short code
    AuthenticationError  401  no authenticated identity
    AllocationExhausted  503  no free code within the retry budget (retryable)
    StorageError         500  relational store failed or timed out
    CacheError           ---  never surfaced; callers fall back to the store
"""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "AliasConflict",
    "AllocationExhausted",
    "AuthenticationError",
    "CacheError",
    "NotFound",
    "RateLimitExceeded",
    "ShortLinkError",
    "StorageError",
]


@dataclass(eq=False)
class ShortLinkError(Exception):
    """Base error for short-link domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message, safe to show to callers.
        status_code: HTTP status the error maps to.
        retry_after: Advisory retry delay in seconds, if any.
        retryable: Whether the same request may succeed if repeated.
    """

    code: str
    message: str
    status_code: int = 500
    retry_after: int | None = None
    retryable: bool = False

    def __post_init__(self) -> None:
        super().__init__(self.message)


class AliasConflict(ShortLinkError):
    def __init__(self, alias: str) -> None:
        super().__init__(
            code="alias_conflict",
            message=f"Alias '{alias}' is already taken",
            status_code=409,
        )
        self.alias = alias


class AllocationExhausted(ShortLinkError):
    def __init__(self, attempts: int) -> None:
        super().__init__(
            code="allocation_exhausted",
            message="Could not allocate a short code, please retry",
            status_code=503,
            retryable=True,
        )
        self.attempts = attempts


class RateLimitExceeded(ShortLinkError):
    def __init__(self, retry_after: int) -> None:
        super().__init__(
            code="rate_limit_exceeded",
            message="Rate limit exceeded. Try again later.",
            status_code=429,
            retry_after=retry_after,
        )


class NotFound(ShortLinkError):
    def __init__(self, code: str) -> None:
        super().__init__(
            code="not_found",
            message="Short URL not found",
            status_code=404,
        )
        self.short_code = code


class AuthenticationError(ShortLinkError):
    def __init__(self) -> None:
        super().__init__(
            code="unauthenticated",
            message="Authentication required",
            status_code=401,
        )


class StorageError(ShortLinkError):
    def __init__(self, operation: str, *, retryable: bool = False) -> None:
        super().__init__(
            code="storage_error",
            message="The link store is unavailable, please retry later",
            status_code=500,
            retryable=retryable,
        )
        self.operation = operation


class CacheError(ShortLinkError):
    def __init__(self, operation: str) -> None:
        super().__init__(
            code="cache_error",
            message="The cache is unavailable",
            status_code=500,
        )
        self.operation = operation
