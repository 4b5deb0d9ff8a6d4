"""Trailing-window rate limiter tests."""

import asyncio

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError

from shortlinks.errors import StorageError
from shortlinks.rate_limiter import RateLimiter


async def admit_and_record(limiter: RateLimiter, identity: str):
    decision = await limiter.admit(identity)
    if decision.allowed:
        await limiter.record(identity)
    return decision


@pytest.mark.asyncio
async def test_unknown_identity_is_admitted(rate_limiter: RateLimiter) -> None:
    decision = await rate_limiter.admit("never-seen")
    assert decision.allowed is True
    assert decision.count == 0
    assert decision.remaining == 10


@pytest.mark.asyncio
async def test_admit_does_not_record(rate_limiter: RateLimiter) -> None:
    for _ in range(3):
        await rate_limiter.admit("alice")
    assert await rate_limiter.count("alice") == 0


@pytest.mark.asyncio
async def test_tenth_admitted_eleventh_denied(rate_limiter: RateLimiter) -> None:
    decisions = [await admit_and_record(rate_limiter, "alice") for _ in range(12)]

    assert all(d.allowed for d in decisions[:10])
    assert decisions[9].remaining == 1
    assert decisions[10].allowed is False
    assert decisions[10].retry_after_seconds == 3600
    assert decisions[11].allowed is False
    assert await rate_limiter.count("alice") == 10


@pytest.mark.asyncio
async def test_identities_are_independent(rate_limiter: RateLimiter) -> None:
    for _ in range(10):
        await admit_and_record(rate_limiter, "alice")

    assert (await rate_limiter.admit("alice")).allowed is False
    assert (await rate_limiter.admit("bob")).allowed is True


@pytest.mark.asyncio
async def test_window_slides(rate_limiter: RateLimiter, clock) -> None:
    for _ in range(10):
        await admit_and_record(rate_limiter, "alice")
        clock.advance(60)

    # Oldest record is now 600s old, still inside the hour.
    assert (await rate_limiter.admit("alice")).allowed is False

    clock.advance(3001)
    decision = await rate_limiter.admit("alice")
    assert decision.allowed is True
    assert decision.count == 9


@pytest.mark.asyncio
async def test_record_at_window_edge_still_counts(rate_limiter: RateLimiter, clock) -> None:
    await rate_limiter.record("alice")
    clock.advance(3600)
    assert await rate_limiter.count("alice") == 1

    clock.advance(1)
    assert await rate_limiter.count("alice") == 0


@pytest.mark.asyncio
async def test_concurrent_admissions_may_overshoot(session_factory, clock) -> None:
    limiter = RateLimiter(session_factory, max_requests=3, window_seconds=3600, store_timeout=10.0, clock=clock)

    decisions = await asyncio.gather(*(limiter.admit("alice") for _ in range(5)))
    assert all(d.allowed for d in decisions)
    for _ in decisions:
        await limiter.record("alice")

    assert await limiter.count("alice") == 5
    assert (await limiter.admit("alice")).allowed is False


def test_rejects_empty_window(session_factory) -> None:
    with pytest.raises(ValueError):
        RateLimiter(session_factory, max_requests=10, window_seconds=0)
    with pytest.raises(ValueError):
        RateLimiter(session_factory, max_requests=0, window_seconds=60)


@pytest.mark.asyncio
async def test_store_failure_is_storage_error() -> None:
    def broken_factory():
        raise OperationalError("SELECT", {}, Exception("timeout"))

    limiter = RateLimiter(broken_factory, max_requests=10, window_seconds=3600)
    with pytest.raises(StorageError) as exc_info:
        await limiter.admit("alice")
    assert exc_info.value.retryable is True

    with pytest.raises(StorageError):
        await limiter.record("alice")


@pytest.mark.asyncio
async def test_denials_are_counted_as_rate_limited(rate_limiter: RateLimiter) -> None:
    def denials() -> float:
        return REGISTRY.get_sample_value("shortlinks_rate_limit_decisions_total", {"status": "rate_limited"}) or 0.0

    before = denials()
    for _ in range(11):
        await admit_and_record(rate_limiter, "dora")

    assert denials() == before + 1
