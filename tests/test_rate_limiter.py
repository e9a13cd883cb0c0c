from __future__ import annotations

import asyncio

import pytest

from credit_metering.services.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_first_request_is_allowed_with_request_id():
    limiter = RateLimiter(clock=FakeClock())

    decision = limiter.check("user-1", "image")

    assert decision.allowed
    assert decision.request_id.startswith("user-1-1000000-")


def test_cooldown_between_consecutive_requests():
    clock = FakeClock()
    limiter = RateLimiter(cooldown_seconds=2.0, clock=clock)
    limiter.check("user-1", "image")

    clock.advance(1.0)
    refused = limiter.check("user-1", "image")
    assert not refused.allowed
    assert refused.reason == "Please wait a moment before submitting another request."

    clock.advance(1.5)
    assert limiter.check("user-1", "image").allowed


def test_window_cap_then_reset():
    clock = FakeClock()
    limiter = RateLimiter(max_requests=3, window_seconds=60.0, cooldown_seconds=0.0, clock=clock)

    for _ in range(3):
        assert limiter.check("user-1", "video").allowed
        clock.advance(1.0)

    refused = limiter.check("user-1", "video")
    assert not refused.allowed
    assert refused.reason == "Too many requests. Maximum 3 requests per minute allowed."

    clock.advance(60.0)
    assert limiter.check("user-1", "video").allowed


def test_request_types_are_throttled_separately():
    limiter = RateLimiter(clock=FakeClock())

    assert limiter.check("user-1", "image").allowed
    assert limiter.check("user-1", "video").allowed
    assert limiter.check("user-2", "image").allowed


def test_anonymous_requests_pass_through():
    limiter = RateLimiter(clock=FakeClock())

    assert limiter.check(None, "image").allowed
    assert limiter.check("undefined", "image").allowed
    assert limiter.check("undefined", "image").allowed


def test_cleanup_drops_stale_entries():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    limiter.check("user-1", "image")
    clock.advance(5 * 60)
    limiter.check("user-2", "image")

    clock.advance(6 * 60)
    assert limiter.cleanup() == 1
    assert limiter.cleanup() == 0


@pytest.mark.asyncio
async def test_background_cleanup_purges_stale_entries():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    limiter.check("user-1", "image")
    clock.advance(11 * 60)

    limiter.start_cleanup(interval_seconds=0.01)
    await asyncio.sleep(0.05)
    await limiter.stop_cleanup()

    assert limiter.cleanup() == 0
    # Stopping twice is harmless
    await limiter.stop_cleanup()
