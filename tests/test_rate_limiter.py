"""Tests for the shared request rate limiter."""

import asyncio

import pytest

from safevote_bots.rate_limiter import RateLimiter


class ManualClock:
    """Monotonic clock driven by the limiter's own sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.mark.unit
@pytest.mark.asyncio
class TestRateLimiter:
    """Fixed spacing between request slots."""

    async def test_first_request_is_immediate(self):
        clock = ManualClock()
        limiter = RateLimiter(2.0, clock=clock, sleep=clock.sleep)
        await limiter.acquire()
        assert clock.sleeps == []
        assert limiter.request_count == 1

    async def test_concurrent_callers_are_spaced(self):
        clock = ManualClock()
        limiter = RateLimiter(2.0, clock=clock, sleep=clock.sleep)
        granted = []

        async def caller():
            async with limiter:
                granted.append(clock.now)

        await asyncio.gather(*(caller() for _ in range(4)))

        assert granted == [0.0, 2.0, 4.0, 6.0]
        assert limiter.request_count == 4
        assert limiter.total_wait == pytest.approx(6.0)

    async def test_elapsed_time_counts_towards_interval(self):
        clock = ManualClock()
        limiter = RateLimiter(2.0, clock=clock, sleep=clock.sleep)
        await limiter.acquire()
        clock.now += 1.5
        await limiter.acquire()
        assert clock.sleeps == [pytest.approx(0.5)]

    async def test_zero_interval_never_sleeps(self):
        clock = ManualClock()
        limiter = RateLimiter(0, clock=clock, sleep=clock.sleep)
        for _ in range(5):
            await limiter.acquire()
        assert clock.sleeps == []
