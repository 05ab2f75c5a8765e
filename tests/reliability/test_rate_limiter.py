"""
Tests for the token bucket rate limiter.

This module tests RateLimiter, per_minute and RateLimiterPresets.
"""

import pytest

from lumeflow.domain.exception import RateLimitExceeded
from lumeflow.domain.value_object import RateLimiterConfig
from lumeflow.reliability.rate_limiter import RateLimiter, RateLimiterPresets, per_minute


class FakeTime:
    """A clock and a sleep that advances it, recording every sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TestRateLimiter:
    """Test cases for RateLimiter."""

    def setup_method(self):
        """Set up fake time."""
        self.time = FakeTime()

    def make(self, **overrides) -> RateLimiter:
        config = RateLimiterConfig(max_requests=5, period=1.0, name="test")
        return RateLimiter(config, clock=self.time, sleep=self.time.sleep, **overrides)

    async def test_burst_is_admitted_immediately(self):
        """Test a full bucket admits max_requests calls without waiting."""
        limiter = self.make()

        waits = [await limiter.acquire() for _ in range(5)]

        assert waits == [0.0] * 5
        assert self.time.sleeps == []

    async def test_window_is_enforced(self):
        """Test no more than max_requests calls are admitted within any period."""
        limiter = self.make()
        for t in (0.0, 0.1, 0.2, 0.3, 0.4):
            self.time.now = t
            assert await limiter.acquire() == 0.0

        sixth = await limiter.acquire()
        seventh = await limiter.acquire()

        assert sixth == pytest.approx(0.6)
        assert seventh == pytest.approx(0.2)
        assert self.time.now == pytest.approx(1.2)

    async def test_window_wait_does_not_refill_a_second_burst(self):
        """Test calls after a full burst keep waiting instead of spending tokens refilled during the window."""
        limiter = self.make()

        waits = [await limiter.acquire() for _ in range(7)]

        assert waits[:5] == [0.0] * 5
        assert waits[5] == pytest.approx(1.0)
        assert waits[6] == pytest.approx(0.2)
        assert limiter.available_tokens == pytest.approx(0.0)

    async def test_pure_token_bucket(self):
        """Test without window enforcement waits follow the refill rate only."""
        limiter = self.make(enforce_window=False)

        waits = [await limiter.acquire() for _ in range(7)]

        assert waits[:5] == [0.0] * 5
        assert waits[5] == pytest.approx(0.2)
        assert waits[6] == pytest.approx(0.2)

    async def test_max_wait_raises(self):
        """Test a wait longer than max_wait raises instead of sleeping."""
        limiter = self.make(enforce_window=False)
        for _ in range(5):
            await limiter.acquire()

        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.acquire(max_wait=0.1)

        assert exc_info.value.wait == pytest.approx(0.2)
        assert self.time.sleeps == []
        assert limiter.stats.throttled_requests == 1

    async def test_acquire_many(self):
        """Test several tokens are consumed together."""
        limiter = self.make(enforce_window=False)

        assert await limiter.acquire_many(5) == 0.0
        assert await limiter.acquire_many(2) == pytest.approx(0.4)

    async def test_acquire_many_bounds(self):
        """Test a request for more tokens than the bucket holds is rejected."""
        limiter = self.make()

        with pytest.raises(ValueError):
            await limiter.acquire_many(6)
        with pytest.raises(ValueError):
            await limiter.acquire_many(0)

    def test_try_acquire(self):
        """Test try_acquire never waits and reports availability."""
        limiter = self.make()

        results = [limiter.try_acquire() for _ in range(6)]

        assert results == [True] * 5 + [False]
        self.time.now = 1.0
        assert limiter.try_acquire() is True

    def test_tokens_refill_up_to_capacity(self):
        """Test tokens refill continuously and are capped."""
        limiter = self.make(enforce_window=False)
        for _ in range(5):
            limiter.try_acquire()

        self.time.now = 0.5
        assert limiter.available_tokens == pytest.approx(2.5)
        self.time.now = 10.0
        assert limiter.available_tokens == 5.0

    async def test_stats_and_reset(self):
        """Test request counters and wait totals."""
        limiter = self.make(enforce_window=False)
        for _ in range(6):
            await limiter.acquire()

        stats = limiter.stats

        assert stats.total_requests == 6
        assert stats.successful_requests == 6
        assert stats.throttled_requests == 1
        assert stats.total_wait_time == pytest.approx(0.2)
        assert stats.average_wait_time == pytest.approx(0.2 / 6)

        limiter.reset()
        assert limiter.stats.total_requests == 0
        assert limiter.available_tokens == 5.0

    @pytest.mark.parametrize("overrides", [{"max_requests": 0}, {"period": 0}])
    def test_invalid_config(self, overrides):
        """Test the bucket needs a positive size and period."""
        with pytest.raises(ValueError):
            RateLimiter(**overrides)


class TestPresets:
    """Test cases for rate limiter presets."""

    def test_per_minute(self):
        """Test per_minute spreads the budget over 60 seconds."""
        limiter = per_minute(120, name="api")

        assert limiter.config.max_requests == 120
        assert limiter.config.period == 60.0
        assert limiter.rate == 2.0
        assert limiter.name == "api"

    @pytest.mark.parametrize(
        ("preset", "max_requests", "period"),
        [
            (RateLimiterPresets.apify, 100, 60.0),
            (RateLimiterPresets.openrouter, 60, 60.0),
            (RateLimiterPresets.moderate, 10, 1.0),
            (RateLimiterPresets.strict, 1, 1.0),
        ],
    )
    def test_preset_limits(self, preset, max_requests, period):
        """Test each preset carries its provider limits."""
        limiter = preset()

        assert limiter.config.max_requests == max_requests
        assert limiter.config.period == period
        assert limiter.name == preset.__name__
