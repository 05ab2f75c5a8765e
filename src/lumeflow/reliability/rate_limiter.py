import asyncio
import dataclasses
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from lumeflow.domain.exception import RateLimitExceeded
from lumeflow.domain.value_object import RateLimiterConfig, RateLimiterStats

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


class RateLimiter:
    """Token bucket admitting ``max_requests`` per ``period`` seconds.

    Tokens refill continuously at ``max_requests / period`` per second and are capped
    at ``max_requests``. With ``enforce_window`` (the default) the limiter also keeps a
    log of recent admissions so that no more than ``max_requests`` are admitted within
    any ``period``, even right after a full burst.

    Waiters are served one at a time in arrival order.
    """

    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        **overrides: Any,
    ):
        self.config = dataclasses.replace(config or RateLimiterConfig(), **overrides)
        if self.config.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if self.config.period <= 0:
            raise ValueError("period must be > 0")
        self.name = self.config.name
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._tokens = float(self.config.max_requests)
        self._last_refill = clock()
        self._admitted: deque[float] = deque()
        self._total_requests = 0
        self._throttled_requests = 0
        self._successful_requests = 0
        self._total_wait_time = 0.0

    @property
    def rate(self) -> float:
        """Tokens added per second."""
        return self.config.max_requests / self.config.period

    @property
    def available_tokens(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> float:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(float(self.config.max_requests), self._tokens + elapsed * self.rate)
            self._last_refill = now
        return now

    def _wait_time(self, count: int) -> tuple[float, bool]:
        """Return the wait before ``count`` tokens can be taken and whether the window sets it."""
        now = self._refill()
        wait = 0.0
        if self._tokens + _EPSILON < count:
            wait = (count - self._tokens) / self.rate
        window_wait = 0.0
        if self.config.enforce_window:
            horizon = now - self.config.period
            while self._admitted and self._admitted[0] <= horizon + _EPSILON:
                self._admitted.popleft()
            overflow = len(self._admitted) + count - self.config.max_requests
            if overflow > 0:
                window_wait = self._admitted[overflow - 1] + self.config.period - now
        return max(wait, window_wait, 0.0), window_wait > wait

    def _consume(self, count: int, restart_refill: bool = False) -> None:
        self._tokens = max(self._tokens - count, 0.0)
        if self.config.enforce_window:
            now = self._clock()
            self._admitted.extend([now] * count)
            # tokens refilled while the window was full are not spent as a new burst
            if restart_refill:
                self._tokens = 0.0
                self._last_refill = now

    async def acquire(self, max_wait: float | None = None) -> float:
        """
        Wait until a token is available, then consume it.

        :param max_wait: Upper bound on the wait in seconds; None waits as long as needed
        :type max_wait: float | None
        :returns: Seconds spent waiting
        :rtype: float
        :raises RateLimitExceeded: If the wait would exceed ``max_wait``
        """
        return await self.acquire_many(1, max_wait=max_wait)

    async def acquire_many(self, count: int, max_wait: float | None = None) -> float:
        """
        Wait until ``count`` tokens are available, then consume them together.

        :param count: Number of tokens, at most ``max_requests``
        :type count: int
        :param max_wait: Upper bound on the wait in seconds
        :type max_wait: float | None
        :returns: Seconds spent waiting
        :rtype: float
        """
        if count < 1 or count > self.config.max_requests:
            raise ValueError(f"count must be between 1 and {self.config.max_requests}")
        async with self._lock:
            self._total_requests += 1
            waited = 0.0
            window_waited = False
            while True:
                wait, window_bound = self._wait_time(count)
                if wait <= 0:
                    break
                if max_wait is not None and waited + wait > max_wait + _EPSILON:
                    self._throttled_requests += 1
                    raise RateLimitExceeded(self.name, wait)
                logger.debug("Rate limiter %s waiting %.3fs", self.name, wait)
                started = self._clock()
                await self._sleep(wait)
                waited += max(self._clock() - started, 0.0)
                window_waited = window_waited or window_bound
            self._consume(count, restart_refill=window_waited)
            self._successful_requests += 1
            if waited > 0:
                self._throttled_requests += 1
                self._total_wait_time += waited
            return waited

    def try_acquire(self) -> bool:
        """Consume a token if one is available right now, without waiting."""
        self._total_requests += 1
        if self._lock.locked() or self._wait_time(1)[0] > 0:
            self._throttled_requests += 1
            return False
        self._consume(1)
        self._successful_requests += 1
        return True

    def reset(self) -> None:
        """Refill the bucket and clear the statistics."""
        self._tokens = float(self.config.max_requests)
        self._last_refill = self._clock()
        self._admitted.clear()
        self._total_requests = 0
        self._throttled_requests = 0
        self._successful_requests = 0
        self._total_wait_time = 0.0

    @property
    def stats(self) -> RateLimiterStats:
        average = self._total_wait_time / self._successful_requests if self._successful_requests else 0.0
        return RateLimiterStats(
            total_requests=self._total_requests,
            throttled_requests=self._throttled_requests,
            successful_requests=self._successful_requests,
            total_wait_time=self._total_wait_time,
            average_wait_time=average,
            available_tokens=self.available_tokens,
        )


def per_minute(requests_per_minute: int, name: str = "default", **overrides: Any) -> RateLimiter:
    return RateLimiter(RateLimiterConfig(max_requests=requests_per_minute, period=60.0, name=name), **overrides)


class RateLimiterPresets:
    """Limits of the external providers blocks talk to."""

    @staticmethod
    def apify(**overrides: Any) -> RateLimiter:
        return per_minute(100, name="apify", **overrides)

    @staticmethod
    def openrouter(**overrides: Any) -> RateLimiter:
        return per_minute(60, name="openrouter", **overrides)

    @staticmethod
    def moderate(**overrides: Any) -> RateLimiter:
        return RateLimiter(RateLimiterConfig(max_requests=10, period=1.0, name="moderate"), **overrides)

    @staticmethod
    def strict(**overrides: Any) -> RateLimiter:
        return RateLimiter(RateLimiterConfig(max_requests=1, period=1.0, name="strict"), **overrides)
