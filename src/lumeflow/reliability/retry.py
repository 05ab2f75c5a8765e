import asyncio
import dataclasses
import inspect
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from lumeflow.domain.exception import RateLimitExceeded, RetryExhaustedError
from lumeflow.domain.value_object import RetryConfig, RetryStats

logger = logging.getLogger(__name__)


class RetryExecutor:
    """Bounded retry with exponential backoff and jitter, driven by :class:`tenacity.AsyncRetrying`.

    The delay before retry ``n`` (0-based) is ``initial_delay * backoff_multiplier ** n``,
    capped at ``max_delay`` and spread by ``jitter_factor`` when ``jitter`` is on.
    Errors rejected by ``retry_condition`` are re-raised unchanged; running out of
    retries raises :class:`RetryExhaustedError` chained to the last error.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        **overrides: Any,
    ):
        self.config = dataclasses.replace(config or RetryConfig(), **overrides)
        if self.config.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self._sleep = sleep
        self._rng = rng
        self._backoff = wait_exponential(
            multiplier=self.config.initial_delay,
            exp_base=self.config.backoff_multiplier,
            max=self.config.max_delay,
        )

    def _jittered(self, delay: float) -> float:
        config = self.config
        if config.jitter and config.jitter_factor:
            delay += delay * config.jitter_factor * (2 * self._rng() - 1)
        return max(delay, 0.0)

    def _wait(self, retry_state: RetryCallState) -> float:
        return self._jittered(self._backoff(retry_state))

    def compute_delay(self, attempt: int) -> float:
        """
        Delay in seconds before retry number ``attempt`` (0-based).

        :param attempt: Index of the failed attempt
        :type attempt: int
        :rtype: float
        """
        config = self.config
        return self._jittered(min(config.initial_delay * config.backoff_multiplier**attempt, config.max_delay))

    def should_retry(self, exc: BaseException) -> bool:
        if not isinstance(exc, Exception):
            return False
        condition = self.config.retry_condition
        return condition is None or bool(condition(exc))

    async def execute_with_stats(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> tuple[Any, RetryStats]:
        """
        Call ``fn`` until it succeeds or the retries run out.

        :param fn: Callable to invoke; coroutine results are awaited
        :returns: The result of ``fn`` and the attempt statistics
        :rtype: tuple[Any, RetryStats]
        :raises RetryExhaustedError: When every attempt failed
        """
        stats = RetryStats()

        async def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep
            stats.total_delay += delay
            logger.debug("Attempt %d failed (%s), retrying in %.3fs", retry_state.attempt_number, exc, delay)
            if self.config.on_retry is not None:
                hook = self.config.on_retry(retry_state.attempt_number, exc)
                if inspect.isawaitable(hook):
                    await hook

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(self.should_retry),
            before_sleep=before_sleep,
            sleep=self._sleep,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    stats.attempts += 1
                    try:
                        result = fn(*args, **kwargs)
                        if inspect.isawaitable(result):
                            result = await result
                    except Exception as exc:
                        stats.errors.append(str(exc) or type(exc).__name__)
                        raise
        except RetryError as exc:
            last_error = exc.last_attempt.exception()
            logger.warning("Giving up after %d attempts: %s", stats.attempts, last_error)
            raise RetryExhaustedError(stats, last_error) from last_error
        stats.succeeded = True
        return result, stats

    async def execute(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        result, _ = await self.execute_with_stats(fn, *args, **kwargs)
        return result


async def retry(fn: Callable[..., Any], *args: Any, config: RetryConfig | None = None, **overrides: Any) -> Any:
    """Call ``fn`` with a one-off :class:`RetryExecutor` built from ``config`` and ``overrides``."""
    return await RetryExecutor(config, **overrides).execute(fn, *args)


def _status_code(exc: BaseException) -> int | None:
    for candidate in (exc, getattr(exc, "response", None)):
        if candidate is None:
            continue
        for attr in ("status_code", "status"):
            value = getattr(candidate, attr, None)
            if isinstance(value, int):
                return value
    return None


class RetryConditions:
    """Ready made ``retry_condition`` predicates."""

    _network_markers = ("econnreset", "etimedout", "enotfound", "econnrefused", "network", "timed out", "timeout")

    @staticmethod
    def network_error(exc: BaseException) -> bool:
        if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
            return True
        message = str(exc).lower()
        return any(marker in message for marker in RetryConditions._network_markers)

    @staticmethod
    def server_error(exc: BaseException) -> bool:
        status = _status_code(exc)
        return status is not None and 500 <= status < 600

    @staticmethod
    def rate_limited(exc: BaseException) -> bool:
        return isinstance(exc, RateLimitExceeded) or _status_code(exc) == 429

    @staticmethod
    def transient(exc: BaseException) -> bool:
        return (
            RetryConditions.network_error(exc)
            or RetryConditions.server_error(exc)
            or RetryConditions.rate_limited(exc)
        )

    @staticmethod
    def always(exc: BaseException) -> bool:
        return True


class RetryPresets:
    @staticmethod
    def standard(**overrides: Any) -> RetryConfig:
        return dataclasses.replace(RetryConfig(), **overrides)

    @staticmethod
    def aggressive(**overrides: Any) -> RetryConfig:
        config = RetryConfig(max_retries=5, initial_delay=0.5, backoff_multiplier=1.5, max_delay=60.0)
        return dataclasses.replace(config, **overrides)

    @staticmethod
    def conservative(**overrides: Any) -> RetryConfig:
        config = RetryConfig(max_retries=2, initial_delay=2.0, backoff_multiplier=3.0, max_delay=10.0)
        return dataclasses.replace(config, **overrides)
