import dataclasses
import functools
import inspect
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from lumeflow.domain.exception import CircuitOpenError
from lumeflow.domain.value_object import CircuitBreakerConfig, CircuitBreakerSnapshot, CircuitState

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Failure-triggered short-circuiting around a callable.

    ``closed``: calls pass; ``failure_threshold`` consecutive failures open the circuit.
    ``open``: calls are rejected with :class:`CircuitOpenError` until ``reset_timeout``
    seconds have elapsed. ``half_open``: up to ``half_open_attempts`` trial calls are
    admitted; any failure reopens the circuit and that many successes close it.

    Exceptions for which ``is_failure`` returns False pass through without being counted.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        is_failure: Callable[[BaseException], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
        **overrides: Any,
    ):
        self.config = dataclasses.replace(config or CircuitBreakerConfig(), **overrides)
        if self.config.failure_threshold < 1 or self.config.half_open_attempts < 1:
            raise ValueError("failure_threshold and half_open_attempts must be >= 1")
        self.name = self.config.name
        self.is_failure = is_failure or (lambda exc: True)
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float | None = None
        self._next_attempt_time: float | None = None
        self._half_open_in_flight = 0
        self._half_open_trials = 0
        self._half_open_successes = 0
        self._total_calls = 0
        self._rejected_calls = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def _current_state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._clock() >= self._next_attempt_time:
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    def _transition(self, state: CircuitState) -> None:
        previous, self._state = self._state, state
        if state is CircuitState.OPEN:
            self._next_attempt_time = self._clock() + self.config.reset_timeout
        elif state is CircuitState.HALF_OPEN:
            self._half_open_in_flight = 0
            self._half_open_trials = 0
            self._half_open_successes = 0
        else:
            self._failure_count = 0
            self._next_attempt_time = None
        logger.info("Circuit %s: %s -> %s", self.name, previous.value, state.value)

    def _admit(self) -> CircuitState:
        with self._lock:
            self._total_calls += 1
            state = self._current_state()
            if state is CircuitState.OPEN:
                self._rejected_calls += 1
                raise CircuitOpenError(self.name, self._next_attempt_time)
            if state is CircuitState.HALF_OPEN:
                if self._half_open_in_flight + self._half_open_successes >= self.config.half_open_attempts:
                    self._rejected_calls += 1
                    raise CircuitOpenError(self.name, self._clock())
                self._half_open_in_flight += 1
                self._half_open_trials += 1
            return state

    def _record_success(self, admitted: CircuitState) -> None:
        with self._lock:
            if admitted is CircuitState.HALF_OPEN and self._state is CircuitState.HALF_OPEN:
                self._half_open_in_flight -= 1
                self._half_open_successes += 1
                if self._half_open_successes >= self.config.half_open_attempts:
                    self._transition(CircuitState.CLOSED)
            elif self._state is CircuitState.CLOSED:
                self._failure_count = 0

    def _release(self, admitted: CircuitState) -> None:
        with self._lock:
            if admitted is CircuitState.HALF_OPEN and self._state is CircuitState.HALF_OPEN:
                self._half_open_in_flight -= 1

    def _record_failure(self, admitted: CircuitState, exc: BaseException) -> None:
        if not self.is_failure(exc):
            self._release(admitted)
            return
        with self._lock:
            self._last_failure_time = self._clock()
            if admitted is CircuitState.HALF_OPEN and self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif self._state is CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.config.failure_threshold:
                    self._transition(CircuitState.OPEN)

    async def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Invoke ``fn`` through the breaker; coroutine results are awaited.

        :raises CircuitOpenError: If the circuit rejects the call; ``fn`` is not invoked
        """
        admitted = self._admit()
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            self._record_failure(admitted, exc)
            raise
        except BaseException:
            self._release(admitted)
            raise
        self._record_success(admitted)
        return result

    def call_sync(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        admitted = self._admit()
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            self._record_failure(admitted, exc)
            raise
        except BaseException:
            self._release(admitted)
            raise
        self._record_success(admitted)
        return result

    def protect(self, fn: Callable[..., Any]) -> Callable[..., Any]:
        """Decorator routing every call of ``fn`` through the breaker."""
        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args, **kwargs):
                return await self.call(fn, *args, **kwargs)

            return async_wrapper

        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            return self.call_sync(fn, *args, **kwargs)

        return wrapper

    def reset(self) -> None:
        """Force the breaker back to ``closed`` and clear its counters."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._next_attempt_time = None
            self._half_open_in_flight = 0
            self._half_open_trials = 0
            self._half_open_successes = 0
            self._total_calls = 0
            self._rejected_calls = 0

    def snapshot(self) -> CircuitBreakerSnapshot:
        with self._lock:
            state = self._current_state()
            return CircuitBreakerSnapshot(
                name=self.name,
                state=state,
                failure_count=self._failure_count,
                half_open_trial_count=self._half_open_trials,
                half_open_successes=self._half_open_successes,
                last_failure_time=self._last_failure_time,
                next_attempt_time=self._next_attempt_time,
                total_calls=self._total_calls,
                rejected_calls=self._rejected_calls,
            )
