"""Circuit breaker that stops calling a failing dependency for a cooldown."""

from __future__ import annotations

import dataclasses
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from testpilot.errors import CircuitOpenError
from testpilot.reliability.retry import RetryManager, RetryOptions

T = TypeVar("T")


class CircuitState(enum.StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerOptions:
    """Breaker thresholds. ``reset_timeout`` is in seconds."""

    failure_threshold: int = 5
    reset_timeout: float = 60.0
    success_threshold: int = 1
    is_failure: Callable[[BaseException], bool] | None = None
    on_circuit_open: Callable[[], None] | None = None
    on_circuit_close: Callable[[], None] | None = None


@dataclass
class CircuitMetrics:
    total_calls: int = 0
    total_failures: int = 0
    total_successes: int = 0
    state_changes: int = 0


class CircuitBreaker(Generic[T]):
    """Wrap an operation and trip open after repeated failures.

    States:
    - CLOSED: calls pass through; consecutive qualifying failures are counted.
    - OPEN: calls are rejected with ``CircuitOpenError`` until
      ``reset_timeout`` has elapsed since the last failure.
    - HALF_OPEN: calls are let through to probe recovery. Any failure
      reopens the circuit; ``success_threshold`` successes close it.

    ``on_circuit_close`` fires on every return to CLOSED, including the
    normal HALF_OPEN -> CLOSED recovery and ``reset()`` from OPEN.
    """

    def __init__(
        self,
        options: CircuitBreakerOptions | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
        **overrides: Any,
    ) -> None:
        self._options = dataclasses.replace(options or CircuitBreakerOptions(), **overrides)
        self._clock = clock
        self._log = logger if logger is not None else logging.getLogger(__name__)
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._last_failure_time = 0.0
        self._metrics = CircuitMetrics()

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Call ``fn`` through the breaker.

        Raises:
            CircuitOpenError: the circuit is open and the reset timeout has
                not elapsed. ``fn`` is not called.
        """
        self._metrics.total_calls += 1

        if self._state == CircuitState.OPEN:
            elapsed = self._clock() - self._last_failure_time
            if elapsed >= self._options.reset_timeout:
                self._set_state(CircuitState.HALF_OPEN)
            else:
                raise CircuitOpenError(
                    retry_after=self._options.reset_timeout - elapsed,
                )

        try:
            result = await fn()
        except Exception as e:
            self._on_failure(e)
            raise
        self._on_success()
        return result

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    @property
    def metrics(self) -> CircuitMetrics:
        """Snapshot of the cumulative counters."""
        return dataclasses.replace(self._metrics)

    def reset(self) -> None:
        """Force CLOSED and zero the failure/success counters."""
        self._set_state(CircuitState.CLOSED)
        self._failures = 0
        self._successes = 0
        self._last_failure_time = 0.0

    def _on_success(self) -> None:
        self._metrics.total_successes += 1
        self._successes += 1

        if self._state == CircuitState.HALF_OPEN:
            if self._successes >= self._options.success_threshold:
                self._set_state(CircuitState.CLOSED)
                self._failures = 0
                self._successes = 0
        elif self._state == CircuitState.CLOSED:
            self._failures = 0

    def _on_failure(self, error: BaseException) -> None:
        if self._options.is_failure is not None and not self._options.is_failure(error):
            return

        self._metrics.total_failures += 1
        self._failures += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.CLOSED:
            if self._failures >= self._options.failure_threshold:
                self._set_state(CircuitState.OPEN)
        elif self._state == CircuitState.HALF_OPEN:
            self._successes = 0
            self._set_state(CircuitState.OPEN)

    def _set_state(self, new_state: CircuitState) -> None:
        if self._state == new_state:
            return
        old_state = self._state
        self._state = new_state
        self._metrics.state_changes += 1
        self._log.debug("Circuit %s -> %s", old_state, new_state)

        if new_state == CircuitState.OPEN:
            if self._options.on_circuit_open:
                self._options.on_circuit_open()
        elif new_state == CircuitState.CLOSED and old_state != CircuitState.CLOSED:
            if self._options.on_circuit_close:
                self._options.on_circuit_close()


class RetryWithCircuitBreaker(Generic[T]):
    """Retry sequence guarded by a circuit breaker.

    The breaker sees one call per ``execute()``: the aggregate outcome of
    the whole retry sequence, not the individual attempts.
    """

    def __init__(
        self,
        retry_options: RetryOptions | None = None,
        breaker_options: CircuitBreakerOptions | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self._retry = RetryManager(retry_options, logger=logger)
        self._breaker: CircuitBreaker[T] = CircuitBreaker(
            breaker_options, clock=clock, logger=logger
        )

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        return await self._breaker.execute(lambda: self._retry.execute(fn))

    def get_circuit_state(self) -> CircuitState:
        return self._breaker.state

    def get_metrics(self) -> dict[str, CircuitMetrics]:
        return {"circuit_breaker": self._breaker.metrics}

    def reset(self) -> None:
        self._breaker.reset()


def create_circuit_breaker(
    failure_threshold: int = 5,
    reset_timeout: float = 60.0,
    logger: logging.Logger | None = None,
) -> CircuitBreaker[Any]:
    """Breaker that logs its open/close transitions."""
    log = logger if logger is not None else logging.getLogger(__name__)
    return CircuitBreaker(
        failure_threshold=failure_threshold,
        reset_timeout=reset_timeout,
        on_circuit_open=lambda: log.warning("Circuit breaker opened"),
        on_circuit_close=lambda: log.info("Circuit breaker closed"),
        logger=log,
    )
