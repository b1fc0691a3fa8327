"""Tests for testpilot.reliability.breaker."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock

import pytest

from testpilot.errors import CircuitOpenError
from testpilot.reliability.breaker import (
    CircuitBreaker,
    CircuitBreakerOptions,
    CircuitState,
    RetryWithCircuitBreaker,
    create_circuit_breaker,
)
from testpilot.reliability.retry import RetryOptions


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def _trip(breaker: CircuitBreaker, times: int = 1) -> None:
    for _ in range(times):
        with pytest.raises(OSError):
            await breaker.execute(AsyncMock(side_effect=OSError("down")))


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------


class TestCircuitBreakerStates:
    async def test_starts_closed(self) -> None:
        breaker = CircuitBreaker()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    async def test_success_passes_through(self) -> None:
        breaker = CircuitBreaker()
        assert await breaker.execute(AsyncMock(return_value=42)) == 42

    async def test_opens_at_threshold(self) -> None:
        breaker = CircuitBreaker(failure_threshold=3, clock=FakeClock())
        await _trip(breaker, 2)
        assert breaker.state == CircuitState.CLOSED
        await _trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN

    async def test_open_rejects_without_calling(self) -> None:
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=60, clock=clock)
        await _trip(breaker)

        clock.advance(10)
        fn = AsyncMock(return_value="ok")
        with pytest.raises(CircuitOpenError, match="OPEN") as exc_info:
            await breaker.execute(fn)
        fn.assert_not_called()
        assert exc_info.value.retry_after == pytest.approx(50)

    async def test_half_open_after_reset_timeout_closes_on_success(self) -> None:
        clock = FakeClock()
        closed: list[bool] = []
        breaker = CircuitBreaker(
            failure_threshold=1,
            reset_timeout=30,
            clock=clock,
            on_circuit_close=lambda: closed.append(True),
        )
        await _trip(breaker)
        clock.advance(30)

        assert await breaker.execute(AsyncMock(return_value="ok")) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert closed == [True]

    async def test_half_open_failure_reopens(self) -> None:
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=30, clock=clock)
        await _trip(breaker)
        clock.advance(31)
        await _trip(breaker)
        assert breaker.state == CircuitState.OPEN

        # The cooldown restarts from the latest failure
        clock.advance(10)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(AsyncMock(return_value="ok"))

    async def test_success_threshold(self) -> None:
        clock = FakeClock()
        breaker = CircuitBreaker(
            failure_threshold=1, reset_timeout=5, success_threshold=2, clock=clock
        )
        await _trip(breaker)
        clock.advance(5)

        await breaker.execute(AsyncMock(return_value=1))
        assert breaker.state == CircuitState.HALF_OPEN
        await breaker.execute(AsyncMock(return_value=2))
        assert breaker.state == CircuitState.CLOSED

    async def test_success_resets_consecutive_failures(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2)
        await _trip(breaker)
        await breaker.execute(AsyncMock(return_value="ok"))
        assert breaker.failure_count == 0
        await _trip(breaker)
        assert breaker.state == CircuitState.CLOSED

    async def test_is_failure_filters_errors(self) -> None:
        breaker = CircuitBreaker(
            failure_threshold=1,
            is_failure=lambda e: not isinstance(e, KeyError),
        )
        with pytest.raises(KeyError):
            await breaker.execute(AsyncMock(side_effect=KeyError("ignored")))
        assert breaker.state == CircuitState.CLOSED
        assert breaker.metrics.total_failures == 0

    async def test_on_circuit_open_callback(self) -> None:
        opened: list[bool] = []
        breaker = CircuitBreaker(failure_threshold=1, on_circuit_open=lambda: opened.append(True))
        await _trip(breaker)
        assert opened == [True]

    async def test_on_circuit_close_fires_on_recovery(self) -> None:
        clock = FakeClock()
        closed: list[bool] = []
        breaker = CircuitBreaker(
            failure_threshold=1,
            reset_timeout=10,
            clock=clock,
            on_circuit_close=lambda: closed.append(True),
        )
        await _trip(breaker)
        clock.advance(11)
        await breaker.execute(AsyncMock(return_value="ok"))

        assert breaker.state == CircuitState.CLOSED
        assert closed == [True]

    async def test_on_circuit_close_fires_on_reset_from_open(self) -> None:
        closed: list[bool] = []
        breaker = CircuitBreaker(failure_threshold=1, on_circuit_close=lambda: closed.append(True))
        await _trip(breaker)
        breaker.reset()
        breaker.reset()
        assert closed == [True]


# ---------------------------------------------------------------------------
# Metrics and reset
# ---------------------------------------------------------------------------


class TestCircuitBreakerMetrics:
    async def test_counts(self) -> None:
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=60, clock=clock)
        await breaker.execute(AsyncMock(return_value="ok"))
        await _trip(breaker)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(AsyncMock(return_value="ok"))

        metrics = breaker.metrics
        assert metrics.total_calls == 3
        assert metrics.total_successes == 1
        assert metrics.total_failures == 1
        assert metrics.state_changes == 1

    async def test_metrics_is_a_snapshot(self) -> None:
        breaker = CircuitBreaker()
        snapshot = breaker.metrics
        await breaker.execute(AsyncMock(return_value="ok"))
        assert snapshot.total_calls == 0
        assert breaker.metrics.total_calls == 1

    async def test_reset_closes_and_keeps_cumulative_metrics(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, clock=FakeClock())
        await _trip(breaker)
        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.metrics.total_failures == 1
        assert await breaker.execute(AsyncMock(return_value="ok")) == "ok"

    def test_options_object(self) -> None:
        opts = CircuitBreakerOptions(failure_threshold=2, reset_timeout=1.5)
        breaker = CircuitBreaker(opts, reset_timeout=3.0)
        assert breaker.state == CircuitState.CLOSED
        # Overrides never mutate the caller's options
        assert opts.reset_timeout == 1.5


# ---------------------------------------------------------------------------
# RetryWithCircuitBreaker
# ---------------------------------------------------------------------------


class TestRetryWithCircuitBreaker:
    async def test_breaker_sees_one_call_per_sequence(self) -> None:
        guarded = RetryWithCircuitBreaker(
            RetryOptions(max_attempts=3, initial_delay=0),
            CircuitBreakerOptions(failure_threshold=5),
        )
        fn = AsyncMock(side_effect=OSError("down"))
        with pytest.raises(OSError):
            await guarded.execute(fn)

        assert fn.call_count == 3
        metrics = guarded.get_metrics()["circuit_breaker"]
        assert metrics.total_calls == 1
        assert metrics.total_failures == 1
        assert guarded.get_circuit_state() == CircuitState.CLOSED

    async def test_opens_and_rejects(self) -> None:
        clock = FakeClock()
        guarded = RetryWithCircuitBreaker(
            RetryOptions(max_attempts=2, initial_delay=0),
            CircuitBreakerOptions(failure_threshold=1, reset_timeout=10),
            clock=clock,
        )
        with pytest.raises(OSError):
            await guarded.execute(AsyncMock(side_effect=OSError("down")))
        assert guarded.get_circuit_state() == CircuitState.OPEN

        fn = AsyncMock(return_value="ok")
        with pytest.raises(CircuitOpenError):
            await guarded.execute(fn)
        fn.assert_not_called()

        guarded.reset()
        assert await guarded.execute(fn) == "ok"

    async def test_retry_recovers_inside_one_call(self) -> None:
        guarded = RetryWithCircuitBreaker(
            RetryOptions(max_attempts=3, initial_delay=0),
            CircuitBreakerOptions(failure_threshold=1),
        )
        fn = AsyncMock(side_effect=[OSError("blip"), "ok"])
        assert await guarded.execute(fn) == "ok"
        assert guarded.get_circuit_state() == CircuitState.CLOSED


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestCreateCircuitBreaker:
    async def test_logs_transitions(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = logging.getLogger("testpilot.test.breaker")
        breaker = create_circuit_breaker(failure_threshold=1, reset_timeout=0, logger=logger)

        with caplog.at_level(logging.INFO, logger=logger.name):
            await _trip(breaker)
            await breaker.execute(AsyncMock(return_value="ok"))

        assert "Circuit breaker opened" in caplog.text
        assert "Circuit breaker closed" in caplog.text
