"""Tests for testpilot.reliability.retry."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from testpilot.errors import RetriesExhaustedError, WaitTimeoutError
from testpilot.reliability.retry import (
    DEFAULT_RETRY_OPTIONS,
    RetryManager,
    RetryOptions,
    RetryStrategy,
    create_test_retry,
    retry_on_specific_errors,
    retry_with_backoff,
    retry_with_fixed_delay,
)


# ---------------------------------------------------------------------------
# calculate_delay
# ---------------------------------------------------------------------------


class TestCalculateDelay:
    def test_first_attempt_never_waits(self) -> None:
        retry = RetryManager(initial_delay=10, jitter=0)
        assert retry.calculate_delay(1) == 0.0

    def test_exponential(self) -> None:
        retry = RetryManager(
            strategy=RetryStrategy.EXPONENTIAL,
            initial_delay=10,
            backoff_multiplier=2,
            jitter=0,
            max_delay=None,
        )
        for attempt in range(2, 8):
            assert retry.calculate_delay(attempt) == 10 * 2 ** (attempt - 2)

    def test_exponential_clamped_to_max_delay(self) -> None:
        retry = RetryManager(
            strategy=RetryStrategy.EXPONENTIAL,
            initial_delay=10,
            backoff_multiplier=2,
            jitter=0,
            max_delay=50,
        )
        assert retry.calculate_delay(4) == 40
        assert retry.calculate_delay(5) == 50
        assert retry.calculate_delay(9) == 50

    def test_fixed(self) -> None:
        retry = RetryManager(strategy=RetryStrategy.FIXED, initial_delay=3, jitter=0)
        assert [retry.calculate_delay(i) for i in (2, 3, 4)] == [3, 3, 3]

    def test_linear(self) -> None:
        retry = RetryManager(strategy=RetryStrategy.LINEAR, initial_delay=2, jitter=0)
        assert [retry.calculate_delay(i) for i in (2, 3, 4)] == [2, 4, 6]

    def test_custom(self) -> None:
        retry = RetryManager(
            strategy=RetryStrategy.CUSTOM,
            delay_function=lambda n: n * 0.5,
            jitter=0,
        )
        assert retry.calculate_delay(2) == 0.5
        assert retry.calculate_delay(5) == 2.0

    def test_custom_without_function_falls_back_to_initial(self) -> None:
        retry = RetryManager(strategy=RetryStrategy.CUSTOM, initial_delay=4, jitter=0)
        assert retry.calculate_delay(3) == 4

    def test_jitter_stays_within_half_band(self) -> None:
        retry = RetryManager(strategy=RetryStrategy.FIXED, initial_delay=10, jitter=0.5)
        for _ in range(200):
            delay = retry.calculate_delay(2)
            assert 7.5 <= delay <= 12.5


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


class TestRetryOptions:
    def test_defaults(self) -> None:
        assert DEFAULT_RETRY_OPTIONS.max_attempts == 3
        assert DEFAULT_RETRY_OPTIONS.initial_delay == 1.0
        assert DEFAULT_RETRY_OPTIONS.max_delay == 30.0
        assert DEFAULT_RETRY_OPTIONS.strategy == RetryStrategy.EXPONENTIAL
        assert DEFAULT_RETRY_OPTIONS.attempt_timeout == 30.0

    def test_overrides_apply_on_top_of_options(self) -> None:
        base = RetryOptions(max_attempts=7, initial_delay=0.5)
        retry = RetryManager(base, initial_delay=0.1)
        assert retry.options.max_attempts == 7
        assert retry.options.initial_delay == 0.1
        # The passed options object is not mutated
        assert base.initial_delay == 0.5

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError, match="max_attempts"):
            RetryManager(max_attempts=0)


# ---------------------------------------------------------------------------
# execute
# ---------------------------------------------------------------------------


class TestExecute:
    async def test_success_on_first_try(self) -> None:
        fn = AsyncMock(return_value="ok")
        result = await RetryManager(initial_delay=0).execute(fn)
        assert result == "ok"
        assert fn.call_count == 1

    async def test_retries_until_success(self) -> None:
        fn = AsyncMock(side_effect=[ConnectionError("conn failed"), "ok"])
        result = await RetryManager(initial_delay=0).execute(fn)
        assert result == "ok"
        assert fn.call_count == 2

    async def test_reraises_final_error(self) -> None:
        fn = AsyncMock(
            side_effect=[
                ConnectionError("fail 1"),
                ConnectionError("fail 2"),
                ConnectionError("fail 3"),
            ]
        )
        with pytest.raises(ConnectionError, match="fail 3"):
            await RetryManager(initial_delay=0).execute(fn)
        assert fn.call_count == 3

    async def test_wrap_exhausted(self) -> None:
        fn = AsyncMock(side_effect=OSError("disk"))
        retry = RetryManager(max_attempts=2, initial_delay=0, wrap_exhausted=True)
        with pytest.raises(RetriesExhaustedError, match="after 2 attempt") as exc_info:
            await retry.execute(fn)
        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_error, OSError)

    async def test_should_retry_does_not_shorten_the_loop(self) -> None:
        fn = AsyncMock(side_effect=ValueError("bad"))
        calls: list[int] = []
        retry = RetryManager(
            max_attempts=4,
            initial_delay=0,
            should_retry=lambda _e, _n: False,
            on_retry=lambda _e, attempt, _d: calls.append(attempt),
        )
        with pytest.raises(ValueError):
            await retry.execute(fn)
        assert fn.call_count == 4
        assert calls == []

    async def test_on_retry_receives_attempt_and_delay(self) -> None:
        fn = AsyncMock(side_effect=[OSError("a"), OSError("b"), "ok"])
        calls: list[tuple[str, int, float]] = []
        retry = RetryManager(
            strategy=RetryStrategy.FIXED,
            initial_delay=0.01,
            jitter=0,
            on_retry=lambda e, attempt, delay: calls.append((str(e), attempt, delay)),
        )
        assert await retry.execute(fn) == "ok"
        assert calls == [("a", 1, 0.01), ("b", 2, 0.01)]

    async def test_on_failure_called_once_exhausted(self) -> None:
        fn = AsyncMock(side_effect=OSError("nope"))
        failures: list[tuple[str, int]] = []
        retry = RetryManager(
            max_attempts=2,
            initial_delay=0,
            on_failure=lambda e, attempts: failures.append((str(e), attempts)),
        )
        with pytest.raises(OSError):
            await retry.execute(fn)
        assert failures == [("nope", 2)]

    async def test_attempt_timeout(self) -> None:
        async def slow() -> str:
            await asyncio.sleep(5)
            return "late"

        retry = RetryManager(max_attempts=1, attempt_timeout=0.05)
        with pytest.raises(WaitTimeoutError, match="timed out after 0.05s"):
            await retry.execute(slow)

    async def test_attempt_timeout_then_success(self) -> None:
        calls = 0

        async def flaky() -> str:
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(5)
            return "ok"

        retry = RetryManager(max_attempts=2, initial_delay=0, attempt_timeout=0.05)
        assert await retry.execute(flaky) == "ok"
        assert calls == 2

    async def test_own_timeout_error_not_reported_as_attempt_timeout(self) -> None:
        async def gateway() -> str:
            raise TimeoutError("upstream gateway timeout")

        retry = RetryManager(max_attempts=1, attempt_timeout=5.0)
        with pytest.raises(TimeoutError, match="upstream gateway timeout") as exc_info:
            await retry.execute(gateway)
        assert not isinstance(exc_info.value, WaitTimeoutError)


# ---------------------------------------------------------------------------
# execute_with_details
# ---------------------------------------------------------------------------


class TestExecuteWithDetails:
    async def test_success_trail(self) -> None:
        fn = AsyncMock(side_effect=[OSError("first"), "ok"])
        retry = RetryManager(strategy=RetryStrategy.FIXED, initial_delay=0.01, jitter=0)
        outcome = await retry.execute_with_details(fn)

        assert outcome.success is True
        assert outcome.result == "ok"
        assert outcome.error is None
        assert outcome.attempts == 2
        first, second = outcome.attempt_details
        assert (first.attempt, first.success, first.delay) == (1, False, 0.0)
        assert isinstance(first.error, OSError)
        assert (second.attempt, second.success, second.delay) == (2, True, 0.01)
        assert second.end_time >= second.start_time
        assert outcome.total_time > 0

    async def test_failure_trail(self) -> None:
        fn = AsyncMock(side_effect=KeyError("k"))
        outcome = await RetryManager(max_attempts=3, initial_delay=0).execute_with_details(fn)
        assert outcome.success is False
        assert outcome.attempts == 3
        assert isinstance(outcome.error, KeyError)
        assert all(not d.success for d in outcome.attempt_details)

    async def test_does_not_raise(self) -> None:
        fn = AsyncMock(side_effect=RuntimeError("boom"))
        outcome = await RetryManager(max_attempts=1).execute_with_details(fn)
        assert outcome.success is False
        assert str(outcome.error) == "boom"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    async def test_retry_with_backoff(self) -> None:
        fn = AsyncMock(side_effect=[OSError("x"), "done"])
        assert await retry_with_backoff(fn, initial_delay=0) == "done"

    async def test_retry_with_fixed_delay(self) -> None:
        fn = AsyncMock(side_effect=[OSError("x"), OSError("y"), "done"])
        assert await retry_with_fixed_delay(fn, attempts=3, delay=0) == "done"
        assert fn.call_count == 3

    async def test_retry_on_specific_errors_announces_only_listed(self) -> None:
        fn = AsyncMock(side_effect=[ValueError("v"), ConnectionError("c"), "ok"])
        announced: list[str] = []
        result = await retry_on_specific_errors(
            fn,
            (ConnectionError,),
            initial_delay=0,
            on_retry=lambda e, _a, _d: announced.append(type(e).__name__),
        )
        assert result == "ok"
        assert announced == ["ConnectionError"]

    async def test_create_test_retry_skips_assertion_announcements(self) -> None:
        announced: list[str] = []
        retry = create_test_retry(
            initial_delay=0,
            on_retry=lambda e, _a, _d: announced.append(type(e).__name__),
        )
        fn = AsyncMock(side_effect=[AssertionError("a"), TimeoutError("t"), "ok"])
        assert await retry.execute(fn) == "ok"
        assert announced == ["TimeoutError"]

    def test_create_test_retry_defaults(self) -> None:
        retry = create_test_retry()
        assert retry.options.max_attempts == 3
        assert retry.options.backoff_multiplier == 1.5
