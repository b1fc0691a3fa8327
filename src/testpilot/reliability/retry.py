"""Retry loop with configurable backoff strategies.

The attempt loop itself is driven by tenacity; this module adds the
delay strategies, per-attempt timeouts and the audit trail the engine
reports on.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Generic, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from testpilot.errors import RetriesExhaustedError, WaitTimeoutError

T = TypeVar("T")


class RetryStrategy(enum.StrEnum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    CUSTOM = "custom"


@dataclass
class RetryOptions:
    """Retry configuration. Delays and timeouts are in seconds."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float | None = 30.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    backoff_multiplier: float = 2.0
    jitter: float = 0.1  # fraction of the delay; the perturbation is +/- jitter * delay / 2
    # CUSTOM strategy: receives the retry number (1 for the second attempt)
    delay_function: Callable[[int], float] | None = None
    # Gates on_retry only; every attempt is consumed regardless.
    should_retry: Callable[[BaseException, int], bool] | None = None
    attempt_timeout: float | None = 30.0
    on_retry: Callable[[BaseException, int, float], None] | None = None
    on_failure: Callable[[BaseException, int], None] | None = None
    wrap_exhausted: bool = False


DEFAULT_RETRY_OPTIONS = RetryOptions()


@dataclass
class AttemptDetail:
    """Audit record of one attempt."""

    attempt: int
    start_time: datetime
    end_time: datetime
    duration: float
    success: bool
    delay: float
    error: BaseException | None = None


@dataclass
class RetryResult(Generic[T]):
    """Terminal outcome of one ``execute_with_details()`` call."""

    success: bool
    attempts: int
    total_time: float
    attempt_details: list[AttemptDetail] = field(default_factory=list)
    result: T | None = None
    error: BaseException | None = None


class RetryManager:
    """Run an async callable up to ``max_attempts`` times.

    Usage:
        retry = RetryManager(max_attempts=5, strategy=RetryStrategy.LINEAR)
        value = await retry.execute(lambda: client.fetch())

    Keyword overrides are applied on top of ``options`` (or the defaults).
    """

    def __init__(
        self,
        options: RetryOptions | None = None,
        *,
        logger: logging.Logger | None = None,
        **overrides: Any,
    ) -> None:
        base = options or DEFAULT_RETRY_OPTIONS
        self._options = dataclasses.replace(base, **overrides)
        if self._options.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._log = logger if logger is not None else logging.getLogger(__name__)

    @property
    def options(self) -> RetryOptions:
        return self._options

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` with retries and return its value.

        Raises the final attempt's error once all attempts are used up
        (wrapped in ``RetriesExhaustedError`` if ``wrap_exhausted`` is set).
        """
        outcome = await self.execute_with_details(fn)
        if outcome.success:
            return outcome.result  # type: ignore[return-value]

        if self._options.wrap_exhausted or outcome.error is None:
            raise RetriesExhaustedError(outcome.attempts, outcome.error) from outcome.error
        raise outcome.error

    async def execute_with_details(self, fn: Callable[[], Awaitable[T]]) -> RetryResult[T]:
        """Run ``fn`` with retries and return the full per-attempt trail."""
        opts = self._options
        details: list[AttemptDetail] = []
        started = time.monotonic()
        next_delay = 0.0

        def _wait(retry_state: RetryCallState) -> float:
            nonlocal next_delay
            next_delay = self.calculate_delay(retry_state.attempt_number + 1)
            return next_delay

        def _before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            attempt = retry_state.attempt_number
            if error is None:
                return
            if opts.should_retry is not None and not opts.should_retry(error, attempt):
                return
            self._log.warning(
                "Attempt %d/%d failed (%s), retrying in %.3fs",
                attempt,
                opts.max_attempts,
                error,
                next_delay,
            )
            if opts.on_retry:
                opts.on_retry(error, attempt, next_delay)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(opts.max_attempts),
            wait=_wait,
            retry=retry_if_exception_type(Exception),
            before_sleep=_before_sleep,
            reraise=True,
        )

        value: T | None = None
        try:
            async for attempt in retrying:
                with attempt:
                    number = attempt.retry_state.attempt_number
                    delay = next_delay if number > 1 else 0.0
                    attempt_start = datetime.now()
                    t0 = time.monotonic()
                    try:
                        value = await self._run_attempt(fn)
                    except Exception as e:
                        details.append(
                            AttemptDetail(
                                attempt=number,
                                start_time=attempt_start,
                                end_time=datetime.now(),
                                duration=time.monotonic() - t0,
                                success=False,
                                delay=delay,
                                error=e,
                            )
                        )
                        raise
                    details.append(
                        AttemptDetail(
                            attempt=number,
                            start_time=attempt_start,
                            end_time=datetime.now(),
                            duration=time.monotonic() - t0,
                            success=True,
                            delay=delay,
                        )
                    )
        except Exception as e:
            if opts.on_failure:
                opts.on_failure(e, len(details))
            return RetryResult(
                success=False,
                attempts=len(details),
                total_time=time.monotonic() - started,
                attempt_details=details,
                error=e,
            )

        return RetryResult(
            success=True,
            attempts=len(details),
            total_time=time.monotonic() - started,
            attempt_details=details,
            result=value,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds before ``attempt`` (1-based; the first attempt never waits)."""
        if attempt <= 1:
            return 0.0

        opts = self._options
        retry_number = attempt - 1
        if opts.strategy == RetryStrategy.FIXED:
            delay = opts.initial_delay
        elif opts.strategy == RetryStrategy.EXPONENTIAL:
            delay = opts.initial_delay * opts.backoff_multiplier ** (attempt - 2)
        elif opts.strategy == RetryStrategy.LINEAR:
            delay = opts.initial_delay * retry_number
        elif opts.strategy == RetryStrategy.CUSTOM and opts.delay_function is not None:
            delay = opts.delay_function(retry_number)
        else:
            delay = opts.initial_delay

        if opts.max_delay is not None:
            delay = min(delay, opts.max_delay)

        if opts.jitter > 0:
            delay += (random.random() - 0.5) * opts.jitter * delay

        return max(0.0, delay)

    async def _run_attempt(self, fn: Callable[[], Awaitable[T]]) -> T:
        timeout = self._options.attempt_timeout
        if not timeout:
            return await fn()
        try:
            async with asyncio.timeout(timeout) as cm:
                return await fn()
        except TimeoutError as e:
            if not cm.expired():
                raise
            raise WaitTimeoutError(f"Operation timed out after {timeout}s") from e


# ---------------------------------------------------------------------------
# Convenience helpers
# ---------------------------------------------------------------------------


async def retry_with_backoff(fn: Callable[[], Awaitable[T]], **overrides: Any) -> T:
    """Retry with exponential backoff."""
    overrides.setdefault("strategy", RetryStrategy.EXPONENTIAL)
    return await RetryManager(**overrides).execute(fn)


async def retry_with_fixed_delay(
    fn: Callable[[], Awaitable[T]], attempts: int = 3, delay: float = 1.0
) -> T:
    """Retry at a fixed interval."""
    retry = RetryManager(max_attempts=attempts, initial_delay=delay, strategy=RetryStrategy.FIXED)
    return await retry.execute(fn)


async def retry_on_specific_errors(
    fn: Callable[[], Awaitable[T]],
    error_types: tuple[type[BaseException], ...],
    **overrides: Any,
) -> T:
    """Retry, announcing only the listed error types through ``on_retry``."""
    retry = RetryManager(
        should_retry=lambda error, _attempt: isinstance(error, error_types),
        **overrides,
    )
    return await retry.execute(fn)


def create_test_retry(**overrides: Any) -> RetryManager:
    """Retry manager tuned for flaky test steps."""

    def _should_retry(error: BaseException, _attempt: int) -> bool:
        return not isinstance(error, (AssertionError, SyntaxError))

    defaults: dict[str, Any] = {
        "max_attempts": 3,
        "initial_delay": 1.0,
        "strategy": RetryStrategy.EXPONENTIAL,
        "backoff_multiplier": 1.5,
        "jitter": 0.1,
        "should_retry": _should_retry,
    }
    defaults.update(overrides)
    return RetryManager(**defaults)
