"""Error taxonomy shared by every engine component."""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all testpilot errors."""


class ValidationError(EngineError, ValueError):
    """Malformed input rejected before any side effect happens."""


class NotActiveError(EngineError, RuntimeError):
    """Operation on a session that was never started or has already ended."""


class WaitTimeoutError(EngineError, TimeoutError):
    """A bounded wait ran out of time."""


class ProcessError(EngineError, RuntimeError):
    """Spawning a process or delivering a signal to it failed."""


class CircuitOpenError(EngineError):
    """The circuit breaker rejected a call without invoking it."""

    def __init__(self, message: str = "Circuit breaker is OPEN", retry_after: float = 0.0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RetriesExhaustedError(EngineError):
    """Every retry attempt failed.

    Only raised when the caller asks for wrapped errors; by default the
    final attempt's own exception is re-raised instead.
    """

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"Operation failed after {attempts} attempt(s){detail}")
        self.attempts = attempts
        self.last_error = last_error
