"""Reliability primitives — retry with backoff and circuit breaking."""

from testpilot.reliability.breaker import (
    CircuitBreaker,
    CircuitBreakerOptions,
    CircuitMetrics,
    CircuitState,
    RetryWithCircuitBreaker,
    create_circuit_breaker,
)
from testpilot.reliability.retry import (
    DEFAULT_RETRY_OPTIONS,
    AttemptDetail,
    RetryManager,
    RetryOptions,
    RetryResult,
    RetryStrategy,
    create_test_retry,
    retry_on_specific_errors,
    retry_with_backoff,
    retry_with_fixed_delay,
)

__all__ = [
    "DEFAULT_RETRY_OPTIONS",
    "AttemptDetail",
    "CircuitBreaker",
    "CircuitBreakerOptions",
    "CircuitMetrics",
    "CircuitState",
    "RetryManager",
    "RetryOptions",
    "RetryResult",
    "RetryStrategy",
    "RetryWithCircuitBreaker",
    "create_circuit_breaker",
    "create_test_retry",
    "retry_on_specific_errors",
    "retry_with_backoff",
    "retry_with_fixed_delay",
]
