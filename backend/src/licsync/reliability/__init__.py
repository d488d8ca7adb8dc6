"""Reliability primitives shared by all external calls."""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerMetrics,
    CircuitState,
    Closed,
    HalfOpen,
    Open,
)
from .retry import RetryConfig, RetryPolicy, with_retry

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerMetrics",
    "CircuitState",
    "Closed",
    "HalfOpen",
    "Open",
    "RetryConfig",
    "RetryPolicy",
    "with_retry",
]
