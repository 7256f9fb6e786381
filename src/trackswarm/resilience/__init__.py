"""Retry, circuit breaking and failure classification."""

from trackswarm.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from trackswarm.resilience.classifier import (
    FailureClass,
    FailureClassification,
    classify_failure,
    is_retryable,
)
from trackswarm.resilience.retry import RetryPolicy

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "FailureClass",
    "FailureClassification",
    "RetryPolicy",
    "classify_failure",
    "is_retryable",
]
