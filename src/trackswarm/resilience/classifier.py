"""Failure classifier.

Maps attempt failures onto a small set of classes and decides whether the
failure is transient (worth another attempt) or fatal.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum

from trackswarm.errors import (
    CircuitOpenError,
    ConfigurationError,
    ExecutionCancelledError,
    TrackSwarmError,
    ValidationError,
)


class FailureClass(StrEnum):
    CONNECTION_REFUSED = "connection_refused"
    CONNECTION_RESET = "connection_reset"
    TIMEOUT = "timeout"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    TRANSIENT = "transient"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"
    INVALID = "invalid"
    FATAL = "fatal"


@dataclass(slots=True)
class FailureClassification:
    failure_class: FailureClass
    retryable: bool
    reason: str


# Checked in order; first hit wins.
_TRANSIENT_SIGNATURES: list[tuple[FailureClass, tuple[str, ...]]] = [
    (FailureClass.CONNECTION_REFUSED, ("connection refused", "econnrefused")),
    (FailureClass.CONNECTION_RESET, ("connection reset", "econnreset", "reset by peer")),
    (FailureClass.TIMEOUT, ("timed out", "timeout", "etimedout", "deadline exceeded")),
    (
        FailureClass.TEMPORARILY_UNAVAILABLE,
        (
            "temporarily unavailable",
            "temporary",
            "service unavailable",
            "bad gateway",
            "gateway timeout",
        ),
    ),
    (FailureClass.RATE_LIMITED, ("rate limit", "rate_limited", "too many requests", "429")),
    (FailureClass.NETWORK, ("network error",)),
]


def _has_any(text: str, patterns: tuple[str, ...]) -> bool:
    return any(p in text for p in patterns)


def classify_failure(exc: BaseException) -> FailureClassification:
    if isinstance(exc, CircuitOpenError):
        return FailureClassification(FailureClass.CIRCUIT_OPEN, False, str(exc))
    if isinstance(exc, (ExecutionCancelledError, asyncio.CancelledError)):
        return FailureClassification(FailureClass.CANCELLED, False, "cancelled")
    if isinstance(exc, (ValidationError, ConfigurationError)):
        return FailureClassification(FailureClass.INVALID, False, str(exc))

    text = str(exc).lower()
    for failure_class, patterns in _TRANSIENT_SIGNATURES:
        if _has_any(text, patterns):
            return FailureClassification(failure_class, True, str(exc))

    if isinstance(exc, ConnectionRefusedError):
        return FailureClassification(FailureClass.CONNECTION_REFUSED, True, str(exc))
    if isinstance(exc, ConnectionResetError):
        return FailureClassification(FailureClass.CONNECTION_RESET, True, str(exc))
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return FailureClassification(FailureClass.TIMEOUT, True, str(exc) or "timeout")
    if isinstance(exc, ConnectionError):
        return FailureClassification(FailureClass.NETWORK, True, str(exc))
    # Errors raised by our own adapters carry their own verdict.
    if isinstance(exc, TrackSwarmError) and exc.retryable:
        return FailureClassification(FailureClass.TRANSIENT, True, str(exc))

    return FailureClassification(FailureClass.FATAL, False, str(exc)[:500])


def is_retryable(exc: BaseException) -> bool:
    return classify_failure(exc).retryable
