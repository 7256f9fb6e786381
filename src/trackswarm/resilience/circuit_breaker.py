"""Per-unit circuit breaker.

States: CLOSED -> OPEN -> HALF_OPEN -> CLOSED (or back to OPEN).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TypeVar

from trackswarm.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(StrEnum):
    """Circuit breaker state."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, rejecting calls
    HALF_OPEN = "half_open"  # One trial call allowed


@dataclass(slots=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    monitoring_period: float = 60.0  # failures older than this are forgotten
    reset_timeout: float = 60.0  # open -> half-open after this long
    half_open_max_calls: int = 1


class CircuitBreaker:
    """Trips after ``failure_threshold`` failures inside ``monitoring_period``."""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self.state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at = 0.0
        self._half_open_calls = 0

    @property
    def failure_count(self) -> int:
        self._prune(self._clock())
        return len(self._failures)

    def _prune(self, now: float) -> None:
        cutoff = now - self.config.monitoring_period
        while self._failures and self._failures[0] < cutoff:
            self._failures.popleft()

    def _open(self, now: float) -> None:
        if self.state != CircuitState.OPEN:
            logger.warning("Circuit breaker %s opened", self.name)
        self.state = CircuitState.OPEN
        self._opened_at = now
        self._half_open_calls = 0

    def retry_after(self) -> float:
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.reset_timeout - (self._clock() - self._opened_at))

    def can_execute(self) -> bool:
        """Check if a call is allowed, moving OPEN -> HALF_OPEN when due."""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if self._clock() - self._opened_at >= self.config.reset_timeout:
                self.state = CircuitState.HALF_OPEN
                self._half_open_calls = 0
                logger.info("Circuit breaker %s half-open", self.name)
            else:
                return False

        return self._half_open_calls < self.config.half_open_max_calls

    def record_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            logger.info("Circuit breaker %s closed after trial call", self.name)
            self.reset()

    def record_failure(self) -> None:
        now = self._clock()
        if self.state == CircuitState.HALF_OPEN:
            self._open(now)
            return
        self._failures.append(now)
        self._prune(now)
        if self.state == CircuitState.CLOSED and len(self._failures) >= self.config.failure_threshold:
            self._open(now)

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self._failures.clear()
        self._half_open_calls = 0

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run *fn* under breaker protection.

        Raises:
            CircuitOpenError: without invoking *fn* when the breaker rejects.
        """
        if not self.can_execute():
            raise CircuitOpenError(self.name, self.retry_after())
        if self.state == CircuitState.HALF_OPEN:
            self._half_open_calls += 1

        try:
            result = await fn(*args, **kwargs)
        except asyncio.CancelledError:
            # Not a failure; frees the trial slot.
            if self.state == CircuitState.HALF_OPEN:
                self._half_open_calls -= 1
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


@dataclass
class CircuitBreakerRegistry:
    """One breaker per key (unit id), created on first use."""

    config: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    clock: Callable[[], float] = time.monotonic
    _breakers: dict[str, CircuitBreaker] = field(default_factory=dict, repr=False)

    def get(self, key: str) -> CircuitBreaker:
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(key, self.config, clock=self.clock)
            self._breakers[key] = breaker
        return breaker

    def states(self) -> dict[str, CircuitState]:
        return {key: b.state for key, b in self._breakers.items()}
