"""Retry policy for unit attempts, built on tenacity."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from trackswarm.resilience.classifier import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, BaseException, float], None]


@dataclass(slots=True)
class RetryPolicy:
    """Exponential backoff with jitter.

    ``max_retries`` counts re-attempts after the first attempt, so a policy
    with ``max_retries=3`` runs the action at most four times.  The delay
    before the n-th retry (0-based) is
    ``min(initial_delay * backoff_factor ** n, max_delay)`` scaled by a
    random factor in ``[1 - jitter, 1 + jitter]``.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.2
    retryable: Callable[[BaseException], bool] = is_retryable
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def compute_delay(self, retry_index: int) -> float:
        base = min(self.initial_delay * (self.backoff_factor ** retry_index), self.max_delay)
        if self.jitter <= 0:
            return base
        return max(0.0, base * self.rng.uniform(1.0 - self.jitter, 1.0 + self.jitter))

    def _wait(self, state: RetryCallState) -> float:
        return self.compute_delay(state.attempt_number - 1)

    async def run(
        self,
        fn: Callable[[int], Awaitable[T]],
        *,
        on_retry: RetryCallback | None = None,
    ) -> T:
        """Run ``fn(attempt_index)`` until it succeeds or retries are exhausted.

        Non-retryable errors propagate immediately; the last retryable error
        propagates once the budget is spent.
        """

        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            delay = state.next_action.sleep if state.next_action else 0.0
            logger.info(
                "Attempt %d failed (%s); retrying in %.2fs",
                state.attempt_number, exc, delay,
            )
            if on_retry is not None and exc is not None:
                on_retry(state.attempt_number, exc, delay)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(self.retryable),
            before_sleep=_before_sleep,
            sleep=self.sleep,
            reraise=True,
        )
        result: T
        async for attempt in retrying:
            with attempt:
                result = await fn(attempt.retry_state.attempt_number - 1)
        return result
