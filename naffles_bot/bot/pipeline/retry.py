"""Bounded exponential backoff for outbound calls."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class RetryExecutor:
    """Re-invoke an idempotent async operation with exponential backoff.

    The delay before retry ``i`` (0-based) is
    ``min(base_delay * backoff_multiplier ** i, max_delay)`` plus optional
    jitter. At most ``max_retries + 1`` calls are made. When ``budget`` is set
    the executor gives up instead of sleeping past it.

    Args:
        max_retries: Retries after the first attempt
        base_delay: First delay in seconds
        max_delay: Cap for a single delay in seconds
        backoff_multiplier: Growth factor between delays
        jitter: Upper bound of random seconds added to each delay
        budget: Total wall-clock budget in seconds, or None
        sleep: Sleep coroutine, injectable for tests
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        backoff_multiplier: float = 2.0,
        jitter: float = 0.0,
        budget: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier
        self.jitter = jitter
        self.budget = budget
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, **overrides) -> "RetryExecutor":
        """Executor configured from ``retry_*`` settings, with the wall-clock budget applied."""
        options = {
            "max_retries": settings.retry_max_retries,
            "base_delay": settings.retry_base_delay,
            "max_delay": settings.retry_max_delay,
            "budget": settings.retry_budget_seconds,
        }
        options.update(overrides)
        return cls(**options)

    def calculate_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.backoff_multiplier ** attempt), self.max_delay)
        if self.jitter:
            delay = min(delay + random.uniform(0, self.jitter), self.max_delay)
        return delay

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        idempotent: bool,
        retry_on: Optional[Callable[[Exception], bool]] = None,
        operation_name: str = "operation",
    ) -> T:
        """Run ``operation`` and retry eligible failures.

        Args:
            operation: Zero-argument coroutine factory
            idempotent: Whether the call is safe to repeat; False runs it once
            retry_on: Predicate deciding if a failure is retryable
            operation_name: Name used in log messages

        Returns:
            The operation's result

        Raises:
            Exception: The last failure once retries are exhausted
        """
        started = self._clock()
        attempt = 0
        while True:
            try:
                result = await operation()
                if attempt:
                    logger.info(f"{operation_name} succeeded after {attempt} retries")
                return result
            except Exception as e:
                if not idempotent or attempt >= self.max_retries:
                    raise
                if retry_on is not None and not retry_on(e):
                    raise

                delay = self.calculate_delay(attempt)
                if self.budget is not None and (self._clock() - started) + delay > self.budget:
                    logger.warning(
                        f"{operation_name} retry budget of {self.budget}s exhausted after {attempt + 1} attempts"
                    )
                    raise

                logger.warning(
                    f"{operation_name} failed (attempt {attempt + 1}/{self.max_retries + 1}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await self._sleep(delay)
                attempt += 1
