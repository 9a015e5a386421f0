"""
Retry Utilities

Bounded retry loop for RateLimited and TransportFailure outcomes.
Time is read and slept through an injectable Clock so tests can run
the loop without real delays.
"""

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, TypeVar

from cred_tool.core.errors import CredentialError, RateLimited
from cred_tool.core.metrics import pipeline_retries_total

if TYPE_CHECKING:
    from cred_tool.core.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Clock:
    """Wall clock and sleep used by the pipeline."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class RetryPolicy:
    """
    Capped exponential backoff with jitter.

    The n-th retry waits min(max_delay, base_delay * 2**n) plus up to
    `jitter` of that again, at least the platform's Retry-After, and never
    less than the previous wait.
    """

    def __init__(
        self,
        max_retries: int,
        base_delay: float,
        max_delay: float,
        jitter: float = 0.0,
        max_retry_after: Optional[float] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.max_retry_after = max_retry_after
        self.clock = clock or Clock()
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: "Settings", clock: Optional[Clock] = None) -> "RetryPolicy":
        return cls(
            max_retries=settings.MAX_RETRIES,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
            jitter=settings.RETRY_JITTER,
            max_retry_after=settings.MAX_RETRY_AFTER_SECONDS,
            clock=clock,
        )

    def compute_delay(self, retry_number: int, error: CredentialError, previous: float) -> float:
        backoff = min(self.max_delay, self.base_delay * (2**retry_number))
        delay = backoff + self._rng.uniform(0, backoff * self.jitter)
        if isinstance(error, RateLimited) and error.retry_after:
            delay = max(delay, error.retry_after)
        return max(delay, previous)

    async def run(self, operation: Callable[[], Awaitable[T]], stage: str) -> T:
        """
        Run `operation` until it succeeds, fails permanently, or retries run out.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            stage: Pipeline stage name (for logging and metrics)

        Raises:
            CredentialError: The last error once it is not retryable or
                the retry budget is spent
        """
        previous = 0.0
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            try:
                return await operation()
            except CredentialError as e:
                if not e.retryable:
                    raise
                if attempt == attempts - 1:
                    logger.error(f"{stage}: giving up after {attempts} attempts: {e.describe()}")
                    raise
                if (
                    isinstance(e, RateLimited)
                    and e.retry_after is not None
                    and self.max_retry_after is not None
                    and e.retry_after > self.max_retry_after
                ):
                    logger.error(
                        f"{stage}: platform asked to wait {e.retry_after:.0f}s, "
                        f"longer than the {self.max_retry_after:.0f}s we allow"
                    )
                    raise

                delay = self.compute_delay(attempt, e, previous)
                previous = delay
                pipeline_retries_total.labels(stage=stage, reason=e.kind).inc()
                logger.warning(
                    f"{stage}: {e.kind} (attempt {attempt + 1}/{attempts}), "
                    f"retrying in {delay:.2f}s"
                )
                await self.clock.sleep(delay)

        # range() above always returns or raises
        raise AssertionError("unreachable")
