"""Retry with exponential backoff and jitter.

Only errors classified as retryable (network, timeout, rate limit) are
retried. Auth and validation errors propagate immediately.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import BaseModel, Field

from ..errors import RateLimitError, SyncError, classify_exception
from ..logging import get_context_logger

logger = get_context_logger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


class RetryConfig(BaseModel):
    """Configuration for retry behavior."""

    max_retries: int = Field(default=3, ge=0)
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    jitter: float = 1.0  # upper bound of the uniform jitter, seconds

    def compute_delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Backoff before retry number ``attempt`` (0-based).

        delay = min(base * exponential_base ** attempt, max_delay) + U(0, jitter)
        """
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter > 0:
            delay += (rng or random).uniform(0, self.jitter)
        return delay


class RetryPolicy:
    """Executes async callables under a ``RetryConfig``.

    ``sleep`` and ``rng`` are injectable so tests can run without waiting.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: SleepFunc | None = None,
        rng: random.Random | None = None,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep or asyncio.sleep
        self._rng = rng

    def _allowed_retries(self, error: SyncError) -> int:
        if error.max_retries is None:
            return self.config.max_retries
        return min(error.max_retries, self.config.max_retries)

    async def run(
        self,
        func: Callable[[], Awaitable[T]],
        operation: str = "operation",
    ) -> T:
        """Execute ``func`` with retries.

        Args:
            func: Zero-argument coroutine factory
            operation: Name used in log messages

        Returns:
            Result of ``func``

        Raises:
            SyncError: The classified error of the last attempt
        """
        attempt = 0
        while True:
            try:
                return await func()
            except Exception as exc:
                error = classify_exception(exc)

                if not error.retryable:
                    if error is not exc:
                        raise error from exc
                    raise

                if attempt >= self._allowed_retries(error):
                    logger.error(
                        f"{operation} failed after {attempt + 1} attempts: {error}",
                        extra={"operation": operation, "error_type": error.error_type},
                    )
                    if error is not exc:
                        raise error from exc
                    raise

                delay = self.config.compute_delay(attempt, self._rng)
                if isinstance(error, RateLimitError) and error.retry_after:
                    delay = max(delay, error.retry_after)

                logger.warning(
                    f"{operation} attempt {attempt + 1} failed: {error}. "
                    f"Retrying in {delay:.1f}s",
                    extra={
                        "operation": operation,
                        "attempt": attempt + 1,
                        "delay": delay,
                        "error_type": error.error_type,
                    },
                )
                await self._sleep(delay)
                attempt += 1


async def with_retry(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    operation: str = "operation",
    **kwargs: Any,
) -> T:
    """Execute a function with exponential backoff retry.

    Convenience wrapper around ``RetryPolicy``.
    """
    return await RetryPolicy(config, **kwargs).run(func, operation)
