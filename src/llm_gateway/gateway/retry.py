"""Bounded exponential backoff for transient provider failures.

Only RateLimited and ServerError are retried. Authentication, parameter and
model errors fail immediately, and the number of attempts is always bounded.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import GatewayError, RateLimited

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay_seconds: Delay before the first retry
        max_delay_seconds: Cap for any single delay (also caps Retry-After)
        jitter: Multiply each delay by a random factor in [0.5, 1.5)
    """

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    jitter: bool = True

    def compute_delay(self, attempt: int, error: Optional[GatewayError] = None) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** attempt))
        if self.jitter:
            delay *= 0.5 + random.random()
        if isinstance(error, RateLimited) and error.retry_after is not None:
            delay = max(delay, min(error.retry_after, self.max_delay_seconds))
        return min(delay, self.max_delay_seconds)


NO_RETRY = RetryPolicy(max_attempts=1)


def _default_should_retry(error: GatewayError) -> bool:
    return error.retryable


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    description: str = "request",
    should_retry: Optional[Callable[[GatewayError], bool]] = None,
) -> T:
    """Run ``operation`` retrying transient gateway errors.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Backoff settings
        description: Used in log messages (never contains secrets)
        should_retry: Extra predicate; defaults to ``error.retryable``

    Returns:
        The operation's result

    Raises:
        GatewayError: The last error once attempts are exhausted, or the
        first non-retryable one.
    """
    predicate = should_retry or _default_should_retry
    attempt = 0
    while True:
        try:
            return await operation()
        except GatewayError as e:
            attempt += 1
            if attempt >= policy.max_attempts or not predicate(e):
                raise
            delay = policy.compute_delay(attempt - 1, e)
            logger.warning(
                "%s failed with %s (attempt %d/%d), retrying in %.2fs",
                description,
                e.category.value,
                attempt,
                policy.max_attempts,
                delay,
            )
            await asyncio.sleep(delay)
