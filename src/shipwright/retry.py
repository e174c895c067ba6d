"""Retry with exponential backoff for transient failures.

Used for operations that are not already retried by an HTTP client's own
request loop, such as git fetch/push against the remote.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from src.shipwright.errors import is_transient


logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """Calculate backoff delay with jitter.

    The exponential delay is capped at max_delay, then scaled into the
    upper half of its range so retries never fire back to back.

    Args:
        attempt: The current retry attempt (0-indexed).
        base_delay: Delay in seconds for the first retry.
        max_delay: Cap on the exponential delay.
        rand: Source of uniform values in [0, 1).

    Returns:
        Delay in seconds before the next retry.
    """
    capped = min(base_delay * (2 ** attempt), max_delay)
    return capped * (0.5 + rand() * 0.5)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    is_retryable: Callable[[BaseException], bool] = is_transient,
    description: Optional[str] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run an async operation, retrying retryable failures with backoff.

    Args:
        operation: Zero-argument coroutine factory to invoke.
        max_attempts: Total attempts including the first.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between attempts.
        is_retryable: Predicate deciding whether an error is retried.
        description: Label used in log messages.
        sleep: Awaitable sleep, replaceable in tests.

    Returns:
        The operation's result.

    Raises:
        Exception: The last error once attempts are exhausted, or the first
            non-retryable error.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            attempt += 1
            if attempt >= max_attempts or not is_retryable(exc):
                raise
            delay = compute_backoff(attempt - 1, base_delay, max_delay)
            logger.warning(
                "Transient failure, retrying",
                extra={
                    "operation": description,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "delay": round(delay, 2),
                    "error": str(exc),
                },
            )
            await sleep(delay)
