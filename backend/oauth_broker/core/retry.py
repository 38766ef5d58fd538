"""Retry strategy for provider operations.

Exponential backoff with jitter. The decision to retry is made by a
predicate over the returned value, so callers classify failures with data
(a FailureKind on the result) rather than by catching exception subclasses.

WHY JITTER:
- Prevents synchronized retries from multiple waiters after an outage
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

__all__ = ["RetryPolicy", "compute_delay", "retry_while"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits and backoff shape.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay_ms: Delay before the second attempt.
        max_delay_ms: Cap for any single delay.
    """

    max_attempts: int = 3
    base_delay_ms: int = 500
    max_delay_ms: int = 5000


def compute_delay(policy: RetryPolicy, attempt: int) -> float:
    """Seconds to wait after the given zero-based attempt failed.

    Args:
        policy: Retry policy.
        attempt: Index of the attempt that just failed (0 = first).

    Returns:
        Delay in seconds, capped at policy.max_delay_ms.
    """
    base_delay = policy.base_delay_ms * (2**attempt)
    jitter = random.uniform(0, base_delay * 0.1)
    return min(base_delay + jitter, policy.max_delay_ms) / 1000


async def retry_while(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    should_retry: Callable[[T], bool],
) -> T:
    """Call func until should_retry is False or attempts run out.

    Exceptions raised by func propagate immediately; only returned values are
    inspected.

    Args:
        func: Async function to execute (no arguments).
        policy: Retry policy.
        should_retry: Predicate over the returned value.

    Returns:
        The first value for which should_retry is False, or the last value
        once the attempt budget is spent.
    """
    attempt = 0
    while True:
        result = await func()
        if not should_retry(result) or attempt + 1 >= policy.max_attempts:
            return result

        delay = compute_delay(policy, attempt)
        logger.warning(
            "Provider call failed (attempt %d/%d). Retrying in %.2fs",
            attempt + 1,
            policy.max_attempts,
            delay,
        )
        await asyncio.sleep(delay)
        attempt += 1
