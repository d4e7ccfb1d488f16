"""
Exponential backoff with jitter for fallible async operations.

Composable with the circuit breaker in either order: wrapping the
breaker-guarded call means every retry counts toward the failure threshold;
wrapping the raw action inside the breaker means only the final outcome does.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

JITTER_RATIO = 0.1


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry settings; timeouts are in seconds."""
    retries: int = 3
    factor: float = 2.0
    min_timeout: float = 1.0
    max_timeout: float = 30.0


def compute_delay(
    attempt: int,
    factor: float,
    min_timeout: float,
    max_timeout: float,
    rng: Callable[[], float] = random.random
) -> float:
    """
    Delay before retry number `attempt` (1-based).

    min(min_timeout * factor^(attempt-1), max_timeout) plus up to 10% jitter,
    so concurrent callers failing together do not retry in lockstep.
    """
    base = min(min_timeout * (factor ** (attempt - 1)), max_timeout)
    return base + base * JITTER_RATIO * rng()


async def with_backoff(
    action: Callable[[], Awaitable[T]],
    retries: int = 3,
    factor: float = 2.0,
    min_timeout: float = 1.0,
    max_timeout: float = 30.0,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Callable[[], float] = random.random
) -> T:
    """
    Run `action`, retrying failures with exponential backoff.

    Args:
        action: Zero-argument coroutine function
        retries: Retries after the first attempt
        factor: Growth factor between delays
        min_timeout: Delay before the first retry (seconds)
        max_timeout: Cap on any single delay (seconds)
        should_retry: Predicate; returning False re-raises immediately

    Returns:
        The first successful result

    Raises:
        The last error, unmodified, once retries are exhausted
    """
    attempt = 0
    while True:
        try:
            return await action()
        except Exception as e:
            if attempt >= retries or (should_retry is not None and not should_retry(e)):
                raise
            attempt += 1
            delay = compute_delay(attempt, factor, min_timeout, max_timeout, rng)
            logger.info("Attempt %d failed (%s); retrying in %.2fs", attempt, e, delay)
            await sleep(delay)


async def retry_with_policy(
    action: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> T:
    """`with_backoff` driven by a BackoffPolicy."""
    return await with_backoff(
        action,
        retries=policy.retries,
        factor=policy.factor,
        min_timeout=policy.min_timeout,
        max_timeout=policy.max_timeout,
        should_retry=should_retry,
        sleep=sleep,
    )
