"""Exponential backoff with jitter for retry logic."""

import asyncio
import dataclasses
import random
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Collection, Optional, TypeVar

from .errors import ErrorKind, TypedError, classify, create_error
from .log import get_logger

T = TypeVar("T")

# Exclusive upper bound of the random jitter added to each delay, in seconds
JITTER_MAX = 1.0

logger = get_logger("retry")


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior. Delays are in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter: bool = True
    on_retry: Optional[Callable[[TypedError, int], None]] = None

    def with_overrides(self, **changes: Any) -> "RetryPolicy":
        """Return a copy with some fields replaced."""
        return dataclasses.replace(self, **changes)


# Generic HTTP calls
DEFAULT_POLICY = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=10.0)

# Generative model calls
AI_POLICY = RetryPolicy(max_retries=2, base_delay=2.0, max_delay=30.0)

VISION_POLICY = RetryPolicy(max_retries=3, base_delay=1.5, max_delay=15.0)


def compute_delay(attempt: int, policy: RetryPolicy, retry_after: Optional[float] = None) -> float:
    """
    Calculate the delay before the next attempt.

    Args:
        attempt: Number of failed attempts so far (1 for the first failure)
        policy: Retry policy
        retry_after: Server-provided hint; honoured when within max_delay

    Returns:
        Delay in seconds
    """
    delay = policy.base_delay * (policy.backoff_factor ** (attempt - 1))
    delay = min(delay, policy.max_delay)

    if retry_after is not None and retry_after <= policy.max_delay:
        delay = max(delay, retry_after)

    if policy.jitter:
        delay += random.random() * JITTER_MAX

    return delay


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
) -> T:
    """
    Execute an async operation, retrying classified-retryable failures.

    Attempts are strictly sequential. The retry count is carried across
    attempts: the error passed to ``on_retry`` reports how many retries
    have been scheduled, even when each attempt raises a fresh error.

    Args:
        operation: Zero-argument callable returning an awaitable
        policy: Retry policy (defaults to RetryPolicy())

    Returns:
        Result of the first successful attempt

    Raises:
        TypedError: The classified error of the terminal attempt
    """
    if policy is None:
        policy = RetryPolicy()

    attempt = 0

    while True:
        try:
            return await operation()
        except Exception as e:
            error = classify(e)
            attempt += 1
            exhausted = attempt > policy.max_retries or not error.can_retry
            error.retry_count = max(error.retry_count, attempt - 1)

            if exhausted:
                logger.warning(
                    "retry_exhausted" if error.retryable else "retry_not_attempted",
                    error_kind=error.kind.value,
                    error_message=error.message,
                    attempts=attempt,
                )
                if error is e:
                    raise
                raise error from e

            error.retry_count += 1

            if policy.on_retry:
                policy.on_retry(error, attempt)

            delay = compute_delay(attempt, policy, error.retry_after)
            logger.info(
                "retry_scheduled",
                error_kind=error.kind.value,
                error_message=error.message,
                attempt=attempt,
                delay=round(delay, 3),
            )
            await asyncio.sleep(delay)


def retryable(policy: Optional[RetryPolicy] = None):
    """
    Decorator for adding retry logic to async functions.

    Args:
        policy: Retry policy applied to every call
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await with_retry(lambda: func(*args, **kwargs), policy)

        return wrapper
    return decorator


async def retry_with_condition(
    operation: Callable[[], Awaitable[T]],
    should_retry: Callable[[Exception, int], bool],
    policy: Optional[RetryPolicy] = None,
) -> T:
    """
    Execute an async operation, retrying whenever ``should_retry`` agrees.

    Errors are not classified: whatever the operation raises on the
    terminal attempt propagates as-is.

    Args:
        operation: Zero-argument callable returning an awaitable
        should_retry: Predicate over (error, attempt)
        policy: Retry policy (max_retries and delay settings)
    """
    if policy is None:
        policy = RetryPolicy()

    attempt = 0

    while True:
        try:
            return await operation()
        except Exception as e:
            attempt += 1
            if attempt > policy.max_retries or not should_retry(e, attempt):
                raise

            if policy.on_retry and isinstance(e, TypedError):
                policy.on_retry(e, attempt)

            await asyncio.sleep(compute_delay(attempt, policy))


async def retry_for_kinds(
    operation: Callable[[], Awaitable[T]],
    kinds: Collection[ErrorKind],
    max_retries: int = 3,
) -> T:
    """Retry only typed errors whose kind is in ``kinds``."""
    return await retry_with_condition(
        operation,
        lambda error, attempt: isinstance(error, TypedError) and error.kind in kinds,
        RetryPolicy(max_retries=max_retries),
    )


async def with_timeout(awaitable: Awaitable[T], timeout: Optional[float]) -> T:
    """
    Race an awaitable against a timer.

    The awaitable is cancelled when the timer wins.

    Raises:
        TypedError: TIMEOUT_ERROR when the timer expires first
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise create_error(
            ErrorKind.TIMEOUT_ERROR,
            f"Operation timed out after {timeout}s",
        ) from e
