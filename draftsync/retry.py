"""Retry with exponential backoff for async operations."""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .exceptions import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = False,
) -> float:
    """Delay before retry number ``attempt + 1``.

    Args:
        attempt: Zero-based count of failures so far
        base_delay: Delay after the first failure, in seconds
        max_delay: Upper bound on any single delay
        exponential_base: Growth factor per attempt
        jitter: Scale the delay by a random factor in [0.5, 1.5)

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (exponential_base**attempt), max_delay)
    if jitter:
        delay *= 0.5 + random.random()
    return delay


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = False,
    retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    description: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or the retry budget is spent.

    ``operation`` receives the zero-based attempt number. Exceptions not in
    ``retry_on`` propagate immediately. When every attempt fails the last
    exception propagates unchanged so callers can tell causes apart.

    Args:
        operation: Async callable taking the attempt number
        max_retries: Attempts allowed beyond the first
        base_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exponential_base: Base for exponential backoff
        jitter: Add randomness to the delay
        retry_on: Exception classes that are worth retrying
        sleep: Awaitable sleep used between attempts
        on_retry: Called with (next_attempt, error, delay) before sleeping
        description: Label used in log messages

    Returns:
        The operation's result
    """
    attempt = 0
    while True:
        try:
            return await operation(attempt)
        except retry_on as e:
            if attempt >= max_retries:
                logger.error(
                    f"{description} failed after {attempt + 1} attempts: {e}"
                )
                raise

            delay = backoff_delay(
                attempt,
                base_delay=base_delay,
                max_delay=max_delay,
                exponential_base=exponential_base,
                jitter=jitter,
            )
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{max_retries + 1}): {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            if on_retry is not None:
                on_retry(attempt + 1, e, delay)
            await sleep(delay)
            attempt += 1
