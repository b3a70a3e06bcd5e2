"""Exponential backoff for remote operations and queued changes."""

import asyncio
import logging
from functools import wraps
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

INITIAL_RETRY_DELAY_SECONDS = 1
MAX_RETRY_DELAY_SECONDS = 60

T = TypeVar("T")


def backoff_delay(attempt: int, initial_delay: float, exponential_base: float, max_delay: float) -> float:
    return min(initial_delay * (exponential_base ** attempt), max_delay)


def retry_with_exponential_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    exponential_base: float = 2.0,
    max_delay: float = MAX_RETRY_DELAY_SECONDS,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    no_retry: Tuple[Type[Exception], ...] = ()
):
    """
    Decorate a coroutine function so transient failures are retried.

    Args:
        max_retries: Retries after the first attempt
        initial_delay: Seconds to wait before the first retry
        exponential_base: Growth factor between consecutive delays
        max_delay: Upper bound for a single delay
        exceptions: Exception types that trigger a retry
        no_retry: Subclasses of ``exceptions`` that are raised immediately
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        name = getattr(func, "__name__", repr(func))

        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            attempts = max_retries + 1
            for attempt in range(attempts):
                try:
                    return await func(*args, **kwargs)
                except no_retry:
                    raise
                except exceptions as e:
                    if attempt == attempts - 1:
                        logger.error(f"{name} failed after {attempts} attempts: {e}")
                        raise
                    delay = backoff_delay(attempt, initial_delay, exponential_base, max_delay)
                    logger.warning(
                        f"{name} attempt {attempt + 1}/{attempts} failed: {e}. "
                        f"Retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


def calculate_retry_delay(retry_count: int) -> int:
    """
    Delay in seconds before the next attempt of a queued change.

    Doubles from one second per retry and is capped at one minute.
    """
    if retry_count <= 0:
        return INITIAL_RETRY_DELAY_SECONDS
    return int(backoff_delay(retry_count, INITIAL_RETRY_DELAY_SECONDS, 2, MAX_RETRY_DELAY_SECONDS))
