"""Retry logic and decorators using tenacity.

This module provides retry helpers for platform API reads and local state
writes, with exponential backoff and jitter.
"""

from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)

from item_bridge.client.exceptions import NetworkError, RateLimitError, ServerError
from item_bridge.utils.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def retry_with_backoff(
    max_attempts: int = 5,
    min_wait: float = 2,
    max_wait: float = 60,
    retry_on_exceptions: tuple = (NetworkError, ServerError, RateLimitError, httpx.TransportError),
) -> Callable[[F], F]:
    """General retry decorator with exponential backoff and jitter.

    Handles network errors, server errors, and rate limits on coroutines.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds
        retry_on_exceptions: Tuple of exception types to retry on

    Returns:
        Decorated coroutine function with retry logic
    """

    def decorator(func: F) -> F:
        @wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            async for attempt_obj in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_random_exponential(multiplier=1, min=min_wait, max=max_wait),
                retry=retry_if_exception_type(retry_on_exceptions),
                reraise=True,
            ):
                with attempt_obj:
                    attempt = attempt_obj.retry_state.attempt_number
                    if attempt > 1:
                        logger.info(
                            "retry_attempt",
                            function=func.__name__,
                            attempt=attempt,
                            max_attempts=max_attempts,
                        )
                    return await func(*args, **kwargs)

        return async_wrapper  # type: ignore

    return decorator


def file_write_retrying(
    max_attempts: int = 3,
    min_wait: float = 0.1,
    max_wait: float = 2.0,
    retry_on_exceptions: tuple = (OSError,),
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` controller for local file writes.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds
        retry_on_exceptions: Tuple of exception types to retry on

    Returns:
        Configured AsyncRetrying instance
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(retry_on_exceptions),
        reraise=True,
    )


# Pre-configured decorators for common use cases
retry_api_call = retry_with_backoff(max_attempts=5, min_wait=2, max_wait=60)
retry_api_call_short = retry_with_backoff(max_attempts=3, min_wait=1, max_wait=10)
