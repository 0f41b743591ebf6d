"""
Retry logic with exponential backoff for handling write conflicts.

Provides a decorator for re-running a whole transactional operation when
it lost an optimistic race or hit transient lock contention.
"""

import time
import functools
from typing import Callable, Type, Tuple, Optional

from .errors import OptimisticConflict


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""
    pass


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 0.05,
    max_delay: float = 2.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    retry_if: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable] = None,
):
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (0 = no retries)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential calculation (delay *= base)
        exceptions: Tuple of exceptions to catch and retry
        retry_if: Optional predicate; caught exceptions it rejects are re-raised as is
        on_retry: Optional callback function(attempt, exception, delay)

    Example:
        @exponential_backoff(max_retries=3, exceptions=(OptimisticConflict,))
        def rename(user_id, new_name):
            return proxy.update_user_with_lock(user_id, new_name)
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            delay = base_delay
            attempt = 0
            while True:
                attempt += 1
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if retry_if is not None and not retry_if(e):
                        raise
                    if attempt > max_retries:
                        raise RetryError(f"Gave up after {attempt} attempts: {e}") from e

                    wait = min(delay, max_delay)
                    if on_retry:
                        on_retry(attempt, e, wait)
                    # Each attempt runs the whole operation in a fresh boundary
                    time.sleep(wait)
                    delay *= exponential_base

        return wrapper
    return decorator


def is_transient_error(exception: Exception) -> bool:
    """
    Determine if a write failure is likely to succeed when the whole
    transaction is run again.

    Args:
        exception: Exception to check

    Returns:
        True for optimistic conflicts and lock contention reported by the store
    """
    if isinstance(exception, OptimisticConflict):
        return True

    error_str = str(exception).lower()

    # Lock contention and serialization failures
    transient_keywords = [
        'database is locked',
        'database table is locked',
        'deadlock',
        'could not serialize',
        'lock wait timeout',
    ]

    return any(keyword in error_str for keyword in transient_keywords)
