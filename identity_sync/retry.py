"""
Retry utilities for handling transient failures.

This module provides helpers for retrying idempotent downstream calls
(lookups, deletes) with configurable attempts, delays and backoff.
Non-idempotent calls (creates, patches) are never retried.
"""

import time
import logging
from typing import Callable, Any, Dict, Optional

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Base exception for errors that should trigger retries."""
    pass


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    retry_if: Callable[[Exception], bool] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    reraise: bool = False
) -> Any:
    """
    Call a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts (including initial call)
        delay: Initial delay between retries
        backoff: Delay multiplier for exponential backoff
        retry_if: Predicate deciding whether an exception is worth retrying.
            Exceptions it rejects are raised immediately. Defaults to
            is_retryable_error.
        on_retry: Optional callback for retry events
        reraise: Raise the last exception itself instead of MaxRetriesExceeded

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all retry attempts fail and reraise is False
    """
    if kwargs is None:
        kwargs = {}
    if retry_if is None:
        retry_if = is_retryable_error

    last_exception = None
    current_delay = delay

    for attempt in range(max_attempts):
        try:
            result = func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"Operation succeeded on attempt {attempt + 1}")
            return result

        except Exception as e:
            if not retry_if(e):
                raise

            last_exception = e

            # Don't retry on last attempt
            if attempt == max_attempts - 1:
                break

            logger.debug(f"Attempt {attempt + 1} failed with {type(e).__name__}: {e}")
            logger.debug(f"Retrying in {current_delay:.1f} seconds...")

            if on_retry:
                try:
                    on_retry(attempt + 1, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            time.sleep(current_delay)
            current_delay *= backoff

    if reraise:
        raise last_exception
    raise MaxRetriesExceeded(max_attempts, last_exception)


def retry_settings(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Translate the error_handling configuration block into retry_call arguments.

    Args:
        config: Dictionary containing retry configuration:
            - max_retries: Maximum retry attempts after the first call
            - retry_wait_seconds: Initial delay between retries
            - retry_backoff: Backoff multiplier (optional, default 2.0)

    Returns:
        Keyword arguments suitable for retry_call
    """
    return {
        'max_attempts': int(config.get('max_retries', 3)) + 1,  # +1 for initial attempt
        'delay': float(config.get('retry_wait_seconds', 1.0)),
        'backoff': float(config.get('retry_backoff', 2.0)),
    }


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception should trigger a retry.

    Args:
        exception: Exception to check

    Returns:
        True if the exception indicates a transient failure
    """
    # Network-related errors
    if isinstance(exception, (ConnectionError, TimeoutError)):
        return True

    # Explicitly marked retryable errors
    if isinstance(exception, RetryableError):
        return True

    # 429 and 5xx responses are transient, every other status is final
    status_code = getattr(exception, 'status_code', None)
    if status_code is not None:
        return status_code == 429 or 500 <= status_code < 600

    error_msg = str(exception).lower()
    transient_patterns = [
        'timeout',
        'timed out',
        'connection reset',
        'connection refused',
        'network is unreachable',
        'temporary failure',
        'service unavailable',
        'too many requests'
    ]

    for pattern in transient_patterns:
        if pattern in error_msg:
            return True

    return False


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """
    Create a standard retry callback for logging retry attempts.

    Args:
        operation_name: Name of the operation being retried

    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                      f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
