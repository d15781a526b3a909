"""
Retry utilities for handling transient failures.

This module provides the helper used by the transport to resend a request
with bounded exponential backoff, plus the classification of which failures
are worth another attempt.
"""

import time
import logging
from typing import Callable, Any, Tuple, Type, Optional

logger = logging.getLogger(__name__)

# HTTP statuses that indicate a transient server-side condition
RETRYABLE_STATUS_CODES = (408, 429)


class RetryableError(Exception):
    """Base exception for errors that should trigger retries."""
    pass


def backoff_delay(base_delay: float, attempt: int, multiplier: float = 2.0) -> float:
    """
    Delay to wait after the given failed attempt.

    Args:
        base_delay: Delay after the first failed attempt
        attempt: Number of the attempt that just failed (1-based)
        multiplier: Growth factor between consecutive delays

    Returns:
        Delay in seconds: base_delay * multiplier^(attempt-1)
    """
    return base_delay * (multiplier ** (attempt - 1))


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None
) -> Any:
    """
    Call a function with retry logic.

    The exception raised by the final attempt is re-raised unchanged, so
    callers see the same status and body the last attempt produced.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts (including the first)
        delay: Delay after the first failed attempt
        backoff: Delay multiplier for exponential backoff
        exceptions: Exception types to catch
        should_retry: Optional predicate; a caught exception for which it
            returns False is raised immediately
        on_retry: Optional callback called as on_retry(attempt, exception, wait)

    Returns:
        Function result
    """
    if kwargs is None:
        kwargs = {}

    for attempt in range(1, max_attempts + 1):
        try:
            result = func(*args, **kwargs)
            if attempt > 1:
                logger.info(f"Operation succeeded on attempt {attempt}")
            return result

        except exceptions as e:
            if attempt == max_attempts:
                raise
            if should_retry is not None and not should_retry(e):
                raise

            wait = backoff_delay(delay, attempt, backoff)
            logger.debug(f"Attempt {attempt} failed with {type(e).__name__}: {e}")

            if on_retry:
                try:
                    on_retry(attempt, e, wait)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            time.sleep(wait)


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception should trigger a retry.

    Args:
        exception: Exception to check

    Returns:
        True if the exception indicates a transient failure
    """
    # HTTP answers carry a status; only server-side and throttling codes retry
    status_code = getattr(exception, 'status_code', None)
    if status_code is not None:
        return status_code in RETRYABLE_STATUS_CODES or 500 <= status_code < 600

    return isinstance(exception, (ConnectionError, TimeoutError, OSError, RetryableError))


def create_retry_callback(operation_name: str,
                          event_log=None) -> Callable[[int, Exception, float], None]:
    """
    Create a standard retry callback for logging retry attempts.

    Args:
        operation_name: Name of the operation being retried
        event_log: Optional EventLog that also receives the warning

    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception, wait: float):
        if event_log is not None:
            event_log.append(f"{operation_name}: attempt {attempt} failed, "
                             f"retrying in {wait:g}s...", 'warning')
        else:
            logger.warning(f"{operation_name} failed on attempt {attempt}, "
                           f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
