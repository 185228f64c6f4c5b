"""
Retry utilities for transient failures in membership clients.

Only idempotent reads (listings and user lookups) are retried. Membership
mutations are issued exactly once; the reconciler aborts on their first failure.
"""

import time
import logging
from typing import Any, Callable, Dict, Optional, Tuple, Type

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = (429, 502, 503, 504)


class RetryableError(Exception):
    """Raised by transports for errors that should trigger a retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


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
    exceptions: Tuple[Type[Exception], ...] = (RetryableError,),
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts, including the first
        delay: Initial delay between retries
        backoff: Delay multiplier for exponential backoff
        exceptions: Exception types to catch and retry on
        on_retry: Optional callback for retry events

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all retry attempts fail
    """
    if kwargs is None:
        kwargs = {}

    last_exception = None
    current_delay = delay
    max_attempts = max(1, max_attempts)

    for attempt in range(max_attempts):
        try:
            result = func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"Operation succeeded on attempt {attempt + 1}")
            return result

        except exceptions as e:
            last_exception = e

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

    raise MaxRetriesExceeded(max_attempts, last_exception)


def is_retryable_status(status_code: int) -> bool:
    """True for HTTP statuses that indicate a transient server-side condition."""
    return status_code in TRANSIENT_STATUS_CODES or 500 <= status_code < 600


def retry_settings(error_config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Translate the error_handling config section into retry_call keyword arguments.

    Args:
        error_config: Dictionary with max_retries, retry_wait_seconds and
            optional retry_backoff

    Returns:
        Dictionary with max_attempts, delay and backoff
    """
    error_config = error_config or {}
    return {
        'max_attempts': int(error_config.get('max_retries', 3)) + 1,  # +1 for initial attempt
        'delay': float(error_config.get('retry_wait_seconds', 1.0)),
        'backoff': float(error_config.get('retry_backoff', 1.0)),
    }


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
