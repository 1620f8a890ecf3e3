"""
Retrying of startup directory connections.

Only the service binds opened when the module starts go through here. Binds,
searches and mutations made while handling a login or a lifecycle event are
never retried; their failures reach the caller directly.
"""

import time
import logging
from typing import Callable, Any, Tuple, Type, Optional

logger = logging.getLogger(__name__)

RetryCallback = Callable[[int, Exception], None]


class MaxRetriesExceeded(Exception):
    """Raised when every attempt failed."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(func: Callable, args: tuple = (), kwargs: Optional[dict] = None,
               max_attempts: int = 3, delay: float = 1.0, backoff: float = 1.0,
               exceptions: Tuple[Type[Exception], ...] = (Exception,),
               on_retry: Optional[RetryCallback] = None) -> Any:
    """
    Call func until it returns or max_attempts calls have raised.

    Args:
        func: Callable to invoke
        args: Positional arguments for func
        kwargs: Keyword arguments for func
        max_attempts: Total number of calls, including the first
        delay: Seconds to wait after the first failure
        backoff: Factor applied to the wait after each further failure
        exceptions: Exception types that trigger another attempt; others propagate
        on_retry: Called with (attempt number, exception) before each wait

    Returns:
        Whatever func returned

    Raises:
        MaxRetriesExceeded: If the last attempt failed too
    """
    kwargs = kwargs or {}
    wait = delay

    for attempt in range(1, max_attempts + 1):
        try:
            result = func(*args, **kwargs)
        except exceptions as e:
            if attempt == max_attempts:
                raise MaxRetriesExceeded(attempt, e)
            if on_retry:
                try:
                    on_retry(attempt, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")
            logger.debug(f"Attempt {attempt} of {max_attempts} failed, waiting {wait:.1f}s")
            time.sleep(wait)
            wait *= backoff
            continue

        if attempt > 1:
            logger.info(f"Succeeded on attempt {attempt} of {max_attempts}")
        return result

    raise MaxRetriesExceeded(max_attempts, None)


def create_retry_callback(operation_name: str) -> RetryCallback:
    """Callback logging a warning for each failed attempt of the named operation."""
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
