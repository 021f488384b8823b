"""Decorator utilities for cross-cutting concerns."""
import time
import logging
import functools
import asyncio
from typing import Any, Callable, Optional, TypeVar, cast

# Setup logging
logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])

def log_execution_time(func: F) -> F:
    """Decorator to log function execution time.

    Args:
        func: The function to decorate

    Returns:
        Decorated function that logs execution time
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.monotonic()
        try:
            result = func(*args, **kwargs)
            logger.debug(f"{func.__name__} completed in {time.monotonic() - start_time:.2f}s")
            return result
        except Exception as e:
            logger.warning(f"{func.__name__} failed after {time.monotonic() - start_time:.2f}s: {e}")
            raise
    return cast(F, wrapper)

def async_log_execution_time(func: F) -> F:
    """Decorator to log async function execution time."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start_time = time.monotonic()
        try:
            result = await func(*args, **kwargs)
            logger.info(f"{func.__name__} completed in {time.monotonic() - start_time:.2f}s")
            return result
        except Exception as e:
            logger.warning(f"{func.__name__} failed after {time.monotonic() - start_time:.2f}s: {e}")
            raise
    return cast(F, wrapper)

def async_retry(max_attempts: int = 3, delay: float = 1.0, backoff: float = 2.0,
                exceptions: tuple = (Exception,), no_retry: tuple = (),
                logger_name: Optional[str] = None):
    """Decorator for retrying async functions with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts, the first one included
        delay: Initial delay between retries in seconds
        backoff: Backoff multiplier (e.g., 2.0 means delay doubles each retry)
        exceptions: Tuple of exceptions to catch for retry
        no_retry: Exceptions re-raised at once even if they match ``exceptions``
        logger_name: Optional logger name (defaults to module logger)

    Returns:
        Decorator function
    """
    retry_logger = logging.getLogger(logger_name) if logger_name else logger

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 1
            current_delay = delay

            while True:
                try:
                    return await func(*args, **kwargs)
                except no_retry:
                    raise
                except exceptions as e:
                    if attempt >= max_attempts:
                        retry_logger.error(f"All {max_attempts} attempts failed for {func.__name__}: {e}")
                        raise

                    retry_logger.warning(
                        f"Attempt {attempt}/{max_attempts} for {func.__name__} failed: {e}. "
                        f"Retrying in {current_delay:.2f}s"
                    )

                    await asyncio.sleep(current_delay)
                    attempt += 1
                    current_delay *= backoff

        return cast(F, wrapper)

    return decorator
