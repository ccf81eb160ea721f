"""
Retry utilities for transient billing provider failures.

Only exceptions listed in ``exceptions`` are retried; anything else
propagates on the first attempt. Callers pass the transient error class so
definitive answers (not found, authentication) are never retried.
"""

import logging
import time
from collections.abc import Callable
from functools import wraps

logger = logging.getLogger(__name__)


def with_retry(
    max_attempts: int = 2,
    initial_delay: float = 0.25,
    max_delay: float = 2.0,
    exponential_base: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator that retries a function with exponential backoff.

    Args:
        max_attempts: Total number of attempts including the first (default: 2)
        initial_delay: Delay in seconds before the first retry (default: 0.25s)
        max_delay: Maximum delay in seconds between retries (default: 2.0s)
        exponential_base: Base for exponential backoff calculation (default: 2.0)
        exceptions: Exception types that are retried
        sleep: Sleep function, injectable for tests

    Example:
        @with_retry(max_attempts=2, exceptions=(ProviderTransientError,))
        def load_session(session_id):
            ...
    """

    def decorator(func: Callable) -> Callable:
        name = getattr(func, "__name__", None) or repr(func)

        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts:
                        logger.error(f"{name} failed after {max_attempts} attempts: {e}")
                        raise

                    delay = min(initial_delay * (exponential_base ** (attempt - 1)), max_delay)
                    logger.warning(
                        f"{name} failed (attempt {attempt}/{max_attempts}): {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    sleep(delay)

            raise RuntimeError(f"{name} made no attempts")

        return wrapper

    return decorator
