"""
Retry logic with exponential backoff.

Used around every call that leaves the process: PostgREST, Supabase Storage,
the generation provider and artifact downloads. Only ``RetryableError`` (and
its ``RateLimitError`` subclass) is retried; anything else propagates on the
first attempt.
"""

import asyncio
import functools
import time
from typing import Callable, Type, Tuple, Any, TypeVar

from shared.errors import RetryableError, RateLimitError
from shared.logging import get_logger

T = TypeVar("T")
logger = get_logger("retry")


def _delay_for(attempt: int, base_delay: float, max_delay: float, error: Exception) -> float:
    """Exponential delay, stretched to the server's Retry-After when it asks for longer."""
    delay = base_delay * (2 ** attempt)
    retry_after = getattr(error, "retry_after", None)
    if retry_after:
        delay = max(delay, float(retry_after))
    return min(delay, max_delay)


class _Backoff:
    """Attempt bookkeeping shared by the sync and async wrappers."""

    def __init__(self, name: str, max_attempts: int, base_delay: float, max_delay: float):
        self.name = name
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    def after_failure(self, attempt: int, error: Exception) -> float:
        """Delay before the next attempt; re-raises once attempts run out."""
        if attempt + 1 >= self.max_attempts:
            logger.error(
                f"Giving up on {self.name} after {self.max_attempts} attempts",
                extra={"error": str(error), "attempts": self.max_attempts}
            )
            raise error
        delay = _delay_for(attempt, self.base_delay, self.max_delay, error)
        logger.warning(
            f"Retrying {self.name} in {delay}s",
            extra={"error": str(error), "attempt": attempt + 1, "max_attempts": self.max_attempts}
        )
        return delay


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 2,
    retryable_exceptions: Tuple[Type[Exception], ...] = (RetryableError, RateLimitError),
    max_delay: float = 60
):
    """
    Retry a sync or async callable on retryable errors.

    Delays grow as ``base_delay * 2**attempt`` and never exceed ``max_delay``;
    a ``retry_after`` hint on the error lengthens the wait.

    Example:
        @retry_with_backoff(max_attempts=3, base_delay=2)
        async def submit_prediction():
            return await provider.create(...)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        backoff = _Backoff(func.__name__, max_attempts, base_delay, max_delay)

        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> T:
                attempt = 0
                while True:
                    try:
                        return await func(*args, **kwargs)
                    except retryable_exceptions as e:
                        await asyncio.sleep(backoff.after_failure(attempt, e))
                    attempt += 1

            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except retryable_exceptions as e:
                    time.sleep(backoff.after_failure(attempt, e))
                attempt += 1

        return sync_wrapper

    return decorator
