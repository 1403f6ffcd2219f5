"""Small helpers shared by the offline jobs and the CLI."""

import time
import logging
import threading
from functools import wraps
from typing import TypeVar, Callable, Iterable, Iterator

from .errors import JobCancelledError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Decorator that retries a function with exponential backoff on failure.

    Args:
        max_retries: Maximum number of attempts
        initial_delay: Delay in seconds before the first retry
        backoff_factor: Multiplier applied to the delay after each failure
        exceptions: Exception types that trigger a retry; anything else propagates
    """
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delay = initial_delay
            for attempt in range(1, max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries:
                        logger.error(f"{func.__name__} failed after {max_retries} attempts: {e}")
                        raise
                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt}/{max_retries}): {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    time.sleep(delay)
                    delay *= backoff_factor

        return wrapper
    return decorator


def check_cancelled(cancel: threading.Event | None, job: str) -> None:
    """Raise JobCancelledError if the job's cancellation event is set."""
    if cancel is not None and cancel.is_set():
        logger.warning(f"{job} cancelled")
        raise JobCancelledError(f"{job} was cancelled")


def chunked(values: list[T], size: int) -> Iterator[list[T]]:
    for i in range(0, len(values), size):
        yield values[i:i + size]


def split_evenly(values: Iterable[T], parts: int) -> list[list[T]]:
    """Split `values` into at most `parts` contiguous, non-empty chunks."""
    values = list(values)
    if not values:
        return []
    parts = max(1, min(parts, len(values)))
    size, extra = divmod(len(values), parts)
    chunks = []
    start = 0
    for i in range(parts):
        end = start + size + (1 if i < extra else 0)
        chunks.append(values[start:end])
        start = end
    return chunks
