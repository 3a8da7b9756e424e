import random
import time
from typing import Callable, Tuple, Type, TypeVar

from core.logger import logger

T = TypeVar("T")


def calculate_backoff_delay(attempt: int, base_delay: float) -> float:
    """Calculate exponential backoff with jitter."""
    base = base_delay * (2 ** attempt)
    jitter = random.uniform(0, base_delay)
    return base + jitter


def call_with_retry(
    operation: Callable[[], T],
    *,
    retry_on: Tuple[Type[BaseException], ...],
    max_attempts: int,
    base_delay: float,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run `operation`, retrying only the exception types in `retry_on`.
    The last retryable error is re-raised once attempts are exhausted.
    """
    max_attempts = max(1, max_attempts)
    for attempt in range(max_attempts):
        try:
            return operation()
        except retry_on as e:
            if attempt + 1 >= max_attempts:
                logger.error(f"{description} failed after {max_attempts} attempts: {e}")
                raise
            delay = calculate_backoff_delay(attempt, base_delay)
            logger.warning(
                f"{description} attempt {attempt + 1}/{max_attempts} failed ({e}), retrying in {delay:.2f}s"
            )
            sleep(delay)
    raise RuntimeError("unreachable")
