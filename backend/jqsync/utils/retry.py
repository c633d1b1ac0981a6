"""
Retry with capped exponential backoff and jitter for source API calls.
"""
import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from jqsync.config import settings
from jqsync.exceptions import RetryableSourceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES


def compute_backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
) -> float:
    """
    Delay before retry number attempt (0-based).

    min(base * 2^attempt, max) plus up to `jitter` seconds of random noise.
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay + random.random() * jitter


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
    jitter: Optional[float] = None,
    description: str = "request",
) -> T:
    """
    Run operation, retrying only RetryableSourceError.

    Any other exception (NonRetryableSourceError included) propagates on the
    first occurrence. After max_retries retries the last retryable error is
    re-raised.

    Args:
        operation: Zero-argument coroutine factory
        max_retries: Retries after the first attempt
        base_delay: Initial delay in seconds
        max_delay: Delay cap in seconds
        jitter: Max random delay added per retry, in seconds
        description: Label for log messages

    Returns:
        Result of the first successful attempt
    """
    max_retries = settings.RETRY_MAX_RETRIES if max_retries is None else max_retries
    base_delay = settings.RETRY_BASE_DELAY_SECONDS if base_delay is None else base_delay
    max_delay = settings.RETRY_MAX_DELAY_SECONDS if max_delay is None else max_delay
    jitter = settings.RETRY_JITTER_SECONDS if jitter is None else jitter

    attempt = 0
    while True:
        try:
            return await operation()
        except RetryableSourceError as e:
            if attempt >= max_retries:
                logger.error(f"{description} failed after {attempt + 1} attempt(s): {e}")
                raise

            delay = compute_backoff_delay(attempt, base_delay, max_delay, jitter)
            logger.warning(
                f"{description} failed (status={e.status_code}), "
                f"retry {attempt + 1}/{max_retries} in {delay:.2f}s: {e}"
            )
            await asyncio.sleep(delay)
            attempt += 1
