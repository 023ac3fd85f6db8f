"""Failure classification and linear-backoff retry for job pipelines."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Messages that describe a permanent condition; retrying cannot fix these.
NON_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "not found",
    "invalid",
    "unauthorized",
    "forbidden",
    "validation",
)


def is_non_retryable_error(error: BaseException | None) -> bool:
    """Return True if the error message matches a permanent-failure pattern.

    Matching is a case-insensitive substring test over ``str(error)``.
    """
    if error is None:
        return False
    message = str(error).lower()
    return any(pattern in message for pattern in NON_RETRYABLE_PATTERNS)


async def run_with_retries(
    func: Callable[[int], Awaitable[T]],
    *,
    max_retries: int = 3,
    backoff_seconds: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_failure: Callable[[int, Exception], None] | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
) -> T:
    """
    Run ``func(attempt)`` until it succeeds, a permanent error occurs, or retries run out.

    Attempts are numbered from 1. After a transient failure of attempt ``n``
    the loop sleeps ``n * backoff_seconds`` before the next attempt, so a job
    gets ``max_retries + 1`` attempts in total.

    Args:
        func: Coroutine factory receiving the 1-based attempt number
        max_retries: Additional attempts after the first one
        backoff_seconds: Linear backoff unit
        sleep: Awaitable sleep, replaced in tests
        on_failure: Called with (attempt, error) after every failed attempt
        should_retry: Returns False to stop after a transient failure, e.g.
            once a caller-side deadline has passed

    Returns:
        The result of the first successful attempt

    Raises:
        The last exception once retries are exhausted, or the first
        non-retryable exception
    """
    attempts = max_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            return await func(attempt)
        except Exception as e:
            if on_failure is not None:
                on_failure(attempt, e)

            if is_non_retryable_error(e):
                logger.error(f"Non-retryable error on attempt {attempt}: {e}")
                raise

            if attempt >= attempts:
                logger.error(f"All {attempts} attempts exhausted. Last error: {e}")
                raise

            if should_retry is not None and not should_retry(e):
                logger.error(f"Giving up after attempt {attempt}: {e}")
                raise

            delay = attempt * backoff_seconds
            logger.warning(
                f"Attempt {attempt}/{attempts} failed with {type(e).__name__}: {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            await sleep(delay)

    raise RuntimeError("retry loop exited without a result")  # pragma: no cover
