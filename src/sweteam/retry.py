"""Retry utilities using tenacity."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from sweteam.errors import SWETeamError

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    """Check if an exception is worth another attempt."""
    if isinstance(exc, SWETeamError):
        return exc.retryable
    return isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError))


def with_retry(
    *,
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 30.0,
    multiplier: float = 2.0,
    on_retry: Callable[[RetryCallState], None] | None = None,
) -> Any:
    """Create a tenacity retry decorator for async functions.

    Args:
        max_attempts: Maximum number of attempts, the first one included.
        min_wait: Minimum wait time between attempts (seconds).
        max_wait: Maximum wait time between attempts (seconds).
        multiplier: Exponential backoff multiplier.
        on_retry: Optional callback invoked before each sleep.
    """
    kwargs: dict[str, Any] = {
        "stop": stop_after_attempt(max_attempts),
        "wait": wait_exponential(multiplier=multiplier, min=min_wait, max=max_wait),
        "retry": retry_if_exception(is_retryable),
        "reraise": True,
    }
    if on_retry:
        kwargs["before_sleep"] = on_retry

    return retry(**kwargs)


async def retry_async(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 30.0,
    multiplier: float = 2.0,
    on_retry: Callable[[RetryCallState], None] | None = None,
    **kwargs: Any,
) -> T:
    """Retry an async function with exponential backoff.

    Only failures accepted by :func:`is_retryable` are retried; the last
    exception is re-raised once attempts run out.
    """

    @with_retry(
        max_attempts=max_attempts,
        min_wait=min_wait,
        max_wait=max_wait,
        multiplier=multiplier,
        on_retry=on_retry,
    )
    async def _wrapped() -> T:
        return await fn(*args, **kwargs)

    return await _wrapped()
