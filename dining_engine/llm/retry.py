from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from ..errors import ExternalServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0


def is_retryable(exc: BaseException) -> bool:
    """Timeouts, network errors, 503s and upstream rate limits are worth retrying."""
    if isinstance(exc, ExternalServiceError):
        return exc.retryable
    return isinstance(exc, (asyncio.TimeoutError, ConnectionError))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
    retryable: Callable[[BaseException], bool] = is_retryable,
) -> T:
    """Run *operation* with exponential backoff and full jitter.

    Non-retryable errors propagate immediately; the last retryable error is
    re-raised once attempts run out.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, policy.max_attempts)),
        wait=wait_random_exponential(multiplier=policy.base_delay, max=policy.max_delay),
        retry=retry_if_exception(retryable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await operation()
    return result
