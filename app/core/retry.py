"""Bounded exponential backoff for calls to unreliable peers."""

import asyncio
from typing import Awaitable, Callable, TypeVar

from app.core.config import get_settings
from app.core.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number `attempt` (1-based): base * 2**(attempt-1), capped."""
    return min(base * (2 ** (attempt - 1)), cap)


async def retry_async(
    op: str,
    fn: Callable[[], Awaitable[T]],
    retry_on: tuple[type[BaseException], ...],
    max_attempts: int | None = None,
) -> T:
    """
    Await fn() until it succeeds or raises something outside `retry_on`.
    After max_attempts the last retryable exception propagates to the caller.
    """
    settings = get_settings()
    attempts = max_attempts or settings.retry_max_attempts
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except retry_on as e:
            if attempt >= attempts:
                log.warning("retry_exhausted", op=op, attempts=attempt, reason=str(e)[:300])
                raise
            delay = backoff_delay(attempt, settings.retry_base_delay_seconds, settings.retry_max_delay_seconds)
            log.info("retry_scheduled", op=op, attempt=attempt, delay_s=delay, reason=str(e)[:300])
            await asyncio.sleep(delay)
