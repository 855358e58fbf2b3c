"""Bounded linear backoff for widget network calls."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from config.constants import MAX_RETRIES, RETRY_BASE_DELAY_S
from errors import NetworkFailure

logger = logging.getLogger("captcha_widget.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt ``n`` (1-based retry count) waits ``base_delay * n`` first.

    With the defaults a call is tried at most ``1 + max_retries`` = 4 times.
    Only retryable ``NetworkFailure`` errors are retried.
    """

    max_retries: int = MAX_RETRIES
    base_delay: float = RETRY_BASE_DELAY_S

    def delay_for(self, retry: int) -> float:
        return self.base_delay * retry

    async def run(self, operation: Callable[[], Awaitable[T]], label: str = "request",
                  on_retry: Optional[Callable[[int, NetworkFailure], None]] = None,
                  sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> T:
        retry = 0
        while True:
            try:
                return await operation()
            except NetworkFailure as e:
                if not e.retryable or retry >= self.max_retries:
                    if e.retryable:
                        logger.warning("%s failed after %d retries: %s", label, retry, e)
                    raise
                retry += 1
                delay = self.delay_for(retry)
                logger.warning("%s failed (%s), retry %d/%d in %.1fs", label, e, retry, self.max_retries, delay)
                if on_retry is not None:
                    on_retry(retry, e)
                await sleep(delay)
