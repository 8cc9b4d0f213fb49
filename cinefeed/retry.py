"""Exponential backoff around fallible coroutines."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How many times to retry and how long to wait in between.

    Delays do not jitter.
    """

    retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            retries=settings.retry_limit,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """Return the wait before retrying after zero-based ``attempt`` failed."""

        return min(self.initial_delay * (2**attempt), self.max_delay)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    on_retry: Callable[[Exception, int], None] | None = None,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Await ``operation()`` until it succeeds or the retries are used up.

    ``on_retry`` receives the error and the one-based number of the attempt
    that failed, before each wait. Errors outside ``retry_on`` propagate at
    once. When every attempt fails the last error is re-raised unchanged.
    """

    resolved = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= resolved.retries:
                raise
            delay = resolved.delay_for(attempt)
            attempt += 1
            if on_retry is not None:
                on_retry(exc, attempt)
            logger.info(
                "Attempt %s failed (%s), retrying in %.2fs",
                attempt,
                exc.__class__.__name__,
                delay,
            )
            await sleep(delay)
