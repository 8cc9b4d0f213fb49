"""Request coalescing with stale-while-revalidate on top of the cache.

Every distinct cache key has at most one fetch executing at a time. The
first caller for a key starts it, later callers share it, and the record is
removed as soon as the fetch settles so a failed key is immediately
retryable.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine

from .cache import CacheStore
from .errors import TransientFetchError
from .retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]


class BackgroundTasks:
    """Strongly referenced set of detached tasks whose outcome gets logged."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(
        self, coro: Coroutine[Any, Any, Any], *, name: str, detached: bool = True
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self.track(task, detached=detached)
        return task

    def track(self, task: asyncio.Task[Any], *, detached: bool = True) -> None:
        self._tasks.add(task)
        task.add_done_callback(
            lambda finished: self._on_done(finished, detached=detached)
        )

    def _on_done(self, task: asyncio.Task[Any], *, detached: bool) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug("Task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is None:
            return
        if detached:
            logger.warning("Background task %s failed: %s", task.get_name(), exc)
        else:
            logger.debug("Task %s failed: %s", task.get_name(), exc)

    def __len__(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait until every tracked task, including ones spawned meanwhile, settles."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.join()


class RequestCoordinator:
    """Serve cached data, coalesce concurrent fetches and revalidate stale keys."""

    def __init__(
        self,
        cache: CacheStore,
        *,
        policy: RetryPolicy | None = None,
        retry_on: tuple[type[Exception], ...] = (TransientFetchError,),
        tasks: BackgroundTasks | None = None,
    ) -> None:
        self._cache = cache
        self._policy = policy or RetryPolicy()
        self._retry_on = retry_on
        self._tasks = tasks or BackgroundTasks()
        self._in_flight: dict[str, asyncio.Task[Any]] = {}

    @property
    def cache(self) -> CacheStore:
        return self._cache

    @property
    def active_requests(self) -> int:
        """Number of keys with a fetch currently executing."""

        return len(self._in_flight)

    def in_flight_keys(self) -> list[str]:
        return list(self._in_flight)

    async def resolve(
        self,
        key: str,
        fetcher: Fetcher,
        *,
        ttl: float | None = None,
        policy: RetryPolicy | None = None,
    ) -> Any:
        """Return the value for ``key``, fetching it only when needed.

        * A fresh cached value is returned without touching the network.
        * A stale cached value is returned at once while a background
          refresh, shared with any concurrent caller, updates the cache.
        * Without a cached value the caller waits for the single shared fetch.

        Cancelling the awaiting caller never cancels the shared fetch.
        """

        pending = self._in_flight.get(key)
        hit = self._cache.get(key)

        if pending is not None:
            if hit is not None:
                logger.debug("Serving cached %s while its refresh is in flight", key)
                return hit.data
            logger.debug("Joining in-flight request for %s", key)
            return await asyncio.shield(pending)

        if hit is None:
            logger.debug("Cache miss for %s", key)
            task = self._start(key, fetcher, ttl=ttl, policy=policy, detached=False)
            return await asyncio.shield(task)

        if not hit.is_stale:
            logger.debug("Cache hit (fresh) for %s", key)
            return hit.data

        logger.debug("Cache hit (stale) for %s, revalidating", key)
        self._start(key, fetcher, ttl=ttl, policy=policy, detached=True)
        return hit.data

    async def drain(self) -> None:
        """Wait for every outstanding fetch, foreground or background."""

        await self._tasks.join()

    async def close(self) -> None:
        await self._tasks.cancel_all()
        self._in_flight.clear()

    def _start(
        self,
        key: str,
        fetcher: Fetcher,
        *,
        ttl: float | None,
        policy: RetryPolicy | None,
        detached: bool,
    ) -> asyncio.Task[Any]:
        # Registered before the first await so concurrent callers see it.
        task = self._tasks.spawn(
            self._fetch_and_store(key, fetcher, ttl=ttl, policy=policy),
            name=f"fetch:{key}",
            detached=detached,
        )
        self._in_flight[key] = task
        return task

    async def _fetch_and_store(
        self,
        key: str,
        fetcher: Fetcher,
        *,
        ttl: float | None,
        policy: RetryPolicy | None,
    ) -> Any:
        try:
            data = await with_retry(
                fetcher, policy or self._policy, retry_on=self._retry_on
            )
            self._cache.set(key, data, ttl)
            return data
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]
