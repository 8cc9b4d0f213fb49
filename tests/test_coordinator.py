"""Deduplication and stale-while-revalidate behaviour of the coordinator."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from cinefeed.cache import CacheStore
from cinefeed.coordinator import BackgroundTasks, RequestCoordinator
from cinefeed.errors import FatalFetchError, TransientFetchError
from cinefeed.retry import RetryPolicy
from cinefeed.storage import MemoryStorage

NO_WAIT = RetryPolicy(retries=2, initial_delay=0.0, max_delay=0.0)


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.mark.anyio("asyncio")
async def test_concurrent_cold_requests_share_one_fetch() -> None:
    coordinator = RequestCoordinator(CacheStore(), policy=NO_WAIT)
    release = asyncio.Event()
    calls = 0

    async def fetcher() -> dict[str, int]:
        nonlocal calls
        calls += 1
        await release.wait()
        return {"value": 42}

    first = asyncio.create_task(coordinator.resolve("k", fetcher))
    second = asyncio.create_task(coordinator.resolve("k", fetcher))
    await asyncio.sleep(0)
    assert coordinator.active_requests == 1
    assert coordinator.in_flight_keys() == ["k"]

    release.set()
    results = await asyncio.gather(first, second)

    assert results == [{"value": 42}, {"value": 42}]
    assert calls == 1
    assert coordinator.active_requests == 0


@pytest.mark.anyio("asyncio")
async def test_fresh_entries_skip_the_network(clock) -> None:
    cache = CacheStore(clock=clock)
    cache.set("k", "cached", ttl=60)
    coordinator = RequestCoordinator(cache, policy=NO_WAIT)

    async def fetcher() -> str:
        raise AssertionError("fresh cache must not refetch")

    assert await coordinator.resolve("k", fetcher) == "cached"
    assert coordinator.active_requests == 0


@pytest.mark.anyio("asyncio")
async def test_stale_value_is_served_while_refreshing(clock) -> None:
    cache = CacheStore(clock=clock)
    cache.set("k", "old", ttl=10)
    clock.advance(11)
    coordinator = RequestCoordinator(cache, policy=NO_WAIT)
    calls = 0

    async def fetcher() -> str:
        nonlocal calls
        calls += 1
        return "new"

    assert await coordinator.resolve("k", fetcher, ttl=10) == "old"
    assert coordinator.active_requests == 1
    # A caller arriving during the refresh gets the cached value, no second fetch.
    assert await coordinator.resolve("k", fetcher, ttl=10) == "old"

    await coordinator.drain()

    assert calls == 1
    assert await coordinator.resolve("k", fetcher, ttl=10) == "new"
    assert calls == 1


@pytest.mark.anyio("asyncio")
async def test_failed_fetch_releases_the_key() -> None:
    coordinator = RequestCoordinator(CacheStore(), policy=NO_WAIT)

    async def failing() -> str:
        raise FatalFetchError("bad request", status_code=400)

    async def succeeding() -> str:
        return "recovered"

    with pytest.raises(FatalFetchError):
        await coordinator.resolve("k", failing)

    assert coordinator.active_requests == 0
    assert await coordinator.resolve("k", succeeding) == "recovered"


@pytest.mark.anyio("asyncio")
async def test_transient_errors_are_retried_fatal_are_not() -> None:
    coordinator = RequestCoordinator(CacheStore(), policy=NO_WAIT)
    transient_calls = 0
    fatal_calls = 0

    async def transient() -> str:
        nonlocal transient_calls
        transient_calls += 1
        if transient_calls < 3:
            raise TransientFetchError("503", status_code=503)
        return "ok"

    async def fatal() -> str:
        nonlocal fatal_calls
        fatal_calls += 1
        raise FatalFetchError("403", status_code=403)

    assert await coordinator.resolve("transient", transient) == "ok"
    with pytest.raises(FatalFetchError):
        await coordinator.resolve("fatal", fatal)

    assert transient_calls == 3
    assert fatal_calls == 1


@pytest.mark.anyio("asyncio")
async def test_background_failures_are_logged_not_raised(clock, caplog) -> None:
    cache = CacheStore(clock=clock)
    cache.set("k", "old", ttl=1)
    clock.advance(2)
    coordinator = RequestCoordinator(cache, policy=NO_WAIT)

    async def failing() -> str:
        raise FatalFetchError("upstream exploded", status_code=418)

    with caplog.at_level("WARNING", logger="cinefeed.coordinator"):
        assert await coordinator.resolve("k", failing) == "old"
        await coordinator.drain()

    assert "upstream exploded" in caplog.text
    hit = cache.get("k")
    assert hit is not None
    assert hit.data == "old"
    assert coordinator.active_requests == 0


@pytest.mark.anyio("asyncio")
async def test_cancelling_one_caller_keeps_the_shared_fetch_alive() -> None:
    cache = CacheStore()
    coordinator = RequestCoordinator(cache, policy=NO_WAIT)
    release = asyncio.Event()

    async def fetcher() -> str:
        await release.wait()
        return "shared"

    withdrawn = asyncio.create_task(coordinator.resolve("k", fetcher))
    patient = asyncio.create_task(coordinator.resolve("k", fetcher))
    await asyncio.sleep(0)

    withdrawn.cancel()
    with pytest.raises(asyncio.CancelledError):
        await withdrawn

    release.set()
    assert await patient == "shared"
    hit = cache.get("k")
    assert hit is not None
    assert hit.data == "shared"


@pytest.mark.anyio("asyncio")
async def test_not_found_results_are_cached() -> None:
    coordinator = RequestCoordinator(CacheStore(), policy=NO_WAIT)
    calls = 0

    async def missing() -> None:
        nonlocal calls
        calls += 1
        return None

    assert await coordinator.resolve("k", missing) is None
    assert await coordinator.resolve("k", missing) is None
    assert calls == 1


@pytest.mark.anyio("asyncio")
async def test_background_tasks_join_waits_for_everything() -> None:
    tasks = BackgroundTasks()
    finished: list[str] = []

    async def work(name: str) -> None:
        await asyncio.sleep(0)
        finished.append(name)

    tasks.spawn(work("a"), name="a")
    tasks.spawn(work("b"), name="b")
    assert len(tasks) == 2

    await tasks.join()

    assert sorted(finished) == ["a", "b"]
    assert len(tasks) == 0


class LockedStorage(MemoryStorage):
    """Storage that fails every read and write like a locked SQLite file."""

    def get_item(self, key: str) -> str | None:
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    def set_item(self, key: str, value: str) -> None:
        raise OperationalError("INSERT", {}, Exception("database is locked"))


@pytest.mark.anyio("asyncio")
async def test_broken_storage_never_hides_the_fetched_value() -> None:
    coordinator = RequestCoordinator(CacheStore(LockedStorage()), policy=NO_WAIT)
    calls = 0

    async def fetcher() -> str:
        nonlocal calls
        calls += 1
        return "fresh"

    assert await coordinator.resolve("k", fetcher) == "fresh"
    assert await coordinator.resolve("k", fetcher) == "fresh"
    assert calls == 2
    assert coordinator.active_requests == 0
