"""Persistence of cache values through the SQLite backend."""

from __future__ import annotations

import pytest

from cinefeed.cache import CacheStore
from cinefeed.errors import StorageQuotaExceeded
from cinefeed.storage import MemoryStorage, SQLiteStorage, create_storage


def test_sqlite_storage_survives_reopening(tmp_path, clock) -> None:
    database_url = f"sqlite:///{tmp_path / 'cache.db'}"

    first = SQLiteStorage(database_url)
    try:
        CacheStore(first, clock=clock).set("cine_cache_/movie/popular?", {"results": [7]})
    finally:
        first.dispose()

    reopened = SQLiteStorage(database_url)
    try:
        hit = CacheStore(reopened, clock=clock).get("cine_cache_/movie/popular?")
    finally:
        reopened.dispose()

    assert hit is not None
    assert hit.data == {"results": [7]}
    assert hit.is_stale is False


def test_sqlite_storage_overwrites_and_removes(tmp_path) -> None:
    storage = SQLiteStorage(f"sqlite:///{tmp_path / 'cache.db'}")
    try:
        storage.set_item("a", "1")
        storage.set_item("a", "2")
        storage.set_item("b", "3")
        assert storage.get_item("a") == "2"
        assert sorted(storage.keys()) == ["a", "b"]

        storage.remove_item("a")
        storage.remove_item("missing")

        assert storage.get_item("a") is None
        assert storage.keys() == ["b"]
    finally:
        storage.dispose()


def test_sqlite_storage_enforces_quota(tmp_path) -> None:
    storage = SQLiteStorage(f"sqlite:///{tmp_path / 'cache.db'}", quota_bytes=20)
    try:
        storage.set_item("k", "small")
        with pytest.raises(StorageQuotaExceeded):
            storage.set_item("other", "x" * 50)
        assert storage.get_item("other") is None
    finally:
        storage.dispose()


def test_memory_storage_quota_counts_replaced_value_once() -> None:
    storage = MemoryStorage(quota_bytes=10)

    storage.set_item("k", "12345678")
    storage.set_item("k", "87654321")

    assert storage.get_item("k") == "87654321"
    with pytest.raises(StorageQuotaExceeded):
        storage.set_item("j", "123456789")


def test_create_storage_picks_backend(tmp_path) -> None:
    assert isinstance(create_storage(None), MemoryStorage)

    storage = create_storage(f"sqlite:///{tmp_path / 'cache.db'}")
    try:
        assert isinstance(storage, SQLiteStorage)
    finally:
        storage.dispose()
