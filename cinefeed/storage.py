"""Key/value storage backends used by the response cache."""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import MetaData, String, Text, create_engine, delete, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import StorageQuotaExceeded

logger = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    """String-to-string storage in the style of browser local storage."""

    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


def _item_size(key: str, value: str) -> int:
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


class MemoryStorage:
    """Dictionary-backed storage with an optional byte quota."""

    def __init__(self, quota_bytes: int | None = None) -> None:
        self._items: dict[str, str] = {}
        self._quota_bytes = quota_bytes

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        if self._quota_bytes is not None:
            used = sum(
                _item_size(existing_key, existing_value)
                for existing_key, existing_value in self._items.items()
                if existing_key != key
            )
            if used + _item_size(key, value) > self._quota_bytes:
                raise StorageQuotaExceeded(
                    f"Writing {key!r} would exceed the {self._quota_bytes} byte quota"
                )
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)


class Base(DeclarativeBase):
    """Declarative base for the cache tables."""

    metadata = MetaData()


class CacheItem(Base):
    """A single persisted cache value."""

    __tablename__ = "cache_items"

    key: Mapped[str] = mapped_column(String(1024), primary_key=True)
    value: Mapped[str] = mapped_column(Text)


class SQLiteStorage:
    """Persist cache values in a SQLite database through SQLAlchemy.

    Uses the synchronous engine, so every call blocks the event loop for the
    duration of the SQLite I/O. Keep the database on a local, fast disk.
    """

    def __init__(self, database_url: str, *, quota_bytes: int | None = None) -> None:
        self._engine = create_engine(database_url, future=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False)
        self._quota_bytes = quota_bytes
        Base.metadata.create_all(self._engine)

    def get_item(self, key: str) -> str | None:
        with self._session_factory() as session:
            record = session.get(CacheItem, key)
            return record.value if record is not None else None

    def set_item(self, key: str, value: str) -> None:
        try:
            with self._session_factory.begin() as session:
                if self._quota_bytes is not None:
                    used = session.scalar(
                        select(
                            func.coalesce(
                                func.sum(
                                    func.length(CacheItem.key) + func.length(CacheItem.value)
                                ),
                                0,
                            )
                        ).where(CacheItem.key != key)
                    )
                    if int(used or 0) + _item_size(key, value) > self._quota_bytes:
                        raise StorageQuotaExceeded(
                            f"Writing {key!r} would exceed the {self._quota_bytes} byte quota"
                        )
                session.merge(CacheItem(key=key, value=value))
        except OperationalError as exc:
            if "full" in str(exc).lower():
                raise StorageQuotaExceeded(str(exc)) from exc
            raise

    def remove_item(self, key: str) -> None:
        with self._session_factory.begin() as session:
            session.execute(delete(CacheItem).where(CacheItem.key == key))

    def keys(self) -> list[str]:
        with self._session_factory() as session:
            return list(session.scalars(select(CacheItem.key)))

    def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        self._engine.dispose()


def create_storage(database_url: str | None, *, quota_bytes: int | None = None) -> KeyValueStorage:
    """Return SQLite storage when a URL is configured, memory storage otherwise."""

    if database_url:
        logger.info("Persisting response cache to %s", database_url)
        return SQLiteStorage(database_url, quota_bytes=quota_bytes)
    return MemoryStorage(quota_bytes=quota_bytes)
