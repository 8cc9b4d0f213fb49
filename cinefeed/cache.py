"""Persistent response cache with TTL staleness, hard expiry and pruning."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .errors import StorageQuotaExceeded
from .storage import KeyValueStorage, MemoryStorage

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "cine_cache_"
DEFAULT_TTL = 4 * 60 * 60
HARD_EXPIRY = 7 * 24 * 60 * 60
MAX_ENTRIES = 50
SCHEMA_VERSION = 1

# Backend failures other than a full quota; the cache never surfaces them.
STORAGE_ERRORS: tuple[type[Exception], ...] = (SQLAlchemyError, OSError)


class CacheEntry(BaseModel):
    """Serialized form of a cached payload."""

    model_config = ConfigDict(populate_by_name=True)

    data: Any = None
    written_at: float = Field(alias="timestamp")
    expires_at: float = Field(alias="expiry")
    schema_version: int = Field(alias="version")


@dataclass(frozen=True, slots=True)
class CacheHit:
    """A cached value together with its staleness at read time."""

    data: Any
    is_stale: bool


def _format_param(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_cache_key(
    path: str, params: Mapping[str, Any] | None = None, *, namespace: str = ""
) -> str:
    """Return a deterministic key for ``path`` and ``params``.

    Parameters are sorted by name so insertion order never matters; ``None``
    values are dropped.
    """

    pairs = sorted(
        (str(name), value) for name, value in (params or {}).items() if value is not None
    )
    query = "&".join(f"{name}={_format_param(value)}" for name, value in pairs)
    return f"{namespace}{path}?{query}"


class CacheStore:
    """Best-effort cache over a :class:`KeyValueStorage` namespace.

    Entries carry the time they were written, a TTL-derived expiry and the
    schema version of the build that wrote them. Entries older than the hard
    expiry, written by another schema version, or not decodable are treated
    as absent and purged on sight. A backend that fails to read or write
    behaves like an empty cache; the error is logged and never raised.
    """

    def __init__(
        self,
        storage: KeyValueStorage | None = None,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        schema_version: int = SCHEMA_VERSION,
        default_ttl: float = DEFAULT_TTL,
        hard_expiry: float = HARD_EXPIRY,
        max_entries: int = MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage: KeyValueStorage = storage if storage is not None else MemoryStorage()
        self._namespace = namespace
        self._schema_version = schema_version
        self._default_ttl = default_ttl
        self._hard_expiry = hard_expiry
        self._max_entries = max_entries
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, storage: KeyValueStorage) -> "CacheStore":
        return cls(
            storage,
            namespace=settings.cache_namespace,
            schema_version=settings.cache_schema_version,
            default_ttl=settings.cache_ttl_seconds,
            hard_expiry=settings.cache_hard_expiry_seconds,
            max_entries=settings.cache_max_entries,
        )

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def storage(self) -> KeyValueStorage:
        return self._storage

    def build_key(self, path: str, params: Mapping[str, Any] | None = None) -> str:
        return build_cache_key(path, params, namespace=self._namespace)


    def keys(self) -> list[str]:
        """Return every storage key belonging to this cache's namespace."""

        try:
            stored = self._storage.keys()
        except STORAGE_ERRORS as exc:
            logger.warning("Cannot list cache keys: %s", exc)
            return []
        return [key for key in stored if key.startswith(self._namespace)]

    def __len__(self) -> int:
        return len(self.keys())

    def get(self, key: str) -> CacheHit | None:
        entry = self._read(key)
        if entry is None:
            return None
        now = self._clock()
        if self._is_hard_expired(entry, now):
            logger.debug("Cache entry %s passed its hard expiry", key)
            self._discard(key)
            return None
        return CacheHit(data=entry.data, is_stale=now > entry.expires_at)

    def set(self, key: str, data: Any, ttl: float | None = None) -> None:
        """Store ``data`` under ``key``; failures are logged and dropped."""

        now = self._clock()
        resolved_ttl = self._default_ttl if ttl is None else ttl
        entry = CacheEntry(
            data=data,
            written_at=now,
            expires_at=now + resolved_ttl,
            schema_version=self._schema_version,
        )
        try:
            payload = entry.model_dump_json(by_alias=True)
        except ValueError as exc:
            logger.warning("Cannot serialize cache entry %s: %s", key, exc)
            return

        try:
            self._storage.set_item(key, payload)
        except StorageQuotaExceeded:
            logger.warning("Cache write for %s exceeded quota, pruning", key)
            self.prune()
            try:
                self._storage.set_item(key, payload)
            except (StorageQuotaExceeded, *STORAGE_ERRORS):
                logger.warning("Dropping cache write for %s after prune", key)
                return
        except STORAGE_ERRORS as exc:
            logger.warning("Dropping cache write for %s: %s", key, exc)
            return

        if len(self) > self._max_entries:
            self.prune()

    def remove(self, key: str) -> None:
        self._discard(key)

    def clear(self) -> None:
        for key in self.keys():
            self._discard(key)

    def prune(self) -> int:
        """Drop hard-expired entries, then the oldest half when over capacity.

        Age is ranked by write time, not by access time; entries written at
        the same time keep their storage order. Returns the number of
        entries removed.
        """

        now = self._clock()
        removed = 0
        survivors: list[tuple[float, str]] = []
        for key in self.keys():
            try:
                raw = self._storage.get_item(key)
            except STORAGE_ERRORS as exc:
                logger.warning("Skipping unreadable cache entry %s during prune: %s", key, exc)
                continue
            entry = self._decode(key, raw)
            if entry is None:
                if raw is not None:
                    removed += 1
                continue
            if self._is_hard_expired(entry, now):
                self._discard(key)
                removed += 1
                continue
            survivors.append((entry.written_at, key))

        if len(survivors) > self._max_entries:
            survivors.sort(key=lambda survivor: survivor[0])
            oldest = len(survivors) // 2
            for _, key in survivors[:oldest]:
                self._discard(key)
            removed += oldest
            logger.info("Cache pruned: removed %d oldest entries", oldest)
        return removed

    def _is_hard_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.written_at > self._hard_expiry

    def _discard(self, key: str) -> None:
        try:
            self._storage.remove_item(key)
        except STORAGE_ERRORS as exc:
            logger.warning("Cannot remove cache entry %s: %s", key, exc)

    def _read(self, key: str) -> CacheEntry | None:
        try:
            raw = self._storage.get_item(key)
        except STORAGE_ERRORS as exc:
            logger.warning("Cannot read cache entry %s, treating it as absent: %s", key, exc)
            return None
        return self._decode(key, raw)

    def _decode(self, key: str, raw: str | None) -> CacheEntry | None:
        if raw is None:
            return None
        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding corrupt cache entry %s", key)
            self._discard(key)
            return None
        if entry.schema_version != self._schema_version:
            logger.debug(
                "Discarding cache entry %s written by schema version %s",
                key,
                entry.schema_version,
            )
            self._discard(key)
            return None
        return entry
