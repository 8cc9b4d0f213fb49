"""Group per-entity watch events into "currently watching" records."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Protocol

from pydantic import TypeAdapter, ValidationError

from .coordinator import BackgroundTasks
from .models import ActivityItem, ActivityRecord, Contributor, WatchEvent, Watcher

logger = logging.getLogger(__name__)

RECENCY_WINDOW = timedelta(minutes=5)

_TIMESTAMP = TypeAdapter(datetime)


def _first_text(*candidates: Any) -> str | None:
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate
    return None


def adapt_movie_payload(entity_id: str, data: Mapping[str, Any]) -> ActivityItem:
    """Movie payloads as stored by the app or returned by TMDB."""

    return ActivityItem(
        id=entity_id,
        media_type="movie",
        title=_first_text(data.get("title"), data.get("original_title")) or "Untitled",
        poster_path=_first_text(data.get("posterPath"), data.get("poster_path")),
        backdrop_path=_first_text(data.get("backdropPath"), data.get("backdrop_path")),
    )


def adapt_tv_payload(entity_id: str, data: Mapping[str, Any]) -> ActivityItem:
    """TV payloads; TMDB names shows rather than titling them."""

    return ActivityItem(
        id=entity_id,
        media_type="tv",
        title=_first_text(data.get("name"), data.get("title"), data.get("original_name"))
        or "Untitled",
        poster_path=_first_text(data.get("posterPath"), data.get("poster_path")),
        backdrop_path=_first_text(data.get("backdropPath"), data.get("backdrop_path")),
    )


def adapt_anime_payload(entity_id: str, data: Mapping[str, Any]) -> ActivityItem:
    """AniList payloads carry a title object and a ``coverImage`` mapping."""

    raw_title = data.get("title")
    if isinstance(raw_title, Mapping):
        title = _first_text(
            raw_title.get("userPreferred"), raw_title.get("english"), raw_title.get("romaji")
        )
    else:
        title = _first_text(raw_title, data.get("name"))

    cover = data.get("coverImage")
    if not isinstance(cover, Mapping):
        cover = {}
    poster = _first_text(
        cover.get("large"),
        cover.get("extraLarge"),
        data.get("image"),
        data.get("img"),
        data.get("thumbnail"),
        data.get("picture"),
        data.get("poster_path"),
        data.get("posterPath"),
        data.get("bannerImage"),
    )
    return ActivityItem(
        id=entity_id,
        media_type="anime",
        title=title or "Anime",
        poster_path=poster,
        backdrop_path=_first_text(data.get("bannerImage"), cover.get("extraLarge"), poster),
    )


PAYLOAD_ADAPTERS: dict[str, Callable[[str, Mapping[str, Any]], ActivityItem]] = {
    "movie": adapt_movie_payload,
    "tv": adapt_tv_payload,
    "anime": adapt_anime_payload,
}


def _parse_timestamp(value: Any) -> datetime:
    timestamp = _TIMESTAMP.validate_python(value)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def normalize_event(raw: Mapping[str, Any]) -> WatchEvent:
    """Turn a raw watch-progress row into a :class:`WatchEvent`.

    The row's ``type`` selects the payload adapter. Raises ``ValueError``
    for rows that cannot be attributed to an entity and a contributor.
    """

    media_type = raw.get("type")
    adapter = PAYLOAD_ADAPTERS.get(str(media_type))
    if adapter is None:
        raise ValueError(f"Unsupported activity type: {media_type!r}")

    data = raw.get("data")
    if not isinstance(data, Mapping):
        data = {}
    item_id = raw.get("item_id") or data.get("id")
    if item_id in (None, ""):
        raise ValueError("Activity row has no entity id")

    profile = raw.get("profiles")
    if not isinstance(profile, Mapping):
        raise ValueError("Activity row has no contributor profile")
    user_id = profile.get("user_id") or profile.get("id")
    if user_id in (None, ""):
        raise ValueError("Activity row has no contributor id")

    profile_id = profile.get("id")
    contributor = Contributor(
        id=str(user_id),
        profile_id=str(profile_id) if profile_id is not None else None,
        name=_first_text(profile.get("name")) or "Someone",
        avatar=_first_text(profile.get("avatar")),
    )

    return WatchEvent(
        item=adapter(str(item_id), data),
        contributor=contributor,
        progress=float(raw.get("progress") or 0),
        duration=float(raw["duration"]) if raw.get("duration") is not None else None,
        timestamp=_parse_timestamp(raw.get("last_watched")),
        season=_optional_int(raw.get("season_number")),
        episode=_optional_int(raw.get("episode_number")),
    )


def normalize_events(rows: Iterable[Mapping[str, Any]]) -> list[WatchEvent]:
    """Normalize every row once, skipping rows that cannot be attributed."""

    events: list[WatchEvent] = []
    for row in rows:
        try:
            events.append(normalize_event(row))
        except (ValueError, TypeError, ValidationError) as exc:
            logger.warning("Skipping malformed activity row: %s", exc)
    return events


def is_live(event: WatchEvent, now: datetime, window: timedelta = RECENCY_WINDOW) -> bool:
    return now - event.timestamp < window


def group_activity(
    events: Iterable[WatchEvent],
    *,
    now: datetime | None = None,
    window: timedelta = RECENCY_WINDOW,
    exclude_user_id: str | None = None,
) -> list[ActivityRecord]:
    """Fold ``events`` into one record per entity, in first-seen order.

    Events of ``exclude_user_id`` are ignored, and a contributor profile
    counts once per entity (the first event seen wins).
    """

    reference = now or datetime.now(timezone.utc)
    records: dict[str, ActivityRecord] = {}
    seen: set[tuple[str, str]] = set()

    for event in events:
        contributor = event.contributor
        if exclude_user_id is not None and contributor.id == exclude_user_id:
            continue
        pair = (event.entity_id, contributor.profile_id or contributor.id)
        if pair in seen:
            continue
        seen.add(pair)

        watcher = Watcher(
            contributor=contributor,
            progress=event.progress,
            timestamp=event.timestamp,
            season=event.season,
            episode=event.episode,
            is_live=is_live(event, reference, window),
        )
        existing = records.get(event.entity_id)
        if existing is None:
            records[event.entity_id] = ActivityRecord.start(event, watcher)
        else:
            existing.merge(event, watcher)

    return list(records.values())


def aggregate_activity(
    rows: Iterable[Mapping[str, Any] | WatchEvent],
    *,
    now: datetime | None = None,
    window: timedelta = RECENCY_WINDOW,
    exclude_user_id: str | None = None,
) -> list[ActivityRecord]:
    """Normalize raw rows (already-normalized events pass through) and group them."""

    events: list[WatchEvent] = []
    raw_rows: list[Mapping[str, Any]] = []
    for row in rows:
        if isinstance(row, WatchEvent):
            events.append(row)
        else:
            raw_rows.append(row)
    events.extend(normalize_events(raw_rows))
    return group_activity(events, now=now, window=window, exclude_user_id=exclude_user_id)


class ActivityEventSource(Protocol):
    """Social/watch-progress backend supplying raw activity rows."""

    async def fetch_events(self) -> list[Mapping[str, Any]]: ...


class ActivityFeed:
    """Keeps the grouped activity view current for one viewing user."""

    def __init__(
        self,
        source: ActivityEventSource,
        *,
        exclude_user_id: str | None = None,
        window: timedelta = RECENCY_WINDOW,
        clock: Callable[[], datetime] | None = None,
        tasks: BackgroundTasks | None = None,
    ) -> None:
        self._source = source
        self._exclude_user_id = exclude_user_id
        self._window = window
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tasks = tasks or BackgroundTasks()
        self._records: list[ActivityRecord] = []
        self._pending: asyncio.Task[list[ActivityRecord]] | None = None

    @property
    def records(self) -> list[ActivityRecord]:
        return list(self._records)

    async def refresh(self) -> list[ActivityRecord]:
        """Re-fetch and re-group; keeps the previous view if the source fails."""

        try:
            rows = await self._source.fetch_events()
        except Exception as exc:
            logger.warning(
                "Activity refresh failed, keeping %d records: %s", len(self._records), exc
            )
            return self.records
        self._records = aggregate_activity(
            rows,
            now=self._clock(),
            window=self._window,
            exclude_user_id=self._exclude_user_id,
        )
        return self.records

    def notify_changed(self) -> asyncio.Task[list[ActivityRecord]]:
        """Push hook: schedule a refresh, joining one that is already pending."""

        if self._pending is not None and not self._pending.done():
            return self._pending
        self._pending = self._tasks.spawn(self.refresh(), name="activity-refresh")
        return self._pending

    async def wait_idle(self) -> None:
        await self._tasks.join()
