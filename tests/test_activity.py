"""Grouping of watch-progress rows into "currently watching" records."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from cinefeed.activity import (
    ActivityFeed,
    adapt_anime_payload,
    aggregate_activity,
    group_activity,
    normalize_event,
    normalize_events,
)

NOW = datetime(2024, 6, 1, 20, 0, tzinfo=timezone.utc)


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def row(
    item_id: Any,
    user_id: str,
    watched_at: datetime,
    *,
    media_type: str = "movie",
    data: dict[str, Any] | None = None,
    profile_id: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "type": media_type,
        "item_id": item_id,
        "data": data if data is not None else {"title": f"Title {item_id}", "poster_path": "/p.jpg"},
        "profiles": {
            "user_id": user_id,
            "id": profile_id or f"profile-{user_id}",
            "name": user_id.upper(),
        },
        "progress": 120,
        "last_watched": watched_at.isoformat(),
    }
    payload.update(extra)
    return payload


def test_two_watchers_share_one_live_record() -> None:
    started = NOW - timedelta(minutes=2)
    rows = [
        row(5, "a", started),
        row(5, "b", started + timedelta(seconds=60), progress=300),
    ]

    records = aggregate_activity(rows, now=NOW)

    assert len(records) == 1
    record = records[0]
    assert record.entity_id == "5"
    assert [watcher.contributor.id for watcher in record.watchers] == ["a", "b"]
    assert record.watched_by.id == "b"
    assert record.progress == 300
    assert record.latest_timestamp == started + timedelta(seconds=60)
    assert record.is_live is True


def test_stale_activity_is_not_live() -> None:
    records = aggregate_activity([row(5, "a", NOW - timedelta(minutes=6))], now=NOW)

    assert records[0].is_live is False
    assert records[0].watchers[0].is_live is False


def test_older_event_does_not_take_over_the_headline() -> None:
    rows = [
        row(7, "a", NOW - timedelta(minutes=1), season_number=2, episode_number=4),
        row(7, "b", NOW - timedelta(hours=3), season_number=1, episode_number=1),
    ]

    record = aggregate_activity(rows, now=NOW)[0]

    assert record.watched_by.id == "a"
    assert (record.season, record.episode) == (2, 4)
    assert record.is_live is True
    assert [watcher.is_live for watcher in record.watchers] == [True, False]


def test_records_keep_first_seen_order() -> None:
    rows = [
        row(1, "a", NOW - timedelta(hours=2)),
        row(2, "b", NOW),
        row(1, "c", NOW),
    ]

    records = aggregate_activity(rows, now=NOW)

    assert [record.entity_id for record in records] == ["1", "2"]


def test_viewer_is_excluded_and_duplicate_profiles_count_once() -> None:
    rows = [
        row(3, "me", NOW),
        row(3, "a", NOW - timedelta(minutes=1)),
        row(3, "a", NOW),
        row(4, "me", NOW),
    ]

    records = aggregate_activity(rows, now=NOW, exclude_user_id="me")

    assert len(records) == 1
    assert len(records[0].watchers) == 1
    assert records[0].watched_by.id == "a"


def test_malformed_rows_are_skipped(caplog) -> None:
    rows = [
        {"type": "podcast", "item_id": 1, "profiles": {"user_id": "a"}, "last_watched": NOW.isoformat()},
        {"type": "movie", "data": {}, "profiles": {"user_id": "a"}, "last_watched": NOW.isoformat()},
        {"type": "movie", "item_id": 2, "profiles": None, "last_watched": NOW.isoformat()},
        {"type": "movie", "item_id": 3, "profiles": {"user_id": "a"}, "last_watched": "yesterday"},
        row(9, "a", NOW),
    ]

    with caplog.at_level("WARNING", logger="cinefeed.activity"):
        events = normalize_events(rows)

    assert [event.entity_id for event in events] == ["9"]
    assert caplog.text.count("Skipping malformed activity row") == 4


def test_tv_payload_uses_show_name_and_episode() -> None:
    event = normalize_event(
        row(
            1399,
            "a",
            NOW,
            media_type="tv",
            data={"name": "Game of Thrones", "backdropPath": "/b.jpg"},
            season_number="3",
            episode_number=9,
        )
    )

    assert event.item.media_type == "tv"
    assert event.item.title == "Game of Thrones"
    assert event.item.backdrop_path == "/b.jpg"
    assert (event.season, event.episode) == (3, 9)


def test_naive_timestamps_are_treated_as_utc() -> None:
    event = normalize_event(row(1, "a", NOW.replace(tzinfo=None)))

    assert event.timestamp == NOW


def test_anime_payload_prefers_user_title_and_cover() -> None:
    item = adapt_anime_payload(
        "21",
        {
            "title": {"romaji": "One Piece", "english": "ONE PIECE", "userPreferred": None},
            "coverImage": {"extraLarge": "https://img/xl.jpg"},
            "bannerImage": "https://img/banner.jpg",
        },
    )

    assert item.media_type == "anime"
    assert item.title == "ONE PIECE"
    assert item.poster_path == "https://img/xl.jpg"
    assert item.backdrop_path == "https://img/banner.jpg"


def test_anime_payload_without_title_uses_generic_label() -> None:
    item = adapt_anime_payload("21", {"image": "https://img/fallback.jpg"})

    assert item.title == "Anime"
    assert item.poster_path == "https://img/fallback.jpg"
    assert item.backdrop_path == "https://img/fallback.jpg"


def test_group_activity_accepts_normalized_events() -> None:
    events = normalize_events([row(1, "a", NOW), row(1, "b", NOW)])

    records = group_activity(events, now=NOW + timedelta(minutes=10))

    assert len(records[0].watchers) == 2
    assert records[0].is_live is False


class FlakySource:
    def __init__(self, batches: list[Any]) -> None:
        self.batches = batches
        self.calls = 0

    async def fetch_events(self) -> list[dict[str, Any]]:
        batch = self.batches[min(self.calls, len(self.batches) - 1)]
        self.calls += 1
        await asyncio.sleep(0)
        if isinstance(batch, Exception):
            raise batch
        return batch


@pytest.mark.anyio("asyncio")
async def test_feed_keeps_last_good_records_when_source_fails() -> None:
    source = FlakySource([[row(1, "a", NOW)], RuntimeError("social backend down")])
    feed = ActivityFeed(source, clock=lambda: NOW)

    first = await feed.refresh()
    second = await feed.refresh()

    assert [record.entity_id for record in first] == ["1"]
    assert second == first
    assert source.calls == 2


@pytest.mark.anyio("asyncio")
async def test_change_notifications_coalesce_into_one_refresh() -> None:
    source = FlakySource([[row(1, "a", NOW), row(2, "me", NOW)]])
    feed = ActivityFeed(source, exclude_user_id="me", clock=lambda: NOW)

    first = feed.notify_changed()
    second = feed.notify_changed()
    await feed.wait_idle()

    assert first is second
    assert source.calls == 1
    assert [record.entity_id for record in feed.records] == ["1"]
