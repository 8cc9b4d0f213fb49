"""Client for The Movie Database (TMDB) content lists and details."""

from __future__ import annotations

import asyncio
import calendar
import logging
from datetime import date
from typing import Any, Literal, Mapping

import httpx

from ..config import Settings
from ..coordinator import RequestCoordinator
from ..errors import FetchError
from ..models import MediaItem
from .http import get_json

logger = logging.getLogger(__name__)

ListMediaType = Literal["movie", "tv"]

RECOMMENDATION_LIMIT = 15
SHARED_RESULT_BOOST = 1.2


def months_before(today: date, months: int) -> date:
    """Return ``today`` shifted back by ``months``, clamping the day of month."""

    month_index = today.year * 12 + (today.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(today.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


class TMDBClient:
    """Resolve TMDB lists through the shared cache and request coordinator."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        coordinator: RequestCoordinator,
    ):
        self._settings = settings
        self._client = http_client
        self._coordinator = coordinator

    async def fetch_json(
        self,
        path: str,
        params: Mapping[str, Any] | None = None,
        *,
        ttl: float | None = None,
    ) -> Any:
        """Return the JSON payload for ``path``, ``None`` when TMDB has no such entity."""

        key = self._coordinator.cache.build_key(path, params)
        return await self._coordinator.resolve(
            key, lambda: self._request(path, params), ttl=ttl
        )

    async def _request(self, path: str, params: Mapping[str, Any] | None) -> Any:
        query = {name: value for name, value in (params or {}).items() if value is not None}
        if self._settings.tmdb_api_key:
            query["api_key"] = self._settings.tmdb_api_key
        return await get_json(self._client, path, params=query)

    async def get_trending(self, time_window: Literal["day", "week"] = "week") -> list[MediaItem]:
        return await self._fetch_list(f"/trending/movie/{time_window}", "movie")

    async def get_popular(self) -> list[MediaItem]:
        return await self._fetch_list("/movie/popular", "movie")

    async def get_top_rated(self) -> list[MediaItem]:
        return await self._fetch_list("/movie/top_rated", "movie")

    async def get_upcoming(self) -> list[MediaItem]:
        return await self._fetch_list("/movie/upcoming", "movie")

    async def get_trending_tv(self, time_window: Literal["day", "week"] = "week") -> list[MediaItem]:
        return await self._fetch_list(f"/trending/tv/{time_window}", "tv")

    async def get_popular_tv(self) -> list[MediaItem]:
        return await self._fetch_list("/tv/popular", "tv")

    async def get_top_rated_tv(self) -> list[MediaItem]:
        return await self._fetch_list("/tv/top_rated", "tv")

    async def get_trending_by_genre(
        self,
        genre_id: int,
        media_type: ListMediaType = "movie",
        *,
        today: date | None = None,
    ) -> list[MediaItem]:
        """Popular recent titles of a genre rather than all-time classics."""

        since = months_before(today or date.today(), 6).isoformat()
        date_param = "primary_release_date.gte" if media_type == "movie" else "first_air_date.gte"
        params = {
            "with_genres": genre_id,
            "sort_by": "popularity.desc",
            date_param: since,
            "vote_count.gte": 10,
        }
        return await self._fetch_list(f"/discover/{media_type}", media_type, params)

    async def get_movie_details(self, movie_id: int | str) -> MediaItem | None:
        return await self._fetch_details("movie", movie_id)

    async def get_tv_details(self, tv_id: int | str) -> MediaItem | None:
        return await self._fetch_details("tv", tv_id)

    async def search_multi(self, query: str) -> list[MediaItem]:
        """Search movies and TV shows, falling back to separate searches."""

        if not query.strip():
            return []
        try:
            payload = await self.fetch_json("/search/multi", {"query": query})
        except FetchError as exc:
            logger.warning("Multi-search failed, falling back to split searches: %s", exc)
            return await self._split_search(query)

        items: list[MediaItem] = []
        for entry in self._results(payload):
            media_type = entry.get("media_type")
            if media_type in ("movie", "tv"):
                items.append(MediaItem.from_tmdb(entry, media_type))
        return items[: self._settings.lane_item_limit]

    async def get_recommendations(self, movie_id: int) -> list[MediaItem]:
        """Blend similar and recommended titles, boosting ones found in both."""

        outcomes = await asyncio.gather(
            self.fetch_json(f"/movie/{movie_id}/similar"),
            self.fetch_json(f"/movie/{movie_id}/recommendations"),
            return_exceptions=True,
        )
        payloads: list[Any] = []
        errors: list[BaseException] = []
        for outcome in outcomes:
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.warning("Recommendation source for %s failed: %s", movie_id, outcome)
                errors.append(outcome)
                continue
            payloads.append(outcome)
        if errors and not payloads:
            raise errors[0]

        merged: dict[Any, dict[str, Any]] = {}
        for payload in payloads:
            for entry in self._results(payload):
                existing = merged.get(entry["id"])
                if existing is None:
                    merged[entry["id"]] = dict(entry)
                else:
                    existing["popularity"] = (existing.get("popularity") or 0) * SHARED_RESULT_BOOST

        items = [
            MediaItem.from_tmdb(entry, "movie")
            for entry in merged.values()
            if entry.get("poster_path")
        ]
        items.sort(key=lambda item: item.popularity or 0, reverse=True)
        return items[:RECOMMENDATION_LIMIT]

    async def _split_search(self, query: str) -> list[MediaItem]:
        outcomes = await asyncio.gather(
            self._fetch_list("/search/movie", "movie", {"query": query}),
            self._fetch_list("/search/tv", "tv", {"query": query}),
            return_exceptions=True,
        )
        items: list[MediaItem] = []
        for outcome in outcomes:
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.warning("Fallback search for %r failed: %s", query, outcome)
                continue
            items.extend(outcome)
        items.sort(key=lambda item: item.vote_average, reverse=True)
        return items[: self._settings.lane_item_limit]

    async def _fetch_list(
        self,
        path: str,
        media_type: ListMediaType,
        params: Mapping[str, Any] | None = None,
    ) -> list[MediaItem]:
        payload = await self.fetch_json(path, params)
        return [
            MediaItem.from_tmdb(entry, media_type)
            for entry in self._results(payload)[: self._settings.lane_item_limit]
        ]

    async def _fetch_details(self, media_type: ListMediaType, entity_id: int | str) -> MediaItem | None:
        resolved = self._coerce_id(entity_id)
        if resolved is None:
            return None
        payload = await self.fetch_json(
            f"/{media_type}/{resolved}",
            ttl=self._settings.cache_long_ttl_seconds / 2,
        )
        if not isinstance(payload, dict) or not payload.get("id"):
            return None
        return MediaItem.from_tmdb(payload, media_type)

    @staticmethod
    def _results(payload: Any) -> list[dict[str, Any]]:
        if not isinstance(payload, dict):
            return []
        results = payload.get("results") or []
        if not isinstance(results, list):
            return []
        return [entry for entry in results if isinstance(entry, dict) and "id" in entry]

    @staticmethod
    def _coerce_id(value: int | str) -> int | None:
        # Anime and other non-TMDB identifiers arrive as non-numeric strings.
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value if value > 0 else None
        text = str(value).strip()
        if text.isdigit() and int(text) > 0:
            return int(text)
        return None
