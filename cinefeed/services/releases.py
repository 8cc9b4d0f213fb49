"""Client for the tertiary "latest releases" feed."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..config import Settings
from ..coordinator import RequestCoordinator
from .http import get_json

logger = logging.getLogger(__name__)

RELEASE_FEED_TTL = 60 * 60


class ReleaseFeedClient:
    """Reads newly added movies and exposes their TMDB identifiers."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        coordinator: RequestCoordinator,
    ) -> None:
        self._client = http_client
        self._coordinator = coordinator
        base_url = str(settings.release_feed_url) if settings.release_feed_url else ""
        self._base_url = base_url.rstrip("/") or None

    @property
    def enabled(self) -> bool:
        return self._base_url is not None

    async def latest_movie_ids(self, page: int = 1) -> list[int]:
        """Return TMDB ids of the newest movies on ``page``, in feed order."""

        if self._base_url is None:
            return []
        url = f"{self._base_url}/movie/{page}"
        key = self._coordinator.cache.build_key(url)
        payload = await self._coordinator.resolve(
            key,
            lambda: get_json(self._client, url, headers={"Accept": "application/json"}),
            ttl=RELEASE_FEED_TTL,
        )
        return self._extract_ids(payload)

    @staticmethod
    def _extract_ids(payload: Any) -> list[int]:
        if not isinstance(payload, dict):
            return []
        entries = payload.get("result") or []
        if not isinstance(entries, list):
            logger.warning("Unexpected release feed structure: %s", type(entries).__name__)
            return []

        identifiers: list[int] = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            raw = entry.get("tmdb_id")
            try:
                tmdb_id = int(raw)
            except (TypeError, ValueError):
                continue
            if tmdb_id > 0 and tmdb_id not in identifiers:
                identifiers.append(tmdb_id)
        return identifiers
