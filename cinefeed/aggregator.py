"""Fan-out of independent source fetches merged into display collections.

Every branch is awaited to completion and a failed branch contributes its
declared default, so the merged result is always fully defined. Branches
settle in no particular order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable, Generic, Protocol, Sequence, TypeVar

from .config import Settings
from .errors import TransientFetchError
from .lanes import HOME_LANES, LaneDefinition
from .models import HomeCatalog, MediaItem
from .retry import RetryPolicy, with_retry
from .services.releases import ReleaseFeedClient
from .services.tmdb import TMDBClient

logger = logging.getLogger(__name__)

T = TypeVar("T")
A = TypeVar("A")
B = TypeVar("B")

INTERLEAVE_LIMIT = 20


@dataclass(slots=True)
class Branch(Generic[T]):
    """One independent fetch and the value it contributes when it fails."""

    name: str
    fetch: Callable[[], Awaitable[T]]
    default: T


@dataclass(slots=True)
class BranchOutcome(Generic[T]):
    name: str
    value: T
    error: Exception | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


async def _run_branch(branch: Branch[T]) -> T:
    return await branch.fetch()


async def settle_all(branches: Sequence[Branch[T]]) -> list[BranchOutcome[T]]:
    """Run ``branches`` concurrently and wait for all of them to settle.

    Outcomes keep the order of ``branches``. A cancelled branch is a
    withdrawal rather than a failure and is not logged as one.
    """

    results = await asyncio.gather(
        *(_run_branch(branch) for branch in branches), return_exceptions=True
    )
    outcomes: list[BranchOutcome[T]] = []
    for branch, result in zip(branches, results):
        if isinstance(result, asyncio.CancelledError):
            logger.debug("Branch %s was cancelled", branch.name)
            outcomes.append(BranchOutcome(branch.name, branch.default, cancelled=True))
        elif isinstance(result, Exception):
            logger.warning("Branch %s failed, using its default: %s", branch.name, result)
            outcomes.append(BranchOutcome(branch.name, branch.default, error=result))
        elif isinstance(result, BaseException):
            raise result
        else:
            outcomes.append(BranchOutcome(branch.name, result))
    return outcomes


def interleave(
    first: Sequence[A], second: Sequence[B], limit: int = INTERLEAVE_LIMIT
) -> list[A | B]:
    """Round-robin merge: ``first[0], second[0], first[1], second[1]...``.

    Lists of unequal length are tolerated; at most ``limit`` items are kept.
    """

    merged: list[A | B] = []
    for index in range(max(len(first), len(second))):
        if index < len(first):
            merged.append(first[index])
        if index < len(second):
            merged.append(second[index])
        if len(merged) >= limit:
            break
    return merged[:limit]


class LibraryProvider(Protocol):
    """Profile-scoped lists owned by the persistence layer."""

    async def get_my_list(self, profile_id: str) -> list[MediaItem]: ...

    async def get_continue_watching(self, profile_id: str) -> list[MediaItem]: ...


class SourceAggregator:
    """Build the home catalog from many partially failing sources."""

    def __init__(
        self,
        settings: Settings,
        tmdb: TMDBClient,
        releases: ReleaseFeedClient | None = None,
        library: LibraryProvider | None = None,
        *,
        lanes: Sequence[LaneDefinition] = HOME_LANES,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._settings = settings
        self._tmdb = tmdb
        self._releases = releases
        self._library = library
        self._lanes = tuple(lanes)
        self._policy = policy or RetryPolicy.from_settings(settings)

    async def load_home(self, profile_id: str | None = None) -> HomeCatalog:
        branches: list[Branch[list[MediaItem]]] = [
            Branch(lane.key, partial(self.load_lane, lane), []) for lane in self._lanes
        ]
        branches.append(Branch("latest_releases", self.latest_releases, []))
        if profile_id and self._library is not None:
            library = self._library
            branches.append(
                Branch(
                    "my_list",
                    lambda: self._retry(lambda: library.get_my_list(profile_id)),
                    [],
                )
            )
            branches.append(
                Branch(
                    "continue_watching",
                    lambda: self._retry(lambda: library.get_continue_watching(profile_id)),
                    [],
                )
            )

        outcomes = await settle_all(branches)
        lanes = {outcome.name: outcome.value for outcome in outcomes}
        failed = [outcome.name for outcome in outcomes if outcome.error is not None]
        if failed:
            logger.info("Home catalog built with %d empty lanes: %s", len(failed), ", ".join(failed))

        catalog = HomeCatalog.model_validate({**lanes, "failed_lanes": failed})
        catalog.hero_movie = catalog.trending[0] if catalog.trending else None
        catalog.hero_tv_show = catalog.trending_tv[0] if catalog.trending_tv else None
        return catalog

    async def load_lane(self, lane: LaneDefinition) -> list[MediaItem]:
        """Fetch the items for a single lane; errors propagate to the caller."""

        if lane.kind == "mixed":
            return await self._load_mixed_lane(lane)
        if lane.source is not None:
            return await self._list_fetcher(lane)()
        genre = lane.tv_genre if lane.kind == "tv" else lane.movie_genre
        if genre is None:
            raise ValueError(f"Lane {lane.key} has neither a source nor a genre")
        return await self._tmdb.get_trending_by_genre(genre, lane.kind)

    async def latest_releases(self) -> list[MediaItem]:
        """Resolve feed identifiers to TMDB records, dropping any that fail."""

        if self._releases is None or not self._releases.enabled:
            return []
        identifiers = await self._releases.latest_movie_ids()
        identifiers = identifiers[: self._settings.enrichment_limit]
        outcomes = await settle_all(
            [
                Branch(f"release:{tmdb_id}", partial(self._tmdb.get_movie_details, tmdb_id), None)
                for tmdb_id in identifiers
            ]
        )
        return [outcome.value for outcome in outcomes if outcome.value is not None]

    async def _retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await with_retry(operation, self._policy, retry_on=(TransientFetchError,))

    async def _load_mixed_lane(self, lane: LaneDefinition) -> list[MediaItem]:
        if lane.movie_genre is None or lane.tv_genre is None:
            raise ValueError(f"Mixed lane {lane.key} needs both a movie and a TV genre")
        movies, shows = await settle_all(
            [
                Branch(
                    f"{lane.key}:movie",
                    partial(self._tmdb.get_trending_by_genre, lane.movie_genre, "movie"),
                    [],
                ),
                Branch(
                    f"{lane.key}:tv",
                    partial(self._tmdb.get_trending_by_genre, lane.tv_genre, "tv"),
                    [],
                ),
            ]
        )
        return interleave(movies.value, shows.value, self._settings.interleave_limit)

    def _list_fetcher(self, lane: LaneDefinition) -> Callable[[], Awaitable[list[MediaItem]]]:
        if lane.kind == "movie":
            fetchers = {
                "trending": self._tmdb.get_trending,
                "popular": self._tmdb.get_popular,
                "top_rated": self._tmdb.get_top_rated,
                "upcoming": self._tmdb.get_upcoming,
            }
        else:
            fetchers = {
                "trending": self._tmdb.get_trending_tv,
                "popular": self._tmdb.get_popular_tv,
                "top_rated": self._tmdb.get_top_rated_tv,
            }
        try:
            return fetchers[lane.source or ""]
        except KeyError:
            raise ValueError(f"Unknown {lane.kind} list source: {lane.source}") from None
