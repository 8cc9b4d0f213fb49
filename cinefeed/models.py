"""Pydantic models describing catalog and activity payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

MediaType = Literal["movie", "tv", "anime"]

NO_OVERVIEW = "No overview available."

MOVIE_GENRES: dict[int, str] = {
    28: "Action", 12: "Adventure", 16: "Animation", 35: "Comedy", 80: "Crime",
    99: "Documentary", 18: "Drama", 10751: "Family", 14: "Fantasy", 36: "History",
    27: "Horror", 10402: "Music", 9648: "Mystery", 10749: "Romance",
    878: "Science Fiction", 10770: "TV Movie", 53: "Thriller", 10752: "War",
    37: "Western",
}

TV_GENRES: dict[int, str] = {
    10759: "Action & Adventure", 16: "Animation", 35: "Comedy", 80: "Crime",
    99: "Documentary", 18: "Drama", 10751: "Family", 10762: "Kids",
    9648: "Mystery", 10763: "News", 10764: "Reality", 10765: "Sci-Fi & Fantasy",
    10766: "Soap", 10767: "Talk", 10768: "War & Politics", 37: "Western",
}


class Genre(BaseModel):
    id: int
    name: str


class MediaItem(BaseModel):
    """A movie or TV show as shown in a catalog lane."""

    model_config = ConfigDict(populate_by_name=True)

    id: int | str
    media_type: MediaType = Field(serialization_alias="mediaType")
    title: str
    overview: str = NO_OVERVIEW
    poster_path: str | None = Field(default=None, serialization_alias="posterPath")
    backdrop_path: str | None = Field(default=None, serialization_alias="backdropPath")
    release_date: str | None = Field(default=None, serialization_alias="releaseDate")
    vote_average: float = Field(default=0.0, serialization_alias="voteAverage")
    vote_count: int = Field(default=0, serialization_alias="voteCount")
    genres: list[Genre] = Field(default_factory=list)
    popularity: float | None = None
    runtime: int | None = None
    tagline: str | None = None

    @classmethod
    def from_tmdb(cls, payload: dict[str, Any], media_type: Literal["movie", "tv"]) -> "MediaItem":
        """Build an item from a TMDB list or detail payload."""

        genre_names = MOVIE_GENRES if media_type == "movie" else TV_GENRES
        genre_ids = payload.get("genre_ids")
        if isinstance(genre_ids, list):
            genres = [
                Genre(id=genre_id, name=genre_names.get(genre_id, "Unknown"))
                for genre_id in genre_ids
                if isinstance(genre_id, int)
            ]
        else:
            genres = [
                Genre.model_validate(genre)
                for genre in payload.get("genres") or []
                if isinstance(genre, dict)
            ]

        if media_type == "movie":
            title = payload.get("title") or payload.get("original_title") or ""
            release_date = payload.get("release_date")
            runtime = payload.get("runtime")
        else:
            title = payload.get("name") or payload.get("original_name") or ""
            release_date = payload.get("first_air_date")
            run_times = payload.get("episode_run_time") or []
            runtime = run_times[0] if run_times else None

        return cls(
            id=payload["id"],
            media_type=media_type,
            title=str(title),
            overview=payload.get("overview") or NO_OVERVIEW,
            poster_path=payload.get("poster_path"),
            backdrop_path=payload.get("backdrop_path"),
            release_date=release_date or None,
            vote_average=payload.get("vote_average") or 0.0,
            vote_count=payload.get("vote_count") or 0,
            genres=genres,
            popularity=payload.get("popularity"),
            runtime=runtime,
            tagline=payload.get("tagline") or None,
        )


class HomeCatalog(BaseModel):
    """Every lane of the home screen; failed lanes are empty, never missing."""

    trending: list[MediaItem] = Field(default_factory=list)
    popular: list[MediaItem] = Field(default_factory=list)
    top_rated: list[MediaItem] = Field(default_factory=list)
    upcoming: list[MediaItem] = Field(default_factory=list)
    action: list[MediaItem] = Field(default_factory=list)
    comedy: list[MediaItem] = Field(default_factory=list)
    family: list[MediaItem] = Field(default_factory=list)
    scifi: list[MediaItem] = Field(default_factory=list)
    horror: list[MediaItem] = Field(default_factory=list)
    documentary: list[MediaItem] = Field(default_factory=list)
    adventure: list[MediaItem] = Field(default_factory=list)
    trending_tv: list[MediaItem] = Field(default_factory=list)
    popular_tv: list[MediaItem] = Field(default_factory=list)
    top_rated_tv: list[MediaItem] = Field(default_factory=list)
    drama_tv: list[MediaItem] = Field(default_factory=list)
    comedy_tv: list[MediaItem] = Field(default_factory=list)
    scifi_tv: list[MediaItem] = Field(default_factory=list)
    crime_tv: list[MediaItem] = Field(default_factory=list)
    mystery_tv: list[MediaItem] = Field(default_factory=list)
    documentary_tv: list[MediaItem] = Field(default_factory=list)
    latest_releases: list[MediaItem] = Field(default_factory=list)
    my_list: list[MediaItem] = Field(default_factory=list)
    continue_watching: list[MediaItem] = Field(default_factory=list)
    hero_movie: MediaItem | None = None
    hero_tv_show: MediaItem | None = None
    failed_lanes: list[str] = Field(default_factory=list)


class Contributor(BaseModel):
    """The person behind a watch event."""

    id: str
    profile_id: str | None = None
    name: str = "Someone"
    avatar: str | None = None


class ActivityItem(BaseModel):
    """Canonical display fields of the entity being watched."""

    id: str
    media_type: MediaType
    title: str
    poster_path: str | None = None
    backdrop_path: str | None = None


class WatchEvent(BaseModel):
    """A normalized watch-progress event."""

    item: ActivityItem
    contributor: Contributor
    progress: float = 0.0
    duration: float | None = None
    timestamp: datetime
    season: int | None = None
    episode: int | None = None

    @property
    def entity_id(self) -> str:
        return self.item.id


class Watcher(BaseModel):
    contributor: Contributor
    progress: float
    timestamp: datetime
    season: int | None = None
    episode: int | None = None
    is_live: bool = False


class ActivityRecord(BaseModel):
    """All recent watchers of one entity, headlined by the most recent one."""

    item: ActivityItem
    watchers: list[Watcher]
    watched_by: Contributor
    season: int | None = None
    episode: int | None = None
    progress: float = 0.0
    latest_timestamp: datetime
    is_live: bool = False

    @property
    def entity_id(self) -> str:
        return self.item.id

    @classmethod
    def start(cls, event: WatchEvent, watcher: Watcher) -> "ActivityRecord":
        return cls(
            item=event.item,
            watchers=[watcher],
            watched_by=event.contributor,
            season=event.season,
            episode=event.episode,
            progress=event.progress,
            latest_timestamp=event.timestamp,
            is_live=watcher.is_live,
        )

    def merge(self, event: WatchEvent, watcher: Watcher) -> None:
        """Add ``watcher`` and promote ``event`` when it is the newest one."""

        self.watchers.append(watcher)
        self.is_live = self.is_live or watcher.is_live
        if event.timestamp > self.latest_timestamp:
            self.latest_timestamp = event.timestamp
            self.watched_by = event.contributor
            self.season = event.season
            self.episode = event.episode
            self.progress = event.progress
