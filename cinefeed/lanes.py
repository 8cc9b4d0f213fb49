"""Home screen lane definitions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

LaneKind = Literal["movie", "tv", "mixed"]


@dataclass(frozen=True)
class LaneDefinition:
    """Describes one row of the home catalog and where its items come from.

    ``source`` names a fixed TMDB list (``trending``, ``popular``...) for
    single-source lanes. Genre lanes use ``movie_genre`` and/or
    ``tv_genre``; mixed lanes interleave both.
    """

    key: str
    title: str
    kind: LaneKind
    source: str | None = None
    movie_genre: int | None = None
    tv_genre: int | None = None


HOME_LANES: tuple[LaneDefinition, ...] = (
    LaneDefinition(key="trending", title="Trending Now", kind="movie", source="trending"),
    LaneDefinition(key="popular", title="Popular on CineFeed", kind="movie", source="popular"),
    LaneDefinition(key="top_rated", title="Top Rated", kind="movie", source="top_rated"),
    LaneDefinition(key="upcoming", title="Coming Soon", kind="movie", source="upcoming"),
    LaneDefinition(key="action", title="Action", kind="mixed", movie_genre=28, tv_genre=10759),
    LaneDefinition(key="comedy", title="Comedy", kind="mixed", movie_genre=35, tv_genre=35),
    LaneDefinition(key="family", title="Family", kind="mixed", movie_genre=10751, tv_genre=10751),
    LaneDefinition(key="scifi", title="Sci-Fi", kind="mixed", movie_genre=878, tv_genre=10765),
    LaneDefinition(key="horror", title="Horror", kind="mixed", movie_genre=27, tv_genre=10765),
    LaneDefinition(key="documentary", title="Documentaries", kind="mixed", movie_genre=99, tv_genre=99),
    LaneDefinition(key="adventure", title="Adventure", kind="mixed", movie_genre=12, tv_genre=10759),
    LaneDefinition(key="trending_tv", title="Trending TV", kind="tv", source="trending"),
    LaneDefinition(key="popular_tv", title="Popular TV", kind="tv", source="popular"),
    LaneDefinition(key="top_rated_tv", title="Top Rated TV", kind="tv", source="top_rated"),
    LaneDefinition(key="drama_tv", title="TV Dramas", kind="tv", tv_genre=18),
    LaneDefinition(key="comedy_tv", title="TV Comedies", kind="tv", tv_genre=35),
    LaneDefinition(key="scifi_tv", title="Sci-Fi & Fantasy TV", kind="tv", tv_genre=10765),
    LaneDefinition(key="crime_tv", title="Crime TV", kind="tv", tv_genre=80),
    LaneDefinition(key="mystery_tv", title="Mystery TV", kind="tv", tv_genre=9648),
    LaneDefinition(key="documentary_tv", title="Docuseries", kind="tv", tv_genre=99),
)

HOME_LANE_KEYS: tuple[str, ...] = tuple(lane.key for lane in HOME_LANES)
