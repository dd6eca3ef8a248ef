"""Trakt API v2 request and response shapes."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field


class _TraktModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TraktIds(_TraktModel):
    trakt: Optional[int] = None
    slug: Optional[str] = None
    imdb: Optional[str] = None
    tmdb: Optional[int] = None
    tvdb: Optional[int] = None

    def as_identity(self) -> Dict[str, Union[str, int]]:
        """External ids only; ``trakt``/``slug`` are resolved by the remote."""
        return {k: v for k, v in self.model_dump(include={"imdb", "tmdb", "tvdb"}).items() if v}


class TraktMovie(_TraktModel):
    title: Optional[str] = None
    year: Optional[int] = None
    ids: TraktIds = Field(default_factory=TraktIds)
    overview: Optional[str] = None
    runtime: Optional[int] = None
    genres: Optional[Sequence[str]] = None
    rating: Optional[float] = None
    certification: Optional[str] = None


class TraktShow(_TraktModel):
    title: Optional[str] = None
    year: Optional[int] = None
    ids: TraktIds = Field(default_factory=TraktIds)
    overview: Optional[str] = None
    network: Optional[str] = None
    certification: Optional[str] = None
    genres: Optional[Sequence[str]] = None
    aired_episodes: Optional[int] = None


class TraktEpisode(_TraktModel):
    season: Optional[int] = None
    number: Optional[int] = None
    title: Optional[str] = None
    ids: TraktIds = Field(default_factory=TraktIds)
    runtime: Optional[int] = None


class TraktUser(_TraktModel):
    username: str
    name: Optional[str] = None
    vip: Optional[bool] = None
    private: Optional[bool] = None
    joined_at: Optional[datetime] = None
    location: Optional[str] = None
    about: Optional[str] = None
    ids: Optional[Mapping[str, Any]] = None


class TraktWatchedMovie(_TraktModel):
    plays: int = 0
    last_watched_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    movie: TraktMovie


class TraktWatchedEpisode(_TraktModel):
    number: int
    plays: int = 0
    last_watched_at: Optional[datetime] = None


class TraktWatchedSeason(_TraktModel):
    number: int
    episodes: List[TraktWatchedEpisode] = Field(default_factory=list)


class TraktWatchedShow(_TraktModel):
    plays: int = 0
    last_watched_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    show: TraktShow
    seasons: List[TraktWatchedSeason] = Field(default_factory=list)

    @property
    def episode_count(self) -> int:
        return sum(len(season.episodes) for season in self.seasons)


class TraktPlaybackProgress(_TraktModel):
    id: int
    progress: float
    paused_at: Optional[datetime] = None
    type: Optional[str] = None
    movie: Optional[TraktMovie] = None
    show: Optional[TraktShow] = None
    episode: Optional[TraktEpisode] = None


# ---------------------------------------------------------------------------
# Bulk history sync
# ---------------------------------------------------------------------------

class SyncMovieItem(_TraktModel):
    ids: Dict[str, Union[str, int]]
    title: Optional[str] = None
    year: Optional[int] = None
    watched_at: Optional[str] = None


class SyncEpisodeRef(_TraktModel):
    number: int
    watched_at: Optional[str] = None


class SyncSeason(_TraktModel):
    number: int
    episodes: List[SyncEpisodeRef] = Field(default_factory=list)


class SyncShowItem(_TraktModel):
    ids: Dict[str, Union[str, int]]
    title: Optional[str] = None
    year: Optional[int] = None
    watched_at: Optional[str] = None
    seasons: List[SyncSeason] = Field(default_factory=list)


class SyncEpisodeItem(_TraktModel):
    ids: Dict[str, Union[str, int]]
    title: Optional[str] = None
    season: Optional[int] = None
    number: Optional[int] = None
    watched_at: Optional[str] = None


class TraktSyncRequest(_TraktModel):
    movies: Optional[List[SyncMovieItem]] = None
    shows: Optional[List[SyncShowItem]] = None
    episodes: Optional[List[SyncEpisodeItem]] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class TraktSyncCounts(_TraktModel):
    movies: int = 0
    shows: int = 0
    seasons: int = 0
    episodes: int = 0


class TraktNotFound(_TraktModel):
    movies: List[Mapping[str, Any]] = Field(default_factory=list)
    shows: List[Mapping[str, Any]] = Field(default_factory=list)
    seasons: List[Mapping[str, Any]] = Field(default_factory=list)
    episodes: List[Mapping[str, Any]] = Field(default_factory=list)


class TraktSyncResult(_TraktModel):
    added: TraktSyncCounts = Field(default_factory=TraktSyncCounts)
    existing: TraktSyncCounts = Field(default_factory=TraktSyncCounts)
    deleted: TraktSyncCounts = Field(default_factory=TraktSyncCounts)
    not_found: TraktNotFound = Field(default_factory=TraktNotFound)


# ---------------------------------------------------------------------------
# Scrobble
# ---------------------------------------------------------------------------

class _ScrobbleBase(_TraktModel):
    progress: float = Field(ge=0, le=100)
    app_version: str
    app_date: str

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"kind"}, exclude_none=True)


class MovieScrobble(_ScrobbleBase):
    kind: Literal["movie"] = "movie"
    movie: TraktMovie


class EpisodeScrobble(_ScrobbleBase):
    kind: Literal["episode"] = "episode"
    show: TraktShow
    episode: TraktEpisode


ScrobblePayload = Annotated[Union[MovieScrobble, EpisodeScrobble], Field(discriminator="kind")]


class TraktScrobbleResponse(_TraktModel):
    id: Optional[int] = None
    action: Optional[Literal["start", "pause", "scrobble", "stop"]] = None
    progress: Optional[float] = None
    sharing: Optional[Mapping[str, Any]] = None
    movie: Optional[TraktMovie] = None
    show: Optional[TraktShow] = None
    episode: Optional[TraktEpisode] = None


# ---------------------------------------------------------------------------
# Search and stats
# ---------------------------------------------------------------------------

class TraktSearchResult(_TraktModel):
    type: str
    score: Optional[float] = None
    movie: Optional[TraktMovie] = None
    show: Optional[TraktShow] = None

    @property
    def media(self) -> Optional[Union[TraktMovie, TraktShow]]:
        return self.movie if self.type == "movie" else self.show


class _WatchStats(_TraktModel):
    plays: int = 0
    watched: int = 0
    minutes: int = 0
    collected: int = 0
    ratings: int = 0
    comments: int = 0


class _ShowStats(_TraktModel):
    watched: int = 0
    collected: int = 0
    ratings: int = 0
    comments: int = 0


class TraktUserStats(_TraktModel):
    movies: _WatchStats = Field(default_factory=_WatchStats)
    shows: _ShowStats = Field(default_factory=_ShowStats)
    episodes: _WatchStats = Field(default_factory=_WatchStats)
    network: Optional[Mapping[str, int]] = None
    ratings: Optional[Mapping[str, Any]] = None


class Milestone(BaseModel):
    type: str
    achieved: bool
    progress: int
    target: int


class TraktStatsSummary(BaseModel):
    username: str
    total_hours: int
    stats: TraktUserStats
    milestones: Sequence[Milestone] = Field(default_factory=list)
    generated_at: datetime


__all__ = [
    "EpisodeScrobble",
    "Milestone",
    "MovieScrobble",
    "ScrobblePayload",
    "SyncEpisodeItem",
    "SyncEpisodeRef",
    "SyncMovieItem",
    "SyncSeason",
    "SyncShowItem",
    "TraktEpisode",
    "TraktIds",
    "TraktMovie",
    "TraktNotFound",
    "TraktPlaybackProgress",
    "TraktScrobbleResponse",
    "TraktSearchResult",
    "TraktShow",
    "TraktStatsSummary",
    "TraktSyncCounts",
    "TraktSyncRequest",
    "TraktSyncResult",
    "TraktUser",
    "TraktUserStats",
    "TraktWatchedEpisode",
    "TraktWatchedMovie",
    "TraktWatchedSeason",
    "TraktWatchedShow",
]
