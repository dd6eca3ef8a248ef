"""Normalized watch-history models shared by the sync engine and providers.

Plex payloads are adapted into the ``Plex*`` models by
:class:`~watchsync.backend.information_handlers.plex_manager.PlexManager`, and
converted to Trakt request shapes by
:class:`~watchsync.backend.information_handlers.mapper.PlexToTraktMapper`.
The engine only ever sees these types, so the rest of the application stays
agnostic of either provider's wire format.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field


IdentityValue = Union[str, int]
IdentitySet = Dict[str, IdentityValue]


class SyncDirection(str, Enum):
    PLEX_TO_TRAKT = "plex-to-trakt"
    TRAKT_TO_PLEX = "trakt-to-plex"
    BIDIRECTIONAL = "bidirectional"


class SuccessPolicy(str, Enum):
    """How a finished run decides ``SyncResult.success``."""

    LENIENT = "lenient"  # no errors, or at least one item processed
    STRICT = "strict"  # no errors at all


class PlexShow(BaseModel):
    """Show grouping key; never synced on its own."""

    rating_key: str
    title: str
    year: Optional[int] = None
    guid: Optional[str] = None
    imdb_id: Optional[str] = None
    tmdb_id: Optional[IdentityValue] = None
    tvdb_id: Optional[IdentityValue] = None
    summary: Optional[str] = None
    genres: Sequence[str] = Field(default_factory=list)
    network: Optional[str] = None
    content_rating: Optional[str] = None


class PlexMovie(BaseModel):
    rating_key: str
    title: str
    year: Optional[int] = None
    guid: Optional[str] = None
    imdb_id: Optional[str] = None
    tmdb_id: Optional[IdentityValue] = None
    duration: Optional[int] = Field(default=None, ge=0, description="Milliseconds")
    view_count: Optional[int] = Field(default=None, ge=0)
    last_viewed_at: Optional[int] = Field(default=None, description="Epoch seconds")
    added_at: Optional[int] = None
    updated_at: Optional[int] = None
    genres: Sequence[str] = Field(default_factory=list)
    summary: Optional[str] = None


class PlexEpisode(BaseModel):
    rating_key: str
    title: str
    season_number: Optional[int] = Field(default=None, ge=0)
    episode_number: Optional[int] = Field(default=None, ge=0)
    duration: Optional[int] = Field(default=None, ge=0)
    view_count: Optional[int] = Field(default=None, ge=0)
    last_viewed_at: Optional[int] = None
    updated_at: Optional[int] = None
    guid: Optional[str] = None
    imdb_id: Optional[str] = None
    tmdb_id: Optional[IdentityValue] = None
    tvdb_id: Optional[IdentityValue] = None
    show: Optional[PlexShow] = None


PlexItem = Union[PlexMovie, PlexShow, PlexEpisode]


class WatchSession(BaseModel):
    """One live playback instance as reported by the source."""

    rating_key: str
    title: str
    media_type: Literal["movie", "episode"]
    view_offset: Optional[int] = Field(default=None, ge=0)
    duration: Optional[int] = Field(default=None, ge=0)
    progress: Optional[float] = Field(default=None, ge=0, le=100)
    session_key: Optional[str] = None
    user_id: Optional[int] = None
    user_name: Optional[str] = None
    state: Literal["playing", "paused", "stopped"] = "playing"
    season_number: Optional[int] = None
    episode_number: Optional[int] = None
    show: Optional[PlexShow] = None
    movie: Optional[PlexMovie] = None

    def computed_progress(self) -> float:
        if self.progress is not None:
            return float(self.progress)
        if self.view_offset and self.duration:
            return round(min(100.0, self.view_offset / self.duration * 100.0), 2)
        return 0.0


class ValidationOutcome(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


class SyncConflict(BaseModel):
    type: Literal["watch_date", "play_count", "progress"]
    source_data: Any = None
    remote_data: Any = None
    media_id: str
    media_title: str


class SyncOptions(BaseModel):
    direction: SyncDirection = SyncDirection.PLEX_TO_TRAKT
    dry_run: bool = False
    auto_resolve_conflicts: bool = True
    include_progress: bool = False
    sync_ratings: bool = False
    batch_size: int = Field(default=50, gt=0)


class SyncResult(BaseModel):
    """Aggregate outcome of one sync invocation; frozen once built."""

    model_config = ConfigDict(frozen=True)

    success: bool
    items_processed: int = Field(default=0, ge=0)
    items_added: int = Field(default=0, ge=0)
    items_updated: int = Field(default=0, ge=0)
    items_failed: int = Field(default=0, ge=0)
    conflicts: Sequence[SyncConflict] = Field(default_factory=tuple)
    errors: Sequence[str] = Field(default_factory=tuple)
    start_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sync_id: Optional[str] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duration_ms(self) -> int:
        return max(0, int((self.end_time - self.start_time).total_seconds() * 1000))

    def summary(self) -> Mapping[str, Any]:
        return {
            "items_processed": self.items_processed,
            "items_added": self.items_added,
            "items_updated": self.items_updated,
            "items_failed": self.items_failed,
            "duration": f"{round(self.duration_ms / 1000)}s",
        }


__all__ = [
    "IdentitySet",
    "IdentityValue",
    "PlexEpisode",
    "PlexItem",
    "PlexMovie",
    "PlexShow",
    "SuccessPolicy",
    "SyncConflict",
    "SyncDirection",
    "SyncOptions",
    "SyncResult",
    "ValidationOutcome",
    "WatchSession",
]
