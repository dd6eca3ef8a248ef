from __future__ import annotations

import re
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from watchsync.backend.common.logging import get_logger
from watchsync.backend.information_handlers.models import (
    IdentitySet,
    PlexEpisode,
    PlexItem,
    PlexMovie,
    PlexShow,
    ValidationOutcome,
    WatchSession,
)
from watchsync.backend.information_handlers.trakt_models import (
    EpisodeScrobble,
    MovieScrobble,
    SyncEpisodeItem,
    SyncEpisodeRef,
    SyncMovieItem,
    SyncSeason,
    SyncShowItem,
    TraktEpisode,
    TraktIds,
    TraktMovie,
    TraktShow,
)

log = get_logger(__name__)

# Legacy agents use the long scheme names; the new Plex agent emits the short ones.
_GUID_PATTERNS = (
    ("imdb", re.compile(r"imdb://(?:title/)?(tt\d+)")),
    ("tmdb", re.compile(r"(?:themoviedb|tmdb)://(?:[a-z]+/)?(\d+)")),
    ("tvdb", re.compile(r"(?:thetvdb|tvdb)://(?:[a-z]+/)?(\d+)")),
)

MISSING_TITLE = "Missing title"
MISSING_IDS = "No external IDs found (IMDB, TMDB, or TVDB required)"
MISSING_YEAR = "Missing year"
MISSING_EPISODE_NUMBERS = "Missing season or episode number"
MISSING_SHOW = "Missing show"
MISSING_SHOW_IDS = "Show has no external IDs (IMDB, TMDB, or TVDB required)"


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _iso_from_epoch(seconds: Optional[int]) -> Optional[str]:
    if not seconds:
        return None
    stamp = datetime.fromtimestamp(int(seconds), tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _runtime_minutes(duration_ms: Optional[int]) -> Optional[int]:
    if not duration_ms:
        return None
    return round(duration_ms / 60000)


class PlexToTraktMapper:
    """
    Pure conversions between Plex library entities and Trakt request shapes.

    Identity resolution merges ids parsed out of the Plex ``guid`` with any
    explicit ``imdb_id``/``tmdb_id``/``tvdb_id`` fields; explicit fields win.
    No network access happens here.
    """

    def __init__(self, *, app_version: str = "1.0", clock=None) -> None:
        self.app_version = app_version
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # -------- identity --------

    @staticmethod
    def extract_ids_from_guid(guid: Optional[str]) -> IdentitySet:
        ids: IdentitySet = {}
        if not guid:
            return ids
        for namespace, pattern in _GUID_PATTERNS:
            match = pattern.search(guid)
            if not match:
                continue
            value = match.group(1)
            ids[namespace] = value if namespace == "imdb" else int(value)

        return ids

    def extract_identity(self, entity: PlexItem) -> IdentitySet:
        ids = self.extract_ids_from_guid(getattr(entity, "guid", None))

        imdb = getattr(entity, "imdb_id", None)
        if imdb:
            ids["imdb"] = str(imdb)
        tmdb = _to_int(getattr(entity, "tmdb_id", None))
        if tmdb is not None:
            ids["tmdb"] = tmdb
        tvdb = _to_int(getattr(entity, "tvdb_id", None))
        if tvdb is not None:
            ids["tvdb"] = tvdb

        return ids

    @staticmethod
    def clean_ids(ids: Mapping[str, Any]) -> IdentitySet:
        """Drop ids the remote would reject: non-``tt`` imdb, non-positive tmdb/tvdb."""
        cleaned: IdentitySet = {}
        imdb = ids.get("imdb")
        if isinstance(imdb, str) and imdb.startswith("tt"):
            cleaned["imdb"] = imdb
        for key in ("tmdb", "tvdb"):
            value = _to_int(ids.get(key))
            if value is not None and value > 0:
                cleaned[key] = value

        return cleaned

    # -------- validation --------

    def validate(self, entity: PlexItem) -> ValidationOutcome:
        errors: List[str] = []
        if not entity.title:
            errors.append(MISSING_TITLE)
        if not self.extract_identity(entity):
            errors.append(MISSING_IDS)
        if isinstance(entity, (PlexMovie, PlexShow)) and not entity.year:
            errors.append(MISSING_YEAR)
        if isinstance(entity, PlexEpisode) and (entity.season_number is None or entity.episode_number is None):
            errors.append(MISSING_EPISODE_NUMBERS)
        if isinstance(entity, PlexEpisode):
            # Episode history is posted under its show.
            if entity.show is None:
                errors.append(MISSING_SHOW)
            elif not self.extract_identity(entity.show):
                errors.append(MISSING_SHOW_IDS)

        return ValidationOutcome(valid=not errors, errors=errors)

    # -------- single entity conversions --------

    def to_trakt_movie(self, movie: PlexMovie) -> TraktMovie:
        return TraktMovie(
            title=movie.title,
            year=movie.year,
            ids=TraktIds(**self.extract_identity(movie)),
            overview=movie.summary,
            runtime=_runtime_minutes(movie.duration),
            genres=list(movie.genres) or None,
        )

    def to_trakt_show(self, show: PlexShow) -> TraktShow:
        return TraktShow(
            title=show.title,
            year=show.year,
            ids=TraktIds(**self.extract_identity(show)),
            overview=show.summary,
            network=show.network,
            certification=show.content_rating,
            genres=list(show.genres) or None,
        )

    def to_trakt_episode(self, episode: PlexEpisode) -> TraktEpisode:
        return TraktEpisode(
            season=episode.season_number,
            number=episode.episode_number,
            title=episode.title,
            ids=TraktIds(**self.extract_identity(episode)),
            runtime=_runtime_minutes(episode.duration),
        )

    # -------- bulk history payloads --------

    def to_sync_movies(self, movies: Iterable[PlexMovie]) -> List[SyncMovieItem]:
        return [
            SyncMovieItem(
                ids=self.extract_identity(movie),
                title=movie.title,
                year=movie.year,
                watched_at=_iso_from_epoch(movie.last_viewed_at),
            )
            for movie in movies
        ]

    def to_sync_shows(self, episodes: Iterable[PlexEpisode]) -> List[SyncShowItem]:
        """Group episodes by show, then by season, keeping first-seen order."""
        shows: "OrderedDict[str, SyncShowItem]" = OrderedDict()
        seasons: Dict[str, "OrderedDict[int, SyncSeason]"] = {}

        for episode in episodes:
            show = episode.show
            if show is None:
                log.debug("mapper_episode_without_show", extra={"rating_key": episode.rating_key})
                continue

            item = shows.get(show.rating_key)
            if item is None:
                item = SyncShowItem(ids=self.extract_identity(show), title=show.title, year=show.year)
                shows[show.rating_key] = item
                seasons[show.rating_key] = OrderedDict()

            season_number = episode.season_number or 0
            season = seasons[show.rating_key].get(season_number)
            if season is None:
                season = SyncSeason(number=season_number)
                seasons[show.rating_key][season_number] = season
                item.seasons.append(season)

            season.episodes.append(
                SyncEpisodeRef(
                    number=episode.episode_number or 0,
                    watched_at=_iso_from_epoch(episode.last_viewed_at),
                )
            )

        return list(shows.values())

    def to_sync_episodes(self, episodes: Iterable[PlexEpisode]) -> List[SyncEpisodeItem]:
        return [
            SyncEpisodeItem(
                ids=self.extract_identity(episode),
                title=episode.title,
                season=episode.season_number,
                number=episode.episode_number,
                watched_at=_iso_from_epoch(episode.last_viewed_at),
            )
            for episode in episodes
        ]

    # -------- scrobble --------

    def to_scrobble_payload(self, session: WatchSession) -> Union[MovieScrobble, EpisodeScrobble]:
        common = {
            "progress": session.computed_progress(),
            "app_version": self.app_version,
            "app_date": self._clock().strftime("%Y-%m-%d"),
        }

        if session.media_type == "movie":
            movie = session.movie or PlexMovie(rating_key=session.rating_key, title=session.title)
            return MovieScrobble(movie=self.to_trakt_movie(movie), **common)

        show = session.show or PlexShow(rating_key=session.rating_key, title=session.title)
        episode = TraktEpisode(
            season=session.season_number or 1,
            number=session.episode_number or 1,
            title=session.title,
        )
        return EpisodeScrobble(show=self.to_trakt_show(show), episode=episode, **common)


__all__ = [
    "MISSING_EPISODE_NUMBERS",
    "MISSING_IDS",
    "MISSING_SHOW",
    "MISSING_SHOW_IDS",
    "MISSING_TITLE",
    "MISSING_YEAR",
    "PlexToTraktMapper",
]
