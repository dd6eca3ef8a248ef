"""Plex Media Server watch-history source."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

from watchsync.backend.common.errors import ConfigError, ProviderError
from watchsync.backend.common.logging import get_logger
from watchsync.backend.information_handlers.models import (
    PlexEpisode,
    PlexMovie,
    PlexShow,
    WatchSession,
)
from watchsync.backend.network_handlers.session import HttpSession
from watchsync.config import settings

_SERVICE_NAME = "plex"
_LIBRARY_IDENTIFIER = "com.plexapp.plugins.library"

# Plex metadata type ids
_TYPE_MOVIE = 1
_TYPE_EPISODE = 4

_EXTERNAL_GUID_PREFIXES = {
    "imdb://": "imdb_id",
    "tmdb://": "tmdb_id",
    "tvdb://": "tvdb_id",
}


class PlexManager:
    """
    Reads watched movies/episodes and live sessions from a Plex server and
    writes watched/progress markers back. Implements ``SourceCollector``.

    Requests go through :class:`HttpSession` under the ``plex`` service, so
    the ``X-Plex-Token`` header and retry policy come from provider settings.
    """

    def __init__(self, *, session: Optional[HttpSession] = None, container_size: Optional[int] = None) -> None:
        self._log = get_logger(__name__)
        cfg = settings.get_plex_config()
        self._session = session or HttpSession(timeout=settings.get_settings().request_timeout)
        self._container_size = int(container_size or cfg.get("container_size") or 1000)
        if not self._session.urlm.service_headers(_SERVICE_NAME).get("X-Plex-Token"):
            self._log.warning("plex_token_missing")

    # ------------------------------------------------------------------
    # SourceCollector
    # ------------------------------------------------------------------
    def get_watched_movies(self, user_id: Optional[int] = None) -> List[PlexMovie]:
        metadata = self._paged_metadata(self._endpoint("library_all"), {"type": _TYPE_MOVIE, "includeGuids": 1})

        movies = [self._parse_movie(item) for item in metadata if _view_count(item) > 0]
        self._log.info("plex_watched_movies", extra={"count": len(movies)})

        return movies

    def get_watched_episodes(self, user_id: Optional[int] = None) -> List[PlexEpisode]:
        sections = self._container(self._endpoint("sections")).get("Directory") or []
        episodes: List[PlexEpisode] = []

        for section in sections:
            if not isinstance(section, Mapping) or section.get("type") != "show":
                continue
            path = self._endpoint("section_all").format(key=section.get("key"))
            metadata = self._paged_metadata(path, {"type": _TYPE_EPISODE, "includeGuids": 1})
            episodes.extend(self._parse_episode(item) for item in metadata if _view_count(item) > 0)

        self._log.info("plex_watched_episodes", extra={"count": len(episodes)})

        return episodes

    def get_current_sessions(self) -> List[WatchSession]:
        metadata = self._metadata(self._endpoint("sessions"))

        return [self._parse_session(item) for item in metadata]

    def mark_as_watched(self, rating_key: str, user_id: Optional[int] = None) -> None:
        self._session.get(
            _SERVICE_NAME,
            self._endpoint("scrobble"),
            params={"key": rating_key, "identifier": _LIBRARY_IDENTIFIER},
        )
        self._log.info("plex_marked_watched", extra={"rating_key": rating_key})

    def update_progress(self, rating_key: str, progress: int, user_id: Optional[int] = None) -> None:
        """``progress`` is the view offset in milliseconds."""
        self._session.get(
            _SERVICE_NAME,
            self._endpoint("progress"),
            params={"key": rating_key, "time": int(progress), "identifier": _LIBRARY_IDENTIFIER},
        )

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------
    def _parse_movie(self, item: Mapping[str, Any]) -> PlexMovie:
        return PlexMovie(
            rating_key=str(item.get("ratingKey")),
            title=item.get("title") or "",
            year=item.get("year"),
            guid=item.get("guid"),
            duration=item.get("duration"),
            view_count=item.get("viewCount"),
            last_viewed_at=item.get("lastViewedAt"),
            added_at=item.get("addedAt"),
            updated_at=item.get("updatedAt"),
            genres=_tags(item.get("Genre")),
            summary=item.get("summary"),
            **_external_ids(item.get("Guid")),
        )

    def _parse_show(self, item: Mapping[str, Any]) -> Optional[PlexShow]:
        rating_key = item.get("grandparentRatingKey")
        if rating_key is None:
            return None

        return PlexShow(
            rating_key=str(rating_key),
            title=item.get("grandparentTitle") or "",
            year=item.get("grandparentYear"),
            guid=item.get("grandparentGuid"),
        )

    def _parse_episode(self, item: Mapping[str, Any]) -> PlexEpisode:
        return PlexEpisode(
            rating_key=str(item.get("ratingKey")),
            title=item.get("title") or "",
            season_number=item.get("parentIndex"),
            episode_number=item.get("index"),
            duration=item.get("duration"),
            view_count=item.get("viewCount"),
            last_viewed_at=item.get("lastViewedAt"),
            updated_at=item.get("updatedAt"),
            guid=item.get("guid"),
            show=self._parse_show(item),
            **_external_ids(item.get("Guid")),
        )

    def _parse_session(self, item: Mapping[str, Any]) -> WatchSession:
        view_offset = item.get("viewOffset")
        duration = item.get("duration")
        progress = round(view_offset / duration * 100) if view_offset and duration else 0
        user = item.get("User") if isinstance(item.get("User"), Mapping) else {}
        player = item.get("Player") if isinstance(item.get("Player"), Mapping) else {}
        is_movie = item.get("type") == "movie"

        return WatchSession(
            rating_key=str(item.get("ratingKey")),
            title=item.get("title") or "",
            media_type="movie" if is_movie else "episode",
            view_offset=view_offset,
            duration=duration,
            progress=min(100, progress),
            session_key=_str_or_none(item.get("sessionKey")),
            user_id=_int_or_none(user.get("id")),
            user_name=user.get("title"),
            state=_player_state(player.get("state")),
            season_number=item.get("parentIndex"),
            episode_number=item.get("index"),
            show=None if is_movie else self._parse_show(item),
            movie=self._parse_movie(item) if is_movie else None,
        )

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------
    def _endpoint(self, name: str) -> str:
        endpoints = settings.get_provider_endpoints(_SERVICE_NAME)
        path = endpoints.get(name)
        if not path:
            raise ConfigError(f"Missing Plex endpoint configuration: {name}")

        return path

    def _container(self, path: str, params: Optional[Dict[str, Any]] = None) -> Mapping[str, Any]:
        response = self._session.get(_SERVICE_NAME, path, params=params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(f"Plex returned invalid JSON for {path}") from exc
        container = payload.get("MediaContainer") if isinstance(payload, Mapping) else None

        return container if isinstance(container, Mapping) else {}

    def _metadata(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Mapping[str, Any]]:
        metadata = self._container(path, params).get("Metadata") or []

        return [item for item in metadata if isinstance(item, Mapping)]

    def _paged_metadata(self, path: str, params: Dict[str, Any]) -> List[Mapping[str, Any]]:
        """Walk a library listing page by page using ``X-Plex-Container-Start``."""

        items: List[Mapping[str, Any]] = []
        start = 0
        while True:
            page_params = dict(params)
            page_params["X-Plex-Container-Start"] = start
            page_params["X-Plex-Container-Size"] = self._container_size
            container = self._container(path, page_params)
            page = [item for item in container.get("Metadata") or [] if isinstance(item, Mapping)]
            items.extend(page)
            start += len(page)

            total = _int_or_none(container.get("totalSize"))
            if len(page) < self._container_size or (total is not None and start >= total):
                break

        return items


def _view_count(item: Mapping[str, Any]) -> int:
    return _int_or_none(item.get("viewCount")) or 0


def _tags(raw: Any) -> List[str]:
    if not isinstance(raw, list):
        return []
    return [str(entry["tag"]) for entry in raw if isinstance(entry, Mapping) and entry.get("tag")]


def _external_ids(raw: Any) -> Dict[str, str]:
    """Modern Plex agents list external ids under ``Guid`` when ``includeGuids=1``."""
    ids: Dict[str, str] = {}
    if not isinstance(raw, Iterable) or isinstance(raw, (str, bytes)):
        return ids
    for entry in raw:
        value = entry.get("id") if isinstance(entry, Mapping) else None
        if not isinstance(value, str):
            continue
        for prefix, field in _EXTERNAL_GUID_PREFIXES.items():
            if value.startswith(prefix):
                ids[field] = value[len(prefix):]

    return ids


def _player_state(raw: Any) -> str:
    return raw if raw in {"playing", "paused", "stopped"} else "playing"


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _str_or_none(value: Any) -> Optional[str]:
    return None if value is None else str(value)


__all__ = ["PlexManager"]
