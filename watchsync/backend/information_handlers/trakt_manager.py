"""Trakt.tv integration helpers."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, ValidationError

from watchsync.backend.common.errors import ConfigError, ProviderError
from watchsync.backend.common.logging import get_logger
from watchsync.backend.information_handlers.trakt_models import (
    EpisodeScrobble,
    Milestone,
    MovieScrobble,
    SyncEpisodeItem,
    SyncMovieItem,
    SyncShowItem,
    TraktMovie,
    TraktPlaybackProgress,
    TraktScrobbleResponse,
    TraktSearchResult,
    TraktShow,
    TraktStatsSummary,
    TraktSyncRequest,
    TraktSyncResult,
    TraktUser,
    TraktUserStats,
    TraktWatchedMovie,
    TraktWatchedShow,
)
from watchsync.backend.network_handlers.session import (
    HttpSession,
    NetError,
    Unauthorized,
)
from watchsync.config import settings

_SERVICE_NAME = "trakt"
_TOKEN_FILENAME = "trakt_tokens.json"
_DEFAULT_AUTHORIZE_URL = "https://trakt.tv/oauth/authorize"

MILESTONE_THRESHOLDS = {
    "movies": 100,
    "episodes": 1000,
    "hours": 100,
}

ScrobbleItem = Union[MovieScrobble, EpisodeScrobble]


class TraktReauthRequired(ProviderError):
    """Raised when Trakt OAuth requires user re-authentication."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Trakt requires re-authentication ({reason})")
        self.reason = reason

    @property
    def payload(self) -> Dict[str, Any]:
        return {"reauth_required": True, "reason": self.reason}


class TraktScrobbleConflict(ProviderError):
    """Trakt answered 409: the item was scrobbled moments ago."""

    def __init__(self, *, watched_at: Optional[str] = None, expires_at: Optional[str] = None) -> None:
        super().__init__("Trakt scrobble conflict; item was already scrobbled")
        self.watched_at = watched_at
        self.expires_at = expires_at


class OAuthToken(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    created_at: Optional[int] = None

    def ensure_created_at(self) -> int:
        created = self.created_at or int(time.time())
        if self.created_at is None:
            self.created_at = created
        return created


class StoredToken(BaseModel):
    """Credential pair persisted on disk and cached in-memory."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    created_at: Optional[int] = None
    expires_in: Optional[int] = None
    expires_at: Optional[int] = None
    token_type: str = "bearer"
    last_refresh_ymd: Optional[str] = None

    @classmethod
    def from_oauth(cls, token: OAuthToken, *, last_refresh_ymd: Optional[str] = None) -> "StoredToken":
        created_at = token.ensure_created_at()
        expires_at = created_at + int(token.expires_in) if token.expires_in else None
        return cls(
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            scope=token.scope,
            created_at=created_at,
            expires_in=token.expires_in,
            expires_at=expires_at,
            token_type=token.token_type,
            last_refresh_ymd=last_refresh_ymd or date.today().isoformat(),
        )

    def is_expired(self, now_ts: float) -> bool:
        if self.expires_at is None:
            return False
        return now_ts >= float(self.expires_at)


@dataclass
class RateLimitInfo:
    limit: Optional[int]
    remaining: Optional[int]
    reset_at: Optional[datetime]


class TraktManager:
    """
    Authenticated Trakt client.

    All traffic goes through :class:`HttpSession`, which owns pacing and the
    401/429 replay rules. This class owns the credential pair: it is handed to
    the session as a token refresher, and a 401 that survives the single
    refresh attempt surfaces as :class:`TraktReauthRequired`.
    """

    def __init__(
        self,
        *,
        session: Optional[HttpSession] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        token_path: Optional[Path] = None,
        persist_tokens: bool = True,
    ) -> None:
        self._log = get_logger(__name__)
        self._session = session or HttpSession(timeout=settings.get_settings().request_timeout)

        keys = settings.get_trakt_keys()
        self._client_id = client_id or keys.get("client_id")
        self._client_secret = client_secret or keys.get("client_secret")
        self._redirect_uri = redirect_uri or keys.get("redirect_uri")
        self._authorize_url = keys.get("authorize_url") or _DEFAULT_AUTHORIZE_URL
        if not self._client_id:
            raise ConfigError("TRAKT_CLIENT_ID must be configured")

        self._token_lock = threading.Lock()
        self._token: Optional[StoredToken] = None
        self._reauth_reason: Optional[str] = None
        self._rate_limit: Optional[RateLimitInfo] = None

        self._token_file: Optional[Path] = None
        if persist_tokens:
            tokens_dir = Path(token_path or settings.get_tokens_dir())
            tokens_dir.mkdir(parents=True, exist_ok=True)
            self._token_file = tokens_dir / _TOKEN_FILENAME

        # Explicit arguments beat the on-disk cache, which beats the environment.
        initial_access = access_token
        initial_refresh = refresh_token
        if not initial_access:
            self._load_tokens()
        if self._token is None:
            initial_access = initial_access or keys.get("access_token")
            initial_refresh = initial_refresh or keys.get("refresh_token")
            if initial_access:
                self._token = StoredToken(access_token=initial_access, refresh_token=initial_refresh)

        self._session.register_token_refresher(_SERVICE_NAME, self._token_refresh_callback)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    def generate_auth_url(self, state: Optional[str] = None) -> str:
        params = {
            "response_type": "code",
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
        }
        if state:
            params["state"] = state

        return f"{self._authorize_url}?{urlencode(params)}"

    def exchange_code_for_token(self, code: str) -> OAuthToken:
        self._require_secret()
        payload = {
            "code": code,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "redirect_uri": self._redirect_uri,
            "grant_type": "authorization_code",
        }
        response = self._session.post(_SERVICE_NAME, self._endpoint("oauth", "token"), json_body=payload)
        token = OAuthToken.model_validate(self._parse_json(response))
        self._store_token(token)
        self._log.info("trakt_token_granted", extra={"scope": token.scope})

        return token

    def refresh_access_token(self) -> OAuthToken:
        with self._token_lock:
            current = self._token
        if current is None or not current.refresh_token:
            raise TraktReauthRequired("no_refresh_token")
        self._require_secret()

        payload = {
            "refresh_token": current.refresh_token,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "redirect_uri": self._redirect_uri,
            "grant_type": "refresh_token",
        }
        response = self._session.post(_SERVICE_NAME, self._endpoint("oauth", "token"), json_body=payload)
        token = OAuthToken.model_validate(self._parse_json(response))
        if not token.refresh_token:
            token.refresh_token = current.refresh_token
        self._store_token(token)
        self._log.info("trakt_token_refreshed")

        return token

    def update_credentials(
        self,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> None:
        if client_id:
            self._client_id = client_id
        if client_secret:
            self._client_secret = client_secret
        if access_token is None and refresh_token is None:
            return

        with self._token_lock:
            current = self._token
            if access_token:
                stored = StoredToken(access_token=access_token, refresh_token=refresh_token)
            elif current is not None:
                stored = current.model_copy(update={"refresh_token": refresh_token})
            else:
                return
            self._token = stored
            self._reauth_reason = None
        self._persist(stored)

    def status(self) -> Dict[str, Any]:
        token = self._token
        if token is None:
            return {"authenticated": False, "reauth_required": True, "reason": "no_token"}
        if self._reauth_reason:
            return {"authenticated": False, "reauth_required": True, "reason": self._reauth_reason}

        return {
            "authenticated": True,
            "reauth_required": False,
            "has_refresh_token": bool(token.refresh_token),
            "expires_at": token.expires_at,
            "last_refresh_ymd": token.last_refresh_ymd,
        }

    def public_config(self) -> Dict[str, Any]:
        """Non-secret view of the client configuration."""
        token = self._token
        return {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "authorize_url": self._authorize_url,
            "base_url": self._session.urlm.base_url(_SERVICE_NAME),
            "has_client_secret": bool(self._client_secret),
            "has_access_token": bool(token and token.access_token),
            "has_refresh_token": bool(token and token.refresh_token),
        }

    def has_token(self) -> bool:
        return self._token is not None

    def clear_token(self) -> None:
        with self._token_lock:
            self._token = None
            self._reauth_reason = None
        if self._token_file is not None:
            try:
                if self._token_file.exists():
                    self._token_file.unlink()
            except OSError as exc:
                self._log.warning("trakt_token_cache_unlink_failed", extra={"error": str(exc)})

    # ------------------------------------------------------------------
    # User data
    # ------------------------------------------------------------------
    def get_current_user(self) -> TraktUser:
        payload = self._authorized_get(self._endpoint("users", "me"))

        return TraktUser.model_validate(payload)

    def get_user_stats(self) -> TraktUserStats:
        payload = self._authorized_get(self._endpoint("users", "stats"))

        return TraktUserStats.model_validate(payload or {})

    def get_watched_movies(self) -> List[TraktWatchedMovie]:
        payload = self._authorized_get(self._endpoint("sync", "watched").format(media_type="movies"))

        return [TraktWatchedMovie.model_validate(entry) for entry in payload or []]

    def get_watched_shows(self) -> List[TraktWatchedShow]:
        payload = self._authorized_get(self._endpoint("sync", "watched").format(media_type="shows"))

        return [TraktWatchedShow.model_validate(entry) for entry in payload or []]

    def get_watching_progress(self) -> List[TraktPlaybackProgress]:
        payload = self._authorized_get(self._endpoint("sync", "playback"))

        return [TraktPlaybackProgress.model_validate(entry) for entry in payload or []]

    def stats_summary(self) -> TraktStatsSummary:
        user = self.get_current_user()
        stats = self.get_user_stats()
        total_minutes = stats.movies.minutes + stats.episodes.minutes
        total_hours = round(total_minutes / 60)

        observed = {
            "movies": stats.movies.watched,
            "episodes": stats.episodes.watched,
            "hours": total_hours,
        }
        milestones = [
            Milestone(
                type=name,
                achieved=observed[name] >= target,
                progress=observed[name],
                target=target,
            )
            for name, target in MILESTONE_THRESHOLDS.items()
        ]

        return TraktStatsSummary(
            username=user.username,
            total_hours=total_hours,
            stats=stats,
            milestones=milestones,
            generated_at=datetime.now(timezone.utc),
        )

    # ------------------------------------------------------------------
    # History sync
    # ------------------------------------------------------------------
    def sync_watched_movies(self, movies: Sequence[SyncMovieItem]) -> TraktSyncResult:
        return self._post_history(TraktSyncRequest(movies=list(movies)))

    def sync_watched_shows(self, shows: Sequence[SyncShowItem]) -> TraktSyncResult:
        return self._post_history(TraktSyncRequest(shows=list(shows)))

    def sync_watched_episodes(self, episodes: Sequence[SyncEpisodeItem]) -> TraktSyncResult:
        return self._post_history(TraktSyncRequest(episodes=list(episodes)))

    def remove_from_history(self, request: TraktSyncRequest) -> TraktSyncResult:
        payload = self._authorized_post(self._endpoint("sync", "history_remove"), json_body=request.to_payload())

        return TraktSyncResult.model_validate(payload or {})

    def _post_history(self, request: TraktSyncRequest) -> TraktSyncResult:
        payload = self._authorized_post(self._endpoint("sync", "history"), json_body=request.to_payload())

        return TraktSyncResult.model_validate(payload or {})

    # ------------------------------------------------------------------
    # Scrobble
    # ------------------------------------------------------------------
    def scrobble_start(self, item: ScrobbleItem) -> TraktScrobbleResponse:
        return self._execute_scrobble("start", item)

    def scrobble_pause(self, item: ScrobbleItem) -> TraktScrobbleResponse:
        return self._execute_scrobble("pause", item)

    def scrobble_stop(self, item: ScrobbleItem) -> TraktScrobbleResponse:
        return self._execute_scrobble("stop", item)

    def _execute_scrobble(self, action: str, item: ScrobbleItem) -> TraktScrobbleResponse:
        response = self._authorized_post_response(
            self._endpoint("scrobble", "base").format(action=action),
            json_body=item.to_payload(),
            allowed_statuses={409},
        )
        payload = self._parse_json(response)

        if response.status_code == 409:
            body = payload if isinstance(payload, Mapping) else {}
            raise TraktScrobbleConflict(
                watched_at=body.get("watched_at"),
                expires_at=body.get("expires_at"),
            )

        return TraktScrobbleResponse.model_validate(payload or {})

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def search(
        self,
        query: str,
        media_type: Optional[str] = None,
        year: Optional[int] = None,
    ) -> List[TraktSearchResult]:
        if media_type is not None and media_type not in {"movie", "show"}:
            raise ValueError("Search type must be 'movie' or 'show'")

        params: Dict[str, Any] = {"query": query}
        if year:
            params["years"] = int(year)
        path = self._endpoint("search", "text").format(types=media_type or "movie,show")
        payload = self._authorized_get(path, params=params)

        results: List[TraktSearchResult] = []
        for entry in payload or []:
            try:
                results.append(TraktSearchResult.model_validate(entry))
            except ValidationError:
                self._log.debug("trakt_search_entry_skipped", extra={"entry": entry})

        return results

    def get_movie(self, movie_id: Union[str, int]) -> TraktMovie:
        path = self._endpoint("movies", "details").format(id=movie_id)

        return TraktMovie.model_validate(self._authorized_get(path, params={"extended": "full"}))

    def get_show(self, show_id: Union[str, int]) -> TraktShow:
        path = self._endpoint("shows", "details").format(id=show_id)

        return TraktShow.model_validate(self._authorized_get(path, params={"extended": "full"}))

    def test_connection(self) -> Dict[str, Any]:
        try:
            user = self.get_current_user()
        except (NetError, ProviderError) as exc:
            self._log.warning("trakt_connection_failed", extra={"error": str(exc)})
            return {"success": False, "error": str(exc)}

        return {"success": True, "user": user.model_dump(mode="json")}

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------
    def _endpoint(self, group: str, name: str) -> str:
        endpoints = settings.get_provider_endpoints(_SERVICE_NAME)
        try:
            return endpoints[group][name]
        except (KeyError, TypeError) as exc:
            raise ConfigError(f"Missing Trakt endpoint configuration: {group}.{name}") from exc

    def _authorized_get(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        self._ensure_token()
        try:
            response = self._session.get(
                _SERVICE_NAME,
                path,
                params=dict(params or {}),
                headers=self._auth_headers(),
            )
        except Unauthorized as exc:
            self._flag_reauth("unauthorized")
            raise TraktReauthRequired("unauthorized") from exc

        return self._parse_json(response)

    def _authorized_post(self, path: str, *, json_body: Optional[Mapping[str, Any]] = None) -> Any:
        response = self._authorized_post_response(path, json_body=json_body)

        return self._parse_json(response)

    def _authorized_post_response(
        self,
        path: str,
        *,
        json_body: Optional[Mapping[str, Any]] = None,
        allowed_statuses: Optional[Iterable[int]] = None,
    ):
        self._ensure_token()
        try:
            return self._session.post(
                _SERVICE_NAME,
                path,
                json_body=dict(json_body or {}),
                headers=self._auth_headers(),
                allowed_statuses=set(allowed_statuses or ()),
            )
        except Unauthorized as exc:
            self._flag_reauth("unauthorized")
            raise TraktReauthRequired("unauthorized") from exc

    def _parse_json(self, response) -> Any:
        self._rate_limit = self._extract_rate_limit(response)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError("Trakt returned invalid JSON") from exc

    def _extract_rate_limit(self, response) -> RateLimitInfo:
        headers = response.headers or {}
        reset = headers.get("X-RateLimit-Reset")
        reset_at = None
        if reset:
            try:
                reset_at = datetime.fromtimestamp(int(reset), tz=timezone.utc)
            except (TypeError, ValueError):
                reset_at = None

        return RateLimitInfo(
            limit=_try_int(headers.get("X-RateLimit-Limit")),
            remaining=_try_int(headers.get("X-RateLimit-Remaining")),
            reset_at=reset_at,
        )

    def _ensure_token(self) -> None:
        token = self._token
        if token is None:
            raise TraktReauthRequired("no_token")
        if self._reauth_reason:
            raise TraktReauthRequired(self._reauth_reason)

        if token.is_expired(time.time()) and token.refresh_token:
            self._log.warning("trakt_token_expired_refreshing")
            self._refresh_or_raise("token_expired")

    def _refresh_or_raise(self, reason: str) -> None:
        try:
            self.refresh_access_token()
        except TraktReauthRequired:
            self._flag_reauth(reason)
            raise
        except (NetError, ConfigError, ProviderError, ValidationError) as exc:
            self._log.warning("trakt_token_refresh_failed", extra={"error": str(exc)})
            self._flag_reauth(reason)
            raise TraktReauthRequired(reason) from exc

    def _flag_reauth(self, reason: str) -> None:
        self._reauth_reason = reason

    def _require_secret(self) -> None:
        if not self._client_secret:
            raise ConfigError("TRAKT_CLIENT_SECRET must be configured")

    def _auth_headers(self) -> Dict[str, str]:
        token = self._token
        if token is None or not token.access_token:
            raise TraktReauthRequired("no_token")

        return {"Authorization": f"Bearer {token.access_token}"}

    def _store_token(self, token: OAuthToken) -> None:
        stored = StoredToken.from_oauth(token)
        with self._token_lock:
            self._token = stored
            self._reauth_reason = None
        self._persist(stored)

    def _persist(self, stored: StoredToken) -> None:
        if self._token_file is None:
            return
        try:
            self._token_file.write_text(
                json.dumps(stored.model_dump(), indent=2),
                encoding="utf-8",
            )
        except OSError as exc:
            self._log.warning("trakt_token_cache_write_failed", extra={"error": str(exc)})

    def _load_tokens(self) -> None:
        if self._token_file is None or not self._token_file.exists():
            return
        try:
            data = json.loads(self._token_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            self._log.warning("trakt_token_cache_unreadable")
            return
        if not isinstance(data, Mapping):
            return

        try:
            stored = StoredToken.model_validate(dict(data))
        except ValidationError:
            self._log.warning("trakt_token_cache_invalid")
            return

        # Backfill expires_at if an older payload omitted it.
        if stored.expires_at is None and stored.created_at and stored.expires_in:
            stored = stored.model_copy(update={"expires_at": stored.created_at + stored.expires_in})

        self._token = stored

    def _token_refresh_callback(
        self,
        service: str,
        session: HttpSession,
        response: Optional[Any] = None,
    ) -> Optional[Mapping[str, str]]:
        try:
            self.refresh_access_token()
        except TraktReauthRequired:
            self._flag_reauth("no_refresh_token")
            raise
        except (NetError, ConfigError, ProviderError, ValidationError) as exc:
            self._log.warning("trakt_token_refresh_failed", extra={"error": str(exc)})
            self._flag_reauth("refresh_failed")
            raise TraktReauthRequired("refresh_failed") from exc

        return self._auth_headers()

    # ------------------------------------------------------------------
    # Public introspection helpers
    # ------------------------------------------------------------------
    @property
    def rate_limit(self) -> Optional[RateLimitInfo]:
        """Return information about the most recent Trakt rate limit headers."""

        return self._rate_limit


def _try_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


__all__ = [
    "MILESTONE_THRESHOLDS",
    "OAuthToken",
    "RateLimitInfo",
    "StoredToken",
    "TraktManager",
    "TraktReauthRequired",
    "TraktScrobbleConflict",
]
