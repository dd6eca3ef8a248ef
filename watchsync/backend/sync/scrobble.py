from __future__ import annotations

import threading
from enum import Enum
from typing import Dict, Optional

from watchsync.backend.common.errors import WatchSyncError
from watchsync.backend.common.logging import get_logger
from watchsync.backend.information_handlers.mapper import PlexToTraktMapper
from watchsync.backend.information_handlers.models import WatchSession
from watchsync.backend.information_handlers.trakt_manager import TraktManager
from watchsync.backend.information_handlers.trakt_models import TraktScrobbleResponse
from watchsync.backend.network_handlers.session import NetError
from watchsync.config.settings import get_settings

log = get_logger(__name__)


class ScrobbleState(str, Enum):
    NOT_STARTED = "not_started"
    STARTED = "started"
    PAUSED = "paused"
    STOPPED = "stopped"


class ScrobbleSession:
    """
    Forwards live playback events to Trakt's scrobble endpoints.

    Every call is best-effort: missing playback data or a remote failure is
    logged and yields ``None`` instead of raising. The last acknowledged
    state is tracked per session key (rating key when Plex gives none).
    """

    def __init__(self, trakt: TraktManager, *, mapper: Optional[PlexToTraktMapper] = None) -> None:
        self._trakt = trakt
        self._mapper = mapper or PlexToTraktMapper(app_version=get_settings().app_version)
        self._states: Dict[str, ScrobbleState] = {}
        self._lock = threading.Lock()

    def start_scrobble_session(self, session: WatchSession) -> Optional[TraktScrobbleResponse]:
        if not session.duration:
            log.warning("scrobble_missing_duration", extra={"title": session.title, "rating_key": session.rating_key})
            return None

        return self._send("start", session, ScrobbleState.STARTED)

    def update_scrobble_progress(self, session: WatchSession) -> Optional[TraktScrobbleResponse]:
        if not session.duration or not session.view_offset:
            return None

        if session.state == "paused":
            return self._send("pause", session, ScrobbleState.PAUSED)

        return self._send("start", session, ScrobbleState.STARTED)

    def end_scrobble_session(self, session: WatchSession) -> Optional[TraktScrobbleResponse]:
        if not session.duration:
            return None

        return self._send("stop", session, ScrobbleState.STOPPED)

    def state_of(self, session: WatchSession) -> ScrobbleState:
        with self._lock:
            return self._states.get(_session_key(session), ScrobbleState.NOT_STARTED)

    def _send(self, action: str, session: WatchSession, next_state: ScrobbleState) -> Optional[TraktScrobbleResponse]:
        try:
            item = self._mapper.to_scrobble_payload(session)
            if action == "pause":
                response = self._trakt.scrobble_pause(item)
            elif action == "stop":
                response = self._trakt.scrobble_stop(item)
            else:
                response = self._trakt.scrobble_start(item)
        except (NetError, WatchSyncError, ValueError) as exc:
            log.error(
                "scrobble_failed",
                extra={"action": action, "title": session.title, "error": str(exc)},
            )
            return None

        key = _session_key(session)
        with self._lock:
            if next_state is ScrobbleState.STOPPED:
                self._states.pop(key, None)
            else:
                self._states[key] = next_state

        log.info(
            "scrobble_sent",
            extra={"action": action, "title": session.title, "progress": response.progress},
        )

        return response


def _session_key(session: WatchSession) -> str:
    return session.session_key or session.rating_key


__all__ = ["ScrobbleSession", "ScrobbleState"]
