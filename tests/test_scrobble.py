from __future__ import annotations

from datetime import datetime, timezone

import pytest

from watchsync.backend.information_handlers.mapper import PlexToTraktMapper
from watchsync.backend.information_handlers.models import PlexMovie, WatchSession
from watchsync.backend.information_handlers.trakt_manager import TraktScrobbleConflict
from watchsync.backend.information_handlers.trakt_models import MovieScrobble, TraktScrobbleResponse
from watchsync.backend.network_handlers.session import Upstream5xx
from watchsync.backend.sync.scrobble import ScrobbleSession, ScrobbleState


class FakeTrakt:
    def __init__(self) -> None:
        self.calls = []
        self.error = None

    def _record(self, action, item):
        self.calls.append((action, item))
        if self.error is not None:
            raise self.error
        return TraktScrobbleResponse(id=1, action=action, progress=item.progress)

    def scrobble_start(self, item):
        return self._record("start", item)

    def scrobble_pause(self, item):
        return self._record("pause", item)

    def scrobble_stop(self, item):
        return self._record("stop", item)


@pytest.fixture()
def trakt() -> FakeTrakt:
    return FakeTrakt()


@pytest.fixture()
def scrobbler(trakt) -> ScrobbleSession:
    mapper = PlexToTraktMapper(app_version="1.0", clock=lambda: datetime(2024, 3, 9, tzinfo=timezone.utc))
    return ScrobbleSession(trakt, mapper=mapper)


def _session(**overrides) -> WatchSession:
    fields = dict(
        rating_key="42",
        session_key="7",
        title="Heat",
        media_type="movie",
        view_offset=2_500_000,
        duration=10_000_000,
        movie=PlexMovie(rating_key="42", title="Heat", year=1995, guid="imdb://tt0113277"),
    )
    fields.update(overrides)
    return WatchSession(**fields)


def test_start_without_duration_is_skipped(scrobbler, trakt) -> None:
    assert scrobbler.start_scrobble_session(_session(duration=None)) is None
    assert trakt.calls == []
    assert scrobbler.state_of(_session()) is ScrobbleState.NOT_STARTED


def test_start_sends_movie_scrobble(scrobbler, trakt) -> None:
    response = scrobbler.start_scrobble_session(_session())

    assert response is not None and response.action == "start"
    [(action, item)] = trakt.calls
    assert action == "start"
    assert isinstance(item, MovieScrobble)
    assert item.progress == 25.0
    assert item.app_date == "2024-03-09"
    assert scrobbler.state_of(_session()) is ScrobbleState.STARTED


def test_progress_update_while_paused_sends_pause(scrobbler, trakt) -> None:
    scrobbler.update_scrobble_progress(_session(state="paused"))

    assert [action for action, _ in trakt.calls] == ["pause"]
    assert scrobbler.state_of(_session()) is ScrobbleState.PAUSED


def test_progress_update_while_playing_sends_start(scrobbler, trakt) -> None:
    scrobbler.update_scrobble_progress(_session())

    assert [action for action, _ in trakt.calls] == ["start"]


def test_progress_update_needs_offset(scrobbler, trakt) -> None:
    assert scrobbler.update_scrobble_progress(_session(view_offset=None)) is None
    assert trakt.calls == []


def test_end_sends_stop(scrobbler, trakt) -> None:
    scrobbler.start_scrobble_session(_session())
    scrobbler.end_scrobble_session(_session(view_offset=9_500_000))

    assert [action for action, _ in trakt.calls] == ["start", "stop"]
    assert trakt.calls[1][1].progress == 95.0
    assert scrobbler.state_of(_session()) is ScrobbleState.NOT_STARTED


def test_end_without_duration_is_skipped(scrobbler, trakt) -> None:
    assert scrobbler.end_scrobble_session(_session(duration=None)) is None
    assert trakt.calls == []


@pytest.mark.parametrize(
    "error",
    [
        Upstream5xx("503 Service Unavailable", status=503),
        TraktScrobbleConflict(watched_at="2024-01-01T00:00:00.000Z"),
    ],
)
def test_remote_failures_yield_none(scrobbler, trakt, error) -> None:
    trakt.error = error

    assert scrobbler.end_scrobble_session(_session()) is None
    assert len(trakt.calls) == 1
    assert scrobbler.state_of(_session()) is ScrobbleState.NOT_STARTED


def test_state_is_keyed_by_rating_key_without_session_key(scrobbler, trakt) -> None:
    scrobbler.start_scrobble_session(_session(session_key=None))

    assert scrobbler.state_of(_session(session_key=None)) is ScrobbleState.STARTED
    assert scrobbler.state_of(_session(session_key="other")) is ScrobbleState.NOT_STARTED


def test_stopped_sessions_are_forgotten(scrobbler, trakt) -> None:
    for key in range(50):
        scrobbler.start_scrobble_session(_session(session_key=str(key)))
        scrobbler.end_scrobble_session(_session(session_key=str(key)))

    assert scrobbler._states == {}
    assert len(trakt.calls) == 100
