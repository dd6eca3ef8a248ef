from __future__ import annotations

import json
from urllib.parse import parse_qs, urlparse

import pytest

from conftest import make_response
from watchsync.backend.common.errors import ConfigError
from watchsync.backend.information_handlers.trakt_manager import (
    TraktManager,
    TraktReauthRequired,
    TraktScrobbleConflict,
)
from watchsync.backend.information_handlers.trakt_models import (
    MovieScrobble,
    SyncEpisodeItem,
    SyncMovieItem,
    TraktMovie,
    TraktSyncRequest,
)


@pytest.fixture()
def manager(make_session):
    return TraktManager(
        session=make_session(),
        client_id="cid",
        client_secret="secret",
        redirect_uri="urn:ietf:wg:oauth:2.0:oob",
        access_token="access-1",
        refresh_token="refresh-1",
        persist_tokens=False,
    )


def _token_body(access: str = "access-2", refresh: str = "refresh-2") -> dict:
    return {
        "access_token": access,
        "token_type": "bearer",
        "expires_in": 7776000,
        "refresh_token": refresh,
        "scope": "public",
    }


def test_generate_auth_url(manager) -> None:
    url = manager.generate_auth_url("xyz")
    parsed = urlparse(url)
    query = parse_qs(parsed.query)

    assert url.startswith("https://trakt.tv/oauth/authorize?")
    assert query["response_type"] == ["code"]
    assert query["client_id"] == ["cid"]
    assert query["redirect_uri"] == ["urn:ietf:wg:oauth:2.0:oob"]
    assert query["state"] == ["xyz"]


def test_exchange_code_for_token_stores_credentials(manager, http) -> None:
    http.queue(make_response(200, _token_body()), make_response(200, {"username": "sam"}))

    token = manager.exchange_code_for_token("the-code")
    manager.get_current_user()

    assert token.access_token == "access-2"
    assert http.calls[0]["json"]["grant_type"] == "authorization_code"
    assert http.calls[0]["json"]["code"] == "the-code"
    assert http.calls[1]["headers"]["Authorization"] == "Bearer access-2"


def test_requests_carry_bearer_token(manager, http) -> None:
    http.queue(make_response(200, {"username": "sam", "vip": False}))

    user = manager.get_current_user()

    assert user.username == "sam"
    assert http.calls[0]["url"] == "https://api.trakt.test/users/me"
    assert http.calls[0]["headers"]["Authorization"] == "Bearer access-1"


def test_401_refreshes_once_then_replays(manager, http) -> None:
    http.queue(
        make_response(401),
        make_response(200, _token_body()),
        make_response(200, {"username": "sam"}),
    )

    user = manager.get_current_user()

    assert user.username == "sam"
    assert [c["url"].rsplit("/", 2)[-2:] for c in http.calls] == [
        ["users", "me"],
        ["oauth", "token"],
        ["users", "me"],
    ]
    assert http.calls[1]["json"]["refresh_token"] == "refresh-1"
    assert http.calls[1]["json"]["grant_type"] == "refresh_token"
    assert http.calls[2]["headers"]["Authorization"] == "Bearer access-2"
    assert manager.status()["authenticated"] is True


def test_401_without_refresh_token_requires_reauth(make_session, http) -> None:
    manager = TraktManager(
        session=make_session(),
        client_id="cid",
        client_secret="secret",
        access_token="access-1",
        persist_tokens=False,
    )
    http.queue(make_response(401))

    with pytest.raises(TraktReauthRequired):
        manager.get_current_user()

    assert len(http.calls) == 1
    assert manager.status()["reauth_required"] is True


def test_failed_refresh_requires_reauth(manager, http) -> None:
    http.queue(make_response(401), make_response(401, {"error": "invalid_grant"}))

    with pytest.raises(TraktReauthRequired) as excinfo:
        manager.get_current_user()

    assert excinfo.value.reason == "refresh_failed"
    assert len(http.calls) == 2


@pytest.mark.parametrize("body", [{}, {"token_type": "bearer"}])
def test_malformed_refresh_response_requires_reauth(manager, http, body) -> None:
    http.queue(make_response(401), make_response(200, body))

    with pytest.raises(TraktReauthRequired) as excinfo:
        manager.get_current_user()

    assert excinfo.value.reason == "refresh_failed"
    assert manager.status()["reauth_required"] is True
    assert len(http.calls) == 2


def test_second_401_after_refresh_requires_reauth(manager, http) -> None:
    http.queue(make_response(401), make_response(200, _token_body()), make_response(401))

    with pytest.raises(TraktReauthRequired):
        manager.get_current_user()

    assert len(http.calls) == 3


def test_reauth_flag_short_circuits_later_calls(manager, http) -> None:
    http.queue(make_response(401), make_response(401))
    with pytest.raises(TraktReauthRequired):
        manager.get_current_user()

    with pytest.raises(TraktReauthRequired):
        manager.get_watched_movies()

    assert len(http.calls) == 2


def test_sync_watched_movies_posts_history(manager, http) -> None:
    http.queue(
        make_response(
            201,
            {
                "added": {"movies": 1, "episodes": 0},
                "existing": {"movies": 0, "episodes": 0},
                "not_found": {"movies": [{"ids": {"imdb": "tt0000000"}, "title": "Ghost", "year": 2000}]},
            },
        )
    )

    result = manager.sync_watched_movies([SyncMovieItem(ids={"imdb": "tt0113277"}, title="Heat", year=1995)])

    assert result.added.movies == 1
    assert result.not_found.movies[0]["title"] == "Ghost"
    assert http.calls[0]["url"].endswith("/sync/history")
    assert http.calls[0]["json"] == {"movies": [{"ids": {"imdb": "tt0113277"}, "title": "Heat", "year": 1995}]}


def test_rate_limit_headers_are_recorded(manager, http) -> None:
    http.queue(
        make_response(
            200,
            [],
            headers={"X-RateLimit-Limit": "1000", "X-RateLimit-Remaining": "998", "X-RateLimit-Reset": "1700000000"},
        )
    )

    manager.get_watched_shows()

    assert manager.rate_limit is not None
    assert manager.rate_limit.limit == 1000
    assert manager.rate_limit.remaining == 998
    assert manager.rate_limit.reset_at is not None


def test_search_builds_typed_path(manager, http) -> None:
    http.queue(
        make_response(
            200,
            [{"type": "movie", "score": 10.5, "movie": {"title": "Heat", "year": 1995, "ids": {"trakt": 1}}}],
        )
    )

    results = manager.search("Heat", media_type="movie", year=1995)

    assert http.calls[0]["url"] == "https://api.trakt.test/search/movie?query=Heat&years=1995"
    assert results[0].media.title == "Heat"


def test_search_defaults_to_movies_and_shows(manager, http) -> None:
    http.queue(make_response(200, []))

    manager.search("Heat")

    assert "/search/movie,show?" in http.calls[0]["url"] or "/search/movie%2Cshow?" in http.calls[0]["url"]


def test_search_rejects_unknown_type(manager) -> None:
    with pytest.raises(ValueError):
        manager.search("Heat", media_type="episode")


def test_get_movie_requests_full_details(manager, http) -> None:
    http.queue(make_response(200, {"title": "Heat", "year": 1995, "ids": {"trakt": 1, "imdb": "tt0113277"}}))

    movie = manager.get_movie("heat-1995")

    assert movie.ids.imdb == "tt0113277"
    assert http.calls[0]["url"].endswith("/movies/heat-1995?extended=full")


def test_scrobble_conflict_raises(manager, http) -> None:
    http.queue(make_response(409, {"watched_at": "2024-01-01T00:00:00.000Z", "expires_at": "2024-01-01T01:00:00.000Z"}))
    item = MovieScrobble(movie=TraktMovie(title="Heat"), progress=95.0, app_version="1.0", app_date="2024-01-01")

    with pytest.raises(TraktScrobbleConflict) as excinfo:
        manager.scrobble_stop(item)

    assert excinfo.value.watched_at == "2024-01-01T00:00:00.000Z"


def test_scrobble_payload_has_no_discriminator(manager, http) -> None:
    http.queue(make_response(201, {"id": 1, "action": "start", "progress": 10.0}))
    item = MovieScrobble(movie=TraktMovie(title="Heat", year=1995), progress=10.0, app_version="1.0", app_date="2024-01-01")

    response = manager.scrobble_start(item)

    assert response.action == "start"
    body = http.calls[0]["json"]
    assert "kind" not in body
    assert body["movie"]["title"] == "Heat"
    assert http.calls[0]["url"].endswith("/scrobble/start")


def test_stats_summary_milestones(manager, http) -> None:
    http.queue(
        make_response(200, {"username": "sam"}),
        make_response(
            200,
            {
                "movies": {"plays": 150, "watched": 120, "minutes": 7200},
                "shows": {"watched": 10},
                "episodes": {"plays": 600, "watched": 500, "minutes": 0},
            },
        ),
    )

    summary = manager.stats_summary()
    milestones = {m.type: m for m in summary.milestones}

    assert summary.total_hours == 120
    assert milestones["movies"].achieved is True
    assert milestones["episodes"].achieved is False
    assert milestones["episodes"].progress == 500
    assert milestones["hours"].achieved is True


def test_test_connection_reports_failure(manager, http) -> None:
    http.queue(make_response(403, {"error": "forbidden"}))

    outcome = manager.test_connection()

    assert outcome["success"] is False
    assert "403" in outcome["error"]


def test_public_config_hides_secrets(manager) -> None:
    config = manager.public_config()

    assert config["client_id"] == "cid"
    assert config["has_client_secret"] is True
    assert "secret" not in json.dumps(config).replace("has_client_secret", "")


def test_tokens_persist_between_instances(make_session, http, tmp_path) -> None:
    first = TraktManager(session=make_session(), client_id="cid", client_secret="secret", token_path=tmp_path)
    http.queue(make_response(200, _token_body(access="persisted")))
    first.exchange_code_for_token("code")

    second = TraktManager(session=make_session(), client_id="cid", client_secret="secret", token_path=tmp_path)

    assert (tmp_path / "trakt_tokens.json").exists()
    assert second.status()["authenticated"] is True
    http.queue(make_response(200, {"username": "sam"}))
    second.get_current_user()
    assert http.calls[-1]["headers"]["Authorization"] == "Bearer persisted"


def test_sync_watched_episodes_posts_flat_list(manager, http) -> None:
    http.queue(make_response(201, {"added": {"episodes": 1}}))

    result = manager.sync_watched_episodes(
        [SyncEpisodeItem(ids={"tvdb": 349232}, title="Pilot", season=1, number=1)]
    )

    assert result.added.episodes == 1
    assert http.calls[0]["json"] == {
        "episodes": [{"ids": {"tvdb": 349232}, "title": "Pilot", "season": 1, "number": 1}]
    }


def test_remove_from_history_uses_remove_endpoint(manager, http) -> None:
    http.queue(make_response(200, {"deleted": {"movies": 1}}))

    result = manager.remove_from_history(TraktSyncRequest(movies=[SyncMovieItem(ids={"imdb": "tt0113277"})]))

    assert result.deleted.movies == 1
    assert http.calls[0]["url"].endswith("/sync/history/remove")


def test_get_watching_progress(manager, http) -> None:
    http.queue(
        make_response(
            200,
            [{"id": 13, "progress": 42.5, "type": "movie", "movie": {"title": "Heat", "ids": {"trakt": 1}}}],
        )
    )

    [entry] = manager.get_watching_progress()

    assert entry.progress == 42.5
    assert entry.movie is not None and entry.movie.title == "Heat"
    assert http.calls[0]["url"].endswith("/sync/playback")


def test_update_credentials_clears_reauth_flag(manager, http) -> None:
    http.queue(make_response(401), make_response(401))
    with pytest.raises(TraktReauthRequired):
        manager.get_current_user()

    manager.update_credentials(access_token="manual", refresh_token="manual-refresh")
    http.queue(make_response(200, {"username": "sam"}))
    manager.get_current_user()

    assert manager.status()["authenticated"] is True
    assert http.calls[-1]["headers"]["Authorization"] == "Bearer manual"


def test_clear_token_removes_cached_file(make_session, http, tmp_path) -> None:
    manager = TraktManager(session=make_session(), client_id="cid", client_secret="secret", token_path=tmp_path)
    http.queue(make_response(200, _token_body()))
    manager.exchange_code_for_token("code")

    manager.clear_token()

    assert manager.has_token() is False
    assert not (tmp_path / "trakt_tokens.json").exists()
    assert manager.status()["reason"] == "no_token"


def test_missing_client_id_is_a_config_error(make_session) -> None:
    with pytest.raises(ConfigError):
        TraktManager(session=make_session(), persist_tokens=False)


def test_get_show_requests_full_details(manager, http) -> None:
    http.queue(make_response(200, {"title": "Breaking Bad", "year": 2008, "ids": {"trakt": 1388, "tvdb": 81189}}))

    show = manager.get_show(1388)

    assert show.ids.tvdb == 81189
    assert http.calls[0]["url"].endswith("/shows/1388?extended=full")
