from __future__ import annotations

from datetime import datetime, timezone

import pytest

from watchsync.backend.information_handlers.mapper import (
    MISSING_EPISODE_NUMBERS,
    MISSING_IDS,
    MISSING_SHOW,
    MISSING_SHOW_IDS,
    MISSING_TITLE,
    MISSING_YEAR,
    PlexToTraktMapper,
)
from watchsync.backend.information_handlers.models import (
    PlexEpisode,
    PlexMovie,
    PlexShow,
    WatchSession,
)
from watchsync.backend.information_handlers.trakt_models import EpisodeScrobble, MovieScrobble


@pytest.fixture()
def mapper() -> PlexToTraktMapper:
    return PlexToTraktMapper(
        app_version="1.0",
        clock=lambda: datetime(2024, 3, 9, 22, 15, tzinfo=timezone.utc),
    )


def _show(key: str = "100", title: str = "Breaking Bad") -> PlexShow:
    return PlexShow(rating_key=key, title=title, year=2008, guid="com.plexapp.agents.thetvdb://81189?lang=en")


def _episode(key: str, season: int, number: int, show: PlexShow | None = None) -> PlexEpisode:
    return PlexEpisode(
        rating_key=key,
        title=f"Episode {number}",
        season_number=season,
        episode_number=number,
        last_viewed_at=1700000000,
        show=show,
    )


def test_extract_ids_from_legacy_agent_guids(mapper) -> None:
    assert mapper.extract_ids_from_guid("com.plexapp.agents.imdb://tt0113277?lang=en") == {"imdb": "tt0113277"}
    assert mapper.extract_ids_from_guid("com.plexapp.agents.themoviedb://949?lang=en") == {"tmdb": 949}
    assert mapper.extract_ids_from_guid("com.plexapp.agents.thetvdb://81189/1/2?lang=en") == {"tvdb": 81189}


def test_extract_ids_from_modern_guids(mapper) -> None:
    assert mapper.extract_ids_from_guid("imdb://tt0113277") == {"imdb": "tt0113277"}
    assert mapper.extract_ids_from_guid("tmdb://movie/550") == {"tmdb": 550}
    assert mapper.extract_ids_from_guid("plex://movie/5d7768") == {}
    assert mapper.extract_ids_from_guid(None) == {}


def test_explicit_ids_override_guid(mapper) -> None:
    movie = PlexMovie(
        rating_key="1",
        title="Heat",
        year=1995,
        guid="com.plexapp.agents.themoviedb://111",
        tmdb_id="949",
        imdb_id="tt0113277",
    )

    assert mapper.extract_identity(movie) == {"tmdb": 949, "imdb": "tt0113277"}


def test_validate_collects_every_reason(mapper) -> None:
    movie = PlexMovie(rating_key="1", title="")

    outcome = mapper.validate(movie)

    assert outcome.valid is False
    assert outcome.errors == [MISSING_TITLE, MISSING_IDS, MISSING_YEAR]


def test_validate_episode_requires_numbers(mapper) -> None:
    episode = PlexEpisode(rating_key="5", title="Pilot", imdb_id="tt0959621", season_number=1, show=_show())

    outcome = mapper.validate(episode)

    assert outcome.errors == [MISSING_EPISODE_NUMBERS]


def test_validate_accepts_complete_movie(mapper) -> None:
    movie = PlexMovie(rating_key="1", title="Heat", year=1995, guid="imdb://tt0113277")

    assert mapper.validate(movie).valid is True


def test_to_trakt_movie_rounds_runtime(mapper) -> None:
    movie = PlexMovie(rating_key="1", title="Heat", year=1995, guid="imdb://tt0113277", duration=10_250_000)

    converted = mapper.to_trakt_movie(movie)

    assert converted.runtime == 171
    assert converted.ids.imdb == "tt0113277"


def test_to_sync_movies_stamps_watched_at(mapper) -> None:
    movie = PlexMovie(rating_key="1", title="Heat", year=1995, guid="imdb://tt0113277", last_viewed_at=1700000000)

    [item] = mapper.to_sync_movies([movie])

    assert item.watched_at == "2023-11-14T22:13:20.000Z"
    assert item.ids == {"imdb": "tt0113277"}


def test_to_sync_shows_groups_by_show_then_season(mapper) -> None:
    bb = _show("100", "Breaking Bad")
    other = _show("200", "Better Call Saul")
    episodes = [
        _episode("1", 1, 1, bb),
        _episode("2", 2, 1, bb),
        _episode("3", 1, 2, bb),
        _episode("4", 1, 1, other),
        _episode("5", 1, 1, None),
    ]

    shows = mapper.to_sync_shows(episodes)

    assert [s.title for s in shows] == ["Breaking Bad", "Better Call Saul"]
    assert [season.number for season in shows[0].seasons] == [1, 2]
    assert [ep.number for ep in shows[0].seasons[0].episodes] == [1, 2]
    assert shows[0].ids == {"tvdb": 81189}
    assert sum(len(season.episodes) for show in shows for season in show.seasons) == 4


def test_to_sync_episodes_flat(mapper) -> None:
    [item] = mapper.to_sync_episodes([_episode("1", 3, 7, _show())])

    assert (item.season, item.number) == (3, 7)


def test_movie_scrobble_payload(mapper) -> None:
    session = WatchSession(
        rating_key="1",
        title="Heat",
        media_type="movie",
        view_offset=3_000_000,
        duration=10_000_000,
        movie=PlexMovie(rating_key="1", title="Heat", year=1995, guid="imdb://tt0113277"),
    )

    payload = mapper.to_scrobble_payload(session)

    assert isinstance(payload, MovieScrobble)
    assert payload.progress == 30.0
    assert payload.app_date == "2024-03-09"
    body = payload.to_payload()
    assert body["movie"]["ids"] == {"imdb": "tt0113277"}
    assert "show" not in body


def test_episode_scrobble_defaults_numbers(mapper) -> None:
    session = WatchSession(
        rating_key="9",
        title="Pilot",
        media_type="episode",
        progress=12,
        duration=3_000_000,
        show=_show(),
    )

    payload = mapper.to_scrobble_payload(session)

    assert isinstance(payload, EpisodeScrobble)
    assert (payload.episode.season, payload.episode.number) == (1, 1)
    assert payload.show.ids.tvdb == 81189


def test_clean_ids_drops_invalid_values(mapper) -> None:
    assert mapper.clean_ids({"imdb": "nm123", "tmdb": 0, "tvdb": "42"}) == {"tvdb": 42}
    assert mapper.clean_ids({"imdb": "tt1", "tmdb": -5}) == {"imdb": "tt1"}


def test_to_trakt_episode_carries_numbers_and_ids(mapper) -> None:
    episode = PlexEpisode(
        rating_key="5",
        title="Pilot",
        season_number=1,
        episode_number=1,
        guid="com.plexapp.agents.thetvdb://349232",
        duration=3_480_000,
    )

    converted = mapper.to_trakt_episode(episode)

    assert (converted.season, converted.number) == (1, 1)
    assert converted.ids.tvdb == 349232
    assert converted.runtime == 58


def test_validate_episode_requires_a_show(mapper) -> None:
    episode = PlexEpisode(rating_key="5", title="Pilot", tvdb_id=5, season_number=1, episode_number=1)

    outcome = mapper.validate(episode)

    assert outcome.valid is False
    assert outcome.errors == [MISSING_SHOW]


def test_validate_episode_requires_show_ids(mapper) -> None:
    show = PlexShow(rating_key="100", title="Severance", year=2022, guid="plex://show/5d9c08")
    episode = PlexEpisode(rating_key="5", title="Good News About Hell", tvdb_id=7, season_number=1, episode_number=1, show=show)

    outcome = mapper.validate(episode)

    assert outcome.errors == [MISSING_SHOW_IDS]
