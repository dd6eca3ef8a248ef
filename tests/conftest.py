# WatchSync test fixtures
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
import requests
from requests.structures import CaseInsensitiveDict

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from watchsync.backend.network_handlers.session import HttpSession  # noqa: E402
from watchsync.backend.network_handlers.url_manager import URLManager  # noqa: E402
from watchsync.config.settings import get_settings  # noqa: E402

TRAKT_BASE = "https://api.trakt.test"
PLEX_BASE = "http://plex.test:32400"

_ENV_VARS = (
    "TRAKT_CLIENT_ID",
    "TRAKT_CLIENT_SECRET",
    "TRAKT_REDIRECT_URI",
    "TRAKT_ACCESS_TOKEN",
    "TRAKT_REFRESH_TOKEN",
    "TRAKT_BASE_URL",
    "PLEX_URL",
    "PLEX_TOKEN",
    "WATCHSYNC_SUCCESS_POLICY",
    "WATCHSYNC_BATCH_SIZE",
    "WATCHSYNC_INCREMENTAL_BATCH_SIZE",
    "WATCHSYNC_BATCH_DELAY_SECONDS",
    "WATCHSYNC_APP_VERSION",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    get_settings(reload=True)
    yield
    get_settings(reload=True)


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instead of blocking."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeHttp:
    """Stands in for ``requests.Session``; replays queued responses in order."""

    def __init__(self) -> None:
        self.responses: List[Any] = []
        self.calls: List[Dict[str, Any]] = []

    def queue(self, *items: Any) -> "FakeHttp":
        self.responses.extend(items)
        return self

    def request(self, method: str, url: str, headers=None, json=None, timeout=None):
        self.calls.append({"method": method, "url": url, "headers": dict(headers or {}), "json": json})
        if not self.responses:
            raise AssertionError(f"unexpected request {method} {url}")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def make_response(
    status: int = 200,
    body: Any = None,
    *,
    headers: Optional[Dict[str, str]] = None,
) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = b"" if body is None else json.dumps(body).encode("utf-8")
    response.headers = CaseInsensitiveDict(headers or {})
    response.encoding = "utf-8"
    return response


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture()
def make_session(http: FakeHttp, clock: FakeClock) -> Callable[..., HttpSession]:
    def _factory(
        *,
        trakt_rate_limits: Optional[Dict[str, Any]] = None,
        retry: Optional[Dict[str, Any]] = None,
    ) -> HttpSession:
        rate_limits = {"initial_delay_ms": 0, "backoff_multiplier": 2, "default_retry_after": 60}
        rate_limits.update(trakt_rate_limits or {})
        retry_cfg = {"max_attempts": 3, "base_backoff_ms": 100, "max_backoff_ms": 1000, "jitter_ms": 0}
        retry_cfg.update(retry or {})
        urlm = URLManager(
            service_overrides={
                "trakt": {
                    "base_url": TRAKT_BASE,
                    "default_headers": {"trakt-api-key": "cid"},
                    "rate_limits": rate_limits,
                    "retry": retry_cfg,
                },
                "plex": {
                    "base_url": PLEX_BASE,
                    "default_headers": {"X-Plex-Token": "plex-token"},
                    "rate_limits": {"initial_delay_ms": 0},
                    "retry": retry_cfg,
                },
            }
        )
        return HttpSession(
            timeout=5,
            url_manager=urlm,
            http=http,
            sleep=clock.sleep,
            monotonic=clock.monotonic,
        )

    return _factory
