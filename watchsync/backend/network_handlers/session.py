from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Collection, Dict, Mapping, Optional
import random
import socket
import threading
import time

import requests
from requests.adapters import HTTPAdapter

from watchsync.backend.common.logging import get_logger
from watchsync.backend.common.types import HttpResult
from watchsync.backend.network_handlers.url_manager import URLManager

log = get_logger(__name__)


# ---------------- Exceptions ----------------

class NetError(Exception):
    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        description: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.description = description


class TimeoutError(NetError): ...
class DNSFailure(NetError): ...
class ConnectionFailed(NetError): ...
class BadRequest(NetError): ...
class Unauthorized(NetError): ...
class Forbidden(NetError): ...
class NotFound(NetError): ...
class RateLimited(NetError): ...
class Upstream5xx(NetError): ...
class Client4xx(NetError): ...


def _map_http_error(status: int, description: Optional[str] = None) -> NetError:
    if status == 400: cls, label = BadRequest, "400 Bad Request"
    elif status == 401: cls, label = Unauthorized, "401 Unauthorized"
    elif status == 403: cls, label = Forbidden, "403 Forbidden"
    elif status == 404: cls, label = NotFound, "404 Not Found"
    elif status == 429: cls, label = RateLimited, "429 Too Many Requests"
    elif 500 <= status < 600: cls, label = Upstream5xx, f"{status} Upstream error"
    else: cls, label = Client4xx, f"{status} HTTP error"

    message = f"{label}: {description}" if description else label

    return cls(message, status=status, description=description)

def _error_description(resp: requests.Response) -> Optional[str]:
    """Pull the remote service's own error text out of an error body, if any."""
    try:
        payload = resp.json()
    except ValueError:
        return None
    if not isinstance(payload, Mapping):
        return None
    for key in ("error_description", "error", "message"):
        value = payload.get(key)
        if value:
            return str(value)

    return None

def _parse_retry_after(raw: Any) -> Optional[float]:
    if raw is None:
        return None
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError):
        return None  # HTTP-date form is not used by our providers

    return value if value >= 0 else None

def _sleep_with_jitter(
    base_ms: int,
    attempt: int,
    max_ms: int,
    jitter_ms: int,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    backoff = min(max_ms, int((2 ** (attempt - 1)) * base_ms))
    jitter = random.randint(0, max(0, jitter_ms))
    sleep((backoff + jitter) / 1000.0)


# ---------------- Rate limiting ----------------

class RateLimiter:
    """
    Adaptive inter-request pacing for a single service.

    The delay starts at ``initial_delay_ms`` and only ever grows: each 429
    moves it to ``max(delay * backoff_multiplier, retry_after * 1000)``,
    clamped to ``max_delay_ms`` when one is configured. All state lives behind
    one lock so concurrent callers on the same session observe a consistent
    schedule.
    """

    def __init__(
        self,
        *,
        initial_delay_ms: float = 1000.0,
        backoff_multiplier: float = 2.0,
        default_retry_after: float = 60.0,
        max_delay_ms: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._delay_ms = max(0.0, float(initial_delay_ms))
        self._multiplier = max(1.0, float(backoff_multiplier))
        self._default_retry_after = max(0.0, float(default_retry_after))
        self._max_delay_ms = float(max_delay_ms) if max_delay_ms else None
        self._sleep = sleep
        self._monotonic = monotonic
        self._last_request: Optional[float] = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        cfg: Mapping[str, Any],
        *,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> "RateLimiter":
        return cls(
            initial_delay_ms=cfg.get("initial_delay_ms", 1000),
            backoff_multiplier=cfg.get("backoff_multiplier", 2),
            default_retry_after=cfg.get("default_retry_after", 60),
            max_delay_ms=cfg.get("max_delay_ms"),
            sleep=sleep,
            monotonic=monotonic,
        )

    @property
    def delay_ms(self) -> float:
        with self._lock:
            return self._delay_ms

    @property
    def default_retry_after(self) -> float:
        return self._default_retry_after

    def wait(self) -> float:
        """Block until the current delay has elapsed since the previous request."""
        with self._lock:
            waited = 0.0
            if self._last_request is not None:
                elapsed_ms = (self._monotonic() - self._last_request) * 1000.0
                if elapsed_ms < self._delay_ms:
                    waited = (self._delay_ms - elapsed_ms) / 1000.0
                    self._sleep(waited)
            self._last_request = self._monotonic()

            return waited

    def backoff(self, retry_after: Optional[float]) -> float:
        """Grow the delay after a 429 and return how long to pause before retrying."""
        seconds = self._default_retry_after if retry_after is None else float(retry_after)
        with self._lock:
            proposed = max(self._delay_ms * self._multiplier, seconds * 1000.0)
            if self._max_delay_ms is not None:
                proposed = min(proposed, self._max_delay_ms)
            self._delay_ms = max(self._delay_ms, proposed)

        return seconds

    def pause(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)


@dataclass
class _RetryBudget:
    """Per-call allowance: one credential refresh and one rate-limit retry."""

    refresh_used: bool = False
    rate_limit_used: bool = False


# ---------------- Main Session ----------------

TokenRefresher = Callable[[str, "HttpSession", Optional[requests.Response]], Optional[Mapping[str, str]]]


class HttpSession:
    """
    Central HTTP client:
      - URL building + per-service headers via URLManager
      - Per-service adaptive pacing via RateLimiter
      - 401 -> registered token refresher -> replay once
      - 429 -> Retry-After backoff -> replay once
      - Exponential backoff + jitter for timeouts, connection errors and 5xx
      - Typed error mapping carrying the remote's error description
    """

    def __init__(
        self,
        timeout: int = 10,
        *,
        url_manager: Optional[URLManager] = None,
        http: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.urlm = url_manager or URLManager()
        self.timeout = timeout
        self._sleep = sleep
        self._monotonic = monotonic

        if http is None:
            http = requests.Session()
            http.mount("http://", HTTPAdapter(pool_connections=8, pool_maxsize=16))
            http.mount("https://", HTTPAdapter(pool_connections=8, pool_maxsize=16))
        self._session = http

        # service -> callable invoked once when a 401 is encountered to refresh auth
        self._token_refreshers: Dict[str, TokenRefresher] = {}
        self._limiters: Dict[str, RateLimiter] = {}
        self._limiters_lock = threading.Lock()
        self.last_result: Optional[HttpResult] = None

    # -------- public API --------

    def get(
        self,
        service: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        allowed_statuses: Optional[Collection[int]] = None,
    ) -> requests.Response:

        return self._request(
            "GET",
            service,
            path,
            params=params,
            headers=headers,
            allowed_statuses=allowed_statuses,
        )

    def post(
        self,
        service: str,
        path: str,
        *,
        json_body: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        allowed_statuses: Optional[Collection[int]] = None,
    ) -> requests.Response:

        return self._request(
            "POST",
            service,
            path,
            params=params,
            json_body=json_body,
            headers=headers,
            allowed_statuses=allowed_statuses,
        )

    def register_token_refresher(
        self,
        service: str,
        handler: Optional[TokenRefresher],
    ) -> None:
        """Register or remove a token refresh hook for a service."""

        if handler is None:
            self._token_refreshers.pop(service, None)
        else:
            self._token_refreshers[service] = handler

    def rate_limiter(self, service: str) -> RateLimiter:
        with self._limiters_lock:
            limiter = self._limiters.get(service)
            if limiter is None:
                limiter = RateLimiter.from_config(
                    self.urlm.rate_limits(service),
                    sleep=self._sleep,
                    monotonic=self._monotonic,
                )
                self._limiters[service] = limiter

            return limiter

    # -------- internals --------

    def _request(
        self,
        method: str,
        service: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]],
        json_body: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        allowed_statuses: Optional[Collection[int]] = None,
    ) -> requests.Response:

        url, base_headers = self.urlm.build(service, path, params)
        hdrs = dict(base_headers or {})
        if headers:
            hdrs.update(headers)

        allowed = set(allowed_statuses or ())
        limiter = self.rate_limiter(service)
        retry_cfg = self.urlm.retry_config(service)
        max_attempts = max(1, int(retry_cfg.get("max_attempts", 3)))
        base_backoff_ms = int(retry_cfg.get("base_backoff_ms", 300))
        max_backoff_ms = int(retry_cfg.get("max_backoff_ms", 6000))
        jitter_ms = int(retry_cfg.get("jitter_ms", 250))

        budget = _RetryBudget()
        attempt = 1
        is_oauth_request = (path or "").lstrip("/").startswith("oauth/")

        while True:
            limiter.wait()
            started = self._monotonic()

            try:
                resp = self._session.request(
                    method=method,
                    url=url,
                    headers=hdrs,
                    json=json_body,
                    timeout=self.timeout,
                )
            except requests.exceptions.Timeout as e:
                if attempt >= max_attempts:
                    raise TimeoutError(str(e)) from e
                attempt += 1
                log.warning("http_retry_timeout", extra={"service": service, "attempt": attempt})
                _sleep_with_jitter(base_backoff_ms, attempt, max_backoff_ms, jitter_ms, self._sleep)
                continue
            except requests.exceptions.ConnectionError as e:
                if attempt >= max_attempts:
                    if isinstance(getattr(e, "__cause__", None), socket.gaierror):
                        raise DNSFailure(str(e)) from e
                    raise ConnectionFailed(str(e)) from e
                attempt += 1
                log.warning("http_retry_connection", extra={"service": service, "attempt": attempt})
                _sleep_with_jitter(base_backoff_ms, attempt, max_backoff_ms, jitter_ms, self._sleep)
                continue
            except requests.exceptions.RequestException as e:
                raise NetError(str(e)) from e

            status = resp.status_code
            self.last_result = HttpResult(
                url=url,
                status_code=status,
                ok=status < 400,
                elapsed_ms=max(0, int((self._monotonic() - started) * 1000)),
            )

            if status < 400 or status in allowed:
                return resp

            if status == 401:
                refresher = self._token_refreshers.get(service)
                if refresher is not None and not budget.refresh_used and not is_oauth_request:
                    budget.refresh_used = True
                    log.info("http_unauthorized_refresh", extra={"service": service, "path": path})
                    updated = refresher(service, self, resp)
                    if updated:
                        hdrs.update(dict(updated))
                    continue

                raise _map_http_error(status, _error_description(resp))

            if status == 429:
                if budget.rate_limit_used:
                    raise _map_http_error(status, _error_description(resp))
                budget.rate_limit_used = True

                retry_after = None
                if self.urlm.should_respect_retry_after(service):
                    retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
                pause_for = limiter.backoff(retry_after)
                log.warning(
                    "http_rate_limited",
                    extra={
                        "service": service,
                        "retry_after": pause_for,
                        "delay_ms": limiter.delay_ms,
                    },
                )
                limiter.pause(pause_for)
                continue

            if status == 408 or 500 <= status < 600:
                if attempt >= max_attempts:
                    raise _map_http_error(status, _error_description(resp))
                attempt += 1
                log.warning("http_retry_status", extra={"service": service, "status": status, "attempt": attempt})
                _sleep_with_jitter(base_backoff_ms, attempt, max_backoff_ms, jitter_ms, self._sleep)
                continue

            # Non-retryable 4xx
            raise _map_http_error(status, _error_description(resp))
