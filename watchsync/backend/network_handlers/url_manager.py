from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode, urljoin

from watchsync.config.settings import (
    get_base_url,
    get_default_headers,
    get_rate_limits,
    get_retry_config,
    list_provider_configs,
)



# ----------------------------
# Data views (read-only access)
# ----------------------------

@dataclass(frozen=True)
class ServiceView:
    name: str
    base_url: str
    default_headers: Dict[str, str]
    rate_limits: Dict[str, Any]
    retry: Dict[str, Any]


# ----------------------------
# URL Manager
# ----------------------------

class URLManager:
    """
    Builds service URLs and injects per-service default headers without doing
    any network I/O. Pure config-driven.

    - Trakt: default headers carry `trakt-api-key` / `trakt-api-version`
    - Plex: default headers carry `X-Plex-Token`
    """

    def __init__(self, service_overrides: Optional[Dict[str, Dict[str, Any]]] = None):
        self._views: Dict[str, ServiceView] = {}
        names = set(list_provider_configs().keys())
        if service_overrides:
            names.update(service_overrides.keys())

        for name in names:
            override = dict((service_overrides or {}).get(name) or {})
            self._views[name] = self._build_view(name, override)

    # -------- Public API --------

    def build(self, service: str, path: str, params: Optional[Dict[str, Any]] = None
              ) -> Tuple[str, Dict[str, str]]:
        """
        Build a full URL for an absolute/relative path for a given service.
        Returns (url, headers).
        """
        view = self._require_view(service)
        headers = dict(view.default_headers or {})

        base = _ensure_trailing_slash(view.base_url)
        url = urljoin(base, path.lstrip("/"))

        if params:
            url = f"{url}?{urlencode(params, doseq=True)}"

        return url, headers

    def base_url(self, service: str) -> str:
        return self._require_view(service).base_url

    def rate_limits(self, service: str) -> Dict[str, Any]:
        view = self._require_view(service)

        return dict(view.rate_limits or {})

    def retry_config(self, service: str) -> Dict[str, Any]:
        view = self._require_view(service)

        return dict(view.retry or {})

    def should_respect_retry_after(self, service: str) -> bool:
        rl = self.rate_limits(service)
        val = rl.get("respect_retry_after")

        return True if val is None else bool(val)

    def service_headers(self, service: str) -> Dict[str, str]:
        """Return the default headers for a service (already env-expanded)."""
        view = self._require_view(service)

        return dict(view.default_headers or {})

    def known_services(self) -> list[str]:
        return sorted(self._views.keys())

    # -------- Internals --------

    def _require_view(self, service: str) -> ServiceView:
        if service not in self._views:
            raise ValueError(f"Unknown service '{service}'. Known: {list(self._views.keys())}")

        return self._views[service]

    def _build_view(self, service: str, override: Dict[str, Any]) -> ServiceView:
        headers = get_default_headers(service)
        headers.update(override.get("default_headers") or {})
        rate_limits = get_rate_limits(service)
        rate_limits.update(override.get("rate_limits") or {})
        retry = get_retry_config(service)
        retry.update(override.get("retry") or {})

        return ServiceView(
            name=service,
            base_url=override.get("base_url") or get_base_url(service),
            default_headers=headers,
            rate_limits=rate_limits,
            retry=retry,
        )


# ----------------------------
# Helpers
# ----------------------------

def _ensure_trailing_slash(u: str) -> str:
    return u if u.endswith("/") else (u + "/")
