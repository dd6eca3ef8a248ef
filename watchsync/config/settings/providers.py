from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from .paths import expand_env, get_provider_settings_path, read_json

_DEFAULT_BASE_URLS = {
    "trakt": "https://api.trakt.tv",
    "plex": "http://localhost:32400",
}

_DEFAULT_TRAKT_REDIRECT_URI = "urn:ietf:wg:oauth:2.0:oob"


def load_provider_settings_raw() -> Dict[str, Any]:
    return read_json(get_provider_settings_path())


try:  # pragma: no cover - guard against missing files at import time
    _RAW_PROVIDER_SETTINGS: Dict[str, Any] = load_provider_settings_raw()
except (OSError, ValueError):
    _RAW_PROVIDER_SETTINGS = {}


def load_provider_settings() -> Dict[str, Any]:
    """Return the provider configuration with ``${VAR}`` tokens expanded now."""

    return expand_env(_RAW_PROVIDER_SETTINGS)


def _provider_settings() -> Dict[str, Any]:
    return load_provider_settings().get("providers", {}) or {}


def list_provider_configs() -> Dict[str, Dict[str, Any]]:
    providers = _provider_settings()
    result: Dict[str, Dict[str, Any]] = {}
    for name, cfg in providers.items():
        if isinstance(cfg, Mapping):
            result[name] = dict(cfg)
        else:
            result[name] = {}

    return result


def get_service_config(service: str) -> Optional[Dict[str, Any]]:
    providers = _provider_settings()
    if not providers:
        return None

    return providers.get(service)


def get_rate_limits(service: str) -> Dict[str, Any]:
    cfg = get_service_config(service) or {}

    return dict(cfg.get("rate_limits") or {})


def get_retry_config(service: str) -> Dict[str, Any]:
    cfg = get_service_config(service) or {}

    return dict(cfg.get("retry") or {})


def get_default_headers(service: str) -> Dict[str, str]:
    cfg = get_service_config(service) or {}
    headers = cfg.get("default_headers", {}) or {}

    # Drop headers whose env var was unset so we never send empty credentials.
    return {str(k): str(v) for k, v in headers.items() if v}


def get_base_url(service: str) -> str:
    cfg = get_service_config(service) or {}

    return cfg.get("base_url") or _DEFAULT_BASE_URLS.get(service, "")


def get_provider_endpoints(service: str) -> Mapping[str, Any]:
    cfg = get_service_config(service) or {}

    return cfg.get("endpoints", {}) or {}


def get_trakt_keys() -> Dict[str, Optional[str]]:
    cfg = get_service_config("trakt") or {}

    return {
        "client_id": cfg.get("client_id") or None,
        "client_secret": cfg.get("client_secret") or None,
        "redirect_uri": cfg.get("redirect_uri") or _DEFAULT_TRAKT_REDIRECT_URI,
        "access_token": cfg.get("access_token") or None,
        "refresh_token": cfg.get("refresh_token") or None,
        "authorize_url": cfg.get("authorize_url") or None,
    }


def get_plex_config() -> Dict[str, Any]:
    cfg = get_service_config("plex") or {}

    return {
        "base_url": get_base_url("plex"),
        "token": cfg.get("token") or None,
        "container_size": int(cfg.get("container_size") or 1000),
    }


__all__ = [
    "get_base_url",
    "get_default_headers",
    "get_plex_config",
    "get_provider_endpoints",
    "get_rate_limits",
    "get_retry_config",
    "get_service_config",
    "get_trakt_keys",
    "list_provider_configs",
    "load_provider_settings",
    "load_provider_settings_raw",
]
