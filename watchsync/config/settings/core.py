from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from watchsync.backend.common.logging import get_logger

log = get_logger(__name__)

_SETTINGS_LOCK = threading.Lock()
_SETTINGS_SINGLETON: Optional["Settings"] = None

_SUCCESS_POLICIES = {"lenient", "strict"}


@dataclass
class Settings:
    app_name: str
    env: str
    log_level: str
    batch_size: int
    incremental_batch_size: int
    batch_delay_seconds: float
    request_timeout: int
    success_policy: str
    app_version: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "app_name": self.app_name,
            "env": self.env,
            "log_level": self.log_level,
            "batch_size": self.batch_size,
            "incremental_batch_size": self.incremental_batch_size,
            "batch_delay_seconds": self.batch_delay_seconds,
            "request_timeout": self.request_timeout,
            "success_policy": self.success_policy,
            "app_version": self.app_version,
        }


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        log.warning("settings_invalid_int", extra={"setting": name, "value": raw})
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        log.warning("settings_invalid_float", extra={"setting": name, "value": raw})
        return default


def _build_settings() -> Settings:
    success_policy = os.getenv("WATCHSYNC_SUCCESS_POLICY", "lenient").strip().lower()
    if success_policy not in _SUCCESS_POLICIES:
        log.warning("settings_invalid_success_policy", extra={"value": success_policy})
        success_policy = "lenient"

    return Settings(
        app_name=os.getenv("WATCHSYNC_APP_NAME", "WatchSync"),
        env=os.getenv("WATCHSYNC_ENV", "development"),
        log_level=os.getenv("WATCHSYNC_LOG_LEVEL", "INFO").upper(),
        batch_size=_env_int("WATCHSYNC_BATCH_SIZE", 50, minimum=1),
        incremental_batch_size=_env_int("WATCHSYNC_INCREMENTAL_BATCH_SIZE", 25, minimum=1),
        batch_delay_seconds=_env_float("WATCHSYNC_BATCH_DELAY_SECONDS", 1.0),
        request_timeout=_env_int("WATCHSYNC_REQUEST_TIMEOUT", 10, minimum=1),
        success_policy=success_policy,
        app_version=os.getenv("WATCHSYNC_APP_VERSION", "1.0"),
    )


def get_settings(*, reload: bool = False) -> Settings:
    global _SETTINGS_SINGLETON
    with _SETTINGS_LOCK:
        if _SETTINGS_SINGLETON is None or reload:
            _SETTINGS_SINGLETON = _build_settings()

        return _SETTINGS_SINGLETON


__all__ = [
    "Settings",
    "get_settings",
]
