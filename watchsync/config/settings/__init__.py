from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Any

__all__ = [
    "PATHS",
    "Settings",
    "core",
    "paths",
    "providers",
    "get_base_url",
    "get_default_headers",
    "get_plex_config",
    "get_provider_endpoints",
    "get_provider_settings_path",
    "get_rate_limits",
    "get_retry_config",
    "get_service_config",
    "get_settings",
    "get_tokens_dir",
    "get_trakt_keys",
    "list_provider_configs",
    "load_provider_settings",
]

_MODULE_EXPORTS = {
    "core": {
        "Settings",
        "get_settings",
    },
    "paths": {
        "PATHS",
        "get_provider_settings_path",
        "get_tokens_dir",
    },
    "providers": {
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
    },
}

_SUBMODULE_NAMES = {"core", "paths", "providers"}

if TYPE_CHECKING:  # pragma: no cover - only for static analysis
    from . import core, paths, providers
    from .core import Settings, get_settings
    from .paths import PATHS, get_provider_settings_path, get_tokens_dir
    from .providers import (
        get_base_url,
        get_default_headers,
        get_plex_config,
        get_provider_endpoints,
        get_rate_limits,
        get_retry_config,
        get_service_config,
        get_trakt_keys,
        list_provider_configs,
        load_provider_settings,
    )


def __getattr__(name: str) -> Any:
    if name in _SUBMODULE_NAMES:
        module = importlib.import_module(f"{__name__}.{name}")
        globals()[name] = module
        return module

    for module_name, symbols in _MODULE_EXPORTS.items():
        if name in symbols:
            module = importlib.import_module(f"{__name__}.{module_name}")
            value = getattr(module, name)
            globals()[name] = value
            return value

    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


def __dir__() -> list[str]:
    exported = set(__all__)
    exported.update(_SUBMODULE_NAMES)
    for symbols in _MODULE_EXPORTS.values():
        exported.update(symbols)
    exported.update(globals().keys())
    return sorted(exported)
