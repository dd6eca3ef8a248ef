"""Backend public interfaces with lazy loading to avoid circular imports."""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Any

__all__ = [
    "HttpSession",
    "PlexManager",
    "PlexToTraktMapper",
    "ScrobbleSession",
    "SyncEngine",
    "TraktManager",
]

_MODULE_EXPORTS = {
    "network_handlers.session": {
        "HttpSession",
    },
    "information_handlers.mapper": {
        "PlexToTraktMapper",
    },
    "information_handlers.plex_manager": {
        "PlexManager",
    },
    "information_handlers.trakt_manager": {
        "TraktManager",
    },
    "sync": {
        "ScrobbleSession",
        "SyncEngine",
    },
}

if TYPE_CHECKING:  # pragma: no cover - for static analysis only
    from .information_handlers.mapper import PlexToTraktMapper
    from .information_handlers.plex_manager import PlexManager
    from .information_handlers.trakt_manager import TraktManager
    from .network_handlers.session import HttpSession
    from .sync import ScrobbleSession, SyncEngine


def __getattr__(name: str) -> Any:
    for module_name, symbols in _MODULE_EXPORTS.items():
        if name in symbols:
            module = importlib.import_module(f"{__name__}.{module_name}")
            value = getattr(module, name)
            globals()[name] = value
            return value
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


def __dir__() -> list[str]:
    exported = set(__all__)
    for symbols in _MODULE_EXPORTS.values():
        exported.update(symbols)
    exported.update(globals().keys())
    return sorted(exported)
