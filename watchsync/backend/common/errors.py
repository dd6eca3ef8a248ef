from __future__ import annotations



class WatchSyncError(Exception):
    """Base for all WatchSync exceptions."""


class ConfigError(WatchSyncError):
    """Configuration related issues."""


class ProviderError(WatchSyncError):
    """Provider (Plex/Trakt) issues."""


class SyncError(WatchSyncError):
    """Sync engine failures."""


class SyncInProgressError(SyncError):
    """Raised when a sync run is requested while another one is active."""

    def __init__(self, sync_id: str | None = None) -> None:
        super().__init__("Sync already in progress")
        self.sync_id = sync_id
