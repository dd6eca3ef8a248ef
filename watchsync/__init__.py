"""Plex to Trakt watch-history synchronization."""

__version__ = "0.1.0"
