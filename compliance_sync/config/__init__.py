"""Configuration for the compliance sync service."""

from .settings import Settings, SyncSettings, settings

__all__ = ["Settings", "SyncSettings", "settings"]
