"""HTTP API for the compliance sync service."""

from compliance_sync.api.sync_jobs import configure_sync_api, router

__all__ = ["configure_sync_api", "router"]
