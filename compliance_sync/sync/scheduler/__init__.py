"""
Auto-sync Scheduler Module.
"""

from compliance_sync.sync.scheduler.auto_sync import AutoSyncScheduler

__all__ = [
    "AutoSyncScheduler",
]
