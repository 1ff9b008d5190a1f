"""
Compliance Synchronization Engine.

Mirrors local cultivation records into the state regulator's seed-to-sale
tracking system and pulls regulator-side changes back:
- Outbox queue with idempotent, dependency-ordered, at-least-once delivery
- One active sync run per license, enforced in the database
- Incremental pulls resumed from per-entity watermarks
- On-demand reconciliation reports between the two systems of record
"""

from compliance_sync.sync.models import (
    # Enumerations
    EntityType,
    OperationType,
    QueueItemStatus,
    SyncDirection,
    SyncJobStatus,
    # Models
    LicenseModel,
    QueueItemModel,
    SyncCheckpointModel,
    SyncJobModel,
)

__all__ = [
    # Enumerations
    "EntityType",
    "OperationType",
    "QueueItemStatus",
    "SyncDirection",
    "SyncJobStatus",
    # Models
    "LicenseModel",
    "QueueItemModel",
    "SyncCheckpointModel",
    "SyncJobModel",
]
