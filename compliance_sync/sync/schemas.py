"""
Read models for the compliance sync engine.

Every public operation returns these detached pydantic snapshots rather than
live ORM rows, so callers never depend on an open database session.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from compliance_sync.sync.models import (
    EntityType,
    OperationType,
    QueueItemStatus,
    SyncDirection,
    SyncJobStatus,
)
from compliance_sync.utils.clock import ensure_utc


class LicenseSnapshot(BaseModel):
    """Regulator license configuration."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    site_id: UUID
    license_number: str
    state_code: str
    facility_name: str
    is_active: bool
    use_sandbox: bool
    auto_sync_enabled: bool
    sync_interval_minutes: int
    has_credentials: bool
    last_sync_at: Optional[datetime] = None
    last_successful_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None

    @field_validator("last_sync_at", "last_successful_sync_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class SyncJobSnapshot(BaseModel):
    """State of one sync run."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    site_id: UUID
    license_number: str
    state_code: str
    direction: SyncDirection
    status: SyncJobStatus
    force_full_sync: bool = False
    total_items: int = 0
    processed_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    retry_count: int = 0
    error_message: Optional[str] = None
    initiated_by: str = "system"
    initiated_by_user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None
    changes_collected_at: Optional[datetime] = None

    @field_validator("created_at", "started_at", "completed_at", "last_heartbeat_at", "changes_collected_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration(self) -> Optional[timedelta]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None


class StartSyncResult(BaseModel):
    """Outcome of a StartSync call."""
    job: SyncJobSnapshot
    created: bool
    message: str


class QueueItemSnapshot(BaseModel):
    """State of one outbound queue item, including request and response snapshots."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sync_job_id: UUID
    site_id: UUID
    license_number: str
    entity_type: EntityType
    operation_type: OperationType
    local_entity_id: str
    remote_id: Optional[int] = None
    remote_label: Optional[str] = None
    payload_json: str
    status: QueueItemStatus
    priority: int
    retry_count: int
    max_retries: int
    idempotency_key: str
    depends_on_item_id: Optional[UUID] = None
    superseded_by_item_id: Optional[UUID] = None
    claimed_by: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    response_json: Optional[str] = None
    created_at: datetime
    scheduled_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("created_at", "scheduled_at", "processed_at", "completed_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class CheckpointSnapshot(BaseModel):
    """Incremental pull watermark for one (license, entity type, direction)."""
    model_config = ConfigDict(from_attributes=True)

    license_number: str
    entity_type: EntityType
    direction: SyncDirection
    watermark: Optional[datetime] = None
    last_successful_sync_at: Optional[datetime] = None
    last_failed_sync_at: Optional[datetime] = None
    last_sync_item_count: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None

    @field_validator("watermark", "last_successful_sync_at", "last_failed_sync_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class EntitySyncStatus(BaseModel):
    """Per-entity-type checkpoint summary for the status view."""
    entity_type: EntityType
    direction: SyncDirection
    last_sync_at: Optional[datetime] = None
    last_sync_item_count: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None


class SyncStatusSummary(BaseModel):
    """Operator-facing sync status of one license."""
    license_id: UUID
    license_number: str
    last_sync_at: Optional[datetime] = None
    last_successful_sync_at: Optional[datetime] = None
    is_sync_in_progress: bool = False
    active_job: Optional[SyncJobSnapshot] = None
    pending_queue_items: int = 0
    failed_queue_items: int = 0
    entity_statuses: List[EntitySyncStatus] = Field(default_factory=list)


class Discrepancy(BaseModel):
    """One difference found by reconciliation."""
    entity_type: EntityType
    key: str
    kind: str  # field_mismatch, local_only, remote_only
    field: Optional[str] = None
    local_value: Any = None
    remote_value: Any = None


class EntityReconciliation(BaseModel):
    """Reconciliation counts for one entity type."""
    entity_type: EntityType
    local_count: int = 0
    remote_count: int = 0
    matched_count: int = 0
    local_only_count: int = 0
    remote_only_count: int = 0
    discrepancy_count: int = 0
    discrepancies: Optional[List[Discrepancy]] = None

    @computed_field
    @property
    def is_in_sync(self) -> bool:
        return (
            self.local_only_count == 0
            and self.remote_only_count == 0
            and self.discrepancy_count == 0
        )


class ReconciliationReport(BaseModel):
    """Drift report between local and regulator record sets. Not persisted."""
    license_id: UUID
    license_number: str
    reconciled_at: datetime
    duration_seconds: float
    entity_results: List[EntityReconciliation] = Field(default_factory=list)

    @computed_field
    @property
    def is_in_sync(self) -> bool:
        return all(result.is_in_sync for result in self.entity_results)

    def summary(self) -> Dict[str, Any]:
        return {
            "license_number": self.license_number,
            "is_in_sync": self.is_in_sync,
            "entity_types": [r.entity_type.value for r in self.entity_results if not r.is_in_sync],
        }
