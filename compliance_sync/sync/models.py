"""
SQLAlchemy ORM models for the compliance sync engine.

These models define the persisted surfaces of the regulator synchronization
system: license configuration, sync jobs, the outbound queue (outbox) and
incremental pull checkpoints.
"""

from datetime import datetime
from uuid import UUID, uuid4
from sqlalchemy import (
    String, Text, Integer, DateTime, Boolean, BigInteger, Index,
    Enum as SQLEnum, JSON, UniqueConstraint, Uuid
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
import enum
from typing import Optional

from compliance_sync.database.connection import Base


# ============================================================================
# Enumerations
# ============================================================================

class SyncDirection(str, enum.Enum):
    """Sync direction enumeration."""
    PUSH = "push"
    PULL = "pull"
    BIDIRECTIONAL = "bidirectional"

    @property
    def includes_push(self) -> bool:
        return self in (SyncDirection.PUSH, SyncDirection.BIDIRECTIONAL)

    @property
    def includes_pull(self) -> bool:
        return self in (SyncDirection.PULL, SyncDirection.BIDIRECTIONAL)


class SyncJobStatus(str, enum.Enum):
    """Sync job status enumeration."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset({
    SyncJobStatus.COMPLETED,
    SyncJobStatus.FAILED,
    SyncJobStatus.CANCELLED,
})


class QueueItemStatus(str, enum.Enum):
    """Outbound queue item status enumeration."""
    PENDING = "pending"
    PROCESSING = "processing"  # Claimed by a worker
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"        # Superseded by a newer mutation
    CANCELLED = "cancelled"    # Owning job was cancelled

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ITEM_STATUSES


TERMINAL_ITEM_STATUSES = frozenset({
    QueueItemStatus.COMPLETED,
    QueueItemStatus.FAILED,
    QueueItemStatus.SKIPPED,
    QueueItemStatus.CANCELLED,
})


class EntityType(str, enum.Enum):
    """Regulator entity types (one per regulator API module)."""
    PLANT = "plant"
    PLANT_BATCH = "plant_batch"
    HARVEST = "harvest"
    PACKAGE = "package"
    ITEM = "item"
    STRAIN = "strain"
    LOCATION = "location"
    LAB_TEST = "lab_test"
    PROCESSING_JOB = "processing_job"
    TRANSFER = "transfer"


class OperationType(str, enum.Enum):
    """Regulator operation types."""
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    MOVE = "move"
    ADJUST = "adjust"
    CHANGE_PHASE = "change_phase"
    HARVEST = "harvest"
    PACKAGE = "package"
    FINISH = "finish"
    RECORD_WASTE = "record_waste"
    REMEDIATE = "remediate"
    DESTROY = "destroy"


# ============================================================================
# License Model
# ============================================================================

class LicenseModel(Base):
    """
    Regulator license configuration table.

    One row per (site, license number). Credentials are stored elsewhere;
    only a reference to the secret is kept here.
    """
    __tablename__ = "compliance_licenses"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    site_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    license_number: Mapped[str] = mapped_column(String(50), nullable=False)
    state_code: Mapped[str] = mapped_column(String(2), nullable=False)
    facility_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")

    # Reference into the credential store (vault path, secret name, ...)
    credential_ref: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    use_sandbox: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_sync_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    sync_interval_minutes: Mapped[int] = mapped_column(Integer, default=15)

    # Sync bookkeeping
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_successful_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_error: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def has_credentials(self) -> bool:
        return bool(self.credential_ref and self.credential_ref.strip())

    __table_args__ = (
        UniqueConstraint('license_number', name='uq_compliance_licenses_number'),
        Index('idx_compliance_licenses_auto_sync', 'is_active', 'auto_sync_enabled'),
    )


# ============================================================================
# Sync Job Model
# ============================================================================

class SyncJobModel(Base):
    """
    Sync run table.

    `active_license_key` holds the license number while the job is
    non-terminal and is NULL afterwards; its unique constraint allows at most
    one active job per license across all service instances.
    """
    __tablename__ = "compliance_sync_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    site_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    license_number: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    state_code: Mapped[str] = mapped_column(String(2), nullable=False)
    active_license_key: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    direction: Mapped[SyncDirection] = mapped_column(SQLEnum(SyncDirection), nullable=False)
    status: Mapped[SyncJobStatus] = mapped_column(SQLEnum(SyncJobStatus), default=SyncJobStatus.PENDING, index=True)
    force_full_sync: Mapped[bool] = mapped_column(Boolean, default=False)

    # Counters
    total_items: Mapped[int] = mapped_column(Integer, default=0)
    processed_items: Mapped[int] = mapped_column(Integer, default=0)
    successful_items: Mapped[int] = mapped_column(Integer, default=0)
    failed_items: Mapped[int] = mapped_column(Integer, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)

    # Error tracking
    error_message: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    error_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Execution context
    initiated_by: Mapped[str] = mapped_column(String(50), default="system")  # user, system, schedule
    initiated_by_user_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_heartbeat_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Cut-off of the local changes enqueued by this job; the next push collects from here
    changes_collected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('active_license_key', name='uq_compliance_sync_jobs_active_license'),
        Index('idx_compliance_sync_jobs_site_created', 'site_id', 'created_at'),
    )


# ============================================================================
# Queue Item Model (outbox)
# ============================================================================

class QueueItemModel(Base):
    """
    Outbound queue item table.

    Each row is one mutation to deliver to the regulator API.
    `active_idempotency_key` mirrors `idempotency_key` while the item is
    non-terminal and is NULL afterwards, so the unique constraint only binds
    in-flight work.
    """
    __tablename__ = "compliance_queue_items"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    sync_job_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    site_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    license_number: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    entity_type: Mapped[EntityType] = mapped_column(SQLEnum(EntityType), nullable=False)
    operation_type: Mapped[OperationType] = mapped_column(SQLEnum(OperationType), nullable=False)
    local_entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    remote_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    remote_label: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[QueueItemStatus] = mapped_column(SQLEnum(QueueItemStatus), default=QueueItemStatus.PENDING, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=100)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)

    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    active_idempotency_key: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    depends_on_item_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True, index=True)
    superseded_by_item_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)

    # Claim bookkeeping
    claimed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Last error
    error_message: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    response_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('active_idempotency_key', name='uq_compliance_queue_items_active_key'),
        Index('idx_compliance_queue_items_ready', 'license_number', 'status', 'priority', 'scheduled_at'),
        Index('idx_compliance_queue_items_entity', 'license_number', 'entity_type', 'local_entity_id'),
    )


# ============================================================================
# Sync Checkpoint Model
# ============================================================================

class SyncCheckpointModel(Base):
    """
    Incremental pull watermark table.

    One row per (license, entity type, direction).
    """
    __tablename__ = "compliance_sync_checkpoints"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    license_number: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[EntityType] = mapped_column(SQLEnum(EntityType), nullable=False)
    direction: Mapped[SyncDirection] = mapped_column(SQLEnum(SyncDirection), nullable=False)

    # Watermark: regulator-side "last modified" cursor for the next pull
    watermark: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_successful_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_failed_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_item_count: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('license_number', 'entity_type', 'direction', name='uq_compliance_sync_checkpoints_scope'),
    )
