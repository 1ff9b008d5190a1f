"""
Checkpoint store for incremental regulator pulls.

One watermark per (license, entity type, direction). A missing checkpoint
means the next pull is a full pull.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, select

from compliance_sync.database.connection import DatabaseManager, db_manager
from compliance_sync.sync.licenses import normalize_license_number
from compliance_sync.sync.models import EntityType, SyncCheckpointModel, SyncDirection
from compliance_sync.sync.schemas import CheckpointSnapshot
from compliance_sync.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Persists pull watermarks."""

    def __init__(self, db: Optional[DatabaseManager] = None, clock: Clock = utcnow):
        self.db = db or db_manager
        self.clock = clock

    def get(
        self,
        license_number: str,
        entity_type: EntityType,
        direction: SyncDirection = SyncDirection.PULL
    ) -> Optional[CheckpointSnapshot]:
        """Current checkpoint, or None if the scope was never synced (full pull)."""
        license_number = normalize_license_number(license_number)
        with self.db.get_session() as session:
            row = self._find(session, license_number, entity_type, direction)
            return CheckpointSnapshot.model_validate(row) if row else None

    def list_for_license(self, license_number: str) -> List[CheckpointSnapshot]:
        license_number = normalize_license_number(license_number)
        with self.db.get_session() as session:
            rows = session.execute(
                select(SyncCheckpointModel)
                .where(SyncCheckpointModel.license_number == license_number)
                .order_by(SyncCheckpointModel.entity_type, SyncCheckpointModel.direction)
            ).scalars().all()
            return [CheckpointSnapshot.model_validate(row) for row in rows]

    def upsert(
        self,
        license_number: str,
        entity_type: EntityType,
        direction: SyncDirection,
        success: bool,
        watermark: Optional[datetime] = None,
        item_count: int = 0,
        error: Optional[str] = None
    ) -> CheckpointSnapshot:
        """
        Record the outcome of one pull attempt.

        Success moves the watermark, records the item count and resets the
        failure streak. Failure increments the streak and records the error
        but never moves the watermark, so the next attempt re-reads the same
        window.
        """
        license_number = normalize_license_number(license_number)
        now = self.clock()

        with self.db.get_session() as session:
            row = self._find(session, license_number, entity_type, direction)
            if row is None:
                row = SyncCheckpointModel(
                    license_number=license_number,
                    entity_type=entity_type,
                    direction=direction,
                    last_sync_item_count=0,
                    consecutive_failures=0,
                )
                session.add(row)

            if success:
                row.watermark = watermark or now
                row.last_successful_sync_at = now
                row.last_sync_item_count = item_count
                row.consecutive_failures = 0
                row.last_error = None
            else:
                row.last_failed_sync_at = now
                row.consecutive_failures = (row.consecutive_failures or 0) + 1
                row.last_error = (error or "Unknown error")[:2000]
                logger.warning(
                    f"Pull checkpoint failure #{row.consecutive_failures} for "
                    f"{license_number}/{entity_type.value}: {row.last_error}"
                )

            session.flush()
            return CheckpointSnapshot.model_validate(row)

    def record_success(
        self,
        license_number: str,
        entity_type: EntityType,
        watermark: datetime,
        item_count: int,
        direction: SyncDirection = SyncDirection.PULL
    ) -> CheckpointSnapshot:
        return self.upsert(license_number, entity_type, direction, True, watermark=watermark, item_count=item_count)

    def record_failure(
        self,
        license_number: str,
        entity_type: EntityType,
        error: str,
        direction: SyncDirection = SyncDirection.PULL
    ) -> CheckpointSnapshot:
        return self.upsert(license_number, entity_type, direction, False, error=error)

    def reset(self, license_number: str, entity_type: Optional[EntityType] = None) -> int:
        """Clear watermarks so the next pull is a full resync. Returns rows removed."""
        license_number = normalize_license_number(license_number)
        with self.db.get_session() as session:
            stmt = delete(SyncCheckpointModel).where(SyncCheckpointModel.license_number == license_number)
            if entity_type is not None:
                stmt = stmt.where(SyncCheckpointModel.entity_type == entity_type)
            removed = session.execute(stmt).rowcount or 0

        scope = entity_type.value if entity_type else "all entity types"
        logger.info(f"Reset {removed} checkpoint(s) for {license_number} ({scope})")
        return removed

    @staticmethod
    def _find(session, license_number: str, entity_type: EntityType, direction: SyncDirection):
        return session.execute(
            select(SyncCheckpointModel)
            .where(SyncCheckpointModel.license_number == license_number)
            .where(SyncCheckpointModel.entity_type == entity_type)
            .where(SyncCheckpointModel.direction == direction)
        ).scalar_one_or_none()
