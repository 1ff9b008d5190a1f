"""
Outbound queue (outbox) manager.

Durable work items for regulator mutations. Handles idempotent enqueue,
dependency gating, atomic claims for concurrent workers, retry bookkeeping
and the owning sync job's counters.

Every status change is a conditional UPDATE judged by its row count, so the
transitions stay correct when several service instances share the database.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from compliance_sync.config.settings import SyncSettings, settings
from compliance_sync.database.connection import DatabaseManager, db_manager
from compliance_sync.sync.exceptions import (
    DuplicateActiveJobError,
    InvalidStateTransitionError,
    QueueItemNotFoundError,
    SyncJobNotFoundError,
    ValidationError,
)
from compliance_sync.sync.licenses import normalize_license_number
from compliance_sync.sync.models import (
    EntityType,
    OperationType,
    QueueItemModel,
    QueueItemStatus,
    SyncJobModel,
    SyncJobStatus,
    TERMINAL_ITEM_STATUSES,
)
from compliance_sync.sync.schemas import QueueItemSnapshot
from compliance_sync.utils.clock import Clock, utc_date, utcnow
from compliance_sync.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEPENDENCY_FAILED = "DEPENDENCY_FAILED"

# Statuses an item may leave through Complete / Fail
_OPEN_STATUSES = (QueueItemStatus.PENDING, QueueItemStatus.PROCESSING)


def build_idempotency_key(
    license_number: str,
    local_entity_id: str,
    operation_type: OperationType,
    when: datetime
) -> str:
    """Day-scoped key per license: the same entity/operation is new work again on the next UTC day."""
    return f"{license_number}:{local_entity_id}:{operation_type.value}:{utc_date(when):%Y%m%d}"


def serialize_payload(payload: Any) -> str:
    if isinstance(payload, str):
        text = payload.strip()
    elif payload is None:
        text = ""
    else:
        text = json.dumps(payload, default=str, sort_keys=True)

    if not text or text in ("{}", "[]", "null"):
        raise ValidationError("Queue item payload cannot be empty")
    return text


class QueueManager:
    """Manages the outbound queue items of every license."""

    def __init__(
        self,
        db: Optional[DatabaseManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Clock = utcnow,
        sync_settings: Optional[SyncSettings] = None
    ):
        self.db = db or db_manager
        self.sync_settings = sync_settings or settings.sync
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.sync_settings)
        self.clock = clock

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        sync_job_id: UUID,
        site_id: UUID,
        license_number: str,
        entity_type: EntityType,
        operation_type: OperationType,
        local_entity_id: str,
        payload: Any,
        priority: Optional[int] = None,
        remote_id: Optional[int] = None,
        remote_label: Optional[str] = None,
        depends_on_item_id: Optional[UUID] = None,
        max_retries: Optional[int] = None
    ) -> UUID:
        """
        Add a mutation to the outbox.

        If a non-terminal item with the same idempotency key exists, its id is
        returned and nothing is written. A new item supersedes older pending
        items for the same entity and operation queued on an earlier day.

        Returns:
            The id of the new or existing queue item
        """
        license_number = normalize_license_number(license_number)
        local_entity_id = str(local_entity_id or "").strip()
        if not local_entity_id:
            raise ValidationError("Local entity id is required")
        payload_json = serialize_payload(payload)

        if max_retries is None:
            max_retries = self.retry_policy.max_retries
        if max_retries < 1:
            raise ValidationError(f"max_retries must be positive, got {max_retries}")
        if priority is None:
            priority = self.sync_settings.default_priority

        now = self.clock()
        key = build_idempotency_key(license_number, local_entity_id, operation_type, now)

        try:
            with self.db.get_session() as session:
                job = session.get(SyncJobModel, sync_job_id)
                if job is None:
                    raise ValidationError(f"Sync job {sync_job_id} not found")
                if job.status.is_terminal:
                    raise ValidationError(f"Sync job {sync_job_id} is {job.status.value}")
                if job.license_number != license_number:
                    raise ValidationError(
                        f"Sync job {sync_job_id} belongs to license {job.license_number}, not {license_number}"
                    )

                existing = self._find_active_by_key(session, key)
                if existing is not None:
                    logger.debug(f"Deduplicated enqueue of {key} onto item {existing.id}")
                    return existing.id

                predecessor = None
                if depends_on_item_id is not None:
                    predecessor = self._resolve_predecessor(session, depends_on_item_id)

                item = QueueItemModel(
                    sync_job_id=sync_job_id,
                    site_id=site_id,
                    license_number=license_number,
                    entity_type=entity_type,
                    operation_type=operation_type,
                    local_entity_id=local_entity_id,
                    remote_id=remote_id,
                    remote_label=remote_label,
                    payload_json=payload_json,
                    status=QueueItemStatus.PENDING,
                    priority=priority,
                    retry_count=0,
                    max_retries=max_retries,
                    idempotency_key=key,
                    active_idempotency_key=key,
                    depends_on_item_id=predecessor.id if predecessor else None,
                    created_at=now,
                )
                session.add(item)
                session.flush()

                session.execute(
                    update(SyncJobModel)
                    .where(SyncJobModel.id == sync_job_id)
                    .values(total_items=SyncJobModel.total_items + 1)
                )

                if predecessor is not None and predecessor.status.is_terminal \
                        and predecessor.status != QueueItemStatus.COMPLETED:
                    # Predecessor can never succeed, so neither can this item
                    self._fail_for_dependency(session, item, predecessor.id, now)
                else:
                    self._supersede_older(session, item, now)

                item_id = item.id
        except IntegrityError:
            # Another writer inserted the same active key between our check and commit
            with self.db.get_session() as session:
                existing = self._find_active_by_key(session, key)
                if existing is None:
                    raise
                logger.info(f"Concurrent enqueue of {key} resolved to item {existing.id}")
                return existing.id

        logger.debug(f"Enqueued {entity_type.value}/{operation_type.value} for {local_entity_id} as {item_id}")
        return item_id

    # ------------------------------------------------------------------
    # Selection and claims
    # ------------------------------------------------------------------

    def get_next_batch(self, license_number: str, batch_size: Optional[int] = None) -> List[QueueItemSnapshot]:
        """
        Ready items for the license without claiming them.

        Pending items ordered by priority then creation time; items scheduled
        in the future or whose predecessor has not completed are excluded.
        """
        license_number = normalize_license_number(license_number)
        with self.db.get_session() as session:
            rows = session.execute(self._ready_query(license_number, batch_size)).scalars().all()
            return [QueueItemSnapshot.model_validate(row) for row in rows]

    def claim_next_batch(
        self,
        license_number: str,
        batch_size: Optional[int] = None,
        worker_id: str = "worker"
    ) -> List[QueueItemSnapshot]:
        """
        Select ready items and atomically move them to processing.

        Only items whose conditional update succeeded are returned, so two
        workers never receive the same item.
        """
        license_number = normalize_license_number(license_number)
        now = self.clock()

        with self.db.get_session() as session:
            candidates = session.execute(
                self._ready_query(license_number, batch_size, QueueItemModel.id)
            ).scalars().all()

            claimed_ids = []
            for item_id in candidates:
                result = session.execute(
                    update(QueueItemModel)
                    .where(QueueItemModel.id == item_id)
                    .where(QueueItemModel.status == QueueItemStatus.PENDING)
                    .values(
                        status=QueueItemStatus.PROCESSING,
                        claimed_by=worker_id,
                        claimed_at=now,
                        processed_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed_ids.append(item_id)

            if not claimed_ids:
                return []

            rows = session.execute(
                select(QueueItemModel)
                .where(QueueItemModel.id.in_(claimed_ids))
                .order_by(QueueItemModel.priority.asc(), QueueItemModel.created_at.asc())
            ).scalars().all()
            snapshots = [QueueItemSnapshot.model_validate(row) for row in rows]

        logger.debug(f"Worker {worker_id} claimed {len(snapshots)} item(s) for {license_number}")
        return snapshots

    def release(self, item_id: UUID) -> bool:
        """
        Return a claimed item to pending without consuming a retry.

        Items of a job that has ended in the meantime are cancelled instead.
        """
        now = self.clock()
        with self.db.get_session() as session:
            item = self._get_item(session, item_id)
            if item.status != QueueItemStatus.PROCESSING:
                return False
            return self._release(session, item, now)

    def release_stale_claims(self, license_number: Optional[str] = None, older_than_seconds: Optional[int] = None) -> int:
        """
        Release abandoned claims (worker crashed mid-item).

        Like release(), items of a job that has ended are cancelled rather
        than returned to pending.
        """
        timeout = older_than_seconds if older_than_seconds is not None else self.sync_settings.claim_timeout_seconds
        now = self.clock()
        cutoff = now - timedelta(seconds=timeout)

        with self.db.get_session() as session:
            stmt = (
                select(QueueItemModel)
                .where(QueueItemModel.status == QueueItemStatus.PROCESSING)
                .where(QueueItemModel.claimed_at < cutoff)
            )
            if license_number:
                stmt = stmt.where(QueueItemModel.license_number == normalize_license_number(license_number))

            released = 0
            for item in session.execute(stmt).scalars().all():
                if self._release(session, item, now):
                    released += 1

        if released:
            logger.warning(f"Released {released} stale queue claim(s) older than {timeout}s")
        return released

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def complete(
        self,
        item_id: UUID,
        remote_id: Optional[int] = None,
        remote_label: Optional[str] = None,
        response: Optional[Any] = None
    ) -> QueueItemSnapshot:
        """Mark an item delivered and record the regulator identifiers."""
        now = self.clock()
        with self.db.get_session() as session:
            item = self._get_item(session, item_id)
            if item.status not in _OPEN_STATUSES:
                raise InvalidStateTransitionError(
                    "queue item", item_id, item.status.value, QueueItemStatus.COMPLETED.value
                )

            values = {"response_json": self._serialize_response(response), "error_message": None, "error_code": None}
            if remote_id is not None:
                values["remote_id"] = remote_id
            if remote_label is not None:
                values["remote_label"] = remote_label

            if not self._terminate(session, item, item.status, QueueItemStatus.COMPLETED, now, **values):
                raise InvalidStateTransitionError(
                    "queue item", item_id, "concurrently modified", QueueItemStatus.COMPLETED.value
                )

            session.refresh(item)
            return QueueItemSnapshot.model_validate(item)

    def fail(
        self,
        item_id: UUID,
        message: str,
        code: Optional[str] = None,
        response: Optional[Any] = None,
        retryable: bool = True
    ) -> QueueItemSnapshot:
        """
        Record a failed delivery attempt.

        Increments the retry count. While retries remain the item returns to
        pending, scheduled after the backoff delay; otherwise (or when the
        failure is not retryable) it becomes terminal failed and every item
        waiting on it fails too.
        """
        now = self.clock()
        with self.db.get_session() as session:
            item = self._get_item(session, item_id)
            if item.status not in _OPEN_STATUSES:
                raise InvalidStateTransitionError(
                    "queue item", item_id, item.status.value, QueueItemStatus.FAILED.value
                )

            observed_status = item.status
            observed_retries = item.retry_count
            retry_count = observed_retries + 1
            error_values = {
                "retry_count": retry_count,
                "error_message": (message or "Unknown error")[:2000],
                "error_code": code,
                "response_json": self._serialize_response(response),
            }

            if retryable and retry_count < item.max_retries:
                result = session.execute(
                    update(QueueItemModel)
                    .where(QueueItemModel.id == item_id)
                    .where(QueueItemModel.status == observed_status)
                    .where(QueueItemModel.retry_count == observed_retries)
                    .values(
                        status=QueueItemStatus.PENDING,
                        claimed_by=None,
                        claimed_at=None,
                        scheduled_at=self.retry_policy.next_attempt_at(retry_count, now),
                        **error_values,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise InvalidStateTransitionError(
                        "queue item", item_id, "concurrently modified", QueueItemStatus.PENDING.value
                    )
                logger.warning(
                    f"Queue item {item_id} failed (attempt {retry_count}/{item.max_retries}), "
                    f"will retry: {message}"
                )
            else:
                if not self._terminate(session, item, observed_status, QueueItemStatus.FAILED, now, **error_values):
                    raise InvalidStateTransitionError(
                        "queue item", item_id, "concurrently modified", QueueItemStatus.FAILED.value
                    )
                logger.error(f"Queue item {item_id} failed permanently after {retry_count} attempt(s): {message}")

            session.refresh(item)
            return QueueItemSnapshot.model_validate(item)

    def skip(self, item_id: UUID, reason: str, superseded_by: Optional[UUID] = None) -> bool:
        """Mark a pending item obsolete. Dependents move to the superseding item, or fail without one."""
        now = self.clock()
        with self.db.get_session() as session:
            item = self._get_item(session, item_id)
            if item.status != QueueItemStatus.PENDING:
                return False
            return self._skip(session, item, reason, superseded_by, now)

    def cancel_job_items(self, sync_job_id: UUID, reason: Optional[str] = None) -> int:
        """
        Cancel the pending items of a job.

        Delivered items are left alone, as are in-flight items whose worker
        still holds a fresh claim (they are cancelled when released). Claims
        older than the claim timeout are cancelled here.
        """
        now = self.clock()
        stale_cutoff = now - timedelta(seconds=self.sync_settings.claim_timeout_seconds)
        message = reason or "Sync job cancelled"
        with self.db.get_session() as session:
            item_ids = session.execute(
                select(QueueItemModel.id)
                .where(QueueItemModel.sync_job_id == sync_job_id)
                .where(QueueItemModel.status == QueueItemStatus.PENDING)
            ).scalars().all()

            cancelled = 0
            for item_id in item_ids:
                result = session.execute(
                    update(QueueItemModel)
                    .where(QueueItemModel.id == item_id)
                    .where(QueueItemModel.status == QueueItemStatus.PENDING)
                    .values(
                        status=QueueItemStatus.CANCELLED,
                        active_idempotency_key=None,
                        completed_at=now,
                        error_message=message[:2000],
                    )
                    .execution_options(synchronize_session=False)
                )
                cancelled += result.rowcount or 0

            if cancelled:
                session.execute(
                    update(SyncJobModel)
                    .where(SyncJobModel.id == sync_job_id)
                    .values(processed_items=SyncJobModel.processed_items + cancelled)
                )

            stale_claims = session.execute(
                select(QueueItemModel)
                .where(QueueItemModel.sync_job_id == sync_job_id)
                .where(QueueItemModel.status == QueueItemStatus.PROCESSING)
                .where(QueueItemModel.claimed_at < stale_cutoff)
            ).scalars().all()
            for item in stale_claims:
                if self._terminate(
                    session, item, QueueItemStatus.PROCESSING, QueueItemStatus.CANCELLED, now,
                    error_message=message[:2000],
                ):
                    cancelled += 1

        logger.info(f"Cancelled {cancelled} pending item(s) of sync job {sync_job_id}")
        return cancelled

    def retry_failed_items(self, sync_job_id: UUID) -> int:
        """
        Reset the job's failed items to pending with a fresh retry budget.

        A completed or failed job is reopened to running; if another job is
        already active for the license, DuplicateActiveJobError is raised and
        nothing changes. Items whose idempotency key is held by a newer active
        item stay failed and their dependents wait on that item instead.

        Returns:
            Number of items reset
        """
        with self.db.get_session() as session:
            job = session.get(SyncJobModel, sync_job_id)
            if job is None:
                raise SyncJobNotFoundError(sync_job_id)

            failed_items = session.execute(
                select(QueueItemModel)
                .where(QueueItemModel.sync_job_id == sync_job_id)
                .where(QueueItemModel.status == QueueItemStatus.FAILED)
                .order_by(QueueItemModel.created_at.asc())
            ).scalars().all()
            if not failed_items:
                return 0

            if job.status == SyncJobStatus.CANCELLED:
                raise InvalidStateTransitionError(
                    "sync job", sync_job_id, job.status.value, SyncJobStatus.RUNNING.value
                )

            if job.status.is_terminal:
                self._reopen_job(session, job)

            now = self.clock()
            reset_items = []
            held_by = {}
            for item in failed_items:
                holder = self._find_active_by_key(session, item.idempotency_key)
                if holder is not None:
                    logger.warning(
                        f"Not retrying queue item {item.id}: key {item.idempotency_key} "
                        f"is held by active item {holder.id}"
                    )
                    held_by[item.id] = holder.id
                    continue

                item.status = QueueItemStatus.PENDING
                item.active_idempotency_key = item.idempotency_key
                item.retry_count = 0
                # Due now, so the retry sweep of a running service picks it up
                item.scheduled_at = now
                item.claimed_by = None
                item.claimed_at = None
                item.completed_at = None
                session.flush()
                reset_items.append(item)

            reset = 0
            if reset_items:
                session.execute(
                    update(SyncJobModel)
                    .where(SyncJobModel.id == sync_job_id)
                    .values(
                        processed_items=SyncJobModel.processed_items - len(reset_items),
                        failed_items=SyncJobModel.failed_items - len(reset_items),
                        retry_count=SyncJobModel.retry_count + 1,
                    )
                )
                self._regate_reset_items(session, reset_items, held_by, now)
                reset = session.execute(
                    select(func.count(QueueItemModel.id))
                    .where(QueueItemModel.id.in_([item.id for item in reset_items]))
                    .where(QueueItemModel.status == QueueItemStatus.PENDING)
                ).scalar() or 0

            if not reset:
                self._complete_job_if_settled(session, sync_job_id, now)

        logger.info(f"Reset {reset} failed item(s) of sync job {sync_job_id} for retry")
        return reset

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_item(self, item_id: UUID) -> QueueItemSnapshot:
        with self.db.get_session() as session:
            return QueueItemSnapshot.model_validate(self._get_item(session, item_id))

    def get_items(
        self,
        sync_job_id: UUID,
        status: Optional[QueueItemStatus] = None,
        limit: Optional[int] = None
    ) -> List[QueueItemSnapshot]:
        limit = limit or self.sync_settings.queue_item_list_limit
        with self.db.get_session() as session:
            stmt = select(QueueItemModel).where(QueueItemModel.sync_job_id == sync_job_id)
            if status is not None:
                stmt = stmt.where(QueueItemModel.status == status)
            rows = session.execute(
                stmt.order_by(QueueItemModel.created_at.asc(), QueueItemModel.priority.asc()).limit(limit)
            ).scalars().all()
            return [QueueItemSnapshot.model_validate(row) for row in rows]

    def find_active_item(
        self,
        license_number: str,
        local_entity_id: str,
        operation_type: OperationType
    ) -> Optional[UUID]:
        """Id of today's non-terminal item of a license for an entity and operation, if any."""
        key = build_idempotency_key(
            normalize_license_number(license_number), str(local_entity_id).strip(), operation_type, self.clock()
        )
        with self.db.get_session() as session:
            item = self._find_active_by_key(session, key)
            return item.id if item else None

    def get_pending_count(self, license_number: str) -> int:
        """Items not yet delivered (pending or claimed)."""
        return self._count(license_number, QueueItemStatus.PENDING, QueueItemStatus.PROCESSING)

    def get_failed_count(self, license_number: str) -> int:
        return self._count(license_number, QueueItemStatus.FAILED)

    def count_open_items(self, sync_job_id: UUID) -> int:
        """Non-terminal items of a job."""
        with self.db.get_session() as session:
            return self._count_open(session, sync_job_id)

    def get_jobs_with_due_retries(self) -> List[UUID]:
        """
        Running jobs with queue work nobody is draining.

        That is a pending item whose retry delay has elapsed, or open items of
        a job whose heartbeat is older than the claim timeout (its process
        went away).
        """
        now = self.clock()
        stale_cutoff = now - timedelta(seconds=self.sync_settings.claim_timeout_seconds)
        with self.db.get_session() as session:
            return list(session.execute(
                select(QueueItemModel.sync_job_id)
                .join(SyncJobModel, SyncJobModel.id == QueueItemModel.sync_job_id)
                .where(SyncJobModel.status == SyncJobStatus.RUNNING)
                .where(or_(
                    and_(
                        QueueItemModel.status == QueueItemStatus.PENDING,
                        QueueItemModel.scheduled_at <= now,
                    ),
                    and_(
                        QueueItemModel.status.in_(_OPEN_STATUSES),
                        SyncJobModel.last_heartbeat_at < stale_cutoff,
                    ),
                ))
                .distinct()
            ).scalars().all())

    def is_job_running(self, sync_job_id: UUID) -> bool:
        with self.db.get_session() as session:
            status = session.execute(
                select(SyncJobModel.status).where(SyncJobModel.id == sync_job_id)
            ).scalar_one_or_none()
            return status == SyncJobStatus.RUNNING

    def complete_job_if_settled(self, sync_job_id: UUID) -> bool:
        """Mark a running job completed once all of its items are terminal."""
        with self.db.get_session() as session:
            return self._complete_job_if_settled(session, sync_job_id, self.clock())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ready_query(self, license_number: str, batch_size: Optional[int], entity=QueueItemModel):
        predecessor = aliased(QueueItemModel)
        now = self.clock()
        return (
            select(entity)
            .join(SyncJobModel, SyncJobModel.id == QueueItemModel.sync_job_id)
            .outerjoin(predecessor, predecessor.id == QueueItemModel.depends_on_item_id)
            .where(QueueItemModel.license_number == license_number)
            .where(QueueItemModel.status == QueueItemStatus.PENDING)
            .where(SyncJobModel.status == SyncJobStatus.RUNNING)
            .where(or_(QueueItemModel.scheduled_at.is_(None), QueueItemModel.scheduled_at <= now))
            .where(or_(
                QueueItemModel.depends_on_item_id.is_(None),
                predecessor.status == QueueItemStatus.COMPLETED,
            ))
            .order_by(QueueItemModel.priority.asc(), QueueItemModel.created_at.asc(), QueueItemModel.id.asc())
            .limit(batch_size or self.sync_settings.batch_size)
        )

    def _count(self, license_number: str, *statuses: QueueItemStatus) -> int:
        license_number = normalize_license_number(license_number)
        with self.db.get_session() as session:
            return session.execute(
                select(func.count(QueueItemModel.id))
                .where(QueueItemModel.license_number == license_number)
                .where(QueueItemModel.status.in_(statuses))
            ).scalar() or 0

    @staticmethod
    def _count_open(session: Session, sync_job_id: UUID) -> int:
        return session.execute(
            select(func.count(QueueItemModel.id))
            .where(QueueItemModel.sync_job_id == sync_job_id)
            .where(QueueItemModel.status.not_in(TERMINAL_ITEM_STATUSES))
        ).scalar() or 0

    @staticmethod
    def _find_active_by_key(session: Session, key: str) -> Optional[QueueItemModel]:
        return session.execute(
            select(QueueItemModel).where(QueueItemModel.active_idempotency_key == key)
        ).scalar_one_or_none()

    @staticmethod
    def _get_item(session: Session, item_id: UUID) -> QueueItemModel:
        item = session.get(QueueItemModel, item_id)
        if item is None:
            raise QueueItemNotFoundError(item_id)
        return item

    @staticmethod
    def _serialize_response(response: Optional[Any]) -> Optional[str]:
        if response is None or isinstance(response, str):
            return response
        return json.dumps(response, default=str)

    @staticmethod
    def _resolve_predecessor(session: Session, item_id: UUID) -> QueueItemModel:
        """Follow supersede links to the item that will actually be delivered."""
        predecessor = session.get(QueueItemModel, item_id)
        if predecessor is None:
            raise ValidationError(f"Dependency queue item {item_id} not found")

        seen = {predecessor.id}
        while predecessor.status == QueueItemStatus.SKIPPED and predecessor.superseded_by_item_id:
            successor = session.get(QueueItemModel, predecessor.superseded_by_item_id)
            if successor is None or successor.id in seen:
                break
            seen.add(successor.id)
            predecessor = successor
        return predecessor

    def _regate_reset_items(
        self,
        session: Session,
        items: List[QueueItemModel],
        held_by: Dict[UUID, UUID],
        now: datetime
    ) -> None:
        """
        Gate retried items on a predecessor that can still complete.

        A predecessor left failed because a newer item holds its key hands its
        dependents to that item. Dependents of any other predecessor that
        ended without completing fail again.
        """
        for item in items:
            predecessor_id = item.depends_on_item_id
            if predecessor_id is None:
                continue

            if predecessor_id in held_by:
                item.depends_on_item_id = held_by[predecessor_id]
                session.flush()
                continue

            predecessor = session.get(QueueItemModel, predecessor_id)
            if predecessor is not None and predecessor.status.is_terminal \
                    and predecessor.status != QueueItemStatus.COMPLETED:
                self._fail_for_dependency(session, item, predecessor_id, now)

    def _release(self, session: Session, item: QueueItemModel, now: datetime) -> bool:
        job_status = session.execute(
            select(SyncJobModel.status).where(SyncJobModel.id == item.sync_job_id)
        ).scalar_one_or_none()

        if job_status is not None and job_status.is_terminal:
            # Pending items of an ended job are never claimed again; cancel to free the key
            return self._terminate(
                session, item, QueueItemStatus.PROCESSING, QueueItemStatus.CANCELLED, now,
                error_message=f"Sync job {job_status.value}",
            )

        result = session.execute(
            update(QueueItemModel)
            .where(QueueItemModel.id == item.id)
            .where(QueueItemModel.status == QueueItemStatus.PROCESSING)
            .values(status=QueueItemStatus.PENDING, claimed_by=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _terminate(
        self,
        session: Session,
        item: QueueItemModel,
        expected: QueueItemStatus,
        target: QueueItemStatus,
        now: datetime,
        **values
    ) -> bool:
        """
        Conditionally move an item to a terminal status and update job counters.

        Releases the active idempotency key. Failed items take their pending
        dependents down with them.
        """
        result = session.execute(
            update(QueueItemModel)
            .where(QueueItemModel.id == item.id)
            .where(QueueItemModel.status == expected)
            .values(
                status=target,
                active_idempotency_key=None,
                claimed_by=None,
                claimed_at=None,
                completed_at=now,
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        self._count_terminal(session, item.sync_job_id, target)
        if target in (QueueItemStatus.FAILED, QueueItemStatus.CANCELLED):
            self._cascade_dependency_failure(session, item.id, now)
        self._complete_job_if_settled(session, item.sync_job_id, now)
        return True

    @staticmethod
    def _count_terminal(session: Session, sync_job_id: UUID, status: QueueItemStatus, count: int = 1) -> None:
        values = {"processed_items": SyncJobModel.processed_items + count}
        if status == QueueItemStatus.COMPLETED:
            values["successful_items"] = SyncJobModel.successful_items + count
        elif status == QueueItemStatus.FAILED:
            values["failed_items"] = SyncJobModel.failed_items + count
        session.execute(update(SyncJobModel).where(SyncJobModel.id == sync_job_id).values(**values))

    def _cascade_dependency_failure(self, session: Session, failed_item_id: UUID, now: datetime) -> int:
        """Fail every pending item that (transitively) waits on a failed item."""
        failed = 0
        frontier = [failed_item_id]
        while frontier:
            parent_id = frontier.pop()
            dependents = session.execute(
                select(QueueItemModel)
                .where(QueueItemModel.depends_on_item_id == parent_id)
                .where(QueueItemModel.status == QueueItemStatus.PENDING)
            ).scalars().all()

            for dependent in dependents:
                if self._fail_for_dependency(session, dependent, parent_id, now, cascade=False):
                    failed += 1
                    frontier.append(dependent.id)

        if failed:
            logger.warning(f"Failed {failed} dependent queue item(s) of {failed_item_id}")
        return failed

    def _fail_for_dependency(
        self,
        session: Session,
        item: QueueItemModel,
        predecessor_id: UUID,
        now: datetime,
        cascade: bool = True
    ) -> bool:
        result = session.execute(
            update(QueueItemModel)
            .where(QueueItemModel.id == item.id)
            .where(QueueItemModel.status == QueueItemStatus.PENDING)
            .values(
                status=QueueItemStatus.FAILED,
                active_idempotency_key=None,
                completed_at=now,
                error_message=f"Dependency {predecessor_id} did not complete",
                error_code=DEPENDENCY_FAILED,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        self._count_terminal(session, item.sync_job_id, QueueItemStatus.FAILED)
        if cascade:
            self._cascade_dependency_failure(session, item.id, now)
            self._complete_job_if_settled(session, item.sync_job_id, now)
        return True

    def _supersede_older(self, session: Session, item: QueueItemModel, now: datetime) -> int:
        """Skip older pending items for the same entity and operation queued under an earlier key."""
        older_items = session.execute(
            select(QueueItemModel)
            .where(QueueItemModel.license_number == item.license_number)
            .where(QueueItemModel.entity_type == item.entity_type)
            .where(QueueItemModel.local_entity_id == item.local_entity_id)
            .where(QueueItemModel.operation_type == item.operation_type)
            .where(QueueItemModel.status == QueueItemStatus.PENDING)
            .where(QueueItemModel.idempotency_key != item.idempotency_key)
            .where(QueueItemModel.id != item.id)
        ).scalars().all()

        superseded = 0
        for older in older_items:
            if self._skip(session, older, f"Superseded by newer mutation {item.id}", item.id, now):
                superseded += 1

        if superseded:
            logger.info(f"Queue item {item.id} superseded {superseded} older item(s)")
        return superseded

    def _skip(
        self,
        session: Session,
        item: QueueItemModel,
        reason: str,
        superseded_by: Optional[UUID],
        now: datetime
    ) -> bool:
        result = session.execute(
            update(QueueItemModel)
            .where(QueueItemModel.id == item.id)
            .where(QueueItemModel.status == QueueItemStatus.PENDING)
            .values(
                status=QueueItemStatus.SKIPPED,
                active_idempotency_key=None,
                completed_at=now,
                error_message=(reason or "Skipped")[:2000],
                superseded_by_item_id=superseded_by,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        self._count_terminal(session, item.sync_job_id, QueueItemStatus.SKIPPED)
        if superseded_by is not None:
            session.execute(
                update(QueueItemModel)
                .where(QueueItemModel.depends_on_item_id == item.id)
                .where(QueueItemModel.id != superseded_by)
                .values(depends_on_item_id=superseded_by)
                .execution_options(synchronize_session=False)
            )
        else:
            self._cascade_dependency_failure(session, item.id, now)
        self._complete_job_if_settled(session, item.sync_job_id, now)
        return True

    def _complete_job_if_settled(self, session: Session, sync_job_id: UUID, now: datetime) -> bool:
        if self._count_open(session, sync_job_id) > 0:
            return False

        result = session.execute(
            update(SyncJobModel)
            .where(SyncJobModel.id == sync_job_id)
            .where(SyncJobModel.status == SyncJobStatus.RUNNING)
            .values(status=SyncJobStatus.COMPLETED, completed_at=now, active_license_key=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info(f"Sync job {sync_job_id} completed: all queue items are terminal")
            return True
        return False

    @staticmethod
    def _reopen_job(session: Session, job: SyncJobModel) -> None:
        previous_status = job.status
        job.status = SyncJobStatus.RUNNING
        job.active_license_key = job.license_number
        job.completed_at = None
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            active_id = session.execute(
                select(SyncJobModel.id).where(SyncJobModel.active_license_key == job.license_number)
            ).scalar_one_or_none()
            raise DuplicateActiveJobError(job.license_number, active_id)
        logger.info(f"Reopened sync job {job.id} ({previous_status.value} -> running) for retry")
