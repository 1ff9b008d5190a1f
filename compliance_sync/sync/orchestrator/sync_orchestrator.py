"""
Compliance Sync Orchestrator Module.

Owns the lifecycle of a sync run per license: one active run per license,
the pull / enqueue / drain pipeline, aggregation of queue outcomes into the
job status, cancellation and the operator-facing status view.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from compliance_sync.config.settings import SyncSettings, settings
from compliance_sync.database.connection import DatabaseManager, db_manager
from compliance_sync.sync.adapters.base import AdapterRegistry
from compliance_sync.sync.checkpoints import CheckpointStore
from compliance_sync.sync.exceptions import SyncJobNotFoundError, ValidationError
from compliance_sync.sync.interfaces import ChangeSource, EntityMapper, LocalRecordStore, OutboundChange
from compliance_sync.sync.licenses import LicenseRepository, normalize_license_number
from compliance_sync.sync.models import (
    EntityType,
    OperationType,
    QueueItemStatus,
    SyncDirection,
    SyncJobModel,
    SyncJobStatus,
    TERMINAL_JOB_STATUSES,
)
from compliance_sync.sync.pull import PullPhase
from compliance_sync.sync.queue.manager import QueueManager
from compliance_sync.sync.queue.worker import QueueWorker
from compliance_sync.sync.schemas import (
    EntitySyncStatus,
    QueueItemSnapshot,
    StartSyncResult,
    SyncJobSnapshot,
    SyncStatusSummary,
)
from compliance_sync.system.logging_config import log_sync_event
from compliance_sync.utils.clock import Clock, ensure_utc, utcnow

logger = logging.getLogger(__name__)


class ComplianceSyncOrchestrator:
    """
    Caller-facing facade of the sync engine.

    Features:
    - Atomic "one active job per license" start (database unique constraint)
    - Pull, enqueue and drain phases per direction
    - Concurrent queue workers with cooperative cancellation
    - Job status as a pure aggregate of queue item outcomes
    """

    def __init__(
        self,
        db: Optional[DatabaseManager] = None,
        licenses: Optional[LicenseRepository] = None,
        queue: Optional[QueueManager] = None,
        checkpoints: Optional[CheckpointStore] = None,
        adapters: Optional[AdapterRegistry] = None,
        mapper: Optional[EntityMapper] = None,
        local_store: Optional[LocalRecordStore] = None,
        change_source: Optional[ChangeSource] = None,
        sync_settings: Optional[SyncSettings] = None,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.db = db or db_manager
        self.sync_settings = sync_settings or settings.sync
        self.clock = clock
        self.licenses = licenses or LicenseRepository(self.db, clock=clock)
        self.queue = queue or QueueManager(self.db, clock=clock, sync_settings=self.sync_settings)
        self.checkpoints = checkpoints or CheckpointStore(self.db, clock=clock)
        self.adapters = adapters or AdapterRegistry()
        self.mapper = mapper
        self.change_source = change_source
        self.pull_phase = None
        if mapper is not None and local_store is not None:
            self.pull_phase = PullPhase(self.checkpoints, self.adapters, mapper, local_store, clock=clock)
        self._sleep = sleep
        self._cancel_events: Dict[UUID, asyncio.Event] = {}
        # Jobs this process is currently executing or resuming
        self._runs: Set[UUID] = set()

    # ------------------------------------------------------------------
    # Start / execute
    # ------------------------------------------------------------------

    def start_sync(
        self,
        license_number: str,
        direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
        force_full_sync: bool = False,
        initiated_by: str = "system",
        initiated_by_user_id: Optional[str] = None
    ) -> StartSyncResult:
        """
        Start a sync run for a license.

        Returns the already active job instead of creating a second one. The
        check-and-create relies on the unique active-license key, so it holds
        across service instances.

        Raises:
            ValidationError: License unknown, inactive or without credentials
        """
        license = self.licenses.require(license_number)
        if not license.is_active:
            raise ValidationError(f"License {license.license_number} is not active")
        if not license.has_credentials:
            raise ValidationError(f"License {license.license_number} does not have credentials configured")

        existing = self.get_active_job(license.license_number)
        if existing is not None:
            return self._already_running(existing)

        now = self.clock()
        try:
            with self.db.get_session() as session:
                job = SyncJobModel(
                    site_id=license.site_id,
                    license_number=license.license_number,
                    state_code=license.state_code,
                    active_license_key=license.license_number,
                    direction=direction,
                    status=SyncJobStatus.RUNNING,
                    force_full_sync=force_full_sync,
                    total_items=0,
                    processed_items=0,
                    successful_items=0,
                    failed_items=0,
                    retry_count=0,
                    initiated_by=initiated_by,
                    initiated_by_user_id=initiated_by_user_id,
                    created_at=now,
                    started_at=now,
                    last_heartbeat_at=now,
                )
                session.add(job)
                session.flush()
                snapshot = SyncJobSnapshot.model_validate(job)
        except IntegrityError:
            existing = self.get_active_job(license.license_number)
            if existing is None:
                raise
            return self._already_running(existing)

        if force_full_sync:
            self.checkpoints.reset(license.license_number)

        logger.info(
            f"Started {direction.value} sync job {snapshot.id} for {license.license_number} "
            f"(initiated by {initiated_by})"
        )
        log_sync_event("sync_started", license.license_number, str(snapshot.id), {
            "direction": direction.value,
            "force_full_sync": force_full_sync,
            "initiated_by": initiated_by,
        })
        return StartSyncResult(job=snapshot, created=True, message="Sync job started successfully")

    async def execute_job(self, job_id: UUID, entity_types: Optional[List[EntityType]] = None) -> SyncJobSnapshot:
        """
        Run the pipeline of a started job: pull, enqueue local changes, drain, finalize.

        An unexpected error fails the job and is recorded on the license.
        """
        job = self._require_job(job_id)
        if job.is_terminal or job_id in self._runs:
            return job

        self._runs.add(job_id)
        cancel_event = self._cancel_events.setdefault(job_id, asyncio.Event())
        try:
            if job.direction.includes_pull:
                if self.pull_phase is None:
                    logger.warning(f"Pull requested for job {job_id} but no entity mapper/local store configured")
                else:
                    await self.pull_phase.run(job.license_number, entity_types)

            if job.direction.includes_push and not cancel_event.is_set():
                self.enqueue_changes(job)

            if not cancel_event.is_set():
                await self.drain_job(job_id)

            return self.finalize_job(job_id)

        except asyncio.CancelledError:
            self.cancel_sync_job(job_id, "Execution cancelled")
            raise
        except Exception as e:
            logger.error(f"Sync job {job_id} failed: {e}", exc_info=True)
            self._fail_job(job_id, job.license_number, e)
            return self._require_job(job_id)
        finally:
            self._runs.discard(job_id)
            self._cancel_events.pop(job_id, None)

    async def resume_job(self, job_id: UUID) -> SyncJobSnapshot:
        """
        Drain and finalize a job that is already running (retries due, retried items).

        A job this process is still executing is left to that run.
        """
        job = self._require_job(job_id)
        if job.is_terminal:
            return job
        if job_id in self._runs:
            logger.debug(f"Sync job {job_id} is already being run by this process")
            return job

        self._runs.add(job_id)
        try:
            await self.drain_job(job_id)
            return self.finalize_job(job_id)
        finally:
            self._runs.discard(job_id)
            self._cancel_events.pop(job_id, None)

    async def resume_due_jobs(self) -> List[SyncJobSnapshot]:
        """
        Resume every running job with a queue item whose retry delay has elapsed.

        Runs for every license, whether or not auto-sync is enabled for it.
        """
        jobs = []
        for job_id in self.queue.get_jobs_with_due_retries():
            try:
                jobs.append(await self.resume_job(job_id))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Resuming sync job {job_id} failed: {e}")
        return jobs

    def enqueue_changes(self, job: SyncJobSnapshot) -> int:
        """
        Queue the local changes of a job's license.

        Changes are enqueued after the change they depend on; a dependency
        outside this batch is resolved against already active queue items.
        """
        if self.change_source is None:
            logger.warning(f"Push requested for job {job.id} but no change source configured")
            return 0

        since = None
        if not job.force_full_sync:
            since = self.get_last_collection_cutoff(job.license_number)

        collected_at = self.clock()
        changes = self.change_source.collect_changes(job.license_number, since)
        batch_keys = {change.change_key for change in changes}
        enqueued: Dict[Tuple[str, OperationType], UUID] = {}
        remaining = list(changes)

        while remaining:
            deferred = []
            for change in remaining:
                if change.depends_on in batch_keys and change.depends_on not in enqueued:
                    deferred.append(change)
                    continue
                enqueued[change.change_key] = self._enqueue_change(job, change, enqueued)

            if len(deferred) == len(remaining):
                # Dependency cycle: enqueue the rest ungated
                logger.warning(f"Circular dependencies among {len(deferred)} change(s) for job {job.id}")
                for change in deferred:
                    enqueued[change.change_key] = self._enqueue_change(job, change, enqueued, gate=False)
                break
            remaining = deferred

        with self.db.get_session() as session:
            session.execute(
                update(SyncJobModel)
                .where(SyncJobModel.id == job.id)
                .values(changes_collected_at=collected_at)
            )

        logger.info(f"Enqueued {len(enqueued)} change(s) for sync job {job.id}")
        return len(enqueued)

    def get_last_collection_cutoff(self, license_number: str) -> Optional[datetime]:
        """
        Collection time of the license's latest completed push.

        Changes made after it were not part of any delivered run, so the next
        push collects from there. None means collect everything.
        """
        license_number = normalize_license_number(license_number)
        with self.db.get_session() as session:
            return ensure_utc(session.execute(
                select(func.max(SyncJobModel.changes_collected_at))
                .where(SyncJobModel.license_number == license_number)
                .where(SyncJobModel.status == SyncJobStatus.COMPLETED)
            ).scalar())

    async def drain_job(self, job_id: UUID) -> None:
        """Run the configured number of workers over the job's license queue."""
        job = self._require_job(job_id)
        cancel_event = self._cancel_events.setdefault(job_id, asyncio.Event())
        worker_count = max(1, self.sync_settings.worker_count)

        workers = [
            QueueWorker(
                self.queue,
                self.adapters,
                self.sync_settings,
                worker_id=f"{job_id.hex[:8]}-{index}",
                sleep=self._sleep,
            )
            for index in range(worker_count)
        ]
        results = await asyncio.gather(*(
            worker.process_license(
                job.license_number,
                sync_job_id=job_id,
                stop_event=cancel_event,
                on_batch=lambda: self.heartbeat(job_id),
            )
            for worker in workers
        ))

        logger.info(
            f"Drained sync job {job_id}: {sum(r.succeeded for r in results)} succeeded, "
            f"{sum(r.retried for r in results)} retrying, {sum(r.failed for r in results)} failed"
        )

    def finalize_job(self, job_id: UUID) -> SyncJobSnapshot:
        """
        Complete the job if every item is terminal. Safe to call repeatedly:
        the completion is recorded on the license once.

        Item failures do not fail the job; they show in the failed counter.
        """
        self.queue.complete_job_if_settled(job_id)
        job = self._require_job(job_id)

        if job.status == SyncJobStatus.COMPLETED \
                and self.licenses.record_successful_sync(job.license_number, job.completed_at):
            log_sync_event("sync_completed", job.license_number, str(job.id), {
                "total_items": job.total_items,
                "successful_items": job.successful_items,
                "failed_items": job.failed_items,
            })
        return job

    def heartbeat(self, job_id: UUID) -> None:
        with self.db.get_session() as session:
            session.execute(
                update(SyncJobModel)
                .where(SyncJobModel.id == job_id)
                .where(SyncJobModel.status == SyncJobStatus.RUNNING)
                .values(last_heartbeat_at=self.clock())
            )

    # ------------------------------------------------------------------
    # Cancel / retry
    # ------------------------------------------------------------------

    def cancel_sync_job(self, job_id: UUID, reason: Optional[str] = None) -> bool:
        """
        Cancel a job. Returns False if it already ended.

        Pending items are cancelled; delivered items stay delivered. A run in
        progress in this process stops claiming new items.
        """
        reason = reason or "Cancelled by operator"
        with self.db.get_session() as session:
            job = session.get(SyncJobModel, job_id)
            if job is None:
                raise SyncJobNotFoundError(job_id)
            license_number = job.license_number

            result = session.execute(
                update(SyncJobModel)
                .where(SyncJobModel.id == job_id)
                .where(SyncJobModel.status.not_in(TERMINAL_JOB_STATUSES))
                .values(
                    status=SyncJobStatus.CANCELLED,
                    completed_at=self.clock(),
                    active_license_key=None,
                    error_message=reason[:2000],
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

        cancel_event = self._cancel_events.get(job_id)
        if cancel_event is not None:
            cancel_event.set()
        self.queue.cancel_job_items(job_id, reason)

        logger.info(f"Cancelled sync job {job_id}: {reason}")
        log_sync_event("sync_cancelled", license_number, str(job_id), {"reason": reason})
        return True

    def retry_failed_items(self, job_id: UUID) -> int:
        """
        Reset the job's failed items for another delivery attempt.

        Raises:
            SyncJobNotFoundError: Unknown job
            DuplicateActiveJobError: Job must be reopened but another job is active
        """
        reset = self.queue.retry_failed_items(job_id)
        if reset:
            job = self._require_job(job_id)
            log_sync_event("sync_retry_failed", job.license_number, str(job_id), {"items": reset})
        return reset

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_sync_job(self, job_id: UUID) -> Optional[SyncJobSnapshot]:
        with self.db.get_session() as session:
            job = session.get(SyncJobModel, job_id)
            return SyncJobSnapshot.model_validate(job) if job else None

    def get_sync_jobs(self, site_id: UUID, limit: Optional[int] = None) -> List[SyncJobSnapshot]:
        """Most recent jobs of a site first."""
        limit = limit or self.sync_settings.job_list_limit
        with self.db.get_session() as session:
            jobs = session.execute(
                select(SyncJobModel)
                .where(SyncJobModel.site_id == site_id)
                .order_by(SyncJobModel.created_at.desc())
                .limit(limit)
            ).scalars().all()
            return [SyncJobSnapshot.model_validate(job) for job in jobs]

    def get_active_job(self, license_number: str) -> Optional[SyncJobSnapshot]:
        license_number = normalize_license_number(license_number)
        with self.db.get_session() as session:
            job = session.execute(
                select(SyncJobModel).where(SyncJobModel.active_license_key == license_number)
            ).scalar_one_or_none()
            return SyncJobSnapshot.model_validate(job) if job else None

    def get_queue_items(
        self,
        job_id: UUID,
        status: Optional[QueueItemStatus] = None,
        limit: Optional[int] = None
    ) -> List[QueueItemSnapshot]:
        self._require_job(job_id)
        return self.queue.get_items(job_id, status=status, limit=limit)

    def get_sync_status(self, license_number: str) -> SyncStatusSummary:
        """Active job, queue counters and per-entity checkpoint summaries of a license."""
        license = self.licenses.require(license_number)
        active_job = self.get_active_job(license.license_number)

        entity_statuses = [
            EntitySyncStatus(
                entity_type=checkpoint.entity_type,
                direction=checkpoint.direction,
                last_sync_at=checkpoint.last_successful_sync_at,
                last_sync_item_count=checkpoint.last_sync_item_count,
                consecutive_failures=checkpoint.consecutive_failures,
                last_error=checkpoint.last_error,
            )
            for checkpoint in self.checkpoints.list_for_license(license.license_number)
        ]

        return SyncStatusSummary(
            license_id=license.id,
            license_number=license.license_number,
            last_sync_at=license.last_sync_at,
            last_successful_sync_at=license.last_successful_sync_at,
            is_sync_in_progress=active_job is not None,
            active_job=active_job,
            pending_queue_items=self.queue.get_pending_count(license.license_number),
            failed_queue_items=self.queue.get_failed_count(license.license_number),
            entity_statuses=entity_statuses,
        )

    def reset_checkpoints(self, license_number: str, entity_type: Optional[EntityType] = None) -> int:
        license = self.licenses.require(license_number)
        return self.checkpoints.reset(license.license_number, entity_type)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_job(self, job_id: UUID) -> SyncJobSnapshot:
        job = self.get_sync_job(job_id)
        if job is None:
            raise SyncJobNotFoundError(job_id)
        return job

    @staticmethod
    def _already_running(job: SyncJobSnapshot) -> StartSyncResult:
        logger.info(f"Sync already in progress for {job.license_number}: {job.id}")
        return StartSyncResult(job=job, created=False, message=f"Sync job already in progress: {job.id}")

    def _enqueue_change(
        self,
        job: SyncJobSnapshot,
        change: OutboundChange,
        enqueued: Dict[Tuple[str, OperationType], UUID],
        gate: bool = True
    ) -> UUID:
        depends_on_item_id = None
        if gate and change.depends_on is not None:
            depends_on_item_id = enqueued.get(change.depends_on)
            if depends_on_item_id is None:
                entity_id, operation = change.depends_on
                depends_on_item_id = self.queue.find_active_item(job.license_number, entity_id, operation)

        payload = self.mapper.to_payload(change) if self.mapper else change.data
        return self.queue.enqueue(
            sync_job_id=job.id,
            site_id=job.site_id,
            license_number=job.license_number,
            entity_type=change.entity_type,
            operation_type=change.operation_type,
            local_entity_id=change.local_entity_id,
            payload=payload,
            priority=change.priority,
            remote_id=change.remote_id,
            remote_label=change.remote_label,
            depends_on_item_id=depends_on_item_id,
        )

    def _fail_job(self, job_id: UUID, license_number: str, error: Exception) -> None:
        message = str(error) or type(error).__name__
        with self.db.get_session() as session:
            result = session.execute(
                update(SyncJobModel)
                .where(SyncJobModel.id == job_id)
                .where(SyncJobModel.status.not_in(TERMINAL_JOB_STATUSES))
                .values(
                    status=SyncJobStatus.FAILED,
                    completed_at=self.clock(),
                    active_license_key=None,
                    error_message=message[:2000],
                    error_details={"type": type(error).__name__, "error": message},
                )
                .execution_options(synchronize_session=False)
            )
            failed = result.rowcount == 1

        if failed:
            self.queue.cancel_job_items(job_id, f"Sync job failed: {message}")
        self.licenses.record_failed_sync(license_number, message)
        log_sync_event("sync_failed", license_number, str(job_id), {"error": message})
