"""
Unit tests for the outbound queue (outbox) manager.

Covers idempotent enqueue, dependency gating, atomic claims, retry
bookkeeping, supersede and the owning job's counters.
"""

import pytest
from uuid import uuid4

from compliance_sync.sync.exceptions import (
    DuplicateActiveJobError,
    InvalidStateTransitionError,
    QueueItemNotFoundError,
    SyncJobNotFoundError,
    ValidationError,
)
from compliance_sync.sync.models import (
    EntityType,
    OperationType,
    QueueItemStatus,
    SyncDirection,
    SyncJobStatus,
)
from compliance_sync.sync.orchestrator.sync_orchestrator import ComplianceSyncOrchestrator
from compliance_sync.sync.queue.manager import DEPENDENCY_FAILED, build_idempotency_key, serialize_payload

from fakes import FakeClock, create_license, make_database, make_sync_settings


class QueueTestBase:

    def setup_method(self):
        self.clock = FakeClock()
        self.db = make_database()
        self.settings = make_sync_settings()
        self.license = create_license(self.db, clock=self.clock)
        self.orchestrator = ComplianceSyncOrchestrator(self.db, clock=self.clock, sync_settings=self.settings)
        self.queue = self.orchestrator.queue
        self.job = self.orchestrator.start_sync("CA-0001", SyncDirection.PUSH).job

    def enqueue(self, local_id="E123", operation=OperationType.CREATE, entity_type=EntityType.PACKAGE, job=None, **kwargs):
        job = job or self.job
        payload = kwargs.pop("payload", {"Label": local_id})
        return self.queue.enqueue(
            sync_job_id=job.id,
            site_id=job.site_id,
            license_number=job.license_number,
            entity_type=entity_type,
            operation_type=operation,
            local_entity_id=local_id,
            payload=payload,
            **kwargs
        )

    def job_state(self, job=None):
        return self.orchestrator.get_sync_job((job or self.job).id)


class TestIdempotencyKey:

    def test_key_is_day_scoped(self):
        clock = FakeClock()
        key = build_idempotency_key("CA-0001", "E123", OperationType.CREATE, clock())
        assert key == "CA-0001:E123:create:20261019"

        clock.advance(days=1)
        assert build_idempotency_key("CA-0001", "E123", OperationType.CREATE, clock()) == "CA-0001:E123:create:20261020"

    def test_key_is_license_scoped(self):
        when = FakeClock()()
        assert build_idempotency_key("CA-0001", "STRAIN-1", OperationType.CREATE, when) != \
            build_idempotency_key("CA-0002", "STRAIN-1", OperationType.CREATE, when)

    def test_serialize_payload_rejects_empty(self):
        for empty in (None, "", "   ", {}, []):
            with pytest.raises(ValidationError):
                serialize_payload(empty)

    def test_serialize_payload_is_stable(self):
        assert serialize_payload({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'
        assert serialize_payload(' {"a": 1} ') == '{"a": 1}'


class TestEnqueue(QueueTestBase):

    def test_enqueue_creates_pending_item(self):
        item_id = self.enqueue(priority=5, remote_label="1A4-0001")
        item = self.queue.get_item(item_id)

        assert item.status == QueueItemStatus.PENDING
        assert item.priority == 5
        assert item.retry_count == 0
        assert item.max_retries == 3
        assert item.idempotency_key == "CA-0001:E123:create:20261019"
        assert item.remote_label == "1A4-0001"
        assert item.license_number == "CA-0001"
        assert self.job_state().total_items == 1

    def test_same_day_duplicate_returns_existing_item(self):
        first = self.enqueue()
        second = self.enqueue(payload={"Label": "changed"})

        assert first == second
        assert len(self.queue.get_items(self.job.id)) == 1
        assert self.job_state().total_items == 1

    def test_license_number_is_normalized(self):
        item_id = self.queue.enqueue(
            self.job.id, self.job.site_id, "  ca-0001 ", EntityType.PLANT, OperationType.MOVE, "P1", {"Room": "A"}
        )
        assert self.queue.get_item(item_id).license_number == "CA-0001"

    def test_duplicate_after_terminal_creates_new_item(self):
        keeper = self.enqueue("KEEP")
        first = self.enqueue()
        self.queue.complete(first)

        second = self.enqueue()

        assert second != first
        assert self.queue.get_item(second).status == QueueItemStatus.PENDING
        assert self.queue.get_item(keeper).status == QueueItemStatus.PENDING

    def test_next_day_enqueue_supersedes_pending_item(self):
        older = self.enqueue("P1")
        dependent = self.enqueue("P1", OperationType.MOVE, depends_on_item_id=older)

        self.clock.advance(days=1)
        newer = self.enqueue("P1")

        older_item = self.queue.get_item(older)
        assert newer != older
        assert older_item.status == QueueItemStatus.SKIPPED
        assert older_item.superseded_by_item_id == newer
        assert self.queue.get_item(dependent).depends_on_item_id == newer

        job = self.job_state()
        assert job.total_items == 3
        assert job.processed_items == 1
        assert job.successful_items == 0
        assert job.failed_items == 0

    def test_depends_on_superseded_item_follows_successor(self):
        older = self.enqueue("P1")
        self.clock.advance(days=1)
        newer = self.enqueue("P1")

        dependent = self.enqueue("P1", OperationType.MOVE, depends_on_item_id=older)
        assert self.queue.get_item(dependent).depends_on_item_id == newer

    def test_enqueue_after_failed_dependency_fails_immediately(self):
        self.enqueue("KEEP")
        parent = self.enqueue("P1")
        self.queue.fail(parent, "rejected", code="REJECTED", retryable=False)

        child = self.enqueue("P1", OperationType.MOVE, depends_on_item_id=parent)
        item = self.queue.get_item(child)

        assert item.status == QueueItemStatus.FAILED
        assert item.error_code == DEPENDENCY_FAILED

    def test_validation_errors(self):
        with pytest.raises(ValidationError):
            self.enqueue(payload={})
        with pytest.raises(ValidationError):
            self.enqueue("   ")
        with pytest.raises(ValidationError):
            self.enqueue(max_retries=0)
        with pytest.raises(ValidationError):
            self.enqueue(depends_on_item_id=uuid4())
        with pytest.raises(ValidationError):
            self.queue.enqueue(uuid4(), self.job.site_id, "CA-0001", EntityType.PLANT, OperationType.MOVE, "P1", {"a": 1})
        with pytest.raises(ValidationError):
            self.queue.enqueue(self.job.id, self.job.site_id, "", EntityType.PLANT, OperationType.MOVE, "P1", {"a": 1})

        assert self.queue.get_items(self.job.id) == []

    def test_enqueue_rejects_other_license(self):
        create_license(self.db, "CA-0002", clock=self.clock)
        with pytest.raises(ValidationError):
            self.queue.enqueue(
                self.job.id, self.job.site_id, "CA-0002", EntityType.PLANT, OperationType.MOVE, "P1", {"a": 1}
            )

    def test_enqueue_rejects_terminal_job(self):
        self.orchestrator.cancel_sync_job(self.job.id)
        with pytest.raises(ValidationError):
            self.enqueue()

    def test_find_active_item(self):
        item_id = self.enqueue("P1", OperationType.CREATE)

        assert self.queue.find_active_item("ca-0001", "P1", OperationType.CREATE) == item_id
        assert self.queue.find_active_item("CA-0001", "P1", OperationType.MOVE) is None
        assert self.queue.find_active_item("CA-0002", "P1", OperationType.CREATE) is None

    def test_same_entity_on_two_licenses_of_a_site_is_queued_for_each(self):
        create_license(self.db, "CA-0002", site_id=self.job.site_id, clock=self.clock)
        other_job = self.orchestrator.start_sync("CA-0002", SyncDirection.PUSH).job

        first = self.enqueue("STRAIN-1", entity_type=EntityType.STRAIN)
        second = self.enqueue("STRAIN-1", entity_type=EntityType.STRAIN, job=other_job)

        assert second != first
        item = self.queue.get_item(second)
        assert item.license_number == "CA-0002"
        assert item.sync_job_id == other_job.id
        assert self.job_state(other_job).total_items == 1
        assert [i.id for i in self.queue.get_next_batch("CA-0002")] == [second]


class TestGetNextBatch(QueueTestBase):

    def test_orders_by_priority_then_creation(self):
        low = self.enqueue("A", priority=100)
        first = self.enqueue("B", priority=10)
        self.clock.advance(seconds=1)
        second = self.enqueue("C", priority=10)

        batch = self.queue.get_next_batch("CA-0001")
        assert [item.id for item in batch] == [first, second, low]

    def test_respects_batch_size(self):
        for index in range(5):
            self.enqueue(f"E{index}")
        assert len(self.queue.get_next_batch("CA-0001", batch_size=2)) == 2

    def test_excludes_items_waiting_on_dependency(self):
        parent = self.enqueue("P1", OperationType.CREATE)
        child = self.enqueue("P1", OperationType.MOVE, depends_on_item_id=parent)

        assert [item.id for item in self.queue.get_next_batch("CA-0001")] == [parent]

        self.queue.claim_next_batch("CA-0001")
        assert self.queue.get_next_batch("CA-0001") == []

        self.queue.complete(parent, remote_id=42)
        assert [item.id for item in self.queue.get_next_batch("CA-0001")] == [child]

    def test_excludes_items_scheduled_for_later(self):
        item_id = self.enqueue()
        self.enqueue("KEEP")
        self.queue.fail(item_id, "timeout")

        assert item_id not in [item.id for item in self.queue.get_next_batch("CA-0001")]

        self.clock.advance(seconds=61)
        assert item_id in [item.id for item in self.queue.get_next_batch("CA-0001")]

    def test_excludes_items_of_cancelled_job(self):
        self.enqueue()
        self.orchestrator.cancel_sync_job(self.job.id)

        assert self.queue.get_next_batch("CA-0001") == []


class TestClaims(QueueTestBase):

    def test_claim_moves_items_to_processing_once(self):
        self.enqueue("A")
        self.enqueue("B")

        claimed = self.queue.claim_next_batch("CA-0001", worker_id="worker-1")
        assert len(claimed) == 2
        assert all(item.status == QueueItemStatus.PROCESSING for item in claimed)
        assert all(item.claimed_by == "worker-1" for item in claimed)

        assert self.queue.claim_next_batch("CA-0001", worker_id="worker-2") == []

    def test_release_returns_item_to_pending(self):
        item_id = self.enqueue()
        self.queue.claim_next_batch("CA-0001")

        assert self.queue.release(item_id) is True
        item = self.queue.get_item(item_id)
        assert item.status == QueueItemStatus.PENDING
        assert item.retry_count == 0
        assert item.claimed_by is None
        assert self.queue.release(item_id) is False

    def test_release_cancels_item_of_ended_job(self):
        item_id = self.enqueue()
        self.queue.claim_next_batch("CA-0001")
        self.orchestrator.cancel_sync_job(self.job.id)

        assert self.queue.get_item(item_id).status == QueueItemStatus.PROCESSING
        self.queue.release(item_id)
        assert self.queue.get_item(item_id).status == QueueItemStatus.CANCELLED

    def test_release_stale_claims(self):
        item_id = self.enqueue()
        self.queue.claim_next_batch("CA-0001")

        self.clock.advance(seconds=100)
        assert self.queue.release_stale_claims("CA-0001") == 0

        self.clock.advance(seconds=self.settings.claim_timeout_seconds)
        assert self.queue.release_stale_claims("CA-0001") == 1
        assert self.queue.get_item(item_id).status == QueueItemStatus.PENDING

    def test_stale_claim_of_cancelled_job_is_cancelled(self):
        item_id = self.enqueue("P1")
        self.queue.claim_next_batch("CA-0001")
        self.orchestrator.cancel_sync_job(self.job.id)
        assert self.queue.get_item(item_id).status == QueueItemStatus.PROCESSING

        self.clock.advance(minutes=20)
        next_job = self.orchestrator.start_sync("CA-0001", SyncDirection.PUSH).job

        assert self.queue.release_stale_claims("CA-0001") == 1
        assert self.queue.get_item(item_id).status == QueueItemStatus.CANCELLED

        new_id = self.enqueue("P1", job=next_job)
        assert new_id != item_id
        assert self.queue.get_item(new_id).sync_job_id == next_job.id
        assert [item.id for item in self.queue.get_next_batch("CA-0001")] == [new_id]


class TestTransitions(QueueTestBase):

    def test_complete_records_remote_identifiers(self):
        item_id = self.enqueue()
        item = self.queue.complete(item_id, remote_id=12345, remote_label="1A4-0001", response={"Id": 12345})

        assert item.status == QueueItemStatus.COMPLETED
        assert item.remote_id == 12345
        assert item.remote_label == "1A4-0001"
        assert item.response_json == '{"Id": 12345}'
        assert item.completed_at == self.clock()

    def test_complete_terminal_item_raises(self):
        item_id = self.enqueue()
        self.enqueue("KEEP")
        self.queue.complete(item_id)

        with pytest.raises(InvalidStateTransitionError):
            self.queue.complete(item_id)
        with pytest.raises(InvalidStateTransitionError):
            self.queue.fail(item_id, "late failure")

    def test_unknown_item_raises(self):
        with pytest.raises(QueueItemNotFoundError):
            self.queue.complete(uuid4())

    def test_fail_retries_until_max_retries(self):
        item_id = self.enqueue()

        first = self.queue.fail(item_id, "timeout", code="TRANSIENT")
        assert first.status == QueueItemStatus.PENDING
        assert first.retry_count == 1
        assert (first.scheduled_at - self.clock()).total_seconds() == 60

        second = self.queue.fail(item_id, "timeout", code="TRANSIENT")
        assert second.status == QueueItemStatus.PENDING
        assert (second.scheduled_at - self.clock()).total_seconds() == 120

        third = self.queue.fail(item_id, "timeout", code="TRANSIENT", response="<html>502</html>")
        assert third.status == QueueItemStatus.FAILED
        assert third.retry_count == 3
        assert third.error_message == "timeout"
        assert third.error_code == "TRANSIENT"
        assert third.response_json == "<html>502</html>"

    def test_non_retryable_failure_is_terminal(self):
        item_id = self.enqueue()
        item = self.queue.fail(item_id, "Invalid label", code="REJECTED", retryable=False)

        assert item.status == QueueItemStatus.FAILED
        assert item.retry_count == 1

    def test_failure_cascades_to_dependents(self):
        parent = self.enqueue("P1", OperationType.CREATE)
        child = self.enqueue("P1", OperationType.MOVE, depends_on_item_id=parent)
        grandchild = self.enqueue("P1", OperationType.FINISH, depends_on_item_id=child)

        self.queue.fail(parent, "rejected", retryable=False)

        for item_id in (child, grandchild):
            item = self.queue.get_item(item_id)
            assert item.status == QueueItemStatus.FAILED
            assert item.error_code == DEPENDENCY_FAILED

        job = self.job_state()
        assert job.status == SyncJobStatus.COMPLETED
        assert job.failed_items == 3

    def test_skip_without_successor_fails_dependents(self):
        parent = self.enqueue("P1")
        child = self.enqueue("P1", OperationType.MOVE, depends_on_item_id=parent)

        assert self.queue.skip(parent, "Obsolete") is True
        assert self.queue.get_item(parent).status == QueueItemStatus.SKIPPED
        assert self.queue.get_item(child).error_code == DEPENDENCY_FAILED
        assert self.queue.skip(parent, "again") is False

    def test_counts(self):
        first = self.enqueue("A")
        self.clock.advance(seconds=1)
        self.enqueue("B")
        failed = self.enqueue("C")
        self.queue.fail(failed, "rejected", retryable=False)
        self.queue.claim_next_batch("CA-0001", batch_size=1)

        assert self.queue.get_pending_count("ca-0001") == 2
        assert self.queue.get_failed_count("CA-0001") == 1
        assert self.queue.count_open_items(self.job.id) == 2
        assert self.queue.get_item(first).status == QueueItemStatus.PROCESSING

    def test_get_items_filters_by_status(self):
        self.enqueue("A")
        failed = self.enqueue("B")
        self.queue.fail(failed, "rejected", retryable=False)

        assert [item.id for item in self.queue.get_items(self.job.id, QueueItemStatus.FAILED)] == [failed]
        assert len(self.queue.get_items(self.job.id)) == 2
        assert len(self.queue.get_items(self.job.id, limit=1)) == 1


class TestJobBookkeeping(QueueTestBase):

    def test_job_completes_when_all_items_terminal(self):
        done = self.enqueue("A")
        failed = self.enqueue("B")
        skipped = self.enqueue("C")

        self.queue.complete(done)
        self.queue.fail(failed, "rejected", retryable=False)
        assert self.job_state().status == SyncJobStatus.RUNNING

        self.queue.skip(skipped, "no longer needed")

        job = self.job_state()
        assert job.status == SyncJobStatus.COMPLETED
        assert job.total_items == 3
        assert job.processed_items == 3
        assert job.successful_items == 1
        assert job.failed_items == 1
        assert job.completed_at == self.clock()
        assert self.orchestrator.get_active_job("CA-0001") is None

    def test_retry_failed_items_reopens_job(self):
        item_id = self.enqueue()
        self.queue.fail(item_id, "rejected", retryable=False)
        assert self.job_state().status == SyncJobStatus.COMPLETED

        assert self.queue.retry_failed_items(self.job.id) == 1

        item = self.queue.get_item(item_id)
        assert item.status == QueueItemStatus.PENDING
        assert item.retry_count == 0
        assert item.scheduled_at == self.clock()

        job = self.job_state()
        assert job.status == SyncJobStatus.RUNNING
        assert job.processed_items == 0
        assert job.failed_items == 0
        assert job.retry_count == 1
        assert self.orchestrator.get_active_job("CA-0001").id == self.job.id

    def test_retry_resets_dependency_chain(self):
        parent = self.enqueue("P1", OperationType.CREATE)
        child = self.enqueue("P1", OperationType.MOVE, depends_on_item_id=parent)
        self.queue.fail(parent, "rejected", retryable=False)

        assert self.queue.retry_failed_items(self.job.id) == 2
        assert [item.id for item in self.queue.get_next_batch("CA-0001")] == [parent]
        assert self.queue.get_item(child).status == QueueItemStatus.PENDING

    def test_retry_conflicts_with_other_active_job(self):
        item_id = self.enqueue()
        self.queue.fail(item_id, "rejected", retryable=False)
        other = self.orchestrator.start_sync("CA-0001", SyncDirection.PUSH)
        assert other.created is True

        with pytest.raises(DuplicateActiveJobError) as exc_info:
            self.queue.retry_failed_items(self.job.id)

        assert exc_info.value.existing_job_id == other.job.id
        assert self.queue.get_item(item_id).status == QueueItemStatus.FAILED
        assert self.job_state().status == SyncJobStatus.COMPLETED

    def test_retry_cancelled_job_is_rejected(self):
        failed = self.enqueue("A")
        self.enqueue("B")
        self.queue.fail(failed, "rejected", retryable=False)
        self.orchestrator.cancel_sync_job(self.job.id)

        with pytest.raises(InvalidStateTransitionError):
            self.queue.retry_failed_items(self.job.id)

    def test_retry_skips_item_whose_key_is_taken(self):
        self.enqueue("KEEP")
        failed = self.enqueue("P1")
        self.queue.fail(failed, "rejected", retryable=False)
        replacement = self.enqueue("P1")

        assert replacement != failed
        assert self.queue.retry_failed_items(self.job.id) == 0
        assert self.queue.get_item(failed).status == QueueItemStatus.FAILED

    def test_retry_moves_dependents_to_item_holding_the_key(self):
        self.enqueue("KEEP")
        parent = self.enqueue("P1", OperationType.CREATE)
        child = self.enqueue("P1", OperationType.MOVE, depends_on_item_id=parent)
        self.queue.fail(parent, "rejected", retryable=False)
        assert self.queue.get_item(child).error_code == DEPENDENCY_FAILED
        replacement = self.enqueue("P1", OperationType.CREATE)

        assert self.queue.retry_failed_items(self.job.id) == 1

        assert self.queue.get_item(parent).status == QueueItemStatus.FAILED
        moved = self.queue.get_item(child)
        assert moved.status == QueueItemStatus.PENDING
        assert moved.depends_on_item_id == replacement
        assert child not in [item.id for item in self.queue.get_next_batch("CA-0001")]

        self.queue.complete(replacement)
        assert child in [item.id for item in self.queue.get_next_batch("CA-0001")]

    def test_retry_fails_dependents_of_skipped_predecessor_again(self):
        self.enqueue("KEEP")
        parent = self.enqueue("P1", OperationType.CREATE)
        child = self.enqueue("P1", OperationType.MOVE, depends_on_item_id=parent)
        self.queue.skip(parent, "no longer needed")
        assert self.queue.get_item(child).status == QueueItemStatus.FAILED

        assert self.queue.retry_failed_items(self.job.id) == 0

        item = self.queue.get_item(child)
        assert item.status == QueueItemStatus.FAILED
        assert item.error_code == DEPENDENCY_FAILED
        job = self.job_state()
        assert job.failed_items == 1
        assert job.processed_items == 2

    def test_retry_without_failures(self):
        self.enqueue()
        assert self.queue.retry_failed_items(self.job.id) == 0

    def test_retry_unknown_job(self):
        with pytest.raises(SyncJobNotFoundError):
            self.queue.retry_failed_items(uuid4())

    def test_cancel_job_items_leaves_delivered_items(self):
        done = self.enqueue("A")
        pending = self.enqueue("B")
        self.enqueue("C")
        self.queue.complete(done)

        assert self.queue.cancel_job_items(self.job.id, "operator stop") == 2
        assert self.queue.get_item(done).status == QueueItemStatus.COMPLETED
        cancelled = self.queue.get_item(pending)
        assert cancelled.status == QueueItemStatus.CANCELLED
        assert cancelled.error_message == "operator stop"
        assert self.job_state().processed_items == 3

    def test_cancel_job_items_cancels_abandoned_claims(self):
        abandoned = self.enqueue("A")
        self.queue.claim_next_batch("CA-0001", 1)
        self.clock.advance(seconds=self.settings.claim_timeout_seconds + 1)
        in_flight = self.enqueue("B")
        self.queue.claim_next_batch("CA-0001", 1)

        assert self.queue.cancel_job_items(self.job.id, "operator stop") == 1
        assert self.queue.get_item(abandoned).status == QueueItemStatus.CANCELLED
        assert self.queue.get_item(in_flight).status == QueueItemStatus.PROCESSING

    def test_jobs_with_due_retries(self):
        item_id = self.enqueue()
        assert self.queue.get_jobs_with_due_retries() == []

        self.queue.claim_next_batch("CA-0001")
        self.queue.fail(item_id, "Connection reset")
        assert self.queue.get_jobs_with_due_retries() == []

        self.clock.advance(seconds=60)
        assert self.queue.get_jobs_with_due_retries() == [self.job.id]

    def test_job_without_heartbeat_is_due(self):
        self.enqueue()
        self.clock.advance(seconds=self.settings.claim_timeout_seconds + 1)

        assert self.queue.get_jobs_with_due_retries() == [self.job.id]
