"""
Property-based tests for the outbound queue.

Tests properties that must hold for any sequence of queue operations:
- Deduplication: one active item per idempotency key
- Retry budget: an item fails terminally exactly when its retries are spent
- Ordering: no item is handed out before its predecessor completed
- Backoff delays never decrease and never exceed the cap
"""

from hypothesis import given, settings, strategies as st
from hypothesis.strategies import composite

from compliance_sync.sync.models import EntityType, OperationType, QueueItemStatus, SyncDirection
from compliance_sync.sync.orchestrator.sync_orchestrator import ComplianceSyncOrchestrator
from compliance_sync.sync.reconciliation.engine import compare_record_sets
from compliance_sync.utils.retry import RetryPolicy, RetryStrategy

from fakes import FakeClock, create_license, make_database, make_sync_settings


def new_queue(**settings_overrides):
    """Fresh database, license and running job for one example."""
    clock = FakeClock()
    db = make_database()
    create_license(db, clock=clock)
    orchestrator = ComplianceSyncOrchestrator(
        db, sync_settings=make_sync_settings(**settings_overrides), clock=clock
    )
    job = orchestrator.start_sync("CA-0001", SyncDirection.PUSH).job
    return orchestrator.queue, job, clock


def enqueue(queue, job, local_id, operation=OperationType.MOVE, **kwargs):
    return queue.enqueue(
        job.id, job.site_id, job.license_number, EntityType.PACKAGE, operation, local_id,
        {"LocalId": local_id}, **kwargs
    )


@composite
def dependency_graph(draw):
    """List of predecessor indexes (or None); predecessors always come earlier."""
    size = draw(st.integers(min_value=1, max_value=8))
    parents = []
    for index in range(size):
        if index == 0:
            parents.append(None)
        else:
            parents.append(draw(st.one_of(st.none(), st.integers(min_value=0, max_value=index - 1))))
    return parents


class TestQueueProperties:

    @given(
        st.lists(st.sampled_from(["P1", "P2", "P3"]), min_size=1, max_size=12),
        st.sampled_from([OperationType.MOVE, OperationType.ADJUST, OperationType.FINISH]),
    )
    @settings(max_examples=25, deadline=None)
    def test_one_active_item_per_key(self, local_ids, operation):
        queue, job, _ = new_queue()

        returned = {}
        for local_id in local_ids:
            item_id = enqueue(queue, job, local_id, operation)
            assert returned.setdefault(local_id, item_id) == item_id

        items = queue.get_items(job.id)
        assert len(items) == len(set(local_ids))
        assert len({item.idempotency_key for item in items}) == len(items)

    @given(st.integers(min_value=1, max_value=6), st.integers(min_value=1, max_value=8))
    @settings(max_examples=30, deadline=None)
    def test_fails_terminally_when_retries_spent(self, max_retries, failures):
        queue, job, _ = new_queue(backoff_base_seconds=0)
        item_id = enqueue(queue, job, "P1", max_retries=max_retries)

        for attempt in range(1, failures + 1):
            item = queue.fail(item_id, "Service Unavailable", code="TRANSIENT")
            assert item.retry_count == attempt
            if item.status == QueueItemStatus.FAILED:
                break

        assert item.retry_count == min(failures, max_retries)
        if failures >= max_retries:
            assert item.status == QueueItemStatus.FAILED
        else:
            assert item.status == QueueItemStatus.PENDING

    @given(dependency_graph(), st.lists(st.booleans(), min_size=8, max_size=8))
    @settings(max_examples=25, deadline=None)
    def test_predecessor_completes_first(self, parents, outcomes):
        queue, job, clock = new_queue(max_retries=1)
        item_ids = []
        for index, parent in enumerate(parents):
            depends_on = item_ids[parent] if parent is not None else None
            item_ids.append(enqueue(queue, job, f"P{index}", depends_on_item_id=depends_on))
            clock.advance(seconds=1)

        handed_out = set()
        while True:
            batch = queue.claim_next_batch("CA-0001", worker_id="prop")
            if not batch:
                break
            for item in batch:
                assert item.id not in handed_out
                handed_out.add(item.id)
                if item.depends_on_item_id is not None:
                    assert queue.get_item(item.depends_on_item_id).status == QueueItemStatus.COMPLETED
            for item in batch:
                if outcomes[item_ids.index(item.id)]:
                    queue.complete(item.id)
                else:
                    queue.fail(item.id, "Invalid Tag", code="REJECTED", retryable=False)

        # Nothing is left waiting behind a failed predecessor
        assert all(item.is_terminal for item in queue.get_items(job.id))


class TestRetryDelayProperties:

    @given(
        st.sampled_from(list(RetryStrategy)),
        st.floats(min_value=0, max_value=600),
        st.floats(min_value=0, max_value=7200),
    )
    @settings(max_examples=50, deadline=None)
    def test_delays_non_decreasing_and_capped(self, strategy, base_delay, max_delay):
        policy = RetryPolicy(strategy=strategy, base_delay=base_delay, max_delay=max_delay)
        delays = [policy.calculate_delay(n) for n in range(1, 12)]

        assert delays == sorted(delays)
        assert all(0 <= delay <= max_delay for delay in delays)


class TestReconciliationProperties:

    records = st.dictionaries(
        st.text(alphabet="ABC123-", min_size=1, max_size=6),
        st.fixed_dictionaries({"Quantity": st.integers(min_value=0, max_value=5)}),
        max_size=6,
    )

    @given(records, records)
    @settings(max_examples=50, deadline=None)
    def test_comparison_is_symmetric(self, local, remote):
        forward = compare_record_sets(EntityType.PACKAGE, local, remote)
        backward = compare_record_sets(EntityType.PACKAGE, remote, local)

        assert forward.local_only_count == backward.remote_only_count
        assert forward.remote_only_count == backward.local_only_count
        assert forward.discrepancy_count == backward.discrepancy_count
        assert forward.matched_count + forward.local_only_count == len(local)

    @given(records)
    @settings(max_examples=25, deadline=None)
    def test_record_set_is_in_sync_with_itself(self, local):
        assert compare_record_sets(EntityType.PACKAGE, local, dict(local)).is_in_sync
