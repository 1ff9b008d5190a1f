"""
Queue worker.

Claims ready outbound items for a license, dispatches each to the regulator
adapter for its entity type and records the outcome on the queue. Failures
are recorded per item and never abort a batch.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple
from uuid import UUID

from compliance_sync.config.settings import SyncSettings, settings
from compliance_sync.sync.adapters.base import AdapterRegistry
from compliance_sync.sync.exceptions import (
    ApiError,
    InvalidStateTransitionError,
    PermanentApiError,
    RateLimitedError,
)
from compliance_sync.sync.models import QueueItemStatus
from compliance_sync.sync.queue.manager import QueueManager
from compliance_sync.sync.schemas import QueueItemSnapshot

logger = logging.getLogger(__name__)

UNSUPPORTED = "UNSUPPORTED"
EXCEPTION = "EXCEPTION"


@dataclass
class WorkerStats:
    """Counters for one process_license run."""
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    released: int = 0

    @property
    def processed(self) -> int:
        return self.succeeded + self.retried + self.failed


def extract_remote_identifiers(data: Any) -> Tuple[Optional[int], Optional[str]]:
    """Regulator id and label from a write response body, when present."""
    if isinstance(data, list) and len(data) == 1:
        data = data[0]
    if not isinstance(data, dict):
        return None, None

    remote_id = data.get("id", data.get("Id"))
    remote_label = data.get("label", data.get("Label"))
    try:
        remote_id = int(remote_id) if remote_id is not None else None
    except (TypeError, ValueError):
        remote_id = None
    return remote_id, str(remote_label) if remote_label is not None else None


class QueueWorker:
    """Drains the outbound queue of one license at a time."""

    def __init__(
        self,
        queue: QueueManager,
        adapters: AdapterRegistry,
        sync_settings: Optional[SyncSettings] = None,
        worker_id: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.queue = queue
        self.adapters = adapters
        self.sync_settings = sync_settings or settings.sync
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._sleep = sleep

    @property
    def pacing_delay(self) -> float:
        """Seconds between regulator calls under the per-minute rate limit."""
        rate_limit = self.sync_settings.api_rate_limit_per_minute
        if rate_limit <= 0:
            return 0.0
        return 60.0 / rate_limit

    async def process_license(
        self,
        license_number: str,
        sync_job_id: Optional[UUID] = None,
        stop_event: Optional[asyncio.Event] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        on_batch: Optional[Callable[[], None]] = None
    ) -> WorkerStats:
        """
        Process ready items until the queue is drained or a stop is requested.

        Args:
            license_number: License whose queue to drain
            sync_job_id: Stop once this job is no longer running (cancelled elsewhere)
            stop_event: Set to stop after the current item
            should_stop: Polled before each item
            on_batch: Called after each batch (heartbeat)
        """
        stats = WorkerStats()
        self.queue.release_stale_claims(license_number)

        def stopping() -> bool:
            if stop_event and stop_event.is_set():
                return True
            if should_stop and should_stop():
                return True
            return sync_job_id is not None and not self.queue.is_job_running(sync_job_id)

        while not stopping():
            batch = self.queue.claim_next_batch(license_number, self.sync_settings.batch_size, self.worker_id)
            if not batch:
                break
            stats.claimed += len(batch)

            for index, item in enumerate(batch):
                if stopping():
                    stats.released += self._release(batch[index:])
                    logger.info(f"Worker {self.worker_id} stopping, released {stats.released} claimed item(s)")
                    return stats

                try:
                    await self._process_item(item, stats)
                except asyncio.CancelledError:
                    self._release(batch[index:])
                    raise

                if index < len(batch) - 1 and self.pacing_delay:
                    await self._sleep(self.pacing_delay)

            if on_batch:
                on_batch()

        logger.info(
            f"Worker {self.worker_id} finished {license_number}: {stats.succeeded} succeeded, "
            f"{stats.retried} retrying, {stats.failed} failed"
        )
        return stats

    async def _process_item(self, item: QueueItemSnapshot, stats: WorkerStats) -> None:
        adapter = self.adapters.get(item.entity_type)
        if adapter is None or not adapter.supports(item.operation_type):
            self._record_failure(
                item, stats,
                f"Operation {item.operation_type.value} is not supported for {item.entity_type.value}",
                code=UNSUPPORTED, retryable=False,
            )
            return

        try:
            payload = json.loads(item.payload_json)
            response = await adapter.execute(
                item.license_number,
                item.operation_type,
                payload,
                remote_id=item.remote_id,
                remote_label=item.remote_label,
            )
            response.raise_for_error()

            remote_id, remote_label = extract_remote_identifiers(response.data)
            self.queue.complete(item.id, remote_id, remote_label, response.raw or response.data)
            stats.succeeded += 1

        except asyncio.CancelledError:
            raise
        except RateLimitedError as e:
            self._record_failure(item, stats, e.message, code=e.code, response=e.response)
            backoff = e.retry_after or self.pacing_delay
            logger.warning(f"Rate limited by regulator for {item.license_number}, pausing {backoff:.1f}s")
            if backoff:
                await self._sleep(backoff)
        except PermanentApiError as e:
            self._record_failure(
                item, stats, e.message, code=e.code, response=e.response,
                retryable=self.sync_settings.retry_permanent_errors,
            )
        except ApiError as e:
            self._record_failure(item, stats, e.message, code=e.code, response=e.response)
        except InvalidStateTransitionError as e:
            # Item was cancelled or released underneath us
            logger.warning(f"Queue item {item.id} changed while processing: {e}")
        except Exception as e:
            logger.error(f"Unexpected error processing queue item {item.id}: {e}", exc_info=True)
            self._record_failure(item, stats, str(e), code=EXCEPTION)

    def _record_failure(
        self,
        item: QueueItemSnapshot,
        stats: WorkerStats,
        message: str,
        code: Optional[str] = None,
        response: Optional[str] = None,
        retryable: bool = True
    ) -> None:
        try:
            updated = self.queue.fail(item.id, message, code=code, response=response, retryable=retryable)
        except InvalidStateTransitionError as e:
            logger.warning(f"Could not record failure of queue item {item.id}: {e}")
            return

        if updated.status == QueueItemStatus.PENDING:
            stats.retried += 1
        else:
            stats.failed += 1

    def _release(self, items: List[QueueItemSnapshot]) -> int:
        return sum(1 for item in items if self.queue.release(item.id))
