"""
Outbound Queue Module.

Durable outbox for regulator mutations and the worker that drains it.
"""

from compliance_sync.sync.queue.manager import QueueManager, build_idempotency_key
from compliance_sync.sync.queue.worker import QueueWorker, WorkerStats

__all__ = [
    "QueueManager",
    "QueueWorker",
    "WorkerStats",
    "build_idempotency_key",
]
