"""
Incremental pull phase.

Reads regulator-side changes per entity type, applies new or changed records
to the local store and advances the pull checkpoint.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from compliance_sync.sync.adapters.base import AdapterRegistry
from compliance_sync.sync.checkpoints import CheckpointStore
from compliance_sync.sync.interfaces import EntityMapper, LocalRecordStore
from compliance_sync.sync.models import EntityType, SyncDirection
from compliance_sync.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class PullResult:
    """Outcome of pulling one entity type."""
    entity_type: EntityType
    success: bool
    full_pull: bool
    fetched: int = 0
    applied: int = 0
    error: Optional[str] = None


class PullPhase:
    """Pulls regulator changes into the local store."""

    def __init__(
        self,
        checkpoints: CheckpointStore,
        adapters: AdapterRegistry,
        mapper: EntityMapper,
        local_store: LocalRecordStore,
        clock: Clock = utcnow
    ):
        self.checkpoints = checkpoints
        self.adapters = adapters
        self.mapper = mapper
        self.local_store = local_store
        self.clock = clock

    async def run(
        self,
        license_number: str,
        entity_types: Optional[List[EntityType]] = None
    ) -> Dict[EntityType, PullResult]:
        """
        Pull every requested entity type that has an adapter.

        A failing entity type is recorded on its checkpoint and does not stop
        the others.
        """
        results = {}
        for entity_type in entity_types or self.adapters.entity_types():
            if entity_type not in self.adapters:
                logger.debug(f"No adapter registered for {entity_type.value}, skipping pull")
                continue
            results[entity_type] = await self.pull_entity_type(license_number, entity_type)
        return results

    async def pull_entity_type(self, license_number: str, entity_type: EntityType) -> PullResult:
        adapter = self.adapters.get(entity_type)
        started_at = self.clock()
        checkpoint = self.checkpoints.get(license_number, entity_type, SyncDirection.PULL)
        full_pull = checkpoint is None or checkpoint.watermark is None
        result = PullResult(entity_type=entity_type, success=False, full_pull=full_pull)

        try:
            if full_pull:
                response = await adapter.get_active(license_number)
            else:
                response = await adapter.get_changed_since(license_number, checkpoint.watermark)
            response.raise_for_error()

            local_records = self.local_store.fetch_records(license_number, entity_type)
            for record in response.records:
                key, fields = self.mapper.normalize_remote(entity_type, record)
                comparison = self.mapper.compare(local_records.get(key), fields)
                if comparison.is_new or comparison.has_changes:
                    self.local_store.apply_remote_record(license_number, entity_type, key, fields, comparison)
                    result.applied += 1
                result.fetched += 1

            # The next incremental pull starts where this one started
            self.checkpoints.record_success(license_number, entity_type, started_at, result.fetched)
            result.success = True

            logger.info(
                f"Pulled {result.fetched} {entity_type.value} record(s) for {license_number} "
                f"({'full' if full_pull else 'incremental'}), applied {result.applied}"
            )

        except asyncio.CancelledError:
            raise
        except Exception as e:
            result.error = str(e)
            logger.error(f"Pull of {entity_type.value} for {license_number} failed: {e}")
            self.checkpoints.record_failure(license_number, entity_type, result.error)

        return result
