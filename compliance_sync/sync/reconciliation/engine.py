"""
Reconciliation engine.

Read-only drift detection between the local system of record and the
regulator. Nothing is queued or persisted; errors surface to the caller.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from compliance_sync.sync.adapters.base import AdapterRegistry
from compliance_sync.sync.exceptions import ValidationError
from compliance_sync.sync.interfaces import EntityMapper, LocalRecordStore, diff_fields
from compliance_sync.sync.licenses import LicenseRepository
from compliance_sync.sync.models import EntityType
from compliance_sync.sync.schemas import Discrepancy, EntityReconciliation, ReconciliationReport
from compliance_sync.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

DEFAULT_ENTITY_TYPES = [
    EntityType.PLANT,
    EntityType.PLANT_BATCH,
    EntityType.HARVEST,
    EntityType.PACKAGE,
]


def compare_record_sets(
    entity_type: EntityType,
    local_records: Dict[str, Dict[str, Any]],
    remote_records: Dict[str, Dict[str, Any]],
    include_details: bool = False
) -> EntityReconciliation:
    """
    Compare two keyed record sets.

    `discrepancy_count` counts field-level mismatches among records present
    on both sides.
    """
    local_keys = set(local_records)
    remote_keys = set(remote_records)
    matched_keys = local_keys & remote_keys
    local_only = sorted(local_keys - remote_keys)
    remote_only = sorted(remote_keys - local_keys)

    discrepancies: List[Discrepancy] = []
    discrepancy_count = 0
    for key in sorted(matched_keys):
        local = local_records[key]
        remote = remote_records[key]
        changed = diff_fields(local, remote)
        discrepancy_count += len(changed)
        if include_details:
            discrepancies.extend(
                Discrepancy(
                    entity_type=entity_type,
                    key=key,
                    kind="field_mismatch",
                    field=name,
                    local_value=local[name],
                    remote_value=remote[name],
                )
                for name in changed
            )

    if include_details:
        discrepancies.extend(Discrepancy(entity_type=entity_type, key=key, kind="local_only") for key in local_only)
        discrepancies.extend(Discrepancy(entity_type=entity_type, key=key, kind="remote_only") for key in remote_only)

    return EntityReconciliation(
        entity_type=entity_type,
        local_count=len(local_keys),
        remote_count=len(remote_keys),
        matched_count=len(matched_keys),
        local_only_count=len(local_only),
        remote_only_count=len(remote_only),
        discrepancy_count=discrepancy_count,
        discrepancies=discrepancies if include_details else None,
    )


class ReconciliationEngine:
    """Compares local and regulator record sets per entity type."""

    def __init__(
        self,
        licenses: LicenseRepository,
        adapters: AdapterRegistry,
        mapper: EntityMapper,
        local_store: LocalRecordStore,
        clock: Clock = utcnow
    ):
        self.licenses = licenses
        self.adapters = adapters
        self.mapper = mapper
        self.local_store = local_store
        self.clock = clock

    async def reconcile(
        self,
        license_number: str,
        entity_types: Optional[List[EntityType]] = None,
        include_details: bool = False
    ) -> ReconciliationReport:
        """
        Build a drift report for a license.

        Raises:
            LicenseNotFoundError: License is not configured
            ValidationError: No adapter for a requested entity type
            ApiError: Regulator records could not be fetched
        """
        license = self.licenses.require(license_number)
        reconciled_at = self.clock()
        started = time.monotonic()

        results = []
        for entity_type in entity_types or DEFAULT_ENTITY_TYPES:
            results.append(await self.reconcile_entity_type(license.license_number, entity_type, include_details))

        report = ReconciliationReport(
            license_id=license.id,
            license_number=license.license_number,
            reconciled_at=reconciled_at,
            duration_seconds=time.monotonic() - started,
            entity_results=results,
        )

        if report.is_in_sync:
            logger.info(f"Reconciliation of {license.license_number}: in sync")
        else:
            logger.warning(f"Reconciliation of {license.license_number} found drift: {report.summary()}")
        return report

    async def reconcile_entity_type(
        self,
        license_number: str,
        entity_type: EntityType,
        include_details: bool = False
    ) -> EntityReconciliation:
        adapter = self.adapters.get(entity_type)
        if adapter is None:
            raise ValidationError(f"No regulator adapter registered for {entity_type.value}")

        response = await adapter.get_active(license_number)
        response.raise_for_error()

        remote_records = {}
        for record in response.records:
            key, fields = self.mapper.normalize_remote(entity_type, record)
            remote_records[key] = fields

        local_records = self.local_store.fetch_records(license_number, entity_type)
        return compare_record_sets(entity_type, local_records, remote_records, include_details)
