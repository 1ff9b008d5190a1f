"""
External collaborator contracts for the sync engine.

The engine does not know the cultivation domain model. It talks to it
through three seams:

- EntityMapper: domain change -> regulator payload, and raw regulator record
  -> (match key, comparable fields)
- LocalRecordStore: the local system of record, keyed like the mapper keys
  regulator records
- ChangeSource: locally originated mutations awaiting delivery
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from compliance_sync.sync.models import EntityType, OperationType

# Relative tolerance for numeric field comparison (weights, quantities)
FLOAT_TOLERANCE = 1e-6


def normalize_value(value: Any) -> Any:
    """Canonical form used when comparing a local and a remote field."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def values_equal(local: Any, remote: Any) -> bool:
    local = normalize_value(local)
    remote = normalize_value(remote)

    if isinstance(local, bool) or isinstance(remote, bool):
        return local == remote
    if isinstance(local, (int, float)) and isinstance(remote, (int, float)):
        return math.isclose(local, remote, rel_tol=FLOAT_TOLERANCE, abs_tol=FLOAT_TOLERANCE)
    return local == remote


def diff_fields(local: Dict[str, Any], remote: Dict[str, Any]) -> List[str]:
    """Names of fields present on both sides whose values differ, sorted."""
    return sorted(
        name for name in set(local) & set(remote)
        if not values_equal(local[name], remote[name])
    )


@dataclass
class MappedSyncResult:
    """How a regulator record relates to its local counterpart."""
    is_new: bool
    has_changes: bool
    changed_fields: List[str] = field(default_factory=list)


@dataclass
class OutboundChange:
    """A locally originated mutation to deliver to the regulator."""
    entity_type: EntityType
    operation_type: OperationType
    local_entity_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    priority: Optional[int] = None
    remote_id: Optional[int] = None
    remote_label: Optional[str] = None
    # (local_entity_id, operation) of a change that must be delivered first
    depends_on: Optional[Tuple[str, OperationType]] = None

    @property
    def change_key(self) -> Tuple[str, OperationType]:
        return (self.local_entity_id, self.operation_type)


class EntityMapper(ABC):
    """Translates between local domain records and regulator records."""

    @abstractmethod
    def to_payload(self, change: OutboundChange) -> Dict[str, Any]:
        """Build the regulator request payload for a change."""
        pass

    @abstractmethod
    def normalize_remote(self, entity_type: EntityType, record: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """
        Reduce a raw regulator record to its match key and comparable fields.

        The key must match the one LocalRecordStore uses for the same record
        (usually the regulator label or id).
        """
        pass

    def compare(self, local: Optional[Dict[str, Any]], remote: Dict[str, Any]) -> MappedSyncResult:
        if local is None:
            return MappedSyncResult(is_new=True, has_changes=True, changed_fields=sorted(remote))
        changed = diff_fields(local, remote)
        return MappedSyncResult(is_new=False, has_changes=bool(changed), changed_fields=changed)


class LocalRecordStore(ABC):
    """Local system of record for regulator-tracked entities."""

    @abstractmethod
    def fetch_records(self, license_number: str, entity_type: EntityType) -> Dict[str, Dict[str, Any]]:
        """Authoritative local records keyed like EntityMapper.normalize_remote."""
        pass

    @abstractmethod
    def apply_remote_record(
        self,
        license_number: str,
        entity_type: EntityType,
        key: str,
        fields: Dict[str, Any],
        result: MappedSyncResult
    ) -> None:
        """Store a new or changed regulator record locally."""
        pass


class ChangeSource(ABC):
    """Provides local mutations that have not been delivered yet."""

    @abstractmethod
    def collect_changes(self, license_number: str, since: Optional[datetime]) -> List[OutboundChange]:
        """
        Changes made since the last successful push.

        Args:
            license_number: License to collect changes for
            since: Last successful push, or None for everything outstanding
        """
        pass
