"""
Regulator API Adapter Module.

Provides the abstract contract for per-module regulator adapters (plants,
plant batches, harvests, packages, ...), the response type they return and
a registry the sync engine resolves adapters from. The wire-level HTTP
client lives behind these adapters.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from compliance_sync.sync.exceptions import (
    ApiError,
    PermanentApiError,
    RateLimitedError,
    TransientApiError,
)
from compliance_sync.sync.models import EntityType, OperationType

logger = logging.getLogger(__name__)


# Write operations each regulator module accepts
SUPPORTED_OPERATIONS: Dict[EntityType, FrozenSet[OperationType]] = {
    EntityType.PLANT_BATCH: frozenset({OperationType.CREATE, OperationType.CHANGE_PHASE}),
    EntityType.PLANT: frozenset({
        OperationType.MOVE, OperationType.CHANGE_PHASE, OperationType.HARVEST, OperationType.DESTROY,
    }),
    EntityType.HARVEST: frozenset({OperationType.PACKAGE, OperationType.RECORD_WASTE, OperationType.FINISH}),
    EntityType.PACKAGE: frozenset({
        OperationType.CREATE, OperationType.ADJUST, OperationType.REMEDIATE,
        OperationType.FINISH, OperationType.MOVE,
    }),
    EntityType.ITEM: frozenset({OperationType.CREATE, OperationType.UPDATE}),
    EntityType.STRAIN: frozenset({OperationType.CREATE, OperationType.UPDATE}),
    EntityType.LOCATION: frozenset({OperationType.CREATE}),
    EntityType.LAB_TEST: frozenset(),
    EntityType.PROCESSING_JOB: frozenset({OperationType.CREATE, OperationType.FINISH}),
    EntityType.TRANSFER: frozenset(),
}


@dataclass
class ApiResponse:
    """Result of one regulator API call."""
    success: bool
    data: Any = None
    error_message: Optional[str] = None
    status_code: int = 0
    rate_limited: bool = False
    retry_after: Optional[float] = None
    raw: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, status_code: int = 200, raw: Optional[str] = None) -> "ApiResponse":
        return cls(success=True, data=data, status_code=status_code, raw=raw)

    @classmethod
    def failure(
        cls,
        error_message: str,
        status_code: int = 0,
        raw: Optional[str] = None,
        retry_after: Optional[float] = None
    ) -> "ApiResponse":
        return cls(
            success=False,
            error_message=error_message,
            status_code=status_code,
            rate_limited=status_code == 429,
            retry_after=retry_after,
            raw=raw,
        )

    @property
    def records(self) -> List[Dict[str, Any]]:
        """Response data as a list of records."""
        if self.data is None:
            return []
        if isinstance(self.data, list):
            return self.data
        return [self.data]

    def raise_for_error(self) -> None:
        if not self.success:
            raise classify_api_response(self)


def classify_api_response(response: ApiResponse) -> ApiError:
    """
    Map a failed response onto the error taxonomy.

    429 (or the rate-limit flag) is throttling, other 4xx responses are
    regulator validation failures, everything else (network errors, 5xx,
    status 0) is transient.
    """
    message = response.error_message or f"Regulator API call failed with HTTP {response.status_code}"
    status_code = response.status_code or None

    if response.rate_limited or response.status_code == 429:
        return RateLimitedError(
            message,
            retry_after=response.retry_after,
            status_code=status_code or 429,
            response=response.raw,
        )
    if 400 <= response.status_code < 500:
        return PermanentApiError(message, status_code=status_code, response=response.raw)
    return TransientApiError(message, status_code=status_code, response=response.raw)


class RegulatorModuleAdapter(ABC):
    """
    Abstract base class for one regulator API module.

    Implementations translate calls into regulator HTTP requests and report
    failures through ApiResponse rather than raising, except for transport
    errors, which may surface as ApiError subclasses.
    """

    #: Regulator module name (e.g. "plants", "packages")
    module_name: str = ""

    #: Entity type this module synchronizes
    entity_type: EntityType

    def __init__(self):
        self._stats = {
            "total_reads": 0,
            "total_writes": 0,
            "total_errors": 0,
        }

    @property
    def supported_operations(self) -> FrozenSet[OperationType]:
        return SUPPORTED_OPERATIONS.get(self.entity_type, frozenset())

    @property
    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def supports(self, operation: OperationType) -> bool:
        return operation in self.supported_operations

    @abstractmethod
    async def get_active(self, license_number: str) -> ApiResponse:
        """
        Fetch every active record of this module.

        Returns:
            ApiResponse whose data is a list of raw regulator records
        """
        pass

    @abstractmethod
    async def get_changed_since(self, license_number: str, since: datetime) -> ApiResponse:
        """Fetch records modified at or after `since`."""
        pass

    @abstractmethod
    async def execute(
        self,
        license_number: str,
        operation: OperationType,
        payload: Dict[str, Any],
        remote_id: Optional[int] = None,
        remote_label: Optional[str] = None
    ) -> ApiResponse:
        """
        Perform a write operation (create, move, destroy, finish, ...).

        Returns:
            ApiResponse; on success `data` may carry the regulator id/label
        """
        pass

    def _record_read(self) -> None:
        self._stats["total_reads"] += 1

    def _record_write(self) -> None:
        self._stats["total_writes"] += 1

    def _record_error(self) -> None:
        self._stats["total_errors"] += 1


class AdapterRegistry:
    """Resolves the adapter for an entity type."""

    def __init__(self, adapters: Optional[List[RegulatorModuleAdapter]] = None):
        self._adapters: Dict[EntityType, RegulatorModuleAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: RegulatorModuleAdapter) -> None:
        """Register an adapter, replacing any previous one for its entity type."""
        self._adapters[adapter.entity_type] = adapter
        logger.info(f"Registered regulator adapter: {adapter.module_name or adapter.entity_type.value}")

    def get(self, entity_type: EntityType) -> Optional[RegulatorModuleAdapter]:
        return self._adapters.get(entity_type)

    def entity_types(self) -> List[EntityType]:
        """Registered entity types in declaration order."""
        return [entity_type for entity_type in EntityType if entity_type in self._adapters]

    def __contains__(self, entity_type: EntityType) -> bool:
        return entity_type in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)
