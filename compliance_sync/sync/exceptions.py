"""
Error taxonomy for the compliance sync engine.
"""

from typing import Optional
from uuid import UUID


class ComplianceSyncError(Exception):
    """Base exception for the compliance sync engine."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ValidationError(ComplianceSyncError):
    """Request cannot be accepted (missing license, credentials, bad input). No work is created."""


class LicenseNotFoundError(ValidationError):
    """License number is not configured."""

    def __init__(self, license_number: str):
        self.license_number = license_number
        super().__init__(f"License {license_number} not found")


class SyncJobNotFoundError(ComplianceSyncError):
    """Sync job does not exist."""

    def __init__(self, job_id: UUID):
        self.job_id = job_id
        super().__init__(f"Sync job {job_id} not found")


class QueueItemNotFoundError(ComplianceSyncError):
    """Queue item does not exist."""

    def __init__(self, item_id: UUID):
        self.item_id = item_id
        super().__init__(f"Queue item {item_id} not found")


class InvalidStateTransitionError(ComplianceSyncError):
    """A status transition was requested from a status that does not allow it."""

    def __init__(self, entity: str, entity_id: UUID, current: str, target: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} {entity_id} from {current} to {target}")


class DuplicateActiveJobError(ComplianceSyncError):
    """Another non-terminal job already exists for the license."""

    def __init__(self, license_number: str, existing_job_id: UUID):
        self.license_number = license_number
        self.existing_job_id = existing_job_id
        super().__init__(f"Sync job already in progress for {license_number}: {existing_job_id}")


class ApiError(ComplianceSyncError):
    """Regulator API call failed."""

    default_code = "API_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        response: Optional[str] = None
    ):
        self.code = code or self.default_code
        self.status_code = status_code
        self.response = response
        super().__init__(message)

    def __str__(self):
        base_msg = f"{self.code}: {self.message}"
        if self.status_code:
            base_msg += f" (HTTP {self.status_code})"
        return base_msg


class TransientApiError(ApiError):
    """Network failure, timeout or 5xx. Retried up to max retries."""

    default_code = "TRANSIENT"


class RateLimitedError(TransientApiError):
    """Regulator throttled the call (HTTP 429)."""

    default_code = "RATE_LIMITED"

    def __init__(
        self,
        message: str = "Rate limited by regulator API",
        retry_after: Optional[float] = None,
        status_code: Optional[int] = 429,
        response: Optional[str] = None
    ):
        self.retry_after = retry_after
        super().__init__(message, status_code=status_code, response=response)


class PermanentApiError(ApiError):
    """Regulator rejected the payload (4xx validation)."""

    default_code = "REJECTED"
