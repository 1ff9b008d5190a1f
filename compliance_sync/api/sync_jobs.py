"""
Compliance Sync API Routes.

Operator and scheduler entry points: start, inspect, cancel and retry sync
jobs, inspect queue items, license sync status, reconciliation and
checkpoint resets.
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from compliance_sync.sync.exceptions import (
    ApiError,
    DuplicateActiveJobError,
    InvalidStateTransitionError,
    LicenseNotFoundError,
    SyncJobNotFoundError,
    ValidationError,
)
from compliance_sync.sync.models import EntityType, QueueItemStatus, SyncDirection, SyncJobStatus
from compliance_sync.sync.orchestrator.sync_orchestrator import ComplianceSyncOrchestrator
from compliance_sync.sync.reconciliation.engine import ReconciliationEngine
from compliance_sync.sync.schemas import (
    QueueItemSnapshot,
    ReconciliationReport,
    StartSyncResult,
    SyncJobSnapshot,
    SyncStatusSummary,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/compliance/sync", tags=["compliance-sync"])


# ============================================================================
# Dependencies
# ============================================================================

_orchestrator: Optional[ComplianceSyncOrchestrator] = None
_reconciliation_engine: Optional[ReconciliationEngine] = None


def configure_sync_api(
    orchestrator: ComplianceSyncOrchestrator,
    reconciliation_engine: Optional[ReconciliationEngine] = None
) -> None:
    """Install the engine instances the routes use."""
    global _orchestrator, _reconciliation_engine
    _orchestrator = orchestrator
    _reconciliation_engine = reconciliation_engine


def get_orchestrator() -> ComplianceSyncOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ComplianceSyncOrchestrator()
    return _orchestrator


def get_reconciliation_engine() -> ReconciliationEngine:
    if _reconciliation_engine is None:
        raise HTTPException(status_code=503, detail="Reconciliation is not configured")
    return _reconciliation_engine


# ============================================================================
# Request/Response Models
# ============================================================================

class StartSyncRequest(BaseModel):
    """Request model for starting a sync run."""
    license_number: str = Field(..., min_length=1, max_length=50)
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    force_full_sync: bool = False
    initiated_by_user_id: Optional[str] = None
    execute: bool = Field(default=True, description="Run the job in the background after starting it")


class CancelSyncRequest(BaseModel):
    """Request model for cancelling a sync run."""
    reason: Optional[str] = Field(None, max_length=2000)


class CancelSyncResponse(BaseModel):
    job_id: UUID
    cancelled: bool
    message: str


class RetryFailedResponse(BaseModel):
    job_id: UUID
    items_reset: int


class ReconcileRequest(BaseModel):
    """Request model for a reconciliation report."""
    entity_types: Optional[List[EntityType]] = None
    include_details: bool = False


class CheckpointResetResponse(BaseModel):
    license_number: str
    entity_type: Optional[EntityType] = None
    checkpoints_removed: int


# ============================================================================
# Sync Jobs
# ============================================================================

@router.post("/jobs", response_model=StartSyncResult)
async def start_sync(
    request: StartSyncRequest,
    background_tasks: BackgroundTasks,
    orchestrator: ComplianceSyncOrchestrator = Depends(get_orchestrator)
):
    """
    Start a sync run for a license.

    Returns the already active job (created=false) when one is in progress;
    with `execute` that job is resumed in the background.
    """
    try:
        result = orchestrator.start_sync(
            request.license_number,
            direction=request.direction,
            force_full_sync=request.force_full_sync,
            initiated_by="user" if request.initiated_by_user_id else "system",
            initiated_by_user_id=request.initiated_by_user_id,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)

    if request.execute:
        if result.created:
            background_tasks.add_task(orchestrator.execute_job, result.job.id)
        elif result.job.status == SyncJobStatus.RUNNING:
            background_tasks.add_task(orchestrator.resume_job, result.job.id)
    return result


@router.get("/jobs/{job_id}", response_model=SyncJobSnapshot)
async def get_sync_job(
    job_id: UUID,
    orchestrator: ComplianceSyncOrchestrator = Depends(get_orchestrator)
):
    job = orchestrator.get_sync_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Sync job not found")
    return job


@router.get("/sites/{site_id}/jobs", response_model=List[SyncJobSnapshot])
async def list_sync_jobs(
    site_id: UUID,
    limit: Optional[int] = Query(None, ge=1, le=500),
    orchestrator: ComplianceSyncOrchestrator = Depends(get_orchestrator)
):
    """List the most recent sync jobs of a site."""
    return orchestrator.get_sync_jobs(site_id, limit=limit)


@router.post("/jobs/{job_id}/cancel", response_model=CancelSyncResponse)
async def cancel_sync_job(
    job_id: UUID,
    request: CancelSyncRequest = CancelSyncRequest(),
    orchestrator: ComplianceSyncOrchestrator = Depends(get_orchestrator)
):
    try:
        cancelled = orchestrator.cancel_sync_job(job_id, request.reason)
    except SyncJobNotFoundError:
        raise HTTPException(status_code=404, detail="Sync job not found")

    message = "Sync job cancelled" if cancelled else "Sync job already finished"
    return CancelSyncResponse(job_id=job_id, cancelled=cancelled, message=message)


@router.post("/jobs/{job_id}/retry-failed", response_model=RetryFailedResponse)
async def retry_failed_items(
    job_id: UUID,
    background_tasks: BackgroundTasks,
    orchestrator: ComplianceSyncOrchestrator = Depends(get_orchestrator)
):
    """Reset the failed queue items of a job and deliver them again in the background."""
    try:
        items_reset = orchestrator.retry_failed_items(job_id)
    except SyncJobNotFoundError:
        raise HTTPException(status_code=404, detail="Sync job not found")
    except (DuplicateActiveJobError, InvalidStateTransitionError) as e:
        raise HTTPException(status_code=409, detail=e.message)

    if items_reset:
        background_tasks.add_task(orchestrator.resume_job, job_id)
    return RetryFailedResponse(job_id=job_id, items_reset=items_reset)


@router.get("/jobs/{job_id}/items", response_model=List[QueueItemSnapshot])
async def get_queue_items(
    job_id: UUID,
    status: Optional[QueueItemStatus] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    orchestrator: ComplianceSyncOrchestrator = Depends(get_orchestrator)
):
    try:
        return orchestrator.get_queue_items(job_id, status=status, limit=limit)
    except SyncJobNotFoundError:
        raise HTTPException(status_code=404, detail="Sync job not found")


# ============================================================================
# Licenses
# ============================================================================

@router.get("/licenses/{license_number}/status", response_model=SyncStatusSummary)
async def get_sync_status(
    license_number: str,
    orchestrator: ComplianceSyncOrchestrator = Depends(get_orchestrator)
):
    try:
        return orchestrator.get_sync_status(license_number)
    except LicenseNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.post("/licenses/{license_number}/reconcile", response_model=ReconciliationReport)
async def reconcile_license(
    license_number: str,
    request: ReconcileRequest = ReconcileRequest(),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine)
):
    """Compare local and regulator records. Nothing is modified."""
    try:
        return await engine.reconcile(
            license_number,
            entity_types=request.entity_types,
            include_details=request.include_details,
        )
    except LicenseNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ApiError as e:
        logger.error(f"Reconciliation of {license_number} failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))


@router.delete("/licenses/{license_number}/checkpoints", response_model=CheckpointResetResponse)
async def reset_checkpoints(
    license_number: str,
    entity_type: Optional[EntityType] = None,
    orchestrator: ComplianceSyncOrchestrator = Depends(get_orchestrator)
):
    """Clear pull watermarks so the next pull is a full resync."""
    try:
        removed = orchestrator.reset_checkpoints(license_number, entity_type)
    except LicenseNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)

    return CheckpointResetResponse(
        license_number=license_number.strip().upper(),
        entity_type=entity_type,
        checkpoints_removed=removed,
    )
