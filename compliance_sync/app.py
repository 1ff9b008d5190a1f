"""
Compliance Sync FastAPI Application
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from compliance_sync.api.sync_jobs import configure_sync_api, get_orchestrator, router as sync_router
from compliance_sync.config.settings import settings
from compliance_sync.sync.orchestrator.sync_orchestrator import ComplianceSyncOrchestrator
from compliance_sync.sync.reconciliation.engine import ReconciliationEngine
from compliance_sync.sync.scheduler.auto_sync import AutoSyncScheduler

logger = logging.getLogger(__name__)


def create_app(
    orchestrator: Optional[ComplianceSyncOrchestrator] = None,
    reconciliation_engine: Optional[ReconciliationEngine] = None,
    enable_auto_sync: bool = False,
    enable_retry_sweep: bool = True
) -> FastAPI:
    """
    Build the API application.

    Args:
        orchestrator: Engine facade; a default one over the global database is used if omitted
        reconciliation_engine: Enables the reconcile endpoint
        enable_auto_sync: Start syncs for licenses due for auto-sync while the app is up
        enable_retry_sweep: Resume running jobs whose queue retries are due while the app is up
    """
    if orchestrator is not None:
        configure_sync_api(orchestrator, reconciliation_engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.app.app_name} v{settings.app.app_version}")
        scheduler = None
        if enable_auto_sync or enable_retry_sweep:
            scheduler = AutoSyncScheduler(get_orchestrator(), auto_sync=enable_auto_sync)
            await scheduler.start()
        try:
            yield
        finally:
            logger.info("Shutting down application")
            if scheduler is not None:
                await scheduler.stop()

    app = FastAPI(
        title=settings.app.app_name,
        description="Regulator seed-to-sale compliance synchronization API",
        version=settings.app.app_version,
        debug=settings.app.debug,
        lifespan=lifespan,
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "detail": str(exc)},
        )

    @app.get("/health")
    async def health_check():
        healthy = get_orchestrator().db.test_connection()
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={"status": "healthy" if healthy else "unhealthy", "database": healthy},
        )

    app.include_router(sync_router)
    return app
