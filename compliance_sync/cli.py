"""
Compliance sync operator command line tool.

Inspects and maintains the persisted sync state (jobs, queue items,
checkpoints) directly through the database.
"""

import argparse
import json
import logging
import sys
from typing import Any, List, Optional
from uuid import UUID

from compliance_sync.database.connection import DatabaseManager
from compliance_sync.database.init_db import create_database_tables, verify_database_setup
from compliance_sync.sync.exceptions import ComplianceSyncError
from compliance_sync.sync.models import EntityType, QueueItemStatus
from compliance_sync.sync.orchestrator.sync_orchestrator import ComplianceSyncOrchestrator

logging.basicConfig(level=logging.WARNING, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def format_json(data: Any) -> str:
    """Render pydantic models (or lists of them) as JSON."""
    if isinstance(data, list):
        data = [item.model_dump(mode="json") if hasattr(item, "model_dump") else item for item in data]
    elif hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="compliance_sync", description="Compliance sync operator tool")
    parser.add_argument("--database-url", help="Database URL (defaults to DATABASE_URL)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-db", help="Create the sync tables")

    status_parser = subparsers.add_parser("status", help="Sync status of a license")
    status_parser.add_argument("license_number", help="Regulator license number")

    jobs_parser = subparsers.add_parser("jobs", help="Recent sync jobs of a site")
    jobs_parser.add_argument("site_id", type=UUID, help="Site id")
    jobs_parser.add_argument("--limit", type=int, default=None, help="Number of jobs")

    items_parser = subparsers.add_parser("items", help="Queue items of a sync job")
    items_parser.add_argument("job_id", type=UUID, help="Sync job id")
    items_parser.add_argument("--status", choices=[s.value for s in QueueItemStatus], help="Status filter")
    items_parser.add_argument("--limit", type=int, default=None, help="Number of items")

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a sync job")
    cancel_parser.add_argument("job_id", type=UUID, help="Sync job id")
    cancel_parser.add_argument("--reason", default=None, help="Cancellation reason")

    retry_parser = subparsers.add_parser(
        "retry", help="Retry the failed items of a sync job (delivered by the service retry sweep)"
    )
    retry_parser.add_argument("job_id", type=UUID, help="Sync job id")

    reset_parser = subparsers.add_parser("reset-checkpoints", help="Force a full pull for a license")
    reset_parser.add_argument("license_number", help="Regulator license number")
    reset_parser.add_argument("--entity-type", choices=[e.value for e in EntityType], help="Only this entity type")

    migrate_parser = subparsers.add_parser("migrate", help="Apply Alembic migrations")
    migrate_parser.add_argument("revision", nargs="?", default="head", help="Target revision (default: head)")
    migrate_parser.add_argument("--config", default="alembic.ini", help="Path to alembic.ini")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--auto-sync", action="store_true", help="Run the auto-sync loop in the server")

    return parser


def run_migrations(config_path: str, revision: str, database_url: Optional[str] = None) -> None:
    from alembic import command
    from alembic.config import Config

    config = Config(config_path)
    if database_url:
        config.set_main_option("sqlalchemy.url", database_url)
    logger.info(f"Upgrading database to revision: {revision}")
    command.upgrade(config, revision)


def serve(host: str, port: int, auto_sync: bool, orchestrator: Optional[ComplianceSyncOrchestrator] = None) -> None:
    import uvicorn

    from compliance_sync.app import create_app
    from compliance_sync.system.logging_config import setup_logging

    setup_logging()
    app = create_app(orchestrator=orchestrator, enable_auto_sync=auto_sync)
    uvicorn.run(app, host=host, port=port, log_level="info")


def main(argv: Optional[List[str]] = None, orchestrator: Optional[ComplianceSyncOrchestrator] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    db = orchestrator.db if orchestrator else DatabaseManager(args.database_url)

    try:
        if args.command == "init-db":
            ok = create_database_tables(db) and verify_database_setup(db)
            print(format_json({"tables_created": ok}))
            return 0 if ok else 1

        if args.command == "migrate":
            run_migrations(args.config, args.revision, args.database_url)
            return 0

        orchestrator = orchestrator or ComplianceSyncOrchestrator(db)

        if args.command == "serve":
            serve(args.host, args.port, args.auto_sync, orchestrator)
            return 0

        if args.command == "status":
            print(format_json(orchestrator.get_sync_status(args.license_number)))

        elif args.command == "jobs":
            print(format_json(orchestrator.get_sync_jobs(args.site_id, limit=args.limit)))

        elif args.command == "items":
            status = QueueItemStatus(args.status) if args.status else None
            print(format_json(orchestrator.get_queue_items(args.job_id, status=status, limit=args.limit)))

        elif args.command == "cancel":
            cancelled = orchestrator.cancel_sync_job(args.job_id, args.reason)
            print(format_json({"job_id": str(args.job_id), "cancelled": cancelled}))

        elif args.command == "retry":
            items_reset = orchestrator.retry_failed_items(args.job_id)
            print(format_json({"job_id": str(args.job_id), "items_reset": items_reset}))

        elif args.command == "reset-checkpoints":
            entity_type = EntityType(args.entity_type) if args.entity_type else None
            removed = orchestrator.reset_checkpoints(args.license_number, entity_type)
            print(format_json({"license_number": args.license_number, "checkpoints_removed": removed}))

    except ComplianceSyncError as e:
        logger.error(f"Command failed: {e}")
        print(format_json({"error": str(e)}), file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
