"""
Database initialization for the compliance sync service.

Creates the sync tables directly from the ORM metadata and performs a
smoke query against each of them.
"""

import logging
from typing import Optional

from sqlalchemy import select, func

from compliance_sync.database.connection import db_manager, DatabaseManager
from compliance_sync.sync.models import (
    LicenseModel,
    QueueItemModel,
    SyncCheckpointModel,
    SyncJobModel,
)

logger = logging.getLogger(__name__)


def create_database_tables(manager: Optional[DatabaseManager] = None) -> bool:
    """
    Create all database tables using SQLAlchemy.

    This is an alternative to using Alembic migrations for development/testing.
    """
    manager = manager or db_manager
    try:
        manager.create_tables()
        logger.info("Database tables created successfully")
        return True

    except Exception as e:
        logger.error(f"Failed to create database tables: {e}")
        return False


def verify_database_setup(manager: Optional[DatabaseManager] = None) -> bool:
    """
    Verify the database setup by querying each sync table.
    """
    manager = manager or db_manager
    try:
        if not manager.test_connection():
            logger.error("Database connection test failed")
            return False

        with manager.get_session() as session:
            license_count = session.execute(select(func.count(LicenseModel.id))).scalar()
            job_count = session.execute(select(func.count(SyncJobModel.id))).scalar()
            item_count = session.execute(select(func.count(QueueItemModel.id))).scalar()
            checkpoint_count = session.execute(select(func.count(SyncCheckpointModel.id))).scalar()

            logger.info(f"Database test successful - Tables exist with counts: "
                        f"licenses={license_count}, sync_jobs={job_count}, "
                        f"queue_items={item_count}, checkpoints={checkpoint_count}")
            return True

    except Exception as e:
        logger.error(f"Database setup test failed: {e}")
        return False
