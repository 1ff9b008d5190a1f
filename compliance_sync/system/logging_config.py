"""
Centralized Logging Configuration for the compliance sync service.

Provides structured logging with console output, rotating application and
error logs, and a dedicated audit stream for sync lifecycle events.
"""

import logging
import logging.handlers
import os
import sys
from typing import Any, Dict, Optional
from datetime import datetime

from compliance_sync.config.settings import settings


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured logging."""

    def format(self, record):
        # Add custom fields to log record
        record.service_name = getattr(record, 'service_name', 'compliance-sync')
        record.license_number = getattr(record, 'license_number', None)
        record.sync_job_id = getattr(record, 'sync_job_id', None)

        # Format timestamp
        record.timestamp = datetime.fromtimestamp(record.created).isoformat()

        return super().format(record)


def setup_logging(log_dir: Optional[str] = None, enable_file_logging: bool = True) -> None:
    """Setup comprehensive logging configuration."""

    log_dir = log_dir or settings.app.log_dir

    # Root logger configuration
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.app.log_level.upper(), logging.INFO))

    # Clear existing handlers
    root_logger.handlers.clear()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)

    console_format = (
        "%(asctime)s - %(name)s - %(levelname)s - "
        "%(message)s"
    )

    if settings.app.debug:
        console_format = (
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(filename)s:%(lineno)d] - %(message)s"
        )

    console_handler.setFormatter(logging.Formatter(console_format))
    root_logger.addHandler(console_handler)

    if enable_file_logging:
        os.makedirs(log_dir, exist_ok=True)

        # File handler for general application logs
        app_file_handler = logging.handlers.RotatingFileHandler(
            filename=os.path.join(log_dir, "app.log"),
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        app_file_handler.setLevel(logging.INFO)
        app_file_handler.setFormatter(StructuredFormatter(
            "%(timestamp)s - %(name)s - %(levelname)s - "
            "%(service_name)s - %(license_number)s - %(sync_job_id)s - %(message)s"
        ))
        root_logger.addHandler(app_file_handler)

        # Error file handler for errors and above
        error_file_handler = logging.handlers.RotatingFileHandler(
            filename=os.path.join(log_dir, "errors.log"),
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=10
        )
        error_file_handler.setLevel(logging.ERROR)
        error_file_handler.setFormatter(StructuredFormatter(
            "%(timestamp)s - %(name)s - %(levelname)s - "
            "%(service_name)s - %(license_number)s - %(sync_job_id)s - "
            "%(message)s"
        ))
        root_logger.addHandler(error_file_handler)

        # Audit log handler for sync lifecycle events
        audit_logger = logging.getLogger("sync_audit")
        audit_logger.setLevel(logging.INFO)
        audit_logger.propagate = False
        for handler in list(audit_logger.handlers):
            handler.close()
            audit_logger.removeHandler(handler)

        audit_file_handler = logging.handlers.RotatingFileHandler(
            filename=os.path.join(log_dir, "sync_audit.log"),
            maxBytes=50 * 1024 * 1024,  # 50MB
            backupCount=50  # Keep more audit logs
        )
        audit_file_handler.setFormatter(StructuredFormatter(
            "%(timestamp)s - %(action)s - %(license_number)s - "
            "%(sync_job_id)s - %(details)s"
        ))
        audit_logger.addHandler(audit_file_handler)

    # Set specific logger levels
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.info("Logging configuration initialized")


def log_sync_event(
    action: str,
    license_number: str,
    sync_job_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
) -> None:
    """Write a sync lifecycle event to the audit stream."""
    audit_logger = logging.getLogger("sync_audit")
    audit_logger.info(
        f"{action} {license_number}",
        extra={
            "action": action,
            "license_number": license_number,
            "sync_job_id": sync_job_id,
            "details": details or {},
        }
    )
