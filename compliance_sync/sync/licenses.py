"""
License repository.

Looks up regulator license configuration, finds licenses due for automatic
synchronization and records the outcome of sync runs on the license row.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy import or_, select, update

from compliance_sync.database.connection import DatabaseManager, db_manager
from compliance_sync.sync.exceptions import LicenseNotFoundError, ValidationError
from compliance_sync.sync.models import LicenseModel
from compliance_sync.sync.schemas import LicenseSnapshot
from compliance_sync.utils.clock import Clock, ensure_utc, utcnow

logger = logging.getLogger(__name__)

# Regulator APIs reject polling faster than this
MIN_SYNC_INTERVAL_MINUTES = 5


def normalize_license_number(license_number: Optional[str]) -> str:
    """Trim and upper-case a license number; empty values are rejected."""
    normalized = (license_number or "").strip().upper()
    if not normalized:
        raise ValidationError("License number is required")
    return normalized


class LicenseRepository:
    """Persistence access for regulator licenses."""

    def __init__(self, db: Optional[DatabaseManager] = None, clock: Clock = utcnow):
        self.db = db or db_manager
        self.clock = clock

    def get_by_number(self, license_number: str) -> Optional[LicenseSnapshot]:
        license_number = normalize_license_number(license_number)
        with self.db.get_session() as session:
            row = session.execute(
                select(LicenseModel).where(LicenseModel.license_number == license_number)
            ).scalar_one_or_none()
            return LicenseSnapshot.model_validate(row) if row else None

    def require(self, license_number: str) -> LicenseSnapshot:
        """Get a license or raise LicenseNotFoundError."""
        license = self.get_by_number(license_number)
        if license is None:
            raise LicenseNotFoundError(normalize_license_number(license_number))
        return license

    def get_for_site(self, site_id: UUID) -> List[LicenseSnapshot]:
        with self.db.get_session() as session:
            rows = session.execute(
                select(LicenseModel)
                .where(LicenseModel.site_id == site_id)
                .order_by(LicenseModel.license_number)
            ).scalars().all()
            return [LicenseSnapshot.model_validate(row) for row in rows]

    def get_credential_ref(self, license_number: str) -> Optional[str]:
        """Reference into the credential store; the secret itself is never held here."""
        license_number = normalize_license_number(license_number)
        with self.db.get_session() as session:
            return session.execute(
                select(LicenseModel.credential_ref).where(LicenseModel.license_number == license_number)
            ).scalar_one_or_none()

    def get_due_for_sync(self) -> List[LicenseSnapshot]:
        """
        Licenses that should be synchronized now.

        A license is due when it is active, has credentials, has auto-sync
        enabled and its sync interval has elapsed since the last sync.
        """
        now = self.clock()
        with self.db.get_session() as session:
            rows = session.execute(
                select(LicenseModel)
                .where(LicenseModel.is_active.is_(True))
                .where(LicenseModel.auto_sync_enabled.is_(True))
                .order_by(LicenseModel.last_sync_at.is_not(None), LicenseModel.last_sync_at)
            ).scalars().all()

            due = []
            for row in rows:
                if not row.has_credentials:
                    continue
                interval = max(row.sync_interval_minutes or 0, MIN_SYNC_INTERVAL_MINUTES)
                last_sync_at = ensure_utc(row.last_sync_at)
                if last_sync_at is None or last_sync_at + timedelta(minutes=interval) <= now:
                    due.append(LicenseSnapshot.model_validate(row))
            return due

    def upsert_license(
        self,
        site_id: UUID,
        license_number: str,
        state_code: str,
        facility_name: str = "",
        credential_ref: Optional[str] = None,
        is_active: bool = True,
        use_sandbox: bool = False,
        auto_sync_enabled: bool = True,
        sync_interval_minutes: int = 15
    ) -> LicenseSnapshot:
        """Create or update the configuration of a license."""
        license_number = normalize_license_number(license_number)
        state_code = (state_code or "").strip().upper()
        if len(state_code) != 2:
            raise ValidationError(f"State code must be two letters, got '{state_code}'")
        if sync_interval_minutes < MIN_SYNC_INTERVAL_MINUTES:
            raise ValidationError(
                f"Sync interval must be at least {MIN_SYNC_INTERVAL_MINUTES} minutes"
            )

        with self.db.get_session() as session:
            row = session.execute(
                select(LicenseModel).where(LicenseModel.license_number == license_number)
            ).scalar_one_or_none()

            if row is None:
                row = LicenseModel(site_id=site_id, license_number=license_number, state_code=state_code)
                session.add(row)
                logger.info(f"Created license {license_number} for site {site_id}")

            row.site_id = site_id
            row.state_code = state_code
            row.facility_name = facility_name
            row.credential_ref = credential_ref
            row.is_active = is_active
            row.use_sandbox = use_sandbox
            row.auto_sync_enabled = auto_sync_enabled
            row.sync_interval_minutes = sync_interval_minutes
            session.flush()
            return LicenseSnapshot.model_validate(row)

    def set_credential_ref(self, license_number: str, credential_ref: Optional[str]) -> None:
        license_number = normalize_license_number(license_number)
        with self.db.get_session() as session:
            row = self._get_row(session, license_number)
            row.credential_ref = credential_ref

    def record_successful_sync(self, license_number: str, completed_at: Optional[datetime] = None) -> bool:
        """
        Record a completed sync run.

        Returns False, changing nothing, when a success at or after
        `completed_at` is already recorded.
        """
        license_number = normalize_license_number(license_number)
        completed_at = completed_at or self.clock()
        with self.db.get_session() as session:
            result = session.execute(
                update(LicenseModel)
                .where(LicenseModel.license_number == license_number)
                .where(or_(
                    LicenseModel.last_successful_sync_at.is_(None),
                    LicenseModel.last_successful_sync_at < completed_at,
                ))
                .values(last_sync_at=completed_at, last_successful_sync_at=completed_at, last_sync_error=None)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return True
            self._get_row(session, license_number)
            return False

    def record_failed_sync(self, license_number: str, error: str) -> None:
        with self.db.get_session() as session:
            row = self._get_row(session, normalize_license_number(license_number))
            row.last_sync_at = self.clock()
            row.last_sync_error = (error or "")[:2000]

    @staticmethod
    def _get_row(session, license_number: str) -> LicenseModel:
        row = session.execute(
            select(LicenseModel).where(LicenseModel.license_number == license_number)
        ).scalar_one_or_none()
        if row is None:
            raise LicenseNotFoundError(license_number)
        return row
