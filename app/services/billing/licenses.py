"""License/entitlement sink.

The reconciliation engine only talks to the ``LicenseSink`` protocol. The
database implementation keeps the one-active-license-per-user rule by always
deactivating every other license before activating the requested one, inside
the caller's transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy.orm import Session

from app.models.license import LicenseStatus, UserLicense
from app.services.common import as_utc

logger = logging.getLogger(__name__)


class LicenseSink(Protocol):
    def activate_license(
        self, user_id: str, plan_id: str, expires_at: datetime | None
    ) -> None: ...

    def deactivate_license(self, user_id: str, plan_id: str) -> None: ...


class DatabaseLicenseSink:
    """Writes UserLicense rows in the caller's session; never commits."""

    def __init__(self, db: Session):
        self.db = db

    def activate_license(
        self, user_id: str, plan_id: str, expires_at: datetime | None
    ) -> UserLicense:
        now = datetime.now(timezone.utc)
        others = (
            self.db.query(UserLicense)
            .filter(UserLicense.user_id == user_id)
            .filter(UserLicense.license_type_id != plan_id)
            .filter(UserLicense.status == LicenseStatus.active)
            .all()
        )
        for other in others:
            other.status = LicenseStatus.cancelled
            other.end_date = now
        if others:
            logger.info(
                "Deactivated %d license(s) for user %s before activating %s",
                len(others),
                user_id,
                plan_id,
            )
        self.db.flush()

        license_row = (
            self.db.query(UserLicense)
            .filter(UserLicense.user_id == user_id)
            .filter(UserLicense.license_type_id == plan_id)
            .first()
        )
        if license_row is None:
            license_row = UserLicense(
                user_id=user_id,
                license_type_id=plan_id,
                start_date=now,
            )
            self.db.add(license_row)
        elif license_row.status != LicenseStatus.active:
            license_row.start_date = now
        # Replays of the same state must not touch the row
        if license_row.status != LicenseStatus.active:
            license_row.status = LicenseStatus.active
        if as_utc(license_row.end_date) != as_utc(expires_at):
            license_row.end_date = expires_at
        self.db.flush()
        return license_row

    def deactivate_license(self, user_id: str, plan_id: str) -> None:
        license_row = (
            self.db.query(UserLicense)
            .filter(UserLicense.user_id == user_id)
            .filter(UserLicense.license_type_id == plan_id)
            .filter(UserLicense.status == LicenseStatus.active)
            .first()
        )
        if license_row is None:
            return
        license_row.status = LicenseStatus.cancelled
        license_row.end_date = datetime.now(timezone.utc)
        self.db.flush()
        logger.info("Deactivated license %s for user %s", plan_id, user_id)


def active_licenses(db: Session, user_id: str) -> list[UserLicense]:
    return (
        db.query(UserLicense)
        .filter(UserLicense.user_id == user_id)
        .filter(UserLicense.status == LicenseStatus.active)
        .all()
    )
