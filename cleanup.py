"""
Scheduled removal of expired transfers and stale short-lived rows.

Each transfer is purged through the same conditional delete that explicit
deletes use, so two overlapping sweeps release its quota once.
"""

import hmac
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from sqlalchemy.orm import Session

import models
from errors import AuthenticationError
from storage import UPLOAD_URL_TTL, BlobStorage
from transfers import purge_transfer

load_dotenv()

logger = logging.getLogger(__name__)

CRON_SECRET = os.getenv("CRON_SECRET", "")
CLEANUP_BATCH_SIZE = int(os.getenv("CLEANUP_BATCH_SIZE", "100"))

# Pending library uploads are abandoned once their upload URL is long dead
STALE_UPLOAD_AGE = timedelta(seconds=UPLOAD_URL_TTL * 24)


@dataclass
class SweepReport:
    deleted_count: int = 0
    size_freed: int = 0
    errors: List[str] = field(default_factory=list)
    remaining: int = 0
    expired: List[Tuple[str, str]] = field(default_factory=list)   # (owner_id, transfer_id)
    purged_secrets: int = 0
    purged_uploads: int = 0

    def to_dict(self) -> dict:
        return {
            "deleted_count": self.deleted_count,
            "size_freed": self.size_freed,
            "errors": self.errors,
            "remaining": self.remaining,
            "purged_secrets": self.purged_secrets,
            "purged_uploads": self.purged_uploads,
        }


def verify_cron_secret(authorization: Optional[str]):
    """Bearer CRON_SECRET, compared in constant time. No configured secret means no access."""
    if not CRON_SECRET:
        logger.warning("Cleanup requested but CRON_SECRET is not configured")
        raise AuthenticationError("Unauthorized")
    expected = f"Bearer {CRON_SECRET}"
    if not hmac.compare_digest((authorization or "").encode("utf-8"), expected.encode("utf-8")):
        raise AuthenticationError("Unauthorized")


def purge_short_lived(db: Session, now: datetime) -> int:
    setups = (
        db.query(models.TwoFactorSetup)
        .filter(models.TwoFactorSetup.expires_at < now)
        .delete(synchronize_session=False)
    )
    otps = (
        db.query(models.EmailOtp)
        .filter(models.EmailOtp.expires_at < now)
        .delete(synchronize_session=False)
    )
    db.commit()
    return setups + otps


def purge_stale_uploads(db: Session, storage: BlobStorage, now: datetime, batch_size: int) -> int:
    stale = (
        db.query(models.StoredFile)
        .filter(
            models.StoredFile.transfer_pk.is_(None),
            models.StoredFile.status == models.FILE_PENDING,
            models.StoredFile.created_at < now - STALE_UPLOAD_AGE,
        )
        .limit(batch_size)
        .all()
    )
    purged = 0
    for stored in stale:
        storage.delete_object(stored.storage_key)
        # Never counted, so nothing to release
        purged += (
            db.query(models.StoredFile)
            .filter(models.StoredFile.id == stored.id, models.StoredFile.status == models.FILE_PENDING)
            .delete(synchronize_session=False)
        )
    db.commit()
    return purged


def expiry_sweep(db: Session, storage: BlobStorage, batch_size: int = None,
                 now: Optional[datetime] = None) -> SweepReport:
    now = now or models.utcnow()
    batch_size = batch_size or CLEANUP_BATCH_SIZE
    report = SweepReport()

    expired = (
        db.query(models.Transfer)
        .filter(models.Transfer.expires_at < now)
        .order_by(models.Transfer.expires_at)
        .limit(batch_size)
        .all()
    )
    for transfer in expired:
        transfer_id = transfer.transfer_id
        owner_id = transfer.owner_id
        try:
            released = purge_transfer(db, storage, transfer)
        except Exception as e:
            db.rollback()
            logger.error(f"Cleanup failed for transfer {transfer_id}: {e}")
            report.errors.append(f"{transfer_id}: {type(e).__name__}")
            continue
        if released is None:
            continue
        report.deleted_count += 1
        report.size_freed += released["size"]
        report.expired.append((owner_id, transfer_id))

    report.remaining = (
        db.query(models.Transfer)
        .filter(models.Transfer.expires_at < now)
        .count()
    )
    report.purged_secrets = purge_short_lived(db, now)
    report.purged_uploads = purge_stale_uploads(db, storage, now, batch_size)

    logger.info(
        f"Cleanup: {report.deleted_count} transfer(s) removed, {report.size_freed} bytes freed, "
        f"{report.remaining} remaining, {len(report.errors)} error(s)"
    )
    return report
