"""
Per-account usage counters and plan limits.

Counters move only through single UPDATE statements so concurrent requests
never lose each other's changes. Decrements clamp at zero. Limit checks read
the last-known counters and are advisory: a burst of parallel requests may
overshoot a limit slightly.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

import models
from errors import PlanLimitError

logger = logging.getLogger(__name__)

GB = 1024 * 1024 * 1024
TB = 1024 * GB
UNLIMITED = -1


@dataclass(frozen=True)
class PlanLimits:
    storage_limit: int
    max_transfers: int
    retention_days: int
    max_files_per_transfer: int
    password_protection: bool
    custom_expiry: bool
    api_access: bool


PLAN_LIMITS = {
    models.PLAN_FREE: PlanLimits(15 * GB, 20, 7, 15, True, False, False),
    models.PLAN_STARTER: PlanLimits(500 * GB, 50, 14, 25, True, False, False),
    models.PLAN_PRO: PlanLimits(1 * TB, 100, 30, 50, True, True, True),
    models.PLAN_BUSINESS: PlanLimits(UNLIMITED, UNLIMITED, 365, UNLIMITED, True, True, True),
}


@dataclass(frozen=True)
class AnonymousLimits:
    monthly_quota: int
    monthly_transfers: int
    retention_days: int
    max_files_per_transfer: int
    window_days: int


ANONYMOUS_LIMITS = AnonymousLimits(
    monthly_quota=5 * GB,
    monthly_transfers=10,
    retention_days=5,
    max_files_per_transfer=10,
    window_days=30,
)


def get_plan_limits(plan: str) -> PlanLimits:
    return PLAN_LIMITS.get(plan, PLAN_LIMITS[models.PLAN_FREE])


def effective_storage_limit(user: models.User) -> int:
    if user.storage_limit is not None:
        return user.storage_limit
    return get_plan_limits(user.plan).storage_limit


def effective_max_transfers(user: models.User) -> int:
    if user.max_monthly_transfers is not None:
        return user.max_monthly_transfers
    return get_plan_limits(user.plan).max_transfers


def effective_retention_days(user: models.User) -> int:
    if user.retention_days:
        return user.retention_days
    return get_plan_limits(user.plan).retention_days


def _within(limit: int, value: int) -> bool:
    return limit == UNLIMITED or value <= limit


# ─── Atomic counters ─────────────────────────────────────────────────────────

def _clamped_decrement(column, delta: int):
    return case((column > delta, column - delta), else_=0)


def increment_usage(db: Session, owner_id: Optional[str], storage: int = 0,
                    transfers: int = 0, files: int = 0) -> bool:
    """Add to an account's counters in one statement. Anonymous and absent owners are skipped."""
    if not owner_id or models.is_anonymous_id(owner_id):
        return False
    if not (storage or transfers or files):
        return False

    values = {}
    if storage:
        values["storage_used"] = models.User.storage_used + storage
    if transfers:
        values["monthly_transfers"] = models.User.monthly_transfers + transfers
    if files:
        values["files_count"] = models.User.files_count + files

    updated = (
        db.query(models.User)
        .filter(models.User.id == owner_id)
        .update(values, synchronize_session=False)
    )
    db.commit()
    if not updated:
        logger.warning(f"Usage increment for unknown owner {owner_id}")
    return bool(updated)


def decrement_usage(db: Session, owner_id: Optional[str], storage: int = 0,
                    transfers: int = 0, files: int = 0) -> bool:
    """Subtract from an account's counters, never going below zero."""
    if not owner_id or models.is_anonymous_id(owner_id):
        return False
    if not (storage or transfers or files):
        return False

    values = {}
    if storage:
        values["storage_used"] = _clamped_decrement(models.User.storage_used, storage)
    if transfers:
        values["monthly_transfers"] = _clamped_decrement(models.User.monthly_transfers, transfers)
    if files:
        values["files_count"] = _clamped_decrement(models.User.files_count, files)

    updated = (
        db.query(models.User)
        .filter(models.User.id == owner_id)
        .update(values, synchronize_session=False)
    )
    db.commit()
    return bool(updated)


# ─── Limits ──────────────────────────────────────────────────────────────────

def check_can_create_transfer(user: models.User, total_size: int = 0, file_count: int = 0):
    """Advisory pre-check against the user's last-known counters."""
    limits = get_plan_limits(user.plan)

    max_files = limits.max_files_per_transfer
    if max_files != UNLIMITED and file_count > max_files:
        raise PlanLimitError(
            f"Your plan allows at most {max_files} files per transfer",
            code="TOO_MANY_FILES",
        )

    if not _within(effective_max_transfers(user), (user.monthly_transfers or 0) + 1):
        raise PlanLimitError("Monthly transfer limit reached", code="TRANSFER_LIMIT_EXCEEDED")

    if not _within(effective_storage_limit(user), (user.storage_used or 0) + total_size):
        raise PlanLimitError("Storage limit exceeded", code="STORAGE_LIMIT_EXCEEDED")


def check_can_store(user: models.User, size: int):
    if not _within(effective_storage_limit(user), (user.storage_used or 0) + size):
        raise PlanLimitError("Storage limit exceeded", code="STORAGE_LIMIT_EXCEEDED")


def reconcile_usage(db: Session, user_id: str) -> dict:
    """Recompute storage and file counters from completed files."""
    size, count = (
        db.query(func.coalesce(func.sum(models.StoredFile.size), 0), func.count(models.StoredFile.id))
        .filter(
            models.StoredFile.owner_id == user_id,
            models.StoredFile.status == models.FILE_COMPLETED,
        )
        .one()
    )
    db.query(models.User).filter(models.User.id == user_id).update(
        {"storage_used": int(size), "files_count": int(count)}, synchronize_session=False
    )
    db.commit()
    logger.info(f"Reconciled usage for {user_id}: {size} bytes in {count} files")
    return {"storage_used": int(size), "files_count": int(count)}


def usage_summary(user: models.User) -> dict:
    limits = get_plan_limits(user.plan)
    storage_limit = effective_storage_limit(user)
    max_transfers = effective_max_transfers(user)
    return {
        "plan": user.plan,
        "storage": {
            "used": user.storage_used or 0,
            "limit": storage_limit,
            "unlimited": storage_limit == UNLIMITED,
        },
        "transfers": {
            "used": user.monthly_transfers or 0,
            "limit": max_transfers,
            "unlimited": max_transfers == UNLIMITED,
        },
        "files_count": user.files_count or 0,
        "retention_days": effective_retention_days(user),
        "features": {
            "password_protection": limits.password_protection,
            "custom_expiry": limits.custom_expiry,
            "api_access": limits.api_access,
            "max_files_per_transfer": limits.max_files_per_transfer,
        },
    }
