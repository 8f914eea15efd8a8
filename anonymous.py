"""
Senders without an account.

An anonymous sender is identified by a verified email address and limited by
a rolling 30-day window. Each anonymous transfer gets its own capability id
(`anon_…`); knowing that id is what proves ownership of the transfer.
"""

import logging
import re
import uuid
from datetime import timedelta

from sqlalchemy.orm import Session

import models
from errors import AuthenticationError, AuthorizationError, ExpiredError, PlanLimitError, ValidationError
from notifications import Mailer, verification_code_email
from quota import ANONYMOUS_LIMITS
from security import generate_numeric_code, hash_one_time_code, one_time_code_matches

logger = logging.getLogger(__name__)

CODE_TTL = timedelta(minutes=10)
MAX_CODE_ATTEMPTS = 5

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_CODE_RE = re.compile(r"^\d{6}$")


def normalize_email(email: str) -> str:
    normalized = (email or "").strip().lower()
    if not _EMAIL_RE.match(normalized):
        raise ValidationError("Invalid email format", code="INVALID_EMAIL")
    return normalized


def new_capability_id() -> str:
    return f"{models.ANONYMOUS_PREFIX}{uuid.uuid4().hex}"


def usage_of(sender: models.AnonymousSender) -> dict:
    return {
        "transfers_used": sender.monthly_transfers_used or 0,
        "transfers_limit": ANONYMOUS_LIMITS.monthly_transfers,
        "quota_used": sender.monthly_quota_used or 0,
        "quota_limit": ANONYMOUS_LIMITS.monthly_quota,
    }


def _reset_window_if_due(db: Session, sender: models.AnonymousSender):
    last_reset = models.as_utc(sender.last_reset_at)
    now = models.utcnow()
    if last_reset and now - last_reset < timedelta(days=ANONYMOUS_LIMITS.window_days):
        return

    # Only one caller wins the reset for a given window
    db.query(models.AnonymousSender).filter(
        models.AnonymousSender.email == sender.email,
        models.AnonymousSender.last_reset_at == sender.last_reset_at,
    ).update(
        {"monthly_quota_used": 0, "monthly_transfers_used": 0, "last_reset_at": now},
        synchronize_session=False,
    )
    db.commit()
    db.refresh(sender)


def get_sender(db: Session, email: str) -> models.AnonymousSender:
    sender = db.get(models.AnonymousSender, normalize_email(email))
    if sender:
        _reset_window_if_due(db, sender)
    return sender


def send_code(db: Session, email: str, mailer: Mailer) -> dict:
    normalized = normalize_email(email)
    sender = get_sender(db, normalized)
    if sender is None:
        sender = models.AnonymousSender(email=normalized, last_reset_at=models.utcnow())
        db.add(sender)

    if (sender.monthly_transfers_used or 0) >= ANONYMOUS_LIMITS.monthly_transfers:
        raise PlanLimitError(
            f"You reached the limit of {ANONYMOUS_LIMITS.monthly_transfers} transfers this month. "
            "Create an account for higher limits.",
            code="ANONYMOUS_LIMIT_EXCEEDED",
        )

    code = generate_numeric_code(6)
    sender.code_hash = hash_one_time_code(code)
    sender.code_expires_at = models.utcnow() + CODE_TTL
    sender.code_attempts = 0
    sender.verified_at = None
    db.commit()

    mailer.send_message(normalized, verification_code_email(code, int(CODE_TTL.total_seconds() // 60)))
    logger.info(f"Anonymous verification code sent to {normalized}")
    return usage_of(sender)


def _clear_code(sender: models.AnonymousSender):
    sender.code_hash = None
    sender.code_expires_at = None
    sender.code_attempts = 0


def verify_code(db: Session, email: str, code: str) -> dict:
    code = (code or "").strip()
    if not _CODE_RE.match(code):
        raise ValidationError("Code must be 6 digits", code="INVALID_CODE_FORMAT")

    sender = get_sender(db, email)
    if not sender or not sender.code_hash:
        raise AuthenticationError("Invalid or expired code", code="INVALID_CODE")

    if models.utcnow() > models.as_utc(sender.code_expires_at):
        _clear_code(sender)
        db.commit()
        raise ExpiredError("Code expired. Request a new one.", code="CODE_EXPIRED")

    if not one_time_code_matches(code, sender.code_hash):
        db.query(models.AnonymousSender).filter(models.AnonymousSender.email == sender.email).update(
            {"code_attempts": models.AnonymousSender.code_attempts + 1}, synchronize_session=False
        )
        db.commit()
        db.refresh(sender)
        if sender.code_attempts >= MAX_CODE_ATTEMPTS:
            logger.warning(f"Anonymous code for {sender.email} discarded after {sender.code_attempts} attempts")
            _clear_code(sender)
            db.commit()
        raise AuthenticationError("Invalid or expired code", code="INVALID_CODE")

    _clear_code(sender)
    sender.verified_at = models.utcnow()
    db.commit()
    return usage_of(sender)


def require_verified_sender(db: Session, email: str) -> models.AnonymousSender:
    sender = get_sender(db, email) if email else None
    if not sender or not sender.verified_at:
        raise AuthorizationError("Verify your email before sending", code="EMAIL_NOT_VERIFIED")
    return sender


def check_anonymous_limits(sender: models.AnonymousSender, total_size: int, file_count: int):
    if file_count > ANONYMOUS_LIMITS.max_files_per_transfer:
        raise PlanLimitError(
            f"At most {ANONYMOUS_LIMITS.max_files_per_transfer} files per transfer without an account",
            code="TOO_MANY_FILES",
        )
    if (sender.monthly_transfers_used or 0) >= ANONYMOUS_LIMITS.monthly_transfers:
        raise PlanLimitError("Monthly transfer limit reached", code="ANONYMOUS_LIMIT_EXCEEDED")
    if (sender.monthly_quota_used or 0) + total_size > ANONYMOUS_LIMITS.monthly_quota:
        raise PlanLimitError("Monthly quota exceeded", code="ANONYMOUS_QUOTA_EXCEEDED")


def record_anonymous_usage(db: Session, email: str, size: int = 0, transfers: int = 0) -> bool:
    if not email or not (size or transfers):
        return False
    updated = (
        db.query(models.AnonymousSender)
        .filter(models.AnonymousSender.email == normalize_email(email))
        .update(
            {
                "monthly_quota_used": models.AnonymousSender.monthly_quota_used + size,
                "monthly_transfers_used": models.AnonymousSender.monthly_transfers_used + transfers,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return bool(updated)
