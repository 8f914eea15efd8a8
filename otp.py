"""
Email one-time codes for step-up verification.

Codes are stored hashed, live for ten minutes and allow a bounded number of
wrong guesses before the record is discarded.
"""

import logging
from datetime import timedelta

from sqlalchemy.orm import Session

import models
from errors import AuthenticationError, ExpiredError, ValidationError
from security import generate_numeric_code, hash_one_time_code, one_time_code_matches

logger = logging.getLogger(__name__)

OTP_TTL = timedelta(minutes=10)
MAX_OTP_ATTEMPTS = 5
CODE_LENGTH = 6


def issue_code(db: Session, user_id: str, purpose: str = "login") -> str:
    """Create a fresh code, replacing any outstanding one for the same purpose."""
    db.query(models.EmailOtp).filter(
        models.EmailOtp.user_id == user_id,
        models.EmailOtp.purpose == purpose,
    ).delete()

    code = generate_numeric_code(CODE_LENGTH)
    db.add(models.EmailOtp(
        user_id=user_id,
        purpose=purpose,
        code_hash=hash_one_time_code(code),
        expires_at=models.utcnow() + OTP_TTL,
    ))
    db.commit()
    return code


def verify_code(db: Session, user_id: str, code: str, purpose: str = "login") -> bool:
    code = (code or "").strip()
    if len(code) != CODE_LENGTH or not code.isdigit():
        raise ValidationError("Code must be 6 digits", code="INVALID_CODE_FORMAT")

    record = db.query(models.EmailOtp).filter(
        models.EmailOtp.user_id == user_id,
        models.EmailOtp.purpose == purpose,
    ).first()
    if not record:
        raise AuthenticationError("Invalid or expired code", code="INVALID_CODE")

    if models.utcnow() > models.as_utc(record.expires_at):
        db.delete(record)
        db.commit()
        raise ExpiredError("Code expired. Request a new one.", code="CODE_EXPIRED")

    if not one_time_code_matches(code, record.code_hash):
        db.query(models.EmailOtp).filter(models.EmailOtp.id == record.id).update(
            {"attempts": models.EmailOtp.attempts + 1}, synchronize_session=False
        )
        db.commit()
        db.refresh(record)
        if record.attempts >= MAX_OTP_ATTEMPTS:
            logger.warning(f"OTP for user {user_id} discarded after {record.attempts} failed attempts")
            db.delete(record)
            db.commit()
        raise AuthenticationError("Invalid or expired code", code="INVALID_CODE")

    db.delete(record)
    db.commit()
    return True
