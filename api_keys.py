"""
Long-lived programmatic credentials.

Only the SHA-256 of a key is stored; the full key is shown once at creation.
"""

import base64
import hashlib
import logging
import secrets
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

import models
from errors import AuthenticationError, NotFoundError, PlanLimitError, ValidationError
from quota import get_plan_limits

logger = logging.getLogger(__name__)

KEY_PREFIX = "fly_"
DISPLAY_PREFIX_LENGTH = 12
PERMISSIONS = ("read", "write", "delete")
DEFAULT_PERMISSIONS = ["read", "write"]
MAX_KEYS_PER_USER = 10


def generate_api_key():
    """Returns (full_key, display_prefix, sha256_hex)."""
    raw = base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii").rstrip("=")
    key = f"{KEY_PREFIX}{raw}"
    return key, key[:DISPLAY_PREFIX_LENGTH], hash_api_key(key)


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def looks_like_api_key(token: str) -> bool:
    return bool(token) and token.startswith(KEY_PREFIX)


def can_use_api_keys(user: models.User) -> bool:
    return get_plan_limits(user.plan).api_access


def create_api_key(db: Session, user: models.User, name: str,
                   permissions: Optional[List[str]] = None,
                   expires_in_days: Optional[int] = None):
    if not can_use_api_keys(user):
        raise PlanLimitError("API keys require a Pro or Business plan")

    name = (name or "").strip()
    if not name or len(name) > 100:
        raise ValidationError("Key name must be 1-100 characters")

    permissions = list(permissions or DEFAULT_PERMISSIONS)
    unknown = [p for p in permissions if p not in PERMISSIONS]
    if unknown:
        raise ValidationError(f"Unknown permissions: {', '.join(unknown)}")

    if expires_in_days is not None and not (1 <= expires_in_days <= 365):
        raise ValidationError("expires_in_days must be between 1 and 365")

    existing = db.query(models.ApiKey).filter(models.ApiKey.user_id == user.id).count()
    if existing >= MAX_KEYS_PER_USER:
        raise PlanLimitError(f"At most {MAX_KEYS_PER_USER} API keys per account")

    key, prefix, key_hash = generate_api_key()
    record = models.ApiKey(
        user_id=user.id,
        name=name,
        key_prefix=prefix,
        key_hash=key_hash,
        permissions=sorted(set(permissions), key=PERMISSIONS.index),
        expires_at=models.utcnow() + timedelta(days=expires_in_days) if expires_in_days else None,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info(f"API key {record.key_prefix}… created for user {user.id}")
    return record, key


def resolve_api_key(db: Session, key: str) -> models.ApiKey:
    """Look up a presented key. Unknown, inactive and expired keys fail identically."""
    exc = AuthenticationError("Invalid or expired token")
    if not looks_like_api_key(key):
        raise exc

    record = db.query(models.ApiKey).filter(models.ApiKey.key_hash == hash_api_key(key)).first()
    if not record or not record.is_active:
        raise exc
    if record.expires_at and models.utcnow() > models.as_utc(record.expires_at):
        raise exc

    db.query(models.ApiKey).filter(models.ApiKey.id == record.id).update(
        {"usage_count": models.ApiKey.usage_count + 1, "last_used_at": models.utcnow()},
        synchronize_session=False,
    )
    db.commit()
    return record


def list_api_keys(db: Session, user_id: str) -> List[models.ApiKey]:
    return (
        db.query(models.ApiKey)
        .filter(models.ApiKey.user_id == user_id)
        .order_by(models.ApiKey.created_at.desc())
        .all()
    )


def _owned_key(db: Session, key_id: str, user_id: str) -> models.ApiKey:
    record = db.query(models.ApiKey).filter(models.ApiKey.id == key_id).first()
    if not record or record.user_id != user_id:
        raise NotFoundError("API key not found")
    return record


def delete_api_key(db: Session, key_id: str, user_id: str):
    record = _owned_key(db, key_id, user_id)
    db.delete(record)
    db.commit()
    logger.info(f"API key {record.key_prefix}… deleted by user {user_id}")


def toggle_api_key(db: Session, key_id: str, user_id: str) -> models.ApiKey:
    record = _owned_key(db, key_id, user_id)
    record.is_active = not record.is_active
    db.commit()
    return record


def serialize_api_key(record: models.ApiKey) -> dict:
    return {
        "id": record.id,
        "name": record.name,
        "key_prefix": record.key_prefix,
        "permissions": record.permissions,
        "usage_count": record.usage_count,
        "last_used_at": record.last_used_at.isoformat() if record.last_used_at else None,
        "expires_at": record.expires_at.isoformat() if record.expires_at else None,
        "is_active": record.is_active,
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }
