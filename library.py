"""
Standalone files kept in a registered user's library.

Library files share the StoredFile table with transfer files (transfer_pk is
NULL) and the same confirm and delete paths, so quota moves the same way.
"""

import logging
from typing import List

from sqlalchemy.orm import Session

import models
from access import CallerIdentity, ensure_owner
from errors import AuthenticationError, NotFoundError
from file_validation import sanitize_filename, validate_file
from quota import check_can_store
from storage import BlobStorage, generate_file_key
from transfers import UploadSlot, open_download

logger = logging.getLogger(__name__)


def _account(db: Session, caller: CallerIdentity) -> models.User:
    if caller.is_anonymous:
        raise AuthenticationError("Authentication required")
    user = db.get(models.User, caller.user_id)
    if not user:
        raise AuthenticationError("Invalid or expired token")
    return user


def request_library_upload(db: Session, storage: BlobStorage, caller: CallerIdentity,
                           name: str, size: int,
                           mime_type: str = "application/octet-stream") -> UploadSlot:
    user = _account(db, caller)
    validate_file(name, size, user.plan)
    check_can_store(user, size)

    safe_name = sanitize_filename(name)
    key = generate_file_key(user.id, safe_name)
    url = storage.issue_upload_locator(key, mime_type or "application/octet-stream")

    stored = models.StoredFile(
        transfer_pk=None,
        owner_id=user.id,
        storage_key=key,
        original_name=safe_name,
        mime_type=mime_type or "application/octet-stream",
        size=size,
        status=models.FILE_PENDING,
    )
    db.add(stored)
    db.commit()
    logger.info(f"Library upload slot {stored.id} issued to {user.id}")
    return UploadSlot(file_id=stored.id, name=safe_name, size=size, storage_key=key, upload_url=url)


def library_download_locator(db: Session, storage: BlobStorage, caller: CallerIdentity, file_id: str):
    stored = db.get(models.StoredFile, file_id)
    if not stored:
        raise NotFoundError("File not found")
    ensure_owner(caller, stored.owner_id)
    if stored.status != models.FILE_COMPLETED:
        raise NotFoundError("File not found")

    result = open_download(storage, stored)
    db.query(models.StoredFile).filter(models.StoredFile.id == stored.id).update(
        {"download_count": models.StoredFile.download_count + 1}, synchronize_session=False
    )
    db.commit()
    return result


def list_library(db: Session, caller: CallerIdentity) -> List[dict]:
    files = (
        db.query(models.StoredFile)
        .filter(
            models.StoredFile.owner_id == caller.user_id,
            models.StoredFile.transfer_pk.is_(None),
            models.StoredFile.status == models.FILE_COMPLETED,
        )
        .order_by(models.StoredFile.created_at.desc())
        .all()
    )
    return [serialize_file(f) for f in files]


def serialize_file(stored: models.StoredFile) -> dict:
    return {
        "id": stored.id,
        "name": stored.original_name,
        "size": stored.size,
        "mime_type": stored.mime_type,
        "status": stored.status,
        "is_encrypted": stored.is_encrypted,
        "download_count": stored.download_count,
        "created_at": models.as_utc(stored.created_at).isoformat() if stored.created_at else None,
    }
