"""
transfers.py — Transfer and file lifecycle.

A transfer is created `pending`, collects files through presigned upload
slots, and becomes `active` on confirm. Expiry is never stored: a transfer
is expired whenever `now > expires_at`, whatever its status says.

Quota moves exactly once per file in each direction. Confirm counts a file
only if its own pending→completed update matched a row; delete uncounts it
only if the delete removed a completed row. Those conditional statements are
the idempotence guard, so repeated or overlapping calls are no-ops.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Iterator, List, Optional, Sequence

from sqlalchemy import case, func
from sqlalchemy.orm import Session

import models
from access import CallerIdentity, ensure_owner
from analytics import DownloadRecord, record_download, transfer_stats
from anonymous import (
    check_anonymous_limits, new_capability_id, normalize_email,
    record_anonymous_usage, require_verified_sender,
)
from database import SessionLocal
from encryption import ALGORITHM, decode_key, decrypt, encrypt
from errors import (
    AuthenticationError, ConflictError, DecryptionError, ExpiredError, FlyFileError,
    NotFoundError, PlanLimitError, ValidationError,
)
from file_validation import sanitize_filename, validate_file
from notifications import Mailer, sender_confirmation_email, transfer_notification_email
from quota import (
    ANONYMOUS_LIMITS, UNLIMITED, check_can_create_transfer, check_can_store, decrement_usage,
    effective_retention_days, get_plan_limits, increment_usage,
)
from rate_limit import RateLimiter
from security import hash_password, verify_password as check_password
from storage import BlobStorage, generate_file_key
from webhooks import dispatch_event

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_DAYS = 7
MIN_EXPIRY_DAYS = 1
MAX_EXPIRY_DAYS = 365
MAX_TITLE_LENGTH = 100
MAX_BULK_IDS = 50
DOWNLOAD_CHUNK_SIZE = 64 * 1024
DELIVERY_METHODS = ("link", "email")

UNSET = object()


# ─── Value types ─────────────────────────────────────────────────────────────

@dataclass
class FileSpec:
    name: str
    size: int
    mime_type: str = "application/octet-stream"
    encryption_key: Optional[str] = None     # base64, when the client encrypted the bytes
    encryption_iv: Optional[str] = None


@dataclass
class UploadSlot:
    file_id: str
    name: str
    size: int
    storage_key: str
    upload_url: str


@dataclass
class CreatedTransfer:
    transfer: models.Transfer
    upload_slots: List[UploadSlot]
    capability_id: Optional[str] = None     # returned once to anonymous senders


@dataclass
class ConfirmResult:
    confirmed_files: int
    counted_size: int
    activated: bool


@dataclass
class DownloadLocator:
    url: str
    filename: str


@dataclass
class DecryptedDownload:
    chunks: Iterator[bytes]
    filename: str
    mime_type: str
    size: int


@dataclass
class BulkResult:
    deleted: List[str] = field(default_factory=list)
    failed: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"deleted": self.deleted, "failed": self.failed}


def iter_chunks(data: bytes, size: int = DOWNLOAD_CHUNK_SIZE) -> Iterator[bytes]:
    for start in range(0, len(data), size):
        yield data[start:start + size]


def validate_title(title: str) -> str:
    title = (title or "").strip()
    if not (1 <= len(title) <= MAX_TITLE_LENGTH):
        raise ValidationError(f"Title must be 1-{MAX_TITLE_LENGTH} characters", code="INVALID_TITLE")
    return title


def clamp_expiry_days(days: int) -> int:
    return max(MIN_EXPIRY_DAYS, min(MAX_EXPIRY_DAYS, int(days)))


def open_download(storage: BlobStorage, stored: models.StoredFile):
    """Locator for plaintext blobs; decrypted bytes for encrypted ones."""
    if not stored.is_encrypted:
        url = storage.issue_download_locator(stored.storage_key, filename=stored.original_name)
        return DownloadLocator(url=url, filename=stored.original_name)

    if not stored.encryption_key or not stored.encryption_iv:
        raise DecryptionError("Encryption metadata missing")
    ciphertext = storage.fetch_bytes(stored.storage_key)
    # Fully decrypted (and tag-checked) before the first byte is sent
    plaintext = decrypt(ciphertext, decode_key(stored.encryption_key), decode_key(stored.encryption_iv))
    return DecryptedDownload(
        chunks=iter_chunks(plaintext),
        filename=stored.original_name,
        mime_type=stored.mime_type or "application/octet-stream",
        size=len(plaintext),
    )


def purge_transfer(db: Session, storage: BlobStorage, transfer: models.Transfer,
                   uncount_transfer: bool = False) -> Optional[dict]:
    """
    Delete a transfer's blobs and metadata, then release its quota.
    Returns what was released, or None when another caller already removed it.
    """
    files = db.query(models.StoredFile).filter(models.StoredFile.transfer_pk == transfer.id).all()
    for stored in files:
        if not storage.delete_object(stored.storage_key):
            logger.warning(f"Blob {stored.storage_key} left behind while deleting transfer {transfer.transfer_id}")

    completed = [f for f in files if f.status == models.FILE_COMPLETED]
    size = sum(f.size or 0 for f in completed)
    was_active = transfer.status == models.TRANSFER_ACTIVE
    owner_id = transfer.owner_id

    removed = (
        db.query(models.Transfer)
        .filter(models.Transfer.id == transfer.id)
        .delete(synchronize_session=False)
    )
    db.query(models.StoredFile).filter(models.StoredFile.transfer_pk == transfer.id).delete(
        synchronize_session=False
    )
    db.commit()
    if not removed:
        return None

    decrement_usage(
        db, owner_id,
        storage=size,
        files=len(completed),
        transfers=1 if (uncount_transfer and was_active) else 0,
    )
    return {"size": size, "files": len(completed)}


# ─── Service ─────────────────────────────────────────────────────────────────

class TransferService:

    def __init__(self, db: Session, storage: BlobStorage, limiter: RateLimiter = None,
                 mailer: Mailer = None, tasks=None,
                 session_factory: Callable[[], Session] = SessionLocal):
        self.db = db
        self.storage = storage
        self.limiter = limiter or RateLimiter()
        self.mailer = mailer
        self.tasks = tasks
        self.session_factory = session_factory

    def _defer(self, fn, *args, **kwargs):
        # Side effects run after the response; nothing here may fail the request
        if self.tasks is not None:
            self.tasks.add_task(fn, *args, **kwargs)

    # ── lookups ──

    def _transfer(self, transfer_id: str) -> models.Transfer:
        transfer = (
            self.db.query(models.Transfer)
            .filter(models.Transfer.transfer_id == transfer_id)
            .first()
        )
        if not transfer:
            raise NotFoundError("Transfer not found")
        return transfer

    def _accessible_transfer(self, transfer_id: str) -> models.Transfer:
        transfer = self._transfer(transfer_id)
        if transfer.is_expired():
            raise ExpiredError("This transfer has expired")
        if transfer.status != models.TRANSFER_ACTIVE:
            raise NotFoundError("Transfer not found")
        return transfer

    def _file(self, file_id: str) -> models.StoredFile:
        stored = self.db.get(models.StoredFile, file_id)
        if not stored:
            raise NotFoundError("File not found")
        return stored

    # ── create ──

    def create_transfer(
        self,
        caller: CallerIdentity,
        title: str,
        expiry_days: Optional[int] = None,
        password: Optional[str] = None,
        recipient_email: Optional[str] = None,
        message: Optional[str] = None,
        delivery_method: str = "link",
        sender_name: Optional[str] = None,
        sender_email: Optional[str] = None,
        files: Sequence[FileSpec] = (),
        source: str = "web",
    ) -> CreatedTransfer:
        title = validate_title(title)
        files = list(files or [])
        password = password or None

        if delivery_method not in DELIVERY_METHODS:
            raise ValidationError("delivery_method must be 'link' or 'email'")
        if recipient_email:
            recipient_email = normalize_email(recipient_email)
        elif delivery_method == "email":
            raise ValidationError("recipient_email is required for email delivery")

        total_size = sum(max(0, f.size or 0) for f in files)

        if caller.is_anonymous:
            sender = require_verified_sender(self.db, sender_email)
            if password:
                raise PlanLimitError("Password protection requires an account", code="FEATURE_NOT_AVAILABLE")
            for spec in files:
                validate_file(spec.name, spec.size, "anonymous")
            check_anonymous_limits(sender, total_size, len(files))
            requested = DEFAULT_EXPIRY_DAYS if expiry_days is None else expiry_days
            days = min(clamp_expiry_days(requested), ANONYMOUS_LIMITS.retention_days)
            owner_id = new_capability_id()
            sender_email = sender.email
        else:
            user = self.db.get(models.User, caller.user_id)
            if not user:
                raise AuthenticationError("Invalid or expired token")
            limits = get_plan_limits(user.plan)
            if password and not limits.password_protection:
                raise PlanLimitError("Your plan does not include password protection", code="FEATURE_NOT_AVAILABLE")
            for spec in files:
                validate_file(spec.name, spec.size, user.plan)
            check_can_create_transfer(user, total_size, len(files))

            retention = effective_retention_days(user)
            days = clamp_expiry_days(retention if expiry_days is None else expiry_days)
            if days > retention and not limits.custom_expiry:
                raise PlanLimitError(
                    f"Your plan keeps transfers for at most {retention} days",
                    code="EXPIRY_LIMIT_EXCEEDED",
                )
            owner_id = user.id
            sender_email = sender_email or user.email

        transfer = models.Transfer(
            transfer_id=models.new_uuid(),
            owner_id=owner_id,
            title=title,
            message=(message or None),
            recipient_email=recipient_email,
            sender_name=(sender_name or "").strip()[:255] or None,
            sender_email=sender_email,
            password_hash=hash_password(password) if password else None,
            delivery_method=delivery_method,
            status=models.TRANSFER_PENDING,
            total_size=total_size,
            file_count=len(files),
            source=source,
            expires_at=models.utcnow() + timedelta(days=days),
        )
        self.db.add(transfer)
        self.db.commit()
        self.db.refresh(transfer)

        capability = owner_id if caller.is_anonymous else None
        slots = [
            self.request_upload_slot(transfer, caller, spec, capability_id=capability)
            for spec in files
        ]
        logger.info(
            f"Transfer {transfer.transfer_id} created by {caller.user_id or 'anonymous'}: "
            f"{len(slots)} file(s), expires in {days}d"
        )
        return CreatedTransfer(transfer=transfer, upload_slots=slots, capability_id=capability)

    def _pending_size(self, transfer: models.Transfer) -> int:
        return int(
            self.db.query(func.coalesce(func.sum(models.StoredFile.size), 0))
            .filter(
                models.StoredFile.transfer_pk == transfer.id,
                models.StoredFile.status == models.FILE_PENDING,
            )
            .scalar()
        )

    def _check_room(self, transfer: models.Transfer, owner: Optional[models.User], size: int):
        """Advisory: the new file plus the transfer's uncounted files must fit the owner's quota."""
        needed = self._pending_size(transfer) + size
        if models.is_anonymous_id(transfer.owner_id):
            sender = require_verified_sender(self.db, transfer.sender_email)
            check_anonymous_limits(sender, needed, 1)
        elif owner is not None:
            check_can_store(owner, needed)

    def request_upload_slot(self, transfer: models.Transfer, caller: CallerIdentity,
                            spec: FileSpec, capability_id: Optional[str] = None,
                            check_quota: bool = False) -> UploadSlot:
        ensure_owner(caller, transfer.owner_id, capability_id)
        if transfer.is_expired():
            raise ExpiredError("This transfer has expired")
        if transfer.status != models.TRANSFER_PENDING:
            raise ValidationError("Files can only be added before the transfer is confirmed",
                                  code="TRANSFER_NOT_PENDING")

        position = (
            self.db.query(func.count(models.StoredFile.id))
            .filter(models.StoredFile.transfer_pk == transfer.id)
            .scalar()
        )
        owner = None
        if models.is_anonymous_id(transfer.owner_id):
            max_files, plan = ANONYMOUS_LIMITS.max_files_per_transfer, "anonymous"
        else:
            owner = self.db.get(models.User, transfer.owner_id)
            plan = owner.plan if owner else models.PLAN_FREE
            max_files = get_plan_limits(plan).max_files_per_transfer
        if max_files != UNLIMITED and position >= max_files:
            raise PlanLimitError(f"At most {max_files} files per transfer", code="TOO_MANY_FILES")
        validate_file(spec.name, spec.size, plan)
        if check_quota:
            self._check_room(transfer, owner, spec.size)

        name = sanitize_filename(spec.name)
        key = generate_file_key(transfer.transfer_id, name)
        url = self.storage.issue_upload_locator(key, spec.mime_type or "application/octet-stream")

        client_encrypted = bool(spec.encryption_key and spec.encryption_iv)
        if client_encrypted:
            # Malformed key metadata fails the upload request
            decode_key(spec.encryption_key)
            decode_key(spec.encryption_iv)
        stored = models.StoredFile(
            transfer_pk=transfer.id,
            owner_id=transfer.owner_id,
            storage_key=key,
            original_name=name,
            mime_type=spec.mime_type or "application/octet-stream",
            size=spec.size,
            is_encrypted=client_encrypted,
            encryption_algorithm=ALGORITHM if client_encrypted else None,
            encryption_key=spec.encryption_key if client_encrypted else None,
            encryption_iv=spec.encryption_iv if client_encrypted else None,
            status=models.FILE_PENDING,
            position=position,
        )
        self.db.add(stored)
        if client_encrypted and not transfer.is_encrypted:
            transfer.is_encrypted = True
        self.db.commit()
        return UploadSlot(file_id=stored.id, name=name, size=spec.size, storage_key=key, upload_url=url)

    def add_file(self, caller: CallerIdentity, transfer_id: str, spec: FileSpec,
                 capability_id: Optional[str] = None) -> UploadSlot:
        transfer = self._transfer(transfer_id)
        slot = self.request_upload_slot(transfer, caller, spec, capability_id, check_quota=True)
        self.db.query(models.Transfer).filter(models.Transfer.id == transfer.id).update(
            {
                "total_size": models.Transfer.total_size + spec.size,
                "file_count": models.Transfer.file_count + 1,
            },
            synchronize_session=False,
        )
        self.db.commit()
        return slot

    def upload_content(self, caller: CallerIdentity, transfer_id: str, file_id: str, data: bytes,
                       capability_id: Optional[str] = None, encrypt_content: bool = True) -> models.StoredFile:
        """Server-side upload path: the bytes are encrypted here before they reach storage."""
        transfer = self._transfer(transfer_id)
        stored = self._file(file_id)
        if stored.transfer_pk != transfer.id:
            raise NotFoundError("File not found")
        ensure_owner(caller, transfer.owner_id, capability_id)
        if transfer.is_expired():
            raise ExpiredError("This transfer has expired")
        if stored.status != models.FILE_PENDING:
            raise ValidationError("File already uploaded", code="FILE_ALREADY_CONFIRMED")

        plan = "anonymous" if models.is_anonymous_id(transfer.owner_id) else (
            getattr(self.db.get(models.User, transfer.owner_id), "plan", models.PLAN_FREE)
        )
        validate_file(stored.original_name, len(data), plan)

        if encrypt_content:
            result = encrypt(data)
            self.storage.put_bytes(stored.storage_key, result.ciphertext)
            stored.is_encrypted = True
            stored.encryption_algorithm = ALGORITHM
            stored.encryption_key = result.key_b64
            stored.encryption_iv = result.iv_b64
            transfer.is_encrypted = True
        else:
            self.storage.put_bytes(stored.storage_key, data, stored.mime_type)

        size_delta = len(data) - (stored.size or 0)
        stored.size = len(data)
        if size_delta:
            transfer.total_size = max(0, (transfer.total_size or 0) + size_delta)
        self.db.commit()
        return stored

    # ── confirm ──

    def _flip_completed(self, file_id: str) -> bool:
        return bool(
            self.db.query(models.StoredFile)
            .filter(models.StoredFile.id == file_id, models.StoredFile.status == models.FILE_PENDING)
            .update({"status": models.FILE_COMPLETED, "updated_at": models.utcnow()}, synchronize_session=False)
        )

    def _count_usage(self, owner_id: str, sender_email: Optional[str], size: int, files: int, transfers: int):
        if models.is_anonymous_id(owner_id):
            record_anonymous_usage(self.db, sender_email, size=size, transfers=transfers)
        else:
            increment_usage(self.db, owner_id, storage=size, files=files, transfers=transfers)

    def confirm_upload(self, caller: CallerIdentity, file_id: Optional[str] = None,
                       transfer_id: Optional[str] = None,
                       capability_id: Optional[str] = None) -> ConfirmResult:
        if bool(file_id) == bool(transfer_id):
            raise ValidationError("Provide either file_id or transfer_id")

        if file_id:
            return self._confirm_file(caller, file_id, capability_id)

        transfer = self._transfer(transfer_id)
        ensure_owner(caller, transfer.owner_id, capability_id)
        if transfer.is_expired():
            raise ExpiredError("This transfer has expired")

        pending = (
            self.db.query(models.StoredFile)
            .filter(
                models.StoredFile.transfer_pk == transfer.id,
                models.StoredFile.status == models.FILE_PENDING,
            )
            .all()
        )
        counted_size = 0
        counted_files = 0
        for stored in pending:
            if self._flip_completed(stored.id):
                counted_size += stored.size or 0
                counted_files += 1

        total_size, file_count = (
            self.db.query(func.coalesce(func.sum(models.StoredFile.size), 0), func.count(models.StoredFile.id))
            .filter(
                models.StoredFile.transfer_pk == transfer.id,
                models.StoredFile.status == models.FILE_COMPLETED,
            )
            .one()
        )
        activated = bool(
            self.db.query(models.Transfer)
            .filter(models.Transfer.id == transfer.id, models.Transfer.status == models.TRANSFER_PENDING)
            .update({"status": models.TRANSFER_ACTIVE}, synchronize_session=False)
        )
        self.db.query(models.Transfer).filter(models.Transfer.id == transfer.id).update(
            {"total_size": int(total_size), "file_count": int(file_count), "updated_at": models.utcnow()},
            synchronize_session=False,
        )
        self.db.commit()

        self._count_usage(transfer.owner_id, transfer.sender_email, counted_size, counted_files,
                          1 if activated else 0)
        self.db.refresh(transfer)

        if activated:
            logger.info(f"Transfer {transfer.transfer_id} active: {file_count} file(s), {total_size} bytes")
            self._after_activation(transfer)
        return ConfirmResult(confirmed_files=counted_files, counted_size=counted_size, activated=activated)

    def _confirm_file(self, caller: CallerIdentity, file_id: str,
                      capability_id: Optional[str]) -> ConfirmResult:
        stored = self._file(file_id)
        ensure_owner(caller, stored.owner_id, capability_id)

        transfer = self.db.get(models.Transfer, stored.transfer_pk) if stored.transfer_pk else None
        if transfer is not None and transfer.is_expired():
            raise ExpiredError("This transfer has expired")

        flipped = self._flip_completed(stored.id)
        self.db.commit()
        if not flipped:
            return ConfirmResult(confirmed_files=0, counted_size=0, activated=False)

        sender_email = transfer.sender_email if transfer is not None else None
        self._count_usage(stored.owner_id, sender_email, stored.size or 0, 1, 0)
        self._defer(dispatch_event, self.session_factory, stored.owner_id, "file.uploaded", {
            "file_id": stored.id, "name": stored.original_name, "size": stored.size,
        })
        return ConfirmResult(confirmed_files=1, counted_size=stored.size or 0, activated=False)

    def _after_activation(self, transfer: models.Transfer):
        if self.mailer is not None:
            if transfer.delivery_method == "email" and transfer.recipient_email:
                self._defer(self.mailer.send_quietly, transfer.recipient_email, transfer_notification_email(
                    sender_name=transfer.sender_name,
                    title=transfer.title,
                    transfer_id=transfer.transfer_id,
                    file_count=transfer.file_count,
                    expires_at=transfer.expires_at,
                    message=transfer.message,
                    has_password=bool(transfer.password_hash),
                ))
            if transfer.sender_email:
                self._defer(self.mailer.send_quietly, transfer.sender_email, sender_confirmation_email(
                    title=transfer.title,
                    transfer_id=transfer.transfer_id,
                    recipient_email=transfer.recipient_email,
                    file_count=transfer.file_count,
                    expires_at=transfer.expires_at,
                ))
        self._defer(dispatch_event, self.session_factory, transfer.owner_id, "transfer.created", {
            "transfer_id": transfer.transfer_id,
            "title": transfer.title,
            "file_count": transfer.file_count,
            "total_size": transfer.total_size,
            "expires_at": transfer.expires_at,
        })

    # ── password ──

    def verify_password(self, transfer_id: str, password: str, caller_key: str) -> bool:
        """
        False for a missing transfer and for a wrong password alike. Failed
        attempts count against both the caller's and the transfer's budget.
        """
        self.limiter.ensure_resource(transfer_id, caller_key, "password")

        transfer = (
            self.db.query(models.Transfer)
            .filter(models.Transfer.transfer_id == transfer_id)
            .first()
        )
        if not transfer:
            self.limiter.record_resource(transfer_id, caller_key, "password")
            return False
        if not transfer.password_hash:
            return True

        stored_hash = transfer.password_hash
        check = check_password(password or "", stored_hash)
        if not check.valid:
            self.limiter.record_resource(transfer_id, caller_key, "password")
            return False

        if check.upgraded_hash:
            upgraded = (
                self.db.query(models.Transfer)
                .filter(models.Transfer.id == transfer.id, models.Transfer.password_hash == stored_hash)
                .update({"password_hash": check.upgraded_hash}, synchronize_session=False)
            )
            self.db.commit()
            if upgraded:
                logger.info(f"Upgraded legacy password hash on transfer {transfer_id}")
        return True

    # ── download ──

    def secure_download(self, transfer_id: str, file_id: str, password: Optional[str] = None,
                        caller_key: str = "", user_agent: Optional[str] = None,
                        country: Optional[str] = None):
        transfer = self._accessible_transfer(transfer_id)
        stored = self.db.get(models.StoredFile, file_id)
        if not stored or stored.transfer_pk != transfer.id or stored.status != models.FILE_COMPLETED:
            raise NotFoundError("File not found")

        if transfer.password_hash:
            if not password:
                raise AuthenticationError("This transfer is password protected", code="PASSWORD_REQUIRED")
            if not self.verify_password(transfer_id, password, caller_key):
                raise AuthenticationError("Invalid password", code="INVALID_PASSWORD")

        result = open_download(self.storage, stored)

        self.db.query(models.StoredFile).filter(models.StoredFile.id == stored.id).update(
            {"download_count": models.StoredFile.download_count + 1}, synchronize_session=False
        )
        self.db.query(models.Transfer).filter(models.Transfer.id == transfer.id).update(
            {"download_count": models.Transfer.download_count + 1}, synchronize_session=False
        )
        self.db.commit()

        self._defer(record_download, self.session_factory, DownloadRecord(
            transfer_id=transfer.transfer_id,
            file_id=stored.id,
            ip=caller_key,
            user_agent=user_agent,
            country=country,
            download_type="secure" if stored.is_encrypted else "single",
        ))
        self._defer(dispatch_event, self.session_factory, transfer.owner_id, "transfer.downloaded", {
            "transfer_id": transfer.transfer_id,
            "file_id": stored.id,
            "file_name": stored.original_name,
        })
        return result

    # ── views & edits ──

    def get_public_transfer(self, transfer_id: str) -> dict:
        transfer = self._accessible_transfer(transfer_id)
        files = [f for f in transfer.files if f.status == models.FILE_COMPLETED]
        return {
            "transfer_id": transfer.transfer_id,
            "title": transfer.title,
            "message": transfer.message,
            "sender_name": transfer.sender_name,
            "file_count": len(files),
            "total_size": sum(f.size or 0 for f in files),
            "download_count": transfer.download_count,
            "expires_at": models.as_utc(transfer.expires_at).isoformat(),
            "has_password": bool(transfer.password_hash),
            "is_encrypted": bool(transfer.is_encrypted),
            "files": [
                {
                    "id": f.id,
                    "name": f.original_name,
                    "size": f.size,
                    "mime_type": f.mime_type,
                    "is_encrypted": f.is_encrypted,
                }
                for f in files
            ],
        }

    def update_transfer(self, caller: CallerIdentity, transfer_id: str, title=UNSET,
                        password=UNSET, capability_id: Optional[str] = None) -> models.Transfer:
        transfer = self._transfer(transfer_id)
        ensure_owner(caller, transfer.owner_id, capability_id)

        if title is not UNSET and title is not None:
            transfer.title = validate_title(title)
        if password is not UNSET:
            if password:
                if caller.is_anonymous:
                    raise PlanLimitError("Password protection requires an account", code="FEATURE_NOT_AVAILABLE")
                transfer.password_hash = hash_password(password)
            else:
                transfer.password_hash = None
        self.db.commit()
        self.db.refresh(transfer)
        return transfer

    def download_stats(self, caller: CallerIdentity, transfer_id: str,
                       capability_id: Optional[str] = None) -> dict:
        transfer = self._transfer(transfer_id)
        ensure_owner(caller, transfer.owner_id, capability_id, admin_scope=True)
        return transfer_stats(self.db, transfer.transfer_id)

    def list_transfers(self, caller: CallerIdentity) -> List[dict]:
        now = models.utcnow()
        transfers = (
            self.db.query(models.Transfer)
            .filter(models.Transfer.owner_id == caller.user_id)
            .order_by(models.Transfer.created_at.desc(), models.Transfer.id.desc())
            .all()
        )
        return [serialize_transfer(t, now) for t in transfers]

    # ── delete ──

    def delete_transfer(self, caller: CallerIdentity, transfer_id: str,
                        capability_id: Optional[str] = None) -> bool:
        transfer = self._transfer(transfer_id)
        ensure_owner(caller, transfer.owner_id, capability_id)
        owner_id = transfer.owner_id
        released = purge_transfer(self.db, self.storage, transfer, uncount_transfer=True)
        if released is None:
            raise NotFoundError("Transfer not found")
        self._defer(dispatch_event, self.session_factory, owner_id, "transfer.deleted", {
            "transfer_id": transfer_id,
        })
        return True

    def delete_file(self, caller: CallerIdentity, file_id: str,
                    capability_id: Optional[str] = None) -> bool:
        stored = self._file(file_id)
        ensure_owner(caller, stored.owner_id, capability_id)

        if not self.storage.delete_object(stored.storage_key):
            logger.warning(f"Blob {stored.storage_key} left behind while deleting file {file_id}")

        size = stored.size or 0
        owner_id = stored.owner_id
        transfer_pk = stored.transfer_pk

        # Only removing a completed row releases quota
        removed_completed = (
            self.db.query(models.StoredFile)
            .filter(models.StoredFile.id == file_id, models.StoredFile.status == models.FILE_COMPLETED)
            .delete(synchronize_session=False)
        )
        removed_pending = 0
        if not removed_completed:
            removed_pending = (
                self.db.query(models.StoredFile)
                .filter(models.StoredFile.id == file_id, models.StoredFile.status == models.FILE_PENDING)
                .delete(synchronize_session=False)
            )
        self.db.commit()

        if not (removed_completed or removed_pending):
            # Gone, or confirmed between the two deletes
            if self.db.get(models.StoredFile, file_id) is None:
                raise NotFoundError("File not found")
            raise ConflictError("File changed while it was being deleted, please retry")
        self.db.expunge(stored)

        if removed_completed:
            decrement_usage(self.db, owner_id, storage=size, files=1)
        if transfer_pk:
            values = {"file_count": _floor_minus(models.Transfer.file_count, 1)}
            if removed_completed:
                values["total_size"] = _floor_minus(models.Transfer.total_size, size)
            self.db.query(models.Transfer).filter(models.Transfer.id == transfer_pk).update(
                values, synchronize_session=False
            )
            self.db.commit()
        return True

    def _bulk(self, ids: Sequence[str], delete_one) -> BulkResult:
        if not ids:
            raise ValidationError("Provide at least one id")
        if len(ids) > MAX_BULK_IDS:
            raise ValidationError(f"At most {MAX_BULK_IDS} items per request", code="TOO_MANY_ITEMS")

        result = BulkResult()
        seen = set()
        for item_id in ids:
            if item_id in seen:
                continue
            seen.add(item_id)
            try:
                delete_one(item_id)
                result.deleted.append(item_id)
            except FlyFileError as e:
                self.db.rollback()
                result.failed.append({"id": item_id, "error": e.message, "code": e.code})
        return result

    def bulk_delete_files(self, caller: CallerIdentity, file_ids: Sequence[str],
                          capability_id: Optional[str] = None) -> BulkResult:
        return self._bulk(file_ids, lambda fid: self.delete_file(caller, fid, capability_id))

    def bulk_delete_transfers(self, caller: CallerIdentity, transfer_ids: Sequence[str],
                              capability_id: Optional[str] = None) -> BulkResult:
        return self._bulk(transfer_ids, lambda tid: self.delete_transfer(caller, tid, capability_id))


def _floor_minus(column, delta: int):
    return case((column > delta, column - delta), else_=0)


def serialize_transfer(transfer: models.Transfer, now=None) -> dict:
    return {
        "transfer_id": transfer.transfer_id,
        "title": transfer.title,
        "status": transfer.status,
        "is_expired": transfer.is_expired(now),
        "file_count": transfer.file_count,
        "total_size": transfer.total_size,
        "download_count": transfer.download_count,
        "delivery_method": transfer.delivery_method,
        "recipient_email": transfer.recipient_email,
        "has_password": bool(transfer.password_hash),
        "is_encrypted": bool(transfer.is_encrypted),
        "source": transfer.source,
        "expires_at": models.as_utc(transfer.expires_at).isoformat(),
        "created_at": models.as_utc(transfer.created_at).isoformat() if transfer.created_at else None,
    }
