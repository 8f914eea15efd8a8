from sqlalchemy import (
    Column, Integer, String, DateTime, BigInteger, Text, Boolean, ForeignKey, JSON, Index,
)
from sqlalchemy.orm import relationship
from database import Base
from datetime import datetime, timezone
import uuid


ANONYMOUS_PREFIX = "anon_"

PLAN_FREE = "free"
PLAN_STARTER = "starter"
PLAN_PRO = "pro"
PLAN_BUSINESS = "business"

TRANSFER_PENDING = "pending"
TRANSFER_ACTIVE = "active"

FILE_PENDING = "pending"
FILE_COMPLETED = "completed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a stored timestamp; SQLite hands back naive datetimes."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_uuid() -> str:
    return str(uuid.uuid4())


def is_anonymous_id(owner_id: str) -> bool:
    return bool(owner_id) and owner_id.startswith(ANONYMOUS_PREFIX)


# ─────────────────────────────────────────────────────────────
# Account
# ─────────────────────────────────────────────────────────────
class User(Base):
    __tablename__ = "users"

    id = Column(String(128), primary_key=True)     # identity-provider subject
    email = Column(String(320), index=True)
    plan = Column(String(32), default=PLAN_FREE, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)

    storage_used = Column(BigInteger, default=0, nullable=False)
    storage_limit = Column(BigInteger, nullable=True)            # None = plan default
    monthly_transfers = Column(Integer, default=0, nullable=False)
    max_monthly_transfers = Column(Integer, nullable=True)       # None = plan default
    retention_days = Column(Integer, nullable=True)              # None = plan default
    files_count = Column(Integer, default=0, nullable=False)

    billing_customer_id = Column(String(255), nullable=True)

    two_factor_enabled = Column(Boolean, default=False, nullable=False)
    two_factor_secret = Column(Text, nullable=True)              # sealed, see encryption.seal_secret
    two_factor_backup_codes = Column(Text, nullable=True)        # JSON list of sha256 hex digests
    two_factor_enabled_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ─────────────────────────────────────────────────────────────
# Transfer: a bundle of files behind one share link
# ─────────────────────────────────────────────────────────────
class Transfer(Base):
    __tablename__ = "transfers"

    id = Column(Integer, primary_key=True, index=True)
    transfer_id = Column(String(64), unique=True, index=True, nullable=False, default=new_uuid)
    owner_id = Column(String(128), index=True, nullable=True)   # None = anonymous, no capability
    title = Column(String(100), nullable=False)
    message = Column(Text, nullable=True)
    recipient_email = Column(String(320), nullable=True)
    sender_name = Column(String(255), nullable=True)
    sender_email = Column(String(320), nullable=True)
    password_hash = Column(String(255), nullable=True)
    delivery_method = Column(String(16), default="link", nullable=False)
    status = Column(String(16), default=TRANSFER_PENDING, nullable=False)
    total_size = Column(BigInteger, default=0, nullable=False)
    file_count = Column(Integer, default=0, nullable=False)
    download_count = Column(Integer, default=0, nullable=False)
    is_encrypted = Column(Boolean, default=False, nullable=False)
    source = Column(String(16), default="web", nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    files = relationship(
        "StoredFile",
        back_populates="transfer",
        order_by="StoredFile.position",
        passive_deletes=True,
    )

    def is_expired(self, now: datetime = None) -> bool:
        return (now or utcnow()) > as_utc(self.expires_at)


# ─────────────────────────────────────────────────────────────
# File: attached to a transfer, or standalone in a user's library
# ─────────────────────────────────────────────────────────────
class StoredFile(Base):
    __tablename__ = "files"

    id = Column(String(64), primary_key=True, default=new_uuid)
    transfer_pk = Column(Integer, ForeignKey("transfers.id", ondelete="CASCADE"), nullable=True, index=True)
    owner_id = Column(String(128), index=True, nullable=True)
    storage_key = Column(String(1024), nullable=False)
    original_name = Column(String(255), nullable=False)
    mime_type = Column(String(255), default="application/octet-stream")
    size = Column(BigInteger, default=0, nullable=False)
    is_encrypted = Column(Boolean, default=False, nullable=False)
    encryption_algorithm = Column(String(32), nullable=True)
    encryption_key = Column(Text, nullable=True)
    encryption_iv = Column(String(64), nullable=True)
    status = Column(String(16), default=FILE_PENDING, nullable=False)
    download_count = Column(Integer, default=0, nullable=False)
    position = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    transfer = relationship("Transfer", back_populates="files")


Index("ix_files_status_created", StoredFile.status, StoredFile.created_at)


# ─────────────────────────────────────────────────────────────
# Anonymous sender: keyed by normalized email, rolling 30-day window
# ─────────────────────────────────────────────────────────────
class AnonymousSender(Base):
    __tablename__ = "anonymous_senders"

    email = Column(String(320), primary_key=True)
    monthly_quota_used = Column(BigInteger, default=0, nullable=False)
    monthly_transfers_used = Column(Integer, default=0, nullable=False)
    last_reset_at = Column(DateTime(timezone=True), default=utcnow)
    code_hash = Column(String(64), nullable=True)
    code_expires_at = Column(DateTime(timezone=True), nullable=True)
    code_attempts = Column(Integer, default=0, nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ─────────────────────────────────────────────────────────────
# Short-lived secrets
# ─────────────────────────────────────────────────────────────
class TwoFactorSetup(Base):
    __tablename__ = "two_factor_setups"

    id = Column(String(64), primary_key=True, default=new_uuid)
    user_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    secret = Column(Text, nullable=False)                        # sealed
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class EmailOtp(Base):
    __tablename__ = "email_otps"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(128), nullable=False, index=True)
    purpose = Column(String(32), nullable=False, default="login")
    code_hash = Column(String(64), nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ─────────────────────────────────────────────────────────────
# Long-lived secrets
# ─────────────────────────────────────────────────────────────
class ApiKey(Base):
    __tablename__ = "api_keys"

    id = Column(String(64), primary_key=True, default=new_uuid)
    user_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    key_prefix = Column(String(16), nullable=False)
    key_hash = Column(String(64), unique=True, index=True, nullable=False)
    permissions = Column(JSON, nullable=False)
    usage_count = Column(Integer, default=0, nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Webhook(Base):
    __tablename__ = "webhooks"

    id = Column(String(64), primary_key=True, default=new_uuid)
    user_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    url = Column(String(2048), nullable=False)
    secret = Column(String(128), nullable=False)
    events = Column(JSON, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    failure_count = Column(Integer, default=0, nullable=False)
    last_status = Column(Integer, nullable=True)
    last_triggered_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ─────────────────────────────────────────────────────────────
# Download analytics
# ─────────────────────────────────────────────────────────────
class DownloadEvent(Base):
    __tablename__ = "download_events"

    id = Column(Integer, primary_key=True)
    transfer_id = Column(String(64), index=True, nullable=False)   # public transfer id
    file_id = Column(String(64), nullable=True)
    ip_address = Column(String(64), nullable=True)                 # anonymized
    user_agent = Column(String(500), nullable=True)
    browser = Column(String(32))
    os = Column(String(32))
    device = Column(String(16))
    country = Column(String(8), nullable=True)
    download_type = Column(String(16), default="single")
    downloaded_at = Column(DateTime(timezone=True), default=utcnow)
