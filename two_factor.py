"""
two_factor.py — TOTP second factor with staged setup and backup codes.

The TOTP secret is generated and staged server-side; the client only ever
echoes back a setup session id and a code, never the secret itself.
"""

import hashlib
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

import pyotp
from sqlalchemy.orm import Session

import models
from encryption import seal_secret, open_secret, is_sealed
from errors import AuthorizationError, ExpiredError, NotFoundError, ValidationError, AuthenticationError

logger = logging.getLogger(__name__)

ISSUER = "FlyFile"
SETUP_TTL = timedelta(minutes=10)
BACKUP_CODES_COUNT = 10


# ─── Primitives ──────────────────────────────────────────────────────────────

def generate_secret() -> str:
    return pyotp.random_base32()


def build_provisioning_uri(secret: str, account: str, issuer: str = ISSUER) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=account, issuer_name=issuer)


def clean_token(token: str) -> str:
    return "".join(ch for ch in (token or "") if ch not in " -").upper()


def verify_totp(secret: str, token: str) -> bool:
    """Accepts the current step and one step either side for clock skew."""
    token = clean_token(token)
    if len(token) != 6 or not token.isdigit():
        return False
    return pyotp.TOTP(secret).verify(token, valid_window=1)


def generate_backup_codes(n: int = BACKUP_CODES_COUNT) -> List[str]:
    codes = []
    for _ in range(n):
        raw = secrets.token_hex(4).upper()
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(clean_token(code).encode("utf-8")).hexdigest()


def consume_backup_code(hashed_codes: List[str], code: str) -> Optional[List[str]]:
    """Returns the remaining hashes if `code` matched one (which is removed), else None."""
    candidate = hash_backup_code(code)
    for i, stored in enumerate(hashed_codes or []):
        if secrets.compare_digest(stored, candidate):
            return hashed_codes[:i] + hashed_codes[i + 1:]
    return None


def load_backup_codes(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return list(json.loads(value))


def dump_backup_codes(codes: List[str]) -> str:
    return json.dumps(list(codes))


# ─── Service ─────────────────────────────────────────────────────────────────

@dataclass
class SetupChallenge:
    session_id: str
    secret: str
    provisioning_uri: str
    expires_at: object


@dataclass
class TwoFactorCheck:
    valid: bool
    used_backup_code: bool = False


class TwoFactorService:

    def __init__(self, db: Session):
        self.db = db

    def _stored_secret(self, user: models.User) -> str:
        secret = user.two_factor_secret
        if secret and not is_sealed(secret):
            logger.warning(f"User {user.id} has a legacy plaintext TOTP secret")
        return open_secret(secret)

    def begin_setup(self, user: models.User) -> SetupChallenge:
        if user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is already enabled", code="2FA_ALREADY_ENABLED")

        # One pending setup per user
        self.db.query(models.TwoFactorSetup).filter(models.TwoFactorSetup.user_id == user.id).delete()

        secret = generate_secret()
        setup = models.TwoFactorSetup(
            user_id=user.id,
            secret=seal_secret(secret),
            expires_at=models.utcnow() + SETUP_TTL,
        )
        self.db.add(setup)
        self.db.commit()

        return SetupChallenge(
            session_id=setup.id,
            secret=secret,
            provisioning_uri=build_provisioning_uri(secret, user.email or user.id),
            expires_at=setup.expires_at,
        )

    def confirm_setup(self, user: models.User, session_id: str, token: str) -> List[str]:
        setup = self.db.query(models.TwoFactorSetup).filter(models.TwoFactorSetup.id == session_id).first()
        if not setup:
            raise NotFoundError("Setup session not found. Start again.")
        if setup.user_id != user.id:
            raise AuthorizationError("Setup session belongs to another account")
        if models.utcnow() > models.as_utc(setup.expires_at):
            self.db.delete(setup)
            self.db.commit()
            raise ExpiredError("Setup session expired. Start again.")

        secret = open_secret(setup.secret)
        if not verify_totp(secret, token):
            raise ValidationError("Invalid code. Try again.", code="INVALID_CODE")

        backup_codes = generate_backup_codes()
        user.two_factor_enabled = True
        user.two_factor_secret = seal_secret(secret)
        user.two_factor_backup_codes = dump_backup_codes([hash_backup_code(c) for c in backup_codes])
        user.two_factor_enabled_at = models.utcnow()
        self.db.delete(setup)
        self.db.commit()

        logger.info(f"2FA enabled for user {user.id}")
        return backup_codes

    def verify(self, user_id: str, token: str) -> TwoFactorCheck:
        user = self.db.query(models.User).filter(models.User.id == user_id).first()
        if not user or not user.two_factor_enabled or not user.two_factor_secret:
            return TwoFactorCheck(valid=False)

        if verify_totp(self._stored_secret(user), token):
            return TwoFactorCheck(valid=True)

        stored_codes = user.two_factor_backup_codes
        remaining = consume_backup_code(load_backup_codes(stored_codes), token)
        if remaining is None:
            return TwoFactorCheck(valid=False)

        # Conditional write: the code set must still be the one we read
        updated = (
            self.db.query(models.User)
            .filter(
                models.User.id == user.id,
                models.User.two_factor_backup_codes == stored_codes,
            )
            .update({"two_factor_backup_codes": dump_backup_codes(remaining)}, synchronize_session=False)
        )
        self.db.commit()
        if not updated:
            return TwoFactorCheck(valid=False)
        logger.info(f"Backup code consumed for user {user.id}, {len(remaining)} left")
        return TwoFactorCheck(valid=True, used_backup_code=True)

    def require_valid(self, user: models.User, token: str) -> TwoFactorCheck:
        check = self.verify(user.id, token)
        if not check.valid:
            raise AuthenticationError("Invalid code. Try again.", code="INVALID_CODE")
        return check

    def disable(self, user: models.User, token: str):
        if not user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is not enabled", code="2FA_NOT_ENABLED")
        self.require_valid(user, token)
        self.db.refresh(user)
        user.two_factor_enabled = False
        user.two_factor_secret = None
        user.two_factor_backup_codes = None
        user.two_factor_enabled_at = None
        self.db.commit()
        logger.info(f"2FA disabled for user {user.id}")

    def regenerate_backup_codes(self, user: models.User, token: str) -> List[str]:
        if not user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is not enabled", code="2FA_NOT_ENABLED")
        self.require_valid(user, token)
        self.db.refresh(user)
        codes = generate_backup_codes()
        user.two_factor_backup_codes = dump_backup_codes([hash_backup_code(c) for c in codes])
        self.db.commit()
        return codes

    def status(self, user: models.User) -> dict:
        return {
            "enabled": bool(user.two_factor_enabled),
            "backup_codes_remaining": len(load_backup_codes(user.two_factor_backup_codes)),
            "enabled_at": user.two_factor_enabled_at.isoformat() if user.two_factor_enabled_at else None,
        }
