import hashlib
import hmac
import logging
import os
import re
import secrets
from dataclasses import dataclass
from typing import Optional, Union

from dotenv import load_dotenv
from passlib.context import CryptContext

load_dotenv()

# passlib reads bcrypt.__about__, which bcrypt 4.x no longer ships
logging.getLogger("passlib.handlers.bcrypt").setLevel(logging.ERROR)

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
PASSWORD_SALT = os.getenv("PASSWORD_SALT", "flyfile-salt")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)

_LEGACY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


# ─── Stored password hash variants ───────────────────────────────────────────

@dataclass(frozen=True)
class LegacyHash:
    """Unsalted-per-user SHA-256 hex digest of password + PASSWORD_SALT."""
    digest: str


@dataclass(frozen=True)
class ModernHash:
    """bcrypt hash ($2a$/$2b$/$2y$)."""
    value: str


PasswordHash = Union[LegacyHash, ModernHash]


@dataclass
class PasswordCheck:
    valid: bool
    upgraded_hash: Optional[str] = None   # set when the caller must write back a new hash


def parse_password_hash(stored: str) -> PasswordHash:
    if stored and stored.startswith("$2"):
        return ModernHash(stored)
    if stored and _LEGACY_RE.match(stored):
        return LegacyHash(stored.lower())
    raise ValueError("Unrecognized password hash format")


def legacy_hash_password(password: str) -> str:
    return hashlib.sha256((password + PASSWORD_SALT).encode("utf-8")).hexdigest()


def hash_password(password: str) -> str:
    """Hash password with bcrypt."""
    return pwd_context.hash(password)


def verify_password(password: str, stored: str) -> PasswordCheck:
    """
    Verify a plaintext password against a stored hash of either format.
    A successful match against a legacy hash returns a bcrypt replacement in
    `upgraded_hash`. Never raises; returns an invalid check on error.
    """
    try:
        parsed = parse_password_hash(stored)
    except ValueError:
        return PasswordCheck(valid=False)

    if isinstance(parsed, ModernHash):
        try:
            return PasswordCheck(valid=pwd_context.verify(password, parsed.value))
        except Exception:
            return PasswordCheck(valid=False)

    if isinstance(parsed, LegacyHash):
        candidate = legacy_hash_password(password)
        if hmac.compare_digest(candidate, parsed.digest):
            return PasswordCheck(valid=True, upgraded_hash=hash_password(password))
        return PasswordCheck(valid=False)

    return PasswordCheck(valid=False)


def needs_upgrade(stored: str) -> bool:
    try:
        return isinstance(parse_password_hash(stored), LegacyHash)
    except ValueError:
        return False


# ─── One-time codes ──────────────────────────────────────────────────────────

def generate_numeric_code(digits: int = 6) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(digits))


def hash_one_time_code(code: str) -> str:
    return hashlib.sha256(code.strip().encode("utf-8")).hexdigest()


def one_time_code_matches(code: str, stored_hash: str) -> bool:
    if not code or not stored_hash:
        return False
    return hmac.compare_digest(hash_one_time_code(code), stored_hash)
