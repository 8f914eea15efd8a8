from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv
import os
import base64
import hashlib

from errors import DecryptionError

load_dotenv()

ALGORITHM = "aes-256-gcm"
KEY_LENGTH = 32        # 256 bits
IV_LENGTH = 12         # 96 bits for GCM
TAG_LENGTH = 16        # appended to the ciphertext by AESGCM

SEALED_PREFIX = "enc:v1:"
SECRETS_ENCRYPTION_KEY = os.getenv("SECRETS_ENCRYPTION_KEY", "")


@dataclass
class EncryptionResult:
    ciphertext: bytes
    key: bytes
    iv: bytes

    @property
    def key_b64(self) -> str:
        return encode_key(self.key)

    @property
    def iv_b64(self) -> str:
        return encode_key(self.iv)


def encode_key(raw: bytes) -> str:
    return base64.b64encode(raw).decode("utf-8")


def decode_key(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (ValueError, TypeError) as e:
        raise DecryptionError("Encryption metadata is malformed") from e


def generate_key() -> bytes:
    return AESGCM.generate_key(bit_length=256)


def encrypt(plaintext: bytes, key: Optional[bytes] = None) -> EncryptionResult:
    """AES-256-GCM. A fresh key unless one is supplied; always a fresh IV."""
    if key is None:
        key = generate_key()
    elif len(key) != KEY_LENGTH:
        raise ValueError(f"key must be {KEY_LENGTH} bytes")

    iv = os.urandom(IV_LENGTH)
    ciphertext = AESGCM(key).encrypt(iv, plaintext, None)
    return EncryptionResult(ciphertext=ciphertext, key=key, iv=iv)


def decrypt(ciphertext: bytes, key: bytes, iv: bytes) -> bytes:
    """Fails closed: any tag mismatch, bad key/IV or truncation raises DecryptionError."""
    if len(key) != KEY_LENGTH or len(iv) != IV_LENGTH:
        raise DecryptionError("Invalid key or IV length")
    if len(ciphertext) < TAG_LENGTH:
        raise DecryptionError("Ciphertext is truncated")
    try:
        return AESGCM(key).decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        raise DecryptionError("Authentication tag mismatch") from e


def hash_file(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# ─── Secrets at rest (TOTP seeds) ─────────────────────────────────────────────

def _secrets_key() -> bytes:
    if not SECRETS_ENCRYPTION_KEY:
        raise RuntimeError("SECRETS_ENCRYPTION_KEY is not configured")
    # Any configured string is stretched to a 256-bit key
    return hashlib.sha256(SECRETS_ENCRYPTION_KEY.encode("utf-8")).digest()


def is_sealed(value: str) -> bool:
    return bool(value) and value.startswith(SEALED_PREFIX)


def seal_secret(secret: str) -> str:
    """Encrypt a short secret for storage; returns 'enc:v1:<iv>:<ciphertext>'."""
    result = encrypt(secret.encode("utf-8"), key=_secrets_key())
    return f"{SEALED_PREFIX}{encode_key(result.iv)}:{encode_key(result.ciphertext)}"


def open_secret(value: str) -> str:
    """Reverse seal_secret. Legacy plaintext values are returned unchanged."""
    if not is_sealed(value):
        return value
    try:
        iv_b64, ct_b64 = value[len(SEALED_PREFIX):].split(":", 1)
    except ValueError as e:
        raise DecryptionError("Sealed secret is malformed") from e
    return decrypt(decode_key(ct_b64), _secrets_key(), decode_key(iv_b64)).decode("utf-8")
