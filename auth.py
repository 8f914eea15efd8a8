from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field
from jose import jwt, JWTError
import os
import logging
from dotenv import load_dotenv

from errors import AuthenticationError

load_dotenv()

logger = logging.getLogger(__name__)

SECRET_KEY = os.getenv("SECRET_KEY", "change-this-in-production-minimum-32-chars!")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
TOKEN_ISSUER = os.getenv("TOKEN_ISSUER", "")
TOKEN_AUDIENCE = os.getenv("TOKEN_AUDIENCE", "")


@dataclass
class IdentityClaims:
    subject_id: str
    email: str = None
    claims: dict = field(default_factory=dict)


def create_access_token(data: dict) -> str:
    """
    Creates a signed JWT. Embeds: sub (account id), email, exp (expiry).
    Production tokens come from the identity provider; this signer serves
    local development and tests with the same key material.
    """
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire, "iat": now})
    if TOKEN_ISSUER:
        to_encode.setdefault("iss", TOKEN_ISSUER)
    if TOKEN_AUDIENCE:
        to_encode.setdefault("aud", TOKEN_AUDIENCE)
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT. Raises JWTError on failure."""
    options = {"verify_aud": bool(TOKEN_AUDIENCE)}
    return jwt.decode(
        token,
        SECRET_KEY,
        algorithms=[ALGORITHM],
        audience=TOKEN_AUDIENCE or None,
        issuer=TOKEN_ISSUER or None,
        options=options,
    )


def verify_identity_token(token: str) -> IdentityClaims:
    exc = AuthenticationError("Invalid or expired token")
    try:
        payload = decode_token(token)
    except JWTError as e:
        logger.warning(f"Identity token rejected: {type(e).__name__}")
        raise exc

    subject = payload.get("sub")
    if not subject:
        raise exc
    return IdentityClaims(subject_id=str(subject), email=payload.get("email"), claims=payload)
