"""
Who is calling, and may they touch this resource.

Identity is established once here, from a verified bearer token or an API
key, and handed to the rest of the request as a CallerIdentity. Nothing
downstream re-derives it from client-controlled headers.
"""

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from fastapi import Depends, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models
from api_keys import PERMISSIONS, looks_like_api_key, resolve_api_key
from auth import verify_identity_token
from database import get_db
from errors import AuthenticationError, AuthorizationError

logger = logging.getLogger(__name__)

METHOD_BEARER = "bearer-token"
METHOD_API_KEY = "api-key"
METHOD_ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class CallerIdentity:
    user_id: Optional[str] = None
    email: Optional[str] = None
    method: str = METHOD_ANONYMOUS
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    is_admin: bool = False
    api_key_id: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.method == METHOD_ANONYMOUS

    def can(self, permission: str) -> bool:
        return permission in self.permissions


ANONYMOUS = CallerIdentity()


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization")
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Invalid or expired token")
    return token.strip()


def get_or_create_account(db: Session, user_id: str, email: str = None) -> models.User:
    """First authenticated request from a new subject provisions its account row."""
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if user:
        if email and not user.email:
            user.email = email.strip().lower()
            db.commit()
        return user

    user = models.User(id=user_id, email=email.strip().lower() if email else None)
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # A parallel request created it first
        db.rollback()
        user = db.query(models.User).filter(models.User.id == user_id).first()
    else:
        logger.info(f"Provisioned account {user_id}")
    return user


def authenticate(request: Request, db: Session) -> CallerIdentity:
    token = _bearer_token(request)
    if token is None:
        return ANONYMOUS

    if looks_like_api_key(token):
        key = resolve_api_key(db, token)
        user = db.query(models.User).filter(models.User.id == key.user_id).first()
        if not user:
            raise AuthenticationError("Invalid or expired token")
        return CallerIdentity(
            user_id=user.id,
            email=user.email,
            method=METHOD_API_KEY,
            permissions=frozenset(key.permissions or ()),
            api_key_id=key.id,
        )

    claims = verify_identity_token(token)
    user = get_or_create_account(db, claims.subject_id, claims.email)
    return CallerIdentity(
        user_id=user.id,
        email=user.email or claims.email,
        method=METHOD_BEARER,
        permissions=frozenset(PERMISSIONS),
        is_admin=bool(user.is_admin),
    )


# ─── Dependencies ────────────────────────────────────────────────────────────

def get_caller(request: Request, db: Session = Depends(get_db)) -> CallerIdentity:
    caller = authenticate(request, db)
    request.state.caller = caller
    return caller


def require_user(caller: CallerIdentity = Depends(get_caller)) -> CallerIdentity:
    if caller.is_anonymous:
        raise AuthenticationError("Authentication required")
    return caller


def ensure_permission(caller: CallerIdentity, permission: str):
    """Anonymous callers act through capabilities, not permissions, and pass through."""
    if not caller.is_anonymous and not caller.can(permission):
        raise AuthorizationError(f"API key lacks '{permission}' permission")


def require_permission(permission: str):
    if permission not in PERMISSIONS:
        raise ValueError(f"Unknown permission: {permission}")

    def dependency(caller: CallerIdentity = Depends(require_user)) -> CallerIdentity:
        ensure_permission(caller, permission)
        return caller
    return dependency


def require_admin(caller: CallerIdentity = Depends(require_user)) -> CallerIdentity:
    if not caller.is_admin:
        raise AuthorizationError("Admin access required")
    return caller


def require_session(caller: CallerIdentity = Depends(require_user)) -> CallerIdentity:
    # Account security settings are not reachable with an API key
    if caller.method != METHOD_BEARER:
        raise AuthorizationError("This action requires a signed-in session")
    return caller


def get_account(caller: CallerIdentity = Depends(require_user),
                db: Session = Depends(get_db)) -> models.User:
    user = db.query(models.User).filter(models.User.id == caller.user_id).first()
    if not user:
        raise AuthenticationError("Invalid or expired token")
    return user


# ─── Ownership ───────────────────────────────────────────────────────────────

def authorize(identity: CallerIdentity, owner_id: Optional[str],
              capability_id: Optional[str] = None, admin_scope: bool = False) -> bool:
    if not owner_id:
        return False
    if identity.user_id and identity.user_id == owner_id:
        return True
    if models.is_anonymous_id(owner_id) and capability_id and capability_id == owner_id:
        return True
    if admin_scope and identity.is_admin:
        return True
    return False


def ensure_owner(identity: CallerIdentity, owner_id: Optional[str],
                 capability_id: Optional[str] = None, admin_scope: bool = False):
    if not authorize(identity, owner_id, capability_id, admin_scope):
        logger.warning(f"Ownership check failed: caller={identity.user_id or 'anonymous'} owner={owner_id}")
        raise AuthorizationError("You do not have access to this resource")
