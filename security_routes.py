# security_routes.py: second factor and email verification routes

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

import anonymous
import models
import otp
import schemas
from access import CallerIdentity, get_account, get_caller, require_session
from csrf import csrf_protect
from database import get_db
from dependencies import get_mailer
from errors import AuthorizationError, ValidationError
from notifications import verification_code_email
from rate_limit import client_ip, get_rate_limiter, rate_limited
from two_factor import TwoFactorService

router = APIRouter(tags=["Security"])


# ─── 2FA ─────────────────────────────────────────────

@router.get("/2fa/setup", dependencies=[Depends(rate_limited("api"))])
def begin_two_factor_setup(
    caller: CallerIdentity = Depends(require_session),
    user: models.User = Depends(get_account),
    db: Session = Depends(get_db),
):
    challenge = TwoFactorService(db).begin_setup(user)
    return {
        "success": True,
        "session_id": challenge.session_id,
        "secret": challenge.secret,
        "provisioning_uri": challenge.provisioning_uri,
        "expires_at": models.as_utc(challenge.expires_at).isoformat(),
    }


@router.post("/2fa/setup", dependencies=[Depends(csrf_protect), Depends(rate_limited("sensitive"))])
def confirm_two_factor_setup(
    req: schemas.TwoFactorConfirm,
    caller: CallerIdentity = Depends(require_session),
    user: models.User = Depends(get_account),
    db: Session = Depends(get_db),
):
    backup_codes = TwoFactorService(db).confirm_setup(user, req.session_id, req.token)
    return {"success": True, "backup_codes": backup_codes}


@router.post("/2fa/verify", dependencies=[Depends(csrf_protect)])
def verify_two_factor(
    req: schemas.TwoFactorVerify,
    request: Request,
    caller: CallerIdentity = Depends(get_caller),
    db: Session = Depends(get_db),
):
    if not caller.is_anonymous and caller.user_id != req.user_id:
        raise AuthorizationError("You do not have access to this resource")
    # Budget per target account as well as per caller
    get_rate_limiter(request).hit_resource(req.user_id, client_ip(request), "two_factor")

    check = TwoFactorService(db).verify(req.user_id, req.token)
    return {"success": True, "valid": check.valid, "used_backup_code": check.used_backup_code}


@router.post("/2fa/disable", dependencies=[Depends(csrf_protect), Depends(rate_limited("sensitive"))])
def disable_two_factor(
    req: schemas.TwoFactorToken,
    caller: CallerIdentity = Depends(require_session),
    user: models.User = Depends(get_account),
    db: Session = Depends(get_db),
):
    TwoFactorService(db).disable(user, req.token)
    return {"success": True, "message": "Two-factor authentication disabled"}


@router.get("/2fa/status", dependencies=[Depends(rate_limited("api"))])
def two_factor_status(
    caller: CallerIdentity = Depends(require_session),
    user: models.User = Depends(get_account),
    db: Session = Depends(get_db),
):
    return {"success": True, **TwoFactorService(db).status(user)}


@router.post("/2fa/backup-codes", dependencies=[Depends(csrf_protect), Depends(rate_limited("sensitive"))])
def regenerate_backup_codes(
    req: schemas.TwoFactorToken,
    caller: CallerIdentity = Depends(require_session),
    user: models.User = Depends(get_account),
    db: Session = Depends(get_db),
):
    codes = TwoFactorService(db).regenerate_backup_codes(user, req.token)
    return {"success": True, "backup_codes": codes}


# ─── Email codes for signed-in accounts ──────────────

@router.post("/auth/send-code", dependencies=[Depends(csrf_protect), Depends(rate_limited("auth"))])
def send_login_code(
    request: Request,
    caller: CallerIdentity = Depends(require_session),
    user: models.User = Depends(get_account),
    db: Session = Depends(get_db),
):
    if not user.email:
        raise ValidationError("No email address on this account", code="INVALID_EMAIL")
    code = otp.issue_code(db, user.id)
    get_mailer(request).send_message(
        user.email, verification_code_email(code, int(otp.OTP_TTL.total_seconds() // 60))
    )
    return {"success": True, "message": "Verification code sent"}


@router.post("/auth/verify-code", dependencies=[Depends(csrf_protect), Depends(rate_limited("sensitive"))])
def verify_login_code(
    req: schemas.OtpVerify,
    caller: CallerIdentity = Depends(require_session),
    db: Session = Depends(get_db),
):
    otp.verify_code(db, caller.user_id, req.code, req.purpose)
    return {"success": True, "verified": True}


# ─── Anonymous senders ───────────────────────────────

@router.post("/anonymous/send-code", dependencies=[Depends(csrf_protect), Depends(rate_limited("auth"))])
def send_anonymous_code(req: schemas.EmailCodeRequest, request: Request, db: Session = Depends(get_db)):
    usage = anonymous.send_code(db, req.email, get_mailer(request))
    return {"success": True, "message": "Verification code sent", "usage": usage}


@router.post("/anonymous/verify-code", dependencies=[Depends(csrf_protect), Depends(rate_limited("sensitive"))])
def verify_anonymous_code(req: schemas.EmailCodeVerify, db: Session = Depends(get_db)):
    usage = anonymous.verify_code(db, req.email, req.code)
    return {"success": True, "verified": True, "usage": usage}
