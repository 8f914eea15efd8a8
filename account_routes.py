# account_routes.py: billing identity, API keys, webhooks, usage

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

import api_keys
import models
import schemas
import webhooks
from access import CallerIdentity, get_account, require_admin, require_permission, require_session
from billing import ensure_customer
from csrf import csrf_protect
from database import get_db
from dependencies import get_billing
from errors import NotFoundError, ValidationError
from quota import reconcile_usage, usage_summary
from rate_limit import rate_limited

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Account"])


@router.get("/usage", dependencies=[Depends(rate_limited("api"))])
def usage(
    caller: CallerIdentity = Depends(require_permission("read")),
    user: models.User = Depends(get_account),
):
    return {"success": True, "usage": usage_summary(user)}


@router.post("/admin/users/{user_id}/reconcile", dependencies=[Depends(csrf_protect), Depends(rate_limited("sensitive"))])
def reconcile_account(
    user_id: str,
    caller: CallerIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if not db.get(models.User, user_id):
        raise NotFoundError("Account not found")
    counters = reconcile_usage(db, user_id)
    logger.info(f"Usage for {user_id} reconciled by admin {caller.user_id}: {counters}")
    return {"success": True, "usage": counters}


@router.post("/auth/ensure-customer", dependencies=[Depends(csrf_protect), Depends(rate_limited("api"))])
def ensure_billing_customer(
    request: Request,
    req: schemas.EnsureCustomerRequest = None,
    caller: CallerIdentity = Depends(require_session),
    user: models.User = Depends(get_account),
    db: Session = Depends(get_db),
):
    email = (req.email if req and req.email else None) or user.email or caller.email
    if not email:
        raise ValidationError("Email is required")
    customer_id = ensure_customer(db, get_billing(request), user.id, email)
    return {"success": True, "customer_id": customer_id}


# ─── API keys ───────────────────────────────────────

@router.get("/keys", dependencies=[Depends(rate_limited("api"))])
def list_keys(caller: CallerIdentity = Depends(require_session), db: Session = Depends(get_db)):
    keys = api_keys.list_api_keys(db, caller.user_id)
    return {"success": True, "keys": [api_keys.serialize_api_key(k) for k in keys]}


@router.post("/keys", dependencies=[Depends(csrf_protect), Depends(rate_limited("sensitive"))])
def create_key(
    req: schemas.ApiKeyCreate,
    caller: CallerIdentity = Depends(require_session),
    user: models.User = Depends(get_account),
    db: Session = Depends(get_db),
):
    record, key = api_keys.create_api_key(db, user, req.name, req.permissions, req.expires_in_days)
    # The full key is shown exactly once
    return {"success": True, "key": key, "api_key": api_keys.serialize_api_key(record)}


@router.delete("/keys/{key_id}", dependencies=[Depends(csrf_protect), Depends(rate_limited("sensitive"))])
def delete_key(key_id: str, caller: CallerIdentity = Depends(require_session), db: Session = Depends(get_db)):
    api_keys.delete_api_key(db, key_id, caller.user_id)
    return {"success": True, "message": "API key deleted"}


@router.patch("/keys/{key_id}", dependencies=[Depends(csrf_protect), Depends(rate_limited("api"))])
def toggle_key(key_id: str, caller: CallerIdentity = Depends(require_session), db: Session = Depends(get_db)):
    record = api_keys.toggle_api_key(db, key_id, caller.user_id)
    return {"success": True, "api_key": api_keys.serialize_api_key(record)}


# ─── Webhooks ───────────────────────────────────────

@router.get("/webhooks", dependencies=[Depends(rate_limited("api"))])
def list_webhooks(caller: CallerIdentity = Depends(require_session), db: Session = Depends(get_db)):
    hooks = webhooks.list_webhooks(db, caller.user_id)
    return {"success": True, "webhooks": [webhooks.serialize_webhook(w) for w in hooks]}


@router.post("/webhooks", dependencies=[Depends(csrf_protect), Depends(rate_limited("api"))])
def create_webhook(
    req: schemas.WebhookCreate,
    caller: CallerIdentity = Depends(require_session),
    user: models.User = Depends(get_account),
    db: Session = Depends(get_db),
):
    webhook = webhooks.create_webhook(db, user, req.name, req.url, req.events)
    return {"success": True, "webhook": webhooks.serialize_webhook(webhook, include_secret=True)}


@router.delete("/webhooks/{webhook_id}", dependencies=[Depends(csrf_protect), Depends(rate_limited("api"))])
def delete_webhook(webhook_id: str, caller: CallerIdentity = Depends(require_session),
                   db: Session = Depends(get_db)):
    webhooks.delete_webhook(db, webhook_id, caller.user_id)
    return {"success": True, "message": "Webhook deleted"}


@router.patch("/webhooks/{webhook_id}", dependencies=[Depends(csrf_protect), Depends(rate_limited("api"))])
def toggle_webhook(webhook_id: str, caller: CallerIdentity = Depends(require_session),
                   db: Session = Depends(get_db)):
    webhook = webhooks.toggle_webhook(db, webhook_id, caller.user_id)
    return {"success": True, "webhook": webhooks.serialize_webhook(webhook)}
