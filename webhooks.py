"""
Signed event callbacks to user-registered URLs.

Receivers verify `X-Webhook-Signature: t=<unix ts>,v1=<hex hmac>` where the
HMAC-SHA256 covers "<ts>.<raw body>" under the webhook's secret.
"""

import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Callable, List, Optional
from urllib.parse import urlsplit

import httpx
from sqlalchemy.orm import Session

import models
from errors import NotFoundError, PlanLimitError, ValidationError, is_production
from quota import get_plan_limits

logger = logging.getLogger(__name__)

EVENTS = (
    "transfer.created",
    "transfer.downloaded",
    "transfer.expired",
    "transfer.deleted",
    "file.uploaded",
    "file.downloaded",
)
DELIVERY_TIMEOUT = 10.0
MAX_FAILURES = 10
MAX_WEBHOOKS_PER_USER = 10


def generate_webhook_secret() -> str:
    return f"whsec_{secrets.token_hex(24)}"


def sign_payload(payload: str, secret: str, timestamp: Optional[int] = None) -> str:
    ts = int(time.time()) if timestamp is None else int(timestamp)
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def verify_signature(payload: str, header: str, secret: str, tolerance: int = 300,
                     now: Optional[int] = None) -> bool:
    try:
        parts = dict(item.split("=", 1) for item in header.split(","))
        ts = int(parts["t"])
        received = parts["v1"]
    except (KeyError, ValueError):
        return False
    current = int(time.time()) if now is None else now
    if abs(current - ts) > tolerance:
        return False
    expected = sign_payload(payload, secret, ts).split("v1=", 1)[1]
    return hmac.compare_digest(expected, received)


def _validate_url(url: str) -> str:
    url = (url or "").strip()
    parts = urlsplit(url)
    allowed = ("https",) if is_production() else ("https", "http")
    if parts.scheme not in allowed or not parts.netloc:
        raise ValidationError("Webhook URL must be an absolute https URL", code="INVALID_WEBHOOK_URL")
    return url


def _validate_events(events: List[str]) -> List[str]:
    if not events:
        raise ValidationError("Subscribe to at least one event")
    unknown = [e for e in events if e not in EVENTS]
    if unknown:
        raise ValidationError(f"Unknown events: {', '.join(unknown)}")
    return sorted(set(events), key=EVENTS.index)


def create_webhook(db: Session, user: models.User, name: str, url: str, events: List[str]):
    if not get_plan_limits(user.plan).api_access:
        raise PlanLimitError("Webhooks require a Pro or Business plan")
    name = (name or "").strip()
    if not name or len(name) > 100:
        raise ValidationError("Webhook name must be 1-100 characters")
    if db.query(models.Webhook).filter(models.Webhook.user_id == user.id).count() >= MAX_WEBHOOKS_PER_USER:
        raise PlanLimitError(f"At most {MAX_WEBHOOKS_PER_USER} webhooks per account")

    webhook = models.Webhook(
        user_id=user.id,
        name=name,
        url=_validate_url(url),
        secret=generate_webhook_secret(),
        events=_validate_events(events),
    )
    db.add(webhook)
    db.commit()
    db.refresh(webhook)
    return webhook


def list_webhooks(db: Session, user_id: str) -> List[models.Webhook]:
    return (
        db.query(models.Webhook)
        .filter(models.Webhook.user_id == user_id)
        .order_by(models.Webhook.created_at.desc())
        .all()
    )


def _owned(db: Session, webhook_id: str, user_id: str) -> models.Webhook:
    webhook = db.query(models.Webhook).filter(models.Webhook.id == webhook_id).first()
    if not webhook or webhook.user_id != user_id:
        raise NotFoundError("Webhook not found")
    return webhook


def delete_webhook(db: Session, webhook_id: str, user_id: str):
    db.delete(_owned(db, webhook_id, user_id))
    db.commit()


def toggle_webhook(db: Session, webhook_id: str, user_id: str) -> models.Webhook:
    webhook = _owned(db, webhook_id, user_id)
    webhook.is_active = not webhook.is_active
    if webhook.is_active:
        webhook.failure_count = 0
    db.commit()
    return webhook


def serialize_webhook(webhook: models.Webhook, include_secret: bool = False) -> dict:
    data = {
        "id": webhook.id,
        "name": webhook.name,
        "url": webhook.url,
        "events": webhook.events,
        "is_active": webhook.is_active,
        "failure_count": webhook.failure_count,
        "last_status": webhook.last_status,
        "last_triggered_at": webhook.last_triggered_at.isoformat() if webhook.last_triggered_at else None,
    }
    if include_secret:
        data["secret"] = webhook.secret
    return data


# ─── Delivery ────────────────────────────────────────────────────────────────

def _deliver(client: httpx.Client, webhook: models.Webhook, event: str, body: str) -> Optional[int]:
    headers = {
        "Content-Type": "application/json",
        "X-Webhook-Signature": sign_payload(body, webhook.secret),
        "X-Webhook-Event": event,
        "User-Agent": "FlyFile-Webhooks/1.0",
    }
    try:
        response = client.post(webhook.url, content=body, headers=headers)
        return response.status_code
    except httpx.TimeoutException:
        logger.warning(f"Webhook {webhook.id} timed out after {DELIVERY_TIMEOUT}s")
    except httpx.HTTPError as e:
        logger.warning(f"Webhook {webhook.id} delivery failed: {type(e).__name__}")
    return None


def dispatch_event(session_factory: Callable[[], Session], owner_id: str, event: str,
                   data: dict, client: Optional[httpx.Client] = None) -> int:
    """Post `event` to the owner's active subscribed webhooks. Returns deliveries that got a 2xx."""
    if not owner_id or models.is_anonymous_id(owner_id):
        return 0

    db = session_factory()
    own_client = client is None
    if own_client:
        client = httpx.Client(timeout=DELIVERY_TIMEOUT)
    delivered = 0
    try:
        hooks = (
            db.query(models.Webhook)
            .filter(models.Webhook.user_id == owner_id, models.Webhook.is_active.is_(True))
            .all()
        )
        body = json.dumps({
            "event": event,
            "timestamp": models.utcnow().isoformat(),
            "data": data,
        }, default=str)

        for webhook in hooks:
            if event not in (webhook.events or []):
                continue
            status = _deliver(client, webhook, event, body)
            ok = status is not None and 200 <= status < 300
            values = {"last_status": status, "last_triggered_at": models.utcnow()}
            values["failure_count"] = 0 if ok else models.Webhook.failure_count + 1
            db.query(models.Webhook).filter(models.Webhook.id == webhook.id).update(
                values, synchronize_session=False
            )
            db.commit()
            if ok:
                delivered += 1
                continue

            disabled = (
                db.query(models.Webhook)
                .filter(models.Webhook.id == webhook.id, models.Webhook.failure_count >= MAX_FAILURES)
                .update({"is_active": False}, synchronize_session=False)
            )
            db.commit()
            if disabled:
                logger.warning(f"Webhook {webhook.id} disabled after {MAX_FAILURES} failures")
    except Exception as e:
        db.rollback()
        logger.error(f"Webhook dispatch for {event} failed: {e}")
    finally:
        if own_client:
            client.close()
        db.close()
    return delivered
