"""
Payment-provider customer identity.

`ensure_customer` is the only place a provider customer is created. Two
requests racing for the same new account may both create one; a
compare-and-set on the account row picks the winner and the loser deletes
its own customer.
"""

import os
import logging
from typing import Optional

import stripe
from dotenv import load_dotenv
from sqlalchemy import or_
from sqlalchemy.orm import Session

import models
from errors import ExternalServiceError, NotFoundError, ValidationError

load_dotenv()

logger = logging.getLogger(__name__)

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")


def _as_dict(customer) -> dict:
    return {
        "id": customer.get("id"),
        "email": customer.get("email"),
        "metadata": dict(customer.get("metadata") or {}),
        "deleted": bool(customer.get("deleted", False)),
    }


class BillingClient:
    """Thin wrapper over the Stripe SDK returning plain dicts."""

    def __init__(self, api_key: str = None):
        self.api_key = api_key or STRIPE_SECRET_KEY

    def retrieve_customer(self, customer_id: str) -> Optional[dict]:
        try:
            customer = stripe.Customer.retrieve(customer_id, api_key=self.api_key)
        except stripe.InvalidRequestError:
            return None
        except stripe.StripeError as e:
            logger.error(f"Stripe retrieve failed for {customer_id}: {e}")
            raise ExternalServiceError("Billing provider unavailable") from e
        data = _as_dict(customer)
        return None if data["deleted"] else data

    def find_customer_by_email(self, email: str) -> Optional[dict]:
        try:
            result = stripe.Customer.list(email=email, limit=1, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error(f"Stripe customer search failed: {e}")
            raise ExternalServiceError("Billing provider unavailable") from e
        for customer in result.get("data", []):
            data = _as_dict(customer)
            if not data["deleted"]:
                return data
        return None

    def create_customer(self, email: str, metadata: dict) -> str:
        try:
            customer = stripe.Customer.create(email=email, metadata=metadata, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error(f"Stripe customer create failed: {e}")
            raise ExternalServiceError("Billing provider unavailable") from e
        return customer.get("id")

    def update_customer_metadata(self, customer_id: str, metadata: dict):
        try:
            stripe.Customer.modify(customer_id, metadata=metadata, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error(f"Stripe metadata update failed for {customer_id}: {e}")
            raise ExternalServiceError("Billing provider unavailable") from e

    def delete_customer(self, customer_id: str):
        try:
            stripe.Customer.delete(customer_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error(f"Stripe customer delete failed for {customer_id}: {e}")
            raise ExternalServiceError("Billing provider unavailable") from e


def ensure_customer(db: Session, client: BillingClient, user_id: str, email: str,
                    source: str = "flyfile") -> str:
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise NotFoundError("Account not found")

    normalized = (email or "").strip().lower()
    if not normalized:
        raise ValidationError("Email is required")

    stored_id = user.billing_customer_id

    # 1. A stored id that still resolves is final
    if stored_id and client.retrieve_customer(stored_id):
        return stored_id

    # 2. Reuse a customer already registered under this email
    candidate_id = None
    created = False
    existing = client.find_customer_by_email(normalized)
    if existing:
        candidate_id = existing["id"]
        if existing["metadata"].get("userId") != user_id:
            client.update_customer_metadata(
                candidate_id, {**existing["metadata"], "userId": user_id, "source": source}
            )

    # 3. Otherwise create one
    if not candidate_id:
        candidate_id = client.create_customer(normalized, {"userId": user_id, "source": source})
        created = True

    # 4. Compare-and-set: only replaces what we read (nothing, or the stale id)
    if stored_id:
        expected = or_(models.User.billing_customer_id.is_(None), models.User.billing_customer_id == stored_id)
    else:
        expected = models.User.billing_customer_id.is_(None)
    won = (
        db.query(models.User)
        .filter(models.User.id == user_id, expected)
        .update({"billing_customer_id": candidate_id}, synchronize_session=False)
    )
    db.commit()

    if won:
        logger.info(f"Billing customer {candidate_id} linked to account {user_id}")
        return candidate_id

    # 5. Lost the race: adopt the winner, discard our own customer
    winner_id = db.query(models.User.billing_customer_id).filter(models.User.id == user_id).scalar()
    if created and winner_id != candidate_id:
        try:
            client.delete_customer(candidate_id)
            logger.info(f"Deleted duplicate billing customer {candidate_id} for account {user_id}")
        except ExternalServiceError:
            logger.warning(f"Could not delete duplicate billing customer {candidate_id}")
    return winner_id
