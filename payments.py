"""
Stripe boundary: outbound checkout sessions and inbound webhook events.

Webhook payloads are only parsed after the signature has been verified
against ``STRIPE_WEBHOOK_SECRET``.
"""

import json
import logging
from typing import Any, Dict, Optional

import stripe

import config
from errors import SignatureInvalid

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


def create_checkout_session(params: Dict[str, Any]) -> Dict[str, Any]:
    stripe.api_key = config.STRIPE_SECRET_KEY
    session = stripe.checkout.Session.create(**params)
    return {
        "id": session.id,
        "url": session.url,
        "amount_total": session.amount_total,
        "currency": session.currency,
        "client_reference_id": session.client_reference_id,
    }


def verify_webhook(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    if not signature or not config.STRIPE_WEBHOOK_SECRET:
        logger.warning("Webhook rejected: missing signature or signing secret")
        raise SignatureInvalid()
    body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    try:
        stripe.WebhookSignature.verify_header(
            body, signature, config.STRIPE_WEBHOOK_SECRET, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise SignatureInvalid(f"Webhook Error: {exc}")
    try:
        return json.loads(body)
    except ValueError as exc:
        raise SignatureInvalid(f"Webhook Error: invalid payload ({exc})")
