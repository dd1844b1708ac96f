"""Stripe wrapper: webhook verification and PaymentIntent create/retrieve."""

import asyncio
import json
import os
import logging
from decimal import Decimal

import stripe

from billing.errors import ConfigurationError, WebhookVerificationError
from billing.pricing import from_cents, to_cents
from billing.types import PaymentConfirmation

logger = logging.getLogger("vitrine.stripe")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
CHECKOUT_CURRENCY = os.getenv("CHECKOUT_CURRENCY", "brl").lower()

stripe.api_key = STRIPE_SECRET_KEY or None
stripe.max_network_retries = int(os.getenv("STRIPE_MAX_NETWORK_RETRIES", "2"))


def _as_dict(obj) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def verify_webhook(payload: bytes, sig_header: str | None) -> dict:
    """Check the Stripe-Signature header and return the event as a plain dict."""
    if not STRIPE_WEBHOOK_SECRET:
        raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not set")
    if not sig_header:
        raise WebhookVerificationError("missing Stripe-Signature header")
    try:
        stripe.Webhook.construct_event(payload, sig_header, STRIPE_WEBHOOK_SECRET)
    except stripe.SignatureVerificationError as e:
        raise WebhookVerificationError(f"invalid signature: {e}") from e
    except ValueError as e:
        raise WebhookVerificationError(f"invalid payload: {e}") from e
    return json.loads(payload)


def _require_key():
    if not STRIPE_SECRET_KEY:
        raise ConfigurationError("STRIPE_SECRET_KEY is not set")


async def create_payment_intent(
    amount: Decimal,
    metadata: dict,
    currency: str = CHECKOUT_CURRENCY,
    idempotency_key: str | None = None,
) -> dict:
    """Create a PaymentIntent for ``amount`` (major units). Metadata values must be strings."""
    _require_key()
    intent = await asyncio.to_thread(
        stripe.PaymentIntent.create,
        amount=to_cents(amount),
        currency=currency,
        metadata={k: str(v) for k, v in metadata.items() if v is not None},
        automatic_payment_methods={"enabled": True},
        idempotency_key=idempotency_key,
    )
    data = _as_dict(intent)
    logger.info("PaymentIntent created: id=%s amount=%s", data.get("id"), data.get("amount"))
    return data


async def retrieve_payment_intent(payment_intent_id: str) -> dict:
    _require_key()
    intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, payment_intent_id)
    return _as_dict(intent)


def confirmation_from_payment_intent(payment_intent: dict, source: str) -> PaymentConfirmation:
    """Build the orchestrator input from a PaymentIntent object (amounts in cents)."""
    cents = payment_intent.get("amount_received") or payment_intent.get("amount") or 0
    return PaymentConfirmation(
        external_transaction_id=payment_intent["id"],
        amount=from_cents(cents),
        currency=(payment_intent.get("currency") or CHECKOUT_CURRENCY).lower(),
        status=payment_intent.get("status") or "",
        payment_method="stripe",
        metadata=dict(_as_dict(payment_intent.get("metadata"))),
        source=source,
    )
