"""Stripe webhook receiver.

Signature is checked before anything else runs.  Reconciliation outcomes, partial
failures included, are acknowledged with 200 because the payment row already
records them; only transient store errors answer 500 so Stripe redelivers.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.services import stripe_gateway
from billing import payments
from billing.errors import AmountMismatchError, BillingError, ConfigurationError, WebhookVerificationError
from billing.reconciler import build_context, reconcile
from billing.retry import is_transient
from database import get_db

logger = logging.getLogger("vitrine.webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def _payment_succeeded(db: AsyncSession, payment_intent: dict) -> dict:
    confirmation = stripe_gateway.confirmation_from_payment_intent(payment_intent, source="webhook")
    try:
        result = await reconcile(db, confirmation)
    except AmountMismatchError as e:
        logger.error("Webhook amount mismatch: pi=%s %s", payment_intent.get("id"), e)
        return {"handled": False, "error": "amount_mismatch"}
    return {"handled": True, **result.as_dict()}


async def _payment_failed(db: AsyncSession, payment_intent: dict) -> dict:
    confirmation = stripe_gateway.confirmation_from_payment_intent(payment_intent, source="webhook")
    context, _ = await build_context(db, confirmation.metadata)
    error = payment_intent.get("last_payment_error") or {}
    reason = error.get("message") or error.get("code") or ""
    record = await payments.record_failed(db, confirmation, context, reason=reason)
    return {"handled": True, "payment_id": record.id, "status": record.status}


async def _charge_refunded(db: AsyncSession, charge: dict) -> dict:
    txn_id = charge.get("payment_intent")
    if not txn_id:
        return {"handled": False, "error": "charge without payment_intent"}
    changed = await payments.mark_refunded(db, txn_id)
    return {"handled": changed}


_HANDLERS = {
    "payment_intent.succeeded": _payment_succeeded,
    "payment_intent.payment_failed": _payment_failed,
    "charge.refunded": _charge_refunded,
}


@router.post("/stripe")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    payload = await request.body()
    try:
        event = stripe_gateway.verify_webhook(payload, request.headers.get("stripe-signature"))
    except ConfigurationError as e:
        logger.error("Stripe webhook rejected: %s", e)
        raise HTTPException(500, "Webhook not configured")
    except WebhookVerificationError as e:
        logger.warning("Stripe webhook rejected: %s", e)
        raise HTTPException(400, "Invalid signature")

    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.debug("Stripe event ignored: %s", event_type)
        return {"received": True, "type": event_type}

    try:
        outcome = await handler(db, obj)
    except SQLAlchemyError as e:
        if not is_transient(e):
            raise
        logger.error("Stripe event %s hit a transient DB error, asking for redelivery: %s", event.get("id"), e)
        return JSONResponse(status_code=500, content={"detail": "temporary failure"})
    except BillingError as e:
        # not recoverable by redelivery
        logger.error("Stripe event %s (%s) not processed: %s", event.get("id"), event_type, e)
        return {"received": True, "type": event_type, "handled": False, "error": str(e)}

    logger.info("Stripe event processed: id=%s type=%s", event.get("id"), event_type)
    return {"received": True, "type": event_type, **outcome}
