"""Checkout API - open a purchase intent and the matching Stripe PaymentIntent."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user
from api.services import stripe_gateway
from billing.checkout import open_checkout
from billing.intents import attach_transaction, get_intent
from billing.pricing import format_brl
from billing.types import PurchaseKind
from database import get_db
from database.models import User
from database.schemas import CheckoutOut, CheckoutRequest

logger = logging.getLogger("vitrine.checkout")

router = APIRouter(prefix="/api/checkout", tags=["checkout"])


@router.post("/intents", response_model=CheckoutOut)
async def create_checkout(
    body: CheckoutRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Price the purchase and stage it. Free purchases are settled immediately."""
    user_id = user.id
    result = await open_checkout(
        db,
        user_id=user_id,
        kind=PurchaseKind.parse(body.kind),
        plan_id=body.plan_id,
        ad_id=body.ad_id,
        highlight_plan_id=body.highlight_plan_id,
        coupon_code=body.coupon_code,
        listing_payload=body.listing.model_dump(mode="json") if body.listing else None,
        footer_payload=body.footer.model_dump(mode="json") if body.footer else None,
    )

    out = CheckoutOut(
        intent_id=result.intent_id,
        base_amount=result.base_amount,
        amount=result.amount,
        display=format_brl(result.amount),
        currency=stripe_gateway.CHECKOUT_CURRENCY,
        coupon_code=result.coupon.code if result.coupon else None,
        discount_percent=result.coupon.discount_percent if result.coupon else None,
    )
    if result.is_free:
        out.result = result.reconciled.as_dict() if result.reconciled else None
        return out

    payment_intent = await stripe_gateway.create_payment_intent(
        result.amount,
        metadata=result.metadata,
        idempotency_key=f"intent-{result.intent_id}",
    )
    intent = await get_intent(db, result.intent_id)
    await attach_transaction(db, intent, payment_intent["id"])
    await db.commit()

    logger.info(
        "Checkout opened: user=%s intent=%s kind=%s amount=%s pi=%s",
        user_id, result.intent_id, body.kind, result.amount, payment_intent["id"],
    )
    out.payment_intent_id = payment_intent["id"]
    out.client_secret = payment_intent.get("client_secret")
    return out
