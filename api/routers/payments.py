"""Payment API - client-side confirmation and history."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user
from api.services import stripe_gateway
from billing.errors import AmountMismatchError
from billing.reconciler import reconcile
from database import get_db
from database.models import Payment, User
from database.schemas import ConfirmRequest, PaymentOut

logger = logging.getLogger("vitrine.payments")

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/confirm")
async def confirm_payment(
    body: ConfirmRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Success callback from the checkout page.

    The PaymentIntent is fetched server-side, so the client never dictates the
    amount or the purchase.  The webhook may already have reconciled it; the
    result then comes back as a duplicate (with any pending highlight checkout).
    """
    user_id = user.id
    payment_intent = await stripe_gateway.retrieve_payment_intent(body.payment_intent_id)
    if payment_intent.get("status") != "succeeded":
        raise HTTPException(409, f"Payment not completed (status={payment_intent.get('status')})")

    confirmation = stripe_gateway.confirmation_from_payment_intent(payment_intent, source="client")
    owner = confirmation.metadata.get("user_id")
    if owner and owner != user_id:
        raise HTTPException(404, "Payment not found")

    try:
        result = await reconcile(db, confirmation)
    except AmountMismatchError as e:
        logger.error("Payment amount mismatch: pi=%s %s", body.payment_intent_id, e)
        raise HTTPException(400, "Payment amount mismatch")

    logger.info(
        "Payment confirmed by client: user=%s pi=%s ok=%s duplicate=%s",
        user_id, body.payment_intent_id, result.ok, result.duplicate,
    )
    return result.as_dict()


@router.get("/my", response_model=list[PaymentOut])
async def my_payments(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get current user's payment history."""
    result = await db.execute(
        select(Payment)
        .where(Payment.user_id == user.id)
        .order_by(Payment.created_at.desc())
        .limit(50)
    )
    return result.scalars().all()
