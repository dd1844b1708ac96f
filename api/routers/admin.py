"""Admin API -- reconciliation support and footer-ad production."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import require_admin
from billing import footer_ads, payments
from billing.errors import EntitlementError, PaymentRecordError
from billing.reconciler import replay
from database import get_db
from database.models import Payment, User
from database.schemas import CompleteRequestBody, SpecialAdOut

router = APIRouter(prefix="/api/admin", tags=["admin"])

logger = logging.getLogger("vitrine.admin")


@router.get("/payments")
async def list_payments(
    status: str | None = None,
    fulfillment: str | None = None,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    """List payments; ``fulfillment=failed`` is the manual reconciliation queue."""
    stmt = select(Payment, User.email).join(
        User, Payment.user_id == User.id
    ).order_by(Payment.created_at.desc()).limit(200)
    if status:
        stmt = stmt.where(Payment.status == status)
    if fulfillment:
        stmt = stmt.where(Payment.fulfillment_status == fulfillment)
    result = await db.execute(stmt)
    return [
        {
            "id": p.id, "user_id": p.user_id, "email": email,
            "amount": str(p.amount), "currency": p.currency,
            "status": p.status, "payment_method": p.payment_method,
            "external_transaction_id": p.external_transaction_id,
            "kind": (p.purchase_metadata or {}).get("kind"),
            "plan_id": p.plan_id, "ad_id": p.ad_id,
            "fulfillment_status": p.fulfillment_status,
            "fulfillment_error": p.fulfillment_error,
            "fulfilled_at": p.fulfilled_at.isoformat() if p.fulfilled_at else None,
            "created_at": p.created_at.isoformat() if p.created_at else None,
        }
        for p, email in result.all()
    ]


@router.post("/payments/{payment_id}/replay")
async def replay_payment(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """Admin: re-run entitlement steps for a payment whose fulfillment failed."""
    admin_email = admin.email
    try:
        result = await replay(db, payment_id)
    except PaymentRecordError as e:
        raise HTTPException(404 if "not found" in str(e) else 400, str(e))
    logger.info("Replay by %s: payment=%s ok=%s", admin_email, payment_id, result.ok)
    return result.as_dict()


@router.post("/requests/{request_id}/complete", response_model=SpecialAdOut)
async def complete_request(
    request_id: str,
    body: CompleteRequestBody,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """Admin: artwork is done, publish the footer ad."""
    admin_email = admin.email
    try:
        ad = await footer_ads.complete_request(
            db,
            request_id,
            title=body.title,
            small_image_url=body.small_image_url,
            large_image_url=body.large_image_url,
            link_url=body.link_url,
            admin_response=body.admin_response,
        )
    except EntitlementError as e:
        raise HTTPException(404 if "not found" in str(e) else 400, str(e))
    logger.info("Request %s completed by %s -> special_ad=%s", request_id, admin_email, ad.id)
    return ad


@router.post("/payments/{payment_id}/refund")
async def refund_payment(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    """Admin: mark a payment refunded after a manual refund in the Stripe dashboard."""
    payment = await payments.get_payment(db, payment_id)
    if payment is None:
        raise HTTPException(404, "Payment not found")
    changed = await payments.mark_refunded(db, payment.external_transaction_id)
    if not changed:
        raise HTTPException(400, f"Cannot refund payment with status '{payment.status}'")
    return {"status": "refunded", "payment_id": payment_id}
