"""Coupon API - pre-checkout validation (read-only)."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user
from billing.coupons import validate_coupon
from billing.errors import CouponRejected
from billing.pricing import format_brl
from database import get_db
from database.models import User
from database.schemas import CouponValidateOut, CouponValidateRequest

router = APIRouter(prefix="/api/coupons", tags=["coupons"])


@router.post("/validate", response_model=CouponValidateOut)
async def validate(
    body: CouponValidateRequest,
    _user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Discount preview. Nothing is consumed until a payment succeeds."""
    check = await validate_coupon(db, body.code)
    if not check.ok:
        raise CouponRejected(check.reason.value, code=check.code)
    final = check.final_amount(body.base_amount)
    return CouponValidateOut(
        code=check.code,
        discount_percent=check.discount_percent,
        base_amount=body.base_amount,
        final_amount=final,
        display=format_brl(final),
    )
