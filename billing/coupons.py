"""Coupon validation and redemption.

Validation is read-only.  Redemption is a single conditional UPDATE so two
concurrent passes can never push usage_count past max_uses, and nothing ever
decrements it: a coupon consumed by a captured payment stays consumed even when a
later entitlement step fails.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from loguru import logger
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing.clock import naive_utc, utcnow
from billing.errors import CouponRejected
from billing.pricing import apply_discount, clamp_discount
from billing.types import CouponReason
from database.models import Coupon


@dataclass
class CouponCheck:
    code: str
    coupon: Coupon | None = None
    discount_percent: Decimal | None = None
    reason: CouponReason | None = None

    @property
    def ok(self) -> bool:
        return self.reason is None

    def final_amount(self, base) -> Decimal:
        return apply_discount(base, self.discount_percent if self.ok else 0)


def normalize_code(raw: str | None) -> str:
    return str(raw or "").strip().upper()


def check_coupon(coupon: Coupon | None, code: str, now: datetime | None = None) -> CouponCheck:
    """Apply the rules in order: existence, active, expiry, usage limit."""
    now = now or utcnow()
    if coupon is None:
        return CouponCheck(code=code, reason=CouponReason.NOT_FOUND)
    if not coupon.active:
        return CouponCheck(code=code, coupon=coupon, reason=CouponReason.INACTIVE)
    expires_at = naive_utc(coupon.expires_at)
    if expires_at is not None and expires_at < now:
        return CouponCheck(code=code, coupon=coupon, reason=CouponReason.EXPIRED)
    if coupon.max_uses is not None and (coupon.usage_count or 0) >= coupon.max_uses:
        return CouponCheck(code=code, coupon=coupon, reason=CouponReason.USAGE_LIMIT_REACHED)
    return CouponCheck(
        code=code,
        coupon=coupon,
        discount_percent=clamp_discount(coupon.discount_percent),
    )


async def find_coupon(session: AsyncSession, raw_code: str) -> Coupon | None:
    code = normalize_code(raw_code)
    if not code:
        return None
    result = await session.execute(select(Coupon).where(func.upper(Coupon.code) == code))
    return result.scalar_one_or_none()


async def validate_coupon(
    session: AsyncSession, raw_code: str, now: datetime | None = None,
) -> CouponCheck:
    code = normalize_code(raw_code)
    coupon = await find_coupon(session, code)
    return check_coupon(coupon, code, now=now)


async def redeem_coupon(session: AsyncSession, coupon_id: str) -> int:
    """Atomically increment usage_count if below max_uses. Returns the new count.

    Raises CouponRejected(usage_limit_reached) when the limit was already hit.
    Caller commits.
    """
    stmt = (
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            or_(Coupon.max_uses.is_(None), Coupon.usage_count < Coupon.max_uses),
        )
        .values(usage_count=Coupon.usage_count + 1)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        raise CouponRejected(CouponReason.USAGE_LIMIT_REACHED.value, code=coupon_id)

    count = (
        await session.execute(select(Coupon.usage_count).where(Coupon.id == coupon_id))
    ).scalar_one()
    logger.info("[coupon] redeemed coupon_id={} usage_count={}", coupon_id, count)
    return count
