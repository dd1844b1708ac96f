"""Checkout: price the purchase, stage it on an intent, settle free ones directly."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing import footer_ads, intents
from billing.clock import utcnow
from billing.coupons import CouponCheck, validate_coupon
from billing.errors import CheckoutError, CouponRejected
from billing.pricing import ZERO, apply_discount, footer_ad_price, to_decimal
from billing.reconciler import reconcile
from billing.types import PaymentConfirmation, PurchaseKind, ReconcileResult
from database.models import HighlightPlan, Listing, Plan, PurchaseIntent

FREE_PAYMENT_METHOD = "free"


@dataclass
class CheckoutResult:
    intent_id: str
    metadata: dict
    base_amount: Decimal
    amount: Decimal
    coupon: CouponCheck | None = None
    reconciled: ReconcileResult | None = None

    @property
    def is_free(self) -> bool:
        return self.amount <= ZERO


def processor_metadata(intent: PurchaseIntent) -> dict:
    """What travels with the processor payment; the intent id is the key part."""
    meta = {
        "intent_id": intent.id,
        "kind": intent.kind,
        "user_id": intent.user_id,
        "plan_id": intent.plan_id,
        "ad_id": intent.ad_id,
        "highlight_plan_id": intent.highlight_plan_id,
        "coupon_code": intent.coupon_code,
    }
    if intent.coupon_discount_percent is not None:
        meta["coupon_discount_percent"] = str(intent.coupon_discount_percent)
    return {k: v for k, v in meta.items() if v is not None}


async def _active_plan(session: AsyncSession, plan_id: str | None) -> Plan:
    if not plan_id:
        raise CheckoutError("plan_id is required")
    plan = (await session.execute(select(Plan).where(Plan.id == plan_id))).scalar_one_or_none()
    if plan is None or not plan.active:
        raise CheckoutError(f"plan {plan_id} is not available")
    return plan


async def _active_highlight_plan(session: AsyncSession, highlight_plan_id: str) -> HighlightPlan:
    hp = (
        await session.execute(select(HighlightPlan).where(HighlightPlan.id == highlight_plan_id))
    ).scalar_one_or_none()
    if hp is None or not hp.active:
        raise CheckoutError(f"highlight plan {highlight_plan_id} is not available")
    return hp


async def _own_listing(session: AsyncSession, ad_id: str | None, user_id: str) -> Listing:
    if not ad_id:
        raise CheckoutError("ad_id is required")
    listing = (await session.execute(select(Listing).where(Listing.id == ad_id))).scalar_one_or_none()
    if listing is None or listing.user_id != user_id:
        raise CheckoutError(f"listing {ad_id} not found")
    return listing


async def _base_amount(
    session: AsyncSession,
    user_id: str,
    kind: PurchaseKind,
    plan_id: str | None,
    ad_id: str | None,
    highlight_plan_id: str | None,
    footer_payload: dict | None,
) -> Decimal:
    if kind == PurchaseKind.PLAN:
        plan = await _active_plan(session, plan_id)
        if ad_id:
            await _own_listing(session, ad_id, user_id)
        if highlight_plan_id:
            await _active_highlight_plan(session, highlight_plan_id)
        return to_decimal(plan.price)

    if kind == PurchaseKind.HIGHLIGHT:
        await _own_listing(session, ad_id, user_id)
        if not highlight_plan_id:
            raise CheckoutError("highlight_plan_id is required")
        hp = await _active_highlight_plan(session, highlight_plan_id)
        return to_decimal(hp.price)

    if not footer_payload:
        raise CheckoutError("footer ad details are required")
    try:
        exposures = int(footer_payload.get("exposures") or 0)
        return footer_ad_price(exposures, footer_ads.art_needed(footer_payload))
    except ValueError as e:
        raise CheckoutError(str(e)) from e


async def open_checkout(
    session: AsyncSession,
    user_id: str,
    kind: PurchaseKind,
    plan_id: str | None = None,
    ad_id: str | None = None,
    highlight_plan_id: str | None = None,
    coupon_code: str | None = None,
    listing_payload: dict | None = None,
    footer_payload: dict | None = None,
    now: datetime | None = None,
) -> CheckoutResult:
    """Validate and price a purchase and stage it on a new intent.

    A zero final amount never reaches the processor: it is reconciled here with a
    synthetic ``free_<intent_id>`` transaction.
    """
    now = now or utcnow()
    if listing_payload and kind != PurchaseKind.PLAN:
        raise CheckoutError("listing details can only be staged on a plan purchase")

    base = await _base_amount(
        session, user_id, kind, plan_id, ad_id, highlight_plan_id, footer_payload,
    )

    check = None
    if coupon_code:
        check = await validate_coupon(session, coupon_code, now=now)
        if not check.ok:
            raise CouponRejected(check.reason.value, code=check.code)
    final = apply_discount(base, check.discount_percent if check else 0)

    intent = await intents.open_intent(
        session,
        user_id=user_id,
        kind=kind,
        base_amount=base,
        final_amount=final,
        plan_id=plan_id,
        ad_id=ad_id,
        highlight_plan_id=highlight_plan_id,
        coupon_id=check.coupon.id if check else None,
        coupon_code=check.code if check else None,
        coupon_discount_percent=check.discount_percent if check else None,
        listing_payload=listing_payload,
        footer_payload=footer_payload,
        now=now,
    )
    await session.commit()
    result = CheckoutResult(
        intent_id=intent.id,
        metadata=processor_metadata(intent),
        base_amount=base,
        amount=final,
        coupon=check,
    )

    if result.is_free:
        logger.info("[checkout] intent={} is free, settling without processor", result.intent_id)
        confirmation = PaymentConfirmation(
            external_transaction_id=f"free_{result.intent_id}",
            amount=ZERO,
            payment_method=FREE_PAYMENT_METHOD,
            metadata=result.metadata,
            source="free",
        )
        result.reconciled = await reconcile(session, confirmation, now=now)
    return result
