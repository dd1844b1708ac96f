"""Purchase intents -- server-held staging for data that must survive the checkout redirect.

An intent is opened before the processor is involved, its id travels in the
processor metadata, and reconciliation consumes it at most once.  Listing form data
and footer-ad form data live here instead of in browser storage.
"""

import os
from datetime import datetime, timedelta
from decimal import Decimal

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing.clock import utcnow
from billing.pricing import to_cents
from billing.types import PurchaseKind
from database.models import PurchaseIntent

INTENT_TTL_MINUTES = max(5, int(os.getenv("INTENT_TTL_MINUTES", "60")))

STATUS_OPEN = "open"
STATUS_CONSUMED = "consumed"
STATUS_EXPIRED = "expired"


async def open_intent(
    session: AsyncSession,
    user_id: str,
    kind: PurchaseKind,
    base_amount: Decimal,
    final_amount: Decimal,
    plan_id: str | None = None,
    ad_id: str | None = None,
    highlight_plan_id: str | None = None,
    coupon_id: str | None = None,
    coupon_code: str | None = None,
    coupon_discount_percent: Decimal | None = None,
    listing_payload: dict | None = None,
    footer_payload: dict | None = None,
    parent_intent_id: str | None = None,
    currency: str = "brl",
    now: datetime | None = None,
) -> PurchaseIntent:
    """Create an open intent. Caller commits."""
    now = now or utcnow()
    intent = PurchaseIntent(
        user_id=user_id,
        kind=kind.value,
        status=STATUS_OPEN,
        plan_id=plan_id,
        ad_id=ad_id,
        highlight_plan_id=highlight_plan_id,
        coupon_id=coupon_id,
        coupon_code=coupon_code,
        coupon_discount_percent=coupon_discount_percent,
        base_amount=base_amount,
        final_amount=final_amount,
        amount_cents=to_cents(final_amount),
        currency=currency,
        listing_payload=listing_payload,
        footer_payload=footer_payload,
        parent_intent_id=parent_intent_id,
        expires_at=now + timedelta(minutes=INTENT_TTL_MINUTES),
        created_at=now,
    )
    session.add(intent)
    await session.flush()
    logger.info(
        "[intent] opened id={} kind={} user={} amount={}",
        intent.id, kind.value, user_id, final_amount,
    )
    return intent


async def get_intent(session: AsyncSession, intent_id: str | None) -> PurchaseIntent | None:
    if not intent_id:
        return None
    result = await session.execute(
        select(PurchaseIntent)
        .where(PurchaseIntent.id == intent_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_open_child(
    session: AsyncSession, parent_intent_id: str | None, kind: PurchaseKind,
) -> PurchaseIntent | None:
    """The follow-on intent a consumed intent chained into, while still payable."""
    if not parent_intent_id:
        return None
    result = await session.execute(
        select(PurchaseIntent)
        .where(
            PurchaseIntent.parent_intent_id == parent_intent_id,
            PurchaseIntent.kind == kind.value,
            PurchaseIntent.status == STATUS_OPEN,
        )
        .order_by(PurchaseIntent.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def attach_transaction(session: AsyncSession, intent: PurchaseIntent, txn_id: str):
    intent.external_transaction_id = txn_id
    await session.flush()


async def consume_intent(
    session: AsyncSession, intent_id: str, now: datetime | None = None,
) -> bool:
    """Mark an intent consumed. True only for the pass that consumed it. Caller commits."""
    stmt = (
        update(PurchaseIntent)
        .where(
            PurchaseIntent.id == intent_id,
            PurchaseIntent.status.in_((STATUS_OPEN, STATUS_EXPIRED)),
        )
        .values(status=STATUS_CONSUMED, consumed_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    consumed = (await session.execute(stmt)).rowcount == 1
    if consumed:
        logger.debug("[intent] consumed id={}", intent_id)
    return consumed
