"""Highlight chain resolver.

After a listing is created the buyer may have picked a highlight add-on.  A free
highlight is applied on the spot.  A paid one is never applied here: it turns
into a fresh highlight intent that needs its own completed payment.
"""

from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from billing import intents
from billing.clock import naive_utc, utcnow
from billing.entitlements import apply_highlight, get_highlight_plan
from billing.errors import EntitlementError
from billing.pricing import ZERO, to_decimal
from billing.types import Grant, NextCheckout, PurchaseKind
from database.models import Listing, PurchaseIntent


@dataclass
class ChainOutcome:
    grants: list[Grant] = field(default_factory=list)
    next_checkout: NextCheckout | None = None


def next_checkout_for(intent: PurchaseIntent) -> NextCheckout:
    return NextCheckout(
        intent_id=intent.id,
        highlight_plan_id=intent.highlight_plan_id,
        ad_id=intent.ad_id,
        amount=to_decimal(intent.final_amount),
    )


async def resolve(
    session: AsyncSession,
    listing: Listing,
    highlight_plan_id: str,
    user_id: str,
    parent_intent_id: str | None = None,
    now: datetime | None = None,
) -> ChainOutcome:
    now = now or utcnow()
    current = naive_utc(listing.highlight_expires_at)
    if listing.highlight_plan_id == highlight_plan_id and current is not None and current > now:
        logger.info(
            "[chain] listing={} already carries highlight={} until {}, nothing to chain",
            listing.id, highlight_plan_id, current.isoformat(),
        )
        return ChainOutcome()

    highlight_plan = await get_highlight_plan(session, highlight_plan_id)
    if highlight_plan is None or not highlight_plan.active:
        raise EntitlementError(f"highlight plan {highlight_plan_id} not available")

    price = to_decimal(highlight_plan.price)
    if price > ZERO:
        intent = await intents.find_open_child(session, parent_intent_id, PurchaseKind.HIGHLIGHT)
        if intent is not None and intent.ad_id == listing.id:
            return ChainOutcome(next_checkout=next_checkout_for(intent))
        intent = await intents.open_intent(
            session,
            user_id=user_id,
            kind=PurchaseKind.HIGHLIGHT,
            base_amount=price,
            final_amount=price,
            ad_id=listing.id,
            highlight_plan_id=highlight_plan.id,
            parent_intent_id=parent_intent_id,
            now=now,
        )
        logger.info(
            "[chain] listing={} highlight={} needs payment {} -> intent={}",
            listing.id, highlight_plan.id, price, intent.id,
        )
        return ChainOutcome(next_checkout=next_checkout_for(intent))

    expires_at = apply_highlight(listing, highlight_plan, now)
    await session.flush()
    logger.info("[chain] free highlight={} applied to listing={}", highlight_plan.id, listing.id)
    return ChainOutcome(grants=[Grant(kind="highlight", target_id=listing.id, expires_at=expires_at)])
