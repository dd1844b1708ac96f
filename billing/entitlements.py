"""Entitlement activator -- one handler per purchase kind.

Every handler checks whether its target is already in the state this payment
would put it in and skips the mutation if so, so a replayed or duplicated pass
never re-grants.  Handlers flush but do not commit; the orchestrator owns the
transaction.
"""

import os
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing import footer_ads
from billing.clock import naive_utc, utcnow
from billing.errors import EntitlementError
from billing.types import Grant, PurchaseContext, PurchaseKind
from database.models import HighlightPlan, Listing, Payment, Plan, Subscription

POLICY_RESET = "reset"
POLICY_EXTEND = "extend"

PLAN_RENEWAL_POLICY = os.getenv("PLAN_RENEWAL_POLICY", POLICY_RESET).strip().lower()


def plan_expiry(
    current_expires_at: datetime | None,
    duration_days: int,
    now: datetime,
    policy: str | None = None,
) -> datetime:
    """Expiry for a plan purchase.

    reset:  now + duration, remaining days on an active plan are dropped.
    extend: duration is added to the current expiry while it is still in the future.
    """
    policy = (policy or PLAN_RENEWAL_POLICY).lower()
    start = now
    current = naive_utc(current_expires_at)
    if policy == POLICY_EXTEND and current and current > now:
        start = current
    return start + timedelta(days=int(duration_days or 0))


async def get_listing(session: AsyncSession, listing_id: str | None) -> Listing | None:
    if not listing_id:
        return None
    result = await session.execute(select(Listing).where(Listing.id == listing_id))
    return result.scalar_one_or_none()


async def get_highlight_plan(session: AsyncSession, highlight_plan_id: str | None) -> HighlightPlan | None:
    if not highlight_plan_id:
        return None
    result = await session.execute(
        select(HighlightPlan).where(HighlightPlan.id == highlight_plan_id)
    )
    return result.scalar_one_or_none()


def publish_listing(listing: Listing, now: datetime) -> bool:
    """pending/* -> active + admin_approved. False if it already was."""
    if listing.status == "active" and listing.admin_approved:
        return False
    listing.status = "active"
    listing.admin_approved = True
    listing.updated_at = now
    return True


def apply_highlight(listing: Listing, highlight_plan: HighlightPlan, now: datetime) -> datetime:
    """Attach a highlight and (re)activate the listing. Returns the highlight expiry."""
    expires_at = now + timedelta(days=int(highlight_plan.duration_days or 0))
    listing.highlight_plan_id = highlight_plan.id
    listing.highlight_expires_at = expires_at
    publish_listing(listing, now)
    listing.updated_at = now
    return expires_at


def highlight_already_granted(
    listing: Listing, highlight_plan: HighlightPlan, paid_at: datetime,
) -> bool:
    """True if this listing carries a grant of this plan issued at or after paid_at."""
    if listing.highlight_plan_id != highlight_plan.id or listing.highlight_expires_at is None:
        return False
    earliest = naive_utc(paid_at) + timedelta(days=int(highlight_plan.duration_days or 0))
    return naive_utc(listing.highlight_expires_at) >= earliest


# ── Handlers ──

async def _activate_plan(
    session: AsyncSession, payment: Payment, context: PurchaseContext, now: datetime,
) -> list[Grant]:
    if not context.plan_id:
        raise EntitlementError(f"plan purchase {payment.external_transaction_id} has no plan_id")
    plan = (await session.execute(select(Plan).where(Plan.id == context.plan_id))).scalar_one_or_none()
    if plan is None:
        raise EntitlementError(f"plan {context.plan_id} not found")

    grants: list[Grant] = []
    sub = (
        await session.execute(select(Subscription).where(Subscription.user_id == context.user_id))
    ).scalar_one_or_none()

    if sub is not None and sub.source_payment_id == payment.id:
        logger.info("[entitlement] plan already granted by payment={}", payment.id)
    else:
        expires_at = plan_expiry(
            sub.plan_expires_at if sub and sub.plan_status == "active" else None,
            plan.duration_days,
            now,
        )
        if sub is None:
            sub = Subscription(user_id=context.user_id)
            session.add(sub)
        sub.plan_id = plan.id
        sub.plan_type = plan.name
        sub.plan_status = "active"
        sub.plan_expires_at = expires_at
        sub.source_payment_id = payment.id
        sub.updated_at = now
        await session.flush()
        grants.append(Grant(kind="subscription", target_id=sub.id, expires_at=expires_at))
        logger.info(
            "[entitlement] plan={} active for user={} until {}",
            plan.name, context.user_id, expires_at.isoformat(),
        )

    # a listing that was waiting on this paid plan goes live now
    if context.ad_id:
        listing = await get_listing(session, context.ad_id)
        if listing is None:
            raise EntitlementError(f"listing {context.ad_id} for plan payment not found")
        if publish_listing(listing, now):
            grants.append(Grant(kind="listing", target_id=listing.id, expires_at=listing.end_date))
    return grants


async def _activate_highlight(
    session: AsyncSession, payment: Payment, context: PurchaseContext, now: datetime,
) -> list[Grant]:
    if not context.ad_id:
        raise EntitlementError(
            f"highlight purchase {payment.external_transaction_id} has no ad_id"
        )
    if not context.highlight_plan_id:
        raise EntitlementError(
            f"highlight purchase {payment.external_transaction_id} has no highlight_plan_id"
        )
    listing = await get_listing(session, context.ad_id)
    if listing is None:
        raise EntitlementError(f"listing {context.ad_id} not found")
    highlight_plan = await get_highlight_plan(session, context.highlight_plan_id)
    if highlight_plan is None:
        raise EntitlementError(f"highlight plan {context.highlight_plan_id} not found")

    if highlight_already_granted(listing, highlight_plan, payment.created_at or now):
        logger.info("[entitlement] highlight already on listing={}", listing.id)
        return []

    expires_at = apply_highlight(listing, highlight_plan, now)
    await session.flush()
    logger.info(
        "[entitlement] highlight={} on listing={} until {}",
        highlight_plan.id, listing.id, expires_at.isoformat(),
    )
    return [Grant(kind="highlight", target_id=listing.id, expires_at=expires_at)]


async def _activate_footer_ad(
    session: AsyncSession, payment: Payment, context: PurchaseContext, now: datetime,
) -> list[Grant]:
    return await footer_ads.publish(
        session,
        payment,
        footer_payload=context.footer_payload,
        user_id=context.user_id,
        special_ad_id=context.special_ad_id,
        now=now,
    )


Handler = Callable[[AsyncSession, Payment, PurchaseContext, datetime], Awaitable[list[Grant]]]

_HANDLERS: dict[PurchaseKind, Handler] = {
    PurchaseKind.PLAN: _activate_plan,
    PurchaseKind.HIGHLIGHT: _activate_highlight,
    PurchaseKind.FOOTER_AD: _activate_footer_ad,
}


async def activate(
    session: AsyncSession,
    payment: Payment,
    context: PurchaseContext,
    now: datetime | None = None,
) -> list[Grant]:
    """Grant the entitlement for one payment."""
    handler = _HANDLERS.get(context.kind)
    if handler is None:
        raise EntitlementError(f"no handler for purchase kind {context.kind!r}")
    return await handler(session, payment, context, now or utcnow())
