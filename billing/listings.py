"""Listing materialization from a staged listing payload.

The ad form is saved on the plan intent before checkout.  Once the plan payment is
completed the listing is created from it, already published.  source_intent_id is
unique, so the same intent can never produce two listings.
"""

from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.errors import EntitlementError
from billing.pricing import to_decimal
from database.models import Listing, Plan, PurchaseIntent

_COPY_FIELDS = ("category_id", "description", "location", "photos", "contact_info")


async def get_by_intent(session: AsyncSession, intent_id: str) -> Listing | None:
    result = await session.execute(select(Listing).where(Listing.source_intent_id == intent_id))
    return result.scalar_one_or_none()


async def materialize(
    session: AsyncSession,
    intent: PurchaseIntent,
    plan_id: str | None,
    now: datetime,
) -> tuple[Listing, bool]:
    """Create the listing staged on ``intent``. Returns (listing, created)."""
    existing = await get_by_intent(session, intent.id)
    if existing is not None:
        return existing, False

    payload = intent.listing_payload or {}
    title = (payload.get("title") or "").strip()
    if not title:
        raise EntitlementError(f"listing payload on intent {intent.id} has no title")

    plan = None
    if plan_id:
        plan = (await session.execute(select(Plan).where(Plan.id == plan_id))).scalar_one_or_none()
    if plan is None:
        raise EntitlementError(f"plan {plan_id} for listing on intent {intent.id} not found")

    listing = Listing(
        user_id=intent.user_id,
        plan_id=plan.id,
        title=title[:200],
        price=to_decimal(payload.get("price")) if payload.get("price") is not None else None,
        status="active",
        admin_approved=True,
        end_date=now + timedelta(days=int(plan.duration_days or 0)),
        source_intent_id=intent.id,
        created_at=now,
        updated_at=now,
    )
    for key in _COPY_FIELDS:
        if key in payload:
            setattr(listing, key, payload[key])

    session.add(listing)
    # a racing pass that already created it surfaces here as IntegrityError
    await session.flush()
    logger.info(
        "[listing] materialized listing={} from intent={} plan={} until {}",
        listing.id, intent.id, plan.name, listing.end_date.isoformat(),
    )
    return listing, True
