"""Expiry sweep: time out subscriptions, listings, highlights, footer ads and intents."""

from datetime import datetime

from loguru import logger
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from billing.clock import utcnow
from billing.intents import STATUS_EXPIRED, STATUS_OPEN
from database.models import Listing, PurchaseIntent, SpecialAd, Subscription


async def sweep(session: AsyncSession, now: datetime | None = None) -> dict[str, int]:
    """One pass over every time-limited entitlement. Commits once."""
    now = now or utcnow()
    stats: dict[str, int] = {}

    stmts = {
        "subscriptions": update(Subscription)
        .where(Subscription.plan_status == "active", Subscription.plan_expires_at < now)
        .values(plan_status="inactive", updated_at=now),
        "listings": update(Listing)
        .where(Listing.status == "active", Listing.end_date < now)
        .values(status="expired", updated_at=now),
        "highlights": update(Listing)
        .where(Listing.highlight_plan_id.is_not(None), Listing.highlight_expires_at < now)
        .values(highlight_plan_id=None, highlight_expires_at=None, updated_at=now),
        "special_ads": update(SpecialAd)
        .where(SpecialAd.status == "active", SpecialAd.expires_at < now)
        .values(status="inactive"),
        "intents": update(PurchaseIntent)
        .where(PurchaseIntent.status == STATUS_OPEN, PurchaseIntent.expires_at < now)
        .values(status=STATUS_EXPIRED),
    }
    for name, stmt in stmts.items():
        result = await session.execute(stmt.execution_options(synchronize_session=False))
        stats[name] = result.rowcount or 0

    await session.commit()
    if any(stats.values()):
        logger.info("[expiry] sweep done: {}", stats)
    else:
        logger.debug("[expiry] nothing to expire")
    return stats
