from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest
from sqlalchemy import func, select

from billing.errors import EntitlementError
from billing.highlight_chain import resolve
from database.models import Listing, PurchaseIntent

NOW = datetime(2026, 3, 1, 12, 0, 0)


async def _listing(session, catalog) -> Listing:
    listing = Listing(user_id=catalog.user_id, title="Sofá 3 lugares", status="active", admin_approved=True)
    session.add(listing)
    await session.commit()
    return listing


@pytest.mark.asyncio
async def test_paid_highlight_emits_next_checkout_without_applying(session, catalog):
    listing = await _listing(session, catalog)
    outcome = await resolve(session, listing, catalog.paid_highlight_id, catalog.user_id, now=NOW)
    await session.commit()

    assert outcome.grants == []
    nxt = outcome.next_checkout
    assert nxt is not None
    assert nxt.ad_id == listing.id
    assert nxt.highlight_plan_id == catalog.paid_highlight_id
    assert nxt.amount == Decimal("19.90")

    intent = (await session.execute(select(PurchaseIntent).where(PurchaseIntent.id == nxt.intent_id))).scalar_one()
    assert intent.kind == "highlight"
    assert intent.status == "open"
    assert listing.highlight_plan_id is None


@pytest.mark.asyncio
async def test_free_highlight_applies_immediately(session, catalog):
    listing = await _listing(session, catalog)
    outcome = await resolve(session, listing, catalog.free_highlight_id, catalog.user_id, now=NOW)
    await session.commit()

    assert outcome.next_checkout is None
    assert [g.kind for g in outcome.grants] == ["highlight"]
    assert listing.highlight_plan_id == catalog.free_highlight_id
    assert listing.highlight_expires_at == NOW + timedelta(days=3)


@pytest.mark.asyncio
async def test_chained_intent_is_reused_for_same_parent(session, catalog):
    listing = await _listing(session, catalog)
    first = await resolve(session, listing, catalog.paid_highlight_id, catalog.user_id, parent_intent_id="parent-1", now=NOW)
    await session.commit()
    second = await resolve(session, listing, catalog.paid_highlight_id, catalog.user_id, parent_intent_id="parent-1", now=NOW)
    await session.commit()

    assert first.next_checkout.intent_id == second.next_checkout.intent_id


@pytest.mark.asyncio
async def test_unknown_highlight_plan_is_rejected(session, catalog):
    listing = await _listing(session, catalog)
    with pytest.raises(EntitlementError):
        await resolve(session, listing, "missing", catalog.user_id, now=NOW)


@pytest.mark.asyncio
async def test_highlight_already_carried_is_not_chained_again(session, catalog):
    listing = await _listing(session, catalog)
    listing.highlight_plan_id = catalog.paid_highlight_id
    listing.highlight_expires_at = NOW + timedelta(days=5)
    await session.commit()

    outcome = await resolve(session, listing, catalog.paid_highlight_id, catalog.user_id, now=NOW)
    await session.commit()

    assert outcome.grants == []
    assert outcome.next_checkout is None
    assert (await session.execute(select(func.count()).select_from(PurchaseIntent))).scalar_one() == 0


@pytest.mark.asyncio
async def test_expired_highlight_is_chained_again(session, catalog):
    listing = await _listing(session, catalog)
    listing.highlight_plan_id = catalog.paid_highlight_id
    listing.highlight_expires_at = NOW - timedelta(days=1)
    await session.commit()

    outcome = await resolve(session, listing, catalog.paid_highlight_id, catalog.user_id, now=NOW)

    assert outcome.next_checkout is not None
    assert outcome.next_checkout.amount == Decimal("19.90")
