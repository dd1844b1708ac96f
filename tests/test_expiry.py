from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest
from sqlalchemy import select

from billing.expiry import sweep
from database.models import Listing, PurchaseIntent, SpecialAd, Subscription

NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.mark.asyncio
async def test_sweep_expires_only_what_ran_out(session, session_factory, catalog):
    past = NOW - timedelta(minutes=1)
    future = NOW + timedelta(days=1)
    session.add_all([
        Subscription(user_id=catalog.user_id, plan_id=catalog.plan_id, plan_status="active", plan_expires_at=past),
        Listing(id="old", user_id=catalog.user_id, title="Velho", status="active", end_date=past),
        Listing(id="live", user_id=catalog.user_id, title="Novo", status="active", end_date=future,
                highlight_plan_id=catalog.paid_highlight_id, highlight_expires_at=past),
        SpecialAd(id="footer", title="Rodapé", price=Decimal("129"), status="active", expires_at=past),
        PurchaseIntent(id="stale", user_id=catalog.user_id, kind="plan", status="open", expires_at=past),
        PurchaseIntent(id="done", user_id=catalog.user_id, kind="plan", status="consumed", expires_at=past),
    ])
    await session.commit()

    stats = await sweep(session, now=NOW)
    assert stats == {"subscriptions": 1, "listings": 1, "highlights": 1, "special_ads": 1, "intents": 1}

    async with session_factory() as fresh:
        sub = (await fresh.execute(select(Subscription))).scalar_one()
        assert sub.plan_status == "inactive"
        live = (await fresh.execute(select(Listing).where(Listing.id == "live"))).scalar_one()
        assert live.status == "active"
        assert live.highlight_plan_id is None
        old = (await fresh.execute(select(Listing).where(Listing.id == "old"))).scalar_one()
        assert old.status == "expired"
        done = (await fresh.execute(select(PurchaseIntent.status).where(PurchaseIntent.id == "done"))).scalar_one()
        assert done == "consumed"

    assert await sweep(session, now=NOW) == {
        "subscriptions": 0, "listings": 0, "highlights": 0, "special_ads": 0, "intents": 0,
    }
