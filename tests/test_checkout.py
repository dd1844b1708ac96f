from datetime import datetime
from decimal import Decimal
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest
from sqlalchemy import select

from billing.checkout import open_checkout
from billing.errors import CheckoutError, CouponRejected
from billing.types import PurchaseKind
from database.models import Coupon, Listing, Payment, Plan, PurchaseIntent, User

NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.mark.asyncio
async def test_plan_checkout_with_coupon(session, catalog):
    result = await open_checkout(
        session, catalog.user_id, PurchaseKind.PLAN, plan_id=catalog.plan_id, coupon_code="Desconto10", now=NOW,
    )
    assert result.base_amount == Decimal("49.90")
    assert result.amount == Decimal("44.910")
    assert not result.is_free
    assert result.reconciled is None
    assert result.metadata["intent_id"] == result.intent_id
    assert result.metadata["kind"] == "plan"
    assert result.metadata["coupon_code"] == "DESCONTO10"

    intent = (await session.execute(select(PurchaseIntent).where(PurchaseIntent.id == result.intent_id))).scalar_one()
    assert intent.status == "open"
    assert intent.coupon_id == catalog.coupon_id
    assert intent.final_amount == Decimal("44.91")


@pytest.mark.asyncio
async def test_rejected_coupon_opens_nothing(session, catalog):
    with pytest.raises(CouponRejected) as exc_info:
        await open_checkout(
            session, catalog.user_id, PurchaseKind.PLAN, plan_id=catalog.plan_id, coupon_code="FAKE", now=NOW,
        )
    assert exc_info.value.reason == "not_found"
    assert (await session.execute(select(PurchaseIntent))).first() is None


@pytest.mark.asyncio
async def test_free_plan_is_settled_without_processor(session, catalog):
    plan = Plan(name="Gratuito", slug="gratuito", price=Decimal("0"), duration_days=30)
    session.add(plan)
    await session.commit()
    plan_id = plan.id

    result = await open_checkout(
        session, catalog.user_id, PurchaseKind.PLAN, plan_id=plan_id,
        listing_payload={"title": "Doação de livros"}, now=NOW,
    )
    assert result.is_free
    assert result.reconciled.ok
    assert {g.kind for g in result.reconciled.entitlements_granted} == {"subscription", "listing"}

    payment = (
        await session.execute(select(Payment).where(Payment.external_transaction_id == f"free_{result.intent_id}"))
    ).scalar_one()
    assert payment.payment_method == "free"
    assert payment.amount == Decimal("0")


@pytest.mark.asyncio
async def test_full_discount_coupon_makes_checkout_free(session, session_factory, catalog):
    session.add(Coupon(code="CORTESIA", discount_percent=Decimal("100"), max_uses=5))
    await session.commit()

    result = await open_checkout(
        session, catalog.user_id, PurchaseKind.PLAN, plan_id=catalog.plan_id, coupon_code="cortesia", now=NOW,
    )
    assert result.is_free
    assert result.reconciled.ok
    async with session_factory() as fresh:
        usage = (await fresh.execute(select(Coupon.usage_count).where(Coupon.code == "CORTESIA"))).scalar_one()
    assert usage == 1


@pytest.mark.asyncio
async def test_footer_checkout_prices_contract_and_art(session, catalog):
    result = await open_checkout(
        session, catalog.user_id, PurchaseKind.FOOTER_AD,
        footer_payload={"exposures": 2160, "footer_art_needed": True}, now=NOW,
    )
    assert result.amount == Decimal("409.00")


@pytest.mark.asyncio
async def test_footer_checkout_rejects_unknown_contract(session, catalog):
    with pytest.raises(CheckoutError):
        await open_checkout(
            session, catalog.user_id, PurchaseKind.FOOTER_AD, footer_payload={"exposures": 10}, now=NOW,
        )


@pytest.mark.asyncio
async def test_highlight_checkout_requires_own_listing(session, catalog):
    stranger = User(email="outro@example.com")
    session.add(stranger)
    await session.commit()
    listing = Listing(user_id=stranger.id, title="Carro", status="active")
    session.add(listing)
    await session.commit()

    with pytest.raises(CheckoutError):
        await open_checkout(
            session, catalog.user_id, PurchaseKind.HIGHLIGHT,
            ad_id=listing.id, highlight_plan_id=catalog.paid_highlight_id, now=NOW,
        )


@pytest.mark.asyncio
async def test_listing_payload_only_on_plan_purchases(session, catalog):
    with pytest.raises(CheckoutError):
        await open_checkout(
            session, catalog.user_id, PurchaseKind.FOOTER_AD,
            footer_payload={"exposures": 720}, listing_payload={"title": "x"}, now=NOW,
        )
