import sys
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from billing.types import PaymentConfirmation
from database.models import Base, Coupon, HighlightPlan, Plan, User


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest_asyncio.fixture
async def catalog(session):
    """One buyer, one paid plan, a paid and a free highlight, DESCONTO10."""
    user = User(email="comprador@example.com", name="Comprador")
    plan = Plan(name="Básico", slug="basico", price=Decimal("49.90"), duration_days=30)
    paid_highlight = HighlightPlan(name="Destaque 7 dias", price=Decimal("19.90"), duration_days=7)
    free_highlight = HighlightPlan(name="Destaque grátis", price=Decimal("0"), duration_days=3)
    coupon = Coupon(code="DESCONTO10", discount_percent=Decimal("10"), max_uses=100)
    session.add_all([user, plan, paid_highlight, free_highlight, coupon])
    await session.commit()
    return SimpleNamespace(
        user_id=user.id,
        plan_id=plan.id,
        paid_highlight_id=paid_highlight.id,
        free_highlight_id=free_highlight.id,
        coupon_id=coupon.id,
    )


@pytest.fixture
def confirmation():
    def _make(txn_id: str, amount, **metadata) -> PaymentConfirmation:
        return PaymentConfirmation(
            external_transaction_id=txn_id,
            amount=Decimal(str(amount)),
            metadata=metadata,
        )
    return _make
