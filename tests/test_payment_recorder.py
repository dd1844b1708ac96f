from decimal import Decimal
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest
from sqlalchemy import func, select

from billing import payments
from billing.errors import PaymentRecordError
from billing.types import PaymentConfirmation, PurchaseContext, PurchaseKind
from database.models import Payment


def _context(user_id: str, **kwargs) -> PurchaseContext:
    return PurchaseContext(kind=PurchaseKind.PLAN, user_id=user_id, **kwargs)


async def _count(session_factory, txn_id: str) -> int:
    async with session_factory() as fresh:
        return (
            await fresh.execute(
                select(func.count()).select_from(Payment).where(Payment.external_transaction_id == txn_id)
            )
        ).scalar_one()


@pytest.mark.asyncio
async def test_first_record_is_newly_completed(session, session_factory, catalog, confirmation):
    result = await payments.record_completed(
        session, confirmation("pi_1", "49.90"), _context(catalog.user_id, plan_id=catalog.plan_id),
    )
    assert result.newly_completed
    assert result.payment.status == "completed"
    assert result.payment.amount == Decimal("49.90")
    assert result.payment.fulfillment_status == "pending"
    assert result.payment.purchase_metadata["kind"] == "plan"
    assert await _count(session_factory, "pi_1") == 1


@pytest.mark.asyncio
async def test_duplicate_transaction_is_a_no_op(session, session_factory, catalog, confirmation):
    ctx = _context(catalog.user_id, plan_id=catalog.plan_id)
    first = await payments.record_completed(session, confirmation("pi_dup", "49.90"), ctx)
    second = await payments.record_completed(session, confirmation("pi_dup", "49.90"), ctx)

    assert first.newly_completed
    assert not second.newly_completed
    assert second.payment.id == first.payment.id
    assert await _count(session_factory, "pi_dup") == 1


@pytest.mark.asyncio
async def test_failed_attempt_is_claimed_by_later_success(session, catalog, confirmation):
    ctx = _context(catalog.user_id, plan_id=catalog.plan_id)
    failed = await payments.record_failed(
        session, confirmation("pi_retry", "49.90"), ctx, reason="card_declined",
    )
    assert failed.status == "failed"

    result = await payments.record_completed(session, confirmation("pi_retry", "49.90"), ctx)
    assert result.newly_completed
    assert result.payment.id == failed.id
    assert result.payment.status == "completed"


@pytest.mark.asyncio
async def test_failure_never_downgrades_completed(session, catalog, confirmation):
    ctx = _context(catalog.user_id)
    await payments.record_completed(session, confirmation("pi_ok", "10.00"), ctx)
    row = await payments.record_failed(session, confirmation("pi_ok", "10.00"), ctx, reason="late")
    assert row.status == "completed"


@pytest.mark.asyncio
async def test_refund_moves_completed_to_refunded(session, session_factory, catalog, confirmation):
    ctx = _context(catalog.user_id)
    await payments.record_completed(session, confirmation("pi_ref", "10.00"), ctx)

    assert await payments.mark_refunded(session, "pi_ref")
    assert not await payments.mark_refunded(session, "pi_ref")

    async with session_factory() as fresh:
        status = (
            await fresh.execute(select(Payment.status).where(Payment.external_transaction_id == "pi_ref"))
        ).scalar_one()
    assert status == "refunded"


@pytest.mark.asyncio
async def test_refunded_payment_is_not_recompleted(session, catalog, confirmation):
    ctx = _context(catalog.user_id)
    await payments.record_completed(session, confirmation("pi_gone", "10.00"), ctx)
    await payments.mark_refunded(session, "pi_gone")

    result = await payments.record_completed(session, confirmation("pi_gone", "10.00"), ctx)
    assert not result.newly_completed
    assert result.payment.status == "refunded"


@pytest.mark.asyncio
async def test_missing_transaction_id_is_fatal(session, catalog):
    with pytest.raises(PaymentRecordError):
        await payments.record_completed(
            session,
            PaymentConfirmation(external_transaction_id=" ", amount=Decimal("1")),
            _context(catalog.user_id),
        )
