"""Payment recorder -- record-once persistence keyed by the processor transaction id.

The client callback and the webhook both report the same success event, so a
duplicate transaction id is a success no-op, never an error.  The pass that moves
the row into ``completed`` (insert or claim) is the only one that reports
``newly_completed=True``; coupon redemption keys off that flag.
"""

import os
from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.clock import utcnow
from billing.errors import PaymentRecordError
from billing.retry import is_transient
from billing.types import PaymentConfirmation, PurchaseContext
from database.models import Payment

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_REFUNDED = "refunded"

FULFILLMENT_PENDING = "pending"
FULFILLMENT_IN_PROGRESS = "in_progress"
FULFILLMENT_DONE = "fulfilled"
FULFILLMENT_FAILED = "failed"

FULFILLMENT_STALE_MINUTES = int(os.getenv("FULFILLMENT_STALE_MINUTES", "10"))

_CLAIMABLE = (STATUS_PENDING, STATUS_FAILED)


@dataclass
class RecordResult:
    payment: Payment
    newly_completed: bool


async def get_by_transaction_id(session: AsyncSession, txn_id: str) -> Payment | None:
    result = await session.execute(
        select(Payment).where(Payment.external_transaction_id == txn_id)
    )
    return result.scalar_one_or_none()


async def get_payment(session: AsyncSession, payment_id: str, for_update: bool = False) -> Payment | None:
    stmt = (
        select(Payment)
        .where(Payment.id == payment_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def _new_payment(
    confirmation: PaymentConfirmation,
    context: PurchaseContext,
    status: str,
    now: datetime,
) -> Payment:
    return Payment(
        user_id=context.user_id,
        amount=confirmation.amount,
        currency=(confirmation.currency or "brl").lower(),
        status=status,
        payment_method=confirmation.payment_method,
        external_transaction_id=confirmation.external_transaction_id,
        plan_id=context.plan_id,
        ad_id=context.ad_id,
        coupon_id=context.coupon_id,
        coupon_discount_percent=context.coupon_discount_percent,
        purchase_metadata=context.to_metadata(),
        fulfillment_status=FULFILLMENT_PENDING,
        created_at=now,
        updated_at=now,
    )


async def _insert(session: AsyncSession, payment: Payment) -> bool:
    """Insert and commit. Returns False on a duplicate-key conflict."""
    session.add(payment)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return False
    except SQLAlchemyError as exc:
        await session.rollback()
        if is_transient(exc):
            raise
        raise PaymentRecordError(
            f"insert failed for {payment.external_transaction_id}: {exc}"
        ) from exc
    return True


async def record_completed(
    session: AsyncSession,
    confirmation: PaymentConfirmation,
    context: PurchaseContext,
    now: datetime | None = None,
) -> RecordResult:
    """Persist a completed payment exactly once."""
    now = now or utcnow()
    txn_id = (confirmation.external_transaction_id or "").strip()
    if not txn_id:
        raise PaymentRecordError("payment confirmation has no transaction id")

    payment = _new_payment(confirmation, context, STATUS_COMPLETED, now)
    if await _insert(session, payment):
        await session.refresh(payment)
        logger.info(
            "[payment] recorded txn={} kind={} amount={} user={}",
            txn_id, context.kind.value, confirmation.amount, context.user_id,
        )
        return RecordResult(payment=payment, newly_completed=True)

    existing = await get_by_transaction_id(session, txn_id)
    if existing is None:
        raise PaymentRecordError(f"insert conflict for {txn_id} but no existing row")

    if existing.status not in _CLAIMABLE:
        logger.info(
            "[payment] duplicate txn={} status={} -> no-op", txn_id, existing.status,
        )
        return RecordResult(payment=existing, newly_completed=False)

    # pending/failed row left by an earlier attempt on the same processor id
    stmt = (
        update(Payment)
        .where(Payment.id == existing.id, Payment.status.in_(_CLAIMABLE))
        .values(
            status=STATUS_COMPLETED,
            amount=confirmation.amount,
            payment_method=confirmation.payment_method,
            plan_id=context.plan_id or existing.plan_id,
            ad_id=context.ad_id or existing.ad_id,
            coupon_id=context.coupon_id,
            coupon_discount_percent=context.coupon_discount_percent,
            purchase_metadata=context.to_metadata(),
            fulfillment_status=FULFILLMENT_PENDING,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    claimed = (await session.execute(stmt)).rowcount == 1
    await session.commit()
    await session.refresh(existing)
    logger.info(
        "[payment] txn={} existing row moved to completed (claimed={})", txn_id, claimed,
    )
    return RecordResult(payment=existing, newly_completed=claimed)


async def record_failed(
    session: AsyncSession,
    confirmation: PaymentConfirmation,
    context: PurchaseContext,
    reason: str = "",
    now: datetime | None = None,
) -> Payment:
    """Record a failed attempt. Never downgrades a completed or refunded row."""
    now = now or utcnow()
    payment = _new_payment(confirmation, context, STATUS_FAILED, now)
    payment.fulfillment_error = reason[:500] if reason else None
    if await _insert(session, payment):
        await session.refresh(payment)
        logger.warning(
            "[payment] failed attempt recorded txn={} user={} reason={}",
            confirmation.external_transaction_id, context.user_id, reason or "-",
        )
        return payment

    existing = await get_by_transaction_id(session, confirmation.external_transaction_id)
    if existing is None:
        raise PaymentRecordError(
            f"insert conflict for {confirmation.external_transaction_id} but no existing row"
        )
    if existing.status == STATUS_PENDING:
        existing.status = STATUS_FAILED
        existing.updated_at = now
        await session.commit()
    return existing


async def mark_refunded(
    session: AsyncSession, txn_id: str, now: datetime | None = None,
) -> bool:
    """completed -> refunded. Returns False if no completed row matched."""
    stmt = (
        update(Payment)
        .where(
            Payment.external_transaction_id == txn_id,
            Payment.status == STATUS_COMPLETED,
        )
        .values(status=STATUS_REFUNDED, updated_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    changed = (await session.execute(stmt)).rowcount == 1
    await session.commit()
    if changed:
        logger.info("[payment] txn={} refunded", txn_id)
    return changed


async def claim_fulfillment(
    session: AsyncSession,
    payment_id: str,
    now: datetime | None = None,
) -> bool:
    """pending/failed -> in_progress for one pass only. Commits.

    An in_progress claim untouched for FULFILLMENT_STALE_MINUTES belongs to a pass
    that died mid-way and can be taken over.
    """
    now = now or utcnow()
    stale_before = now - timedelta(minutes=FULFILLMENT_STALE_MINUTES)
    claimable = or_(
        Payment.fulfillment_status.in_((FULFILLMENT_PENDING, FULFILLMENT_FAILED)),
        and_(
            Payment.fulfillment_status == FULFILLMENT_IN_PROGRESS,
            Payment.updated_at < stale_before,
        ),
    )
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == STATUS_COMPLETED, claimable)
        .values(fulfillment_status=FULFILLMENT_IN_PROGRESS, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    claimed = (await session.execute(stmt)).rowcount == 1
    await session.commit()
    return claimed


async def release_fulfillment(session: AsyncSession, payment_id: str, now: datetime | None = None):
    """in_progress -> pending, so a redelivery can pick the payment up again. Commits."""
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id, Payment.fulfillment_status == FULFILLMENT_IN_PROGRESS)
        .values(fulfillment_status=FULFILLMENT_PENDING, updated_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)
    await session.commit()


async def mark_fulfilled(session: AsyncSession, payment: Payment, now: datetime | None = None):
    payment.fulfillment_status = FULFILLMENT_DONE
    payment.fulfillment_error = None
    payment.fulfilled_at = now or utcnow()
    payment.updated_at = payment.fulfilled_at
    await session.commit()


async def mark_fulfillment_failed(
    session: AsyncSession, payment_id: str, error: str, now: datetime | None = None,
) -> bool:
    """Flag the payment for replay. A fulfilled payment is never downgraded."""
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id, Payment.fulfillment_status != FULFILLMENT_DONE)
        .values(
            fulfillment_status=FULFILLMENT_FAILED,
            fulfillment_error=(error or "")[:2000],
            updated_at=now or utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    changed = (await session.execute(stmt)).rowcount == 1
    await session.commit()
    return changed
