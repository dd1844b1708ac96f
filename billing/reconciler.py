"""Reconciliation orchestrator.

Single entry point for every payment-success signal (client confirm, webhook, free
checkout, admin replay).  Delivery is at-least-once, the effect is exactly-once:

  0. build the purchase context (intent wins over processor metadata), check amount
  1. record the payment once
  2. redeem the coupon, only on the pass that completed the payment
  3. grant the entitlement
  4. materialize a staged listing for plan purchases
  5. chain a staged highlight
  6. consume the intent and mark the payment fulfilled

Before step 3 the pass claims the payment (fulfillment pending/failed -> in_progress);
the client confirm and the webhook may race, and the pass that loses the claim
reports a duplicate.  Steps 3-6 share one transaction.  If any of them fails the
whole batch is rolled back, the payment is flagged ``fulfillment_status=failed``
and ``replay()`` can run them again later.
"""

from datetime import datetime

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from billing import entitlements, highlight_chain, intents, listings, payments
from billing.clock import utcnow
from billing.coupons import find_coupon, redeem_coupon
from billing.errors import AmountMismatchError, CouponRejected, EntitlementError, PaymentRecordError
from billing.pricing import to_cents, to_decimal
from billing.retry import is_transient, with_db_retry
from billing.types import (
    Grant,
    NextCheckout,
    PaymentConfirmation,
    PurchaseContext,
    PurchaseKind,
    ReconcileResult,
)
from database.models import PurchaseIntent

SUPPORT_WARNING = "payment processed, contact support"

_CONTEXT_KEYS = ("plan_id", "ad_id", "highlight_plan_id", "special_ad_id", "coupon_code")


def _clean(value) -> str | None:
    value = str(value).strip() if value is not None else ""
    return value or None


async def build_context(
    session: AsyncSession, metadata: dict | None,
) -> tuple[PurchaseContext, PurchaseIntent | None]:
    """Merge processor metadata with the server-held intent. Intent fields win."""
    meta = dict(metadata or {})
    intent = await intents.get_intent(session, _clean(meta.get("intent_id")))

    raw_kind = intent.kind if intent is not None else meta.get("kind")
    try:
        kind = PurchaseKind.parse(raw_kind)
    except ValueError as exc:
        raise PaymentRecordError(str(exc)) from exc

    user_id = (intent.user_id if intent is not None else None) or _clean(meta.get("user_id"))
    if not user_id:
        raise PaymentRecordError("payment metadata carries no user_id")

    context = PurchaseContext(kind=kind, user_id=user_id)
    for key in _CONTEXT_KEYS:
        setattr(context, key, _clean(meta.get(key)))
    if meta.get("coupon_discount_percent") not in (None, ""):
        context.coupon_discount_percent = to_decimal(meta.get("coupon_discount_percent"))

    if intent is not None:
        context.intent_id = intent.id
        context.plan_id = intent.plan_id or context.plan_id
        context.ad_id = intent.ad_id or context.ad_id
        context.coupon_id = intent.coupon_id
        context.coupon_code = intent.coupon_code or context.coupon_code
        if intent.coupon_discount_percent is not None:
            context.coupon_discount_percent = to_decimal(intent.coupon_discount_percent)
        context.expected_cents = (
            intent.amount_cents if intent.amount_cents is not None else to_cents(intent.final_amount)
        )
        context.listing_payload = intent.listing_payload
        context.footer_payload = intent.footer_payload
        # on plan intents highlight_plan_id is the staged add-on, not the purchase
        if kind == PurchaseKind.HIGHLIGHT:
            context.highlight_plan_id = intent.highlight_plan_id or context.highlight_plan_id

    if context.coupon_id is None and context.coupon_code:
        coupon = await find_coupon(session, context.coupon_code)
        context.coupon_id = coupon.id if coupon is not None else None
    return context, intent


def check_amount(context: PurchaseContext, confirmation: PaymentConfirmation):
    """Paid cents must equal the cents the processor was asked to charge."""
    if context.expected_cents is None:
        return
    paid = confirmation.amount_cents
    if context.expected_cents != paid:
        raise AmountMismatchError(context.expected_cents, paid)


def _target_id(context: PurchaseContext) -> str | None:
    return (
        context.ad_id or context.special_ad_id or context.highlight_plan_id
        or context.plan_id or context.intent_id
    )


async def _pending_next_checkout(
    session: AsyncSession, context: PurchaseContext,
) -> NextCheckout | None:
    """Redirect for a duplicate delivery when the first pass chained a paid highlight."""
    child = await intents.find_open_child(session, context.intent_id, PurchaseKind.HIGHLIGHT)
    return highlight_chain.next_checkout_for(child) if child is not None else None


async def _already_claimed(
    session: AsyncSession, payment_id: str, txn_id: str, context: PurchaseContext,
) -> ReconcileResult:
    payment = await payments.get_payment(session, payment_id)
    logger.info(
        "[reconcile] txn={} kind={} fulfillment already {}",
        txn_id, context.kind.value, payment.fulfillment_status if payment is not None else "missing",
    )
    return ReconcileResult(
        ok=True,
        payment_id=payment_id,
        duplicate=True,
        next_checkout=await _pending_next_checkout(session, context),
    )


async def _fulfil(
    session: AsyncSession,
    payment_id: str,
    txn_id: str,
    context: PurchaseContext,
    now: datetime,
) -> ReconcileResult:
    """Steps 3-6 in one transaction, run by whichever pass claims the payment."""
    if not await payments.claim_fulfillment(session, payment_id, now):
        return await _already_claimed(session, payment_id, txn_id, context)

    try:
        payment = await payments.get_payment(session, payment_id, for_update=True)
        if payment is None:
            raise PaymentRecordError(f"payment {payment_id} vanished before fulfillment")

        intent = await intents.get_intent(session, context.intent_id)

        grants: list[Grant] = await entitlements.activate(session, payment, context, now)

        listing = None
        if context.kind == PurchaseKind.PLAN and intent is not None and intent.listing_payload:
            listing, created = await listings.materialize(session, intent, context.plan_id, now)
            if created:
                grants.append(Grant(kind="listing", target_id=listing.id, expires_at=listing.end_date))
            payment.ad_id = listing.id
            context.ad_id = listing.id

        next_checkout = None
        staged_highlight = intent.highlight_plan_id if intent is not None else None
        if staged_highlight and context.kind != PurchaseKind.HIGHLIGHT:
            if listing is None:
                listing = await entitlements.get_listing(session, context.ad_id)
            if listing is None:
                raise EntitlementError(
                    f"staged highlight {staged_highlight} has no listing to attach to"
                )
            outcome = await highlight_chain.resolve(
                session,
                listing,
                staged_highlight,
                context.user_id,
                parent_intent_id=intent.id,
                now=now,
            )
            grants.extend(outcome.grants)
            next_checkout = outcome.next_checkout

        if intent is not None:
            await intents.consume_intent(session, intent.id, now)

        await payments.mark_fulfilled(session, payment, now)
    except Exception as exc:
        await session.rollback()
        if is_transient(exc):
            await payments.release_fulfillment(session, payment_id, now)
            raise
        error = f"{type(exc).__name__}: {exc}"
        if not await payments.mark_fulfillment_failed(session, payment_id, error, now):
            return await _already_claimed(session, payment_id, txn_id, context)
        logger.error(
            "[reconcile] partial failure txn={} kind={} target={}: {}",
            txn_id, context.kind.value, _target_id(context), error,
        )
        return ReconcileResult(ok=False, payment_id=payment_id, warnings=[SUPPORT_WARNING])

    logger.info(
        "[reconcile] txn={} kind={} fulfilled grants={} next_checkout={}",
        txn_id, context.kind.value, len(grants),
        next_checkout.intent_id if next_checkout else "-",
    )
    return ReconcileResult(
        ok=True,
        payment_id=payment_id,
        entitlements_granted=grants,
        next_checkout=next_checkout,
    )


async def reconcile(
    session: AsyncSession,
    confirmation: PaymentConfirmation,
    now: datetime | None = None,
) -> ReconcileResult:
    """Turn one payment-success signal into persisted entitlements, at most once.

    An amount mismatch still records the captured payment, flagged
    ``fulfillment_status=failed`` for an operator, and then raises
    ``AmountMismatchError``; nothing is granted and no coupon is redeemed.
    """
    now = now or utcnow()
    txn_id = (confirmation.external_transaction_id or "").strip()

    context, _ = await build_context(session, confirmation.metadata)
    try:
        check_amount(context, confirmation)
        mismatch = None
    except AmountMismatchError as exc:
        mismatch = exc

    recorded = await with_db_retry(
        session,
        lambda: payments.record_completed(session, confirmation, context, now=now),
        label=f"record txn={txn_id}",
    )
    payment_id = recorded.payment.id

    if mismatch is not None:
        await payments.mark_fulfillment_failed(session, payment_id, str(mismatch), now)
        logger.error(
            "[reconcile] txn={} kind={} target={} held for review: {}",
            txn_id, context.kind.value, _target_id(context), mismatch,
        )
        raise mismatch

    if not recorded.newly_completed and recorded.payment.fulfillment_status == payments.FULFILLMENT_DONE:
        logger.info("[reconcile] txn={} kind={} duplicate delivery", txn_id, context.kind.value)
        return ReconcileResult(
            ok=True,
            payment_id=payment_id,
            duplicate=True,
            next_checkout=await _pending_next_checkout(session, context),
        )

    warnings: list[str] = []
    if recorded.newly_completed and context.coupon_id:
        try:
            await redeem_coupon(session, context.coupon_id)
            await session.commit()
        except CouponRejected as exc:
            await session.rollback()
            logger.warning(
                "[reconcile] txn={} coupon={} not redeemed: {}",
                txn_id, context.coupon_code or context.coupon_id, exc.reason,
            )
            warnings.append(f"coupon not redeemed: {exc.reason}")

    result = await _fulfil(session, payment_id, txn_id, context, now)
    result.warnings = warnings + result.warnings
    return result


async def replay(
    session: AsyncSession, payment_id: str, now: datetime | None = None,
) -> ReconcileResult:
    """Admin action: re-run steps 3-6 for a completed payment whose fulfillment failed.

    The amount check is not repeated; replaying a payment held for an amount
    mismatch is the operator's decision.
    """
    now = now or utcnow()
    payment = await payments.get_payment(session, payment_id)
    if payment is None:
        raise PaymentRecordError(f"payment {payment_id} not found")
    if payment.status != payments.STATUS_COMPLETED:
        raise PaymentRecordError(f"payment {payment_id} is {payment.status}, not completed")

    txn_id = payment.external_transaction_id
    metadata = dict(payment.purchase_metadata or {})
    metadata.setdefault("user_id", payment.user_id)
    context, _ = await build_context(session, metadata)
    # the payment row is authoritative for what was bought
    context.plan_id = context.plan_id or payment.plan_id
    context.ad_id = context.ad_id or payment.ad_id

    logger.info("[reconcile] replay payment={} txn={} kind={}", payment_id, txn_id, context.kind.value)
    return await _fulfil(session, payment_id, txn_id, context, now)
