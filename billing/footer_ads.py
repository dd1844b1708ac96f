"""Footer-ad publisher.

A paid footer placement either becomes a live SpecialAd straight away (customer
supplied the artwork) or a production Request for the design team (artwork
needed).  Both rows carry the paying payment's id under a unique constraint, so a
second pass over the same payment finds the row and does nothing.
"""

from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.clock import utcnow
from billing.errors import EntitlementError
from billing.pricing import FOOTER_AD_DAYS, to_decimal
from billing.types import Grant
from database.models import Payment, ProductionRequest, SpecialAd

MATERIALS_ART_NEEDED = "Arte necessária"
MATERIALS_OWN_ART = "Arte própria"


def art_needed(payload: dict | None) -> bool:
    payload = payload or {}
    value = payload.get("footer_art_needed", payload.get("art_needed", False))
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "sim")
    return bool(value)


async def _existing_request(session: AsyncSession, payment_id: str) -> ProductionRequest | None:
    result = await session.execute(
        select(ProductionRequest).where(ProductionRequest.source_payment_id == payment_id)
    )
    return result.scalar_one_or_none()


async def _existing_special_ad(session: AsyncSession, payment_id: str) -> SpecialAd | None:
    result = await session.execute(
        select(SpecialAd).where(SpecialAd.source_payment_id == payment_id)
    )
    return result.scalar_one_or_none()


async def _activate_existing(
    session: AsyncSession, payment: Payment, special_ad_id: str, now: datetime,
) -> list[Grant]:
    """Pay-to-activate for a SpecialAd created before checkout."""
    ad = (
        await session.execute(select(SpecialAd).where(SpecialAd.id == special_ad_id))
    ).scalar_one_or_none()
    if ad is None:
        raise EntitlementError(f"special ad {special_ad_id} not found")
    if ad.status == "active" and ad.source_payment_id == payment.id:
        return []
    ad.status = "active"
    ad.source_payment_id = payment.id
    ad.expires_at = now + timedelta(days=FOOTER_AD_DAYS)
    await session.flush()
    logger.info("[footer] special_ad={} activated by payment={}", ad.id, payment.id)
    return [Grant(kind="special_ad", target_id=ad.id, expires_at=ad.expires_at)]


async def publish(
    session: AsyncSession,
    payment: Payment,
    footer_payload: dict | None,
    user_id: str,
    special_ad_id: str | None = None,
    now: datetime | None = None,
) -> list[Grant]:
    now = now or utcnow()
    if not footer_payload:
        if special_ad_id:
            return await _activate_existing(session, payment, special_ad_id, now)
        raise EntitlementError(
            f"footer-ad payment {payment.external_transaction_id} has no footer payload"
        )

    exposures = footer_payload.get("exposures")
    title = (footer_payload.get("title") or "").strip() or "Anúncio de rodapé"

    if art_needed(footer_payload):
        if await _existing_request(session, payment.id) is not None:
            logger.info("[footer] request already exists for payment={}", payment.id)
            return []
        observations = footer_payload.get("observations")
        if not observations and exposures:
            observations = f"{exposures} exposições"
        request = ProductionRequest(
            user_id=user_id,
            ad_type="footer",
            duration_days=FOOTER_AD_DAYS,
            materials=MATERIALS_ART_NEEDED,
            observations=observations,
            proposed_value=to_decimal(payment.amount),
            status="pending",
            source_payment_id=payment.id,
            created_at=now,
            updated_at=now,
        )
        session.add(request)
        await session.flush()
        logger.info(
            "[footer] production request={} opened for payment={} value={}",
            request.id, payment.id, payment.amount,
        )
        return [Grant(kind="production_request", target_id=request.id)]

    if await _existing_special_ad(session, payment.id) is not None:
        logger.info("[footer] special ad already exists for payment={}", payment.id)
        return []

    ad = SpecialAd(
        user_id=user_id,
        title=title,
        price=to_decimal(payment.amount),
        status="active",
        exposures=int(exposures) if exposures else None,
        small_image_url=footer_payload.get("small_image_url"),
        large_image_url=footer_payload.get("large_image_url"),
        link_url=footer_payload.get("link_url"),
        expires_at=now + timedelta(days=FOOTER_AD_DAYS),
        source_payment_id=payment.id,
        created_at=now,
    )
    session.add(ad)
    await session.flush()
    logger.info(
        "[footer] special_ad={} live until {} (payment={})",
        ad.id, ad.expires_at.isoformat(), payment.id,
    )
    return [Grant(kind="special_ad", target_id=ad.id, expires_at=ad.expires_at)]


async def complete_request(
    session: AsyncSession,
    request_id: str,
    title: str,
    small_image_url: str | None = None,
    large_image_url: str | None = None,
    link_url: str | None = None,
    admin_response: str | None = None,
    now: datetime | None = None,
) -> SpecialAd:
    """Operator action: turn a finished production request into a live SpecialAd."""
    now = now or utcnow()
    request = (
        await session.execute(
            select(ProductionRequest).where(ProductionRequest.id == request_id)
        )
    ).scalar_one_or_none()
    if request is None:
        raise EntitlementError(f"request {request_id} not found")

    existing = (
        await session.execute(select(SpecialAd).where(SpecialAd.request_id == request_id))
    ).scalar_one_or_none()
    if existing is not None:
        return existing
    if request.status != "pending":
        raise EntitlementError(f"request {request_id} is {request.status}, not pending")

    exposures = None
    obs = (request.observations or "").split()
    if obs and obs[0].isdigit():
        exposures = int(obs[0])

    ad = SpecialAd(
        user_id=request.user_id,
        title=title,
        price=to_decimal(request.proposed_value),
        status="active",
        exposures=exposures,
        small_image_url=small_image_url,
        large_image_url=large_image_url,
        link_url=link_url,
        expires_at=now + timedelta(days=int(request.duration_days or FOOTER_AD_DAYS)),
        request_id=request.id,
        created_at=now,
    )
    session.add(ad)
    request.status = "completed"
    request.admin_response = admin_response
    request.updated_at = now
    await session.commit()
    await session.refresh(ad)
    logger.info("[footer] request={} completed -> special_ad={}", request.id, ad.id)
    return ad
