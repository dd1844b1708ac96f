"""Pydantic schemas -- API request/response serialization.

Money fields are Decimal in BRL (major units), unrounded as stored.  The processor
only ever sees integer cents; ``display`` fields carry the R$ formatted string.
"""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# ── Checkout ──
class ListingDraft(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    price: Decimal | None = None
    location: str | None = None
    category_id: str | None = None
    photos: list[str] | None = None
    contact_info: dict | None = None


class FooterDraft(BaseModel):
    exposures: int = Field(description="Contracted exposures: 720, 1440, 2160 or 2880")
    footer_art_needed: bool = False
    title: str | None = None
    small_image_url: str | None = None
    large_image_url: str | None = None
    link_url: str | None = None
    observations: str | None = None


class CheckoutRequest(BaseModel):
    kind: Literal["plan", "highlight", "footer_ad"]
    plan_id: str | None = None
    ad_id: str | None = None
    highlight_plan_id: str | None = None
    coupon_code: str | None = None
    listing: ListingDraft | None = None
    footer: FooterDraft | None = None


class CheckoutOut(BaseModel):
    intent_id: str
    base_amount: Decimal
    amount: Decimal
    display: str
    currency: str
    coupon_code: str | None = None
    discount_percent: Decimal | None = None
    payment_intent_id: str | None = None
    client_secret: str | None = None
    result: dict | None = None


# ── Payments ──
class ConfirmRequest(BaseModel):
    payment_intent_id: str = Field(min_length=1)


class PaymentOut(BaseModel):
    id: str
    amount: Decimal
    currency: str
    status: str
    payment_method: str | None = None
    external_transaction_id: str
    plan_id: str | None = None
    ad_id: str | None = None
    coupon_id: str | None = None
    fulfillment_status: str
    fulfillment_error: str | None = None
    fulfilled_at: datetime | None = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


# ── Coupons ──
class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    base_amount: Decimal = Field(ge=0)


class CouponValidateOut(BaseModel):
    code: str
    discount_percent: Decimal
    base_amount: Decimal
    final_amount: Decimal
    display: str


# ── Admin ──
class CompleteRequestBody(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    small_image_url: str | None = None
    large_image_url: str | None = None
    link_url: str | None = None
    admin_response: str | None = None


class SpecialAdOut(BaseModel):
    id: str
    user_id: str | None = None
    title: str
    price: Decimal
    status: str
    exposures: int | None = None
    expires_at: datetime | None = None
    request_id: str | None = None
    source_payment_id: str | None = None
    model_config = ConfigDict(from_attributes=True)
