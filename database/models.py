"""Vitrine DB models: marketplace catalog, payments and entitlements. (SQLite/PostgreSQL)"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, relationship, validates


class Base(DeclarativeBase):
    pass


def _uuid() -> str:
    return str(uuid.uuid4())


# base (2 dp) x discount (4 dp) fits in 8 decimal places, so discounted amounts are stored exact
Money = Numeric(18, 8)


# ─────────────────────────────────────────────
# 1. Users (identity only, auth lives elsewhere)
# ─────────────────────────────────────────────
class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=True)
    role = Column(String(20), default="user")  # "user", "admin"
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


# ─────────────────────────────────────────────
# 2. Listing plans
# ─────────────────────────────────────────────
class Plan(Base):
    __tablename__ = "plans"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(100), nullable=False)
    slug = Column(String(100), unique=True, nullable=True)
    description = Column(Text, nullable=True)
    price = Column(Money, nullable=False, default=0)
    duration_days = Column(Integer, nullable=False, default=30)
    photo_limit = Column(Integer, default=1)
    active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


# ─────────────────────────────────────────────
# 3. Highlight add-on plans
# ─────────────────────────────────────────────
class HighlightPlan(Base):
    __tablename__ = "highlight_plans"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(100), nullable=False)
    price = Column(Money, nullable=False, default=0)
    duration_days = Column(Integer, nullable=False, default=7)
    badge_label = Column(String(40), default="DESTAQUE")
    badge_color = Column(String(16), default="#f97316")
    active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


# ─────────────────────────────────────────────
# 4. Listings (ads)
# ─────────────────────────────────────────────
class Listing(Base):
    __tablename__ = "ads"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    plan_id = Column(String(36), ForeignKey("plans.id"), nullable=True)
    category_id = Column(String(36), nullable=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Money, nullable=True)
    location = Column(String(200), nullable=True)
    photos = Column(JSON, nullable=True)
    contact_info = Column(JSON, nullable=True)
    status = Column(String(20), default="pending")  # pending/active/rejected/expired
    admin_approved = Column(Boolean, default=False)
    highlight_plan_id = Column(String(36), ForeignKey("highlight_plans.id"), nullable=True)
    highlight_expires_at = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    # set when materialized from a purchase intent; unique => one listing per intent
    source_intent_id = Column(String(36), unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    highlight_plan = relationship("HighlightPlan")

    __table_args__ = (
        Index("ix_ads_user", "user_id"),
        Index("ix_ads_status", "status"),
    )


# ─────────────────────────────────────────────
# 5. Subscriptions (user_plans)
# ─────────────────────────────────────────────
class Subscription(Base):
    __tablename__ = "user_plans"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), unique=True, nullable=False)
    plan_id = Column(String(36), ForeignKey("plans.id"), nullable=True)
    plan_type = Column(String(100), nullable=True)
    plan_status = Column(String(20), default="inactive")  # inactive/active
    plan_expires_at = Column(DateTime, nullable=True)
    source_payment_id = Column(String(36), nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow)


# ─────────────────────────────────────────────
# 6. Coupons
# ─────────────────────────────────────────────
class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(String(36), primary_key=True, default=_uuid)
    code = Column(String(50), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    discount_percent = Column(Numeric(7, 4), nullable=False, default=0)
    active = Column(Boolean, default=True)
    expires_at = Column(DateTime, nullable=True)
    max_uses = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    @validates("code")
    def _normalize_code(self, _key, value):
        return (value or "").strip().upper()


# codes are unique regardless of case, also for rows written without the ORM
Index("uq_coupon_code_upper", func.upper(Coupon.code), unique=True)


# ─────────────────────────────────────────────
# 7. Payments (append-only audit trail)
# ─────────────────────────────────────────────
class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    amount = Column(Money, nullable=False)
    currency = Column(String(8), default="brl")
    status = Column(String(20), default="pending")  # pending/completed/failed/refunded
    payment_method = Column(String(30), nullable=True)
    external_transaction_id = Column(String(120), unique=True, nullable=False)
    plan_id = Column(String(36), nullable=True)
    ad_id = Column(String(36), nullable=True)
    coupon_id = Column(String(36), ForeignKey("coupons.id"), nullable=True)
    coupon_discount_percent = Column(Numeric(7, 4), nullable=True)
    # "metadata" is reserved on declarative classes
    purchase_metadata = Column("metadata", JSON, nullable=True)
    fulfillment_status = Column(String(20), default="pending")  # pending/in_progress/fulfilled/failed
    fulfillment_error = Column(Text, nullable=True)
    fulfilled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", backref="payments")

    __table_args__ = (
        Index("ix_payment_user", "user_id"),
        Index("ix_payment_status", "status"),
        Index("ix_payment_fulfillment", "fulfillment_status"),
    )


# ─────────────────────────────────────────────
# 8. Footer placements (special ads)
# ─────────────────────────────────────────────
class SpecialAd(Base):
    __tablename__ = "special_ads"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    title = Column(String(200), nullable=False)
    price = Column(Money, nullable=False, default=0)
    status = Column(String(20), default="pending")  # pending/active/inactive
    exposures = Column(Integer, nullable=True)
    small_image_url = Column(Text, nullable=True)
    large_image_url = Column(Text, nullable=True)
    link_url = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    source_payment_id = Column(String(36), unique=True, nullable=True)
    request_id = Column(String(36), unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_special_ads_status", "status"),
    )


# ─────────────────────────────────────────────
# 9. Production tickets (artwork needed before a footer ad goes live)
# ─────────────────────────────────────────────
class ProductionRequest(Base):
    __tablename__ = "requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    ad_type = Column(String(30), nullable=False, default="footer")
    duration_days = Column(Integer, nullable=False, default=30)
    materials = Column(Text, nullable=True)
    observations = Column(Text, nullable=True)
    proposed_value = Column(Money, nullable=False, default=0)
    admin_response = Column(Text, nullable=True)
    status = Column(String(20), default="pending")  # pending/completed
    source_payment_id = Column(String(36), unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_requests_status", "status"),
    )


# ─────────────────────────────────────────────
# 10. Purchase intents (server-held checkout staging)
# ─────────────────────────────────────────────
class PurchaseIntent(Base):
    __tablename__ = "purchase_intents"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    kind = Column(String(20), nullable=False)  # plan/highlight/footer_ad
    status = Column(String(20), default="open")  # open/consumed/expired
    plan_id = Column(String(36), nullable=True)
    ad_id = Column(String(36), nullable=True)
    highlight_plan_id = Column(String(36), nullable=True)
    coupon_id = Column(String(36), nullable=True)
    coupon_code = Column(String(50), nullable=True)
    coupon_discount_percent = Column(Numeric(7, 4), nullable=True)
    base_amount = Column(Money, nullable=False, default=0)
    final_amount = Column(Money, nullable=False, default=0)
    amount_cents = Column(Integer, nullable=True)  # what the processor is asked to charge
    currency = Column(String(8), default="brl")
    listing_payload = Column(JSON, nullable=True)
    footer_payload = Column(JSON, nullable=True)
    parent_intent_id = Column(String(36), nullable=True)
    external_transaction_id = Column(String(120), nullable=True)
    expires_at = Column(DateTime, nullable=True)
    consumed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_intent_user", "user_id"),
        Index("ix_intent_status", "status"),
    )
