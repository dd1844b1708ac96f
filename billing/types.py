"""Value types shared by the reconciliation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any


class PurchaseKind(str, Enum):
    PLAN = "plan"
    HIGHLIGHT = "highlight"
    FOOTER_AD = "footer_ad"

    @classmethod
    def parse(cls, raw: Any) -> "PurchaseKind":
        value = str(raw or "").strip().lower()
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"unknown purchase kind: {raw!r}") from None


class CouponReason(str, Enum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    USAGE_LIMIT_REACHED = "usage_limit_reached"


@dataclass
class PaymentConfirmation:
    """A payment-success signal, from the client callback or the webhook."""

    external_transaction_id: str
    amount: Decimal
    currency: str = "brl"
    status: str = "succeeded"
    payment_method: str = "stripe"
    metadata: dict = field(default_factory=dict)
    source: str = "client"  # client/webhook/admin/free

    @property
    def amount_cents(self) -> int:
        from billing.pricing import to_cents
        return to_cents(self.amount)


@dataclass
class PurchaseContext:
    """Everything the orchestrator needs to know about one purchase."""

    kind: PurchaseKind
    user_id: str
    intent_id: str | None = None
    plan_id: str | None = None
    ad_id: str | None = None
    highlight_plan_id: str | None = None
    special_ad_id: str | None = None
    coupon_id: str | None = None
    coupon_code: str | None = None
    coupon_discount_percent: Decimal | None = None
    expected_cents: int | None = None
    listing_payload: dict | None = None
    footer_payload: dict | None = None

    def to_metadata(self) -> dict:
        meta = {"kind": self.kind.value, "user_id": self.user_id}
        for key in (
            "intent_id", "plan_id", "ad_id", "highlight_plan_id",
            "special_ad_id", "coupon_code",
        ):
            value = getattr(self, key)
            if value:
                meta[key] = value
        if self.coupon_discount_percent is not None:
            meta["coupon_discount_percent"] = str(self.coupon_discount_percent)
        return meta


@dataclass
class NextCheckout:
    """Redirect instruction: start a new checkout for a chained highlight."""

    intent_id: str
    highlight_plan_id: str
    ad_id: str
    amount: Decimal

    def as_dict(self) -> dict:
        return {
            "intent_id": self.intent_id,
            "highlight_plan_id": self.highlight_plan_id,
            "ad_id": self.ad_id,
            "amount": str(self.amount),
        }


@dataclass
class Grant:
    """One entitlement that was applied during a pass."""

    kind: str  # subscription/listing/highlight/special_ad/production_request
    target_id: str
    expires_at: Any = None

    def as_dict(self) -> dict:
        return {
            "kind": self.kind,
            "target_id": self.target_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass
class ReconcileResult:
    ok: bool
    payment_id: str | None = None
    duplicate: bool = False
    entitlements_granted: list[Grant] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    next_checkout: NextCheckout | None = None

    def as_dict(self) -> dict:
        return {
            "ok": self.ok,
            "payment_id": self.payment_id,
            "duplicate": self.duplicate,
            "entitlements_granted": [g.as_dict() for g in self.entitlements_granted],
            "warnings": list(self.warnings),
            "next_checkout": self.next_checkout.as_dict() if self.next_checkout else None,
        }
