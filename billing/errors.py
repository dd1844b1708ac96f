"""Billing exception hierarchy.

Validation errors (coupon, checkout) never reach persisted state.  Errors raised
after the processor captured the charge are recorded on the payment row instead of
being swallowed.
"""


class BillingError(Exception):
    """Base class for all billing failures."""


class ConfigurationError(BillingError):
    """Required configuration (secrets, keys) is missing."""


class WebhookVerificationError(BillingError):
    """Inbound webhook failed signature verification."""


class CouponRejected(BillingError):
    """Coupon failed validation or its usage limit was reached at redemption."""

    def __init__(self, reason: str, code: str = ""):
        self.reason = reason
        self.code = code
        super().__init__(f"coupon {code!r} rejected: {reason}")


class CheckoutError(BillingError):
    """Checkout request references a missing or inactive item."""


class PaymentRecordError(BillingError):
    """Payment row could not be persisted for a reason other than a duplicate key."""


class AmountMismatchError(BillingError):
    """Processor confirmed a different amount than the intent expected."""

    def __init__(self, expected_cents: int, paid_cents: int):
        self.expected_cents = expected_cents
        self.paid_cents = paid_cents
        super().__init__(f"amount mismatch: expected {expected_cents}, got {paid_cents}")


class EntitlementError(BillingError):
    """Entitlement target is missing or inconsistent. Logic error, not retried."""
