"""Price math: coupon discounts, processor cents, BRL display, footer-ad contracts.

Persisted amounts are never rounded; rounding happens only in to_cents() (the
processor boundary) and format_brl() (display).
"""

import os
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

ZERO = Decimal("0")
HUNDRED = Decimal("100")

FOOTER_AD_DAYS = int(os.getenv("FOOTER_AD_DAYS", "30"))
FOOTER_ART_FEE = Decimal(os.getenv("FOOTER_ART_FEE", "50.00"))

# exposures -> base price (BRL)
FOOTER_AD_CONTRACTS: dict[int, Decimal] = {
    720: Decimal("129.00"),
    1440: Decimal("249.00"),
    2160: Decimal("359.00"),
    2880: Decimal("469.00"),
}


def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def clamp_discount(percent: Any) -> Decimal:
    """Clamp a discount percentage into [0, 100]."""
    value = to_decimal(percent)
    return max(ZERO, min(HUNDRED, value))


def apply_discount(base: Any, percent: Any) -> Decimal:
    """final = max(0, base * (1 - clamp(percent) / 100))"""
    base_value = to_decimal(base)
    final = base_value * (1 - clamp_discount(percent) / HUNDRED)
    return max(ZERO, final)


def to_cents(amount: Any) -> int:
    """Processor amount in the smallest currency unit."""
    value = to_decimal(amount) * HUNDRED
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: Any) -> Decimal:
    return to_decimal(cents) / HUNDRED


def format_brl(amount: Any) -> str:
    """R$ 1.234,56"""
    value = to_decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    whole, frac = f"{value:,.2f}".split(".")
    return f"R$ {whole.replace(',', '.')},{frac}"


def footer_ad_price(exposures: int, art_needed: bool) -> Decimal:
    """Contract price for a footer placement, plus the artwork fee when needed."""
    base = FOOTER_AD_CONTRACTS.get(int(exposures or 0))
    if base is None:
        raise ValueError(f"no footer-ad contract for {exposures} exposures")
    return base + (FOOTER_ART_FEE if art_needed else ZERO)
