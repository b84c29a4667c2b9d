"""Money arithmetic for order totals.

Amounts are kept as floats on documents; every computation goes through Decimal
and whole currency units are rounded half up.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

FREE_SHIPPING_THRESHOLD = Decimal("999")
SHIPPING_CHARGE = Decimal("99")
TAX_RATE = Decimal("0.18")


def _d(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def round_units(value) -> Decimal:
    """Round to the nearest whole currency unit, halves away from zero."""
    return _d(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def to_minor_units(amount) -> int:
    """Rupees to paise."""
    return int((_d(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount) -> Decimal:
    return _d(amount) / 100


def unit_price(product: dict, variant: Optional[dict] = None) -> Decimal:
    base = product.get("discount_price") or product.get("price") or 0
    price = _d(base)
    if variant:
        price += _d(variant.get("additional_price") or 0)
    return price


def shipping_for(subtotal) -> Decimal:
    return Decimal("0") if _d(subtotal) >= FREE_SHIPPING_THRESHOLD else SHIPPING_CHARGE


def tax_for(subtotal) -> Decimal:
    return round_units(_d(subtotal) * TAX_RATE)


def order_totals(subtotal, discount=0) -> dict:
    subtotal = _d(subtotal)
    discount = _d(discount)
    shipping = shipping_for(subtotal)
    tax = tax_for(subtotal)
    total = subtotal - discount + shipping + tax
    return {
        "subtotal": float(subtotal),
        "discount": float(discount),
        "shipping_charge": float(shipping),
        "tax": float(tax),
        "total": float(total),
    }
