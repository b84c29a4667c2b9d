"""Coupon validity gates and discount computation.

The same ``evaluate`` call backs the public preview endpoint and checkout, so a
previewed discount is exactly what an order gets. Only checkout calls
``redeem``; a use is given back only when checkout itself fails, never when a
placed order is cancelled.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from database import Store, UnitOfWork
from errors import CouponError
from pricing import round_units
from schemas import DiscountType

log = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def find_coupon(store: Store, code: str, session=None) -> Optional[dict]:
    return store["coupon"].find_one({"code": normalize_code(code)}, session=session)


def check_coupon(coupon: Optional[dict], subtotal, now: datetime) -> dict:
    """Raise CouponError for the first failing gate; returns the coupon otherwise."""
    if not coupon:
        raise CouponError("Invalid coupon code", code="COUPON_NOT_FOUND")
    if not coupon.get("is_active"):
        raise CouponError("This coupon is no longer active", code="COUPON_INACTIVE")
    if coupon.get("used_count", 0) >= coupon["usage_limit"]:
        raise CouponError("This coupon has reached its usage limit", code="COUPON_USAGE_LIMIT")
    if now < coupon["valid_from"]:
        raise CouponError("This coupon is not yet valid", code="COUPON_NOT_YET_VALID")
    if now > coupon["valid_until"]:
        raise CouponError("This coupon has expired", code="COUPON_EXPIRED")
    min_purchase = Decimal(str(coupon.get("min_purchase") or 0))
    if Decimal(str(subtotal)) < min_purchase:
        raise CouponError(
            f"Minimum purchase of ₹{min_purchase.normalize():f} required for this coupon",
            code="COUPON_MIN_PURCHASE",
        )
    return coupon


def calculate_discount(coupon: dict, subtotal) -> Decimal:
    subtotal = Decimal(str(subtotal))
    value = Decimal(str(coupon["discount_value"]))
    if coupon["discount_type"] == DiscountType.PERCENTAGE.value:
        discount = subtotal * value / 100
        if coupon.get("max_discount"):
            discount = min(discount, Decimal(str(coupon["max_discount"])))
    else:
        discount = value
    # a flat coupon never takes the order below zero
    return round_units(min(discount, subtotal))


def evaluate(coupon: Optional[dict], subtotal, now: datetime) -> Decimal:
    check_coupon(coupon, subtotal, now)
    return calculate_discount(coupon, subtotal)


def preview(store: Store, code: str, subtotal, now: datetime) -> dict:
    coupon = find_coupon(store, code)
    discount = evaluate(coupon, subtotal, now)
    return {
        "code": coupon["code"],
        "description": coupon.get("description"),
        "discount_type": coupon["discount_type"],
        "discount_value": float(coupon["discount_value"]),
        "discount": float(discount),
        "min_purchase": float(coupon.get("min_purchase") or 0),
        "max_discount": float(coupon["max_discount"]) if coupon.get("max_discount") else None,
    }


def redeem(store: Store, uow: UnitOfWork, coupon: dict) -> None:
    """Count one use, refusing to go past the usage limit."""
    result = store["coupon"].update_one(
        {"_id": coupon["_id"], "is_active": True, "used_count": {"$lt": coupon["usage_limit"]}},
        {"$inc": {"used_count": 1}},
        session=uow.session,
    )
    if result.modified_count != 1:
        log.info("Coupon %s exhausted during checkout", coupon["code"])
        raise CouponError("This coupon has reached its usage limit", code="COUPON_USAGE_LIMIT")
    uow.on_rollback(store["coupon"].update_one, {"_id": coupon["_id"]}, {"$inc": {"used_count": -1}})
