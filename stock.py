"""Inventory counters for products and their variants.

A product keeps an aggregate ``stock`` next to the per-variant counters, and a
purchase of a variant moves both. Decrements are conditional on the counter
still covering the quantity, so concurrent checkouts cannot drive stock below
zero; the loser gets an error and its unit of work is rolled back.
"""
import logging
from typing import Callable, Iterable, Optional

from bson import ObjectId

from database import Store, UnitOfWork
from errors import AppError, InsufficientStock

log = logging.getLogger(__name__)


def _line_name(line: dict) -> str:
    return line.get("product_name") or line.get("product_id")


def _shortfall(line: dict) -> AppError:
    return InsufficientStock(f"Insufficient stock for {_line_name(line)}")


def _guarded_decrement(store: Store, uow: UnitOfWork, collection: str, doc_id: str, qty: int) -> bool:
    result = store[collection].update_one(
        {"_id": ObjectId(doc_id), "stock": {"$gte": qty}},
        {"$inc": {"stock": -qty}},
        session=uow.session,
    )
    if result.modified_count != 1:
        return False
    uow.on_rollback(store[collection].update_one, {"_id": ObjectId(doc_id)}, {"$inc": {"stock": qty}})
    return True


def deduct(store: Store, uow: UnitOfWork, lines: Iterable[dict],
           error: Optional[Callable[[dict], AppError]] = None) -> None:
    """Take every line's quantity off its variant (if any) and its product."""
    error = error or _shortfall
    for line in lines:
        qty = int(line["quantity"])
        if line.get("variant_id"):
            if not _guarded_decrement(store, uow, "productvariant", line["variant_id"], qty):
                log.warning("Variant %s short of %s units", line["variant_id"], qty)
                raise error(line)
        if not _guarded_decrement(store, uow, "product", line["product_id"], qty):
            log.warning("Product %s short of %s units", line["product_id"], qty)
            raise error(line)


def restore(store: Store, uow: UnitOfWork, lines: Iterable[dict]) -> None:
    """Inverse of ``deduct``, used when an order is cancelled."""
    for line in lines:
        qty = int(line["quantity"])
        targets = [("product", line["product_id"])]
        if line.get("variant_id"):
            targets.append(("productvariant", line["variant_id"]))
        for collection, doc_id in targets:
            store[collection].update_one(
                {"_id": ObjectId(doc_id)}, {"$inc": {"stock": qty}}, session=uow.session
            )
            uow.on_rollback(store[collection].update_one, {"_id": ObjectId(doc_id)}, {"$inc": {"stock": -qty}})


def available(product: dict, variant: Optional[dict] = None) -> int:
    if variant is not None:
        return min(int(variant.get("stock", 0)), int(product.get("stock", 0)))
    return int(product.get("stock", 0))


def check_available(store: Store, lines: Iterable[dict]) -> None:
    """Read-only availability check; does not reserve anything."""
    needed = {}
    for line in lines:
        keys = [("product", line["product_id"])]
        if line.get("variant_id"):
            keys.append(("productvariant", line["variant_id"]))
        for key in keys:
            needed.setdefault(key, [0, line])
            needed[key][0] += int(line["quantity"])

    for (collection, doc_id), (qty, line) in needed.items():
        doc = store[collection].find_one({"_id": ObjectId(doc_id)}, {"stock": 1})
        if not doc or int(doc.get("stock", 0)) < qty:
            raise _shortfall(line)
