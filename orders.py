"""
Order and payment lifecycle.

Creating an order prices the cart server-side, optionally redeems a coupon and,
for cash on delivery, takes stock and empties the cart in the same unit of
work. Online (Razorpay) orders leave stock and cart alone until
``verify_payment`` has checked the signature, the owner and the amount the
gateway actually captured. Gateway calls never run inside a unit of work.
"""
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from bson import ObjectId

import coupons
import stock
from database import Store, UnitOfWork, create_document, serialize, to_object_id, utcnow
from errors import BadRequest, Conflict, Forbidden, NotFound, StockChanged
from payments import RazorpayGateway
from pricing import from_minor_units, order_totals, to_minor_units, unit_price
from schemas import (
    CreateOrderRequest,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ShippingAddress,
    VerifyPaymentRequest,
)

log = logging.getLogger(__name__)

PENDING_GATEWAY_WINDOW = timedelta(minutes=10)
AMOUNT_EPSILON = Decimal("0.01")
ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits

FORWARD_FLOW = [
    OrderStatus.PENDING.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
]
CANCELLABLE = {OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value}
TERMINAL = {OrderStatus.CANCELLED.value, OrderStatus.RETURNED.value}


def generate_order_number(now: datetime) -> str:
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(4))
    return f"HLM-{now:%Y%m%d}-{suffix}"


def can_transition(current: str, target: str) -> bool:
    if current in TERMINAL or current == target:
        return False
    if target == OrderStatus.CANCELLED.value:
        return current in CANCELLABLE
    if target == OrderStatus.RETURNED.value:
        return current == OrderStatus.DELIVERED.value
    if current in FORWARD_FLOW and target in FORWARD_FLOW:
        return FORWARD_FLOW.index(target) > FORWARD_FLOW.index(current)
    return False


@dataclass
class CreateOrderResult:
    order: dict
    gateway_order: Optional[dict] = None
    reused: bool = False


class OrderService:
    def __init__(self, store: Store, gateway: RazorpayGateway, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.gateway = gateway
        self.clock = clock

    @property
    def orders(self):
        return self.store["order"]

    # Reads

    def _load(self, order_id: str) -> dict:
        order = self.orders.find_one({"_id": to_object_id(order_id, "Order")})
        if not order:
            raise NotFound("Order")
        return order

    def get_order(self, user: dict, order_id: str) -> dict:
        order = self._load(order_id)
        if order["user_id"] != str(user["_id"]) and not user.get("is_admin"):
            raise Forbidden()
        return order

    def list_orders(self, user: dict, page: int = 1, limit: int = 10) -> dict:
        return self._page({"user_id": str(user["_id"])}, page, max(1, min(50, limit)))

    def list_all(self, page: int = 1, limit: int = 20, order_status: Optional[str] = None,
                 payment_status: Optional[str] = None) -> dict:
        """Admin view over every customer's orders."""
        filt = {}
        if order_status:
            filt["order_status"] = OrderStatus(order_status).value
        if payment_status:
            filt["payment_status"] = PaymentStatus(payment_status).value
        return self._page(filt, page, max(1, min(100, limit)))

    def _page(self, filt: dict, page: int, limit: int) -> dict:
        page = max(1, page)
        total = self.orders.count_documents(filt)
        cursor = self.orders.find(filt).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        pages = (total + limit - 1) // limit
        return {
            "items": [serialize(o) for o in cursor],
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": pages,
            "has_next": page < pages,
            "has_prev": page > 1,
        }

    def owner_of(self, order: dict) -> Optional[dict]:
        return self.store["user"].find_one({"_id": ObjectId(order["user_id"])})

    def gateway_view(self, order: dict) -> Optional[dict]:
        if not order.get("gateway_order_id"):
            return None
        return {
            "id": order["gateway_order_id"],
            "amount": to_minor_units(order["total"]),
            "currency": self.gateway.currency,
            "key_id": self.gateway.key_id,
        }

    # Creation

    def _reusable_gateway_order(self, user_id: str, now: datetime) -> Optional[dict]:
        return self.orders.find_one(
            {
                "user_id": user_id,
                "payment_method": PaymentMethod.RAZORPAY.value,
                "payment_status": PaymentStatus.PENDING.value,
                "order_status": OrderStatus.PENDING.value,
                "gateway_order_id": {"$ne": None},
                "created_at": {"$gte": now - PENDING_GATEWAY_WINDOW},
            },
            sort=[("created_at", -1)],
        )

    def _sweep_stale_gateway_orders(self, user_id: str, now: datetime) -> int:
        result = self.orders.update_many(
            {
                "user_id": user_id,
                "payment_method": PaymentMethod.RAZORPAY.value,
                "payment_status": {"$in": [PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]},
                "order_status": OrderStatus.PENDING.value,
                "created_at": {"$lt": now - PENDING_GATEWAY_WINDOW},
            },
            {"$set": {
                "order_status": OrderStatus.CANCELLED.value,
                "payment_status": PaymentStatus.FAILED.value,
                "updated_at": now,
            }},
        )
        if result.modified_count:
            log.info("Cancelled %s abandoned online orders for user %s", result.modified_count, user_id)
        return result.modified_count

    def _price_cart(self, cart: dict) -> list:
        items = []
        for line in cart["items"]:
            product = None
            if ObjectId.is_valid(line["product_id"]):
                product = self.store["product"].find_one({"_id": ObjectId(line["product_id"])})
            if not product or not product.get("is_active", True):
                raise BadRequest("A product in your cart is no longer available", code="PRODUCT_UNAVAILABLE")

            variant = None
            if line.get("variant_id"):
                if ObjectId.is_valid(line["variant_id"]):
                    variant = self.store["productvariant"].find_one(
                        {"_id": ObjectId(line["variant_id"]), "product_id": line["product_id"]}
                    )
                if not variant:
                    raise BadRequest(
                        f"The selected option of {product['name']} is no longer available",
                        code="PRODUCT_UNAVAILABLE",
                    )

            price = unit_price(product, variant)
            quantity = int(line["quantity"])
            items.append(OrderItem(
                product_id=line["product_id"],
                variant_id=line.get("variant_id"),
                product_name=product["name"],
                product_image=(product.get("images") or [""])[0],
                size=variant["size"] if variant else "Standard",
                color=variant.get("color", "Default") if variant else "Default",
                price=float(price),
                quantity=quantity,
                subtotal=float(price * quantity),
            ).model_dump())
        return items

    def _new_order_number(self, now: datetime, session=None) -> str:
        for _ in range(5):
            number = generate_order_number(now)
            if not self.orders.find_one({"order_number": number}, session=session):
                return number
        raise Conflict("Could not allocate an order number, please retry")

    def _clear_cart(self, user_id: str, uow: UnitOfWork) -> None:
        cart = self.store["cart"].find_one({"user_id": user_id}, session=uow.session)
        if not cart or not cart.get("items"):
            return
        self.store["cart"].update_one(
            {"_id": cart["_id"]},
            {"$set": {"items": [], "updated_at": self.clock()}},
            session=uow.session,
        )
        uow.on_rollback(self.store["cart"].update_one, {"_id": cart["_id"]}, {"$set": {"items": cart["items"]}})

    def _discard_unplaced(self, order: dict, coupon: Optional[dict]) -> None:
        """Undo an online order whose gateway counterpart could not be created."""
        log.warning("Discarding order %s: gateway order was not created", order["order_number"])
        self.orders.delete_one({"_id": order["_id"], "gateway_order_id": None})
        if coupon:
            self.store["coupon"].update_one(
                {"_id": coupon["_id"], "used_count": {"$gt": 0}}, {"$inc": {"used_count": -1}}
            )

    def create_order(self, user: dict, payload: CreateOrderRequest) -> CreateOrderResult:
        uid = str(user["_id"])
        method = PaymentMethod(payload.payment_method).value
        now = self.clock()

        address = self.store["address"].find_one({"_id": to_object_id(payload.address_id, "Address")})
        if not address or address.get("user_id") != uid:
            raise NotFound("Address")

        cart = self.store["cart"].find_one({"user_id": uid})
        if not cart or not cart.get("items"):
            raise BadRequest("Your cart is empty", code="CART_EMPTY")

        if method == PaymentMethod.RAZORPAY.value:
            existing = self._reusable_gateway_order(uid, now)
            if existing:
                log.info("Reusing pending online order %s for user %s", existing["order_number"], uid)
                return CreateOrderResult(existing, self.gateway_view(existing), reused=True)
            self._sweep_stale_gateway_orders(uid, now)

        items = self._price_cart(cart)
        subtotal = sum((Decimal(str(i["subtotal"])) for i in items), Decimal("0"))

        coupon = None
        discount = Decimal("0")
        if payload.coupon_code:
            coupon = coupons.find_coupon(self.store, payload.coupon_code)
            discount = coupons.evaluate(coupon, subtotal, now)

        if method == PaymentMethod.RAZORPAY.value:
            stock.check_available(self.store, items)

        totals = order_totals(subtotal, discount)
        doc = Order(
            order_number="pending",
            user_id=uid,
            address_id=str(address["_id"]),
            shipping_address=ShippingAddress(**{k: address.get(k) for k in ShippingAddress.model_fields}),
            items=items,
            coupon_code=coupon["code"] if coupon else None,
            payment_method=method,
            notes=payload.notes or None,
            **totals,
        ).model_dump()
        doc["created_at"] = now

        with self.store.transaction() as uow:
            if coupon:
                coupons.redeem(self.store, uow, coupon)
            if method == PaymentMethod.COD.value:
                stock.deduct(self.store, uow, items)
                doc["stock_deducted"] = True
            doc["order_number"] = self._new_order_number(now, uow.session)
            order_id = create_document(self.store, "order", doc, session=uow.session)
            uow.on_rollback(self.orders.delete_one, {"_id": ObjectId(order_id)})
            if method == PaymentMethod.COD.value:
                self._clear_cart(uid, uow)

        order = self.orders.find_one({"_id": ObjectId(order_id)})
        log.info("Order %s created for user %s (%s, total %s)", order["order_number"], uid, method, order["total"])

        gateway_order = None
        if method == PaymentMethod.RAZORPAY.value:
            try:
                remote = self.gateway.create_order(
                    order["total"], order["order_number"], notes={"order_id": order_id, "user_id": uid}
                )
            except Exception:
                self._discard_unplaced(order, coupon)
                raise
            self.orders.update_one(
                {"_id": order["_id"]},
                {"$set": {"gateway_order_id": remote["id"], "updated_at": self.clock()}},
            )
            order["gateway_order_id"] = remote["id"]
            gateway_order = {
                "id": remote["id"],
                "amount": remote["amount"],
                "currency": remote["currency"],
                "key_id": self.gateway.key_id,
            }
        return CreateOrderResult(order, gateway_order)

    # Payment verification

    def _mark_failed(self, order: dict) -> None:
        self.orders.update_one(
            {"_id": order["_id"], "payment_status": {"$ne": PaymentStatus.PAID.value}},
            {"$set": {"payment_status": PaymentStatus.FAILED.value, "updated_at": self.clock()}},
        )

    def verify_payment(self, user: dict, payload: VerifyPaymentRequest) -> dict:
        gateway_order_id = payload.gateway_order_id
        payment_id = payload.payment_id

        if not self.gateway.verify_signature(gateway_order_id, payment_id, payload.signature):
            # only still-pending payments are failed; a forged callback must not demote a PAID order
            self.orders.update_many(
                {"gateway_order_id": gateway_order_id, "payment_status": PaymentStatus.PENDING.value},
                {"$set": {"payment_status": PaymentStatus.FAILED.value, "updated_at": self.clock()}},
            )
            raise BadRequest("Payment verification failed", code="INVALID_SIGNATURE")

        order = self.orders.find_one({"gateway_order_id": gateway_order_id})
        if not order:
            raise NotFound("Order")
        if order["user_id"] != str(user["_id"]):
            raise Forbidden("You are not authorized to verify this payment")
        if order["payment_status"] == PaymentStatus.PAID.value:
            return order
        if order["order_status"] != OrderStatus.PENDING.value:
            log.error("Payment %s received for order %s in status %s; refund manually",
                      payment_id, order["order_number"], order["order_status"])
            raise Conflict("Order is no longer awaiting payment")

        payment = self.gateway.fetch_payment(payment_id)
        if payment.get("order_id") and payment["order_id"] != gateway_order_id:
            log.error("Payment %s belongs to gateway order %s, not %s",
                      payment_id, payment["order_id"], gateway_order_id)
            self._mark_failed(order)
            raise BadRequest("Payment does not belong to this order", code="PAYMENT_ORDER_MISMATCH")

        paid = from_minor_units(payment.get("amount") or 0)
        expected = Decimal(str(order["total"]))
        if abs(paid - expected) > AMOUNT_EPSILON:
            log.error("Payment amount mismatch! Order %s: expected %s, paid %s", order["order_number"], expected, paid)
            self._mark_failed(order)
            raise BadRequest("Payment amount does not match order total", code="AMOUNT_MISMATCH")

        def out_of_stock(line):
            log.error("Stock short for paid order %s (payment %s); refund manually",
                      order["order_number"], payment_id)
            return StockChanged()

        with self.store.transaction() as uow:
            result = self.orders.update_one(
                {
                    "_id": order["_id"],
                    "order_status": OrderStatus.PENDING.value,
                    "payment_status": {"$ne": PaymentStatus.PAID.value},
                },
                {"$set": {
                    "payment_status": PaymentStatus.PAID.value,
                    "order_status": OrderStatus.CONFIRMED.value,
                    "gateway_payment_id": payment_id,
                    "gateway_signature": payload.signature,
                    "stock_deducted": True,
                    "updated_at": self.clock(),
                }},
                session=uow.session,
            )
            if result.modified_count != 1:
                current = self.orders.find_one({"_id": order["_id"]}, session=uow.session)
                if current and current["payment_status"] == PaymentStatus.PAID.value:
                    return current
                raise Conflict("Order is no longer awaiting payment")
            uow.on_rollback(self.orders.update_one, {"_id": order["_id"]}, {"$set": {
                "payment_status": order["payment_status"],
                "order_status": order["order_status"],
                "gateway_payment_id": order.get("gateway_payment_id"),
                "gateway_signature": order.get("gateway_signature"),
                "stock_deducted": False,
            }})
            stock.deduct(self.store, uow, order["items"], error=out_of_stock)
            self._clear_cart(order["user_id"], uow)

        log.info("Payment %s verified for order %s", payment_id, order["order_number"])
        return self.orders.find_one({"_id": order["_id"]})

    # State changes

    def _cancel(self, order: dict) -> dict:
        current = order["order_status"]
        if current not in CANCELLABLE:
            raise BadRequest("Order cannot be cancelled at this stage", code="INVALID_TRANSITION")
        payment_status = order["payment_status"]
        if payment_status == PaymentStatus.PAID.value:
            payment_status = PaymentStatus.REFUNDED.value

        with self.store.transaction() as uow:
            result = self.orders.update_one(
                {"_id": order["_id"], "order_status": current},
                {"$set": {
                    "order_status": OrderStatus.CANCELLED.value,
                    "payment_status": payment_status,
                    "stock_deducted": False,
                    "updated_at": self.clock(),
                }},
                session=uow.session,
            )
            if result.modified_count != 1:
                raise Conflict("Order status changed, please reload")
            uow.on_rollback(self.orders.update_one, {"_id": order["_id"]}, {"$set": {
                "order_status": current,
                "payment_status": order["payment_status"],
                "stock_deducted": order.get("stock_deducted", False),
            }})
            if order.get("stock_deducted"):
                stock.restore(self.store, uow, order["items"])

        log.info("Order %s cancelled (payment %s)", order["order_number"], payment_status)
        return self.orders.find_one({"_id": order["_id"]})

    def cancel_order(self, user: dict, order_id: str) -> dict:
        order = self._load(order_id)
        if order["user_id"] != str(user["_id"]) and not user.get("is_admin"):
            raise Forbidden()
        return self._cancel(order)

    def update_status(self, order_id: str, target: str, tracking_number: Optional[str] = None) -> dict:
        target = OrderStatus(target).value
        order = self._load(order_id)
        current = order["order_status"]

        if not can_transition(current, target):
            raise BadRequest(f"Cannot move order from {current} to {target}", code="INVALID_TRANSITION")
        if target == OrderStatus.CANCELLED.value:
            return self._cancel(order)
        if (target in FORWARD_FLOW
                and order["payment_method"] == PaymentMethod.RAZORPAY.value
                and order["payment_status"] != PaymentStatus.PAID.value):
            raise BadRequest("Online payment has not been completed for this order", code="PAYMENT_PENDING")

        update = {"order_status": target, "updated_at": self.clock()}
        if tracking_number:
            update["tracking_number"] = tracking_number
        if target == OrderStatus.DELIVERED.value and order["payment_method"] == PaymentMethod.COD.value:
            update["payment_status"] = PaymentStatus.PAID.value

        result = self.orders.update_one({"_id": order["_id"], "order_status": current}, {"$set": update})
        if result.modified_count != 1:
            raise Conflict("Order status changed, please reload")
        log.info("Order %s moved %s -> %s", order["order_number"], current, target)
        return self.orders.find_one({"_id": order["_id"]})
