import hashlib
import hmac
from datetime import timedelta

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main
from config import Settings
from database import Store, create_document, utcnow
from errors import PaymentGatewayError
from notifications import EmailNotifier
from payments import RazorpayGateway
from pricing import to_minor_units
from security import create_token

KEY_SECRET = "rzp_test_secret_0123456789"


def sign(order_id: str, payment_id: str, secret: str = KEY_SECRET) -> str:
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


class FakeGateway(RazorpayGateway):
    """Real signature checks, canned remote orders and payments."""

    def __init__(self):
        super().__init__("rzp_test_key", KEY_SECRET)
        self.created = []
        self.payments = {}
        self.create_error = None

    def create_order(self, amount, receipt, notes=None):
        if self.create_error is not None:
            raise self.create_error
        remote = {
            "id": f"order_fake{len(self.created) + 1}",
            "amount": to_minor_units(amount),
            "currency": "INR",
            "receipt": receipt,
        }
        self.created.append(dict(remote, notes=notes))
        return remote

    def fetch_payment(self, payment_id):
        if payment_id not in self.payments:
            raise PaymentGatewayError("Could not fetch payment details")
        return self.payments[payment_id]

    def capture(self, gateway_order_id, payment_id, amount):
        """Pretend the customer paid ``amount`` rupees against a gateway order."""
        self.payments[payment_id] = {
            "id": payment_id,
            "order_id": gateway_order_id,
            "amount": to_minor_units(amount),
            "status": "captured",
        }
        return sign(gateway_order_id, payment_id)


@pytest.fixture
def settings():
    return Settings(
        environment="test",
        log_level="DEBUG",
        database_transactions=False,
        jwt_secret="test-jwt-secret-that-is-long-enough-0123",
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret=KEY_SECRET,
        resend_api_key="re_test",
    )


@pytest.fixture
def store():
    client = mongomock.MongoClient()
    s = Store(client, client["helmet_store_test"], use_transactions=False)
    s.ensure_indexes()
    return s


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def outbox():
    return []


@pytest.fixture
def notifier(outbox):
    return EmailNotifier("re_test", "Helmet Store <orders@helmetstore.in>", transport=outbox.append)


@pytest.fixture
def app(settings, store, gateway, notifier):
    return main.create_app(settings, store=store, gateway=gateway, notifier=notifier)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def make_user(store, settings, email="rider@example.com", name="Asha Rider", is_admin=False):
    uid = create_document(store, "user", {
        "name": name,
        "email": email,
        "hashed_password": "not-used",
        "is_active": True,
        "is_admin": is_admin,
    })
    user = store["user"].find_one({"_id": ObjectId(uid)})
    user["headers"] = {"Authorization": f"Bearer {create_token(user, settings)}"}
    return user


@pytest.fixture
def customer(store, settings):
    return make_user(store, settings)


@pytest.fixture
def admin(store, settings):
    return make_user(store, settings, email="admin@helmetstore.in", name="Admin", is_admin=True)


def make_product(store, name="Apex Full-Face", price=1000.0, stock=10, discount_price=None, variants=()):
    pid = create_document(store, "product", {
        "name": name,
        "slug": name.lower().replace(" ", "-"),
        "price": price,
        "discount_price": discount_price,
        "images": [f"https://img.test/{name}.jpg"],
        "stock": stock,
        "is_active": True,
        "rating": 0,
        "total_reviews": 0,
    })
    vids = [
        create_document(store, "productvariant", dict({"product_id": pid, "color": "Black",
                                                        "additional_price": 0}, **v))
        for v in variants
    ]
    return pid, vids


def make_address(store, user, city="Pune"):
    return create_document(store, "address", {
        "user_id": str(user["_id"]),
        "full_name": user["name"],
        "phone": "9999999999",
        "line1": "12 MG Road",
        "line2": None,
        "city": city,
        "state": "MH",
        "postal_code": "411001",
        "country": "India",
        "is_default": True,
    })


def fill_cart(store, user, *lines):
    """lines: (product_id, quantity) or (product_id, quantity, variant_id)."""
    items = []
    for line in lines:
        items.append({
            "product_id": line[0],
            "quantity": line[1],
            "variant_id": line[2] if len(line) > 2 else None,
            "added_at": utcnow(),
        })
    store["cart"].update_one(
        {"user_id": str(user["_id"])},
        {"$set": {"items": items, "updated_at": utcnow()}},
        upsert=True,
    )


def make_coupon(store, code="WELCOME10", **overrides):
    doc = {
        "code": code,
        "description": "10% off on your first order",
        "discount_type": "PERCENTAGE",
        "discount_value": 10,
        "min_purchase": 1000,
        "max_discount": 500,
        "usage_limit": 1000,
        "used_count": 0,
        "valid_from": utcnow() - timedelta(days=30),
        "valid_until": utcnow() + timedelta(days=30),
        "is_active": True,
    }
    doc.update(overrides)
    create_document(store, "coupon", doc)
    return store["coupon"].find_one({"code": code})


def stock_of(store, product_id, variant_id=None):
    product = store["product"].find_one({"_id": ObjectId(product_id)})["stock"]
    if variant_id is None:
        return product
    return product, store["productvariant"].find_one({"_id": ObjectId(variant_id)})["stock"]


def cart_items(store, user):
    cart = store["cart"].find_one({"user_id": str(user["_id"])})
    return cart["items"] if cart else []
