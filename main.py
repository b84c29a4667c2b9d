import os
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from bson import ObjectId
from pymongo.errors import PyMongoError

import coupons
import stock
from config import Settings, setup_logging
from database import Store, create_document, get_documents, serialize, to_object_id, utcnow
from errors import BadRequest, Conflict, InsufficientStock, NotFound, Unauthenticated, register_error_handlers
from notifications import EmailNotifier
from orders import OrderService
from payments import RazorpayGateway
from pricing import unit_price
from schemas import (
    Address,
    AddressIn,
    AddressUpdate,
    Cart,
    CartItem,
    CartItemIn,
    CartItemRef,
    ChangePasswordRequest,
    Coupon,
    CouponIn,
    CreateOrderRequest,
    LoginRequest,
    OrderStatus,
    PaymentStatus,
    Product,
    ProductIn,
    ProductUpdate,
    ProductVariant,
    ProfileUpdate,
    RegisterRequest,
    Review,
    ReviewApproval,
    ReviewIn,
    UpdateOrderStatusRequest,
    User,
    ValidateCouponRequest,
    VariantIn,
    VerifyPaymentRequest,
)
from security import (
    create_token,
    get_current_user,
    get_settings,
    get_store,
    hash_password,
    require_admin,
    verify_password,
)

log = logging.getLogger(__name__)

router = APIRouter()


def get_orders(request: Request) -> OrderService:
    return request.app.state.orders


def get_notifier(request: Request) -> EmailNotifier:
    return request.app.state.notifier


def user_out(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "phone": user.get("phone"),
        "is_admin": user.get("is_admin", False),
    }


# Health and helpers
@router.get("/")
def root():
    return {"message": "Helmet Store API running"}


@router.get("/health")
def health(store: Store = Depends(get_store)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "connection_status": "Not Connected",
    }
    try:
        store.ping()
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Auth
@router.post("/auth/register", status_code=201)
def register(payload: RegisterRequest, store: Store = Depends(get_store), settings: Settings = Depends(get_settings)):
    email = payload.email.lower()
    if store["user"].find_one({"email": email}):
        raise Conflict("Email already registered")
    user = User(
        name=payload.name,
        email=email,
        phone=payload.phone,
        hashed_password=hash_password(payload.password),
    )
    inserted_id = create_document(store, "user", user)
    doc = store["user"].find_one({"_id": ObjectId(inserted_id)})
    log.info("Registered user %s", inserted_id)
    return {"token": create_token(doc, settings), "user": user_out(doc)}


@router.post("/auth/login")
def login(payload: LoginRequest, store: Store = Depends(get_store), settings: Settings = Depends(get_settings)):
    user = store["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("hashed_password", "")):
        raise Unauthenticated("Invalid credentials")
    if not user.get("is_active", True):
        raise Unauthenticated("Account disabled")
    return {"token": create_token(user, settings), "user": user_out(user)}


@router.get("/me")
def me(current_user: dict = Depends(get_current_user)):
    return user_out(current_user)


@router.put("/me")
def update_profile(update: ProfileUpdate, current_user: dict = Depends(get_current_user),
                   store: Store = Depends(get_store)):
    changes = update.model_dump(exclude_none=True)
    changes["updated_at"] = utcnow()
    store["user"].update_one({"_id": current_user["_id"]}, {"$set": changes})
    return user_out(store["user"].find_one({"_id": current_user["_id"]}))


@router.put("/me/password")
def change_password(payload: ChangePasswordRequest, current_user: dict = Depends(get_current_user),
                    store: Store = Depends(get_store)):
    if not verify_password(payload.current_password, current_user.get("hashed_password", "")):
        raise BadRequest("Current password is incorrect", code="INVALID_PASSWORD")
    store["user"].update_one(
        {"_id": current_user["_id"]},
        {"$set": {"hashed_password": hash_password(payload.new_password), "updated_at": utcnow()}},
    )
    log.info("Password changed for user %s", current_user["_id"])
    return {"message": "Password changed successfully"}


# Addresses
@router.get("/me/addresses")
def list_addresses(user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    cursor = store["address"].find({"user_id": str(user["_id"])}).sort("created_at", -1)
    return {"items": [serialize(a) for a in cursor]}


@router.post("/me/addresses", status_code=201)
def add_address(payload: AddressIn, user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    uid = str(user["_id"])
    if payload.is_default:
        store["address"].update_many({"user_id": uid}, {"$set": {"is_default": False}})
    address_id = create_document(store, "address", Address(user_id=uid, **payload.model_dump()))
    return serialize(store["address"].find_one({"_id": ObjectId(address_id)}))


@router.put("/me/addresses/{address_id}")
def update_address(address_id: str, payload: AddressUpdate, user: dict = Depends(get_current_user),
                   store: Store = Depends(get_store)):
    uid = str(user["_id"])
    address = store["address"].find_one({"_id": to_object_id(address_id, "Address"), "user_id": uid})
    if not address:
        raise NotFound("Address")
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("is_default"):
        store["address"].update_many({"user_id": uid}, {"$set": {"is_default": False}})
    changes["updated_at"] = utcnow()
    store["address"].update_one({"_id": address["_id"]}, {"$set": changes})
    return serialize(store["address"].find_one({"_id": address["_id"]}))


@router.delete("/me/addresses/{address_id}")
def delete_address(address_id: str, user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    result = store["address"].delete_one(
        {"_id": to_object_id(address_id, "Address"), "user_id": str(user["_id"])}
    )
    if not result.deleted_count:
        raise NotFound("Address")
    return {"id": address_id, "deleted": True}


# Products
def _load_product(store: Store, product_id: str, active_only: bool = False) -> dict:
    product = store["product"].find_one({"_id": to_object_id(product_id, "Product")})
    if not product or (active_only and not product.get("is_active", True)):
        raise NotFound("Product")
    return product


@router.get("/products/{product_id}")
def get_product(product_id: str, store: Store = Depends(get_store)):
    product = _load_product(store, product_id, active_only=True)
    p = serialize(product)
    p["variants"] = [serialize(v) for v in get_documents(store, "productvariant", {"product_id": p["id"]})]
    return p


@router.post("/products", status_code=201)
def create_product(payload: ProductIn, user: dict = Depends(require_admin), store: Store = Depends(get_store)):
    inserted = create_document(store, "product", Product(**payload.model_dump()))
    return {"id": inserted}


@router.put("/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, user: dict = Depends(require_admin),
                   store: Store = Depends(get_store)):
    product = _load_product(store, product_id)
    changes = payload.model_dump(exclude_unset=True)
    changes["updated_at"] = utcnow()
    store["product"].update_one({"_id": product["_id"]}, {"$set": changes})
    return {"id": product_id, "updated": True}


@router.delete("/products/{product_id}")
def delete_product(product_id: str, user: dict = Depends(require_admin), store: Store = Depends(get_store)):
    product = _load_product(store, product_id)
    store["productvariant"].delete_many({"product_id": product_id})
    store["product"].delete_one({"_id": product["_id"]})
    return {"id": product_id, "deleted": True}


@router.post("/products/{product_id}/variants", status_code=201)
def add_variant(product_id: str, payload: VariantIn, user: dict = Depends(require_admin),
                store: Store = Depends(get_store)):
    _load_product(store, product_id)
    inserted = create_document(store, "productvariant", ProductVariant(product_id=product_id, **payload.model_dump()))
    return {"id": inserted}


# Cart
def _get_or_create_cart(store: Store, uid: str) -> dict:
    cart = store["cart"].find_one({"user_id": uid})
    if not cart:
        create_document(store, "cart", Cart(user_id=uid))
        cart = store["cart"].find_one({"user_id": uid})
    return cart


def _cart_view(store: Store, cart: dict) -> dict:
    lines = []
    subtotal = 0.0
    for item in cart.get("items", []):
        product = store["product"].find_one({"_id": ObjectId(item["product_id"])})
        variant = None
        if item.get("variant_id"):
            variant = store["productvariant"].find_one({"_id": ObjectId(item["variant_id"])})
        line = dict(item)
        if product:
            price = float(unit_price(product, variant))
            line.update({
                "name": product.get("name"),
                "image": (product.get("images") or [None])[0],
                "size": variant.get("size") if variant else None,
                "color": variant.get("color") if variant else None,
                "unit_price": price,
                "line_total": round(price * item["quantity"], 2),
                "in_stock": stock.available(product, variant) >= item["quantity"],
            })
            subtotal += price * item["quantity"]
        lines.append(line)
    view = serialize(cart)
    view["items"] = lines
    view["subtotal"] = round(subtotal, 2)
    return view


def _cart_line_stock(store: Store, product_id: str, variant_id: Optional[str]) -> int:
    product = _load_product(store, product_id, active_only=True)
    variant = None
    if variant_id:
        variant = store["productvariant"].find_one(
            {"_id": to_object_id(variant_id, "Product variant"), "product_id": product_id}
        )
        if not variant:
            raise NotFound("Product variant")
    return stock.available(product, variant)


@router.get("/cart")
def get_cart(user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    return _cart_view(store, _get_or_create_cart(store, str(user["_id"])))


@router.post("/cart/add")
def cart_add(item: CartItemIn, user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    uid = str(user["_id"])
    cart = _get_or_create_cart(store, uid)
    available = _cart_line_stock(store, item.product_id, item.variant_id)
    items = cart.get("items", [])
    found = None
    for it in items:
        if it["product_id"] == item.product_id and it.get("variant_id") == item.variant_id:
            found = it
            break
    wanted = item.quantity + (found["quantity"] if found else 0)
    if wanted > available:
        raise InsufficientStock(f"Only {available} items available")
    if found:
        found["quantity"] = wanted
    else:
        items.append(CartItem(**item.model_dump()).model_dump())
    store["cart"].update_one({"user_id": uid}, {"$set": {"items": items, "updated_at": utcnow()}})
    return _cart_view(store, store["cart"].find_one({"user_id": uid}))


@router.post("/cart/update")
def cart_update(item: CartItemIn, user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    uid = str(user["_id"])
    cart = _get_or_create_cart(store, uid)
    items = cart.get("items", [])
    for it in items:
        if it["product_id"] == item.product_id and it.get("variant_id") == item.variant_id:
            available = _cart_line_stock(store, item.product_id, item.variant_id)
            if item.quantity > available:
                raise InsufficientStock(f"Only {available} items available")
            it["quantity"] = item.quantity
            break
    else:
        raise NotFound("Cart item")
    store["cart"].update_one({"user_id": uid}, {"$set": {"items": items, "updated_at": utcnow()}})
    return _cart_view(store, store["cart"].find_one({"user_id": uid}))


@router.post("/cart/remove")
def cart_remove(item: CartItemRef, user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    uid = str(user["_id"])
    cart = _get_or_create_cart(store, uid)
    items = [
        it for it in cart.get("items", [])
        if not (it["product_id"] == item.product_id and it.get("variant_id") == item.variant_id)
    ]
    if len(items) == len(cart.get("items", [])):
        raise NotFound("Cart item")
    store["cart"].update_one({"user_id": uid}, {"$set": {"items": items, "updated_at": utcnow()}})
    return _cart_view(store, store["cart"].find_one({"user_id": uid}))


@router.delete("/cart")
def cart_clear(user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    store["cart"].update_one({"user_id": str(user["_id"])}, {"$set": {"items": [], "updated_at": utcnow()}})
    return {"cleared": True}


# Checkout & Orders
@router.post("/orders", status_code=201)
def create_order(payload: CreateOrderRequest, response: Response, background_tasks: BackgroundTasks,
                 user: dict = Depends(get_current_user), orders: OrderService = Depends(get_orders),
                 notifier: EmailNotifier = Depends(get_notifier)):
    result = orders.create_order(user, payload)
    if result.reused:
        response.status_code = 200
        message = "Existing pending order found. Please complete payment."
    else:
        background_tasks.add_task(notifier.order_confirmation, user, result.order)
        if result.gateway_order:
            message = "Order created. Please complete payment."
        else:
            message = "Order placed successfully!"
    return {"order": serialize(result.order), "gateway_order": result.gateway_order, "message": message}


@router.post("/orders/verify-payment")
def verify_payment(payload: VerifyPaymentRequest, user: dict = Depends(get_current_user),
                   orders: OrderService = Depends(get_orders)):
    return serialize(orders.verify_payment(user, payload))


@router.post("/orders/validate-coupon")
def validate_coupon(payload: ValidateCouponRequest, store: Store = Depends(get_store),
                    user: dict = Depends(get_current_user)):
    return coupons.preview(store, payload.coupon_code, payload.subtotal, utcnow())


@router.get("/orders")
def list_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=50),
                user: dict = Depends(get_current_user), orders: OrderService = Depends(get_orders)):
    return orders.list_orders(user, page, limit)


@router.get("/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), orders: OrderService = Depends(get_orders)):
    return serialize(orders.get_order(user, order_id))


@router.put("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user: dict = Depends(get_current_user), orders: OrderService = Depends(get_orders)):
    return serialize(orders.cancel_order(user, order_id))


# Reviews
def _refresh_rating(store: Store, product_id: str) -> None:
    ratings = [r["rating"] for r in store["review"].find({"product_id": product_id, "is_approved": True})]
    average = round(sum(ratings) / len(ratings), 2) if ratings else 0.0
    store["product"].update_one(
        {"_id": ObjectId(product_id)},
        {"$set": {"rating": average, "total_reviews": len(ratings), "updated_at": utcnow()}},
    )


@router.post("/products/{product_id}/reviews", status_code=201)
def create_review(product_id: str, payload: ReviewIn, user: dict = Depends(get_current_user),
                  store: Store = Depends(get_store)):
    uid = str(user["_id"])
    _load_product(store, product_id)
    order = store["order"].find_one({
        "_id": to_object_id(payload.order_id, "Order"),
        "user_id": uid,
        "order_status": OrderStatus.DELIVERED.value,
        "items.product_id": product_id,
    })
    if not order:
        raise BadRequest("You can only review products from delivered orders", code="REVIEW_NOT_ALLOWED")
    if store["review"].find_one({"user_id": uid, "product_id": product_id, "order_id": payload.order_id}):
        raise Conflict("You have already reviewed this product for this order")
    review_id = create_document(
        store, "review", Review(user_id=uid, product_id=product_id, **payload.model_dump())
    )
    return serialize(store["review"].find_one({"_id": ObjectId(review_id)}))


# Admin
@router.get("/admin/orders")
def list_all_orders(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                    order_status: Optional[OrderStatus] = None, payment_status: Optional[PaymentStatus] = None,
                    admin: dict = Depends(require_admin), orders: OrderService = Depends(get_orders)):
    return orders.list_all(page, limit, order_status, payment_status)


@router.put("/admin/orders/{order_id}/status")
def update_order_status(order_id: str, payload: UpdateOrderStatusRequest, background_tasks: BackgroundTasks,
                        admin: dict = Depends(require_admin), orders: OrderService = Depends(get_orders),
                        notifier: EmailNotifier = Depends(get_notifier)):
    order = orders.update_status(order_id, payload.order_status, payload.tracking_number)
    owner = orders.owner_of(order)
    if owner:
        if order["order_status"] == OrderStatus.SHIPPED.value and payload.tracking_number:
            background_tasks.add_task(notifier.order_shipped, owner, order)
        if order["order_status"] == OrderStatus.DELIVERED.value:
            background_tasks.add_task(notifier.order_delivered, owner, order)
    return serialize(order)


@router.post("/admin/coupons", status_code=201)
def create_coupon(payload: CouponIn, admin: dict = Depends(require_admin), store: Store = Depends(get_store)):
    if store["coupon"].find_one({"code": payload.code}):
        raise Conflict("Coupon code already exists")
    coupon_id = create_document(store, "coupon", Coupon(**payload.model_dump()))
    return serialize(store["coupon"].find_one({"_id": ObjectId(coupon_id)}))


@router.get("/admin/coupons")
def list_coupons(admin: dict = Depends(require_admin), store: Store = Depends(get_store)):
    return {"items": [serialize(c) for c in store["coupon"].find({}).sort("created_at", -1)]}


def _load_coupon(store: Store, coupon_id: str) -> dict:
    coupon = store["coupon"].find_one({"_id": to_object_id(coupon_id, "Coupon")})
    if not coupon:
        raise NotFound("Coupon")
    return coupon


@router.put("/admin/coupons/{coupon_id}/toggle")
def toggle_coupon(coupon_id: str, admin: dict = Depends(require_admin), store: Store = Depends(get_store)):
    coupon = _load_coupon(store, coupon_id)
    active = not coupon.get("is_active", True)
    store["coupon"].update_one({"_id": coupon["_id"]}, {"$set": {"is_active": active, "updated_at": utcnow()}})
    log.info("Coupon %s %s", coupon["code"], "activated" if active else "deactivated")
    return serialize(store["coupon"].find_one({"_id": coupon["_id"]}))


@router.delete("/admin/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, admin: dict = Depends(require_admin), store: Store = Depends(get_store)):
    coupon = _load_coupon(store, coupon_id)
    store["coupon"].delete_one({"_id": coupon["_id"]})
    return {"id": coupon_id, "deleted": True}


@router.put("/admin/reviews/{review_id}/approve")
def approve_review(review_id: str, payload: ReviewApproval, admin: dict = Depends(require_admin),
                   store: Store = Depends(get_store)):
    review = store["review"].find_one({"_id": to_object_id(review_id, "Review")})
    if not review:
        raise NotFound("Review")
    store["review"].update_one(
        {"_id": review["_id"]}, {"$set": {"is_approved": payload.is_approved, "updated_at": utcnow()}}
    )
    _refresh_rating(store, review["product_id"])
    return serialize(store["review"].find_one({"_id": review["_id"]}))


# Optional: seed sample products for demo
@router.post("/admin/seed")
def seed_catalog(admin: dict = Depends(require_admin), store: Store = Depends(get_store)):
    if store["product"].count_documents({}) > 0:
        return {"seeded": False, "message": "Products already exist"}
    samples = [
        {
            "product": {
                "name": "Apex Carbon Full-Face Helmet",
                "slug": "apex-carbon-full-face",
                "description": "Carbon fibre shell, DOT and ECE 22.06 certified.",
                "brand": "Apex",
                "price": 8999.0,
                "discount_price": 7499.0,
                "images": ["https://images.unsplash.com/photo-1558981403-c5f9899a28bc?q=80&w=1200"],
                "stock": 40,
            },
            "variants": [
                {"size": "M", "color": "Matte Black", "additional_price": 0, "stock": 20},
                {"size": "L", "color": "Matte Black", "additional_price": 0, "stock": 20},
            ],
        },
        {
            "product": {
                "name": "Urban Open-Face Helmet",
                "slug": "urban-open-face",
                "description": "Lightweight commuter helmet with sun visor.",
                "brand": "Roadster",
                "price": 2499.0,
                "images": ["https://images.unsplash.com/photo-1591637333184-19aa84b3e01f?q=80&w=1200"],
                "stock": 60,
            },
            "variants": [
                {"size": "M", "color": "Gloss White", "additional_price": 0, "stock": 30},
                {"size": "XL", "color": "Gloss White", "additional_price": 150, "stock": 30},
            ],
        },
        {
            "product": {
                "name": "Anti-Fog Visor Insert",
                "slug": "anti-fog-visor-insert",
                "description": "Pinlock-ready insert for most full-face visors.",
                "brand": "ClearView",
                "price": 799.0,
                "stock": 150,
            },
            "variants": [],
        },
    ]
    for sample in samples:
        product_id = create_document(store, "product", Product(**sample["product"]))
        for variant in sample["variants"]:
            create_document(store, "productvariant", ProductVariant(product_id=product_id, **variant))

    valid_from, valid_until = datetime(2024, 1, 1), datetime(2027, 12, 31)
    seeded_coupons = [
        Coupon(code="WELCOME10", description="10% off on your first order", discount_type="PERCENTAGE",
               discount_value=10, min_purchase=1000, max_discount=500, usage_limit=1000,
               valid_from=valid_from, valid_until=valid_until),
        Coupon(code="HELMET20", description="Flat ₹200 off on orders above ₹2000", discount_type="FIXED",
               discount_value=200, min_purchase=2000, usage_limit=500,
               valid_from=valid_from, valid_until=valid_until),
        Coupon(code="RIDE15", description="15% off on premium helmets", discount_type="PERCENTAGE",
               discount_value=15, min_purchase=3000, max_discount=1000, usage_limit=200,
               valid_from=valid_from, valid_until=valid_until),
    ]
    for coupon in seeded_coupons:
        if not store["coupon"].find_one({"code": coupon.code}):
            create_document(store, "coupon", coupon)
    return {"seeded": True, "count": len(samples)}


def create_app(settings: Optional[Settings] = None, store: Optional[Store] = None,
               gateway: Optional[RazorpayGateway] = None, notifier: Optional[EmailNotifier] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings)
    settings.warn_missing()

    owns_store = store is None
    if store is None:
        store = Store.connect(settings.database_url, settings.database_name,
                              use_transactions=settings.database_transactions)
    if gateway is None:
        gateway = RazorpayGateway(settings.razorpay_key_id, settings.razorpay_key_secret,
                                  base_url=settings.razorpay_base_url,
                                  timeout=settings.payment_timeout_seconds)
    if notifier is None:
        notifier = EmailNotifier(settings.resend_api_key, settings.email_from, settings.frontend_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            store.ensure_indexes()
        except PyMongoError as exc:
            log.error("Could not ensure indexes: %s", exc)
        yield
        if owns_store:
            store.close()

    app = FastAPI(title="Helmet Store API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.store = store
    app.state.gateway = gateway
    app.state.notifier = notifier
    app.state.orders = OrderService(store, gateway)
    register_error_handlers(app, production=settings.is_production)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
