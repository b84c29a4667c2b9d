"""
Database Schemas for the Helmet Store

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class ProductVariant -> collection "productvariant"

Request payloads live at the bottom of the module; they forbid unknown fields so
malformed bodies are rejected before they reach the order services.
"""
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator, model_validator
from datetime import datetime, timezone


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class PaymentMethod(str, Enum):
    COD = "COD"
    RAZORPAY = "RAZORPAY"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class Document(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)


# Core domain models

class User(Document):
    name: str
    email: EmailStr
    hashed_password: str
    phone: Optional[str] = None
    is_active: bool = True
    is_admin: bool = False


class Address(Document):
    user_id: str
    full_name: str
    phone: Optional[str] = None
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str = "India"
    is_default: bool = False


class Product(Document):
    name: str
    slug: str
    description: Optional[str] = None
    brand: Optional[str] = None
    price: float = Field(..., ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    images: List[str] = Field(default_factory=list)
    stock: int = Field(0, ge=0)
    is_active: bool = True
    rating: float = Field(0, ge=0, le=5)
    total_reviews: int = 0


class ProductVariant(Document):
    product_id: str
    size: str
    color: str = "Default"
    additional_price: float = 0
    stock: int = Field(0, ge=0)
    sku: Optional[str] = None


class CartItem(Document):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(1, ge=1)
    added_at: datetime = Field(default_factory=lambda: _naive_utc(datetime.now(timezone.utc)))


class Cart(Document):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)


class OrderItem(Document):
    """Snapshot of a cart line at order time, independent of the live product."""
    product_id: str
    variant_id: Optional[str] = None
    product_name: str
    product_image: str = ""
    size: str = "Standard"
    color: str = "Default"
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    subtotal: float = Field(..., ge=0)


class ShippingAddress(Document):
    full_name: str
    phone: Optional[str] = None
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str


class Order(Document):
    order_number: str
    user_id: str
    address_id: str
    shipping_address: ShippingAddress
    items: List[OrderItem]
    subtotal: float
    discount: float = 0
    coupon_code: Optional[str] = None
    shipping_charge: float = 0
    tax: float = 0
    total: float
    payment_method: PaymentMethod
    payment_status: PaymentStatus = PaymentStatus.PENDING
    order_status: OrderStatus = OrderStatus.PENDING
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_signature: Optional[str] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    stock_deducted: bool = False


class Coupon(Document):
    code: str
    description: Optional[str] = None
    discount_type: DiscountType = DiscountType.PERCENTAGE
    discount_value: float = Field(..., gt=0)
    min_purchase: float = Field(0, ge=0)
    max_discount: Optional[float] = Field(None, gt=0)
    usage_limit: int = Field(..., gt=0)
    used_count: int = Field(0, ge=0)
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True


class Review(Document):
    user_id: str
    product_id: str
    order_id: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = None
    comment: Optional[str] = None
    is_verified_purchase: bool = True
    is_approved: bool = False


# Request payloads

class Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class RegisterRequest(Payload):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=72)
    phone: Optional[str] = None


class LoginRequest(Payload):
    email: EmailStr
    password: str


class ProfileUpdate(Payload):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    phone: Optional[str] = None


class AddressIn(Payload):
    full_name: str
    phone: Optional[str] = None
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str = "India"
    is_default: bool = False


class AddressUpdate(Payload):
    full_name: Optional[str] = None
    phone: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    is_default: Optional[bool] = None


class ChangePasswordRequest(Payload):
    current_password: str
    new_password: str = Field(..., min_length=8, max_length=72)


class ProductIn(Payload):
    name: str
    slug: str
    description: Optional[str] = None
    brand: Optional[str] = None
    price: float = Field(..., ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    images: List[str] = Field(default_factory=list)
    stock: int = Field(0, ge=0)
    is_active: bool = True


class ProductUpdate(Payload):
    name: Optional[str] = None
    description: Optional[str] = None
    brand: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    images: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None


class VariantIn(Payload):
    size: str
    color: str = "Default"
    additional_price: float = 0
    stock: int = Field(0, ge=0)
    sku: Optional[str] = None


class CartItemIn(Payload):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(1, ge=1, le=10)


class CartItemRef(Payload):
    product_id: str
    variant_id: Optional[str] = None


class CreateOrderRequest(Payload):
    address_id: str
    payment_method: PaymentMethod
    coupon_code: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=500)


class VerifyPaymentRequest(Payload):
    gateway_order_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class ValidateCouponRequest(Payload):
    coupon_code: str = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)


class CouponIn(Payload):
    code: str = Field(..., min_length=3, max_length=20)
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: float = Field(..., gt=0)
    min_purchase: float = Field(0, ge=0)
    max_discount: Optional[float] = Field(None, gt=0)
    usage_limit: int = Field(..., gt=0)
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: str) -> str:
        return v.upper()

    @field_validator("valid_from", "valid_until")
    @classmethod
    def naive_utc(cls, v: datetime) -> datetime:
        return _naive_utc(v)

    @model_validator(mode="after")
    def check_window(self):
        if self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("percentage discount cannot exceed 100")
        return self


class UpdateOrderStatusRequest(Payload):
    order_status: OrderStatus
    tracking_number: Optional[str] = None


class ReviewIn(Payload):
    order_id: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, min_length=3, max_length=100)
    comment: Optional[str] = Field(None, max_length=1000)


class ReviewApproval(Payload):
    is_approved: bool = True
