"""
Database Schemas for the Storefront

Each Pydantic model represents a MongoDB collection. The collection name is the lowercase of the class name.

- User -> "user"
- Product -> "product"
- Order -> "order"
- EmailVerification -> "emailverification"
- Session -> "session"

Building a model normalizes the incoming data (lower-cased emails, numeric
coercion, defaults) before it is written.
"""
import random
import string
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from database import utcnow

OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
TokenType = Literal["verification", "password-reset"]

ORDER_STATUSES = get_args(OrderStatus)
PAYMENT_STATUSES = get_args(PaymentStatus)
TOKEN_TYPES = get_args(TokenType)

VERIFICATION_TTL = timedelta(hours=24)
PASSWORD_RESET_TTL = timedelta(hours=1)


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Hashed password")
    phone: Optional[str] = Field(None, description="Phone number")
    role: Literal["customer", "admin"] = Field("customer", description="customer | admin")
    is_active: bool = Field(True, description="Whether user is active")
    is_email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    login_attempts: int = 0
    lock_until: Optional[datetime] = None

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("name", "phone")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v


class Product(BaseModel):
    name: str = Field(..., description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., gt=0, description="Price")
    original_price: Optional[float] = Field(None, gt=0, description="Price before sale")
    category: str = Field(..., description="Product category")
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    images: List[str] = []
    sizes: List[str] = []
    colors: List[str] = []
    stock: int = Field(0, ge=0, description="Units in stock")
    sku: Optional[str] = None
    tags: List[str] = []
    features: List[str] = []
    specifications: Dict[str, Any] = {}
    rating: float = Field(0, ge=0, le=5)
    review_count: int = Field(0, ge=0)
    is_active: bool = True
    is_featured: bool = False
    is_new: bool = False
    is_sale: bool = False
    sale_percentage: float = Field(0, ge=0, le=100)


class Address(BaseModel):
    first_name: str
    last_name: str
    email: EmailStr
    phone: str
    address: str
    city: str
    state: str
    zip_code: str
    country: str


class OrderItem(BaseModel):
    """Frozen copy of a product at the time it was bought."""
    product_id: str
    name: str
    price: float
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None
    color: Optional[str] = None
    image: Optional[str] = None


class StatusEntry(BaseModel):
    status: str
    timestamp: datetime = Field(default_factory=utcnow)
    note: str = ""


def generate_order_number() -> str:
    stamp = str(int(time.time() * 1000))[-6:]
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"ORD-{stamp}{suffix}"


class Order(BaseModel):
    user_id: str
    order_number: str = Field(default_factory=generate_order_number)
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    currency: str = "USD"
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_method: str
    payment_status: PaymentStatus = "pending"
    payment_id: Optional[str] = None
    status: OrderStatus = "pending"
    status_history: List[StatusEntry] = []
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None

    @model_validator(mode="after")
    def _fill_defaults(self):
        if self.billing_address is None:
            self.billing_address = self.shipping_address
        if not self.status_history:
            self.status_history = [StatusEntry(status=self.status, note="Order created")]
        return self


class EmailVerification(BaseModel):
    id: Optional[str] = Field(None, exclude=True, description="Document id once stored")
    user_id: Optional[str] = None
    email: EmailStr
    token: str
    type: TokenType = "verification"
    expires_at: Optional[datetime] = None
    is_used: bool = False
    attempts: int = 0
    max_attempts: int = 3
    metadata: Dict[str, Any] = {}

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def _default_expiry(self):
        if self.expires_at is None:
            ttl = PASSWORD_RESET_TTL if self.type == "password-reset" else VERIFICATION_TTL
            self.expires_at = utcnow() + ttl
        return self

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_max_attempts_reached(self) -> bool:
        return self.attempts >= self.max_attempts

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.is_used and not self.is_expired(now) and not self.is_max_attempts_reached()


class Session(BaseModel):
    user_id: str
    token: str
    expires_at: datetime
