"""
Request body and query-string models.

FastAPI checks incoming data against these before a handler runs; failures
come back as 400 with the field messages joined (see main.py).
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, HttpUrl, field_validator

from database import as_utc_naive
from schemas import Address, OrderStatus, PaymentStatus

PHONE_PATTERN = r"^\+?[\d\s\-()]+$"


# Auth
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6, max_length=128)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6, max_length=128)


# Products
class ProductCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    description: str = Field(..., min_length=10, max_length=2000)
    price: float = Field(..., gt=0)
    original_price: Optional[float] = Field(None, gt=0)
    category: str = Field(..., min_length=1)
    subcategory: Optional[str] = None
    brand: str = Field(..., min_length=1)
    images: List[HttpUrl] = Field(..., min_length=1)
    sizes: List[str] = []
    colors: List[str] = []
    stock: int = Field(..., ge=0)
    sku: Optional[str] = None
    tags: List[str] = []
    features: List[str] = []
    specifications: Dict[str, Any] = {}
    is_featured: bool = False
    is_new: bool = False
    is_sale: bool = False
    sale_percentage: float = Field(0, ge=0, le=100)


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=200)
    description: Optional[str] = Field(None, min_length=10, max_length=2000)
    price: Optional[float] = Field(None, gt=0)
    original_price: Optional[float] = Field(None, gt=0)
    category: Optional[str] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    images: Optional[List[HttpUrl]] = None
    sizes: Optional[List[str]] = None
    colors: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)
    sku: Optional[str] = None
    tags: Optional[List[str]] = None
    features: Optional[List[str]] = None
    specifications: Optional[Dict[str, Any]] = None
    is_featured: Optional[bool] = None
    is_new: Optional[bool] = None
    is_sale: Optional[bool] = None
    sale_percentage: Optional[float] = Field(None, ge=0, le=100)

    # only original_price, subcategory and sku may be cleared with null
    @field_validator("name", "description", "price", "category", "brand", "images", "sizes", "colors",
                     "stock", "tags", "features", "specifications", "is_featured", "is_new", "is_sale",
                     "sale_percentage")
    @classmethod
    def _not_null(cls, v):
        if v is None:
            raise ValueError("cannot be null")
        return v


class StockUpdate(BaseModel):
    quantity: int = Field(..., gt=0)
    operation: Literal["decrease", "increase"] = "decrease"


# Orders
class CartItemIn(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    size: Optional[str] = None
    color: Optional[str] = None
    image: Optional[HttpUrl] = None
    # what the client displayed; the stored snapshot comes from the product
    name: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)


class CreateOrderRequest(BaseModel):
    items: List[CartItemIn] = Field(..., min_length=1)
    tax: float = Field(0, ge=0)
    shipping: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    currency: str = "USD"
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_method: str = Field(..., min_length=1)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    note: str = ""


class PaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus
    payment_id: Optional[str] = None


class TrackingUpdate(BaseModel):
    tracking_number: str = Field(..., min_length=1)
    estimated_delivery: Optional[datetime] = None

    @field_validator("estimated_delivery")
    @classmethod
    def _to_utc(cls, v):
        return as_utc_naive(v)


class CancelOrderRequest(BaseModel):
    reason: str = ""


# Query strings
class Pagination(BaseModel):
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)


class ProductFilters(BaseModel):
    page: int = Field(1, ge=1)
    limit: int = Field(12, ge=1, le=100)
    category: Optional[str] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    min_price: Optional[float] = Field(None, ge=0)
    max_price: Optional[float] = Field(None, ge=0)
    search: Optional[str] = None
    sort_by: Literal["name", "price", "created_at", "rating"] = "created_at"
    sort_order: int = -1
    featured: Optional[bool] = None
    is_new: Optional[bool] = None
    is_sale: Optional[bool] = None

    @field_validator("sort_order")
    @classmethod
    def _direction(cls, v):
        if v not in (1, -1):
            raise ValueError("sort_order must be 1 or -1")
        return v


class OrderFilters(BaseModel):
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    search: Optional[str] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _to_utc(cls, v):
        return as_utc_naive(v)


class UserOrderFilters(Pagination):
    status: Optional[OrderStatus] = None


class UserFilters(Pagination):
    search: Optional[str] = None


class SearchQuery(Pagination):
    q: str = Field(..., min_length=1)
    limit: int = Field(12, ge=1, le=100)
