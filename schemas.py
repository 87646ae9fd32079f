"""
Database Schemas and request bodies for the marketplace.

Each stored collection is named after its document (User -> "user"). Field
names follow the public JSON API, which is camelCase.
"""
from __future__ import annotations
from typing import List, Optional
from pydantic import BaseModel, Field, EmailStr, field_validator, model_validator
from enum import Enum

PRICE_TOLERANCE = 0.01


class Role(str, Enum):
    customer = "customer"
    outlet = "outlet"
    admin = "admin"


class Category(str, Enum):
    electronics = "Electronics"
    clothing = "Clothing"
    food = "Food"
    furniture = "Furniture"
    beauty = "Beauty"
    health = "Health"
    sports = "Sports"
    books = "Books"
    toys = "Toys"
    other = "Other"


class OrderStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class PaymentMethod(str, Enum):
    paystack = "paystack"
    cash_on_delivery = "cash_on_delivery"


class PaymentStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


# Users

class User(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    passwordHash: str
    role: Role = Role.customer
    isVerified: bool = False


class RegisterBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    # Admin is accepted here so the handler can refuse it with a 403
    role: Role = Role.customer


class LoginBody(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class AdminUserBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)


# Outlets

class Contact(BaseModel):
    phone: str = Field(..., min_length=1)
    email: EmailStr


class OutletBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    location: str = Field(..., min_length=1)
    contact: Contact
    description: Optional[str] = Field(default=None, max_length=500)
    logo: Optional[str] = None


def _not_null(value):
    # Partial updates may omit a field, but an explicit null would be stored
    if value is None:
        raise ValueError("may be omitted but cannot be null")
    return value


class OutletUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    location: Optional[str] = Field(default=None, min_length=1)
    contact: Optional[Contact] = None
    description: Optional[str] = Field(default=None, max_length=500)
    logo: Optional[str] = None

    @field_validator("name", "location", "contact", mode="before")
    @classmethod
    def not_null(cls, value):
        return _not_null(value)


# Products

class ProductBody(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=1000)
    price: float = Field(ge=0)
    discountPrice: Optional[float] = Field(default=None, ge=0)
    stock: int = Field(default=0, ge=0)
    category: Category
    images: List[str] = Field(..., min_length=1)
    featured: bool = False


class ProductUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, min_length=1, max_length=1000)
    price: Optional[float] = Field(default=None, ge=0)
    discountPrice: Optional[float] = Field(default=None, ge=0)
    stock: Optional[int] = Field(default=None, ge=0)
    category: Optional[Category] = None
    images: Optional[List[str]] = Field(default=None, min_length=1)
    featured: Optional[bool] = None

    # discountPrice alone may be null: that clears the discount
    @field_validator("title", "description", "price", "stock", "category", "images", "featured", mode="before")
    @classmethod
    def not_null(cls, value):
        return _not_null(value)


class ReviewBody(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str = Field(..., min_length=1)


# Orders

class OrderItemIn(BaseModel):
    product: str
    quantity: int = Field(ge=1)
    # Informational only; the stored unit price comes from the catalog
    price: Optional[float] = Field(default=None, ge=0)


class Shipping(BaseModel):
    fullName: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postalCode: Optional[str] = None
    phone: str = Field(..., min_length=1)


class PaymentIn(BaseModel):
    method: PaymentMethod = PaymentMethod.cash_on_delivery


class OrderCreate(BaseModel):
    orderItems: List[OrderItemIn] = Field(..., min_length=1)
    shipping: Shipping
    payment: PaymentIn = PaymentIn()
    itemsPrice: float = Field(ge=0)
    shippingPrice: float = Field(default=0, ge=0)
    totalPrice: float = Field(ge=0)

    @field_validator("orderItems")
    @classmethod
    def no_repeated_products(cls, items: List[OrderItemIn]) -> List[OrderItemIn]:
        seen = set()
        for item in items:
            if item.product in seen:
                raise ValueError(f"Product {item.product} appears more than once")
            seen.add(item.product)
        return items

    @model_validator(mode="after")
    def total_matches_parts(self) -> "OrderCreate":
        if abs(self.itemsPrice + self.shippingPrice - self.totalPrice) > PRICE_TOLERANCE:
            raise ValueError("totalPrice must equal itemsPrice + shippingPrice")
        return self


class StatusChange(BaseModel):
    status: OrderStatus


class PricingChange(BaseModel):
    shippingPrice: float = Field(ge=0)


class RoleChange(BaseModel):
    role: Role


# Restocking

class RestockStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class RestockRequestBody(BaseModel):
    product: str
    requestedQuantity: int = Field(ge=1)
    reason: str = Field(default="Stock replenishment", min_length=1, max_length=500)


class RestockDecision(BaseModel):
    status: RestockStatus
    adminNote: str = Field(default="", max_length=500)

    @field_validator("status")
    @classmethod
    def must_decide(cls, status: RestockStatus) -> RestockStatus:
        if status == RestockStatus.pending:
            raise ValueError("status must be approved or rejected")
        return status
