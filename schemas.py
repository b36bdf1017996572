"""
Database Schemas

MongoDB collection schemas as Pydantic models.
Each model maps to the collection with its lowercased name.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Role(str, Enum):
    USER = "user"
    MANAGER = "manager"
    ADMIN = "admin"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"


class Address(BaseModel):
    alias: Optional[str] = None
    details: Optional[str] = None
    phone: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None


class User(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, lowercased")
    phone: Optional[str] = None
    password_hash: str = Field(..., description="BCrypt hashed password")
    role: Role = Field(Role.USER, description="Role: user | manager | admin")
    active: bool = True
    password_changed_at: Optional[datetime] = None
    password_reset_code: Optional[str] = Field(None, description="sha256 of the reset code")
    password_reset_expires: Optional[datetime] = None
    password_reset_verified: Optional[bool] = None
    addresses: List[Address] = Field(default_factory=list)


class Product(BaseModel):
    title: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    price_after_discount: Optional[float] = Field(None, ge=0)
    category: str
    images: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    quantity: int = Field(0, description="Units in stock")
    sold: int = 0
    ratings_average: float = Field(default=0, ge=0, le=5)
    ratings_quantity: int = 0


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    color: Optional[str] = None
    price: float = Field(..., ge=0, description="Unit price captured when added")


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_cart_price: float = 0
    total_price_after_discount: Optional[float] = None


class ShippingAddress(BaseModel):
    details: Optional[str] = None
    phone: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    user_id: str
    cart_id: str
    items: List[CartItem]
    shipping_address: Optional[ShippingAddress] = None
    tax_price: float = 0
    shipping_price: float = 0
    total_order_price: float
    payment_method_type: PaymentMethod = PaymentMethod.CASH
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    inventory_applied: bool = False


class Coupon(BaseModel):
    name: str = Field(..., description="Unique, stored uppercase")
    discount: float = Field(..., gt=0, le=100, description="Percent off")
    expire: datetime


class Review(BaseModel):
    title: Optional[str] = None
    ratings: float = Field(..., ge=1, le=5)
    product_id: str
    user_id: str
