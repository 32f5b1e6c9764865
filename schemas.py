"""
Database Schemas for the Storefront API

Each collection model below corresponds to a MongoDB collection.
The collection name is the lowercase class name (e.g., CartItem -> "cartitem").

Request bodies live at the bottom; they accept camelCase keys
(productId, orderTrackingId, ...) as well as snake_case.
"""
from datetime import datetime
from typing import List, Optional, Literal

from pydantic import BaseModel, ConfigDict, Field, EmailStr
from pydantic.alias_generators import to_camel

Role = Literal["admin", "customer"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled", "paid"]
# "paid" is only ever set by payment reconciliation
SettableOrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
ShippingStatus = Literal["pending", "shipped", "delivered", "failed"]


# ===================== Collections =====================

class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Unique email address")
    password_hash: str = Field(..., description="BCrypt password hash")
    role: Role = Field("customer", description="Role: admin or customer")
    reset_token: Optional[str] = None
    reset_token_expiry: Optional[datetime] = None


class Category(BaseModel):
    name: str = Field(..., description="Category name, unique ignoring case")
    description: Optional[str] = Field(None, description="Category description")


class Product(BaseModel):
    name: str = Field(..., description="Product name")
    description: Optional[str] = None
    price: float = Field(..., gt=0)
    stock: int = Field(0, ge=0, description="Units available")
    category_id: Optional[str] = Field(None, description="Reference to category _id")
    image_url: Optional[str] = None


class Cart(BaseModel):
    user_id: str = Field(..., description="Owner user id")


class CartItem(BaseModel):
    cart_id: str = Field(..., description="Reference to cart _id")
    product_id: str = Field(..., description="Reference to product _id")
    quantity: int = Field(1, ge=1)


class OrderItem(BaseModel):
    id: str = Field(..., description="Line id")
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., description="Unit price at the time of purchase")


class Order(BaseModel):
    user_id: str
    items: List[OrderItem]
    total: float = Field(..., ge=0, description="Frozen sum of price x quantity")
    status: OrderStatus = "pending"


class Payment(BaseModel):
    order_id: str
    user_id: str
    amount: float
    status: str = Field("pending", description="Gateway reported status, lower-cased")
    payment_intent_id: str = Field(..., description="Gateway order tracking id")
    merchant_reference: str


class Shipping(BaseModel):
    order_id: str
    address: str
    city: str
    postal_code: str
    phone: str
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    status: ShippingStatus = "pending"


# ===================== Request bodies =====================

class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(ApiModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)


class LoginRequest(ApiModel):
    email: EmailStr
    password: str


class ForgotPasswordRequest(ApiModel):
    email: EmailStr


class ResetPasswordRequest(ApiModel):
    token: str
    new_password: str = Field(..., min_length=1)


class UserCreate(RegisterRequest):
    role: Role = "customer"


class RoleUpdate(ApiModel):
    role: Role


class CategoryCreate(ApiModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class CategoryUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None


class ProductCreate(ApiModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., gt=0)
    stock: int = Field(0, ge=0)
    category_id: Optional[str] = None
    image_url: Optional[str] = None


class ProductUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    stock: Optional[int] = Field(None, ge=0)
    category_id: Optional[str] = None
    image_url: Optional[str] = None


class AddToCartRequest(ApiModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class UpdateCartItemRequest(ApiModel):
    quantity: int = Field(..., ge=1)


class OrderLine(ApiModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(ApiModel):
    items: List[OrderLine] = Field(..., min_length=1)


class UpdateOrderStatusRequest(ApiModel):
    status: SettableOrderStatus


class CreatePaymentRequest(ApiModel):
    order_id: str
    phone_number: Optional[str] = None


class PaymentCallback(ApiModel):
    order_tracking_id: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)


class ShippingCreate(ApiModel):
    order_id: str
    address: str
    city: str
    postal_code: str
    phone: str
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    status: ShippingStatus = "pending"


class ShippingUpdate(ApiModel):
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    phone: Optional[str] = None
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    status: Optional[ShippingStatus] = None
