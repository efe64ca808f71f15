"""
Database Schemas for BlueMedix

Each Pydantic model corresponds to a MongoDB collection. Collection name is the
lowercase class name (CartItem -> "cartitem"). Reference fields hold
ObjectIds once stored; the models here describe the document shape on insert.
"""
from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["user", "admin", "orderManager"]
UserStatus = Literal["Active", "Inactive", "Suspended"]
DeliveryStatus = Literal["pending", "accepted", "dispatched", "delivered", "cancelled"]


class User(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of the password")
    phone: str = ""
    role: Role = "user"
    status: UserStatus = "Active"
    franchise: Optional[Any] = Field(None, description="Franchise id for order managers")
    address_info: List[Any] = []
    order_history: List[Any] = []
    verify_email: bool = False
    last_login_date: Optional[datetime] = None
    forgot_password_otp: Optional[str] = None
    forgot_password_expiry: Optional[datetime] = None


class Address(BaseModel):
    street: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""
    country: str = ""
    phone_number: Optional[str] = None
    status: bool = True


class FranchiseAddress(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class Franchise(BaseModel):
    name: str = Field(..., min_length=1)
    address: FranchiseAddress
    contactNumber: str = ""
    email: EmailStr
    isActive: bool = True
    orderManager: Optional[Any] = None


class Category(BaseModel):
    name: str = Field(..., min_length=1)
    image: str = ""


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    category: Any = Field(..., description="Category id")
    price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100)
    warehouseStock: int = Field(0, ge=0)
    lowStockThreshold: int = Field(10, ge=0)
    image: List[str] = []
    manufacturer: Optional[str] = None
    publish: bool = True


class CartItem(BaseModel):
    user_id: Any
    product_id: Any
    franchise: Optional[Any] = None
    quantity: int = Field(1, ge=1)


class ProductDetails(BaseModel):
    name: str
    image: List[str] = []
    unitPrice: float = Field(..., ge=0)


class Order(BaseModel):
    order_id: str
    user: Any
    product_id: Any
    product_details: ProductDetails
    quantity: int = Field(1, ge=1)
    deliveryAddress: Any
    franchise: Any
    subtotalAmount: float = Field(..., ge=0)
    deliveryCharge: float = Field(0, ge=0)
    totalAmount: float = Field(..., ge=0)
    currency: str
    paymentStatus: str = "pending"
    paymentid: str = ""
    deliverystatus: DeliveryStatus = "pending"
    invoice_reciept: str = ""
