"""
Database Schemas for the Storefront

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name by default.

We store:
- Profile (customers and the seeded admin)
- Product
- Order (guest orders allowed, so the user reference is optional)
- Doc (free-text knowledge snippets for the shopping assistant)
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["user", "admin"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "completed", "failed"]


class Profile(BaseModel):
    """
    Profiles collection schema
    Collection name: "profile"
    """
    email: EmailStr = Field(..., description="Unique email address")
    full_name: Optional[str] = Field(None, description="Display name")
    role: Role = Field("user", description="user | admin")
    phone: Optional[str] = None
    address: Optional[dict] = Field(None, description="Free-form default address")
    avatar_url: Optional[str] = None

    # Stored in DB, never returned in public responses
    password_hash: Optional[str] = Field(None, description="Hashed password")


class Rating(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


class Review(BaseModel):
    """One customer review, embedded in its product. At most one per profile."""
    user_id: str
    name: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    created_at: Optional[datetime] = None


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    title: str = Field(..., description="Product title")
    description: Optional[str] = Field(None, description="Product description")
    price_usd: float = Field(..., ge=0, description="Price in dollars")
    price_inr: Optional[float] = Field(None, ge=0, description="Price in rupees")
    original_price_usd: Optional[float] = Field(None, ge=0)
    original_price_inr: Optional[float] = Field(None, ge=0)
    category: str = Field(..., description="Product category")
    brand: Optional[str] = None
    stock: int = Field(0, ge=0, description="Available inventory")
    rating: Rating = Field(default_factory=Rating)
    reviews: List[Review] = Field(default_factory=list, description="Embedded customer reviews")
    sku: str = Field(..., description="Stock-keeping unit, unique per product")
    tags: List[str] = Field(default_factory=list, description="Search tags")
    features: List[str] = Field(default_factory=list)
    image_url: Optional[str] = Field(None, description="Main image")
    images: List[str] = Field(default_factory=list, description="Gallery image URLs")

    is_active: bool = Field(True, description="Soft-delete flag")
    is_new: bool = False
    is_trending: bool = False
    is_featured: bool = False


class Money(BaseModel):
    inr: float = Field(0, ge=0)
    usd: float = Field(0, ge=0)


class OrderItem(BaseModel):
    product_id: str
    title: str
    sku: Optional[str] = None
    price_inr: float
    price_usd: float
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None


class ShippingAddress(BaseModel):
    name: str
    email: EmailStr
    phone: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "India"


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: Optional[str] = Field(None, description="Profile id, absent for guest orders")
    items: List[OrderItem]
    subtotal: Money
    shipping: Money
    tax: Money
    total: Money
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    shipping_address: ShippingAddress
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    cancellation_reason: Optional[str] = None
    payment_reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class Doc(BaseModel):
    """
    Knowledge snippets collection schema
    Collection name: "doc"
    """
    text: str = Field(..., description="Snippet body")
    title: Optional[str] = None
    source: str = Field("custom", description="custom | product | any caller tag")
    embedding: Optional[List[float]] = Field(None, description="Precomputed embedding, if any")
