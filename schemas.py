"""
Database Schemas for the Maison Parfum storefront

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name by default.

We store:
- User
- Product (with derived rating fields)
- Review
- Transaction (with frozen order line snapshots)
- Cart (with live product references)
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @classmethod
    def values(cls) -> List[str]:
        return [s.value for s in cls]


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")

    # Auth fields (stored in DB, but not returned in public responses)
    password_hash: Optional[str] = Field(None, description="Hashed password")

    is_active: bool = Field(True, description="Whether user is active")
    is_admin: bool = Field(False, description="Admin flag")


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., description="Fragrance name")
    description: str = Field("", description="Product description")
    notes: str = Field("", description="Scent notes")
    price: float = Field(..., ge=0, description="Price in dollars")
    collection: str = Field(..., description="Collection tag")
    category: str = Field("fragrance", description="Product category")
    volume: str = Field("100ml", description="Bottle size")
    stock: int = Field(0, ge=0, description="Available inventory")
    images: List[str] = Field(default_factory=list, description="Image paths or URLs")

    # Derived from the review collection, never edited directly
    average_rating: float = Field(0, ge=0, le=5, description="Average rating 0-5")
    review_count: int = Field(0, ge=0, description="Number of reviews")


class Review(BaseModel):
    """
    Reviews collection schema
    Collection name: "review"
    Unique on (product_id, user_id).
    """
    product_id: str
    user_id: Optional[str] = None
    name: str = Field(..., description="Display name of the reviewer")
    rating: int = Field(..., ge=1, le=5)
    title: str
    comment: str
    verified_purchase: bool = False
    helpful_count: int = Field(0, ge=0)


class OrderLineSnapshot(BaseModel):
    """Product data frozen into a transaction at order time."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None
    collection: Optional[str] = None


class Transaction(BaseModel):
    """
    Transactions collection schema
    Collection name: "transaction"
    """
    user_id: str
    email: EmailStr
    items: List[OrderLineSnapshot] = Field(..., min_length=1)
    subtotal: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    shipping: float = Field(0, ge=0)
    total: float = Field(0, ge=0)
    status: TransactionStatus = TransactionStatus.PENDING


class CartLineRef(BaseModel):
    """A live reference to a catalog product; price is resolved on every read."""

    product_id: str = Field(..., description="Product id as string")
    quantity: int = Field(1, ge=1, description="Quantity for the product")


class Cart(BaseModel):
    """
    Carts collection schema
    Collection name: "cart"
    Unique on user_id.
    """
    user_id: str
    items: List[CartLineRef] = Field(default_factory=list)


class CartTotals(BaseModel):
    subtotal: float
    tax: float
    shipping: float
    total: float
    item_count: int


class NotificationOutcome(BaseModel):
    """Result of the post-commit notification, reported alongside a status change."""

    sent: bool
    status: str = Field(..., description="sent | failed | not_configured")
    error: Optional[str] = None
    message_id: Optional[str] = None


class StatusUpdate(BaseModel):
    transaction: Dict[str, Any]
    previous_status: str
    notification: Optional[NotificationOutcome] = None
