"""
Database Schemas for the KakaMalem marketplace

Each Pydantic model represents a MongoDB collection.
Collection name is the lowercase of the class name.
Relations are stored as id strings; read paths may replace them with the
referenced document (see ``ownership.populate_order_items``).
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

Role = Literal["customer", "seller", "storefront_owner", "admin", "superadmin", "developer"]
StorefrontStatus = Literal["pending_review", "active", "suspended", "inactive"]
ProductStatus = Literal["draft", "published", "archived"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
PaymentMethod = Literal["cod", "bank_transfer", "credit_card"]
Currency = Literal["AF", "USD"]
ShippingMode = Literal["always_free", "free_above_threshold", "always_charged"]

# A relation is either the referenced id or the populated document
Reference = Union[str, Dict[str, Any]]


class CamelModel(BaseModel):
    """Accepts camelCase keys from the web client as well as snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Coordinates(CamelModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class Address(CamelModel):
    label: Optional[str] = None
    first_name: str
    last_name: str
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None
    nearby_landmark: Optional[str] = None
    detailed_directions: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    is_default: bool = False


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1, le=100)
    variant_id: Optional[str] = None
    added_at: Optional[datetime] = None


class RecentlyViewed(BaseModel):
    product: str
    viewed_at: datetime


class User(BaseModel):
    email: EmailStr
    first_name: str
    last_name: str
    phone: Optional[str] = None
    password_hash: Optional[str] = None
    roles: List[Role] = ["customer"]
    addresses: List[Address] = []
    cart: List[CartItem] = []
    recently_viewed: List[RecentlyViewed] = []
    wishlist: List[str] = []


class StorefrontAnalytics(BaseModel):
    total_views: int = 0
    unique_visitors: int = 0
    viewed_by_users: List[str] = []


class Storefront(BaseModel):
    name: str
    slug: str
    tagline: Optional[str] = None
    description: str = ""
    contact_email: Optional[EmailStr] = None
    contact_phone: str = ""
    seller: str
    status: StorefrontStatus = "pending_review"
    analytics: StorefrontAnalytics = StorefrontAnalytics()


class Category(BaseModel):
    name: str
    slug: str
    description: Optional[str] = None
    stores: List[str] = []
    display_order: int = 0


class ProductAnalytics(BaseModel):
    view_count: int = 0
    unique_view_count: int = 0
    add_to_cart_count: int = 0
    wishlist_count: int = 0


class Product(BaseModel):
    name: str
    slug: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    currency: Currency = "AF"
    sku: Optional[str] = None
    quantity: int = 0
    track_quantity: bool = True
    allow_backorders: bool = False
    status: ProductStatus = "published"
    seller: Optional[str] = None
    stores: List[str] = []
    categories: List[str] = []
    images: List[str] = []
    display_order: int = 0
    total_sold: int = 0
    analytics: ProductAnalytics = ProductAnalytics()
    average_rating: float = 0
    review_count: int = 0


class HelpfulVote(BaseModel):
    user: str
    voted_at: datetime


class Review(BaseModel):
    product: str
    user: str
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., max_length=100)
    comment: str = Field(..., max_length=2000)
    status: Literal["pending", "approved", "rejected"] = "approved"
    verified_purchase: bool = False
    helpful: int = 0
    helpful_votes: List[HelpfulVote] = []
    not_helpful_votes: List[HelpfulVote] = []


class OrderItem(BaseModel):
    product: Reference
    product_seller: Optional[Reference] = None
    variant: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: float
    total: float


class Order(BaseModel):
    order_number: str
    customer: Optional[str] = None
    guest_email: Optional[EmailStr] = None
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: float
    shipping: float = 0
    total: float
    shipping_address: Address
    payment_method: PaymentMethod = "cod"
    payment_status: PaymentStatus = "pending"
    status: OrderStatus = "pending"
    currency: Currency = "AF"
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None


class SiteSettings(BaseModel):
    shipping_mode: ShippingMode = "free_above_threshold"
    shipping_cost: float = Field(50, ge=0)
    free_delivery_threshold: float = Field(1000, ge=0)
