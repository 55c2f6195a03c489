"""
Database Schemas for the storefront

Each Pydantic model maps to a MongoDB collection (lowercased class name).

Collections:
- user
- category
- product
- review
- order
- cart
- wishlist
- settings
"""
from datetime import datetime
from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, Field, EmailStr


class Address(BaseModel):
    street: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = ""


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., max_length=50, description="Full name")
    email: EmailStr = Field(..., description="Email address, unique per role")
    password_hash: str = Field(..., description="BCrypt password hash")
    role: Literal["user", "admin"] = Field("user", description="Account role, fixed at creation")
    phone: Optional[str] = None
    avatar: Optional[str] = None
    address: Optional[Address] = None
    is_active: bool = Field(True, description="Blocked accounts cannot sign in")


class Seo(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)


class CategoryFilter(BaseModel):
    name: str
    type: Literal["range", "select", "color", "boolean"]
    options: List[str] = Field(default_factory=list)
    min: Optional[float] = None
    max: Optional[float] = None
    unit: Optional[str] = None


class Category(BaseModel):
    """
    Categories collection schema
    Collection name: "category"

    `parent` is the only stored link; children are derived from it.
    """
    name: str = Field(..., min_length=1, max_length=100, description="Category name")
    slug: str = Field(..., description="Unique lowercase slug")
    description: Optional[str] = Field(None, max_length=1000)
    image: Optional[str] = None
    parent: Optional[str] = Field(None, description="Parent category id")
    level: int = Field(0, ge=0, description="Depth, 0 for roots")
    path: str = Field(..., description="Slash-joined slugs from the root")
    display_order: int = Field(0, description="Sort key among siblings")
    is_active: bool = True
    seo: Seo = Field(default_factory=Seo)
    filters: List[CategoryFilter] = Field(default_factory=list)


class ProductImage(BaseModel):
    url: str
    alt: str = ""
    is_primary: bool = False


class ProductAttribute(BaseModel):
    name: str
    value: str
    type: Literal["text", "number", "boolean", "select"] = "text"


class ProductVariant(BaseModel):
    name: str
    options: List[str] = Field(default_factory=list)
    price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    image: Optional[str] = None


class Dimensions(BaseModel):
    length: float = 0
    width: float = 0
    height: float = 0


class Rating(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., min_length=1, max_length=200, description="Product name")
    slug: str = Field(..., description="Unique lowercase slug")
    description: str = Field(..., min_length=1)
    short_description: Optional[str] = Field(None, max_length=500)
    price: float = Field(..., ge=0, description="Selling price")
    compare_price: Optional[float] = Field(None, ge=0, description="Original price for discounts")
    price_floor: float = Field(0, ge=0, description="Lowest of price and variant prices")
    sku: str = Field(..., min_length=1, description="Unique uppercase SKU")
    track_quantity: bool = True
    quantity: int = Field(0, ge=0, description="Units in stock")
    allow_backorder: bool = False
    images: List[ProductImage] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list, description="Category ids")
    attributes: List[ProductAttribute] = Field(default_factory=list)
    variants: List[ProductVariant] = Field(default_factory=list)
    seo: Seo = Field(default_factory=Seo)
    status: Literal["active", "draft", "archived"] = "draft"
    featured: bool = False
    trending: bool = False
    tags: List[str] = Field(default_factory=list)
    weight: Optional[float] = None
    dimensions: Optional[Dimensions] = None
    rating: Rating = Field(default_factory=Rating)
    sales_count: int = 0


class Review(BaseModel):
    """
    Reviews collection schema
    Collection name: "review"
    """
    product_id: str
    user_id: str
    order_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=1, max_length=100)
    content: str = Field(..., min_length=1, max_length=2000)
    helpful: int = 0
    verified: bool = False
    is_approved: bool = True


class OrderItem(BaseModel):
    product: str
    name: str
    sku: str
    price: float
    quantity: int = Field(1, ge=1)
    variant: Optional[str] = None
    image: Optional[str] = None
    stock_reserved: int = Field(0, ge=0, description="Units taken out of inventory at checkout")


class CustomerSnapshot(BaseModel):
    id: str
    name: str
    email: EmailStr
    phone: Optional[str] = None
    address: Address


class TrackingEvent(BaseModel):
    timestamp: datetime
    status: str
    location: str
    description: str


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    order_number: str
    customer: CustomerSnapshot
    items: List[OrderItem]
    subtotal: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    shipping: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(0, ge=0)
    notes: Optional[str] = Field(None, max_length=1000)
    payment_method: Literal["cod"] = "cod"
    payment_status: str = Field("pending", description="pending | confirmed | paid | failed | refunded")
    status: str = Field("pending", description="pending | confirmed | processing | shipped | delivered | cancelled | refunded")
    delivery_type: Literal["standard", "express", "overnight"] = "standard"
    delivery_address: Address
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    tracking_events: List[TrackingEvent] = Field(default_factory=list)
    admin_notes: str = ""
    version: int = 0


class CartItem(BaseModel):
    product_id: str
    name: str
    price: float
    quantity: int = Field(1, ge=1)
    variant: Optional[str] = None
    image: Optional[str] = None


class Cart(BaseModel):
    """
    Carts collection schema
    Collection name: "cart"
    """
    user_id: str
    items: List[CartItem] = Field(default_factory=list)


class Wishlist(BaseModel):
    """
    Wishlists collection schema
    Collection name: "wishlist"
    """
    user_id: str
    product_ids: List[str] = Field(default_factory=list)


class HeroSlide(BaseModel):
    id: str
    title: str
    subtitle: str = ""
    image: str = ""
    button_text: str = ""
    button_link: str = ""
    order: int = 0
    is_active: bool = True


class ShowcaseEntry(BaseModel):
    category_id: str
    order: int = 0
    is_active: bool = True


class ProductList(BaseModel):
    product_ids: List[str] = Field(default_factory=list)
    title: str = ""
    show_all_button: bool = True


class Settings(BaseModel):
    """
    Settings collection schema, a single document
    Collection name: "settings"
    """
    site: Dict[str, Any] = Field(default_factory=dict)
    seo: Dict[str, Any] = Field(default_factory=dict)
    homepage: Dict[str, Any] = Field(default_factory=dict)
    footer: Dict[str, Any] = Field(default_factory=dict)
    shipping: Dict[str, Any] = Field(default_factory=dict)
    payment: Dict[str, Any] = Field(default_factory=dict)
    taxes: Dict[str, Any] = Field(default_factory=dict)
    currency: Dict[str, Any] = Field(default_factory=dict)
    email: Dict[str, Any] = Field(default_factory=dict)
