"""
Storefront Database Schemas

Each Pydantic model below represents one MongoDB collection. The collection name is the lowercase
class name. Example: class ProductVariant -> collection "productvariant".

These schemas are used for validation before inserting/updating documents.
"""
from datetime import datetime
from typing import List, Optional, Dict
from pydantic import BaseModel, Field, EmailStr

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "completed", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")
APPOINTMENT_STATUSES = ("pending", "confirmed", "completed", "cancelled")


class Address(BaseModel):
    full_name: str
    line1: str
    line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str = "US"
    phone: Optional[str] = None


class SavedAddress(Address):
    """Address-book entry embedded in the user document."""
    id: str
    is_default: bool = False


class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    role: str = Field("customer", description="customer | staff | admin")
    phone: Optional[str] = None
    is_active: bool = True
    addresses: List[SavedAddress] = []


class Product(BaseModel):
    name: str
    slug: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    images: List[str] = []
    category: Optional[str] = None
    sku: Optional[str] = None
    stock: int = Field(0, ge=0)
    featured: bool = False
    active: bool = True
    tags: List[str] = []


class ProductVariant(BaseModel):
    product_id: str
    name: str
    sku: str
    price: Optional[float] = Field(None, ge=0, description="Overrides the product price when set")
    stock: int = Field(0, ge=0)
    attributes: Dict[str, str] = Field(default_factory=dict, description="e.g., {'size':'M','color':'Red'}")
    active: bool = True


class Coupon(BaseModel):
    code: str
    discount_type: str = Field("PERCENTAGE", description="PERCENTAGE | FIXED")
    discount_value: float = Field(..., ge=0)
    min_purchase: Optional[float] = Field(None, ge=0)
    max_uses: Optional[int] = Field(None, ge=0)
    uses: int = 0
    expires_at: Optional[datetime] = None
    active: bool = True


class CartItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(1, ge=1)


class Cart(BaseModel):
    cart_key: str
    user_id: Optional[str] = None
    items: List[CartItem] = []
    coupon_code: Optional[str] = None


class OrderItem(BaseModel):
    """Frozen copy of a catalog line at order time."""
    product_id: str
    variant_id: Optional[str] = None
    sku: Optional[str] = None
    name: str
    price: float
    quantity: int
    subtotal: float
    variant: Optional[Dict[str, str]] = None
    image: Optional[str] = None


class Order(BaseModel):
    order_number: str
    user_id: Optional[str] = None
    customer_name: str
    customer_email: EmailStr
    customer_phone: Optional[str] = None
    items: List[OrderItem]
    subtotal: float
    discount: float = 0.0
    coupon_code: Optional[str] = None
    coupon_id: Optional[str] = None
    shipping: float = 0.0
    tax: float = 0.0
    total: float
    currency: str = "USD"
    shipping_address: Address
    billing_address: Address
    status: str = Field("pending", description="|".join(ORDER_STATUSES))
    payment_status: str = Field("pending", description="|".join(PAYMENT_STATUSES))
    payment_provider: Optional[str] = None
    payment_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class Appointment(BaseModel):
    customer_name: str
    customer_email: EmailStr
    customer_phone: str
    service: str
    date: datetime
    time: str
    notes: Optional[str] = None
    status: str = Field("pending", description="|".join(APPOINTMENT_STATUSES))


class BlogPost(BaseModel):
    title: str
    slug: str
    excerpt: str
    content: str
    cover_image: Optional[str] = None
    author: str = "Admin"
    category: Optional[str] = None
    tags: List[str] = []
    published: bool = False
    published_at: Optional[datetime] = None
    read_time: int = 5
    views: int = 0


class PromoBanner(BaseModel):
    title: str
    message: str
    type: str = Field("info", description="info | sale | warning")
    link: Optional[str] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    active: bool = True


class Review(BaseModel):
    product_id: str
    user_id: str
    user_name: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = None
    comment: str
    approved: bool = False
    status: str = Field("pending", description="pending | approved | rejected")


class NewsletterSubscriber(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    source: str = "website"
    status: str = Field("active", description="active | unsubscribed")
    confirmed_at: Optional[datetime] = None
    unsubscribed_at: Optional[datetime] = None


class ContactSubmission(BaseModel):
    name: str
    email: EmailStr
    phone: Optional[str] = None
    service: Optional[str] = None
    message: str
    status: str = "new"


class WishlistItem(BaseModel):
    user_id: str
    product_id: str


class PaymentEvent(BaseModel):
    event_id: str
    type: str
    intent_id: Optional[str] = None
