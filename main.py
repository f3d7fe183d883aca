import logging
import re
from contextlib import asynccontextmanager
from datetime import date as date_type, datetime, time as time_type
from typing import Optional, List, Dict, Any

from bson import ObjectId
from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, StrictBool
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import analytics
import config
import orders
import payments
from auth import (create_token, get_current_user, hash_password, public_user, require_admin,
                  require_user, verify_password)
from coupons import (DISCOUNT_TYPES, PERCENTAGE, CouponRejected, evaluate_coupon, find_coupon,
                     normalize_code)
from database import as_naive_utc, create_document, db, ensure_indexes, get_documents, serialize, \
    to_object_id, utcnow
from schemas import (APPOINTMENT_STATUSES, ORDER_STATUSES, PAYMENT_STATUSES, Address, Appointment,
                     BlogPost, Cart, CartItem, ContactSubmission, Coupon, NewsletterSubscriber, Product,
                     ProductVariant, PromoBanner, Review, SavedAddress, User, WishlistItem)

# Logging
logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("storefront")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    ensure_indexes()
    yield


app = FastAPI(title=f"{config.STORE_NAME} API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in config.ALLOWED_ORIGINS] if config.ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handlers
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())})


@app.exception_handler(CouponRejected)
async def coupon_rejected_handler(request: Request, exc: CouponRejected):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "valid": False})


@app.exception_handler(orders.OrderError)
async def order_error_handler(request: Request, exc: orders.OrderError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(payments.PaymentError)
async def payment_error_handler(request: Request, exc: payments.PaymentError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=409, content={"error": "Record already exists"})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Utilities
def get_or_404(collection: str, id_str: str, label: str) -> Dict[str, Any]:
    oid = to_object_id(id_str)
    doc = db[collection].find_one({"_id": oid}) if oid else None
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


def update_by_id(collection: str, doc_id, changes: Dict[str, Any]) -> Dict[str, Any]:
    changes["updated_at"] = utcnow()
    return db[collection].find_one_and_update({"_id": doc_id}, {"$set": changes},
                                              return_document=ReturnDocument.AFTER)


def drop_nulls(changes: Dict[str, Any], keys) -> Dict[str, Any]:
    """Ignore explicit nulls for fields that must always hold a value."""
    for key in keys:
        if key in changes and changes[key] is None:
            changes.pop(key)
    return changes


def search_regex(text: str) -> Dict[str, Any]:
    return {"$regex": re.escape(text), "$options": "i"}


# Health and config
@app.get("/")
def root():
    return {"name": config.STORE_NAME, "status": "ok"}


@app.get("/api/config")
def get_config():
    return {
        "store_name": config.STORE_NAME,
        "currency": config.PRIMARY_CURRENCY,
        "tax_rate": config.TAX_RATE,
        "shipping": {"flat": config.SHIPPING_FLAT, "free_threshold": config.FREE_SHIPPING_THRESHOLD},
        "payments": {"stripe": bool(config.STRIPE_SECRET), "dummy": config.ENABLE_DUMMY_PAYMENTS},
    }


# Auth
class RegisterDTO(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=8)
    phone: Optional[str] = None


class LoginDTO(BaseModel):
    email: EmailStr
    password: str


@app.post("/api/auth/register", status_code=201)
def register(data: RegisterDTO):
    email = data.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="Email already in use")
    user = User(name=data.name, email=email, password_hash=hash_password(data.password),
                phone=data.phone, role="customer")
    user_id = create_document("user", user)
    doc = db["user"].find_one({"_id": to_object_id(user_id)})
    logger.info("Registered user %s", email)
    return {"token": create_token(doc), "user": public_user(doc)}


@app.post("/api/auth/login")
def login(data: LoginDTO):
    user = db["user"].find_one({"email": data.email.lower()})
    if not user or not verify_password(data.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": create_token(user), "user": public_user(user)}


@app.get("/api/auth/me")
def me(user: Dict[str, Any] = Depends(require_user)):
    return public_user(user)


@app.post("/api/auth/refresh")
def refresh_token(user: Dict[str, Any] = Depends(require_user)):
    """Trade a still-valid token for a fresh one; role changes since login are picked up."""
    return {"success": True, "token": create_token(user), "user": public_user(user)}


@app.post("/api/auth/logout")
def logout():
    # Tokens are stateless; the client drops its copy.
    return {"success": True, "message": "Logged out successfully"}


# Account
class ProfileDTO(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None


class PasswordDTO(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8)


@app.get("/api/account/profile")
def get_profile(user: Dict[str, Any] = Depends(require_user)):
    return {**public_user(user), "addresses": user.get("addresses", [])}


@app.put("/api/account/profile")
def update_profile(data: ProfileDTO, user: Dict[str, Any] = Depends(require_user)):
    changes = drop_nulls(data.model_dump(exclude_unset=True), ("name",))
    updated = update_by_id("user", user["_id"], changes) if changes else user
    return {**public_user(updated), "addresses": updated.get("addresses", [])}


@app.post("/api/account/password")
def change_password(data: PasswordDTO, user: Dict[str, Any] = Depends(require_user)):
    if not verify_password(data.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    update_by_id("user", user["_id"], {"password_hash": hash_password(data.new_password)})
    return {"success": True, "message": "Password updated"}


@app.get("/api/account/orders")
def account_orders(user: Dict[str, Any] = Depends(require_user)):
    docs = get_documents("order", {"$or": [{"user_id": str(user["_id"])}, {"customer_email": user["email"]}]},
                         sort=[("created_at", -1)])
    return {"orders": [serialize(o) for o in docs], "count": len(docs)}


# Address book
class AddressDTO(Address):
    is_default: bool = False


class AddressUpdateDTO(BaseModel):
    full_name: Optional[str] = Field(None, min_length=1)
    line1: Optional[str] = Field(None, min_length=1)
    line2: Optional[str] = None
    city: Optional[str] = Field(None, min_length=1)
    state: Optional[str] = Field(None, min_length=1)
    postal_code: Optional[str] = Field(None, min_length=1)
    country: Optional[str] = None
    phone: Optional[str] = None
    is_default: Optional[bool] = None


def address_book(addresses: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Default address first, then newest first."""
    return sorted(reversed(addresses), key=lambda a: not a.get("is_default"))


def save_addresses(user: Dict[str, Any], addresses: List[Dict[str, Any]], default_id: Optional[str] = None):
    if default_id:
        for entry in addresses:
            entry["is_default"] = entry["id"] == default_id
    update_by_id("user", user["_id"], {"addresses": addresses})


def find_address(user: Dict[str, Any], address_id: str) -> Dict[str, Any]:
    for entry in user.get("addresses", []):
        if entry.get("id") == address_id:
            return entry
    raise HTTPException(status_code=404, detail="Address not found")


@app.get("/api/account/addresses")
def list_addresses(user: Dict[str, Any] = Depends(require_user)):
    return {"success": True, "addresses": address_book(user.get("addresses", []))}


@app.post("/api/account/addresses", status_code=201)
def create_address(data: AddressDTO, user: Dict[str, Any] = Depends(require_user)):
    entry = SavedAddress(id=str(ObjectId()), **data.model_dump()).model_dump()
    addresses = user.get("addresses", []) + [entry]
    save_addresses(user, addresses, entry["id"] if entry["is_default"] else None)
    return {"success": True, "message": "Address saved successfully", "address": entry}


@app.patch("/api/account/addresses/{address_id}")
def update_address(address_id: str, data: AddressUpdateDTO, user: Dict[str, Any] = Depends(require_user)):
    addresses = user.get("addresses", [])
    entry = find_address(user, address_id)
    changes = drop_nulls(data.model_dump(exclude_unset=True),
                         ("full_name", "line1", "city", "state", "postal_code", "country", "is_default"))
    entry.update(changes)
    save_addresses(user, addresses, address_id if changes.get("is_default") else None)
    return {"success": True, "message": "Address updated successfully", "address": entry}


@app.delete("/api/account/addresses/{address_id}")
def delete_address(address_id: str, user: Dict[str, Any] = Depends(require_user)):
    find_address(user, address_id)
    save_addresses(user, [a for a in user.get("addresses", []) if a.get("id") != address_id])
    return {"success": True, "message": "Address deleted successfully"}


# Wishlist
class WishlistDTO(BaseModel):
    product_id: str


@app.get("/api/wishlist")
def get_wishlist(user: Dict[str, Any] = Depends(require_user)):
    entries = get_documents("wishlistitem", {"user_id": str(user["_id"])}, sort=[("created_at", -1)])
    items = []
    for entry in entries:
        product_oid = to_object_id(entry["product_id"])
        product = db["product"].find_one({"_id": product_oid}) if product_oid else None
        items.append({**serialize(entry), "product": serialize(product)})
    return {"wishlist": items, "count": len(items)}


@app.post("/api/wishlist", status_code=201)
def add_to_wishlist(data: WishlistDTO, user: Dict[str, Any] = Depends(require_user)):
    product = get_or_404("product", data.product_id, "Product")
    if not product.get("active", True):
        raise HTTPException(status_code=400, detail="Product is not available")
    user_id = str(user["_id"])
    if db["wishlistitem"].find_one({"user_id": user_id, "product_id": data.product_id}):
        raise HTTPException(status_code=409, detail="Product is already in wishlist")
    item_id = create_document("wishlistitem", WishlistItem(user_id=user_id, product_id=data.product_id))
    return {"success": True, "message": f"{product['name']} added to wishlist", "id": item_id}


@app.delete("/api/wishlist")
def remove_from_wishlist(product_id: str, user: Dict[str, Any] = Depends(require_user)):
    result = db["wishlistitem"].delete_one({"user_id": str(user["_id"]), "product_id": product_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found in wishlist")
    return {"success": True, "message": "Product removed from wishlist"}


# Products
class ProductDTO(BaseModel):
    name: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
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


@app.get("/api/products")
def list_products(category: Optional[str] = None, featured: Optional[bool] = None, search: Optional[str] = None):
    query: Dict[str, Any] = {"active": True}
    if category and category != "all":
        query["category"] = category
    if featured:
        query["featured"] = True
    if search:
        query["$or"] = [
            {"name": search_regex(search)},
            {"description": search_regex(search)},
            {"tags": search_regex(search)},
        ]
    docs = get_documents("product", query, sort=[("created_at", -1)])
    return {"products": [serialize(p) for p in docs], "count": len(docs)}


@app.get("/api/products/{slug}")
def get_product(slug: str):
    product = db["product"].find_one({"slug": slug, "active": True})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    variants = get_documents("productvariant", {"product_id": str(product["_id"]), "active": True},
                             sort=[("name", 1)])
    return {"product": serialize(product), "variants": [serialize(v) for v in variants]}


@app.post("/api/admin/products", status_code=201)
def create_product(data: ProductDTO, admin: Dict[str, Any] = Depends(require_admin)):
    if db["product"].find_one({"slug": data.slug}):
        raise HTTPException(status_code=409, detail="Slug already exists")
    prod_id = create_document("product", Product(**data.model_dump()))
    logger.info("Product %s created by %s", data.slug, admin["email"])
    return {"success": True, "id": prod_id}


@app.put("/api/admin/products/{product_id}")
def update_product(product_id: str, data: ProductDTO, admin: Dict[str, Any] = Depends(require_admin)):
    product = get_or_404("product", product_id, "Product")
    clash = db["product"].find_one({"slug": data.slug})
    if clash and clash["_id"] != product["_id"]:
        raise HTTPException(status_code=409, detail="Slug already exists")
    updated = update_by_id("product", product["_id"], data.model_dump())
    return {"success": True, "product": serialize(updated)}


@app.delete("/api/admin/products/{product_id}")
def delete_product(product_id: str, admin: Dict[str, Any] = Depends(require_admin)):
    product = get_or_404("product", product_id, "Product")
    db["product"].delete_one({"_id": product["_id"]})
    db["productvariant"].delete_many({"product_id": product_id})
    return {"id": product_id, "deleted": True}


# Variants
class VariantDTO(BaseModel):
    name: str = Field(..., min_length=1)
    sku: str = Field(..., min_length=1)
    price: Optional[float] = Field(None, ge=0)
    stock: int = Field(0, ge=0)
    attributes: Dict[str, str] = {}


class VariantUpdateDTO(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    sku: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    attributes: Optional[Dict[str, str]] = None
    active: Optional[bool] = None


@app.get("/api/products/{product_id}/variants")
def list_variants(product_id: str):
    get_or_404("product", product_id, "Product")
    variants = get_documents("productvariant", {"product_id": product_id, "active": True}, sort=[("name", 1)])
    return {"variants": [serialize(v) for v in variants], "count": len(variants)}


@app.post("/api/products/{product_id}/variants", status_code=201)
def create_variant(product_id: str, data: VariantDTO, admin: Dict[str, Any] = Depends(require_admin)):
    get_or_404("product", product_id, "Product")
    if db["productvariant"].find_one({"sku": data.sku}):
        raise HTTPException(status_code=409, detail="SKU already exists")
    variant_id = create_document("productvariant", ProductVariant(product_id=product_id, **data.model_dump()))
    return {"success": True, "variant": serialize(db["productvariant"].find_one({"_id": to_object_id(variant_id)}))}


@app.patch("/api/admin/variants/{variant_id}")
def update_variant(variant_id: str, data: VariantUpdateDTO, admin: Dict[str, Any] = Depends(require_admin)):
    variant = get_or_404("productvariant", variant_id, "Variant")
    changes = drop_nulls(data.model_dump(exclude_unset=True), ("name", "sku", "stock", "attributes", "active"))
    if "sku" in changes:
        clash = db["productvariant"].find_one({"sku": changes["sku"]})
        if clash and clash["_id"] != variant["_id"]:
            raise HTTPException(status_code=409, detail="SKU already exists")
    updated = update_by_id("productvariant", variant["_id"], changes)
    return {"success": True, "variant": serialize(updated)}


@app.delete("/api/admin/variants/{variant_id}")
def delete_variant(variant_id: str, admin: Dict[str, Any] = Depends(require_admin)):
    variant = get_or_404("productvariant", variant_id, "Variant")
    db["productvariant"].delete_one({"_id": variant["_id"]})
    return {"success": True, "message": "Variant deleted successfully"}


# Reviews
class ReviewDTO(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = None
    comment: str = Field(..., min_length=1)


class ReviewModerationDTO(BaseModel):
    approved: StrictBool


@app.get("/api/products/{product_id}/reviews")
def list_reviews(product_id: str, limit: int = Query(10, ge=1, le=100), offset: int = Query(0, ge=0)):
    get_or_404("product", product_id, "Product")
    approved = get_documents("review", {"product_id": product_id, "approved": True}, sort=[("created_at", -1)])
    ratings = [r["rating"] for r in approved]
    distribution = [{"rating": n, "count": ratings.count(n)} for n in range(1, 6)]
    return {
        "reviews": [serialize(r) for r in approved[offset:offset + limit]],
        "stats": {
            "total": len(approved),
            "average_rating": round(sum(ratings) / len(ratings), 2) if ratings else 0,
            "distribution": distribution,
        },
        "pagination": {"limit": limit, "offset": offset, "has_more": offset + limit < len(approved)},
    }


@app.post("/api/products/{product_id}/reviews", status_code=201)
def create_review(product_id: str, data: ReviewDTO, user: Dict[str, Any] = Depends(require_user)):
    get_or_404("product", product_id, "Product")
    user_id = str(user["_id"])
    if db["review"].find_one({"product_id": product_id, "user_id": user_id}):
        raise HTTPException(status_code=409, detail="You have already reviewed this product")
    review = Review(product_id=product_id, user_id=user_id, user_name=user.get("name"), **data.model_dump())
    review_id = create_document("review", review)
    return {"success": True, "message": "Review submitted for moderation", "id": review_id}


@app.get("/api/admin/reviews")
def admin_list_reviews(status: str = "all", limit: int = Query(20, ge=1, le=100), offset: int = Query(0, ge=0),
                       admin: Dict[str, Any] = Depends(require_admin)):
    query: Dict[str, Any] = {}
    if status in ("pending", "approved", "rejected"):
        query["status"] = status
    total = db["review"].count_documents(query)
    docs = list(db["review"].find(query).sort("created_at", -1).skip(offset).limit(limit))
    pending = db["review"].count_documents({"approved": False})
    approved = db["review"].count_documents({"approved": True})
    return {
        "reviews": [serialize(r) for r in docs],
        "stats": {"pending": pending, "approved": approved, "total": pending + approved},
        "pagination": {"total": total, "limit": limit, "offset": offset, "has_more": offset + limit < total},
    }


@app.patch("/api/admin/reviews/{review_id}")
def moderate_review(review_id: str, data: ReviewModerationDTO, admin: Dict[str, Any] = Depends(require_admin)):
    review = get_or_404("review", review_id, "Review")
    updated = update_by_id("review", review["_id"], {
        "approved": data.approved,
        "status": "approved" if data.approved else "rejected",
        "moderated_at": utcnow(),
    })
    return {"success": True, "message": "Review approved" if data.approved else "Review rejected",
            "review": serialize(updated)}


@app.delete("/api/admin/reviews/{review_id}")
def delete_review(review_id: str, admin: Dict[str, Any] = Depends(require_admin)):
    review = get_or_404("review", review_id, "Review")
    db["review"].delete_one({"_id": review["_id"]})
    return {"success": True, "message": "Review deleted successfully"}


# Coupons
class CouponValidateDTO(BaseModel):
    code: str = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)


class CouponDTO(BaseModel):
    code: str = Field(..., min_length=1)
    discount_type: str
    discount_value: float
    min_purchase: Optional[float] = Field(None, ge=0)
    max_uses: Optional[int] = Field(None, ge=0)
    expires_at: Optional[datetime] = None
    active: bool = True


class CouponUpdateDTO(BaseModel):
    code: Optional[str] = Field(None, min_length=1)
    discount_type: Optional[str] = None
    discount_value: Optional[float] = None
    min_purchase: Optional[float] = Field(None, ge=0)
    max_uses: Optional[int] = Field(None, ge=0)
    expires_at: Optional[datetime] = None
    active: Optional[bool] = None


def check_discount(discount_type: str, discount_value: float):
    if discount_type not in DISCOUNT_TYPES:
        raise HTTPException(status_code=400, detail="Discount type must be PERCENTAGE or FIXED")
    if discount_type == PERCENTAGE and not 1 <= discount_value <= 100:
        raise HTTPException(status_code=400, detail="Percentage discount must be between 1 and 100")
    if discount_value < 0:
        raise HTTPException(status_code=400, detail="Fixed discount must be a positive number")


@app.post("/api/coupons/validate")
def validate_coupon(data: CouponValidateDTO):
    coupon = find_coupon(data.code)
    discount = evaluate_coupon(coupon, data.subtotal)
    return {
        "success": True,
        "valid": True,
        "coupon": {
            "id": str(coupon["_id"]),
            "code": coupon["code"],
            "discount_type": coupon["discount_type"],
            "discount_value": coupon["discount_value"],
            "discount_amount": discount,
        },
        "message": f"Coupon applied! You save ${discount:.2f}",
    }


@app.get("/api/admin/coupons")
def admin_list_coupons(admin: Dict[str, Any] = Depends(require_admin)):
    return {"coupons": [serialize(c) for c in get_documents("coupon", sort=[("created_at", -1)])]}


@app.post("/api/admin/coupons", status_code=201)
def create_coupon(data: CouponDTO, admin: Dict[str, Any] = Depends(require_admin)):
    code = normalize_code(data.code)
    discount_type = data.discount_type.upper()
    check_discount(discount_type, data.discount_value)
    if find_coupon(code):
        raise HTTPException(status_code=409, detail="Coupon code already exists")
    coupon = Coupon(**{**data.model_dump(), "code": code, "discount_type": discount_type,
                       "expires_at": as_naive_utc(data.expires_at), "uses": 0})
    coupon_id = create_document("coupon", coupon)
    logger.info("Coupon %s created by %s", code, admin["email"])
    return {"success": True, "coupon": serialize(db["coupon"].find_one({"_id": to_object_id(coupon_id)}))}


@app.patch("/api/admin/coupons/{coupon_id}")
def update_coupon(coupon_id: str, data: CouponUpdateDTO, admin: Dict[str, Any] = Depends(require_admin)):
    coupon = get_or_404("coupon", coupon_id, "Coupon")
    changes = drop_nulls(data.model_dump(exclude_unset=True), ("code", "discount_type", "discount_value", "active"))
    if "code" in changes:
        changes["code"] = normalize_code(changes["code"])
        clash = find_coupon(changes["code"])
        if clash and clash["_id"] != coupon["_id"]:
            raise HTTPException(status_code=409, detail="Coupon code already exists")
    if "discount_type" in changes:
        changes["discount_type"] = changes["discount_type"].upper()
    if "discount_type" in changes or "discount_value" in changes:
        check_discount(changes.get("discount_type", coupon["discount_type"]),
                       float(changes.get("discount_value", coupon["discount_value"])))
    if "expires_at" in changes:
        changes["expires_at"] = as_naive_utc(changes["expires_at"])
    updated = update_by_id("coupon", coupon["_id"], changes)
    return {"success": True, "coupon": serialize(updated)}


@app.delete("/api/admin/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, admin: Dict[str, Any] = Depends(require_admin)):
    coupon = get_or_404("coupon", coupon_id, "Coupon")
    db["coupon"].delete_one({"_id": coupon["_id"]})
    return {"success": True, "message": "Coupon deleted successfully"}


# Cart
class CartAddDTO(CartItem):
    cart_key: str = Field(..., min_length=1)


class CartUpdateDTO(BaseModel):
    cart_key: str = Field(..., min_length=1)
    items: List[CartItem]
    coupon_code: Optional[str] = None


def cart_summary(items: List[CartItem], coupon_code: Optional[str] = None) -> Dict[str, Any]:
    """Price a cart from the live catalog. A bad coupon zeroes the discount instead of failing."""
    lines = orders.price_line_items(items)
    subtotal = round(sum(line.subtotal for line in lines), 2)
    discount = 0.0
    coupon_error = None
    if coupon_code:
        try:
            discount = evaluate_coupon(find_coupon(coupon_code), subtotal)
        except CouponRejected as exc:
            coupon_error = exc.message
    return {
        "items": [line.model_dump() for line in lines],
        "coupon_code": normalize_code(coupon_code) if coupon_code else None,
        "coupon_error": coupon_error,
        "totals": orders.compute_totals(subtotal, discount),
    }


def load_cart(cart_key: str) -> Optional[Dict[str, Any]]:
    return db["cart"].find_one({"cart_key": cart_key})


@app.post("/api/cart/add")
def cart_add(data: CartAddDTO):
    item = CartItem(product_id=data.product_id, variant_id=data.variant_id, quantity=data.quantity)
    orders.price_line_items([item])
    cart = load_cart(data.cart_key)
    if not cart:
        create_document("cart", Cart(cart_key=data.cart_key, items=[item]))
    else:
        items = cart.get("items", [])
        for it in items:
            if it.get("product_id") == item.product_id and it.get("variant_id") == item.variant_id:
                it["quantity"] += item.quantity
                break
        else:
            items.append(item.model_dump())
        update_by_id("cart", cart["_id"], {"items": items})
    cart = load_cart(data.cart_key)
    return {"cart_key": data.cart_key, **cart_summary([CartItem(**i) for i in cart["items"]], cart.get("coupon_code"))}


@app.get("/api/cart")
def cart_get(cart_key: str):
    cart = load_cart(cart_key)
    if not cart:
        return {"cart_key": cart_key, **cart_summary([])}
    return {"cart_key": cart_key, **cart_summary([CartItem(**i) for i in cart.get("items", [])],
                                                 cart.get("coupon_code"))}


@app.post("/api/cart/update")
def cart_update(data: CartUpdateDTO):
    summary = cart_summary(data.items, data.coupon_code)
    payload = Cart(cart_key=data.cart_key, items=data.items, coupon_code=summary["coupon_code"]).model_dump()
    cart = load_cart(data.cart_key)
    if not cart:
        create_document("cart", payload)
    else:
        update_by_id("cart", cart["_id"], payload)
    return {"cart_key": data.cart_key, **summary}


# Orders
class CheckoutDTO(BaseModel):
    customer_name: str = Field(..., min_length=1)
    customer_email: EmailStr
    customer_phone: Optional[str] = None
    shipping_address: Address
    billing_address: Optional[Address] = None
    items: List[CartItem] = []
    cart_key: Optional[str] = None
    coupon_code: Optional[str] = None
    payment_provider: str = "stripe"


class OrderStatusDTO(BaseModel):
    order_number: str
    status: Optional[str] = None
    payment_status: Optional[str] = None


@app.post("/api/orders", status_code=201)
def create_order(data: CheckoutDTO, idempotency_key: Optional[str] = Header(default=None),
                 user: Optional[Dict[str, Any]] = Depends(get_current_user)):
    items = data.items
    cart = None
    if not items and data.cart_key:
        cart = load_cart(data.cart_key)
        items = [CartItem(**i) for i in cart.get("items", [])] if cart else []
    # orders.create_order replays idempotent retries before rejecting an empty cart.
    order, client_secret = orders.create_order(
        customer_name=data.customer_name,
        customer_email=data.customer_email.lower(),
        customer_phone=data.customer_phone,
        shipping_address=data.shipping_address,
        billing_address=data.billing_address,
        items=items,
        coupon_code=data.coupon_code or (cart or {}).get("coupon_code"),
        user_id=str(user["_id"]) if user else None,
        payment_provider=data.payment_provider,
        idempotency_key=idempotency_key,
    )
    if cart:
        db["cart"].delete_one({"_id": cart["_id"]})
    return {"success": True, "message": "Order created successfully", "order": serialize(order),
            "client_secret": client_secret}


@app.get("/api/orders")
def list_orders(order_number: Optional[str] = None, email: Optional[str] = None,
                user: Optional[Dict[str, Any]] = Depends(get_current_user)):
    if user and user.get("role") in config.ADMIN_ROLES and not order_number:
        docs = get_documents("order", {"customer_email": email} if email else {}, sort=[("created_at", -1)])
        return {"orders": [serialize(o) for o in docs], "count": len(docs)}
    if not order_number:
        raise HTTPException(status_code=400, detail="Order number required")
    order = db["order"].find_one({"order_number": order_number})
    is_staff = bool(user and user.get("role") in config.ADMIN_ROLES)
    owner_email = (user or {}).get("email") or (email or "").lower()
    if not order or (not is_staff and order["customer_email"].lower() != owner_email.lower()):
        raise HTTPException(status_code=404, detail="Order not found")
    return {"order": serialize(order)}


@app.put("/api/orders")
def update_order(data: OrderStatusDTO, admin: Dict[str, Any] = Depends(require_admin)):
    if data.status and data.status not in ORDER_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status {data.status}")
    if data.payment_status and data.payment_status not in PAYMENT_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown payment status {data.payment_status}")
    order = db["order"].find_one({"order_number": data.order_number})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    updated = orders.update_status(order, status=data.status, payment_status=data.payment_status)
    logger.info("Order %s updated by %s: status=%s payment=%s", data.order_number, admin["email"],
                updated.get("status"), updated.get("payment_status"))
    return {"success": True, "message": "Order updated successfully", "order": serialize(updated)}


@app.post("/api/orders/{order_number}/confirm-payment")
def confirm_payment(order_number: str):
    """Called by the checkout page after the card widget reports success; re-checks with Stripe."""
    order = db["order"].find_one({"order_number": order_number})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.get("payment_status") in ("paid", "refunded"):
        return {"success": True, "order": serialize(order)}
    if not order.get("payment_id"):
        raise HTTPException(status_code=400, detail="Order has no payment to confirm")
    intent = payments.retrieve_payment_intent(order["payment_id"])
    if intent.status != "succeeded":
        raise HTTPException(status_code=409, detail=f"Payment not completed ({intent.status})")
    order = payments.record_payment_succeeded(order["payment_id"])
    return {"success": True, "order": serialize(order)}


@app.post("/api/webhooks/stripe")
async def stripe_webhook(request: Request):
    payload = await request.body()
    event = payments.construct_event(payload, request.headers.get("Stripe-Signature"))
    event_type = event["type"]
    intent = event["data"]["object"]
    intent_id = intent["id"]
    if not payments.claim_event(event["id"], event_type, intent_id):
        return {"received": True, "duplicate": True}
    if event_type == "payment_intent.succeeded":
        payments.record_payment_succeeded(intent_id)
    elif event_type == "payment_intent.payment_failed":
        payments.record_payment_failed(intent_id)
    elif event_type == "payment_intent.canceled":
        orders.cancel_unpaid_order_for_intent(intent_id)
    else:
        logger.info("Ignoring webhook event %s", event_type)
    return {"received": True}


# Bookings
class BookingDTO(BaseModel):
    customer_name: str = Field(..., min_length=1)
    customer_email: EmailStr
    customer_phone: str = Field(..., min_length=1)
    service: str = Field(..., min_length=1)
    date: date_type
    time: str = Field(..., min_length=1)
    notes: Optional[str] = None


class BookingStatusDTO(BaseModel):
    status: str


@app.post("/api/bookings", status_code=201)
def create_booking(data: BookingDTO):
    day = datetime.combine(data.date, time_type.min)
    clash = db["appointment"].find_one({"date": day, "time": data.time, "status": {"$ne": "cancelled"}})
    if clash:
        raise HTTPException(status_code=409, detail="This time slot is already booked")
    appointment = Appointment(**{**data.model_dump(), "date": day})
    appointment_id = create_document("appointment", appointment)
    logger.info("Booking %s for %s on %s %s", appointment_id, data.service, data.date, data.time)
    return {"success": True, "message": "Booking created successfully!",
            "appointment": serialize(db["appointment"].find_one({"_id": to_object_id(appointment_id)}))}


@app.get("/api/bookings")
def list_bookings(user: Dict[str, Any] = Depends(require_user)):
    query = {} if user.get("role") in config.ADMIN_ROLES else {"customer_email": user["email"]}
    docs = get_documents("appointment", query, sort=[("date", 1)])
    return {"appointments": [serialize(a) for a in docs]}


@app.patch("/api/admin/bookings/{appointment_id}")
def update_booking(appointment_id: str, data: BookingStatusDTO, admin: Dict[str, Any] = Depends(require_admin)):
    if data.status not in APPOINTMENT_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status {data.status}")
    appointment = get_or_404("appointment", appointment_id, "Appointment")
    updated = update_by_id("appointment", appointment["_id"], {"status": data.status})
    return {"success": True, "appointment": serialize(updated)}


# Blog
class BlogPostDTO(BaseModel):
    title: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    excerpt: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    cover_image: Optional[str] = None
    author: str = "Admin"
    category: Optional[str] = None
    tags: List[str] = []
    published: bool = False
    read_time: int = 5


class BlogPostUpdateDTO(BaseModel):
    title: Optional[str] = None
    excerpt: Optional[str] = None
    content: Optional[str] = None
    cover_image: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    published: Optional[bool] = None
    read_time: Optional[int] = None


@app.get("/api/blog")
def list_blog(slug: Optional[str] = None, category: Optional[str] = None, tag: Optional[str] = None,
              search: Optional[str] = None, limit: Optional[int] = Query(None, ge=1)):
    if slug:
        post = db["blogpost"].find_one_and_update({"slug": slug, "published": True}, {"$inc": {"views": 1}},
                                                  return_document=ReturnDocument.AFTER)
        if not post:
            raise HTTPException(status_code=404, detail="Blog post not found")
        return {"post": serialize(post)}
    query: Dict[str, Any] = {"published": True}
    if category:
        query["category"] = category
    if tag:
        query["tags"] = tag
    if search:
        query["$or"] = [{"title": search_regex(search)}, {"excerpt": search_regex(search)},
                        {"content": search_regex(search)}]
    posts = get_documents("blogpost", query, limit=limit, sort=[("published_at", -1)])
    return {"posts": [serialize(p) for p in posts], "count": len(posts)}


@app.post("/api/blog", status_code=201)
def create_blog_post(data: BlogPostDTO, admin: Dict[str, Any] = Depends(require_admin)):
    if db["blogpost"].find_one({"slug": data.slug}):
        raise HTTPException(status_code=409, detail="Slug already exists")
    post = BlogPost(**data.model_dump(), published_at=utcnow() if data.published else None)
    post_id = create_document("blogpost", post)
    return {"success": True, "post": serialize(db["blogpost"].find_one({"_id": to_object_id(post_id)}))}


@app.put("/api/blog/{post_id}")
def update_blog_post(post_id: str, data: BlogPostUpdateDTO, admin: Dict[str, Any] = Depends(require_admin)):
    post = get_or_404("blogpost", post_id, "Blog post")
    changes = drop_nulls(data.model_dump(exclude_unset=True),
                         ("title", "excerpt", "content", "author", "tags", "published", "read_time"))
    if changes.get("published") and not post.get("published_at"):
        changes["published_at"] = utcnow()
    updated = update_by_id("blogpost", post["_id"], changes)
    return {"success": True, "post": serialize(updated)}


@app.delete("/api/blog/{post_id}")
def delete_blog_post(post_id: str, admin: Dict[str, Any] = Depends(require_admin)):
    post = get_or_404("blogpost", post_id, "Blog post")
    db["blogpost"].delete_one({"_id": post["_id"]})
    return {"success": True, "message": "Blog post deleted successfully"}


# Banners
class BannerDTO(BaseModel):
    title: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    type: str = "info"
    link: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class BannerUpdateDTO(BaseModel):
    title: Optional[str] = None
    message: Optional[str] = None
    type: Optional[str] = None
    link: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    active: Optional[bool] = None


@app.get("/api/banners")
def list_active_banners():
    now = utcnow()
    query = {
        "active": True,
        "start_date": {"$lte": now},
        "$or": [{"end_date": None}, {"end_date": {"$gte": now}}],
    }
    return {"banners": [serialize(b) for b in get_documents("promobanner", query, sort=[("created_at", -1)])]}


@app.get("/api/admin/banners")
def admin_list_banners(admin: Dict[str, Any] = Depends(require_admin)):
    return {"banners": [serialize(b) for b in get_documents("promobanner", sort=[("created_at", -1)])]}


@app.post("/api/admin/banners", status_code=201)
def create_banner(data: BannerDTO, admin: Dict[str, Any] = Depends(require_admin)):
    banner = PromoBanner(**{**data.model_dump(), "start_date": as_naive_utc(data.start_date) or utcnow(),
                            "end_date": as_naive_utc(data.end_date)})
    banner_id = create_document("promobanner", banner)
    return {"success": True, "banner": serialize(db["promobanner"].find_one({"_id": to_object_id(banner_id)}))}


@app.patch("/api/admin/banners/{banner_id}")
def update_banner(banner_id: str, data: BannerUpdateDTO, admin: Dict[str, Any] = Depends(require_admin)):
    banner = get_or_404("promobanner", banner_id, "Banner")
    changes = drop_nulls(data.model_dump(exclude_unset=True), ("title", "message", "type", "start_date", "active"))
    for key in ("start_date", "end_date"):
        if key in changes:
            changes[key] = as_naive_utc(changes[key])
    updated = update_by_id("promobanner", banner["_id"], changes)
    return {"success": True, "banner": serialize(updated)}


@app.delete("/api/admin/banners/{banner_id}")
def delete_banner(banner_id: str, admin: Dict[str, Any] = Depends(require_admin)):
    banner = get_or_404("promobanner", banner_id, "Banner")
    db["promobanner"].delete_one({"_id": banner["_id"]})
    return {"success": True, "message": "Banner deleted successfully"}


# Newsletter
class NewsletterDTO(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    source: str = "website"


@app.post("/api/newsletter")
def subscribe(data: NewsletterDTO):
    email = data.email.lower()
    existing = db["newslettersubscriber"].find_one({"email": email})
    if existing and existing.get("status") == "active":
        raise HTTPException(status_code=400, detail="This email is already subscribed")
    if existing:
        update_by_id("newslettersubscriber", existing["_id"], {
            "status": "active",
            "name": data.name or existing.get("name"),
            "unsubscribed_at": None,
            "confirmed_at": utcnow(),
        })
    else:
        create_document("newslettersubscriber", NewsletterSubscriber(
            email=email, name=data.name, source=data.source, confirmed_at=utcnow()))
    logger.info("Newsletter subscription for %s", email)
    return {"success": True, "message": "Successfully subscribed to newsletter!"}


@app.get("/api/newsletter")
def list_subscribers(admin: Dict[str, Any] = Depends(require_admin)):
    subscribers = get_documents("newslettersubscriber", {"status": "active"}, sort=[("created_at", -1)])
    return {"subscribers": [serialize(s) for s in subscribers], "count": len(subscribers)}


@app.delete("/api/newsletter")
def unsubscribe(email: str):
    subscriber = db["newslettersubscriber"].find_one({"email": email.lower()})
    if not subscriber:
        raise HTTPException(status_code=404, detail="Email not found in our system")
    update_by_id("newslettersubscriber", subscriber["_id"], {"status": "unsubscribed", "unsubscribed_at": utcnow()})
    return {"success": True, "message": "Successfully unsubscribed from newsletter"}


# Contact
class ContactDTO(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None
    service: Optional[str] = None
    message: str


@app.post("/api/contact")
def submit_contact(data: ContactDTO):
    if len(data.message.strip()) < 10:
        raise HTTPException(status_code=400, detail="Message must be at least 10 characters")
    submission_id = create_document("contactsubmission", ContactSubmission(**data.model_dump()))
    logger.info("Contact form submission saved: %s", submission_id)
    return {"success": True, "message": "Thank you for contacting us! We will get back to you soon."}


@app.get("/api/contact")
def list_contact_submissions(admin: Dict[str, Any] = Depends(require_admin)):
    submissions = get_documents("contactsubmission", limit=100, sort=[("created_at", -1)])
    return {"submissions": [serialize(s) for s in submissions]}


# Admin analytics
@app.get("/api/admin/analytics")
def get_analytics(period: str = "30d", start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                  admin: Dict[str, Any] = Depends(require_admin)):
    return {"success": True, "analytics": analytics.collect_dashboard(period, start_date, end_date)}


@app.get("/api/admin/analytics/export")
def export_analytics(export_type: str = Query("orders", alias="type"), start_date: Optional[datetime] = None,
                     end_date: Optional[datetime] = None, admin: Dict[str, Any] = Depends(require_admin)):
    if export_type not in analytics.EXPORT_TYPES:
        raise HTTPException(status_code=400, detail=f"Unknown export type {export_type}")
    content = analytics.export_csv(export_type, start_date, end_date)
    filename = f"analytics-{export_type}-{utcnow().date().isoformat()}.csv"
    return Response(content=content, media_type="text/csv",
                    headers={"Content-Disposition": f'attachment; filename="{filename}"'})


# Sample seed endpoint (dev only)
@app.post("/dev/seed")
def seed():
    if not config.ENABLE_DEV_SEED:
        raise HTTPException(status_code=404, detail="Not found")
    if not db["user"].find_one({"email": config.SEED_ADMIN_EMAIL}):
        admin = User(name="Admin", email=config.SEED_ADMIN_EMAIL,
                     password_hash=hash_password(config.SEED_ADMIN_PASSWORD), role="admin")
        create_document("user", admin)
    if db["product"].count_documents({}) == 0:
        create_document("product", Product(
            name="Premium Business Consultation",
            slug="premium-business-consultation",
            description="Market analysis, strategy development and implementation guidance.",
            price=499.99,
            sale_price=399.99,
            images=["https://images.unsplash.com/photo-1454165804606-c3d57bc86b40?w=800"],
            category="services",
            sku="SRV-001",
            stock=100,
            featured=True,
            tags=["consulting", "business", "strategy"],
        ))
        tee_id = create_document("product", Product(
            name="Classic Tee",
            slug="classic-tee",
            description="Soft cotton tee",
            price=20.0,
            images=["https://images.unsplash.com/photo-1520975682031-a1248f1a6386"],
            category="apparel",
            sku="TEE-CLSC",
            stock=200,
            tags=["shirt", "cotton"],
        ))
        for size in ("S", "M", "L"):
            create_document("productvariant", ProductVariant(
                product_id=tee_id, name=size, sku=f"TEE-CLSC-{size}", stock=50, attributes={"size": size}))
    if db["coupon"].count_documents({}) == 0:
        create_document("coupon", Coupon(code="WELCOME10", discount_type="PERCENTAGE", discount_value=10))
    return {"ok": True}


if __name__ == "__main__":
    import os
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
