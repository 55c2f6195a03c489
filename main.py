import logging
import os
from collections import Counter
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import FastAPI, HTTPException, Depends, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, EmailStr, Field, ValidationError
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import catalog
import content
import orders
from auth import (
    SESSION_COOKIE, TOKEN_TTL, ADMIN_SECRET_KEY,
    create_token, get_current_user, get_optional_user, hash_password, public_user, require_admin, verify_password,
)
from database import db, create_document, ensure_indexes, get_documents
from schemas import (
    Address, Category as CategorySchema, CategoryFilter, CustomerSnapshot, Dimensions, Order as OrderSchema,
    OrderItem, Product as ProductSchema, ProductAttribute, ProductImage, ProductVariant, Review as ReviewSchema,
    Seo, Settings as SettingsSchema, User as UserSchema,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# App init
app = FastAPI(title="Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

STOREFRONT_CATEGORY = {"is_active": True, "pending_delete": {"$ne": True}}
ESTIMATED_DELIVERY_DAYS = 5
LOW_STOCK_ALERT = 10


# Error envelope
@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        {"success": False, "error": exc.detail},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        {"success": False, "error": f"{field}: {message}" if field else message},
        status_code=400,
    )


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.warning("Duplicate key on %s: %s", request.url.path, exc)
    return JSONResponse({"success": False, "error": "A record with this value already exists"}, status_code=400)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"success": False, "error": "Internal server error"}, status_code=500)


# Utils
def oid(id_str: str) -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail="Invalid id")
    return ObjectId(id_str)


def serialize_doc(doc: Dict[str, Any]):
    if not doc:
        return doc
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    doc.pop("password_hash", None)
    # Convert datetime
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = v.isoformat()
    return doc


def ok(data: Any = None, **extra):
    return {"success": True, "data": data, **extra}


def page_params(request: Request, default_limit: int = catalog.DEFAULT_LIMIT):
    page = max(catalog.parse_int(request.query_params.get("page"), 1), 1)
    limit = catalog.parse_int(request.query_params.get("limit"), default_limit)
    return page, min(max(limit, 1), catalog.MAX_LIMIT)


def find_or_404(collection: str, id_str: str, label: str) -> dict:
    doc = db[collection].find_one({"_id": oid(id_str)})
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


# Request models
class SignupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str
    phone: Optional[str] = None


class AdminRegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str
    secret_key: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str
    role: str = "user"


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    phone: Optional[str] = None
    avatar: Optional[str] = None
    address: Optional[Address] = None


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class CategoryCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    parent: Optional[str] = None
    display_order: int = 0
    is_active: bool = True
    seo: Seo = Field(default_factory=Seo)
    filters: List[CategoryFilter] = Field(default_factory=list)


class CategoryUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    slug: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    parent: Optional[str] = None
    display_order: Optional[int] = None
    is_active: Optional[bool] = None
    seo: Optional[Seo] = None
    filters: Optional[List[CategoryFilter]] = None


class ProductCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    slug: Optional[str] = None
    description: str = Field(..., min_length=1)
    short_description: Optional[str] = None
    price: float = Field(..., ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    sku: str = Field(..., min_length=1)
    track_quantity: bool = True
    quantity: int = Field(0, ge=0)
    allow_backorder: bool = False
    images: List[ProductImage] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    attributes: List[ProductAttribute] = Field(default_factory=list)
    variants: List[ProductVariant] = Field(default_factory=list)
    seo: Seo = Field(default_factory=Seo)
    status: str = "draft"
    featured: bool = False
    trending: bool = False
    tags: List[str] = Field(default_factory=list)
    weight: Optional[float] = None
    dimensions: Optional[Dimensions] = None


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    slug: Optional[str] = None
    description: Optional[str] = None
    short_description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    track_quantity: Optional[bool] = None
    quantity: Optional[int] = Field(None, ge=0)
    allow_backorder: Optional[bool] = None
    images: Optional[List[ProductImage]] = None
    categories: Optional[List[str]] = None
    attributes: Optional[List[ProductAttribute]] = None
    variants: Optional[List[ProductVariant]] = None
    seo: Optional[Seo] = None
    status: Optional[str] = None
    featured: Optional[bool] = None
    trending: Optional[bool] = None
    tags: Optional[List[str]] = None
    weight: Optional[float] = None
    dimensions: Optional[Dimensions] = None


class ReviewCreateRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=1, max_length=100)
    content: str = Field(..., min_length=1, max_length=2000)


class SuggestionRequest(BaseModel):
    query: str = ""


class CartAddRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    variant: Optional[str] = None


class WishlistAddRequest(BaseModel):
    product_id: str


class ShippingAddress(BaseModel):
    street: str = Field(..., min_length=1, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    zip_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field(..., min_length=1, max_length=100)


class CheckoutItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    variant: Optional[str] = None


class CheckoutRequest(BaseModel):
    items: Optional[List[CheckoutItem]] = None
    shipping_address: ShippingAddress
    phone: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=1000)
    delivery_type: orders.DeliveryType = orders.DeliveryType.STANDARD
    payment_method: str = "cod"


class FulfillmentData(BaseModel):
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    service_type: Optional[str] = None
    origin: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    delivery_location: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None


class OrderActionRequest(BaseModel):
    action: str
    data: FulfillmentData = Field(default_factory=FulfillmentData)


class BulkFulfillmentRequest(BaseModel):
    order_ids: List[str] = Field(..., min_length=1)
    action: str
    fulfillment_data: FulfillmentData = Field(default_factory=FulfillmentData)


class PaymentUpdateRequest(BaseModel):
    payment_status: orders.PaymentStatus
    amount_paid: Optional[float] = Field(None, ge=0)
    payment_notes: Optional[str] = None
    collected_by: Optional[str] = None


class ShippingLabelRequest(BaseModel):
    carrier: str
    tracking_number: str
    origin: str
    destination: str
    service_type: Optional[str] = None
    weight: Optional[float] = None
    dimensions: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    notes: Optional[str] = None


class UserCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str
    role: str = "user"
    phone: Optional[str] = None
    is_active: bool = True


class UserUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    role: Optional[str] = None
    is_active: Optional[bool] = None
    password: Optional[str] = None


class NewsletterRequest(BaseModel):
    email: EmailStr


# Routes
@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


# Auth
def _set_session(response: Response, token: str):
    response.set_cookie(
        SESSION_COOKIE, token, httponly=True, samesite="lax", max_age=int(TOKEN_TTL.total_seconds()),
    )


def _create_account(name: str, email: str, password: str, role: str, phone: Optional[str] = None, is_active: bool = True) -> dict:
    email = email.strip().lower()
    if db["user"].find_one({"email": email, "role": role}):
        label = "Admin" if role == "admin" else "User"
        raise HTTPException(status_code=400, detail=f"{label} with this email already exists")
    user = UserSchema(
        name=name.strip(), email=email, password_hash=hash_password(password),
        role=role, phone=phone, is_active=is_active,
    )
    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Account with this email already exists")
    logger.info("Registered %s account %s", role, user_id)
    return db["user"].find_one({"_id": ObjectId(user_id)})


@app.post("/api/auth/register", status_code=201)
def register(req: SignupRequest, response: Response):
    if len(req.password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters long")
    created = _create_account(req.name, req.email, req.password, "user", phone=req.phone)
    token = create_token(created)
    _set_session(response, token)
    return ok({"token": token, "user": public_user(created)}, message="User registered successfully")


@app.post("/api/auth/admin-register", status_code=201)
def admin_register(req: AdminRegisterRequest):
    if not ADMIN_SECRET_KEY or req.secret_key != ADMIN_SECRET_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin secret key")
    if len(req.password) < 8:
        raise HTTPException(status_code=400, detail="Admin password must be at least 8 characters long")
    created = _create_account(req.name, req.email, req.password, "admin")
    return ok({"user": public_user(created)}, message="Admin registered successfully")


@app.post("/api/auth/login")
def login(req: LoginRequest, response: Response):
    user = db["user"].find_one({"email": req.email.lower(), "role": req.role})
    if not user or not verify_password(req.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Account is blocked")
    token = create_token(user)
    _set_session(response, token)
    return ok({"token": token, "user": public_user(user)})


@app.post("/api/auth/logout")
def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE)
    return ok(message="Signed out")


@app.get("/api/auth/me")
def me(user=Depends(get_current_user)):
    return ok(public_user(user))


# Profile
@app.get("/api/users/profile")
def get_profile(user=Depends(get_current_user)):
    return ok(public_user(user))


@app.put("/api/users/profile")
def update_profile(req: ProfileUpdateRequest, user=Depends(get_current_user)):
    updates = {k: v for k, v in req.model_dump().items() if v is not None}
    if "name" in updates:
        updates["name"] = updates["name"].strip()
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    updates["updated_at"] = datetime.now(timezone.utc)
    db["user"].update_one({"_id": user["_id"]}, {"$set": updates})
    return ok(public_user(db["user"].find_one({"_id": user["_id"]})), message="Profile updated successfully")


@app.post("/api/users/change-password")
def change_password(req: ChangePasswordRequest, user=Depends(get_current_user)):
    if len(req.new_password) < 6:
        raise HTTPException(status_code=400, detail="New password must be at least 6 characters long")
    if not verify_password(req.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(req.new_password), "updated_at": datetime.now(timezone.utc)}},
    )
    return ok(message="Password changed successfully")


# Categories (storefront)
def category_public(cat: dict) -> dict:
    out = serialize_doc(cat)
    out.pop("pending_delete", None)
    return out


def storefront_categories() -> List[dict]:
    return [category_public(c) for c in db["category"].find(STOREFRONT_CATEGORY)]


@app.get("/api/categories")
def list_categories():
    cats = storefront_categories()
    tree = catalog.build_category_tree(cats)
    for node in tree:
        node["url"] = f"/categories/{node['slug']}"
    return ok({"categories": tree})


def _product_listing(query: catalog.ProductQuery, category_ids: Optional[List[str]]):
    filt = catalog.build_product_filter(query, category_ids)
    total = db["product"].count_documents(filt)
    cursor = (
        db["product"].find(filt)
        .sort(catalog.build_sort(query.sort_by, query.sort_order))
        .skip(query.skip)
        .limit(query.limit)
    )
    products = [catalog.product_card(p) for p in cursor]
    return products, catalog.paginate(total, query.page, query.limit)


@app.get("/api/categories/{slug}")
def get_category(slug: str, request: Request):
    category = db["category"].find_one({"slug": slug, **STOREFRONT_CATEGORY})
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    query = catalog.parse_product_query(dict(request.query_params))
    active = storefront_categories()
    category_id = str(category["_id"])
    category_ids = catalog.collect_descendant_ids(category_id, active)
    products, pagination = _product_listing(query, category_ids)

    parent = None
    if category.get("parent"):
        parent_doc = db["category"].find_one({"_id": ObjectId(category["parent"])}, {"name": 1, "slug": 1})
        if parent_doc:
            parent = {"id": str(parent_doc["_id"]), "name": parent_doc["name"], "slug": parent_doc["slug"]}
    subcategories = [
        {"id": c["id"], "name": c["name"], "slug": c["slug"], "image": c.get("image")}
        for c in catalog.sort_categories(active) if c.get("parent") == category_id
    ]
    return ok({
        "category": {**category_public(category), "parent": parent, "subcategories": subcategories},
        "products": products,
        "pagination": pagination,
        "filters": asdict(query),
    })


# Products (storefront)
def resolve_category(ref: str) -> Optional[dict]:
    query: Dict[str, Any] = {"slug": ref.lower()}
    if ObjectId.is_valid(ref):
        query = {"$or": [{"_id": ObjectId(ref)}, {"slug": ref.lower()}]}
    return db["category"].find_one({**query, **STOREFRONT_CATEGORY})


@app.get("/api/products")
def list_products(request: Request):
    query = catalog.parse_product_query(dict(request.query_params))
    category_ids = None
    if query.category and query.category.lower() != "all":
        category = resolve_category(query.category)
        category_ids = [str(category["_id"])] if category else []
    products, pagination = _product_listing(query, category_ids)
    return ok({"products": products, "pagination": pagination, "filters": asdict(query)})


def category_refs(ids: List[str]) -> List[dict]:
    valid = [ObjectId(i) for i in ids if ObjectId.is_valid(i)]
    docs = db["category"].find({"_id": {"$in": valid}}, {"name": 1, "slug": 1, "image": 1})
    return [{"id": str(c["_id"]), "name": c["name"], "slug": c["slug"], "image": c.get("image")} for c in docs]


def product_detail(product: dict) -> dict:
    detail = catalog.product_card(product)
    detail.update({
        "short_description": product.get("short_description"),
        "sku": product.get("sku"),
        "compare_price": product.get("compare_price"),
        "images": product.get("images", []),
        "primary_image": catalog.primary_image(product),
        "categories": category_refs(product.get("categories", [])),
        "attributes": product.get("attributes", []),
        "variants": product.get("variants", []),
        "rating": product.get("rating", {"average": 0, "count": 0}),
        "quantity": product.get("quantity", 0),
        "track_quantity": product.get("track_quantity", True),
        "allow_backorder": product.get("allow_backorder", False),
        "weight": product.get("weight"),
        "dimensions": product.get("dimensions"),
        "seo": {
            "title": (product.get("seo") or {}).get("title") or product.get("name"),
            "description": (product.get("seo") or {}).get("description") or product.get("short_description"),
            "keywords": (product.get("seo") or {}).get("keywords", []),
        },
        "created_at": product.get("created_at"),
        "updated_at": product.get("updated_at"),
    })
    return detail


def review_public(review: dict) -> dict:
    out = serialize_doc(review)
    author = db["user"].find_one({"_id": ObjectId(review["user_id"])}, {"name": 1, "avatar": 1}) \
        if ObjectId.is_valid(review["user_id"]) else None
    out["user"] = {"id": review["user_id"], "name": author["name"] if author else "Deleted user",
                   "avatar": author.get("avatar") if author else None}
    return out


def active_product_by_slug(slug: str) -> dict:
    product = db["product"].find_one({"slug": slug, "status": "active"})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.get("/api/products/{slug}")
def get_product(slug: str):
    product = active_product_by_slug(slug)
    related = db["product"].find({
        "_id": {"$ne": product["_id"]},
        "categories": {"$in": product.get("categories", [])},
        "status": "active",
    }).limit(8)
    reviews = db["review"].find({"product_id": str(product["_id"]), "is_approved": True}).sort("created_at", -1).limit(10)
    return ok({
        "product": product_detail(product),
        "related_products": [catalog.product_card(p) for p in related],
        "reviews": [review_public(r) for r in reviews],
    })


def refresh_product_rating(product_id: str):
    ratings = [r["rating"] for r in db["review"].find({"product_id": product_id, "is_approved": True}, {"rating": 1})]
    average = round(sum(ratings) / len(ratings), 1) if ratings else 0
    db["product"].update_one(
        {"_id": ObjectId(product_id)},
        {"$set": {"rating": {"average": average, "count": len(ratings)}}},
    )


@app.get("/api/products/{slug}/reviews")
def list_reviews(slug: str, request: Request):
    product = active_product_by_slug(slug)
    page, limit = page_params(request, default_limit=10)
    filt = {"product_id": str(product["_id"]), "is_approved": True}
    total = db["review"].count_documents(filt)
    reviews = db["review"].find(filt).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return ok({"reviews": [review_public(r) for r in reviews], "pagination": catalog.paginate(total, page, limit)})


@app.post("/api/products/{slug}/reviews", status_code=201)
def create_review(slug: str, req: ReviewCreateRequest, user=Depends(get_current_user)):
    product = active_product_by_slug(slug)
    product_id = str(product["_id"])
    user_id = str(user["_id"])
    if db["review"].find_one({"product_id": product_id, "user_id": user_id}):
        raise HTTPException(status_code=400, detail="You have already reviewed this product")
    purchase = db["order"].find_one({
        "customer.id": user_id,
        "status": orders.OrderStatus.DELIVERED.value,
        "items.product": product_id,
    })
    review = ReviewSchema(
        product_id=product_id, user_id=user_id, order_id=str(purchase["_id"]) if purchase else None,
        rating=req.rating, title=req.title.strip(), content=req.content.strip(), verified=purchase is not None,
    )
    review_id = create_document("review", review)
    refresh_product_rating(product_id)
    return ok(review_public(db["review"].find_one({"_id": ObjectId(review_id)})))


@app.post("/api/search/suggestions")
def search_suggestions(req: SuggestionRequest):
    term = req.query.strip()
    if len(term) < 2:
        return ok({"suggestions": []})
    filt = {"status": "active", **catalog.text_search_clause(term, ("name", "tags", "sku"))}
    products = list(db["product"].find(filt).limit(10))
    names = {c["id"]: c["name"] for c in category_refs([p["categories"][0] for p in products if p.get("categories")])}
    suggestions = [
        {
            "id": str(p["_id"]),
            "name": p["name"],
            "slug": p["slug"],
            "image": catalog.primary_image(p),
            "price": p.get("price_floor", p["price"]),
            "category": names.get((p.get("categories") or [None])[0], ""),
            "tags": p.get("tags", []),
        }
        for p in products
    ]
    return ok({"suggestions": suggestions})


# Cart
def purchasable_product(product_id: str) -> dict:
    product = find_or_404("product", product_id, "Product")
    if product.get("status") != "active":
        raise HTTPException(status_code=400, detail="Product is not available")
    return product


def has_stock(product: dict, quantity: int) -> bool:
    if not product.get("track_quantity", True) or product.get("allow_backorder"):
        return True
    return product.get("quantity", 0) >= quantity


def cart_view(cart: Optional[dict]) -> dict:
    items = (cart or {}).get("items", [])
    subtotal = sum(i["price"] * i["quantity"] for i in items)
    return {"items": items, "subtotal": round(subtotal, 2), "count": sum(i["quantity"] for i in items)}


@app.get("/api/cart")
def get_cart(user=Depends(get_current_user)):
    return ok(cart_view(db["cart"].find_one({"user_id": str(user["_id"])})))


@app.post("/api/cart")
def add_to_cart(req: CartAddRequest, user=Depends(get_current_user)):
    product = purchasable_product(req.product_id)
    user_id = str(user["_id"])
    cart = db["cart"].find_one({"user_id": user_id}) or {"user_id": user_id, "items": []}
    items = cart.get("items", [])

    # Merge if same product and variant
    existing = next(
        (i for i in items if i["product_id"] == req.product_id and i.get("variant") == req.variant), None,
    )
    wanted = req.quantity + (existing["quantity"] if existing else 0)
    if not has_stock(product, wanted):
        raise HTTPException(status_code=400, detail="Insufficient stock")
    if existing:
        existing["quantity"] = wanted
    else:
        items.append({
            "product_id": req.product_id,
            "name": product["name"],
            "price": product["price"],
            "quantity": req.quantity,
            "variant": req.variant,
            "image": catalog.primary_image(product),
        })
    db["cart"].update_one(
        {"user_id": user_id},
        {"$set": {"items": items, "updated_at": datetime.now(timezone.utc)}},
        upsert=True,
    )
    return ok(cart_view({"items": items}), message="Product added to cart")


@app.delete("/api/cart")
def remove_from_cart(product_id: Optional[str] = None, variant: Optional[str] = None, user=Depends(get_current_user)):
    if not product_id:
        raise HTTPException(status_code=400, detail="Product ID is required")
    user_id = str(user["_id"])
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        return ok(cart_view(None), message="Product removed from cart")
    items = [i for i in cart.get("items", []) if not (i["product_id"] == product_id and i.get("variant") == variant)]
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": items, "updated_at": datetime.now(timezone.utc)}})
    return ok(cart_view({"items": items}), message="Product removed from cart")


# Wishlist
@app.get("/api/wishlist")
def get_wishlist(user=Depends(get_current_user)):
    wishlist = db["wishlist"].find_one({"user_id": str(user["_id"])}) or {}
    ids = [ObjectId(i) for i in wishlist.get("product_ids", []) if ObjectId.is_valid(i)]
    products = [catalog.product_card(p) for p in db["product"].find({"_id": {"$in": ids}, "status": "active"})]
    return ok({"items": products, "count": len(products)})


@app.post("/api/wishlist")
def add_to_wishlist(req: WishlistAddRequest, user=Depends(get_current_user)):
    purchasable_product(req.product_id)
    db["wishlist"].update_one(
        {"user_id": str(user["_id"])},
        {"$addToSet": {"product_ids": req.product_id}, "$set": {"updated_at": datetime.now(timezone.utc)}},
        upsert=True,
    )
    return ok({"product_id": req.product_id}, message="Product added to wishlist")


@app.delete("/api/wishlist")
def remove_from_wishlist(product_id: Optional[str] = None, user=Depends(get_current_user)):
    if not product_id:
        raise HTTPException(status_code=400, detail="Product ID is required")
    db["wishlist"].update_one({"user_id": str(user["_id"])}, {"$pull": {"product_ids": product_id}})
    return ok({"product_id": product_id}, message="Product removed from wishlist")


# Checkout
BACKORDER_RETRIES = 5


def reserve_stock(product: dict, quantity: int) -> int:
    """Take ``quantity`` out of inventory; returns the units actually taken.

    Backorder products give up whatever is on hand and sell the rest on
    backorder, so their quantity bottoms out at zero.
    """
    if not product.get("track_quantity", True):
        db["product"].update_one({"_id": product["_id"]}, {"$inc": {"sales_count": quantity}})
        return 0
    if not product.get("allow_backorder"):
        result = db["product"].update_one(
            {"_id": product["_id"], "quantity": {"$gte": quantity}},
            {"$inc": {"quantity": -quantity, "sales_count": quantity}},
        )
        if result.matched_count == 0:
            raise orders.StockError(f"Insufficient stock for {product['name']}")
        return quantity
    for _ in range(BACKORDER_RETRIES):
        on_hand = max(product.get("quantity", 0), 0)
        taken = min(quantity, on_hand)
        result = db["product"].update_one(
            {"_id": product["_id"], "quantity": product.get("quantity", 0)},
            {"$inc": {"quantity": -taken, "sales_count": quantity}},
        )
        if result.matched_count:
            return taken
        product = db["product"].find_one({"_id": product["_id"]}) or product
    raise orders.StockError(f"Stock for {product['name']} is changing, please retry")


def release_stock(items: List[dict]):
    for item in items:
        inc = {"sales_count": -item["quantity"]}
        if item.get("stock_reserved"):
            inc["quantity"] = int(item["stock_reserved"])
        db["product"].update_one({"_id": ObjectId(item["product"])}, {"$inc": inc})


def line_item(product: dict, requested: CheckoutItem) -> dict:
    price, sku = product["price"], product["sku"]
    if requested.variant:
        variant = next((v for v in product.get("variants", []) if v.get("name") == requested.variant), None)
        if variant is None:
            raise HTTPException(status_code=400, detail="Product variant not found")
        if variant.get("price") is not None:
            price = variant["price"]
        sku = variant.get("sku") or sku
    return {
        "product": str(product["_id"]),
        "name": product["name"],
        "sku": sku,
        "price": price,
        "quantity": requested.quantity,
        "variant": requested.variant,
        "image": catalog.primary_image(product),
    }


@app.post("/api/checkout", status_code=201)
def checkout(req: CheckoutRequest, user=Depends(get_current_user)):
    if req.payment_method != "cod":
        raise HTTPException(status_code=400, detail="Only cash on delivery is supported")
    user_id = str(user["_id"])
    from_cart = req.items is None
    if from_cart:
        cart = db["cart"].find_one({"user_id": user_id}) or {}
        requested = [CheckoutItem(product_id=i["product_id"], quantity=i["quantity"], variant=i.get("variant"))
                     for i in cart.get("items", [])]
    else:
        requested = req.items
    if not requested:
        raise HTTPException(status_code=400, detail="Cart items are required")

    items: List[dict] = []
    try:
        for entry in requested:
            product = db["product"].find_one({"_id": oid(entry.product_id)})
            if not product or product.get("status") != "active":
                raise HTTPException(status_code=400, detail=f"Product {entry.product_id} not found or inactive")
            item = line_item(product, entry)
            item["stock_reserved"] = reserve_stock(product, entry.quantity)
            items.append(item)

        now = datetime.now(timezone.utc)
        address = req.shipping_address.model_dump()
        order = OrderSchema(
            order_number=orders.next_order_number(),
            customer=CustomerSnapshot(
                id=user_id, name=user["name"], email=user["email"],
                phone=req.phone or user.get("phone"), address=Address(**address),
            ),
            items=[OrderItem(**i) for i in items],
            **orders.calculate_totals(items, content.get_settings(), req.delivery_type.value),
            notes=req.notes,
            delivery_type=req.delivery_type.value,
            delivery_address=Address(**address),
            estimated_delivery=orders.add_business_days(now, ESTIMATED_DELIVERY_DAYS),
            tracking_events=[orders.tracking_event("pending", "Online Store", "Order placed", now)],
        )
        doc = order.model_dump()
        order_id = create_document("order", doc)
    except orders.StockError as e:
        release_stock(items)
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        release_stock(items)
        raise

    if from_cart:
        db["cart"].update_one({"user_id": user_id}, {"$set": {"items": []}})
    logger.info("Order %s placed by %s (%d items)", doc["order_number"], user_id, len(items))
    return ok(
        {"order": {
            "id": order_id,
            "order_number": doc["order_number"],
            "total": doc["total"],
            "status": doc["status"],
            "estimated_delivery": doc["estimated_delivery"],
        }},
        message="Order placed successfully! Your order will be delivered within 5-7 business days.",
    )


# Orders (customer)
@app.get("/api/orders")
def my_orders(request: Request, user=Depends(get_current_user)):
    page, limit = page_params(request, default_limit=10)
    filt = {"customer.id": str(user["_id"])}
    total = db["order"].count_documents(filt)
    docs = db["order"].find(filt).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return ok({"orders": [serialize_doc(o) for o in docs], "pagination": catalog.paginate(total, page, limit)})


@app.get("/api/orders/{order_id}")
def my_order(order_id: str, user=Depends(get_current_user)):
    order = find_or_404("order", order_id, "Order")
    if order["customer"]["id"] != str(user["_id"]):
        raise HTTPException(status_code=403, detail="Access denied")
    return ok({"order": serialize_doc(order)})


# Admin: categories
def category_links(category: dict) -> dict:
    out = serialize_doc(category)
    parent = None
    if category.get("parent"):
        doc = db["category"].find_one({"_id": ObjectId(category["parent"])}, {"name": 1, "slug": 1})
        if doc:
            parent = {"id": str(doc["_id"]), "name": doc["name"], "slug": doc["slug"]}
    children = db["category"].find({"parent": str(category["_id"])}, {"name": 1, "slug": 1, "display_order": 1})
    out["parent"] = parent
    out["children"] = [
        {"id": str(c["_id"]), "name": c["name"], "slug": c["slug"]} for c in catalog.sort_categories(children)
    ]
    return out


def unique_category_slug(slug: str, exclude_id: Optional[ObjectId] = None):
    filt: Dict[str, Any] = {"slug": slug}
    if exclude_id is not None:
        filt["_id"] = {"$ne": exclude_id}
    if db["category"].find_one(filt):
        raise HTTPException(status_code=400, detail="Category with this slug already exists")


def parent_category(parent_id: Optional[str]) -> Optional[dict]:
    if not parent_id:
        return None
    parent = db["category"].find_one({"_id": oid(parent_id)})
    if not parent:
        raise HTTPException(status_code=400, detail="Parent category not found")
    return parent


@app.get("/api/admin/categories")
def admin_list_categories(include_subcategories: bool = False, admin=Depends(require_admin)):
    cats = [category_public(c) for c in db["category"].find({"pending_delete": {"$ne": True}})]
    if include_subcategories:
        return ok({"categories": catalog.build_category_tree(cats)})
    by_id = {c["id"]: c for c in cats}
    flat = []
    for c in catalog.sort_categories(cats):
        parent = by_id.get(c.get("parent"))
        flat.append({**c, "parent": {"id": parent["id"], "name": parent["name"], "slug": parent["slug"]} if parent else None})
    return ok({"categories": flat})


@app.post("/api/admin/categories", status_code=201)
def admin_create_category(req: CategoryCreateRequest, admin=Depends(require_admin)):
    slug = catalog.slugify(req.slug or req.name)
    if not slug:
        raise HTTPException(status_code=400, detail="Category name must contain letters or numbers")
    unique_category_slug(slug)
    parent = parent_category(req.parent)
    level, path = catalog.compute_level_and_path(slug, parent)
    category = CategorySchema(
        name=req.name.strip(), slug=slug, description=req.description, image=req.image,
        parent=str(parent["_id"]) if parent else None, level=level, path=path,
        display_order=req.display_order, is_active=req.is_active, seo=req.seo, filters=req.filters,
    )
    try:
        category_id = create_document("category", category)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Category with this slug already exists")
    logger.info("Created category %s (%s)", slug, category_id)
    return ok(category_links(db["category"].find_one({"_id": ObjectId(category_id)})))


@app.get("/api/admin/categories/{category_id}")
def admin_get_category(category_id: str, admin=Depends(require_admin)):
    return ok(category_links(find_or_404("category", category_id, "Category")))


@app.put("/api/admin/categories/{category_id}")
def admin_update_category(category_id: str, req: CategoryUpdateRequest, admin=Depends(require_admin)):
    category = find_or_404("category", category_id, "Category")
    fields = req.model_fields_set
    updates: Dict[str, Any] = {}
    for key in ("name", "description", "image", "display_order", "is_active"):
        if key in fields and getattr(req, key) is not None:
            updates[key] = getattr(req, key)
    if "name" in updates:
        updates["name"] = updates["name"].strip()
    if req.seo is not None:
        updates["seo"] = req.seo.model_dump()
    if req.filters is not None:
        updates["filters"] = [f.model_dump() for f in req.filters]

    slug = category["slug"]
    if req.slug is not None:
        slug = catalog.slugify(req.slug)
        if not slug:
            raise HTTPException(status_code=400, detail="Slug must contain letters or numbers")
        unique_category_slug(slug, exclude_id=category["_id"])
        updates["slug"] = slug

    parent_id = category.get("parent")
    if "parent" in fields:
        parent_id = req.parent or None
        try:
            catalog.check_reparent(category_id, parent_id, db["category"].find({}, {"parent": 1}))
        except catalog.CategoryCycleError as e:
            raise HTTPException(status_code=400, detail=str(e))
        updates["parent"] = parent_id

    moved = updates.get("parent", category.get("parent")) != category.get("parent") or slug != category["slug"]
    if moved:
        level, path = catalog.compute_level_and_path(slug, parent_category(parent_id))
        updates["level"], updates["path"] = level, path

    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    updates["updated_at"] = datetime.now(timezone.utc)
    try:
        db["category"].update_one({"_id": category["_id"]}, {"$set": updates})
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Category with this slug already exists")

    if moved:
        root = {**category, **updates}
        all_cats = list(db["category"].find({}, {"parent": 1, "slug": 1}))
        for cid, (level, path) in catalog.rebuild_subtree_paths(root, all_cats).items():
            db["category"].update_one({"_id": ObjectId(cid)}, {"$set": {"level": level, "path": path}})
    return ok(category_links(db["category"].find_one({"_id": category["_id"]})))


@app.delete("/api/admin/categories/{category_id}")
def admin_delete_category(category_id: str, cascade: bool = False, admin=Depends(require_admin)):
    find_or_404("category", category_id, "Category")
    all_cats = list(db["category"].find({}, {"parent": 1}))
    ids = catalog.collect_descendant_ids(category_id, all_cats)
    if len(ids) > 1 and not cascade:
        raise HTTPException(status_code=400, detail="Cannot delete category with subcategories")

    object_ids = [ObjectId(i) for i in ids]
    try:
        # Marked categories disappear from the storefront; re-running finishes a partial delete
        db["category"].update_many(
            {"_id": {"$in": object_ids}},
            {"$set": {"pending_delete": True, "updated_at": datetime.now(timezone.utc)}},
        )
        db["product"].update_many({"categories": {"$in": ids}}, {"$pullAll": {"categories": ids}})
        result = db["category"].delete_many({"_id": {"$in": object_ids}})
    except PyMongoError:
        logger.exception("Deleting category %s stopped part-way", category_id)
        raise HTTPException(status_code=500, detail="Failed to delete category, retry to finish")
    logger.info("Deleted category %s and %d descendants", category_id, len(ids) - 1)
    return ok({"deleted_ids": ids, "deleted_count": result.deleted_count},
              message="Category and all subcategories deleted successfully" if len(ids) > 1 else "Category deleted successfully")


# Admin: products
def check_product_refs(slug: str, sku: str, categories: List[str], exclude_id: Optional[ObjectId] = None):
    not_self: Dict[str, Any] = {"_id": {"$ne": exclude_id}} if exclude_id is not None else {}
    if db["product"].find_one({"slug": slug, **not_self}):
        raise HTTPException(status_code=400, detail="Product with this slug already exists")
    if db["product"].find_one({"sku": sku, **not_self}):
        raise HTTPException(status_code=400, detail="Product with this SKU already exists")
    if len(category_refs(categories)) != len(set(categories)):
        raise HTTPException(status_code=400, detail="Unknown category id")


def product_status(value: str) -> str:
    if value not in ("active", "draft", "archived"):
        raise HTTPException(status_code=400, detail="Status must be active, draft or archived")
    return value


@app.get("/api/admin/products")
def admin_list_products(request: Request, admin=Depends(require_admin)):
    page, limit = page_params(request, default_limit=10)
    params = request.query_params
    filt: Dict[str, Any] = {}
    if params.get("search"):
        filt.update(catalog.text_search_clause(params["search"], ("name", "description", "sku")))
    if params.get("category"):
        filt["categories"] = params["category"]
    if params.get("status"):
        filt["status"] = params["status"]
    total = db["product"].count_documents(filt)
    docs = db["product"].find(filt).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return ok({"products": [serialize_doc(p) for p in docs], "pagination": catalog.paginate(total, page, limit)})


@app.post("/api/admin/products", status_code=201)
def admin_create_product(req: ProductCreateRequest, admin=Depends(require_admin)):
    data = req.model_dump()
    data["slug"] = catalog.slugify(req.slug or req.name)
    data["sku"] = req.sku.strip().upper()
    if not data["slug"]:
        raise HTTPException(status_code=400, detail="Product name must contain letters or numbers")
    data["status"] = product_status(req.status)
    check_product_refs(data["slug"], data["sku"], req.categories)
    data["images"] = catalog.normalize_images(data["images"])
    data["price_floor"] = catalog.price_floor(req.price, data["variants"])
    product = ProductSchema(**data)
    try:
        product_id = create_document("product", product)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Product with this slug or SKU already exists")
    logger.info("Created product %s (%s)", data["sku"], product_id)
    return ok(serialize_doc(db["product"].find_one({"_id": ObjectId(product_id)})))


@app.get("/api/admin/products/{product_id}")
def admin_get_product(product_id: str, admin=Depends(require_admin)):
    return ok(serialize_doc(find_or_404("product", product_id, "Product")))


NULLABLE_PRODUCT_FIELDS = {"short_description", "compare_price", "weight", "dimensions"}


@app.put("/api/admin/products/{product_id}")
def admin_update_product(product_id: str, req: ProductUpdateRequest, admin=Depends(require_admin)):
    product = find_or_404("product", product_id, "Product")
    updates = req.model_dump(include=req.model_fields_set)
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    for key, value in updates.items():
        if value is None and key not in NULLABLE_PRODUCT_FIELDS:
            raise HTTPException(status_code=400, detail=f"{key} cannot be null")
    if "slug" in updates:
        updates["slug"] = catalog.slugify(updates["slug"])
        if not updates["slug"]:
            raise HTTPException(status_code=400, detail="Slug must contain letters or numbers")
    if "sku" in updates:
        updates["sku"] = updates["sku"].strip().upper()
    if "status" in updates:
        product_status(updates["status"])
    if "images" in updates:
        updates["images"] = catalog.normalize_images(updates["images"])
    check_product_refs(
        updates.get("slug", product["slug"]), updates.get("sku", product["sku"]),
        updates.get("categories", []), exclude_id=product["_id"],
    )
    merged = {**product, **updates}
    updates["price_floor"] = catalog.price_floor(merged["price"], merged.get("variants", []))
    try:
        ProductSchema(**{k: v for k, v in {**merged, "price_floor": updates["price_floor"]}.items() if k in ProductSchema.model_fields})
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors()[0]["msg"])
    updates["updated_at"] = datetime.now(timezone.utc)
    db["product"].update_one({"_id": product["_id"]}, {"$set": updates})
    return ok(serialize_doc(db["product"].find_one({"_id": product["_id"]})))


@app.delete("/api/admin/products/{product_id}")
def admin_delete_product(product_id: str, admin=Depends(require_admin)):
    result = db["product"].delete_one({"_id": oid(product_id)})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    db["wishlist"].update_many({}, {"$pull": {"product_ids": product_id}})
    db["cart"].update_many({}, {"$pull": {"items": {"product_id": product_id}}})
    return ok({"deleted": True}, message="Product deleted successfully")


# Admin: orders and fulfillment
def parse_action(value: str) -> orders.FulfillmentAction:
    try:
        return orders.FulfillmentAction(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid fulfillment action")


def apply_fulfillment(order: dict, action: orders.FulfillmentAction, data: Optional[dict] = None) -> dict:
    """Run one action against the order as it was read; a concurrent change makes it fail."""
    updates, event = orders.plan_fulfillment(order, action, data)
    result = db["order"].update_one(
        {"_id": order["_id"], "status": order["status"], "version": order.get("version", 0)},
        {"$set": updates, "$push": {"tracking_events": event}, "$inc": {"version": 1}},
    )
    if result.matched_count == 0:
        raise orders.ConcurrentUpdateError(f"Order {order['order_number']} was changed by another request")
    if orders.releases_inventory(order["status"], action):
        release_stock(order.get("items", []))
    logger.info("Order %s: %s -> %s", order["order_number"], order["status"], updates["status"])
    return db["order"].find_one({"_id": order["_id"]})


def run_action(order: dict, action: orders.FulfillmentAction, data: Optional[dict] = None) -> dict:
    try:
        return apply_fulfillment(order, action, data)
    except (orders.InvalidTransition, orders.ShippingLabelError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except orders.ConcurrentUpdateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.get("/api/admin/orders")
def admin_list_orders(request: Request, admin=Depends(require_admin)):
    page, limit = page_params(request)
    params = request.query_params
    filt: Dict[str, Any] = {}
    if params.get("status") and params["status"] != "all":
        filt["status"] = params["status"]
    if params.get("payment_status"):
        filt["payment_status"] = params["payment_status"]
    if params.get("search"):
        filt.update(catalog.text_search_clause(params["search"], ("order_number", "customer.name", "customer.email")))
    total = db["order"].count_documents(filt)
    docs = db["order"].find(filt).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return ok({"orders": [serialize_doc(o) for o in docs], "pagination": catalog.paginate(total, page, limit)})


@app.get("/api/admin/orders/{order_id}")
def admin_get_order(order_id: str, admin=Depends(require_admin)):
    return ok({"order": serialize_doc(find_or_404("order", order_id, "Order"))})


@app.post("/api/admin/orders/{order_id}/actions")
def admin_order_action(order_id: str, req: OrderActionRequest, admin=Depends(require_admin)):
    action = parse_action(req.action)
    order = find_or_404("order", order_id, "Order")
    updated = run_action(order, action, req.data.model_dump(exclude_none=True))
    return ok({"order": serialize_doc(updated)}, message=f"Order {order['order_number']} is now {updated['status']}")


@app.get("/api/admin/orders/{order_id}/payment")
def admin_payment_status(order_id: str, admin=Depends(require_admin)):
    order = find_or_404("order", order_id, "Order")
    return ok({"order": serialize_doc(order), "payment_summary": orders.payment_summary(order)})


@app.put("/api/admin/orders/{order_id}/payment")
def admin_update_payment(order_id: str, req: PaymentUpdateRequest, admin=Depends(require_admin)):
    order = find_or_404("order", order_id, "Order")
    try:
        updates, event = orders.apply_payment_update(
            order, req.payment_status, req.amount_paid, req.payment_notes, req.collected_by,
        )
    except orders.InvalidTransition as e:
        raise HTTPException(status_code=400, detail=str(e))
    result = db["order"].update_one(
        {"_id": order["_id"], "version": order.get("version", 0)},
        {"$set": updates, "$push": {"tracking_events": event}, "$inc": {"version": 1}},
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=409, detail=f"Order {order['order_number']} was changed by another request")
    updated = db["order"].find_one({"_id": order["_id"]})
    return ok({"order": serialize_doc(updated)}, message=f"Payment status updated to {req.payment_status.value}")


@app.get("/api/admin/orders/{order_id}/shipping-label")
def admin_shipping_label_info(order_id: str, admin=Depends(require_admin)):
    order = find_or_404("order", order_id, "Order")
    if not order.get("tracking_number"):
        return ok({
            "has_shipping_label": False,
            "can_generate_label": order["status"] == orders.OrderStatus.PROCESSING.value,
        })
    return ok({
        "has_shipping_label": True,
        "tracking_info": {
            "carrier": order.get("shipping_carrier"),
            "service_type": order.get("shipping_service"),
            "tracking_number": order["tracking_number"],
            "estimated_delivery": order.get("estimated_delivery"),
            "shipped_at": order.get("shipped_at"),
        },
    })


@app.post("/api/admin/orders/{order_id}/shipping-label")
def admin_generate_shipping_label(order_id: str, req: ShippingLabelRequest, admin=Depends(require_admin)):
    order = find_or_404("order", order_id, "Order")
    updated = run_action(order, orders.FulfillmentAction.GENERATE_SHIPPING_LABEL, req.model_dump(exclude_none=True))
    label = {
        "carrier": updated.get("shipping_carrier"),
        "tracking_number": req.tracking_number,
        "origin": req.origin,
        "destination": req.destination,
        "weight": req.weight,
        "dimensions": req.dimensions,
        "service_type": req.service_type,
        "estimated_delivery": updated.get("estimated_delivery"),
        "items": sum(i["quantity"] for i in updated.get("items", [])),
    }
    return ok({"order": serialize_doc(updated), "shipping_label": label},
              message="Shipping label generated successfully")


@app.get("/api/admin/orders/{order_id}/invoice")
def admin_invoice(order_id: str, admin=Depends(require_admin)):
    order = find_or_404("order", order_id, "Order")
    if order.get("payment_method") != "cod":
        raise HTTPException(status_code=400, detail="Invoice generation only available for COD orders")
    return ok({"invoice": orders.invoice_data(order)})


def fulfillment_stats() -> Dict[str, int]:
    counts = Counter(o["status"] for o in db["order"].find({}, {"status": 1}))
    stats = {status.value: counts.get(status.value, 0) for status in orders.OrderStatus}
    stats["total"] = sum(counts.values())
    return stats


@app.get("/api/admin/fulfillment")
def admin_fulfillment_queue(status: Optional[str] = None, fulfillment_required: bool = False, admin=Depends(require_admin)):
    filt: Dict[str, Any] = {}
    if status:
        filt["status"] = status
    if fulfillment_required:
        filt["status"] = {"$in": [orders.OrderStatus.CONFIRMED.value, orders.OrderStatus.PROCESSING.value]}
    # Oldest first for the fulfillment queue
    docs = [serialize_doc(o) for o in db["order"].find(filt).sort("created_at", 1)]
    return ok({"orders": docs, "stats": fulfillment_stats(), "count": len(docs)})


@app.post("/api/admin/fulfillment")
def admin_bulk_fulfillment(req: BulkFulfillmentRequest, admin=Depends(require_admin)):
    action = parse_action(req.action)
    data = req.fulfillment_data.model_dump(exclude_none=True)
    results, errors = [], []
    for order_id in req.order_ids:
        if not ObjectId.is_valid(order_id):
            errors.append({"order_id": order_id, "error": "Invalid id"})
            continue
        order = db["order"].find_one({"_id": ObjectId(order_id)})
        if not order:
            errors.append({"order_id": order_id, "error": "Order not found"})
            continue
        try:
            updated = apply_fulfillment(order, action, data)
        except (orders.InvalidTransition, orders.ShippingLabelError, orders.ConcurrentUpdateError) as e:
            errors.append({"order_id": order_id, "order_number": order["order_number"], "error": str(e)})
            continue
        except PyMongoError:
            logger.exception("Fulfillment action %s failed for order %s", action.value, order_id)
            errors.append({"order_id": order_id, "order_number": order["order_number"],
                           "error": "Failed to process fulfillment action"})
            continue
        results.append({
            "order_id": order_id,
            "order_number": order["order_number"],
            "status": updated["status"],
            "message": f"Order {order['order_number']} fulfillment action completed",
        })
    return ok(
        {"results": results, "errors": errors, "processed": len(results), "failed": len(errors)},
        message=f"Processed {len(results)} orders successfully, {len(errors)} failed",
    )


# Admin: users
def user_role(value: str) -> str:
    if value not in ("user", "admin"):
        raise HTTPException(status_code=400, detail="Role must be user or admin")
    return value


@app.get("/api/admin/users")
def admin_list_users(request: Request, admin=Depends(require_admin)):
    page, limit = page_params(request)
    params = request.query_params
    filt: Dict[str, Any] = {}
    if params.get("search"):
        filt.update(catalog.text_search_clause(params["search"], ("name", "email", "phone")))
    if params.get("role") and params["role"] != "all":
        filt["role"] = params["role"]
    if params.get("status") in ("active", "blocked"):
        filt["is_active"] = params["status"] == "active"
    total = db["user"].count_documents(filt)
    docs = db["user"].find(filt).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return ok({"users": [public_user(u) for u in docs], "pagination": catalog.paginate(total, page, limit)})


@app.post("/api/admin/users", status_code=201)
def admin_create_user(req: UserCreateRequest, admin=Depends(require_admin)):
    if len(req.password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters long")
    created = _create_account(req.name, req.email, req.password, user_role(req.role), req.phone, req.is_active)
    return ok(public_user(created), message="User created successfully")


@app.get("/api/admin/users/{user_id}")
def admin_get_user(user_id: str, admin=Depends(require_admin)):
    return ok(public_user(find_or_404("user", user_id, "User")))


@app.put("/api/admin/users/{user_id}")
def admin_update_user(user_id: str, req: UserUpdateRequest, admin=Depends(require_admin)):
    user = find_or_404("user", user_id, "User")
    is_self = user["_id"] == admin["_id"]
    updates: Dict[str, Any] = {}
    if req.role is not None and req.role != user["role"]:
        if is_self:
            raise HTTPException(status_code=400, detail="Cannot change your own role")
        updates["role"] = user_role(req.role)
    if req.is_active is False and is_self:
        raise HTTPException(status_code=400, detail="Cannot deactivate your own account")
    if req.name:
        updates["name"] = req.name.strip()
    if req.email:
        updates["email"] = req.email.strip().lower()
    if req.phone is not None:
        updates["phone"] = req.phone.strip()
    if req.is_active is not None:
        updates["is_active"] = req.is_active
    if req.password:
        if len(req.password) < 6:
            raise HTTPException(status_code=400, detail="Password must be at least 6 characters long")
        updates["password_hash"] = hash_password(req.password)

    email = updates.get("email", user["email"])
    role = updates.get("role", user["role"])
    if (email, role) != (user["email"], user["role"]) and db["user"].find_one(
        {"email": email, "role": role, "_id": {"$ne": user["_id"]}}
    ):
        raise HTTPException(status_code=400, detail="Email already exists")
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    updates["updated_at"] = datetime.now(timezone.utc)
    db["user"].update_one({"_id": user["_id"]}, {"$set": updates})
    return ok(public_user(db["user"].find_one({"_id": user["_id"]})), message="User updated successfully")


@app.delete("/api/admin/users/{user_id}")
def admin_delete_user(user_id: str, admin=Depends(require_admin)):
    user = find_or_404("user", user_id, "User")
    if user["_id"] == admin["_id"]:
        raise HTTPException(status_code=400, detail="Cannot delete your own account")
    if user.get("role") == "admin":
        raise HTTPException(status_code=400, detail="Cannot delete admin users")
    db["user"].delete_one({"_id": user["_id"]})
    db["cart"].delete_one({"user_id": user_id})
    db["wishlist"].delete_one({"user_id": user_id})
    return ok(message="User deleted successfully")


# Admin: settings and dashboard
@app.get("/api/admin/settings")
def admin_get_settings(admin=Depends(require_admin)):
    return ok(serialize_doc(content.get_settings()))


@app.put("/api/admin/settings")
def admin_update_settings(changes: Dict[str, Any], admin=Depends(require_admin)):
    unknown = set(changes) - set(SettingsSchema.model_fields)
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown settings section: {', '.join(sorted(unknown))}")
    bad = [key for key, value in changes.items() if not isinstance(value, dict)]
    if bad:
        raise HTTPException(status_code=400, detail=f"Settings section must be an object: {', '.join(sorted(bad))}")
    try:
        updated = content.update_settings(changes)
    except (ValidationError, TypeError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid homepage settings: {e}")
    return ok(serialize_doc(updated), message="Settings updated successfully")


@app.get("/api/admin/dashboard/stats")
def admin_dashboard_stats(admin=Depends(require_admin)):
    now = datetime.now(timezone.utc)
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    counted = {"status": {"$nin": [orders.OrderStatus.CANCELLED.value, orders.OrderStatus.REFUNDED.value]}}
    revenue = sum(o.get("total", 0) for o in db["order"].find(counted, {"total": 1}))
    week_revenue = sum(
        o.get("total", 0) for o in db["order"].find({**counted, "created_at": {"$gte": now - timedelta(days=7)}}, {"total": 1})
    )
    recent = db["order"].find({}, {"order_number": 1, "customer.name": 1, "total": 1, "status": 1, "created_at": 1}) \
        .sort("created_at", -1).limit(5)
    return ok({
        "total_revenue": round(revenue, 2),
        "week_revenue": round(week_revenue, 2),
        "total_orders": db["order"].count_documents({}),
        "today_orders": db["order"].count_documents({"created_at": {"$gte": today}}),
        "total_users": db["user"].count_documents({"role": "user"}),
        "total_products": db["product"].count_documents({"status": "active"}),
        "low_stock_products": db["product"].count_documents(
            {"status": "active", "track_quantity": True, "quantity": {"$lte": LOW_STOCK_ALERT}}
        ),
        "orders_by_status": fulfillment_stats(),
        "recent_orders": [serialize_doc(o) for o in recent],
    })


# Homepage content
def products_for_section(section: str, flag: str, sort: List[tuple]) -> List[dict]:
    ids = [ObjectId(i) for i in content.configured_product_ids(content.get_settings(), section) if ObjectId.is_valid(i)]
    filt: Dict[str, Any] = {"status": "active"}
    if ids:
        filt["_id"] = {"$in": ids}
    else:
        filt[flag] = True
    return [catalog.product_card(p) for p in db["product"].find(filt).sort(sort).limit(8)]


@app.get("/api/content/hero-slider")
def hero_slider():
    return ok(content.active_hero_slides(content.get_settings()))


@app.get("/api/content/featured-products")
def featured_products():
    return ok(products_for_section("featured_products", "featured", [("created_at", -1)]))


@app.get("/api/content/trending-products")
def trending_products():
    return ok(products_for_section("trending_products", "trending", [("sales_count", -1), ("rating.average", -1)]))


@app.get("/api/content/flash-deals")
def flash_deals():
    candidates = db["product"].find({
        "status": "active",
        "compare_price": {"$gt": 0},
        "$or": [{"quantity": {"$gt": 0}}, {"track_quantity": False}],
    }).sort([("rating.average", -1), ("sales_count", -1)])
    deals = [catalog.product_card(p) for p in candidates if p["compare_price"] > p["price"]]
    return ok(deals[:8])


@app.get("/api/content/category-showcase")
def category_showcase():
    ids = [ObjectId(i) for i in content.active_showcase_ids(content.get_settings()) if ObjectId.is_valid(i)]
    if ids:
        cats = db["category"].find({"_id": {"$in": ids}, **STOREFRONT_CATEGORY})
    else:
        cats = db["category"].find({"parent": None, **STOREFRONT_CATEGORY})
    return ok([category_public(c) for c in catalog.sort_categories(cats)])


@app.get("/api/content/footer")
def footer():
    settings = content.get_settings()
    return ok({"footer": settings.get("footer", {}), "site": settings.get("site", {})})


@app.post("/api/newsletter/subscribe")
def newsletter_subscribe(req: NewsletterRequest, user=Depends(get_optional_user)):
    email = req.email.lower()
    if db["newsletter"].find_one({"email": email}):
        return ok({"email": email}, message="Already subscribed to newsletter")
    create_document("newsletter", {"email": email, "user_id": str(user["_id"]) if user else None})
    logger.info("Newsletter subscription added")
    return ok({"email": email}, message="Successfully subscribed to newsletter")


# Crawlers
@app.get("/sitemap.xml")
def sitemap():
    products = get_documents("product", {"status": "active"})
    categories = list(db["category"].find(STOREFRONT_CATEGORY, {"slug": 1, "updated_at": 1}))
    return Response(
        content.render_sitemap(products, categories),
        media_type="application/xml",
        headers={"Cache-Control": "public, max-age=3600"},
    )


@app.get("/robots.txt")
def robots():
    return PlainTextResponse(
        content.render_robots(content.get_settings()),
        headers={"Cache-Control": "public, max-age=86400"},
    )


# Seed demo catalog on startup
DEMO_CATEGORIES: List[dict] = [
    {"name": "Electronics", "parent": None},
    {"name": "Mobiles", "parent": "Electronics"},
    {"name": "Laptops", "parent": "Electronics"},
    {"name": "Accessories", "parent": "Electronics"},
    {"name": "Fashion", "parent": None},
]

DEMO_PRODUCTS: List[dict] = [
    {
        "name": "iPhone 14",
        "sku": "APL-IP14",
        "description": "6.1-inch display, A15 chip, dual camera",
        "price": 699,
        "compare_price": 799,
        "category": "Mobiles",
        "image": "https://images.unsplash.com/photo-1670272508182-5b0df6812cee?q=80&w=1200&auto=format&fit=crop",
        "quantity": 50,
        "featured": True,
    },
    {
        "name": "Galaxy S23",
        "sku": "SMS-S23",
        "description": "Dynamic AMOLED, Snapdragon 8 Gen 2",
        "price": 649,
        "category": "Mobiles",
        "image": "https://images.unsplash.com/photo-1670272543330-01a57a97dc97?q=80&w=1200&auto=format&fit=crop",
        "quantity": 70,
        "trending": True,
    },
    {
        "name": "MacBook Air M2",
        "sku": "APL-MBA-M2",
        "description": "13.6-inch Liquid Retina, M2 chip",
        "price": 1099,
        "category": "Laptops",
        "image": "https://images.unsplash.com/photo-1517336714731-489689fd1ca8?q=80&w=1200&auto=format&fit=crop",
        "quantity": 25,
        "featured": True,
    },
    {
        "name": "Sony WH-1000XM5",
        "sku": "SNY-WH1000XM5",
        "description": "Noise-cancelling headphones",
        "price": 349,
        "compare_price": 399,
        "category": "Accessories",
        "image": "https://images.unsplash.com/photo-1518441902110-9d8f13635159?q=80&w=1200&auto=format&fit=crop",
        "quantity": 100,
        "trending": True,
    },
    {
        "name": "Women's Jacket",
        "sku": "ZRA-JKT-M",
        "description": "Stylish winter wear",
        "price": 89,
        "category": "Fashion",
        "image": "https://images.unsplash.com/photo-1544441892-7d2fbe2d8ffd?q=80&w=1200&auto=format&fit=crop",
        "quantity": 12,
    },
]


def seed_demo_catalog():
    if db["category"].count_documents({}) or db["product"].count_documents({}):
        return
    ids: Dict[str, dict] = {}
    for position, cat in enumerate(DEMO_CATEGORIES):
        parent = ids.get(cat["parent"])
        slug = catalog.slugify(cat["name"])
        level, path = catalog.compute_level_and_path(slug, parent)
        doc = CategorySchema(
            name=cat["name"], slug=slug, parent=str(parent["_id"]) if parent else None,
            level=level, path=path, display_order=position,
        )
        ids[cat["name"]] = db["category"].find_one({"_id": ObjectId(create_document("category", doc))})
    for demo in DEMO_PRODUCTS:
        product = ProductSchema(
            name=demo["name"],
            slug=catalog.slugify(demo["name"]),
            description=demo["description"],
            price=demo["price"],
            compare_price=demo.get("compare_price"),
            price_floor=demo["price"],
            sku=demo["sku"],
            quantity=demo["quantity"],
            images=[ProductImage(url=demo["image"], alt=demo["name"], is_primary=True)],
            categories=[str(ids[demo["category"]]["_id"])],
            status="active",
            featured=demo.get("featured", False),
            trending=demo.get("trending", False),
        )
        create_document("product", product)
    logger.info("Seeded %d demo categories and %d products", len(DEMO_CATEGORIES), len(DEMO_PRODUCTS))


@app.on_event("startup")
def startup():
    try:
        ensure_indexes()
        if os.getenv("SEED_DEMO_DATA", "true").lower() == "true":
            seed_demo_catalog()
    except PyMongoError as exc:
        logger.warning("Unable to prepare database on startup: %s", exc)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
