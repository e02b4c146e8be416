import re
import time
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Dict, Any

from fastapi import FastAPI, Depends, HTTPException, Request, Response, Header, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import EmailStr, Field
from pymongo import DESCENDING, ASCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException
from bson import ObjectId

from config import get_settings, configure_logging
from database import (
    get_db, create_document, get_documents, to_public, ensure_object_id, find_by_id, is_object_id, now,
)
from schemas import (
    Address, CamelModel, Coordinates, Currency, OrderStatus, PaymentMethod, PaymentStatus, ProductStatus,
    Review, ShippingMode, SiteSettings, StorefrontStatus,
)
from security import (
    CATALOG_ROLES, create_access_token, decode_access_token, has_any_role, hash_password,
    is_admin, is_seller, verify_password,
)
from ownership import (
    aggregate_seller_order, aggregate_seller_orders, find_seller_storefront,
    populate_order_items, product_belongs_to_seller, ref_id, seller_can_access_order,
    seller_orders_query, seller_product_ids, seller_products_query,
)
from checkout import (
    DEFAULT_PAYMENT_METHOD, PAYMENT_METHODS, REVIEW_STEP, GuestShippingForm, calculate_shipping, next_step,
    validate_step,
)

configure_logging()
logger = logging.getLogger(__name__)

settings = get_settings()

MAX_CART_QUANTITY = 100
MAX_CART_LINES = 50
MAX_RECENT_ITEMS = 20
REVIEWS_PAGE_LIMIT = 50
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# FastAPI app
app = FastAPI(title="KakaMalem Marketplace API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/login", auto_error=False)


# Error rendering: clients always read an ``error`` string
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"success": False, "error": exc.detail}, status_code=exc.status_code,
                        headers=getattr(exc, "headers", None))

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request body"
    if errors:
        first = errors[0]
        field_name = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field_name}: {first.get('msg')}" if field_name else first.get("msg", message)
    return JSONResponse({"success": False, "error": message, "details": jsonable_encoder(errors)},
                        status_code=status.HTTP_400_BAD_REQUEST)


# -----------------
# Utility helpers
# -----------------

def format_slug(value: str) -> str:
    slug = (value or "").lower().replace("+", "plus").replace("&", "and")
    # keep word characters, Persian/Arabic letters, spaces and hyphens
    slug = re.sub(r"[^\w\s\u0600-\u06FF\u0750-\u077F\u08A0-\u08FF\uFB50-\uFDFF\uFE70-\uFEFF-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")

def unique_slug(db: Database, collection: str, base: str, exclude_id: Optional[ObjectId] = None) -> str:
    slug, counter = base, 1
    while True:
        query: Dict[str, Any] = {"slug": slug}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        if not db[collection].find_one(query):
            return slug
        slug = f"{base}-{counter}"
        counter += 1

def user_id(user: dict) -> str:
    return str(user["_id"])

def user_public(user: dict) -> dict:
    return {
        "id": user_id(user),
        "email": user["email"],
        "first_name": user.get("first_name"),
        "last_name": user.get("last_name"),
        "phone": user.get("phone"),
        "roles": user.get("roles", []),
        "wishlist": user.get("wishlist", []),
    }

def storefront_public(doc: dict, include_private: bool = False) -> dict:
    sf = to_public(doc)
    analytics = dict(sf.get("analytics") or {})
    viewers = analytics.pop("viewed_by_users", None)
    if include_private and viewers is not None:
        analytics["viewed_by_users"] = viewers
    sf["analytics"] = analytics
    return sf

def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

def load_site_settings(db: Database) -> SiteSettings:
    doc = db["sitesettings"].find_one({}) or {}
    doc.pop("_id", None)
    return SiteSettings(**{k: v for k, v in doc.items() if k in SiteSettings.model_fields})

def product_unit_price(product: dict) -> float:
    return product.get("sale_price") or product.get("price") or 0

def stock_limited(product: dict) -> bool:
    return bool(product.get("track_quantity")) and not product.get("allow_backorders")

def load_order(db: Database, order_id: str) -> dict:
    order = db["order"].find_one({"_id": ensure_object_id(order_id, "order ID")})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order

def order_public(db: Database, order: dict) -> dict:
    o = to_public(order)
    o["items"] = [dict(i) for i in o.get("items", [])]
    populate_order_items(db, [o])
    return o

def migrate_guest_orders(db: Database, uid: str, email: str) -> int:
    """Link guest orders placed with ``email`` to the account ``uid``."""
    try:
        res = db["order"].update_many(
            {"guest_email": email, "customer": None},
            {"$set": {"customer": uid, "guest_email": None, "updated_at": now()}},
        )
    except PyMongoError:
        logger.exception("Error migrating guest orders for %s", email)
        return 0
    if res.modified_count:
        logger.info("Linked %d guest orders to user %s", res.modified_count, uid)
    return res.modified_count

def set_session_cookie(response: Response, token: str, max_age: int):
    response.set_cookie(
        settings.cookie_name, token, max_age=max_age, httponly=True,
        secure=settings.cookie_secure, samesite="lax", path="/",
    )

def seller_context(db: Database, user: dict):
    uid = user_id(user)
    storefront = find_seller_storefront(db, uid)
    storefront_id = str(storefront["_id"]) if storefront else None
    return uid, storefront, storefront_id


# Dependencies
def get_optional_user(request: Request, token: Optional[str] = Depends(oauth2_scheme),
                      db: Database = Depends(get_db)) -> Optional[dict]:
    token = token or request.cookies.get(settings.cookie_name)
    if not token:
        return None
    try:
        payload = decode_access_token(token)
        uid = payload.get("sub")
        if not uid or not ObjectId.is_valid(uid):
            raise ValueError("No sub")
    except ValueError:
        return None
    return db["user"].find_one({"_id": ObjectId(uid)})

def get_current_user(user: Optional[dict] = Depends(get_optional_user)) -> dict:
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return user

def get_catalog_user(user: dict = Depends(get_current_user)) -> dict:
    if not has_any_role(user, CATALOG_ROLES):
        raise HTTPException(status_code=403, detail="You do not have permission to manage the catalog")
    return user

def get_admin_user(user: dict = Depends(get_current_user)) -> dict:
    if not is_admin(user):
        raise HTTPException(status_code=403, detail="Admin only")
    return user


# Pydantic models
class RegisterRequest(CamelModel):
    email: str = ""
    password: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None

class LoginRequest(CamelModel):
    email: str = ""
    password: str = ""
    stay_logged_in: bool = False

class UserUpdate(CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    password: Optional[str] = Field(None, min_length=8)

class CartAddRequest(CamelModel):
    product_id: str
    quantity: int = Field(1, ge=1, le=MAX_CART_QUANTITY)
    variant_id: Optional[str] = None

class CartUpdateRequest(CamelModel):
    product_id: str
    quantity: int = Field(..., ge=0, le=MAX_CART_QUANTITY)
    variant_id: Optional[str] = None

class CartRemoveRequest(CamelModel):
    product_id: str
    variant_id: Optional[str] = None

class CartMergeRequest(CamelModel):
    items: List[CartAddRequest] = []

class TrackViewRequest(CamelModel):
    product_id: Optional[str] = None

class GuestViewedItem(CamelModel):
    product_id: Optional[str] = None
    viewed_at: Optional[datetime] = None

class MergeRecentlyViewedRequest(CamelModel):
    guest_items: Optional[List[GuestViewedItem]] = None

class WishlistRequest(CamelModel):
    product_id: Optional[str] = None

class ReviewCreate(CamelModel):
    product_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    title: str = Field("", max_length=100)
    comment: str = Field("", max_length=2000)

class ReviewUpdate(CamelModel):
    review_id: Optional[str] = None
    rating: Optional[int] = Field(None, ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: Optional[str] = Field(None, max_length=2000)

class ReviewVoteRequest(CamelModel):
    review_id: Optional[str] = None
    helpful: Optional[bool] = None

class ProductCreate(CamelModel):
    name: str
    slug: Optional[str] = None
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    currency: Currency = "AF"
    sku: Optional[str] = None
    quantity: int = Field(0, ge=0)
    track_quantity: bool = True
    allow_backorders: bool = False
    status: ProductStatus = "published"
    seller: Optional[str] = None
    stores: Optional[List[str]] = None
    categories: List[str] = []
    images: List[str] = []
    display_order: int = 0

class ProductUpdate(CamelModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    currency: Optional[Currency] = None
    sku: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=0)
    track_quantity: Optional[bool] = None
    allow_backorders: Optional[bool] = None
    status: Optional[ProductStatus] = None
    stores: Optional[List[str]] = None
    categories: Optional[List[str]] = None
    images: Optional[List[str]] = None

class CategoryCreate(CamelModel):
    name: str
    slug: Optional[str] = None
    description: Optional[str] = None
    stores: Optional[List[str]] = None
    display_order: int = 0

class ReorderRow(CamelModel):
    id: str = Field(..., min_length=1)
    display_order: int

class ReorderProductsRequest(CamelModel):
    products: Optional[List[ReorderRow]] = None

class ReorderCategoriesRequest(CamelModel):
    categories: Optional[List[ReorderRow]] = None

class OrderLineRequest(CamelModel):
    product: str
    quantity: int = Field(..., ge=1)
    variant: Optional[str] = None

class CreateOrderRequest(CamelModel):
    shipping_address: Optional[Address] = None
    payment_method: Optional[PaymentMethod] = None
    currency: Optional[Currency] = None
    save_address: bool = False
    guest_email: Optional[EmailStr] = None
    items: Optional[List[OrderLineRequest]] = None

class OrderUpdateRequest(CamelModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None

class CreateStorefrontRequest(CamelModel):
    name: str = ""
    slug: str = ""
    description: str = ""
    contact_phone: str = ""

class StorefrontUpdate(CamelModel):
    name: Optional[str] = None
    tagline: Optional[str] = None
    description: Optional[str] = None
    contact_email: Optional[EmailStr] = None
    contact_phone: Optional[str] = None
    status: Optional[StorefrontStatus] = None

class CheckoutValidateRequest(CamelModel):
    step: int
    selected_address: Optional[int] = None
    guest_form: Optional[GuestShippingForm] = None

class SiteSettingsUpdate(CamelModel):
    shipping_mode: Optional[ShippingMode] = None
    shipping_cost: Optional[float] = Field(None, ge=0)
    free_delivery_threshold: Optional[float] = Field(None, ge=0)


# Auth
@app.post("/api/register", status_code=201)
def register(body: RegisterRequest, response: Response, db: Database = Depends(get_db)):
    if not body.email or not body.password or not body.first_name or not body.last_name:
        raise HTTPException(status_code=400, detail="Email, password, first name, and last name are required")
    email = body.email.lower().strip()
    if not EMAIL_RE.match(email):
        raise HTTPException(status_code=400, detail="Invalid email format")
    if len(body.password) < 8:
        raise HTTPException(status_code=400, detail="Password must be at least 8 characters long")
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="Email already registered")
    doc = {
        "email": email,
        "first_name": body.first_name.strip(),
        "last_name": body.last_name.strip(),
        "phone": (body.phone or "").strip() or None,
        "password_hash": hash_password(body.password),
        "roles": ["customer"],
        "addresses": [],
        "cart": [],
        "recently_viewed": [],
        "wishlist": [],
    }
    uid = create_document(db, "user", doc)
    logger.info("User created: %s", uid)
    migrate_guest_orders(db, uid, email)
    token = create_access_token({"sub": uid})
    set_session_cookie(response, token, settings.access_token_expire_minutes * 60)
    user = db["user"].find_one({"_id": ObjectId(uid)})
    return {"success": True, "message": "Registration successful", "token": token, "user": user_public(user)}

@app.post("/api/login")
def login(body: LoginRequest, response: Response, db: Database = Depends(get_db)):
    if not body.email or not body.password:
        raise HTTPException(status_code=400, detail="Email and password are required")
    email = body.email.lower().strip()
    user = db["user"].find_one({"email": email})
    if not user:
        raise HTTPException(status_code=404, detail="No account found with this email")
    if not verify_password(body.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Incorrect email or password")
    migrate_guest_orders(db, user_id(user), email)
    max_age = 60 * 60 * 24 * 7 if body.stay_logged_in else 60 * 60 * 24
    token = create_access_token({"sub": user_id(user)}, expires_delta=timedelta(seconds=max_age))
    set_session_cookie(response, token, max_age)
    return {"success": True, "token": token, "token_type": "bearer", "user": user_public(user)}

@app.post("/api/logout")
def logout(response: Response):
    response.delete_cookie(settings.cookie_name, path="/")
    return {"success": True}


# Users
@app.get("/api/users/me")
def get_me(current_user: dict = Depends(get_current_user)):
    return user_public(current_user)

@app.patch("/api/users/me")
def update_me(body: UserUpdate, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    update: Dict[str, Any] = {k: v.strip() for k, v in body.model_dump(exclude_none=True, exclude={"password"}).items()}
    if body.password is not None:
        update["password_hash"] = hash_password(body.password)
    if not update:
        return user_public(current_user)
    update["updated_at"] = now()
    db["user"].update_one({"_id": current_user["_id"]}, {"$set": update})
    return user_public(db["user"].find_one({"_id": current_user["_id"]}))

@app.get("/api/users/me/addresses")
def list_addresses(current_user: dict = Depends(get_current_user)):
    return {"addresses": current_user.get("addresses", [])}

def _save_addresses(db: Database, user: dict, addresses: List[dict]) -> dict:
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"addresses": addresses, "updated_at": now()}})
    return {"addresses": addresses}

def _with_default(addresses: List[dict], index: int) -> List[dict]:
    if addresses[index].get("is_default"):
        for i, a in enumerate(addresses):
            if i != index:
                a["is_default"] = False
    return addresses

@app.post("/api/users/me/addresses", status_code=201)
def add_address(body: Address, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    addresses = list(current_user.get("addresses", []))
    addresses.append(body.model_dump())
    return _save_addresses(db, current_user, _with_default(addresses, len(addresses) - 1))

@app.patch("/api/users/me/addresses/{index}")
def update_address(index: int, body: Address, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    addresses = list(current_user.get("addresses", []))
    if not 0 <= index < len(addresses):
        raise HTTPException(status_code=404, detail="Address not found")
    addresses[index] = body.model_dump()
    return _save_addresses(db, current_user, _with_default(addresses, index))

@app.delete("/api/users/me/addresses/{index}")
def delete_address(index: int, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    addresses = list(current_user.get("addresses", []))
    if not 0 <= index < len(addresses):
        raise HTTPException(status_code=404, detail="Address not found")
    addresses.pop(index)
    return _save_addresses(db, current_user, addresses)


# Cart
def _cart_response(db: Database, cart: List[dict]) -> dict:
    items = []
    subtotal = 0.0
    for line in cart:
        product = find_by_id(db, "product", line["product_id"])
        item = dict(line)
        if product:
            item["product"] = to_public(product)
            subtotal += product_unit_price(product) * line["quantity"]
        items.append(item)
    return {"items": items, "subtotal": subtotal, "count": sum(i["quantity"] for i in cart)}

def _save_cart(db: Database, user: dict, cart: List[dict]):
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"cart": cart, "updated_at": now()}})

def _same_line(line: dict, product_id: str, variant_id: Optional[str]) -> bool:
    return line.get("product_id") == product_id and line.get("variant_id") == variant_id

@app.get("/api/cart")
def get_cart(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return _cart_response(db, current_user.get("cart", []))

@app.post("/api/cart/add")
def add_to_cart(body: CartAddRequest, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    product = find_by_id(db, "product", body.product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    if product.get("status", "published") != "published":
        raise HTTPException(status_code=400, detail="Product is not available")
    cart = list(current_user.get("cart", []))
    for line in cart:
        if _same_line(line, body.product_id, body.variant_id):
            line["quantity"] = min(line["quantity"] + body.quantity, MAX_CART_QUANTITY)
            break
    else:
        cart.append({"product_id": body.product_id, "quantity": body.quantity,
                     "variant_id": body.variant_id, "added_at": now()})
    _save_cart(db, current_user, cart)
    db["product"].update_one({"_id": product["_id"]}, {"$inc": {"analytics.add_to_cart_count": 1}})
    return {"success": True, **_cart_response(db, cart)}

@app.post("/api/cart/update")
def update_cart(body: CartUpdateRequest, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = list(current_user.get("cart", []))
    for i, line in enumerate(cart):
        if _same_line(line, body.product_id, body.variant_id):
            if body.quantity == 0:
                cart.pop(i)
            else:
                line["quantity"] = body.quantity
            break
    else:
        raise HTTPException(status_code=404, detail="Item not found in cart")
    _save_cart(db, current_user, cart)
    return {"success": True, **_cart_response(db, cart)}

@app.post("/api/cart/remove")
def remove_from_cart(body: CartRemoveRequest, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = [line for line in current_user.get("cart", []) if not _same_line(line, body.product_id, body.variant_id)]
    _save_cart(db, current_user, cart)
    return {"success": True, **_cart_response(db, cart)}

@app.post("/api/cart/clear")
def clear_cart(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    _save_cart(db, current_user, [])
    return {"success": True, "items": [], "subtotal": 0, "count": 0}

@app.post("/api/cart/merge")
def merge_cart(body: CartMergeRequest, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    """Fold the cart a visitor built before logging in into their saved cart."""
    cart = [dict(line) for line in current_user.get("cart", [])]
    if not body.items:
        return {"success": True, "message": "No items to merge", "warnings": [], **_cart_response(db, cart)}
    warnings: List[str] = []
    for guest_line in body.items:
        existing = next((line for line in cart if _same_line(line, guest_line.product_id, guest_line.variant_id)), None)
        quantity = min((existing["quantity"] if existing else 0) + guest_line.quantity, MAX_CART_QUANTITY)
        product = find_by_id(db, "product", guest_line.product_id)
        if not product or product.get("status", "published") != "published":
            continue
        available = product.get("quantity", 0)
        if stock_limited(product) and quantity > available:
            quantity = available
            warnings.append(f"{product.get('name', 'item')}: adjusted to {available} (available stock)")
        if quantity < 1:
            if existing:
                cart.remove(existing)
            continue
        if existing:
            existing["quantity"] = quantity
        else:
            cart.append({"product_id": guest_line.product_id, "quantity": quantity,
                         "variant_id": guest_line.variant_id, "added_at": now()})
    cart = cart[:MAX_CART_LINES]
    _save_cart(db, current_user, cart)
    return {"success": True, "message": "Cart merged successfully", "warnings": warnings, **_cart_response(db, cart)}


# Recently viewed
def _viewed_at(entry: dict) -> datetime:
    return as_utc(entry.get("viewed_at")) or datetime.min.replace(tzinfo=timezone.utc)

def product_summary(product: dict) -> dict:
    return {
        "id": str(product["_id"]),
        "name": product.get("name"),
        "slug": product.get("slug"),
        "price": product.get("price"),
        "sale_price": product.get("sale_price"),
        "currency": product.get("currency"),
        "images": product.get("images", []),
        "average_rating": product.get("average_rating", 0),
        "review_count": product.get("review_count", 0),
        "in_stock": not stock_limited(product) or product.get("quantity", 0) > 0,
    }

@app.post("/api/track-view")
def track_view(body: TrackViewRequest, current_user: Optional[dict] = Depends(get_optional_user), db: Database = Depends(get_db)):
    if not current_user:
        return {"success": True, "message": "Guest users track views on the client"}
    if not body.product_id:
        raise HTTPException(status_code=400, detail="Product ID is required")
    product = find_by_id(db, "product", body.product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    uid = user_id(current_user)
    viewed = [v for v in current_user.get("recently_viewed", []) if ref_id(v.get("product")) != body.product_id]
    viewed = [{"product": body.product_id, "viewed_at": now()}] + viewed
    db["user"].update_one({"_id": current_user["_id"]}, {"$set": {"recently_viewed": viewed[:MAX_RECENT_ITEMS]}})
    db["product"].update_one({"_id": product["_id"]}, {"$inc": {"analytics.view_count": 1}})
    db["product"].update_one(
        {"_id": product["_id"], "viewed_by_users": {"$ne": uid}},
        {"$inc": {"analytics.unique_view_count": 1}, "$push": {"viewed_by_users": uid}},
    )
    return {"success": True, "count": len(viewed[:MAX_RECENT_ITEMS])}

@app.get("/api/recently-viewed")
def get_recently_viewed(limit: int = 10, current_user: Optional[dict] = Depends(get_optional_user),
                        db: Database = Depends(get_db)):
    if not current_user:
        return {"success": True, "data": [], "is_guest": True}
    if not 1 <= limit <= MAX_RECENT_ITEMS:
        raise HTTPException(status_code=400, detail=f"Limit must be between 1 and {MAX_RECENT_ITEMS}")
    entries = [(ref_id(v.get("product")), v.get("viewed_at")) for v in current_user.get("recently_viewed", [])]
    entries = [(pid, viewed_at) for pid, viewed_at in entries if is_object_id(pid)][:limit]
    ids = [ObjectId(pid) for pid, _ in entries]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}})}
    # products deleted since they were viewed drop out
    data = [{**product_summary(products[pid]), "viewed_at": viewed_at} for pid, viewed_at in entries if pid in products]
    return {"success": True, "data": data, "is_guest": False}

@app.post("/api/merge-recently-viewed")
def merge_recently_viewed(body: MergeRecentlyViewedRequest, current_user: Optional[dict] = Depends(get_optional_user),
                          db: Database = Depends(get_db)):
    if not current_user:
        return {"success": True, "message": "No user to merge with (guest mode)", "merged_count": 0, "total_count": 0}
    if body.guest_items is None:
        raise HTTPException(status_code=400, detail="Guest items must be an array")
    existing = list(current_user.get("recently_viewed", []))
    seen = {ref_id(v.get("product")) for v in existing}
    merged = []
    for item in body.guest_items:
        if not item.product_id or not item.viewed_at or item.product_id in seen:
            continue
        if not find_by_id(db, "product", item.product_id):
            logger.debug("Skipping unknown product %s in recently viewed merge", item.product_id)
            continue
        seen.add(item.product_id)
        merged.append({"product": item.product_id, "viewed_at": as_utc(item.viewed_at)})
    combined = sorted(merged + existing, key=_viewed_at, reverse=True)[:MAX_RECENT_ITEMS]
    db["user"].update_one({"_id": current_user["_id"]}, {"$set": {"recently_viewed": combined, "updated_at": now()}})
    return {"success": True, "message": "Recently viewed items merged successfully",
            "merged_count": len(merged), "total_count": len(combined)}


# Wishlist
def _wishlist(db: Database, user: dict) -> List[str]:
    return (db["user"].find_one({"_id": user["_id"]}) or {}).get("wishlist", [])

@app.get("/api/wishlist")
def get_wishlist(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    ids = [ObjectId(pid) for pid in current_user.get("wishlist", []) if is_object_id(pid)]
    return {"success": True, "items": [product_summary(p) for p in db["product"].find({"_id": {"$in": ids}})]}

@app.post("/api/wishlist/add")
def add_to_wishlist(body: WishlistRequest, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    if not body.product_id:
        raise HTTPException(status_code=400, detail="Product ID is required")
    product = find_by_id(db, "product", body.product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    res = db["user"].update_one(
        {"_id": current_user["_id"], "wishlist": {"$ne": body.product_id}},
        {"$push": {"wishlist": body.product_id}},
    )
    if not res.modified_count:
        raise HTTPException(status_code=400, detail="Product already in wishlist")
    db["product"].update_one({"_id": product["_id"]}, {"$inc": {"analytics.wishlist_count": 1}})
    return {"success": True, "wishlist": _wishlist(db, current_user)}

@app.post("/api/wishlist/remove")
def remove_from_wishlist(body: WishlistRequest, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    if not body.product_id:
        raise HTTPException(status_code=400, detail="Product ID is required")
    res = db["user"].update_one({"_id": current_user["_id"], "wishlist": body.product_id},
                                {"$pull": {"wishlist": body.product_id}})
    if res.modified_count and is_object_id(body.product_id):
        db["product"].update_one(
            {"_id": ObjectId(body.product_id), "analytics.wishlist_count": {"$gt": 0}},
            {"$inc": {"analytics.wishlist_count": -1}},
        )
    return {"success": True, "wishlist": _wishlist(db, current_user)}


# Reviews
REVIEW_SORT_FIELDS = {"createdAt": "created_at", "rating": "rating", "helpful": "helpful"}

def refresh_product_rating(db: Database, product_id: str):
    pipeline = [
        {"$match": {"product": product_id, "status": "approved"}},
        {"$group": {"_id": "$product", "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}}
    ]
    agg = list(db["review"].aggregate(pipeline))
    rating, count = (round(agg[0]["avg"], 2), agg[0]["count"]) if agg else (0, 0)
    db["product"].update_one({"_id": ObjectId(product_id)}, {"$set": {"average_rating": rating, "review_count": count}})

def _user_vote(review: dict, uid: Optional[str]) -> Optional[str]:
    if uid is None:
        return None
    if any(v.get("user") == uid for v in review.get("helpful_votes", [])):
        return "helpful"
    if any(v.get("user") == uid for v in review.get("not_helpful_votes", [])):
        return "not-helpful"
    return None

def review_public(review: dict, author: Optional[dict] = None, viewer_id: Optional[str] = None) -> dict:
    r = to_public(review)
    r.pop("helpful_votes", None)
    r.pop("not_helpful_votes", None)
    r["user_vote"] = _user_vote(review, viewer_id)
    if author is not None:
        r["user"] = {"id": user_id(author), "name": f"{author.get('first_name', '')} {author.get('last_name', '')}".strip()}
    return r

def _load_review(db: Database, review_id: Optional[str]) -> dict:
    if not review_id:
        raise HTTPException(status_code=400, detail="Review ID is required")
    review = db["review"].find_one({"_id": ensure_object_id(review_id, "review ID")})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    return review

@app.get("/api/product-reviews")
def product_reviews(product_id: Optional[str] = Query(None, alias="productId"), page: int = 1, limit: int = 10,
                    sort_by: str = Query("createdAt", alias="sortBy"), sort_order: str = Query("desc", alias="sortOrder"),
                    current_user: Optional[dict] = Depends(get_optional_user), db: Database = Depends(get_db)):
    if not product_id:
        raise HTTPException(status_code=400, detail="Product ID is required")
    if page < 1 or not 1 <= limit <= REVIEWS_PAGE_LIMIT:
        raise HTTPException(status_code=400, detail=f"Page must be >= 1 and limit between 1 and {REVIEWS_PAGE_LIMIT}")
    product = find_by_id(db, "product", product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    query = {"product": product_id, "status": "approved"}
    direction = ASCENDING if sort_order == "asc" else DESCENDING
    field = REVIEW_SORT_FIELDS.get(sort_by, "created_at")
    total = db["review"].count_documents(query)
    reviews = list(db["review"].find(query).sort([(field, direction), ("_id", direction)]).skip((page - 1) * limit).limit(limit))
    author_ids = [ObjectId(r["user"]) for r in reviews if is_object_id(r.get("user"))]
    authors = {user_id(u): u for u in db["user"].find({"_id": {"$in": author_ids}})}
    distribution = {str(star): 0 for star in range(1, 6)}
    for row in db["review"].aggregate([{"$match": query}, {"$group": {"_id": "$rating", "count": {"$sum": 1}}}]):
        if str(row["_id"]) in distribution:
            distribution[str(row["_id"])] = row["count"]
    viewer = user_id(current_user) if current_user else None
    return {
        "success": True,
        "reviews": [review_public(r, authors.get(r.get("user")), viewer) for r in reviews],
        "average_rating": product.get("average_rating", 0),
        "review_count": product.get("review_count", 0),
        "rating_distribution": distribution,
        "total_docs": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }

@app.get("/api/user-review")
def user_review(product_id: Optional[str] = Query(None, alias="productId"),
                current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    if not product_id:
        raise HTTPException(status_code=400, detail="Product ID is required")
    uid = user_id(current_user)
    review = db["review"].find_one({"product": product_id, "user": uid})
    return {"success": True, "review": review_public(review, viewer_id=uid) if review else None}

@app.post("/api/create-review", status_code=201)
def create_review(body: ReviewCreate, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    if not body.product_id:
        raise HTTPException(status_code=400, detail="Product ID is required")
    title, comment = body.title.strip(), body.comment.strip()
    if not title:
        raise HTTPException(status_code=400, detail="Review title is required")
    if not comment:
        raise HTTPException(status_code=400, detail="Review comment is required")
    if not find_by_id(db, "product", body.product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    uid = user_id(current_user)
    if db["review"].find_one({"product": body.product_id, "user": uid}):
        raise HTTPException(status_code=400, detail="You have already reviewed this product")
    verified = db["order"].find_one({"customer": uid, "items.product": body.product_id}) is not None
    review = Review(product=body.product_id, user=uid, rating=body.rating, title=title, comment=comment,
                    verified_purchase=verified)
    try:
        rid = create_document(db, "review", review)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="You have already reviewed this product")
    refresh_product_rating(db, body.product_id)
    logger.info("Review %s created for product %s by %s", rid, body.product_id, uid)
    doc = db["review"].find_one({"_id": ObjectId(rid)})
    return {"success": True, "message": "Review submitted successfully!", "review": review_public(doc, viewer_id=uid)}

@app.put("/api/update-review")
def update_review(body: ReviewUpdate, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    review = _load_review(db, body.review_id)
    uid = user_id(current_user)
    if review.get("user") != uid:
        raise HTTPException(status_code=403, detail="You can only update your own reviews")
    update: Dict[str, Any] = {}
    if body.rating is not None:
        update["rating"] = body.rating
    if body.title is not None:
        if not body.title.strip():
            raise HTTPException(status_code=400, detail="Review title is required")
        update["title"] = body.title.strip()
    if body.comment is not None:
        if not body.comment.strip():
            raise HTTPException(status_code=400, detail="Review comment is required")
        update["comment"] = body.comment.strip()
    if not update:
        raise HTTPException(status_code=400, detail="No changes provided")
    update["updated_at"] = now()
    db["review"].update_one({"_id": review["_id"]}, {"$set": update})
    refresh_product_rating(db, review["product"])
    doc = db["review"].find_one({"_id": review["_id"]})
    return {"success": True, "message": "Review updated successfully!", "review": review_public(doc, viewer_id=uid)}

@app.delete("/api/delete-review")
def delete_review(review_id: Optional[str] = Query(None, alias="reviewId"),
                  current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    review = _load_review(db, review_id)
    if review.get("user") != user_id(current_user) and not is_admin(current_user):
        raise HTTPException(status_code=403, detail="You can only delete your own reviews")
    db["review"].delete_one({"_id": review["_id"]})
    refresh_product_rating(db, review["product"])
    return {"success": True, "message": "Review deleted successfully!"}

@app.post("/api/mark-review-helpful")
def mark_review_helpful(body: ReviewVoteRequest, current_user: Optional[dict] = Depends(get_optional_user),
                        db: Database = Depends(get_db)):
    """Toggle the caller's helpful / not-helpful vote; voting one way clears the other."""
    if body.helpful is None:
        raise HTTPException(status_code=400, detail="Helpful value must be a boolean")
    if not current_user:
        raise HTTPException(status_code=401, detail="You must be logged in to vote on reviews")
    review = _load_review(db, body.review_id)
    uid = user_id(current_user)
    chosen, other = ("helpful_votes", "not_helpful_votes") if body.helpful else ("not_helpful_votes", "helpful_votes")
    votes = {key: list(review.get(key, [])) for key in (chosen, other)}
    if any(v.get("user") == uid for v in votes[chosen]):
        votes[chosen] = [v for v in votes[chosen] if v.get("user") != uid]
    else:
        votes[chosen].append({"user": uid, "voted_at": now()})
        votes[other] = [v for v in votes[other] if v.get("user") != uid]
    helpful = len(votes["helpful_votes"])
    db["review"].update_one({"_id": review["_id"]}, {"$set": {**votes, "helpful": helpful}})
    return {"success": True, "helpful": helpful, "user_vote": _user_vote(votes, uid)}


# Categories
@app.get("/api/categories")
def get_categories(store: Optional[str] = None, db: Database = Depends(get_db)):
    query = {"stores": store} if store else {}
    cats = [to_public(c) for c in get_documents(db, "category", query, sort=[("display_order", ASCENDING), ("name", ASCENDING)])]
    return {"categories": cats}

@app.post("/api/categories", status_code=201)
def create_category(body: CategoryCreate, current_user: dict = Depends(get_catalog_user), db: Database = Depends(get_db)):
    doc = body.model_dump()
    if is_seller(current_user):
        _, storefront, storefront_id = seller_context(db, current_user)
        if not storefront:
            raise HTTPException(status_code=400, detail="Create your storefront first")
        doc["stores"] = [storefront_id]
    else:
        doc["stores"] = doc.get("stores") or []
    base = format_slug(body.slug or body.name)
    if not base:
        raise HTTPException(status_code=400, detail="Category name is required")
    doc["slug"] = unique_slug(db, "category", base)
    cid = create_document(db, "category", doc)
    return to_public(db["category"].find_one({"_id": ObjectId(cid)}))


# Products
@app.get("/api/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None, store: Optional[str] = None,
                  seller: Optional[str] = None, page: int = 1, limit: int = 12, db: Database = Depends(get_db)):
    query: Dict[str, Any] = {"status": "published"}
    if q:
        query["$or"] = [
            {"name": {"$regex": re.escape(q), "$options": "i"}},
            {"description": {"$regex": re.escape(q), "$options": "i"}},
        ]
    if category:
        query["categories"] = category
    if store:
        query["stores"] = store
    if seller:
        query["seller"] = seller
    limit = max(1, min(limit, 100))
    skip = max(page - 1, 0) * limit
    total = db["product"].count_documents(query)
    cursor = db["product"].find(query).sort([("display_order", ASCENDING), ("created_at", DESCENDING)])
    items = [to_public(p) for p in cursor.skip(skip).limit(limit)]
    return {"items": items, "page": page, "limit": limit, "total": total}

@app.get("/api/products/{id_or_slug}")
def get_product(id_or_slug: str, db: Database = Depends(get_db)):
    p = find_by_id(db, "product", id_or_slug) or db["product"].find_one({"slug": id_or_slug})
    if not p or p.get("status") != "published":
        raise HTTPException(status_code=404, detail="Product not found")
    return to_public(p)

def _owned_product(db: Database, product_id: str, user: dict) -> dict:
    product = db["product"].find_one({"_id": ensure_object_id(product_id, "product ID")})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    if not is_admin(user):
        uid, _, storefront_id = seller_context(db, user)
        if not product_belongs_to_seller(to_public(product), uid, storefront_id):
            logger.warning("User %s denied access to product %s", uid, product_id)
            raise HTTPException(status_code=403, detail="Product does not belong to you")
    return product

def _check_seller_stores(stores: List[str], storefront_id: Optional[str]):
    if any(s != storefront_id for s in stores):
        raise HTTPException(status_code=403, detail="You can only list products in your own storefront")

@app.post("/api/products", status_code=201)
def create_product(body: ProductCreate, current_user: dict = Depends(get_catalog_user), db: Database = Depends(get_db)):
    doc = body.model_dump()
    if is_seller(current_user):
        uid, _, storefront_id = seller_context(db, current_user)
        doc["seller"] = uid
        if body.stores is None:
            doc["stores"] = [storefront_id] if storefront_id else []
        else:
            _check_seller_stores(body.stores, storefront_id)
    else:
        doc["stores"] = body.stores or []
    base = format_slug(body.slug or body.name)
    if not base:
        raise HTTPException(status_code=400, detail="Product name is required")
    doc["slug"] = unique_slug(db, "product", base)
    doc.update({"total_sold": 0, "analytics": {"view_count": 0, "unique_view_count": 0,
                                                "add_to_cart_count": 0, "wishlist_count": 0}})
    pid = create_document(db, "product", doc)
    return to_public(db["product"].find_one({"_id": ObjectId(pid)}))

@app.patch("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdate, current_user: dict = Depends(get_catalog_user), db: Database = Depends(get_db)):
    product = _owned_product(db, product_id, current_user)
    update = body.model_dump(exclude_none=True)
    if "stores" in update and is_seller(current_user):
        _check_seller_stores(update["stores"], seller_context(db, current_user)[2])
    if "slug" in update:
        update["slug"] = unique_slug(db, "product", format_slug(update["slug"]), exclude_id=product["_id"])
    update["updated_at"] = now()
    db["product"].update_one({"_id": product["_id"]}, {"$set": update})
    return to_public(db["product"].find_one({"_id": product["_id"]}))

@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, current_user: dict = Depends(get_catalog_user), db: Database = Depends(get_db)):
    product = _owned_product(db, product_id, current_user)
    db["product"].delete_one({"_id": product["_id"]})
    return {"success": True}


# Reordering
def _reorder(db: Database, collection: str, rows: List[ReorderRow], owns) -> List[dict]:
    """Apply each row independently so the caller learns which rows failed."""
    results = []
    for row in rows:
        try:
            doc = find_by_id(db, collection, row.id)
            if not doc:
                raise LookupError(f"{collection.capitalize()} {row.id} not found")
            if owns is not None and not owns(to_public(doc)):
                raise PermissionError(f"{collection.capitalize()} {row.id} does not belong to you")
            db[collection].update_one({"_id": doc["_id"]}, {"$set": {"display_order": row.display_order, "updated_at": now()}})
            results.append({"id": row.id, "success": True})
        except (LookupError, PermissionError, PyMongoError) as e:
            logger.warning("Reorder of %s %s failed: %s", collection, row.id, e)
            results.append({"id": row.id, "success": False, "error": str(e)})
    return results

def _reorder_response(results: List[dict], label: str):
    failed = [r for r in results if not r["success"]]
    if failed:
        return JSONResponse(
            {"success": False, "error": failed[0]["error"], "results": results},
            status_code=500,
        )
    return {"success": True, "message": f"{label} reordered successfully", "results": results}

@app.post("/api/reorder-products")
def reorder_products(body: ReorderProductsRequest, current_user: dict = Depends(get_catalog_user), db: Database = Depends(get_db)):
    if not body.products:
        raise HTTPException(status_code=400, detail="Products array is required")
    owns = None
    if is_seller(current_user):
        uid, _, storefront_id = seller_context(db, current_user)
        owns = lambda product: product_belongs_to_seller(product, uid, storefront_id)  # noqa: E731
    return _reorder_response(_reorder(db, "product", body.products, owns), "Products")

@app.post("/api/reorder-categories")
def reorder_categories(body: ReorderCategoriesRequest, current_user: dict = Depends(get_catalog_user), db: Database = Depends(get_db)):
    if not body.categories:
        raise HTTPException(status_code=400, detail="Categories array is required")
    owns = None
    if is_seller(current_user):
        _, _, storefront_id = seller_context(db, current_user)
        owns = lambda category: storefront_id is not None and any(  # noqa: E731
            ref_id(s) == storefront_id for s in category.get("stores") or [])
    return _reorder_response(_reorder(db, "category", body.categories, owns), "Categories")


# Checkout
@app.get("/api/checkout/options")
def checkout_options(db: Database = Depends(get_db)):
    return {
        "payment_methods": PAYMENT_METHODS,
        "default_payment_method": DEFAULT_PAYMENT_METHOD,
        "shipping": load_site_settings(db).model_dump(),
    }

@app.get("/api/checkout/quote")
def checkout_quote(subtotal: float = 0, db: Database = Depends(get_db)):
    site = load_site_settings(db)
    shipping = calculate_shipping(site.shipping_mode, subtotal, site.free_delivery_threshold, site.shipping_cost)
    return {"subtotal": subtotal, "shipping": shipping, "total": subtotal + shipping}

@app.post("/api/checkout/validate")
def checkout_validate(body: CheckoutValidateRequest, current_user: Optional[dict] = Depends(get_optional_user)):
    try:
        errors = validate_step(
            body.step,
            authenticated=current_user is not None,
            addresses=(current_user or {}).get("addresses", []),
            selected_address=body.selected_address,
            guest_form=body.guest_form,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"valid": not errors, "errors": errors, "next_step": next_step(body.step, errors)}


# Orders
def _existing_idempotent_order(db: Database, key: str, uid: Optional[str], guest_email: Optional[str]) -> Optional[dict]:
    query: Dict[str, Any] = {"idempotency_key": key}
    if uid:
        query["customer"] = uid
    else:
        query["guest_email"] = guest_email
    return db["order"].find_one(query)

def new_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{secrets.token_hex(2).upper()}"

def insert_order(db: Database, order_doc: dict, attempts: int = 3) -> str:
    """Insert under a fresh order number, retrying when the unique index reports a clash."""
    for attempt in range(attempts):
        order_doc["order_number"] = new_order_number()
        try:
            return create_document(db, "order", order_doc)
        except DuplicateKeyError:
            if attempt == attempts - 1:
                raise
            logger.warning("Order number %s already taken, retrying", order_doc["order_number"])

def reserve_stock(db: Database, product: dict, qty: int) -> bool:
    """Take ``qty`` units in one conditional write; False when limited stock has run out."""
    query: Dict[str, Any] = {"_id": product["_id"]}
    inc: Dict[str, Any] = {"total_sold": qty}
    if product.get("track_quantity"):
        inc["quantity"] = -qty
        if not product.get("allow_backorders"):
            query["quantity"] = {"$gte": qty}
    return db["product"].update_one(query, {"$inc": inc}).matched_count == 1

def release_stock(db: Database, reserved: List[tuple]):
    for product, qty in reserved:
        inc: Dict[str, Any] = {"total_sold": -qty}
        if product.get("track_quantity"):
            inc["quantity"] = qty
        db["product"].update_one({"_id": product["_id"]}, {"$inc": inc})

def shipping_errors(body: CreateOrderRequest, current_user: Optional[dict]) -> List[str]:
    """Placing the order re-runs the shipping step of the checkout wizard."""
    address = body.shipping_address
    if current_user:
        return validate_step(REVIEW_STEP, authenticated=True, addresses=[address], selected_address=0)
    form = GuestShippingForm(
        email=body.guest_email or "",
        first_name=address.first_name,
        last_name=address.last_name,
        phone=address.phone or "",
        state=address.state,
        country=address.country,
        nearby_landmark=address.nearby_landmark,
        detailed_directions=address.detailed_directions,
        coordinates=address.coordinates or Coordinates(),
    )
    return validate_step(REVIEW_STEP, authenticated=False, guest_form=form)

def _order_created(order: dict) -> dict:
    return {
        "success": True,
        "order": {
            "id": str(order["_id"]),
            "order_number": order["order_number"],
            "total": order["total"],
            "status": order["status"],
        },
    }

@app.post("/api/create-order", status_code=201)
def create_order(body: CreateOrderRequest, response: Response,
                 current_user: Optional[dict] = Depends(get_optional_user),
                 idempotency_key: Optional[str] = Header(None),
                 db: Database = Depends(get_db)):
    if not body.shipping_address or not body.payment_method or not body.currency:
        raise HTTPException(status_code=400, detail="Missing required fields: shippingAddress, paymentMethod, currency")
    if not current_user and not body.guest_email:
        raise HTTPException(status_code=400, detail="Email is required for guest checkout")
    errors = shipping_errors(body, current_user)
    if errors:
        raise HTTPException(status_code=400, detail="; ".join(errors))
    uid = user_id(current_user) if current_user else None
    guest_email = None if current_user else body.guest_email.lower()

    if idempotency_key:
        existing = _existing_idempotent_order(db, idempotency_key, uid, guest_email)
        if existing:
            response.status_code = 200
            return _order_created(existing)

    if body.items:
        lines = [i.model_dump() for i in body.items]
        from_saved_cart = False
    elif current_user:
        lines = [{"product": c["product_id"], "quantity": c["quantity"], "variant": c.get("variant_id")}
                 for c in current_user.get("cart", [])]
        from_saved_cart = True
    else:
        raise HTTPException(status_code=400, detail="Cart items are required for guest checkout")
    if not lines:
        raise HTTPException(status_code=400, detail="Cart is empty")

    # Validate every line before touching stock
    order_items = []
    products: Dict[ObjectId, dict] = {}
    requested: Dict[ObjectId, int] = {}
    subtotal = 0.0
    for line in lines:
        product = find_by_id(db, "product", line["product"])
        if not product or product.get("status", "published") != "published":
            raise HTTPException(status_code=400, detail=f"Product {line['product']} not found")
        qty = line["quantity"]
        products[product["_id"]] = product
        requested[product["_id"]] = requested.get(product["_id"], 0) + qty
        price = product_unit_price(product)
        item_total = price * qty
        subtotal += item_total
        order_items.append({
            "product": str(product["_id"]),
            "product_seller": ref_id(product.get("seller")),
            "variant": line.get("variant"),
            "quantity": qty,
            "price": price,
            "total": item_total,
        })
    # stock is per product, so split lines for one product draw on the same units
    for pid, qty in requested.items():
        if stock_limited(products[pid]) and products[pid].get("quantity", 0) < qty:
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {products[pid].get('name', 'item')}")

    site = load_site_settings(db)
    shipping = calculate_shipping(site.shipping_mode, subtotal, site.free_delivery_threshold, site.shipping_cost)
    order_doc = {
        "customer": uid,
        "guest_email": guest_email,
        "items": order_items,
        "subtotal": subtotal,
        "shipping": shipping,
        "total": subtotal + shipping,
        "shipping_address": body.shipping_address.model_dump(exclude={"label", "is_default"}),
        "payment_method": body.payment_method,
        "payment_status": "pending",
        "status": "pending",
        "currency": body.currency,
        "tracking_number": None,
        "notes": None,
        "idempotency_key": idempotency_key,
    }
    reserved: List[tuple] = []
    try:
        for pid, qty in requested.items():
            if not reserve_stock(db, products[pid], qty):
                release_stock(db, reserved)
                raise HTTPException(status_code=400, detail=f"Insufficient stock for {products[pid].get('name', 'item')}")
            reserved.append((products[pid], qty))
        oid = insert_order(db, order_doc)
    except PyMongoError:
        logger.exception("Create order failed")
        release_stock(db, reserved)
        raise HTTPException(status_code=500, detail="Failed to create order. Please try again.")
    try:
        if current_user and body.save_address and body.shipping_address.label:
            db["user"].update_one({"_id": current_user["_id"]}, {"$push": {"addresses": body.shipping_address.model_dump()}})
        if current_user and from_saved_cart:
            db["user"].update_one({"_id": current_user["_id"]}, {"$set": {"cart": []}})
    except PyMongoError:
        logger.exception("Order %s created but saving address or clearing cart failed", order_doc["order_number"])
    logger.info("Order %s created (%d items, total %s)", order_doc["order_number"], len(order_items), order_doc["total"])
    return _order_created(db["order"].find_one({"_id": ObjectId(oid)}))

@app.get("/api/order-confirmation/{order_id}")
def order_confirmation(order_id: str, current_user: Optional[dict] = Depends(get_optional_user), db: Database = Depends(get_db)):
    order = load_order(db, order_id)
    has_access = bool(current_user and order.get("customer") and ref_id(order["customer"]) == user_id(current_user))
    if not has_access and order.get("guest_email"):
        created = as_utc(order.get("created_at"))
        window = timedelta(hours=settings.guest_confirmation_hours)
        has_access = created is not None and datetime.now(timezone.utc) - created < window
    if not has_access:
        raise HTTPException(status_code=403, detail="Access denied")
    return order_public(db, order)

@app.get("/api/orders/{order_id}")
def order_detail(order_id: str, email: Optional[str] = None,
                 current_user: Optional[dict] = Depends(get_optional_user), db: Database = Depends(get_db)):
    order = order_public(db, load_order(db, order_id))
    if current_user:
        uid, _, storefront_id = seller_context(db, current_user)
        if ref_id(order.get("customer")) == uid or is_admin(current_user):
            return order
        if seller_can_access_order(order, uid, storefront_id):
            order["seller_summary"] = aggregate_seller_order(order, uid, storefront_id).to_dict()
            return order
    guest_email = order.get("guest_email")
    if guest_email and email and email.lower().strip() == guest_email.lower():
        return order
    if not current_user and not email:
        raise HTTPException(status_code=401, detail="Authentication required")
    raise HTTPException(status_code=403, detail="Access denied")

SELLER_ORDER_STATUSES = {"processing", "shipped", "delivered"}
SELLER_PAYMENT_STATUSES = {"pending", "paid"}

@app.patch("/api/orders/{order_id}")
def update_order(order_id: str, body: OrderUpdateRequest, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    order = load_order(db, order_id)
    update = body.model_dump(exclude_none=True)
    if not update:
        raise HTTPException(status_code=400, detail="No changes provided")
    if not is_admin(current_user):
        uid, _, storefront_id = seller_context(db, current_user)
        populated = order_public(db, order)
        if not has_any_role(current_user, CATALOG_ROLES) or not seller_can_access_order(populated, uid, storefront_id):
            raise HTTPException(status_code=403, detail="You do not have permission to update this order")
        if "status" in update:
            if order.get("status") == "cancelled":
                raise HTTPException(status_code=400, detail="Cancelled orders cannot be updated")
            if update["status"] not in SELLER_ORDER_STATUSES:
                raise HTTPException(status_code=403, detail=f"Sellers cannot set status to {update['status']}")
        if "payment_status" in update:
            if order.get("payment_status") in ("failed", "refunded"):
                raise HTTPException(status_code=400, detail="Payment status can no longer be changed")
            if update["payment_status"] not in SELLER_PAYMENT_STATUSES:
                raise HTTPException(status_code=403, detail=f"Sellers cannot set payment status to {update['payment_status']}")
    update["updated_at"] = now()
    db["order"].update_one({"_id": order["_id"]}, {"$set": update})
    logger.info("Order %s updated by %s: %s", order.get("order_number"), user_id(current_user), sorted(body.model_dump(exclude_none=True)))
    return order_public(db, db["order"].find_one({"_id": order["_id"]}))

@app.get("/api/user-orders")
def user_orders(limit: int = 100, page: int = 1, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    query = {"customer": user_id(current_user)}
    limit = max(1, min(limit, 100))
    total = db["order"].count_documents(query)
    cursor = db["order"].find(query).sort([("created_at", DESCENDING)]).skip(max(page - 1, 0) * limit).limit(limit)
    docs = [order_public(db, o) for o in cursor]
    return {"docs": docs, "total_docs": total, "page": page, "limit": limit}


# Storefronts
@app.post("/api/create-storefront")
def create_storefront(body: CreateStorefrontRequest, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    slug = format_slug(body.slug)
    if not body.name.strip() or not slug:
        raise HTTPException(status_code=400, detail="Store name and address are required")
    uid = user_id(current_user)
    if db["storefront"].find_one({"seller": uid}):
        raise HTTPException(status_code=400, detail="You already have a storefront")
    if db["storefront"].find_one({"slug": slug}):
        raise HTTPException(status_code=400, detail="This store address is already taken")
    doc = {
        "name": body.name.strip(),
        "slug": slug,
        "description": body.description,
        "contact_phone": body.contact_phone,
        "seller": uid,
        "status": "active",
        "analytics": {"total_views": 0, "unique_visitors": 0, "viewed_by_users": []},
    }
    try:
        sid = create_document(db, "storefront", doc)
        if "storefront_owner" not in current_user.get("roles", []):
            db["user"].update_one({"_id": current_user["_id"]}, {"$addToSet": {"roles": "storefront_owner"}})
    except PyMongoError:
        logger.exception("Error creating storefront for %s", uid)
        raise HTTPException(status_code=500, detail="Failed to create storefront")
    logger.info("Storefront %s created for user %s", slug, uid)
    storefront = db["storefront"].find_one({"_id": ObjectId(sid)})
    return {"success": True, "storefront": storefront_public(storefront, include_private=True),
            "message": "Your storefront was created successfully"}

def _visible_storefront(db: Database, slug: str, user: Optional[dict]) -> dict:
    storefront = db["storefront"].find_one({"slug": slug})
    if not storefront:
        raise HTTPException(status_code=404, detail="Storefront not found")
    owner = user is not None and storefront.get("seller") == user_id(user)
    if storefront.get("status") != "active" and not owner and not is_admin(user):
        raise HTTPException(status_code=404, detail="Storefront not found")
    return storefront

def record_storefront_view(db: Database, storefront: dict, user: Optional[dict]):
    try:
        db["storefront"].update_one({"_id": storefront["_id"]}, {"$inc": {"analytics.total_views": 1}})
        if user is not None:
            uid = user_id(user)
            db["storefront"].update_one(
                {"_id": storefront["_id"], "analytics.viewed_by_users": {"$ne": uid}},
                {"$inc": {"analytics.unique_visitors": 1}, "$push": {"analytics.viewed_by_users": uid}},
            )
    except PyMongoError:
        logger.exception("Failed to record view for storefront %s", storefront.get("slug"))

@app.get("/api/storefronts/{slug}")
def get_storefront(slug: str, current_user: Optional[dict] = Depends(get_optional_user), db: Database = Depends(get_db)):
    storefront = _visible_storefront(db, slug, current_user)
    record_storefront_view(db, storefront, current_user)
    owner = current_user is not None and storefront.get("seller") == user_id(current_user)
    return storefront_public(db["storefront"].find_one({"_id": storefront["_id"]}), include_private=owner)

@app.get("/api/storefronts/{slug}/products")
def get_storefront_products(slug: str, page: int = 1, limit: int = 24,
                            current_user: Optional[dict] = Depends(get_optional_user), db: Database = Depends(get_db)):
    storefront = _visible_storefront(db, slug, current_user)
    query = {"status": "published", "stores": str(storefront["_id"])}
    limit = max(1, min(limit, 100))
    total = db["product"].count_documents(query)
    cursor = db["product"].find(query).sort([("display_order", ASCENDING), ("created_at", DESCENDING)])
    items = [to_public(p) for p in cursor.skip(max(page - 1, 0) * limit).limit(limit)]
    return {"items": items, "page": page, "limit": limit, "total": total}

@app.patch("/api/storefronts/{slug}")
def update_storefront(slug: str, body: StorefrontUpdate, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    storefront = db["storefront"].find_one({"slug": slug})
    if not storefront:
        raise HTTPException(status_code=404, detail="Storefront not found")
    if storefront.get("seller") != user_id(current_user) and not is_admin(current_user):
        raise HTTPException(status_code=403, detail="You can only update your own storefront")
    update = body.model_dump(exclude_none=True)
    if "status" in update and not is_admin(current_user):
        raise HTTPException(status_code=403, detail="Only admins can change storefront status")
    if update:
        update["updated_at"] = now()
        db["storefront"].update_one({"_id": storefront["_id"]}, {"$set": update})
    return storefront_public(db["storefront"].find_one({"_id": storefront["_id"]}), include_private=True)


# Seller dashboard
def _seller_orders(db: Database, uid: str, storefront_id: Optional[str], extra: Optional[Dict[str, Any]] = None) -> List[dict]:
    """Orders with at least one item belonging to the seller, newest first, products populated."""
    query = seller_orders_query(uid, seller_product_ids(db, uid, storefront_id))
    if extra:
        query = {"$and": [query, extra]}
    orders = [to_public(o) for o in db["order"].find(query).sort([("created_at", DESCENDING)])]
    populate_order_items(db, orders)
    return [o for o in orders if seller_can_access_order(o, uid, storefront_id)]

def _storefront_card(storefront: Optional[dict]) -> Optional[dict]:
    if not storefront:
        return None
    return {"id": str(storefront["_id"]), "name": storefront["name"], "slug": storefront["slug"],
            "status": storefront.get("status")}

def _order_row(order: dict, uid: str, storefront_id: Optional[str]) -> dict:
    summary = aggregate_seller_order(order, uid, storefront_id)
    return {
        "id": order["id"],
        "order_number": order.get("order_number"),
        "status": order.get("status"),
        "payment_status": order.get("payment_status"),
        "created_at": order.get("created_at"),
        "customer": order.get("customer"),
        "guest_email": order.get("guest_email"),
        "seller_total": summary.total,
        "seller_item_count": summary.item_count,
        "seller_quantity": summary.quantity,
        "seller_items": summary.items,
    }

@app.get("/api/dashboard/overview")
def dashboard_overview(current_user: dict = Depends(get_catalog_user), db: Database = Depends(get_db)):
    uid, storefront, storefront_id = seller_context(db, current_user)
    product_count = db["product"].count_documents(seller_products_query(uid, storefront_id))
    orders = _seller_orders(db, uid, storefront_id)
    totals = aggregate_seller_orders(orders, uid, storefront_id)
    return {
        "has_storefront": storefront is not None,
        "storefront": _storefront_card(storefront),
        "product_count": product_count,
        "order_count": totals["order_count"],
        "revenue": totals["revenue"],
        "recent_orders": [_order_row(o, uid, storefront_id) for o in orders[:5]],
    }

@app.get("/api/dashboard/orders")
def dashboard_orders(status_filter: Optional[OrderStatus] = Query(None, alias="status"), payment_status: Optional[PaymentStatus] = None,
                     page: int = 1, limit: int = 10,
                     current_user: dict = Depends(get_catalog_user), db: Database = Depends(get_db)):
    uid, _, storefront_id = seller_context(db, current_user)
    extra: Dict[str, Any] = {}
    if status_filter:
        extra["status"] = status_filter
    if payment_status:
        extra["payment_status"] = payment_status
    orders = _seller_orders(db, uid, storefront_id, extra or None)
    limit = max(1, min(limit, 100))
    page = max(page, 1)
    page_orders = orders[(page - 1) * limit: page * limit]
    return {
        "docs": [_order_row(o, uid, storefront_id) for o in page_orders],
        "total_docs": len(orders),
        "page": page,
        "limit": limit,
        "total_pages": (len(orders) + limit - 1) // limit,
    }

@app.get("/api/dashboard/analytics")
def dashboard_analytics(current_user: dict = Depends(get_catalog_user), db: Database = Depends(get_db)):
    uid, storefront, storefront_id = seller_context(db, current_user)
    products = list(db["product"].find(seller_products_query(uid, storefront_id)))
    orders = _seller_orders(db, uid, storefront_id)
    totals = aggregate_seller_orders(orders, uid, storefront_id)
    by_status: Dict[str, int] = {}
    for o in orders:
        by_status[o.get("status", "pending")] = by_status.get(o.get("status", "pending"), 0) + 1
    analytics = [p.get("analytics") or {} for p in products]
    sf_analytics = (storefront or {}).get("analytics") or {}
    return {
        "revenue": totals["revenue"],
        "items_sold": totals["quantity"],
        "order_count": totals["order_count"],
        "orders_by_status": by_status,
        "product_count": len(products),
        "product_views": sum(a.get("view_count", 0) for a in analytics),
        "unique_product_views": sum(a.get("unique_view_count", 0) for a in analytics),
        "add_to_carts": sum(a.get("add_to_cart_count", 0) for a in analytics),
        "wishlisted": sum(a.get("wishlist_count", 0) for a in analytics),
        "total_sold": sum(p.get("total_sold", 0) for p in products),
        "storefront_views": sf_analytics.get("total_views", 0),
        "storefront_unique_visitors": sf_analytics.get("unique_visitors", 0),
        "recent_orders": [_order_row(o, uid, storefront_id) for o in orders[:10]],
    }


# Site settings
@app.get("/api/site-settings")
def get_site_settings(db: Database = Depends(get_db)):
    return load_site_settings(db).model_dump()

@app.put("/api/site-settings")
def update_site_settings(body: SiteSettingsUpdate, current_user: dict = Depends(get_admin_user), db: Database = Depends(get_db)):
    merged = load_site_settings(db).model_copy(update=body.model_dump(exclude_none=True))
    db["sitesettings"].update_one({}, {"$set": merged.model_dump()}, upsert=True)
    return merged.model_dump()


# Health + test
@app.get("/")
def root():
    return {"message": "KakaMalem Marketplace API running"}

@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database_url": "✅ Set" if settings.database_url else "❌ Not Set",
        "database_name": settings.database_name,
        "collections": []
    }
    try:
        response["collections"] = db.list_collection_names()[:10]
    except PyMongoError as e:
        response["error"] = str(e)[:120]
    return response

@app.get('/seed/init')
def seed(db: Database = Depends(get_db)):
    # development only: creates a known admin login
    if not settings.seed_enabled:
        raise HTTPException(status_code=404, detail="Not Found")
    if not db['user'].find_one({'email': 'admin@example.com'}):
        create_document(db, 'user', {
            'email': 'admin@example.com',
            'first_name': 'Admin',
            'last_name': 'KakaMalem',
            'password_hash': hash_password('Admin@123'),
            'roles': ['admin'],
            'addresses': [],
            'cart': [],
            'recently_viewed': [],
        })
    if not db['sitesettings'].find_one({}):
        db['sitesettings'].insert_one(SiteSettings().model_dump())
    categories = [
        {'name': 'Electronics', 'slug': 'electronics', 'description': 'Devices and gadgets'},
        {'name': 'Fashion', 'slug': 'fashion', 'description': 'Clothing and accessories'},
        {'name': 'Home', 'slug': 'home', 'description': 'Home and kitchen'},
    ]
    for i, c in enumerate(categories):
        if not db['category'].find_one({'slug': c['slug']}):
            create_document(db, 'category', {**c, 'stores': [], 'display_order': i})
    return {'ok': True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
