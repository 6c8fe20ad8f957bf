import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional, List, Dict, Any, Literal, Tuple

from fastapi import FastAPI, HTTPException, Depends, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from . import chat, events, knowledge, mcp
from .auth import get_current_admin, get_current_user, get_optional_user, hash_password, seed_admin, token_for, verify_password
from .catalog import icontains, rating_summary
from .config import Config
from .database import create_document, doc_to_public, ensure_indexes, get_db, paginate, to_object_id, utcnow
from .events import EventBus, get_event_bus
from .payments import build_upi_link, exchange_rate, order_totals, usd_to_inr
from .schemas import (
    Order as OrderSchema,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Product as ProductSchema,
    Profile as ProfileSchema,
    Review as ReviewSchema,
    Role,
    ShippingAddress,
)

logging.basicConfig(level=Config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

# ----------------------------------------------------------------------------
# App Setup
# ----------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes(get_db())
        seed_data(get_db())
    except Exception:
        logger.exception("Index setup or seeding failed on startup")
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat.router)
app.include_router(knowledge.router)
app.include_router(mcp.router)
app.include_router(events.router)


def find_by_id(db: Database, collection: str, raw_id: str, extra: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    oid = to_object_id(raw_id)
    if oid is None:
        return None
    return db[collection].find_one({"_id": oid, **(extra or {})})


def pagination(default_size: int):
    """Page parameters for listings. Clients send either ``pageSize`` or ``page_size``."""
    def params(
        page: int = Query(1, ge=1),
        page_size: Optional[int] = Query(None, ge=1, le=100),
        page_size_alias: Optional[int] = Query(None, ge=1, le=100, alias="pageSize"),
    ) -> Tuple[int, int]:
        return page, page_size_alias or page_size or default_size
    return params


# ----------------------------------------------------------------------------
# Models (request bodies)
# ----------------------------------------------------------------------------

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


class RegisterRequest(BaseModel):
    full_name: str
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProductCreateRequest(BaseModel):
    title: str
    description: Optional[str] = None
    price_usd: float = Field(..., ge=0)
    price_inr: Optional[float] = Field(None, ge=0)
    category: str
    brand: Optional[str] = None
    stock: int = Field(0, ge=0)
    sku: str
    tags: List[str] = []
    features: List[str] = []
    image_url: Optional[str] = None
    images: List[str] = []
    is_new: bool = False
    is_trending: bool = False
    is_featured: bool = False


class ProductUpdateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    price_usd: Optional[float] = Field(None, ge=0)
    price_inr: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    brand: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    sku: Optional[str] = None
    tags: Optional[List[str]] = None
    features: Optional[List[str]] = None
    image_url: Optional[str] = None
    images: Optional[List[str]] = None
    is_active: Optional[bool] = None
    is_new: Optional[bool] = None
    is_trending: Optional[bool] = None
    is_featured: Optional[bool] = None


class CheckoutItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class CheckoutRequest(BaseModel):
    items: List[CheckoutItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    notes: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class OrderStatusRequest(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = None


class PaymentStatusRequest(BaseModel):
    payment_status: PaymentStatus
    reference: Optional[str] = None


class ReviewRequest(BaseModel):
    product_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class ProfileUpdateRequest(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[dict] = None
    avatar_url: Optional[str] = None
    role: Optional[Role] = None


# ----------------------------------------------------------------------------
# Auth Endpoints
# ----------------------------------------------------------------------------

@app.post("/api/auth/register", response_model=TokenResponse)
def register(body: RegisterRequest, db: Database = Depends(get_db)):
    profile = ProfileSchema(
        email=body.email,
        full_name=body.full_name,
        role="user",
        password_hash=hash_password(body.password),
    )
    try:
        uid = create_document(db, "profile", profile.model_dump())
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    created = db["profile"].find_one({"_id": to_object_id(uid)})
    return TokenResponse(access_token=token_for(created), user=doc_to_public(created))


@app.post("/api/auth/login", response_model=TokenResponse)
def login(body: LoginRequest, db: Database = Depends(get_db)):
    user = db["profile"].find_one({"email": body.email})
    if not user or not user.get("password_hash") or not verify_password(body.password, user["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return TokenResponse(access_token=token_for(user), user=doc_to_public(user))


@app.get("/api/auth/me")
def me(current=Depends(get_current_user)):
    return doc_to_public(current)


# ----------------------------------------------------------------------------
# Product Endpoints
# ----------------------------------------------------------------------------

PRODUCT_SORT_FIELDS = {
    "created_at": "created_at",
    "price": "price_inr",
    "rating": "rating.average",
    "title": "title",
}


@app.get("/api/products")
async def list_products(
    search: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    brand: Optional[str] = Query(None),
    min_price: Optional[float] = Query(None),
    max_price: Optional[float] = Query(None),
    featured: Optional[bool] = Query(None),
    trending: Optional[bool] = Query(None),
    new: Optional[bool] = Query(None),
    sort_by: str = Query("created_at", description="created_at|price|rating|title"),
    sort_order: Literal["asc", "desc"] = Query("desc"),
    paging: Tuple[int, int] = Depends(pagination(12)),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {"is_active": True}
    if search:
        query["$or"] = [
            {"title": icontains(search)},
            {"description": icontains(search)},
            {"brand": icontains(search)},
            {"tags": icontains(search)},
        ]
    if category:
        query["category"] = category
    if brand:
        query["brand"] = brand
    if min_price is not None or max_price is not None:
        query["price_inr"] = {}
        if min_price is not None:
            query["price_inr"]["$gte"] = min_price
        if max_price is not None:
            query["price_inr"]["$lte"] = max_price
    if featured:
        query["is_featured"] = True
    if trending:
        query["is_trending"] = True
    if new:
        query["is_new"] = True

    field = PRODUCT_SORT_FIELDS.get(sort_by, "created_at")
    direction = 1 if sort_order == "asc" else -1
    try:
        result, categories = await asyncio.gather(
            paginate(db, "product", query, *paging, sort=[(field, direction)]),
            run_in_threadpool(db["product"].distinct, "category", {"is_active": True}),
        )
        result["categories"] = categories
    except Exception:
        logger.exception("Failed to list products")
        raise HTTPException(status_code=500, detail="Failed to fetch products")
    return result


@app.get("/api/products/category/{category}")
async def list_category(category: str, paging: Tuple[int, int] = Depends(pagination(12)), db: Database = Depends(get_db)):
    try:
        result = await paginate(db, "product", {"category": category, "is_active": True}, *paging, sort=[("created_at", -1)])
    except Exception:
        logger.exception("Failed to list category %s", category)
        raise HTTPException(status_code=500, detail="Failed to fetch category products")
    result["category"] = category
    return result


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    doc = find_by_id(db, "product", product_id, {"is_active": True})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return doc_to_public(doc)


# ----------------------------------------------------------------------------
# Admin: Product Management
# ----------------------------------------------------------------------------

@app.get("/api/admin/products")
async def admin_list_products(
    search: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    status: Optional[Literal["active", "inactive"]] = Query(None),
    paging: Tuple[int, int] = Depends(pagination(10)),
    db: Database = Depends(get_db),
    user=Depends(get_current_admin),
):
    query: Dict[str, Any] = {}
    if search:
        query["$or"] = [{"title": icontains(search)}, {"brand": icontains(search)}, {"sku": icontains(search)}]
    if category:
        query["category"] = category
    if status:
        query["is_active"] = status == "active"
    try:
        return await paginate(db, "product", query, *paging, sort=[("created_at", -1)])
    except Exception:
        logger.exception("Failed to list admin products")
        raise HTTPException(status_code=500, detail="Failed to fetch products")


@app.post("/api/admin/products")
def admin_create_product(body: ProductCreateRequest, db: Database = Depends(get_db), bus: EventBus = Depends(get_event_bus), user=Depends(get_current_admin)):
    data = body.model_dump()
    if data["price_inr"] is None:
        data["price_inr"] = usd_to_inr(body.price_usd)
    product = ProductSchema(**data)
    try:
        pid = create_document(db, "product", product.model_dump())
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="SKU already exists")
    bus.broadcast("products.updated", {"id": pid, "action": "created"})
    return {"id": pid}


@app.put("/api/admin/products/{product_id}")
def admin_update_product(product_id: str, body: ProductUpdateRequest, db: Database = Depends(get_db), bus: EventBus = Depends(get_event_bus), user=Depends(get_current_admin)):
    oid = to_object_id(product_id)
    if oid is None:
        raise HTTPException(status_code=404, detail="Product not found")
    update = {k: v for k, v in body.model_dump().items() if v is not None}
    update["updated_at"] = utcnow()
    try:
        res = db["product"].update_one({"_id": oid}, {"$set": update})
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="SKU already exists")
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    bus.broadcast("products.updated", {"id": product_id, "action": "updated"})
    return {"updated": True}


@app.delete("/api/admin/products/{product_id}")
def admin_delete_product(product_id: str, db: Database = Depends(get_db), bus: EventBus = Depends(get_event_bus), user=Depends(get_current_admin)):
    # products are never removed, only hidden from the storefront
    oid = to_object_id(product_id)
    res = db["product"].update_one({"_id": oid}, {"$set": {"is_active": False, "updated_at": utcnow()}}) if oid else None
    if res is None or res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    bus.broadcast("products.updated", {"id": product_id, "action": "deactivated"})
    return {"deactivated": True}


# ----------------------------------------------------------------------------
# Orders (Checkout & Tracking)
# ----------------------------------------------------------------------------

@app.post("/api/orders")
def create_order(body: CheckoutRequest, db: Database = Depends(get_db), bus: EventBus = Depends(get_event_bus), current=Depends(get_optional_user)):
    rate = exchange_rate()
    items: List[OrderItem] = []
    subtotal = 0.0
    for line in body.items:
        p = find_by_id(db, "product", line.product_id, {"is_active": True})
        if not p:
            raise HTTPException(status_code=404, detail=f"Product {line.product_id} not found")
        if p.get("stock", 0) < line.quantity:
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {p.get('title')}. Available: {p.get('stock', 0)}")
        price_inr = float(p.get("price_inr") if p.get("price_inr") is not None else usd_to_inr(p.get("price_usd", 0), rate))
        subtotal += price_inr * line.quantity
        items.append(OrderItem(
            product_id=str(p["_id"]),
            title=p.get("title"),
            sku=p.get("sku"),
            price_inr=price_inr,
            price_usd=float(p.get("price_usd", 0)),
            quantity=line.quantity,
            image=p.get("image_url") or (p.get("images") or [None])[0],
        ))
        # TODO: decide whether fulfilment should decrement stock; orders leave it untouched for now

    order = OrderSchema(
        user_id=str(current["_id"]) if current else None,
        items=items,
        shipping_address=body.shipping_address,
        notes=body.notes,
        **order_totals(subtotal, rate),
    )
    oid = create_document(db, "order", order.model_dump())
    bus.broadcast("orders.updated", {"id": oid, "action": "created"})
    return {"id": oid, "total": order.total.model_dump(), "status": order.status, "payment_status": order.payment_status}


@app.get("/api/orders")
async def list_orders(paging: Tuple[int, int] = Depends(pagination(10)), db: Database = Depends(get_db), current=Depends(get_current_user)):
    try:
        return await paginate(db, "order", {"user_id": str(current["_id"])}, *paging, sort=[("created_at", -1)])
    except Exception:
        logger.exception("Failed to list orders")
        raise HTTPException(status_code=500, detail="Failed to fetch orders")


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, db: Database = Depends(get_db), current=Depends(get_current_user)):
    doc = find_by_id(db, "order", order_id)
    if not doc or (current.get("role") != "admin" and doc.get("user_id") != str(current["_id"])):
        raise HTTPException(status_code=404, detail="Order not found")
    return doc_to_public(doc)


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, body: CancelRequest, db: Database = Depends(get_db), bus: EventBus = Depends(get_event_bus), current=Depends(get_current_user)):
    doc = find_by_id(db, "order", order_id, {"user_id": str(current["_id"])})
    if not doc:
        raise HTTPException(status_code=404, detail="Order not found")
    if doc.get("status") == "delivered":
        raise HTTPException(status_code=400, detail="Cannot cancel delivered order")
    if doc.get("status") == "cancelled":
        raise HTTPException(status_code=400, detail="Order already cancelled")
    db["order"].update_one(
        {"_id": doc["_id"]},
        {"$set": {"status": "cancelled", "cancellation_reason": body.reason or "Customer request", "updated_at": utcnow()}},
    )
    bus.broadcast("orders.updated", {"id": order_id, "action": "cancelled"})
    return {"cancelled": True}


@app.post("/api/orders/{order_id}/review")
def review_ordered_product(order_id: str, body: ReviewRequest, db: Database = Depends(get_db), bus: EventBus = Depends(get_event_bus), current=Depends(get_current_user)):
    uid = str(current["_id"])
    order = find_by_id(db, "order", order_id, {"user_id": uid, "status": "delivered"})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found or not delivered")
    if not any(item.get("product_id") == body.product_id for item in order.get("items", [])):
        raise HTTPException(status_code=400, detail="Product not found in this order")
    product = find_by_id(db, "product", body.product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")

    reviews = list(product.get("reviews") or [])
    for i, existing in enumerate(reviews):
        if existing.get("user_id") == uid:
            reviews[i] = {**existing, "rating": body.rating, "comment": body.comment or ""}
            break
    else:
        review = ReviewSchema(
            user_id=uid,
            name=current.get("full_name") or current.get("email"),
            rating=body.rating,
            comment=body.comment or "",
            created_at=utcnow(),
        )
        reviews.append(review.model_dump())

    rating = rating_summary(reviews)
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"reviews": reviews, "rating": rating, "updated_at": utcnow()}})
    bus.broadcast("products.updated", {"id": body.product_id, "action": "reviewed"})
    return {"success": True, "rating": rating}


@app.get("/api/orders/{order_id}/upi")
def order_upi_link(order_id: str, db: Database = Depends(get_db)):
    if not Config.UPI_VPA:
        raise HTTPException(status_code=503, detail="UPI payments are not configured")
    doc = find_by_id(db, "order", order_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Order not found")
    amount = (doc.get("total") or {}).get("inr", 0)
    customer = (doc.get("shipping_address") or {}).get("name", "")
    note = f"Payment for Order {order_id}" + (f" - {customer}" if customer else "")
    link = build_upi_link(Config.UPI_VPA, Config.UPI_PAYEE_NAME, amount, note, order_id)
    return {"upi_link": link, "amount_inr": amount, "payee": Config.UPI_VPA}


@app.get("/api/admin/orders")
async def admin_orders(
    status: Optional[OrderStatus] = Query(None),
    paging: Tuple[int, int] = Depends(pagination(10)),
    db: Database = Depends(get_db),
    user=Depends(get_current_admin),
):
    query: Dict[str, Any] = {"status": status} if status else {}
    try:
        return await paginate(db, "order", query, *paging, sort=[("created_at", -1)])
    except Exception:
        logger.exception("Failed to list admin orders")
        raise HTTPException(status_code=500, detail="Failed to fetch orders")


@app.put("/api/admin/orders/{order_id}/status")
def admin_update_order_status(order_id: str, body: OrderStatusRequest, db: Database = Depends(get_db), bus: EventBus = Depends(get_event_bus), user=Depends(get_current_admin)):
    update: Dict[str, Any] = {"status": body.status, "updated_at": utcnow()}
    if body.tracking_number:
        update["tracking_number"] = body.tracking_number
    if body.status == "delivered":
        update["delivered_at"] = utcnow()
    oid = to_object_id(order_id)
    res = db["order"].update_one({"_id": oid}, {"$set": update}) if oid else None
    if res is None or res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Order not found")
    bus.broadcast("orders.updated", {"id": order_id, "status": body.status})
    return {"updated": True, "status": body.status}


@app.put("/api/admin/orders/{order_id}/payment")
def admin_update_payment_status(order_id: str, body: PaymentStatusRequest, db: Database = Depends(get_db), bus: EventBus = Depends(get_event_bus), user=Depends(get_current_admin)):
    update: Dict[str, Any] = {"payment_status": body.payment_status, "updated_at": utcnow()}
    if body.reference:
        update["payment_reference"] = body.reference
    if body.payment_status == "completed":
        update["paid_at"] = utcnow()
    oid = to_object_id(order_id)
    res = db["order"].update_one({"_id": oid}, {"$set": update}) if oid else None
    if res is None or res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Order not found")
    bus.broadcast("orders.updated", {"id": order_id, "payment_status": body.payment_status})
    return {"updated": True, "payment_status": body.payment_status}


# ----------------------------------------------------------------------------
# Profiles
# ----------------------------------------------------------------------------

@app.get("/api/profiles")
async def list_profiles(
    search: Optional[str] = Query(None),
    role: Optional[Role] = Query(None),
    paging: Tuple[int, int] = Depends(pagination(10)),
    db: Database = Depends(get_db),
    user=Depends(get_current_admin),
):
    query: Dict[str, Any] = {}
    if role:
        query["role"] = role
    if search:
        query["$or"] = [{"full_name": icontains(search)}, {"email": icontains(search)}]
    try:
        return await paginate(db, "profile", query, *paging, sort=[("created_at", -1)])
    except Exception:
        logger.exception("Failed to list profiles")
        raise HTTPException(status_code=500, detail="Failed to fetch users")


@app.patch("/api/profiles/{profile_id}")
def update_profile(profile_id: str, body: ProfileUpdateRequest, db: Database = Depends(get_db), bus: EventBus = Depends(get_event_bus), current=Depends(get_current_user)):
    is_admin = current.get("role") == "admin"
    if not is_admin and str(current["_id"]) != profile_id:
        raise HTTPException(status_code=403, detail="Not allowed to edit this profile")
    update = {k: v for k, v in body.model_dump().items() if v is not None}
    if "role" in update and not is_admin:
        raise HTTPException(status_code=403, detail="Only admins can change roles")
    update["updated_at"] = utcnow()
    oid = to_object_id(profile_id)
    res = db["profile"].update_one({"_id": oid}, {"$set": update}) if oid else None
    if res is None or res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Profile not found")
    bus.broadcast("profiles.updated", {"id": profile_id})
    return {"ok": True}


# ----------------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------------

@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/api/health")
def health():
    return {"ok": True}


# ----------------------------------------------------------------------------
# Seed Data (idempotent) and Startup Hook
# ----------------------------------------------------------------------------

SAMPLE_PRODUCTS = [
    {
        "title": "Wireless Earbuds",
        "description": "True wireless earbuds with 24h battery and low-latency mode.",
        "price_usd": 17.99,
        "price_inr": 1499,
        "category": "electronics",
        "brand": "Sonic",
        "stock": 45,
        "sku": "ELECTRONICS-EARBUDS-001",
        "tags": ["earbuds", "earphones", "audio", "wireless"],
        "rating": {"average": 4.3, "count": 128},
        "is_trending": True,
    },
    {
        "title": "Noise-Canceling Headphones",
        "description": "Over-ear wireless headphones with active noise cancellation.",
        "price_usd": 89.0,
        "price_inr": 7399,
        "category": "electronics",
        "brand": "Sonic",
        "stock": 12,
        "sku": "ELECTRONICS-HEADPHONES-002",
        "tags": ["headphones", "audio", "anc"],
        "rating": {"average": 4.6, "count": 64},
        "is_featured": True,
    },
    {
        "title": "Cotton Crew T-Shirt",
        "description": "Breathable organic cotton tee for everyday wear.",
        "price_usd": 8.99,
        "price_inr": 749,
        "category": "clothing",
        "brand": "Basics",
        "stock": 200,
        "sku": "CLOTHING-TEE-001",
        "tags": ["tshirt", "cotton"],
        "rating": {"average": 4.1, "count": 310},
        "is_new": True,
    },
    {
        "title": "Running Shoes",
        "description": "Breathable, lightweight running shoes for everyday training.",
        "price_usd": 42.0,
        "price_inr": 3499,
        "category": "shoes",
        "brand": "Stride",
        "stock": 0,
        "sku": "SHOES-RUNNER-001",
        "tags": ["shoes", "sport", "running"],
        "rating": {"average": 4.4, "count": 87},
    },
    {
        "title": "Minimal Backpack",
        "description": "Water-resistant backpack for daily carry.",
        "price_usd": 24.0,
        "price_inr": 1999,
        "category": "accessories",
        "brand": "Carry",
        "stock": 55,
        "sku": "ACCESSORIES-BACKPACK-001",
        "tags": ["bag", "travel"],
        "rating": {"average": 4.2, "count": 41},
        "is_trending": True,
    },
]


def seed_products(db: Database) -> int:
    if db["product"].count_documents({}) > 0:
        return 0
    for p in SAMPLE_PRODUCTS:
        create_document(db, "product", ProductSchema(**p).model_dump())
    logger.info("Seeded %d sample products", len(SAMPLE_PRODUCTS))
    return len(SAMPLE_PRODUCTS)


def seed_data(db: Database) -> Dict[str, Any]:
    return {"admin": seed_admin(db), "products": seed_products(db)}


@app.post("/api/admin/seed")
def trigger_seed(db: Database = Depends(get_db), user=Depends(get_current_admin)):
    return {"seeded": True, **seed_data(db)}


if __name__ == "__main__":
    import os

    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
