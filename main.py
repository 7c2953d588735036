import json
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

import jwt
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from fastapi.staticfiles import StaticFiles
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

import settings
from cart import CartService
from catalog import ProductCatalog
from database import PRODUCTS, USERS, create_document, doc_to_public, ensure_indexes, get_db, store_call
from errors import NotFoundError, ShopError, ValidationError
from images import ImageStore
from log import add_context, clear_context, configure_logging, get_logger
from notifications import Mailer, OrderNotifier, build_mailer
from receipts import ReceiptRenderer
from reviews import ReviewService
from schemas import Product as ProductSchema, User as UserSchema
from text_filter import TextFilter, build_text_filter
from transactions import TransactionService

logger = get_logger(__name__)

# ----------------------------------------------------------------------------
# App and Security Setup
# ----------------------------------------------------------------------------

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

app = FastAPI(title="Maison Parfum API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False), name="uploads")


@app.middleware("http")
async def log_context_middleware(request, call_next):
    clear_context()
    add_context(method=request.method, path=request.url.path)
    return await call_next(request)


@app.exception_handler(ShopError)
async def shop_error_handler(request, exc: ShopError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc: RequestValidationError):
    fields = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    error = ValidationError("Invalid request", {"fields": fields})
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


HTTP_ERROR_CODES = {
    400: "validation_error",
    401: "unauthorized",
    403: "permission_denied",
    404: "not_found",
    405: "method_not_allowed",
}


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request, exc: StarletteHTTPException):
    content = {"error": HTTP_ERROR_CODES.get(exc.status_code, "error"), "message": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


# ----------------------------------------------------------------------------
# Collaborators
# ----------------------------------------------------------------------------

@lru_cache
def get_text_filter() -> TextFilter:
    return build_text_filter()


@lru_cache
def get_mailer() -> Mailer:
    return build_mailer()


@lru_cache
def get_receipt_renderer() -> ReceiptRenderer:
    return ReceiptRenderer()


@lru_cache
def get_image_store() -> ImageStore:
    return ImageStore()


def get_catalog(db: Database = Depends(get_db), images: ImageStore = Depends(get_image_store)) -> ProductCatalog:
    return ProductCatalog(db, images)


def get_carts(db: Database = Depends(get_db)) -> CartService:
    return CartService(db)


def get_reviews(db: Database = Depends(get_db), text_filter: TextFilter = Depends(get_text_filter)) -> ReviewService:
    return ReviewService(db, text_filter)


def get_notifier(
    mailer: Mailer = Depends(get_mailer),
    renderer: ReceiptRenderer = Depends(get_receipt_renderer),
) -> OrderNotifier:
    return OrderNotifier(mailer, renderer)


def get_transactions(
    db: Database = Depends(get_db),
    notifier: OrderNotifier = Depends(get_notifier),
    carts: CartService = Depends(get_carts),
) -> TransactionService:
    return TransactionService(db, notifier, carts)


# ----------------------------------------------------------------------------
# Utilities
# ----------------------------------------------------------------------------

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(subject: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = subject.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def get_current_user(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid authentication")
    uid = payload.get("sub")
    try:
        user = db[USERS].find_one({"_id": ObjectId(uid)}) if uid else None
    except (InvalidId, TypeError):
        user = None
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_current_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def public_list(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [doc_to_public(d) for d in docs]


# ----------------------------------------------------------------------------
# Models (request bodies)
# ----------------------------------------------------------------------------

class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class AddCartRequest(BaseModel):
    product_id: str
    quantity: int = 1


class UpdateQuantityRequest(BaseModel):
    quantity: int


class OrderLineRequest(BaseModel):
    product_id: str
    name: str
    price: float
    quantity: int
    image: Optional[str] = None
    collection: Optional[str] = None


class CreateTransactionRequest(BaseModel):
    email: Optional[EmailStr] = None
    items: List[OrderLineRequest] = []
    subtotal: float = 0
    tax: float = 0
    shipping: float = 0
    total: float = 0


class StatusRequest(BaseModel):
    status: str


class CreateReviewRequest(BaseModel):
    name: Optional[str] = None
    rating: Optional[int] = None
    title: Optional[str] = None
    comment: Optional[str] = None


class UpdateReviewRequest(BaseModel):
    rating: Optional[int] = None
    title: Optional[str] = None
    comment: Optional[str] = None


# ----------------------------------------------------------------------------
# Auth Endpoints
# ----------------------------------------------------------------------------

@app.post("/auth/register", response_model=TokenResponse)
def register(body: RegisterRequest, db: Database = Depends(get_db)):
    existing = db[USERS].find_one({"email": body.email})
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")
    user = UserSchema(
        name=body.name,
        email=body.email,
        password_hash=hash_password(body.password),
        is_admin=False,
        is_active=True,
    )
    with store_call("register user", "Email already registered"):
        doc = create_document(db, USERS, user.model_dump())
    token = create_access_token({"sub": str(doc["_id"])})
    return TokenResponse(access_token=token)


@app.post("/auth/login", response_model=TokenResponse)
def login(body: LoginRequest, db: Database = Depends(get_db)):
    user = db[USERS].find_one({"email": body.email})
    if not user or not user.get("password_hash") or not verify_password(body.password, user["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token({"sub": str(user["_id"])})
    return TokenResponse(access_token=token)


@app.get("/me")
def me(current=Depends(get_current_user)):
    return doc_to_public(current)


# ----------------------------------------------------------------------------
# Product Endpoints
# ----------------------------------------------------------------------------

@app.get("/api/products")
def list_products(
    collection: Optional[str] = Query(None),
    q: Optional[str] = Query(None),
    sort: Optional[str] = Query(None, description="price_asc|price_desc|rating_desc|rating_asc|newest"),
    catalog: ProductCatalog = Depends(get_catalog),
):
    return public_list(catalog.list_products(collection=collection, q=q, sort=sort))


@app.get("/api/products/collections")
def list_collections(catalog: ProductCatalog = Depends(get_catalog)):
    return catalog.collections()


@app.get("/api/products/collection/{collection}")
def list_products_by_collection(collection: str, catalog: ProductCatalog = Depends(get_catalog)):
    return public_list(catalog.list_by_collection(collection))


@app.get("/api/products/{product_id}")
def get_product(product_id: str, catalog: ProductCatalog = Depends(get_catalog)):
    return doc_to_public(catalog.get(product_id))


@app.post("/api/products", status_code=201)
def create_product(
    name: str = Form(...),
    price: float = Form(...),
    collection: str = Form(...),
    description: str = Form(""),
    notes: str = Form(""),
    category: str = Form("fragrance"),
    volume: str = Form("100ml"),
    stock: int = Form(0),
    images: Optional[List[UploadFile]] = File(None),
    user=Depends(get_current_admin),
    catalog: ProductCatalog = Depends(get_catalog),
):
    data = {
        "name": name,
        "price": price,
        "collection": collection,
        "description": description,
        "notes": notes,
        "category": category,
        "volume": volume,
        "stock": stock,
    }
    return doc_to_public(catalog.create(data, images))


@app.put("/api/products/{product_id}")
def update_product(
    product_id: str,
    name: Optional[str] = Form(None),
    price: Optional[float] = Form(None),
    collection: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    notes: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    volume: Optional[str] = Form(None),
    stock: Optional[int] = Form(None),
    existing_images: Optional[str] = Form(None, description="JSON list of current images to keep"),
    images: Optional[List[UploadFile]] = File(None),
    user=Depends(get_current_admin),
    catalog: ProductCatalog = Depends(get_catalog),
):
    keep = None
    if existing_images is not None:
        try:
            keep = json.loads(existing_images)
        except ValueError:
            raise ValidationError("existing_images must be a JSON list")
        if not isinstance(keep, list):
            raise ValidationError("existing_images must be a JSON list")
    changes = {
        "name": name,
        "price": price,
        "collection": collection,
        "description": description,
        "notes": notes,
        "category": category,
        "volume": volume,
        "stock": stock,
    }
    return doc_to_public(catalog.update(product_id, changes, existing_images=keep, uploads=images))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user=Depends(get_current_admin), catalog: ProductCatalog = Depends(get_catalog)):
    catalog.delete(product_id)
    return {"message": "Product deleted successfully"}


# ----------------------------------------------------------------------------
# Cart
# ----------------------------------------------------------------------------

@app.get("/api/cart")
def get_cart(current=Depends(get_current_user), carts: CartService = Depends(get_carts)):
    return carts.view(str(current["_id"]))


@app.post("/api/cart")
def add_to_cart(body: AddCartRequest, current=Depends(get_current_user), carts: CartService = Depends(get_carts)):
    uid = str(current["_id"])
    cart = carts.add_item(uid, body.product_id, body.quantity)
    return {"message": "Item added to cart", **carts.view(uid, cart)}


@app.patch("/api/cart/items/{product_id}")
def update_cart_item(
    product_id: str,
    body: UpdateQuantityRequest,
    current=Depends(get_current_user),
    carts: CartService = Depends(get_carts),
):
    uid = str(current["_id"])
    cart = carts.update_quantity(uid, product_id, body.quantity)
    return {"message": "Quantity updated", **carts.view(uid, cart)}


@app.delete("/api/cart/items/{product_id}")
def remove_from_cart(product_id: str, current=Depends(get_current_user), carts: CartService = Depends(get_carts)):
    uid = str(current["_id"])
    cart = carts.remove_item(uid, product_id)
    return {"message": "Item removed from cart", **carts.view(uid, cart)}


@app.delete("/api/cart")
def clear_cart(current=Depends(get_current_user), carts: CartService = Depends(get_carts)):
    uid = str(current["_id"])
    cart = carts.clear(uid)
    return {"message": "Cart cleared", **carts.view(uid, cart)}


# ----------------------------------------------------------------------------
# Transactions (Checkout & Order Ledger)
# ----------------------------------------------------------------------------

@app.post("/api/transactions", status_code=201)
def create_transaction(
    body: CreateTransactionRequest,
    current=Depends(get_current_user),
    transactions: TransactionService = Depends(get_transactions),
):
    doc = transactions.create(
        str(current["_id"]),
        body.email or current.get("email"),
        [item.model_dump() for item in body.items],
        subtotal=body.subtotal,
        tax=body.tax,
        shipping=body.shipping,
        total=body.total,
    )
    return {"message": "Transaction created successfully", "transaction": doc_to_public(doc)}


@app.post("/api/transactions/checkout", status_code=201)
def checkout(current=Depends(get_current_user), transactions: TransactionService = Depends(get_transactions)):
    doc = transactions.checkout(str(current["_id"]), current.get("email"))
    return {"message": "Order placed", "transaction": doc_to_public(doc)}


@app.get("/api/transactions/mine")
def my_transactions(current=Depends(get_current_user), transactions: TransactionService = Depends(get_transactions)):
    docs = transactions.list_for_user(str(current["_id"]))
    return {"transactions": public_list(docs), "count": len(docs)}


@app.get("/api/transactions/email/{email}")
def transactions_by_email(
    email: str,
    user=Depends(get_current_admin),
    transactions: TransactionService = Depends(get_transactions),
):
    docs = transactions.list_by_email(email)
    return {"transactions": public_list(docs), "count": len(docs)}


@app.get("/api/transactions")
def all_transactions(
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    user=Depends(get_current_admin),
    transactions: TransactionService = Depends(get_transactions),
):
    docs = transactions.list_all(status=status, limit=limit)
    return {"transactions": public_list(docs), "count": len(docs)}


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: str,
    current=Depends(get_current_user),
    transactions: TransactionService = Depends(get_transactions),
):
    doc = transactions.get(transaction_id)
    if doc.get("user_id") != str(current["_id"]) and not current.get("is_admin"):
        raise NotFoundError("Transaction not found")
    return doc_to_public(doc)


@app.patch("/api/transactions/{transaction_id}")
def update_transaction_status(
    transaction_id: str,
    body: StatusRequest,
    user=Depends(get_current_admin),
    transactions: TransactionService = Depends(get_transactions),
):
    result = transactions.update_status(transaction_id, body.status)
    message = "Transaction updated successfully"
    if result.notification is not None and not result.notification.sent:
        message = "Transaction updated, but the customer email was not sent"
    return {
        "message": message,
        "transaction": doc_to_public(result.transaction),
        "previous_status": result.previous_status,
        "notification": result.notification.model_dump() if result.notification else None,
    }


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: str,
    user=Depends(get_current_admin),
    transactions: TransactionService = Depends(get_transactions),
):
    doc = transactions.delete(transaction_id)
    return {"message": "Transaction deleted successfully", "transaction": doc_to_public(doc)}


# ----------------------------------------------------------------------------
# Reviews
# ----------------------------------------------------------------------------

@app.get("/api/reviews/all")
def all_reviews(user=Depends(get_current_admin), reviews: ReviewService = Depends(get_reviews)):
    return public_list(reviews.list_all())


@app.get("/api/reviews/product/{product_id}")
def product_reviews(
    product_id: str,
    sort_by: str = Query("newest"),
    filter_rating: Optional[int] = Query(None),
    reviews: ReviewService = Depends(get_reviews),
):
    return public_list(reviews.list_for_product(product_id, sort_by=sort_by, filter_rating=filter_rating))


@app.get("/api/reviews/product/{product_id}/stats")
def product_review_stats(product_id: str, reviews: ReviewService = Depends(get_reviews)):
    return reviews.rating_stats(product_id)


@app.get("/api/reviews/product/{product_id}/check")
def check_review(product_id: str, current=Depends(get_current_user), reviews: ReviewService = Depends(get_reviews)):
    result = reviews.check(str(current["_id"]), product_id)
    result["review"] = doc_to_public(result["review"])
    return result


@app.post("/api/reviews/product/{product_id}", status_code=201)
def create_review(
    product_id: str,
    body: CreateReviewRequest,
    current=Depends(get_current_user),
    reviews: ReviewService = Depends(get_reviews),
):
    review = reviews.create(
        product_id,
        str(current["_id"]),
        body.name or current.get("name"),
        body.rating,
        body.title,
        body.comment,
    )
    text_filtered = review.pop("text_filtered", False)
    return {
        "message": "Review added successfully",
        "review": doc_to_public(review),
        "text_filtered": text_filtered,
    }


@app.get("/api/reviews/{review_id}")
def get_review(review_id: str, reviews: ReviewService = Depends(get_reviews)):
    return doc_to_public(reviews.get(review_id))


@app.put("/api/reviews/{review_id}")
def update_review(
    review_id: str,
    body: UpdateReviewRequest,
    current=Depends(get_current_user),
    reviews: ReviewService = Depends(get_reviews),
):
    review = reviews.update(review_id, str(current["_id"]), rating=body.rating, title=body.title, comment=body.comment)
    text_filtered = review.pop("text_filtered", False)
    return {
        "message": "Review updated successfully",
        "review": doc_to_public(review),
        "text_filtered": text_filtered,
    }


@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, current=Depends(get_current_user), reviews: ReviewService = Depends(get_reviews)):
    reviews.delete(review_id, str(current["_id"]), is_admin=bool(current.get("is_admin")))
    return {"message": "Review deleted successfully"}


# ----------------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------------

@app.get("/")
def root():
    return {"message": "Maison Parfum API running"}


@app.get("/health")
def health(db: Database = Depends(get_db)):
    try:
        collections = db.list_collection_names()
        return {"backend": "ok", "db": "ok", "collections": collections}
    except Exception as e:
        return {"backend": "ok", "db": f"error: {e}"}


# ----------------------------------------------------------------------------
# Seed Data (idempotent) and Startup Hook
# ----------------------------------------------------------------------------

SAMPLE_PRODUCTS = [
    {
        "name": "Oud Nocturne",
        "description": "A smoky evening oud softened with rose and saffron.",
        "notes": "Oud, Damask rose, saffron, amber",
        "price": 145.0,
        "collection": "Noir",
        "stock": 40,
        "volume": "100ml",
    },
    {
        "name": "Fleur de Sel",
        "description": "Sea salt and white florals on sun-warmed skin.",
        "notes": "Sea salt, neroli, jasmine, driftwood",
        "price": 89.0,
        "collection": "Riviera",
        "stock": 75,
        "volume": "100ml",
    },
    {
        "name": "Vetiver Ancien",
        "description": "Dry Haitian vetiver with a crack of black pepper.",
        "notes": "Vetiver, black pepper, cedar, grapefruit",
        "price": 112.0,
        "collection": "Heritage",
        "stock": 60,
        "volume": "100ml",
    },
    {
        "name": "Petit Musc",
        "description": "A clean skin musk in a travel size.",
        "notes": "White musk, iris, pear",
        "price": 48.0,
        "collection": "Riviera",
        "stock": 120,
        "volume": "30ml",
    },
]


def seed_data(db: Database):
    # Create admin if not exists
    existing_admin = db[USERS].find_one({"email": settings.ADMIN_EMAIL})
    if not existing_admin:
        admin = UserSchema(
            name="Admin",
            email=settings.ADMIN_EMAIL,
            password_hash=hash_password(settings.ADMIN_PASSWORD),
            is_admin=True,
            is_active=True,
        )
        create_document(db, USERS, admin.model_dump())

    # Seed products if collection is empty
    if db[PRODUCTS].count_documents({}) == 0:
        for p in SAMPLE_PRODUCTS:
            create_document(db, PRODUCTS, ProductSchema(**p).model_dump())


@app.post("/admin/seed")
def trigger_seed(user=Depends(get_current_admin), db: Database = Depends(get_db)):
    seed_data(db)
    return {"seeded": True}


@app.on_event("startup")
def on_startup():
    configure_logging()
    get_image_store().ensure_dirs()
    logger.info("collaborators_ready", mail_configured=get_mailer().configured, text_filter=get_text_filter().available)
    db = get_db()
    try:
        ensure_indexes(db)
        seed_data(db)
    except Exception:
        logger.exception("startup_database_setup_failed")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
