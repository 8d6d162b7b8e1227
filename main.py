import os
import logging
from contextlib import asynccontextmanager
from typing import Optional, List

from fastapi import FastAPI, Depends, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from pydantic import BaseModel, Field
from pymongo.errors import DuplicateKeyError
import stripe

from database import db, ensure_indexes
from payments import create_payment_intent, PaymentNotConfigured
from schemas import (
    Category,
    CategoryCreate,
    FarmerCreate,
    FarmerWithProducts,
    Farmer,
    OrderLine,
    OrderStatus,
    OrderWithItems,
    Product,
    ProductCreate,
    ProductWithFarmer,
    Review,
    ReviewCreate,
    User,
    UserCreate,
)
from storage import DatabaseStorage, IStorage, InvalidStatusTransition, ReferenceNotFound

# Logging
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger("farmdirect")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is None:
        logger.warning("database_not_configured")
    else:
        ensure_indexes(db)
    yield


# App setup
app = FastAPI(title="FarmDirect API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security: tokens are issued by the identity provider, we only verify them
AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "change-this-secret")
ALGORITHM = "HS256"
bearer_scheme = HTTPBearer(auto_error=False)

_storage: Optional[IStorage] = DatabaseStorage(db) if db is not None else None


# Dependencies
def get_storage() -> IStorage:
    if _storage is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return _storage


class Identity(BaseModel):
    id: str
    email: Optional[str] = None


def get_identity(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Identity:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception
    try:
        payload = jwt.decode(credentials.credentials, AUTH_JWT_SECRET, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    return Identity(id=user_id, email=payload.get("email"))


def get_current_farmer(identity: Identity = Depends(get_identity), storage: IStorage = Depends(get_storage)) -> Farmer:
    farmer = storage.get_farmer_by_user_id(identity.id)
    if not farmer:
        raise HTTPException(status_code=403, detail="Farmer profile required")
    return farmer


# Request models
class RegisterRequest(BaseModel):
    name: str


class FarmerIn(BaseModel):
    farm_name: str
    bio: Optional[str] = None
    location: str


class ProductIn(BaseModel):
    category_id: str
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    unit: str
    image_url: Optional[str] = None
    in_stock: bool = True
    featured: bool = False


class ReviewIn(BaseModel):
    rating: int = Field(..., ge=0, le=5)
    comment: Optional[str] = None


class OrderLineIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class OrderIn(BaseModel):
    items: List[OrderLineIn] = Field(..., min_length=1)


class StatusUpdate(BaseModel):
    status: OrderStatus


class PaymentIntentRequest(BaseModel):
    amount: int = Field(..., ge=1, description="Amount in cents")


# Routes
@app.get("/")
def root():
    return {"message": "FarmDirect API"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "collections": [],
    }
    try:
        if db is not None:
            response["database_name"] = db.name
            collections = db.list_collection_names()
            response["collections"] = collections[:10]
            response["database"] = "✅ Connected & Working"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    return response


# Users
@app.post("/api/users", response_model=User)
def register(payload: RegisterRequest, identity: Identity = Depends(get_identity), storage: IStorage = Depends(get_storage)):
    existing = storage.get_user(identity.id)
    if existing:
        return existing
    if not identity.email:
        raise HTTPException(status_code=400, detail="Identity token has no email")
    try:
        user = storage.create_user(UserCreate(id=identity.id, email=identity.email, name=payload.name))
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    logger.info("user_registered user_id=%s", user.id)
    return user


@app.get("/api/me", response_model=User)
def me(identity: Identity = Depends(get_identity), storage: IStorage = Depends(get_storage)):
    user = storage.get_user(identity.id)
    if not user:
        raise HTTPException(404, "User not registered")
    return user


# Categories
@app.get("/api/categories", response_model=List[Category])
def list_categories(storage: IStorage = Depends(get_storage)):
    return storage.get_categories()


@app.post("/api/categories", response_model=Category)
def create_category(payload: CategoryCreate, farmer: Farmer = Depends(get_current_farmer), storage: IStorage = Depends(get_storage)):
    category = storage.create_category(payload)
    logger.info("category_created category_id=%s farmer_id=%s", category.id, farmer.id)
    return category


# Products
@app.get("/api/products", response_model=List[ProductWithFarmer])
def list_products(
    search: Optional[str] = None,
    category: Optional[str] = None,
    featured: bool = False,
    storage: IStorage = Depends(get_storage),
):
    if featured:
        return storage.get_featured_products()
    if search is not None:
        products = storage.search_products(search)
        if category:
            products = [p for p in products if p.category_id == category]
        return products
    if category:
        return storage.get_products_by_category(category)
    return storage.get_products()


@app.get("/api/products/{product_id}", response_model=ProductWithFarmer)
def get_product(product_id: str, storage: IStorage = Depends(get_storage)):
    product = storage.get_product(product_id)
    if not product:
        raise HTTPException(404, "Product not found")
    return product


@app.post("/api/products", response_model=Product)
def create_product(payload: ProductIn, farmer: Farmer = Depends(get_current_farmer), storage: IStorage = Depends(get_storage)):
    try:
        product = storage.create_product(ProductCreate(farmer_id=farmer.id, **payload.model_dump()))
    except ReferenceNotFound as e:
        raise HTTPException(404, str(e))
    logger.info("product_created product_id=%s farmer_id=%s", product.id, farmer.id)
    return product


@app.get("/api/products/{product_id}/reviews", response_model=List[Review])
def list_product_reviews(product_id: str, storage: IStorage = Depends(get_storage)):
    return storage.get_product_reviews(product_id)


@app.post("/api/products/{product_id}/reviews", response_model=Review)
def add_product_review(product_id: str, payload: ReviewIn, identity: Identity = Depends(get_identity), storage: IStorage = Depends(get_storage)):
    try:
        return storage.create_review(ReviewCreate(product_id=product_id, user_id=identity.id, **payload.model_dump()))
    except ReferenceNotFound:
        raise HTTPException(404, "Product not found")


# Farmers
@app.get("/api/farmers", response_model=List[FarmerWithProducts])
def list_farmers(limit: int = Query(3, ge=1, le=50), offset: int = Query(0, ge=0), storage: IStorage = Depends(get_storage)):
    return storage.get_featured_farmers(limit=limit, offset=offset)


@app.post("/api/farmers", response_model=Farmer)
def onboard_farmer(payload: FarmerIn, identity: Identity = Depends(get_identity), storage: IStorage = Depends(get_storage)):
    if storage.get_farmer_by_user_id(identity.id):
        raise HTTPException(400, "Farmer profile already exists")
    try:
        farmer = storage.create_farmer(FarmerCreate(user_id=identity.id, **payload.model_dump()))
    except ReferenceNotFound:
        raise HTTPException(400, "Register the user before creating a farmer profile")
    logger.info("farmer_onboarded farmer_id=%s user_id=%s", farmer.id, identity.id)
    return farmer


@app.get("/api/farmers/{farmer_id}", response_model=FarmerWithProducts)
def get_farmer(farmer_id: str, storage: IStorage = Depends(get_storage)):
    farmer = storage.get_farmer_with_products(farmer_id)
    if not farmer:
        raise HTTPException(404, "Farmer not found")
    return farmer


@app.get("/api/farmers/{farmer_id}/reviews", response_model=List[Review])
def list_farmer_reviews(farmer_id: str, storage: IStorage = Depends(get_storage)):
    return storage.get_farmer_reviews(farmer_id)


@app.post("/api/farmers/{farmer_id}/reviews", response_model=Review)
def add_farmer_review(farmer_id: str, payload: ReviewIn, identity: Identity = Depends(get_identity), storage: IStorage = Depends(get_storage)):
    try:
        return storage.create_review(ReviewCreate(farmer_id=farmer_id, user_id=identity.id, **payload.model_dump()))
    except ReferenceNotFound:
        raise HTTPException(404, "Farmer not found")


# Orders
@app.get("/api/orders", response_model=List[OrderWithItems])
def my_orders(identity: Identity = Depends(get_identity), storage: IStorage = Depends(get_storage)):
    return storage.get_orders_by_user(identity.id)


@app.get("/api/orders/{order_id}", response_model=OrderWithItems)
def get_order(order_id: str, identity: Identity = Depends(get_identity), storage: IStorage = Depends(get_storage)):
    order = storage.get_order(order_id)
    if not order or order.user_id != identity.id:
        raise HTTPException(404, "Order not found")
    return order


@app.post("/api/orders", response_model=OrderWithItems)
def place_order(payload: OrderIn, identity: Identity = Depends(get_identity), storage: IStorage = Depends(get_storage)):
    lines = []
    for item in payload.items:
        product = storage.get_product(item.product_id)
        if not product:
            raise HTTPException(status_code=404, detail="Product not found")
        if not product.in_stock:
            raise HTTPException(status_code=400, detail=f"{product.name} is out of stock")
        lines.append(OrderLine(product_id=product.id, quantity=item.quantity, price=product.price))
    return storage.create_order_with_items(identity.id, lines)


@app.patch("/api/orders/{order_id}/status", response_model=OrderWithItems)
def update_order_status(order_id: str, payload: StatusUpdate, identity: Identity = Depends(get_identity), storage: IStorage = Depends(get_storage)):
    order = storage.get_order(order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    farmer = storage.get_farmer_by_user_id(identity.id)
    is_seller = farmer is not None and any(i.product.farmer_id == farmer.id for i in order.items)
    is_buyer = order.user_id == identity.id
    if not is_seller and not (is_buyer and payload.status == OrderStatus.cancelled):
        raise HTTPException(403, "Forbidden")
    try:
        storage.update_order_status(order_id, payload.status.value)
    except InvalidStatusTransition as e:
        raise HTTPException(409, str(e))
    return storage.get_order(order_id)


# Payments
@app.post("/api/create-payment-intent")
def payment_intent(payload: PaymentIntentRequest):
    try:
        client_secret = create_payment_intent(payload.amount)
    except PaymentNotConfigured:
        raise HTTPException(status_code=503, detail="Payments not configured")
    except stripe.StripeError as e:
        logger.warning("payment_intent_failed amount=%d error=%s", payload.amount, type(e).__name__)
        raise HTTPException(status_code=502, detail="Payment processor error")
    return {"clientSecret": client_secret}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
