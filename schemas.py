"""
Database Schemas for FarmDirect

Each Pydantic model represents a MongoDB collection.
Collection name is lowercase of the entity class name.
- User -> "user"
- Farmer -> "farmer"
- Category -> "category"
- Product -> "product"
- Order -> "order"
- OrderItem -> "orderitem"
- Review -> "review"

The *Create models are insert payloads; the entity models add the generated
id and timestamps. The *With* models are read-only composites assembled by the
storage layer.
"""

from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, EmailStr, model_validator
from typing import Optional, List
from datetime import datetime


class OrderStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    delivered = "delivered"
    cancelled = "cancelled"


# Legal status moves; delivered and cancelled are terminal
ORDER_TRANSITIONS = {
    OrderStatus.pending: {OrderStatus.confirmed, OrderStatus.cancelled},
    OrderStatus.confirmed: {OrderStatus.delivered, OrderStatus.cancelled},
    OrderStatus.delivered: set(),
    OrderStatus.cancelled: set(),
}


# Users
class UserCreate(BaseModel):
    id: Optional[str] = Field(None, description="Identity provider user id; generated when omitted")
    email: EmailStr = Field(..., description="Unique email address")
    name: str = Field(..., description="Display name")


class User(UserCreate):
    id: str
    created_at: datetime


# Farmers
class FarmerCreate(BaseModel):
    id: Optional[str] = None
    user_id: str = Field(..., description="Owning user id")
    farm_name: str = Field(..., description="Farm name")
    bio: Optional[str] = Field(None, description="About the farm")
    location: str = Field(..., description="Farm location")
    rating: float = Field(0.0, ge=0, le=5, description="Average review rating")
    review_count: int = Field(0, ge=0, description="Number of reviews")


class Farmer(FarmerCreate):
    id: str
    created_at: datetime


# Categories
class CategoryCreate(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., description="Category name")
    icon: Optional[str] = Field(None, description="Icon name")


class Category(CategoryCreate):
    id: str


# Products
class ProductCreate(BaseModel):
    id: Optional[str] = None
    farmer_id: str = Field(..., description="Farmer _id (string)")
    category_id: str = Field(..., description="Category _id (string)")
    name: str = Field(..., description="Product name")
    description: Optional[str] = Field(None, description="Short description")
    price: float = Field(..., ge=0, description="Price in USD per unit")
    unit: str = Field(..., description="Selling unit, e.g. lb, dozen")
    image_url: Optional[str] = Field(None, description="Image URL")
    in_stock: bool = Field(True, description="Whether the product can be ordered")
    featured: bool = Field(False, description="Shown on the home page")
    rating: float = Field(0.0, ge=0, le=5, description="Average review rating")
    review_count: int = Field(0, ge=0, description="Number of reviews")


class Product(ProductCreate):
    id: str
    created_at: datetime


# Orders
class OrderCreate(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: Optional[str] = None
    user_id: str = Field(..., description="ID of the user placing the order")
    status: OrderStatus = Field(OrderStatus.pending, description="Order status")
    total: float = Field(..., ge=0, description="Order total")


class Order(OrderCreate):
    id: str
    created_at: datetime


class OrderItemCreate(BaseModel):
    id: Optional[str] = None
    order_id: str = Field(..., description="Order _id (string)")
    product_id: str = Field(..., description="Product _id (string)")
    quantity: int = Field(..., ge=1, description="Quantity ordered")
    price: float = Field(..., ge=0, description="Unit price at purchase time")


class OrderItem(OrderItemCreate):
    id: str


class OrderLine(BaseModel):
    """One line of an order placed as a unit, before the order id exists."""
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)


# Reviews
class ReviewCreate(BaseModel):
    id: Optional[str] = None
    product_id: Optional[str] = Field(None, description="Reviewed product _id")
    farmer_id: Optional[str] = Field(None, description="Reviewed farmer _id")
    user_id: Optional[str] = Field(None, description="Author user _id")
    rating: int = Field(..., ge=0, le=5, description="Rating 0-5")
    comment: Optional[str] = Field(None, description="Optional review text")

    @model_validator(mode="after")
    def _has_target(self):
        if self.product_id is None and self.farmer_id is None:
            raise ValueError("a review needs a product_id or a farmer_id")
        return self


class Review(ReviewCreate):
    id: str
    created_at: datetime


# Composite views
class ProductWithFarmer(Product):
    farmer: Farmer
    category: Category


class FarmerWithProducts(Farmer):
    user: Optional[User] = None
    products: List[Product] = Field(default_factory=list)


class OrderItemWithProduct(OrderItem):
    product: Product


class OrderWithItems(Order):
    items: List[OrderItemWithProduct] = Field(default_factory=list)
