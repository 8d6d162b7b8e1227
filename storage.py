"""
Storage layer for FarmDirect

`IStorage` lists one operation per access pattern the API needs and
`DatabaseStorage` implements it over a pymongo database handle. The handle is
injected, so tests and multiple app instances each get their own repository.

Absence is reported as None (point lookups) or an empty list (scans). Driver
errors propagate unchanged.
"""

import re
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from schemas import (
    ORDER_TRANSITIONS,
    Category,
    CategoryCreate,
    Farmer,
    FarmerCreate,
    FarmerWithProducts,
    Order,
    OrderCreate,
    OrderItem,
    OrderItemCreate,
    OrderItemWithProduct,
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

logger = logging.getLogger("farmdirect.storage")

NEWEST_FIRST = [("created_at", DESCENDING), ("_id", ASCENDING)]
TOP_RATED = [("rating", DESCENDING), ("_id", ASCENDING)]


class ReferenceNotFound(LookupError):
    """A write referenced a row that does not exist."""


class DataIntegrityError(RuntimeError):
    """A stored row points at a row that is gone."""


class InvalidStatusTransition(ValueError):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _fields(doc: dict) -> dict:
    out = dict(doc)
    out["id"] = out.pop("_id")
    return out


class IStorage(ABC):
    # Users
    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    @abstractmethod
    def create_user(self, user: UserCreate) -> User: ...

    # Farmers
    @abstractmethod
    def get_farmer(self, farmer_id: str) -> Optional[Farmer]: ...

    @abstractmethod
    def get_farmer_by_user_id(self, user_id: str) -> Optional[Farmer]: ...

    @abstractmethod
    def get_farmer_with_products(self, farmer_id: str) -> Optional[FarmerWithProducts]: ...

    @abstractmethod
    def create_farmer(self, farmer: FarmerCreate) -> Farmer: ...

    @abstractmethod
    def get_featured_farmers(self, limit: int = 3, offset: int = 0) -> List[FarmerWithProducts]: ...

    # Categories
    @abstractmethod
    def get_categories(self) -> List[Category]: ...

    @abstractmethod
    def create_category(self, category: CategoryCreate) -> Category: ...

    # Products
    @abstractmethod
    def get_products(self) -> List[ProductWithFarmer]: ...

    @abstractmethod
    def get_product(self, product_id: str) -> Optional[ProductWithFarmer]: ...

    @abstractmethod
    def get_products_by_category(self, category_id: str) -> List[ProductWithFarmer]: ...

    @abstractmethod
    def get_products_by_farmer(self, farmer_id: str) -> List[Product]: ...

    @abstractmethod
    def get_featured_products(self, limit: int = 4, offset: int = 0) -> List[ProductWithFarmer]: ...

    @abstractmethod
    def create_product(self, product: ProductCreate) -> Product: ...

    @abstractmethod
    def search_products(self, query: str) -> List[ProductWithFarmer]: ...

    # Orders
    @abstractmethod
    def get_order(self, order_id: str) -> Optional[OrderWithItems]: ...

    @abstractmethod
    def get_orders_by_user(self, user_id: str) -> List[OrderWithItems]: ...

    @abstractmethod
    def create_order(self, order: OrderCreate) -> Order: ...

    @abstractmethod
    def create_order_with_items(self, user_id: str, lines: List[OrderLine]) -> OrderWithItems: ...

    @abstractmethod
    def add_order_item(self, item: OrderItemCreate) -> OrderItem: ...

    @abstractmethod
    def update_order_status(self, order_id: str, status: str) -> None: ...

    # Reviews
    @abstractmethod
    def create_review(self, review: ReviewCreate) -> Review: ...

    @abstractmethod
    def get_product_reviews(self, product_id: str) -> List[Review]: ...

    @abstractmethod
    def get_farmer_reviews(self, farmer_id: str) -> List[Review]: ...


class DatabaseStorage(IStorage):
    def __init__(self, database, clock: Callable[[], datetime] = _utcnow):
        self.db = database
        self._now = clock

    # Helpers

    def _insert(self, collection: str, data: dict) -> dict:
        doc = dict(data)
        doc["_id"] = doc.pop("id", None) or str(ObjectId())
        self.db[collection].insert_one(doc)
        return doc

    def _find_one(self, collection: str, query: dict, sort=None) -> Optional[dict]:
        return self.db[collection].find_one(query, sort=sort)

    def _by_ids(self, collection: str, ids: Iterable[str], model) -> Dict[str, object]:
        ids = list(set(ids))
        if not ids:
            return {}
        return {d["_id"]: model(**_fields(d)) for d in self.db[collection].find({"_id": {"$in": ids}})}

    def _require(self, collection: str, doc_id: str, label: str):
        if self.db[collection].find_one({"_id": doc_id}, {"_id": 1}) is None:
            raise ReferenceNotFound(f"{label} {doc_id} not found")

    def _join_products(self, docs: List[dict]) -> List[ProductWithFarmer]:
        farmers = self._by_ids("farmer", (d["farmer_id"] for d in docs), Farmer)
        categories = self._by_ids("category", (d["category_id"] for d in docs), Category)
        joined = []
        for d in docs:
            farmer = farmers.get(d["farmer_id"])
            category = categories.get(d["category_id"])
            if farmer is None or category is None:
                raise DataIntegrityError(
                    f"product {d['_id']} references missing farmer {d['farmer_id']} "
                    f"or category {d['category_id']}"
                )
            joined.append(ProductWithFarmer(**_fields(d), farmer=farmer, category=category))
        return joined

    def _join_owners(self, docs: List[dict]) -> List[FarmerWithProducts]:
        farmer_ids = [d["_id"] for d in docs]
        users = self._by_ids("user", (d["user_id"] for d in docs), User)
        products: Dict[str, List[Product]] = {fid: [] for fid in farmer_ids}
        if farmer_ids:
            cursor = self.db["product"].find({"farmer_id": {"$in": farmer_ids}}).sort(NEWEST_FIRST)
            for p in cursor:
                products[p["farmer_id"]].append(Product(**_fields(p)))
        return [
            FarmerWithProducts(**_fields(d), user=users.get(d["user_id"]), products=products[d["_id"]])
            for d in docs
        ]

    def _join_items(self, docs: List[dict]) -> List[OrderWithItems]:
        order_ids = [d["_id"] for d in docs]
        items: Dict[str, List[dict]] = {oid: [] for oid in order_ids}
        if order_ids:
            for it in self.db["orderitem"].find({"order_id": {"$in": order_ids}}):
                items[it["order_id"]].append(it)
        products = self._by_ids(
            "product", (it["product_id"] for group in items.values() for it in group), Product
        )
        orders = []
        for d in docs:
            hydrated = []
            for it in items[d["_id"]]:
                product = products.get(it["product_id"])
                if product is None:
                    raise DataIntegrityError(
                        f"order item {it['_id']} references missing product {it['product_id']}"
                    )
                hydrated.append(OrderItemWithProduct(**_fields(it), product=product))
            orders.append(OrderWithItems(**_fields(d), items=hydrated))
        return orders

    def _refresh_rating(self, collection: str, field: str, target_id: str):
        agg = list(self.db["review"].aggregate([
            {"$match": {field: target_id}},
            {"$group": {"_id": f"${field}", "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}},
        ]))
        avg = round(float(agg[0]["avg"]), 2) if agg else 0.0
        cnt = int(agg[0]["count"]) if agg else 0
        self.db[collection].update_one({"_id": target_id}, {"$set": {"rating": avg, "review_count": cnt}})

    # Users

    def get_user(self, user_id: str) -> Optional[User]:
        doc = self._find_one("user", {"_id": user_id})
        return User(**_fields(doc)) if doc else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        doc = self._find_one("user", {"email": email})
        return User(**_fields(doc)) if doc else None

    def create_user(self, user: UserCreate) -> User:
        # Uniqueness comes from the index on user.email
        doc = self._insert("user", {**user.model_dump(), "created_at": self._now()})
        return User(**_fields(doc))

    # Farmers

    def get_farmer(self, farmer_id: str) -> Optional[Farmer]:
        doc = self._find_one("farmer", {"_id": farmer_id})
        return Farmer(**_fields(doc)) if doc else None

    def get_farmer_by_user_id(self, user_id: str) -> Optional[Farmer]:
        doc = self._find_one("farmer", {"user_id": user_id}, sort=[("_id", ASCENDING)])
        return Farmer(**_fields(doc)) if doc else None

    def get_farmer_with_products(self, farmer_id: str) -> Optional[FarmerWithProducts]:
        doc = self._find_one("farmer", {"_id": farmer_id})
        if not doc:
            return None
        return self._join_owners([doc])[0]

    def create_farmer(self, farmer: FarmerCreate) -> Farmer:
        self._require("user", farmer.user_id, "user")
        doc = self._insert("farmer", {**farmer.model_dump(), "created_at": self._now()})
        return Farmer(**_fields(doc))

    def get_featured_farmers(self, limit: int = 3, offset: int = 0) -> List[FarmerWithProducts]:
        docs = list(self.db["farmer"].find({}).sort(TOP_RATED).skip(offset).limit(limit))
        return self._join_owners(docs)

    # Categories

    def get_categories(self) -> List[Category]:
        return [Category(**_fields(d)) for d in self.db["category"].find({}).sort("name", ASCENDING)]

    def create_category(self, category: CategoryCreate) -> Category:
        doc = self._insert("category", category.model_dump())
        return Category(**_fields(doc))

    # Products

    def get_products(self) -> List[ProductWithFarmer]:
        return self._join_products(list(self.db["product"].find({}).sort(NEWEST_FIRST)))

    def get_product(self, product_id: str) -> Optional[ProductWithFarmer]:
        doc = self._find_one("product", {"_id": product_id})
        if not doc:
            return None
        return self._join_products([doc])[0]

    def get_products_by_category(self, category_id: str) -> List[ProductWithFarmer]:
        docs = self.db["product"].find({"category_id": category_id}).sort(NEWEST_FIRST)
        return self._join_products(list(docs))

    def get_products_by_farmer(self, farmer_id: str) -> List[Product]:
        docs = self.db["product"].find({"farmer_id": farmer_id}).sort(NEWEST_FIRST)
        return [Product(**_fields(d)) for d in docs]

    def get_featured_products(self, limit: int = 4, offset: int = 0) -> List[ProductWithFarmer]:
        docs = self.db["product"].find({"featured": True}).sort(TOP_RATED).skip(offset).limit(limit)
        return self._join_products(list(docs))

    def create_product(self, product: ProductCreate) -> Product:
        self._require("farmer", product.farmer_id, "farmer")
        self._require("category", product.category_id, "category")
        doc = self._insert("product", {**product.model_dump(), "created_at": self._now()})
        return Product(**_fields(doc))

    def search_products(self, query: str) -> List[ProductWithFarmer]:
        # An empty query matches every product
        pattern = {"$regex": re.escape(query), "$options": "i"}
        docs = self.db["product"].find({"$or": [{"name": pattern}, {"description": pattern}]})
        return self._join_products(list(docs.sort(NEWEST_FIRST)))

    # Orders

    def get_order(self, order_id: str) -> Optional[OrderWithItems]:
        doc = self._find_one("order", {"_id": order_id})
        if not doc:
            return None
        return self._join_items([doc])[0]

    def get_orders_by_user(self, user_id: str) -> List[OrderWithItems]:
        docs = self.db["order"].find({"user_id": user_id}).sort(NEWEST_FIRST)
        return self._join_items(list(docs))

    def create_order(self, order: OrderCreate) -> Order:
        doc = self._insert("order", {**order.model_dump(), "created_at": self._now()})
        return Order(**_fields(doc))

    def create_order_with_items(self, user_id: str, lines: List[OrderLine]) -> OrderWithItems:
        """Write an order and all of its items, or neither.

        The total is derived from the lines. If inserting the items fails,
        whatever was written is removed and the original error is re-raised.
        """
        if not lines:
            raise ValueError("an order needs at least one item")
        for line in lines:
            self._require("product", line.product_id, "product")
        total = round(sum(line.price * line.quantity for line in lines), 2)
        order = self.create_order(OrderCreate(user_id=user_id, total=total))
        docs = [
            {"_id": str(ObjectId()), "order_id": order.id, **line.model_dump()}
            for line in lines
        ]
        try:
            self.db["orderitem"].insert_many(docs)
        except PyMongoError:
            logger.warning("order_rollback order_id=%s items=%d", order.id, len(docs))
            self.db["orderitem"].delete_many({"order_id": order.id})
            self.db["order"].delete_one({"_id": order.id})
            raise
        logger.info("order_created order_id=%s user_id=%s total=%.2f", order.id, user_id, total)
        return self.get_order(order.id)

    def add_order_item(self, item: OrderItemCreate) -> OrderItem:
        self._require("order", item.order_id, "order")
        self._require("product", item.product_id, "product")
        doc = self._insert("orderitem", item.model_dump())
        return OrderItem(**_fields(doc))

    def update_order_status(self, order_id: str, status: str) -> None:
        try:
            new = OrderStatus(status)
        except ValueError:
            raise InvalidStatusTransition(f"unknown order status {status!r}") from None
        doc = self.db["order"].find_one({"_id": order_id}, {"status": 1})
        if doc is None:
            return
        current = OrderStatus(doc["status"])
        if new not in ORDER_TRANSITIONS[current]:
            raise InvalidStatusTransition(f"cannot move order {order_id} from {current.value} to {new.value}")
        result = self.db["order"].update_one(
            {"_id": order_id, "status": current.value}, {"$set": {"status": new.value}}
        )
        if result.matched_count == 0:
            raise InvalidStatusTransition(f"order {order_id} changed status while moving to {new.value}")
        logger.info("order_status order_id=%s from=%s to=%s", order_id, current.value, new.value)

    # Reviews

    def create_review(self, review: ReviewCreate) -> Review:
        if review.product_id is not None:
            self._require("product", review.product_id, "product")
        if review.farmer_id is not None:
            self._require("farmer", review.farmer_id, "farmer")
        doc = self._insert("review", {**review.model_dump(), "created_at": self._now()})
        if review.product_id is not None:
            self._refresh_rating("product", "product_id", review.product_id)
        if review.farmer_id is not None:
            self._refresh_rating("farmer", "farmer_id", review.farmer_id)
        return Review(**_fields(doc))

    def get_product_reviews(self, product_id: str) -> List[Review]:
        docs = self.db["review"].find({"product_id": product_id}).sort(NEWEST_FIRST)
        return [Review(**_fields(d)) for d in docs]

    def get_farmer_reviews(self, farmer_id: str) -> List[Review]:
        docs = self.db["review"].find({"farmer_id": farmer_id}).sort(NEWEST_FIRST)
        return [Review(**_fields(d)) for d in docs]
