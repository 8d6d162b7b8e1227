from datetime import datetime, timedelta, timezone
from itertools import count

import mongomock
import pytest
from fastapi.testclient import TestClient
from jose import jwt

import main
from database import ensure_indexes
from schemas import CategoryCreate, FarmerCreate, ProductCreate, UserCreate
from storage import DatabaseStorage


@pytest.fixture
def mongo_db():
    database = mongomock.MongoClient(tz_aware=True)["farmdirect_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def clock():
    # One second per call so created_at values are distinct and increasing
    start = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
    ticks = count()
    return lambda: start + timedelta(seconds=next(ticks))


@pytest.fixture
def storage(mongo_db, clock):
    return DatabaseStorage(mongo_db, clock=clock)


@pytest.fixture
def client(storage):
    main.app.dependency_overrides[main.get_storage] = lambda: storage
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


def make_token(user_id, email=None):
    claims = {"sub": user_id}
    if email:
        claims["email"] = email
    return jwt.encode(claims, main.AUTH_JWT_SECRET, algorithm=main.ALGORITHM)


@pytest.fixture
def auth():
    def _headers(user_id, email=None):
        return {"Authorization": f"Bearer {make_token(user_id, email)}"}
    return _headers


@pytest.fixture
def catalog(storage):
    """Two farmers, two categories and three products."""
    alice = storage.create_user(UserCreate(id="u1", email="alice@example.com", name="Alice"))
    bob = storage.create_user(UserCreate(id="u2", email="bob@example.com", name="Bob"))
    veg = storage.create_category(CategoryCreate(id="c1", name="Vegetables", icon="carrot"))
    dairy = storage.create_category(CategoryCreate(id="c2", name="Dairy", icon="milk"))
    green_acres = storage.create_farmer(FarmerCreate(
        id="f1", user_id=alice.id, farm_name="Green Acres", location="Vermont", rating=4.5,
    ))
    hill_top = storage.create_farmer(FarmerCreate(
        id="f2", user_id=bob.id, farm_name="Hill Top Dairy", location="Ohio", rating=4.8,
    ))
    storage.create_product(ProductCreate(
        id="p1", farmer_id="f1", category_id="c1", name="Heirloom Tomatoes",
        description="Sweet and juicy", price=3.50, unit="lb", featured=True,
    ))
    storage.create_product(ProductCreate(
        id="p2", farmer_id="f1", category_id="c1", name="Carrots",
        description="Crunchy orange roots", price=2.00, unit="bunch",
    ))
    storage.create_product(ProductCreate(
        id="p3", farmer_id="f2", category_id="c2", name="Raw Milk",
        description="Grass fed, whole", price=6.25, unit="gallon", featured=True,
    ))
    return {"users": [alice, bob], "categories": [veg, dairy], "farmers": [green_acres, hill_top]}
