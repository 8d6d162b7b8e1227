"""
MongoDB connection for FarmDirect

The client is created once per process from DATABASE_URL and DATABASE_NAME.
When either is missing `db` stays None and the API reports the database as
unavailable instead of failing at import time.
"""

import os
import logging

from pymongo import MongoClient, ASCENDING, DESCENDING

logger = logging.getLogger("farmdirect.database")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL, tz_aware=True)
    db = client[DATABASE_NAME]


def ensure_indexes(database):
    """Create the unique and lookup indexes the storage layer relies on."""
    database["user"].create_index("email", unique=True)
    database["farmer"].create_index("user_id")
    database["farmer"].create_index([("rating", DESCENDING), ("_id", ASCENDING)])
    database["product"].create_index([("created_at", DESCENDING), ("_id", ASCENDING)])
    database["product"].create_index("farmer_id")
    database["product"].create_index("category_id")
    database["product"].create_index([("featured", ASCENDING), ("rating", DESCENDING)])
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["orderitem"].create_index("order_id")
    database["review"].create_index([("product_id", ASCENDING), ("created_at", DESCENDING)])
    database["review"].create_index([("farmer_id", ASCENDING), ("created_at", DESCENDING)])
    logger.info("indexes_ensured database=%s", database.name)
