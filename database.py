"""
Database helpers for the storefront

Connection settings come from the environment:
- DATABASE_URL  (mongodb connection string)
- DATABASE_NAME (database to use)

Each collection is named after the lowercased schema class (user, category,
product, review, order, cart, wishlist, settings, counters, newsletter).
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
db = client[DATABASE_NAME]


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document with created/updated timestamps and return its id"""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[dict]:
    cursor = db[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def next_sequence(name: str) -> int:
    """Atomically increment and return the named counter."""
    counter = db["counters"].find_one_and_update(
        {"_id": name},
        {"$inc": {"value": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(counter["value"])


def ensure_indexes():
    db["category"].create_index([("slug", ASCENDING)], unique=True)
    db["category"].create_index([("parent", ASCENDING)])
    db["category"].create_index([("is_active", ASCENDING), ("display_order", ASCENDING)])

    db["product"].create_index([("slug", ASCENDING)], unique=True)
    db["product"].create_index([("sku", ASCENDING)], unique=True)
    db["product"].create_index([("status", ASCENDING), ("featured", ASCENDING)])
    db["product"].create_index([("categories", ASCENDING)])
    db["product"].create_index([("price_floor", ASCENDING)])
    db["product"].create_index([("rating.average", DESCENDING)])

    # An email may own one account per role
    db["user"].create_index([("email", ASCENDING), ("role", ASCENDING)], unique=True)

    db["order"].create_index([("order_number", ASCENDING)], unique=True)
    db["order"].create_index([("customer.id", ASCENDING), ("status", ASCENDING)])
    db["order"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])

    db["review"].create_index([("product_id", ASCENDING), ("is_approved", ASCENDING)])
    db["cart"].create_index([("user_id", ASCENDING)], unique=True)
    db["wishlist"].create_index([("user_id", ASCENDING)], unique=True)
    db["newsletter"].create_index([("email", ASCENDING)], unique=True)
    logger.debug("Indexes ensured on %s", DATABASE_NAME)
