"""
MongoDB access helpers.

Collections are named after the lowercase schema class (see schemas.py).
Timestamps are stored as naive UTC datetimes, the same way pymongo hands them back.
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

client = MongoClient(DATABASE_URL)
db = client[DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse a string id, returning None when it is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    out = dict(doc)
    if out.get("_id") is not None:
        out["id"] = str(out.pop("_id"))
    return out


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    payload = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    payload.setdefault("created_at", now)
    payload["updated_at"] = now
    result = db[collection_name].insert_one(payload)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes():
    db["user"].create_index("email", unique=True)
    db["product"].create_index("slug", unique=True)
    db["productvariant"].create_index("sku", unique=True)
    db["productvariant"].create_index("product_id")
    db["coupon"].create_index("code", unique=True)
    db["order"].create_index("order_number", unique=True)
    db["order"].create_index("idempotency_key", unique=True, sparse=True)
    db["order"].create_index("payment_id")
    db["order"].create_index("customer_email")
    db["review"].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    db["blogpost"].create_index("slug", unique=True)
    db["newslettersubscriber"].create_index("email", unique=True)
    db["wishlistitem"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    db["cart"].create_index("cart_key", unique=True)
    db["paymentevent"].create_index("event_id", unique=True)
