"""
Database helpers

MongoDB access for the booking API. The connection is configured from
DATABASE_URL and DATABASE_NAME; when either is missing `db` stays None and
the API answers with "Database not available".
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: str) -> Optional[ObjectId]:
    """Parse a string id, returning None when it is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    if value is None or not ObjectId.is_valid(value):
        return None
    return ObjectId(value)


def create_document(collection: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if db is None:
        raise RuntimeError("Database not available")
    if isinstance(data, BaseModel):
        data = data.model_dump()
    doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    if db is None:
        raise RuntimeError("Database not available")
    cursor = db[collection].find(filter_dict or {}).sort("created_at", DESCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document(collection: str, _id: str) -> Optional[Dict[str, Any]]:
    if db is None:
        raise RuntimeError("Database not available")
    oid = to_object_id(_id)
    if oid is None:
        return None
    return db[collection].find_one({"_id": oid})


def ensure_indexes() -> None:
    """Create the indexes the API relies on. Safe to call repeatedly."""
    if db is None:
        return
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["user"].create_index([("api_key", ASCENDING)])
    db["booking"].create_index([("user_id", ASCENDING)])
    db["booking"].create_index([("status", ASCENDING)])
    db["driver"].create_index([("is_available", ASCENDING), ("last_assigned_at", ASCENDING)])
