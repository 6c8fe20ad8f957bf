"""
MongoDB access helpers.

The client connects lazily, so importing this module never touches the
network. Route handlers receive the database through ``get_db`` so tests can
swap in an in-memory database.
"""

import asyncio
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from fastapi.concurrency import run_in_threadpool

from .config import Config

client = MongoClient(Config.DATABASE_URL)
db = client[Config.DATABASE_NAME]


def get_db() -> Database:
    return db


INDEXES = {
    "profile": [
        ([("email", ASCENDING)], {"unique": True}),
        ([("role", ASCENDING)], {}),
    ],
    "product": [
        ([("sku", ASCENDING)], {"unique": True}),
        ([("is_active", ASCENDING)], {}),
        ([("category", ASCENDING), ("price_inr", ASCENDING)], {}),
        ([("rating.average", DESCENDING)], {}),
    ],
    "order": [
        ([("user_id", ASCENDING), ("created_at", DESCENDING)], {}),
        ([("status", ASCENDING)], {}),
    ],
}


def ensure_indexes(database: Database) -> None:
    """Create the collection indexes; safe to call on every startup."""
    for collection_name, specs in INDEXES.items():
        for keys, options in specs:
            database[collection_name].create_index(keys, **options)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def oid_str(oid) -> str:
    return str(oid) if isinstance(oid, ObjectId) else oid


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def doc_to_public(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = oid_str(doc.pop("_id"))
    # hide sensitive / bulky fields
    doc.pop("password_hash", None)
    doc.pop("embedding", None)
    return doc


def create_document(database: Database, collection_name: str, data: Dict[str, Any]) -> str:
    now = utcnow()
    inserted = database[collection_name].insert_one({**data, "created_at": now, "updated_at": now})
    return str(inserted.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


async def paginate(
    database: Database,
    collection_name: str,
    query: Dict[str, Any],
    page: int,
    page_size: int,
    sort: Optional[List[Tuple[str, int]]] = None,
) -> Dict[str, Any]:
    """Fetch one page and the total count concurrently."""
    page = max(1, page)
    page_size = max(1, page_size)
    skip = (page - 1) * page_size
    collection = database[collection_name]

    def fetch_page() -> List[Dict[str, Any]]:
        cursor = collection.find(query)
        if sort:
            cursor = cursor.sort(sort)
        return [doc_to_public(x) for x in cursor.skip(skip).limit(page_size)]

    items, total = await asyncio.gather(
        run_in_threadpool(fetch_page),
        run_in_threadpool(collection.count_documents, query),
    )
    return {
        "items": items,
        "total": total,
        "page": page,
        "page_size": page_size,
        "pages": math.ceil(total / page_size) if total else 0,
    }
