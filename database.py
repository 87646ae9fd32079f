"""
MongoDB access for the marketplace.

Collections are named after the documents they hold. Handlers receive the
database through the ``get_db`` dependency so tests can swap in an in-memory
one.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient

from config import DATABASE_NAME, DATABASE_URL
from errors import NotFound

USERS = "user"
OUTLETS = "outlet"
PRODUCTS = "product"
ORDERS = "order"
RESTOCKS = "restock"

_client: Optional[AsyncMongoClient] = None


def get_client() -> AsyncMongoClient:
    global _client
    if _client is None:
        _client = AsyncMongoClient(DATABASE_URL, tz_aware=True)
    return _client


def get_db():
    return get_client()[DATABASE_NAME]


async def close_client() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None


async def ensure_indexes(db) -> None:
    await db[USERS].create_index([("email", ASCENDING)], unique=True)
    await db[OUTLETS].create_index([("ownerId", ASCENDING)], unique=True)
    await db[PRODUCTS].create_index([("outletId", ASCENDING)])
    await db[PRODUCTS].create_index([("category", ASCENDING)])
    await db[ORDERS].create_index([("orderNumber", ASCENDING)], unique=True)
    await db[ORDERS].create_index([("payment.reference", ASCENDING)])
    await db[ORDERS].create_index([("user", ASCENDING), ("createdAt", DESCENDING)])
    await db[ORDERS].create_index([("orderItems.outlet", ASCENDING)])
    await db[RESTOCKS].create_index([("outlet", ASCENDING), ("createdAt", DESCENDING)])
    await db[RESTOCKS].create_index([("status", ASCENDING)])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_id(value: Union[str, ObjectId], label: str = "Resource") -> ObjectId:
    """Turn a path id into an ObjectId; a malformed id is reported as missing."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{label} not found")


async def create_document(db, collection: str, data: Union[BaseModel, Dict[str, Any]]) -> ObjectId:
    doc = data.model_dump(mode="json") if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("createdAt", now)
    doc["updatedAt"] = now
    result = await db[collection].insert_one(doc)
    return result.inserted_id


async def get_documents(
    db,
    collection: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    *,
    projection: Optional[Dict[str, Any]] = None,
    sort: Optional[List[tuple]] = None,
    skip: int = 0,
    limit: int = 0,
) -> List[dict]:
    cursor = db[collection].find(filter_dict or {}, projection, sort=sort, skip=skip, limit=limit)
    return await cursor.to_list(length=None)


def serialize(value: Any) -> Any:
    """Make a stored document JSON friendly: ObjectIds become strings, ``_id`` becomes ``id``."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            out["id" if k == "_id" else k] = serialize(v)
        return out
    return value
