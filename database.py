"""
MongoDB access for the marketplace.

Each collection stores documents shaped by the models in ``schemas``.
Route handlers receive the database through the ``get_db`` dependency so
tests can swap in another client.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import get_settings

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None


def get_client() -> MongoClient:
    global _client
    if _client is None:
        settings = get_settings()
        _client = MongoClient(settings.database_url)
        ensure_indexes(_client[settings.database_name])
        logger.info("Connected MongoDB client for database %s", settings.database_name)
    return _client


def ensure_indexes(db: Database) -> None:
    db["order"].create_index([("order_number", ASCENDING)], unique=True)
    db["review"].create_index([("product", ASCENDING), ("user", ASCENDING)], unique=True)


def get_db() -> Database:
    return get_client()[get_settings().database_name]


def now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    doc.setdefault("created_at", now())
    doc.setdefault("updated_at", now())
    res = db[collection_name].insert_one(doc)
    return str(res.inserted_id)


def get_documents(db: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    d.pop("password_hash", None)
    d.pop("viewed_by_users", None)
    return d


def is_object_id(value: Any) -> bool:
    return isinstance(value, str) and ObjectId.is_valid(value)


def ensure_object_id(id_str: str, label: str = "ID") -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail=f"Invalid {label} format")


def find_by_id(db: Database, collection_name: str, id_str: str) -> Optional[Dict[str, Any]]:
    if not is_object_id(id_str):
        return None
    return db[collection_name].find_one({"_id": ObjectId(id_str)})
