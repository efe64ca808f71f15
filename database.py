"""
Database Helper Functions

MongoDB helpers shared by every router. The connection is configured from the
DATABASE_URL and DATABASE_NAME environment variables; when either is missing
`db` stays None and any data access fails with an `internal` error.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from errors import ApiError, ErrorKind

load_dotenv()

logger = logging.getLogger(__name__)

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def collection(name: str):
    if db is None:
        raise ApiError(ErrorKind.INTERNAL, "Database not configured")
    return db[name]


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a single document with timestamps, returning its id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()

    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now

    result = collection(collection_name).insert_one(data_dict)
    return str(result.inserted_id)


def oid(id_str, label: str = "id") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ApiError(ErrorKind.VALIDATION, f"Invalid {label}")


def find_by_id(collection_name: str, id_str, label: str):
    """Fetch one document by id or raise a not_found error naming `label`."""
    doc = collection(collection_name).find_one({"_id": oid(id_str, f"{label.lower()} id")})
    if not doc:
        raise ApiError(ErrorKind.NOT_FOUND, f"{label} not found")
    return doc


def serialize_doc(doc):
    """Make a Mongo document JSON friendly: every ObjectId becomes a string."""
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, dict):
        return {k: serialize_doc(v) for k, v in doc.items()}
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    return doc


def paginate(cursor, page: int, limit: int):
    return cursor.skip((page - 1) * limit).limit(limit)


def pagination_meta(total: int, page: int, limit: int) -> dict:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "pages": (total + limit - 1) // limit if limit else 0,
    }


def ensure_indexes():
    if db is None:
        logger.warning("Database not configured; skipping index creation")
        return
    db["user"].create_index("email", unique=True)
    db["franchise"].create_index("email", unique=True)
    db["franchisestock"].create_index([("franchise", ASCENDING), ("product", ASCENDING)], unique=True)
    db["order"].create_index("order_id", unique=True)
    db["order"].create_index([("franchise", ASCENDING), ("created_at", DESCENDING)])
    db["cartitem"].create_index(
        [("user_id", ASCENDING), ("product_id", ASCENDING), ("franchise", ASCENDING)], unique=True
    )
    logger.info("Indexes ensured on database %s", db.name)
