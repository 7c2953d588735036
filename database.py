"""
MongoDB access for the Maison Parfum API.

One client per process; collections are addressed by name through `db`.
Helpers translate driver failures into the shared error taxonomy so the
components never leak pymongo exceptions to the HTTP layer.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import settings
from errors import ConflictError, DependencyError, NotFoundError
from log import get_logger

logger = get_logger(__name__)

PRODUCTS = "product"
REVIEWS = "review"
TRANSACTIONS = "transaction"
CARTS = "cart"
USERS = "user"

# The client connects lazily, on the first operation.
client: MongoClient = MongoClient(settings.DATABASE_URL, serverSelectionTimeoutMS=5000)
db: Database = client[settings.DATABASE_NAME]


def get_db() -> Database:
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_indexes(database: Database) -> None:
    """Declare lookup indexes and the uniqueness constraints the components rely on."""
    database[CARTS].create_index([("user_id", ASCENDING)], unique=True)
    database[REVIEWS].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    database[REVIEWS].create_index([("product_id", ASCENDING), ("created_at", DESCENDING)])
    database[TRANSACTIONS].create_index([("user_id", ASCENDING)])
    database[TRANSACTIONS].create_index([("status", ASCENDING)])
    database[TRANSACTIONS].create_index([("email", ASCENDING)])
    database[USERS].create_index([("email", ASCENDING)], unique=True)


@contextmanager
def store_call(action: str, conflict_message: str = "Record already exists") -> Iterator[None]:
    """Run a persistence call, mapping driver errors onto ConflictError/DependencyError."""
    try:
        yield
    except DuplicateKeyError as e:
        raise ConflictError(conflict_message) from e
    except PyMongoError as e:
        logger.error("store_call_failed", action=action, error=str(e))
        raise DependencyError(f"Database error while trying to {action}") from e


def to_object_id(value: Any, label: str = "Record") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(f"{label} not found")


def canonical_id(value: Any, label: str = "Record") -> str:
    """Lower-case hex form of an id, so one record always has one spelling."""
    return str(to_object_id(value, label))


def oid_str(oid) -> str:
    return str(oid) if isinstance(oid, ObjectId) else oid


def doc_to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = oid_str(doc.pop("_id"))
    # hide sensitive fields
    doc.pop("password_hash", None)
    return doc


def create_document(database: Database, collection_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Insert `data` stamped with created_at/updated_at and return the stored document."""
    now = utcnow()
    doc = {**data, "created_at": now, "updated_at": now}
    result = database[collection_name].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[tuple]] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
