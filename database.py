"""
Database helpers for MongoDB.

The client is created once by the application lifespan (see main.py) and
handed to everything else; nothing here holds a global connection.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Request
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import Settings

logger = logging.getLogger(__name__)


def mask_uri(uri: str) -> str:
    return re.sub(r"//[^@/]*@", "//***:***@", uri)


def connect(settings: Settings) -> Tuple[MongoClient, Database]:
    logger.info("Connecting to MongoDB at %s", mask_uri(settings.database_url))
    client = MongoClient(
        settings.database_url,
        maxPoolSize=settings.db_max_pool_size,
        serverSelectionTimeoutMS=10000,
        connectTimeoutMS=10000,
        socketTimeoutMS=45000,
        retryWrites=True,
        w="majority",
    )
    client.admin.command("ping")
    db = client[settings.database_name]
    logger.info("Using database %s", settings.database_name)
    return client, db


def create_indexes(db: Database) -> None:
    try:
        db["user"].create_index("email", unique=True)
        db["user"].create_index("created_at")

        for field in ("name", "category", "brand", "price", "is_featured", "is_new", "is_sale"):
            db["product"].create_index(field)
        db["product"].create_index([("created_at", DESCENDING)])

        db["order"].create_index("user_id")
        db["order"].create_index("order_number", unique=True)
        db["order"].create_index("status")
        db["order"].create_index("payment_status")
        db["order"].create_index([("created_at", DESCENDING)])

        db["emailverification"].create_index([("email", ASCENDING), ("type", ASCENDING)])
        db["emailverification"].create_index("token")

        db["session"].create_index("token", unique=True)
        db["session"].create_index("expires_at")
        logger.info("Database indexes ensured")
    except PyMongoError as e:
        # the API still works without indexes, just slower
        logger.error("Error creating indexes: %s", e)


def health_check(db: Optional[Database]) -> Dict[str, Any]:
    if db is None:
        return {"status": "unhealthy", "error": "Database not configured", "timestamp": utcnow()}
    try:
        db.client.admin.command("ping")
        return {"status": "healthy", "timestamp": utcnow()}
    except PyMongoError as e:
        return {"status": "unhealthy", "error": str(e)[:80], "timestamp": utcnow()}


def get_db(request: Request) -> Database:
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise RuntimeError("Database not configured")
    return db


def get_optional_db(request: Request) -> Optional[Database]:
    return getattr(request.app.state, "db", None)


def utcnow() -> datetime:
    # pymongo hands dates back as naive UTC; keep ours comparable
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def _jsonable(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def to_dict(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return _jsonable(d)


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)