from datetime import datetime, timezone
from typing import List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from flask import Flask, current_app
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from .errors import ValidationError


def utcnow() -> datetime:
    # Mongo hands back naive UTC datetimes, so stored values stay naive too.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def init_database(app: Flask, database: Optional[Database] = None) -> Database:
    if database is None:
        client = MongoClient(
            app.config["MONGO_URI"],
            serverSelectionTimeoutMS=app.config.get(
                "MONGO_SERVER_SELECTION_TIMEOUT_MS", 5000
            ),
        )
        database = client.get_default_database(default="gracestore")
    app.extensions["mongo_db"] = database
    return database


def get_db() -> Database:
    return current_app.extensions["mongo_db"]


def ensure_indexes(app: Flask, database: Database) -> None:
    index_plan = [
        ("users", [("email", ASCENDING)], {"unique": True}),
        ("users", [("emailVerificationToken", ASCENDING)], {}),
        ("users", [("passwordResetToken", ASCENDING)], {}),
        ("categories", [("name", ASCENDING)], {"unique": True}),
        ("categories", [("sortOrder", ASCENDING), ("createdAt", ASCENDING)], {}),
        ("products", [("name", ASCENDING)], {}),
        ("products", [("createdAt", DESCENDING)], {}),
        ("products", [("categories", ASCENDING)], {}),
        ("attributes", [("type", ASCENDING), ("isActive", ASCENDING)], {}),
        ("orders", [("createdAt", DESCENDING)], {}),
        ("orders", [("paymentIntentId", ASCENDING)], {"unique": True, "sparse": True}),
    ]
    for collection_name, keys, options in index_plan:
        try:
            database[collection_name].create_index(keys, **options)
        except Exception as exc:
            app.logger.warning(
                "Unable to ensure index %s on %s: %s", keys, collection_name, exc
            )


def parse_object_id(value, label: str = "identifier") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label}.")


def normalize_object_id_value(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize_document(document, hidden_fields: List[str] = ()) -> dict:
    if not document:
        return {}
    serialized = {}
    for key, value in document.items():
        if key in hidden_fields:
            continue
        serialized[key] = _serialize_value(value)
    if "_id" in serialized:
        serialized["id"] = serialized["_id"]
    return serialized


def _serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {key: _serialize_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_serialize_value(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat() if value.tzinfo is not None else f"{value.isoformat()}Z"
    return value
