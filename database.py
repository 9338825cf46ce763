import os
from datetime import datetime, timezone
from typing import Any, Dict

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from pymongo import ASCENDING, GEOSPHERE, TEXT, MongoClient

# Load environment variables from .env file
load_dotenv()

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]


def utcnow() -> datetime:
    """Naive UTC timestamp, the same shape pymongo hands back without tz_aware."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Any) -> ObjectId:
    """Coerce a string or ObjectId into an ObjectId, raising ValueError when malformed."""
    if isinstance(value, ObjectId):
        return value
    if value is None:
        raise ValueError("Missing id")
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValueError(f"Invalid id: {value!r}")


def serialize(doc: Any) -> Any:
    """Make a document JSON friendly: `_id` becomes `id`, ObjectIds become strings."""
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, list):
        return [serialize(v) for v in doc]
    if isinstance(doc, dict):
        d: Dict[str, Any] = {}
        for key, value in doc.items():
            d["id" if key == "_id" else key] = serialize(value)
        return d
    return doc


def ensure_indexes(database) -> None:
    """Create the uniqueness, text and geospatial indexes the repositories rely on."""
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["store"].create_index([("slug", ASCENDING)], unique=True)
    database["store"].create_index([("name", TEXT), ("description", TEXT)])
    database["store"].create_index([("location", GEOSPHERE)])
    database["review"].create_index([("store", ASCENDING)])
