"""
MongoDB access helpers.

Collections:
    project  - projects with embedded columns and member ids
    task     - tasks, referencing their project by ObjectId
    session  - bearer tokens issued by the auth service (read-only here)
    user     - user profiles owned by the auth service (read-only here)
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import MongoClient
from pymongo.database import Database

from config import Settings


def connect(settings: Settings) -> Database:
    """Return a handle on the configured database. The client connects lazily."""
    client = MongoClient(settings.database_url, tz_aware=True)
    return client[settings.database_name]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(database: Database, collection_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Insert ``data`` stamped with createdAt/updatedAt and return the stored document."""
    now = utcnow()
    doc = {**data, "createdAt": now, "updatedAt": now}
    result = database[collection_name].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List] = None,
    limit: int = 0,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
