"""
Database access for the clinic API.

A single pymongo database handle is created at import time from
DATABASE_URL / DATABASE_NAME. When either is missing, `db` stays None and
routes answer 503 instead of crashing.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL, tz_aware=True)
    db = _client[DATABASE_NAME]


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document with created_at/updated_at stamps and return its id as a string."""
    if db is None:
        raise RuntimeError("Database not configured")
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  sort: Optional[List[tuple]] = None) -> List[Dict[str, Any]]:
    if db is None:
        raise RuntimeError("Database not configured")
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database=None) -> None:
    database = database if database is not None else db
    if database is None:
        return
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["patient"].create_index([("cedula", ASCENDING)], unique=True)
    database["patient"].create_index([("user_id", ASCENDING)])
    database["appointment"].create_index([("date", ASCENDING), ("time", ASCENDING)])
    database["reminder"].create_index([("status", ASCENDING), ("next_attempt_at", ASCENDING)])
    logger.info("Indexes ensured on %s", database.name)
