"""
Medical image storage in a GridFS bucket.

The bucket is created lazily on first use and reused afterwards.
"""

import logging
import os
from typing import Any, Optional

from bson import ObjectId
from gridfs import GridFSBucket
from gridfs.errors import NoFile

import database

logger = logging.getLogger(__name__)

BUCKET_NAME = os.getenv("IMAGE_BUCKET", "medical_images")
IMAGE_MAX_BYTES = int(os.getenv("IMAGE_MAX_BYTES", str(10 * 1024 * 1024)))
ALLOWED_CONTENT_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/webp")

_bucket: Any = None


def get_bucket() -> Any:
    global _bucket
    if _bucket is None:
        _bucket = GridFSBucket(database.db, bucket_name=BUCKET_NAME)
        logger.info("GridFS bucket '%s' ready", BUCKET_NAME)
    return _bucket


def validate_upload(content_type: Optional[str], size: int) -> Optional[str]:
    """Return a rejection message for an upload, or None when it is acceptable."""
    if content_type not in ALLOWED_CONTENT_TYPES:
        return "Invalid file type. Only JPEG, PNG and WebP are allowed"
    if size > IMAGE_MAX_BYTES:
        return f"File too large. Max size is {IMAGE_MAX_BYTES // (1024 * 1024)}MB"
    return None


def store(filename: str, data: bytes, content_type: str, metadata: dict) -> ObjectId:
    meta = dict(metadata, contentType=content_type)
    file_id = get_bucket().upload_from_stream(filename, data, metadata=meta)
    logger.info("Stored %s (%d bytes) as %s", filename, len(data), file_id)
    return file_id


def delete(file_id: ObjectId) -> bool:
    """Delete a blob. Failures are logged and reported as False, callers carry on."""
    try:
        get_bucket().delete(file_id)
        return True
    except NoFile:
        logger.warning("Blob %s already gone", file_id)
    except Exception:
        logger.exception("Error deleting blob %s", file_id)
    return False


def open_download(file_id: ObjectId):
    """Return a readable GridOut, or None when the blob does not exist."""
    try:
        return get_bucket().open_download_stream(file_id)
    except NoFile:
        return None


def content_type_of(grid_out) -> str:
    meta = getattr(grid_out, "metadata", None) or {}
    return meta.get("contentType") or "image/jpeg"
