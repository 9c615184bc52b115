"""Upload slot issuance: create the record and hand out a direct-upload URL."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict

from .object_store import ObjectStore
from .records import STATUS_AWAITING_UPLOAD, ImageRecord, RecordStore, utcnow

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = "jpg"


@dataclass
class UploadSlot:
    image_id: str
    upload_url: str
    key: str
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "imageId": self.image_id,
            "uploadUrl": self.upload_url,
            "key": self.key,
            "expiresAt": self.expires_at.isoformat(),
        }


def extension_for(filename: str) -> str:
    stem, dot, ext = filename.rpartition(".")
    if not dot or not stem or not ext:
        return DEFAULT_EXTENSION
    return ext.lower()


def object_key_for(image_id: str, filename: str) -> str:
    return f"uploads/{image_id}.{extension_for(filename)}"


async def issue_upload_slot(
    store: RecordStore,
    object_store: ObjectStore,
    filename: str,
    content_type: str,
    file_size: int,
    expires_in: int = 300,
) -> UploadSlot:
    """
    Register a new image in AWAITING_UPLOAD and presign its upload URL.

    Args:
        store: Record store
        object_store: Object store that will receive the upload
        filename: Client-side file name (kept as ``original_name``)
        content_type: Declared MIME type
        file_size: Declared size in bytes
        expires_in: Lifetime of the upload URL in seconds

    Returns:
        UploadSlot with the image id, upload URL, object key and expiry
    """
    image_id = str(uuid.uuid4())
    key = object_key_for(image_id, filename)
    expires_at = utcnow() + timedelta(seconds=expires_in)

    await store.create(
        ImageRecord(
            id=image_id,
            key=key,
            filename=key.rsplit("/", 1)[-1],
            original_name=filename,
            mime_type=content_type,
            file_size=file_size,
            status=STATUS_AWAITING_UPLOAD,
            upload_url_expires_at=expires_at,
        )
    )
    upload_url = await object_store.generate_upload_url(key, content_type, expires_in)
    logger.info(f"Issued upload slot for {image_id} ({filename}, {content_type}, {file_size} bytes)")
    return UploadSlot(image_id=image_id, upload_url=upload_url, key=key, expires_at=expires_at)
