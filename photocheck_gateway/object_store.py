"""Object store gateway: upload URLs, existence checks and downloads.

Two backends, picked by ``storage_type``:

* ``s3``: any S3-compatible bucket (AWS, Cloudflare R2, MinIO) through boto3;
* ``local``: a directory on disk, written by the gateway's own PUT endpoint.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Protocol

import aiofiles
import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import StorageError

if TYPE_CHECKING:
    from .app import GatewayConfig

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass
class ObjectMetadata:
    exists: bool
    content_length: Optional[int] = None
    content_type: Optional[str] = None
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None


class ObjectStore(Protocol):
    async def head_object(self, key: str) -> ObjectMetadata:
        """Single existence lookup; a missing object is ``exists=False``."""
        ...

    async def get_object(self, key: str) -> bytes:
        ...

    async def generate_upload_url(self, key: str, content_type: str, expires_in: int) -> str:
        ...


class S3ObjectStore:
    """S3-compatible object store via boto3."""

    def __init__(
        self,
        bucket_name: str,
        region: str = "auto",
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client=None,
    ):
        """
        Initialize the S3 gateway.

        Args:
            bucket_name: Bucket holding uploads
            region: Region name ("auto" for R2)
            endpoint_url: Custom endpoint for S3-compatible providers
            access_key_id: Access key (falls back to the boto3 credential chain)
            secret_access_key: Secret key
            client: Preconfigured boto3 client (tests)
        """
        self.bucket_name = bucket_name
        self.client = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url or None,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
        )
        logger.info(f"Initialized S3 object store for bucket {bucket_name}")

    def _head_object(self, key: str) -> ObjectMetadata:
        try:
            response = self.client.head_object(Bucket=self.bucket_name, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                return ObjectMetadata(exists=False)
            raise StorageError(f"HEAD {key} failed: {exc}", {"key": key, "original_error": code}) from exc
        except BotoCoreError as exc:
            raise StorageError(f"HEAD {key} failed: {exc}", {"key": key}) from exc
        return ObjectMetadata(
            exists=True,
            content_length=response.get("ContentLength"),
            content_type=response.get("ContentType"),
            last_modified=response.get("LastModified"),
            etag=response.get("ETag"),
        )

    def _get_object(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket_name, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"GET {key} failed: {exc}", {"key": key}) from exc

    def _generate_upload_url(self, key: str, content_type: str, expires_in: int) -> str:
        try:
            return self.client.generate_presigned_url(
                "put_object",
                Params={"Bucket": self.bucket_name, "Key": key, "ContentType": content_type},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Presigning {key} failed: {exc}", {"key": key}) from exc

    async def head_object(self, key: str) -> ObjectMetadata:
        return await asyncio.to_thread(self._head_object, key)

    async def get_object(self, key: str) -> bytes:
        return await asyncio.to_thread(self._get_object, key)

    async def generate_upload_url(self, key: str, content_type: str, expires_in: int) -> str:
        return await asyncio.to_thread(self._generate_upload_url, key, content_type, expires_in)


class LocalObjectStore:
    """Directory-backed object store for development and tests."""

    def __init__(self, root: Path, base_url: str = "http://localhost:8000/v1/storage"):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")
        logger.info(f"Initialized local object store at {self.root}")

    def path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}", {"key": key})
        return path

    async def head_object(self, key: str) -> ObjectMetadata:
        path = self.path_for(key)
        if not path.is_file():
            return ObjectMetadata(exists=False)
        stat = path.stat()
        return ObjectMetadata(
            exists=True,
            content_length=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )

    async def get_object(self, key: str) -> bytes:
        path = self.path_for(key)
        try:
            async with aiofiles.open(path, "rb") as handle:
                return await handle.read()
        except FileNotFoundError as exc:
            raise StorageError(f"Object not found: {key}", {"key": key}) from exc

    async def put_object(self, key: str, data: bytes) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "wb") as handle:
            await handle.write(data)
        logger.info(f"Stored object locally: {path}")

    async def generate_upload_url(self, key: str, content_type: str, expires_in: int) -> str:
        return f"{self.base_url}/{key}"


def build_object_store(config: "GatewayConfig") -> ObjectStore:
    if config.storage_type == "s3":
        return S3ObjectStore(
            bucket_name=config.s3_bucket_name,
            region=config.s3_region,
            endpoint_url=config.s3_endpoint_url,
            access_key_id=config.s3_access_key_id,
            secret_access_key=config.s3_secret_access_key,
        )
    if config.storage_type == "local":
        return LocalObjectStore(config.local_storage_dir, base_url=config.local_storage_base_url)
    raise ValueError(f"Unsupported storage type: {config.storage_type}")


AttemptCallback = Callable[[int, ObjectMetadata], Awaitable[None]]


async def verify_with_retry(
    store: ObjectStore,
    key: str,
    max_attempts: int = 3,
    delay_ms: int = 5000,
    on_attempt: Optional[AttemptCallback] = None,
) -> ObjectMetadata:
    """
    Poll ``head_object`` until the object shows up.

    Absorbs the window between a client's successful PUT and the object
    becoming visible to metadata queries.

    Args:
        store: Object store to query
        key: Object key
        max_attempts: Number of lookups before giving up
        delay_ms: Fixed pause between lookups (none after the last)
        on_attempt: Awaited after every lookup with (attempt number, result)

    Returns:
        Metadata of the object, or ``ObjectMetadata(exists=False)``
    """
    for attempt in range(1, max_attempts + 1):
        metadata = await store.head_object(key)
        if on_attempt is not None:
            await on_attempt(attempt, metadata)
        if metadata.exists:
            return metadata
        logger.info(f"Object {key} not visible yet (attempt {attempt}/{max_attempts})")
        if attempt < max_attempts:
            await asyncio.sleep(delay_ms / 1000.0)
    return ObjectMetadata(exists=False)


def within_size_tolerance(
    declared: Optional[int],
    measured: Optional[int],
    tolerance: float = 0.02,
) -> bool:
    """Compare measured and declared sizes; unknown sizes are not checked."""
    if not declared or measured is None:
        return True
    return abs(measured - declared) / declared <= tolerance
