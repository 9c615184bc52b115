"""Shared fixtures: in-memory object store, image factory, wired processor."""

from __future__ import annotations

import io
import os
from typing import Dict, Optional

import pytest
from PIL import Image

from photocheck_gateway.object_store import ObjectMetadata
from photocheck_gateway.records import STATUS_VERIFYING, ImageRecord, InMemoryRecordStore
from photocheck_gateway.upload_processor import UploadProcessor
from photocheck_runner.config import ValidationSettings
from photocheck_runner.validation import ValidationEngine


class FakeObjectStore:
    """Dict-backed object store; ``head_calls`` counts metadata lookups."""

    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.reported_sizes: Dict[str, int] = {}
        self.head_calls = 0
        self.get_calls = 0

    def put(self, key: str, data: bytes, reported_size: Optional[int] = None) -> None:
        self.objects[key] = data
        if reported_size is not None:
            self.reported_sizes[key] = reported_size

    async def head_object(self, key: str) -> ObjectMetadata:
        self.head_calls += 1
        if key not in self.objects:
            return ObjectMetadata(exists=False)
        size = self.reported_sizes.get(key, len(self.objects[key]))
        return ObjectMetadata(exists=True, content_length=size, content_type="image/jpeg")

    async def get_object(self, key: str) -> bytes:
        self.get_calls += 1
        return self.objects[key]

    async def generate_upload_url(self, key: str, content_type: str, expires_in: int) -> str:
        return f"https://uploads.example.test/{key}?expires={expires_in}"


def make_image_bytes(
    width: int = 600,
    height: int = 600,
    fmt: str = "JPEG",
    noise: bool = True,
) -> bytes:
    """Random-noise images are sharp and never collide on perceptual hash."""
    if noise:
        im = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    else:
        im = Image.new("RGB", (width, height), (128, 128, 128))
    buffer = io.BytesIO()
    options = {"quality": 90} if fmt == "JPEG" else {}
    im.save(buffer, format=fmt, **options)
    return buffer.getvalue()


@pytest.fixture
def settings():
    return ValidationSettings()


@pytest.fixture
def record_store():
    return InMemoryRecordStore()


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def engine(record_store, object_store, settings):
    return ValidationEngine(
        fetch_object=object_store.get_object,
        known_hashes=record_store.accepted_hashes,
        settings=settings,
    )


@pytest.fixture
def processor(record_store, object_store, engine):
    return UploadProcessor(
        record_store,
        object_store,
        engine,
        max_verification_attempts=3,
        verification_delay_ms=0,
    )


@pytest.fixture
def make_record(record_store):
    async def _make(
        image_id: str,
        status: str = STATUS_VERIFYING,
        file_size: Optional[int] = None,
        mime_type: str = "image/jpeg",
        **fields,
    ) -> ImageRecord:
        record = ImageRecord(
            id=image_id,
            key=f"uploads/{image_id}.jpg",
            filename=f"{image_id}.jpg",
            original_name="photo.jpg",
            mime_type=mime_type,
            file_size=file_size,
            status=status,
            **fields,
        )
        return await record_store.create(record)

    return _make
