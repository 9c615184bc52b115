from __future__ import annotations

import io
from typing import Optional

from PIL import Image, UnidentifiedImageError
from pillow_heif import register_heif_opener

register_heif_opener()

HEIC_MIME_TYPES = ("image/heic", "image/heif")


class ImageDecodeError(ValueError):
    """Raised when downloaded bytes cannot be decoded as an image."""


def transcode_heic(data: bytes, quality: int = 90) -> bytes:
    """Re-encode a HEIC buffer as JPEG so every later step sees a plain raster."""
    try:
        with Image.open(io.BytesIO(data)) as im:
            rgb = im.convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageDecodeError(f"unable to decode HEIC image: {exc}") from exc
    buffer = io.BytesIO()
    rgb.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def prepare_buffer(data: bytes, mime_type: str) -> bytes:
    if mime_type.lower() in HEIC_MIME_TYPES:
        return transcode_heic(data)
    return data


def pil_image_from_bytes(data: bytes) -> Image.Image:
    try:
        im = Image.open(io.BytesIO(data))
        # Force decode so truncated files fail here rather than mid-analysis
        im.load()
        return im
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageDecodeError(f"unable to decode image: {exc}") from exc


def ensure_rgb(im: Image.Image) -> Optional[Image.Image]:
    if im.mode == "RGB":
        return im
    try:
        return im.convert("RGB")
    except ValueError:
        return None
