"""Validation engine: decides whether one uploaded photo is acceptable.

The engine is stateless. It receives two collaborators:

* ``fetch_object(key) -> bytes`` downloads the stored upload;
* ``known_hashes() -> iterable of hex hashes`` lists the hashes of every
  accepted image for the duplicate scan.

Checks accumulate reasons instead of stopping at the first failure. Format
and declared-size checks run before any download; when either fails the
object is never fetched and no image metadata is reported.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .config import ALLOWED_MIME_TYPES, ValidationSettings, load_validation_settings
from .core import BaseProcessor, CheckResult, run_pipeline
from .faces import FaceDetector, StubFaceDetector
from .hashing import find_duplicate
from .processors import BlockHashProcessor, BlurProcessor, FaceProcessor, ResolutionProcessor
from .reasons import DUPLICATE_IMAGE, FILE_TOO_SMALL, INVALID_FORMAT
from .utils import pil_image_from_bytes, prepare_buffer

logger = logging.getLogger(__name__)

ObjectFetcher = Callable[[str], Awaitable[bytes]]
HashSource = Callable[[], Awaitable[Iterable[Optional[str]]]]


@dataclass
class ImageMetadata:
    width: Optional[int] = None
    height: Optional[int] = None
    file_size: Optional[int] = None
    phash: Optional[str] = None
    blur_score: Optional[float] = None
    face_count: Optional[int] = None
    face_size: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ValidationResult:
    is_valid: bool
    reasons: List[str] = field(default_factory=list)
    metadata: ImageMetadata = field(default_factory=ImageMetadata)


def validate_format(mime_type: str) -> bool:
    return mime_type.lower() in ALLOWED_MIME_TYPES


def validate_file_size(size: int, settings: ValidationSettings) -> bool:
    return settings.min_file_size_bytes <= size <= settings.max_upload_size_bytes


class ValidationEngine:
    def __init__(
        self,
        fetch_object: ObjectFetcher,
        known_hashes: HashSource,
        settings: Optional[ValidationSettings] = None,
        face_detector: Optional[FaceDetector] = None,
    ) -> None:
        self.fetch_object = fetch_object
        self.known_hashes = known_hashes
        self.settings = settings or load_validation_settings()
        self.face_detector = face_detector or StubFaceDetector()

    def build_processors(self) -> List[BaseProcessor]:
        s = self.settings
        return [
            ResolutionProcessor(min_width=s.min_width, min_height=s.min_height),
            BlockHashProcessor(hash_size=s.hash_size, resolution=s.hash_resolution),
            BlurProcessor(threshold=s.blur_threshold),
            FaceProcessor(self.face_detector, min_face_fraction=s.min_face_fraction),
        ]

    def analyze(self, data: bytes, mime_type: str) -> List[CheckResult]:
        """Decode the buffer and run the per-image checks (CPU bound)."""
        buffer = prepare_buffer(data, mime_type)
        with pil_image_from_bytes(buffer) as image:
            return run_pipeline(image, self.build_processors(), {"mime_type": mime_type})

    async def validate(self, key: str, mime_type: str, size: int) -> ValidationResult:
        reasons: List[str] = []

        if not validate_format(mime_type):
            reasons.append(INVALID_FORMAT)
        if not validate_file_size(size, self.settings):
            reasons.append(FILE_TOO_SMALL)
        if reasons:
            logger.info(f"Rejected {key} before download: {reasons}")
            return ValidationResult(is_valid=False, reasons=reasons)

        data = await self.fetch_object(key)
        results = await asyncio.to_thread(self.analyze, data, mime_type)

        metadata = ImageMetadata(file_size=size)
        for result in results:
            for name, value in result.data.items():
                setattr(metadata, name, value)
            reasons.extend(result.reasons)
            if result.name == BlockHashProcessor.name and metadata.phash:
                duplicate_of = find_duplicate(
                    metadata.phash,
                    await self.known_hashes(),
                    self.settings.phash_threshold,
                )
                if duplicate_of is not None:
                    logger.info(f"{key} duplicates accepted hash {duplicate_of}")
                    reasons.append(DUPLICATE_IMAGE)

        logger.info(
            f"Validated {key}: valid={not reasons} reasons={reasons} "
            f"size={metadata.width}x{metadata.height} blur={metadata.blur_score}"
        )
        return ValidationResult(is_valid=not reasons, reasons=reasons, metadata=metadata)
