"""Face detection seam.

Only a stub ships today. A real detector (RetinaFace, SCRFD, a cloud API)
implements ``FaceDetector`` and is passed to the validation engine; nothing
else in the pipeline has to change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from PIL import Image

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FaceDetection:
    count: int
    # Share of the frame covered by the largest face, 0..1
    dominant_face_fraction: float


class FaceDetector(Protocol):
    """Protocol for face detectors."""

    def detect_faces(self, image: Image.Image) -> FaceDetection:
        """Count faces and measure the dominant one."""
        ...


class StubFaceDetector:
    """Placeholder detector: always one face covering 30% of the frame."""

    def __init__(self, count: int = 1, dominant_face_fraction: float = 0.3) -> None:
        self._result = FaceDetection(count=count, dominant_face_fraction=dominant_face_fraction)

    def detect_faces(self, image: Image.Image) -> FaceDetection:
        logger.debug(f"Stub face detection for {image.size[0]}x{image.size[1]} image")
        return self._result
