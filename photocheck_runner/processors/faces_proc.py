from __future__ import annotations

from typing import Any, Dict

from PIL import Image

from ..core import BaseProcessor, CheckResult
from ..faces import FaceDetector
from ..reasons import FACE_TOO_SMALL, MULTIPLE_FACES


class FaceProcessor(BaseProcessor):
    name = "faces"
    description = "Flags frames with several faces or a face too small to use."

    def __init__(self, detector: FaceDetector, min_face_fraction: float = 0.1) -> None:
        self.detector = detector
        self.min_face_fraction = min_face_fraction

    def run(self, image: Image.Image, context: Dict[str, Any]) -> CheckResult:
        detection = self.detector.detect_faces(image)
        result = CheckResult(
            name=self.name,
            data={
                "face_count": detection.count,
                "face_size": detection.dominant_face_fraction,
            },
        )
        if detection.count > 1:
            result.reasons.append(MULTIPLE_FACES)
        if detection.dominant_face_fraction < self.min_face_fraction:
            result.reasons.append(FACE_TOO_SMALL)
        return result
