from .config import ValidationSettings, load_validation_settings
from .faces import FaceDetection, FaceDetector, StubFaceDetector
from .hashing import find_duplicate, hamming_distance
from .utils import ImageDecodeError
from .validation import ImageMetadata, ValidationEngine, ValidationResult

__all__ = [
    "FaceDetection",
    "FaceDetector",
    "ImageDecodeError",
    "ImageMetadata",
    "StubFaceDetector",
    "ValidationEngine",
    "ValidationResult",
    "ValidationSettings",
    "find_duplicate",
    "hamming_distance",
    "load_validation_settings",
]
