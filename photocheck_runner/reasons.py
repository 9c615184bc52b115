"""Rejection reason codes persisted on image records (wire-visible strings)."""

from __future__ import annotations

INVALID_FORMAT = "INVALID_FORMAT"
FILE_TOO_SMALL = "FILE_TOO_SMALL"
RESOLUTION_TOO_LOW = "RESOLUTION_TOO_LOW"
DUPLICATE_IMAGE = "DUPLICATE_IMAGE"
IMAGE_TOO_BLURRY = "IMAGE_TOO_BLURRY"
FACE_TOO_SMALL = "FACE_TOO_SMALL"
MULTIPLE_FACES = "MULTIPLE_FACES"
UPLOAD_VERIFICATION_FAILED = "UPLOAD_VERIFICATION_FAILED"
FILE_SIZE_MISMATCH = "FILE_SIZE_MISMATCH"
PROCESSING_ERROR = "PROCESSING_ERROR"
VERIFICATION_ERROR = "VERIFICATION_ERROR"
