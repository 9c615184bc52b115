"""Image records and the record store contract.

Every status change goes through ``update_where``: a write that only lands
when the row is still in one of the expected statuses (and, when ``match`` is
given, still holds those field values). That conditional
write is the only concurrency control in the pipeline; there are no
external locks.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Callable, Collection, Dict, List, Optional, Protocol, TypeVar, Union

from .errors import DatabaseError, NotFoundError

STATUS_AWAITING_UPLOAD = "AWAITING_UPLOAD"
STATUS_VERIFYING = "VERIFYING"
STATUS_PROCESSING = "PROCESSING"
STATUS_ACCEPTED = "ACCEPTED"
STATUS_REJECTED = "REJECTED"
STATUS_UPLOAD_FAILED = "UPLOAD_FAILED"

ALL_STATUSES = frozenset(
    {
        STATUS_AWAITING_UPLOAD,
        STATUS_VERIFYING,
        STATUS_PROCESSING,
        STATUS_ACCEPTED,
        STATUS_REJECTED,
        STATUS_UPLOAD_FAILED,
    }
)
TERMINAL_STATUSES = frozenset({STATUS_ACCEPTED, STATUS_REJECTED, STATUS_UPLOAD_FAILED})

T = TypeVar("T")
ExpectedStatus = Union[str, Collection[str]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ImageRecord:
    id: str
    key: str
    filename: str
    original_name: str
    mime_type: str
    file_size: Optional[int] = None
    status: str = STATUS_AWAITING_UPLOAD
    verification_attempts: int = 0
    # Token of the caller currently polling storage for this upload
    verification_owner: Optional[str] = None
    last_verification_at: Optional[datetime] = None
    upload_completed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    width: Optional[int] = None
    height: Optional[int] = None
    measured_size: Optional[int] = None
    phash: Optional[str] = None
    blur_score: Optional[float] = None
    face_count: Optional[int] = None
    face_size: Optional[float] = None
    rejection_reasons: List[str] = field(default_factory=list)
    upload_url_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "key": self.key,
            "filename": self.filename,
            "originalName": self.original_name,
            "mimeType": self.mime_type,
            "fileSize": self.file_size,
            "status": self.status,
            "verificationAttempts": self.verification_attempts,
            "lastVerificationAt": _iso(self.last_verification_at),
            "uploadCompletedAt": _iso(self.upload_completed_at),
            "processedAt": _iso(self.processed_at),
            "width": self.width,
            "height": self.height,
            "measuredSize": self.measured_size,
            "phash": self.phash,
            "blurScore": self.blur_score,
            "faceCount": self.face_count,
            "faceSize": self.face_size,
            "rejectionReasons": list(self.rejection_reasons),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


RECORD_FIELDS = frozenset(f.name for f in fields(ImageRecord))


def normalize_expected(expected: ExpectedStatus) -> List[str]:
    if isinstance(expected, str):
        return [expected]
    return list(expected)


def check_update_fields(values: Dict[str, Any]) -> None:
    unknown = set(values) - RECORD_FIELDS
    if unknown or "id" in values:
        raise ValueError(f"cannot update fields: {sorted(unknown | ({'id'} & set(values)))}")
    status = values.get("status")
    if status is not None and status not in ALL_STATUSES:
        raise ValueError(f"unknown status {status!r}")


def check_match_fields(match: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    match = dict(match or {})
    unknown = set(match) - RECORD_FIELDS
    if unknown:
        raise ValueError(f"cannot match on fields: {sorted(unknown)}")
    return match


class RecordTransaction(Protocol):
    """Operations available inside ``RecordStore.transaction``."""

    def get(self, image_id: str) -> Optional[ImageRecord]:
        ...

    def create(self, record: ImageRecord) -> ImageRecord:
        ...

    def update(self, image_id: str, **values: Any) -> ImageRecord:
        ...

    def update_where(
        self,
        image_id: str,
        expected_status: ExpectedStatus,
        match: Optional[Dict[str, Any]] = None,
        **values: Any,
    ) -> int:
        ...

    def list(self, status: Optional[str] = None) -> List[ImageRecord]:
        ...

    def accepted_hashes(self) -> List[str]:
        ...


class RecordStore(Protocol):
    """Async record store; each call runs as its own transaction."""

    async def transaction(self, fn: Callable[[RecordTransaction], T]) -> T:
        ...

    async def get(self, image_id: str) -> Optional[ImageRecord]:
        ...

    async def create(self, record: ImageRecord) -> ImageRecord:
        ...

    async def update(self, image_id: str, **values: Any) -> ImageRecord:
        ...

    async def update_where(
        self,
        image_id: str,
        expected_status: ExpectedStatus,
        match: Optional[Dict[str, Any]] = None,
        **values: Any,
    ) -> int:
        ...

    async def list(self, status: Optional[str] = None) -> List[ImageRecord]:
        ...

    async def accepted_hashes(self) -> List[str]:
        ...


class BaseRecordStore:
    """Routes every single-operation call through ``transaction``."""

    async def transaction(self, fn: Callable[[RecordTransaction], T]) -> T:
        raise NotImplementedError

    async def get(self, image_id: str) -> Optional[ImageRecord]:
        return await self.transaction(lambda tx: tx.get(image_id))

    async def create(self, record: ImageRecord) -> ImageRecord:
        return await self.transaction(lambda tx: tx.create(record))

    async def update(self, image_id: str, **values: Any) -> ImageRecord:
        return await self.transaction(lambda tx: tx.update(image_id, **values))

    async def update_where(
        self,
        image_id: str,
        expected_status: ExpectedStatus,
        match: Optional[Dict[str, Any]] = None,
        **values: Any,
    ) -> int:
        return await self.transaction(lambda tx: tx.update_where(image_id, expected_status, match, **values))

    async def list(self, status: Optional[str] = None) -> List[ImageRecord]:
        return await self.transaction(lambda tx: tx.list(status))

    async def accepted_hashes(self) -> List[str]:
        return await self.transaction(lambda tx: tx.accepted_hashes())


class _MemoryTransaction:
    def __init__(self, records: Dict[str, ImageRecord]):
        self._records = records

    def get(self, image_id: str) -> Optional[ImageRecord]:
        record = self._records.get(image_id)
        return copy.deepcopy(record) if record else None

    def create(self, record: ImageRecord) -> ImageRecord:
        if record.id in self._records:
            raise DatabaseError("Image already exists", {"image_id": record.id}, retryable=False)
        if record.status not in ALL_STATUSES:
            raise ValueError(f"unknown status {record.status!r}")
        self._records[record.id] = copy.deepcopy(record)
        return copy.deepcopy(record)

    def _apply(self, record: ImageRecord, values: Dict[str, Any]) -> None:
        for name, value in values.items():
            setattr(record, name, copy.deepcopy(value))
        record.updated_at = utcnow()

    def update(self, image_id: str, **values: Any) -> ImageRecord:
        check_update_fields(values)
        record = self._records.get(image_id)
        if record is None:
            raise NotFoundError("Image not found", {"image_id": image_id})
        self._apply(record, values)
        return copy.deepcopy(record)

    def update_where(
        self,
        image_id: str,
        expected_status: ExpectedStatus,
        match: Optional[Dict[str, Any]] = None,
        **values: Any,
    ) -> int:
        check_update_fields(values)
        match = check_match_fields(match)
        record = self._records.get(image_id)
        if record is None or record.status not in normalize_expected(expected_status):
            return 0
        if any(getattr(record, name) != value for name, value in match.items()):
            return 0
        self._apply(record, values)
        return 1

    def list(self, status: Optional[str] = None) -> List[ImageRecord]:
        records = [r for r in self._records.values() if status is None or r.status == status]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [copy.deepcopy(r) for r in records]

    def accepted_hashes(self) -> List[str]:
        return [r.phash for r in self._records.values() if r.status == STATUS_ACCEPTED and r.phash]


class InMemoryRecordStore(BaseRecordStore):
    """Process-local store. One lock serializes every transaction."""

    def __init__(self) -> None:
        self._records: Dict[str, ImageRecord] = {}
        self._lock = threading.Lock()

    async def transaction(self, fn: Callable[[RecordTransaction], T]) -> T:
        with self._lock:
            return fn(_MemoryTransaction(self._records))
