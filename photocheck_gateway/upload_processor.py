"""Image lifecycle state machine.

    AWAITING_UPLOAD -> VERIFYING -> PROCESSING -> ACCEPTED | REJECTED
                       VERIFYING -> UPLOAD_FAILED | REJECTED
                                    PROCESSING -> UPLOAD_FAILED | REJECTED

Every transition is a single conditional write (``transition``). A write
that affects no row means another caller got there first; the loser re-reads
the record and answers with its current status instead of raising.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from photocheck_runner import reasons
from photocheck_runner.validation import ValidationEngine

from .errors import NotFoundError, StateTransitionError, to_app_error
from .object_store import ObjectMetadata, ObjectStore, verify_with_retry, within_size_tolerance
from .records import (
    STATUS_ACCEPTED,
    STATUS_AWAITING_UPLOAD,
    STATUS_PROCESSING,
    STATUS_REJECTED,
    STATUS_UPLOAD_FAILED,
    STATUS_VERIFYING,
    ExpectedStatus,
    RecordStore,
    RecordTransaction,
    normalize_expected,
    utcnow,
)

if TYPE_CHECKING:
    from .job_queue import JobQueue

logger = logging.getLogger(__name__)

LEGAL_TRANSITIONS = frozenset(
    {
        (STATUS_AWAITING_UPLOAD, STATUS_VERIFYING),
        (STATUS_VERIFYING, STATUS_PROCESSING),
        (STATUS_VERIFYING, STATUS_UPLOAD_FAILED),
        (STATUS_VERIFYING, STATUS_REJECTED),
        (STATUS_PROCESSING, STATUS_ACCEPTED),
        (STATUS_PROCESSING, STATUS_REJECTED),
        (STATUS_PROCESSING, STATUS_UPLOAD_FAILED),
    }
)


async def transition(
    store: RecordStore,
    image_id: str,
    from_status: ExpectedStatus,
    to_status: str,
    **extra: Any,
) -> bool:
    """Compare-and-swap the record status; True when this caller won.

    An edge outside the state machine raises ``StateTransitionError`` before
    anything is written.
    """
    for current in normalize_expected(from_status):
        if (current, to_status) not in LEGAL_TRANSITIONS:
            raise StateTransitionError(
                f"Illegal transition {current} -> {to_status}",
                {"image_id": image_id, "from": current, "to": to_status},
            )
    rows = await store.update_where(image_id, from_status, status=to_status, **extra)
    return rows == 1


@dataclass
class InitiateResult:
    started: bool
    status: str


@dataclass
class ProcessResult:
    success: bool
    status: str


@dataclass
class VerifyOutcome:
    verified: bool
    status: str
    # True when this call wrote the UPLOAD_FAILED outcome itself
    applied: bool = False
    content_length: Optional[int] = None
    reason: Optional[str] = None


class UploadProcessor:
    def __init__(
        self,
        store: RecordStore,
        object_store: ObjectStore,
        engine: ValidationEngine,
        verify_queue: Optional["JobQueue"] = None,
        max_verification_attempts: int = 3,
        verification_delay_ms: int = 5000,
        size_tolerance: float = 0.02,
    ):
        self.store = store
        self.object_store = object_store
        self.engine = engine
        self.verify_queue = verify_queue
        self.max_verification_attempts = max_verification_attempts
        self.verification_delay_ms = verification_delay_ms
        self.size_tolerance = size_tolerance

    async def current_status(self, image_id: str) -> str:
        record = await self.store.get(image_id)
        if record is None:
            raise NotFoundError("Image not found", {"image_id": image_id})
        return record.status

    # -- Entry points --------------------------------------------------------

    async def initiate_verification(self, image_id: str) -> InitiateResult:
        """Move an uploaded image into verification and queue the verify job.

        Safe under any number of concurrent calls: exactly one caller sees
        ``started=True``; the others get the record's current status.
        """
        if self.verify_queue is None:
            raise RuntimeError("verify queue not configured")

        moved = await transition(
            self.store,
            image_id,
            STATUS_AWAITING_UPLOAD,
            STATUS_VERIFYING,
            upload_completed_at=utcnow(),
        )
        if not moved:
            status = await self.current_status(image_id)
            logger.info(f"Image {image_id} already past upload (status={status}), idempotent response")
            return InitiateResult(started=False, status=status)

        record = await self.store.get(image_id)
        if record is None:
            raise NotFoundError("Image not found after state update", {"image_id": image_id})

        await self.verify_queue.enqueue(
            {"image_id": record.id, "key": record.key},
            job_id=f"verify-{record.id}",
        )
        logger.info(f"Image {image_id} moved to VERIFYING, verification queued")
        return InitiateResult(started=True, status=STATUS_VERIFYING)

    async def process_verification(self, image_id: str, key: str, mime_type: str, size: int) -> ProcessResult:
        """Run verify -> process -> finalize inline for one image.

        Only a record sitting in VERIFYING is worked on. Duplicate or
        concurrent invocations lose the verification claim (or the
        VERIFYING -> PROCESSING swap) and return ``success=False`` with the
        status they found, without touching storage or the record.
        """
        record = await self.store.get(image_id)
        if record is None:
            raise NotFoundError("Image not found", {"image_id": image_id})
        if record.status != STATUS_VERIFYING:
            logger.info(f"Image {image_id} not in VERIFYING (status={record.status}), skipping")
            return ProcessResult(success=False, status=record.status)

        logger.info(f"Starting verification pipeline for {image_id} ({key}, {mime_type}, {size} bytes)")
        try:
            outcome = await self.verify_upload(image_id, key, size)
            if not outcome.verified:
                return ProcessResult(success=outcome.applied, status=outcome.status)

            if not await self.begin_processing(image_id, outcome.content_length):
                status = await self.current_status(image_id)
                logger.warning(f"Image {image_id} already processing or processed (status={status})")
                return ProcessResult(success=False, status=status)

            return await self.finalize(image_id, key, mime_type, size)
        except Exception as exc:  # noqa: BLE001
            return await self.fail_processing(image_id, exc)

    # -- Building blocks shared with the queue workers ------------------------

    async def claim_verification(self, image_id: str) -> Optional[str]:
        """Take exclusive ownership of the storage poll for a VERIFYING record.

        Returns the owner token, or None when the record is not VERIFYING or
        another caller already holds it.
        """
        token = uuid.uuid4().hex
        rows = await self.store.update_where(
            image_id,
            STATUS_VERIFYING,
            match={"verification_owner": None},
            verification_owner=token,
        )
        return token if rows == 1 else None

    async def release_verification(self, image_id: str, token: str) -> bool:
        rows = await self.store.update_where(
            image_id,
            STATUS_VERIFYING,
            match={"verification_owner": token},
            verification_owner=None,
        )
        return rows == 1

    async def record_verification_attempt(self, image_id: str, token: Optional[str] = None) -> bool:
        def _increment(tx: RecordTransaction) -> int:
            record = tx.get(image_id)
            if record is None or record.status != STATUS_VERIFYING:
                return 0
            return tx.update_where(
                image_id,
                STATUS_VERIFYING,
                {"verification_owner": token} if token else None,
                verification_attempts=record.verification_attempts + 1,
                last_verification_at=utcnow(),
            )

        return await self.store.transaction(_increment) == 1

    async def verify_upload(self, image_id: str, key: str, declared_size: Optional[int]) -> VerifyOutcome:
        """Confirm the object exists and matches the declared size.

        Writes UPLOAD_FAILED when the object never shows up or its size is
        off by more than the tolerance. Only the caller holding the
        verification claim polls storage; everyone else returns at once with
        the record's current status and ``reason=None``.
        """
        token = await self.claim_verification(image_id)
        if token is None:
            status = await self.current_status(image_id)
            logger.info(f"Image {image_id} is already being verified or has moved on (status={status})")
            return VerifyOutcome(verified=False, status=status)

        async def _on_attempt(attempt: int, metadata: ObjectMetadata) -> None:
            await self.record_verification_attempt(image_id, token)

        try:
            metadata = await verify_with_retry(
                self.object_store,
                key,
                max_attempts=self.max_verification_attempts,
                delay_ms=self.verification_delay_ms,
                on_attempt=_on_attempt,
            )
        except Exception:
            await self.release_verification(image_id, token)
            raise

        if not metadata.exists:
            logger.error(f"Upload verification failed for {image_id}: {key} not found after retries")
            return await self._fail_upload(image_id, reasons.UPLOAD_VERIFICATION_FAILED)

        if not within_size_tolerance(declared_size, metadata.content_length, self.size_tolerance):
            logger.error(
                f"File size mismatch for {image_id}: expected {declared_size} bytes, "
                f"got {metadata.content_length} bytes"
            )
            return await self._fail_upload(
                image_id,
                reasons.FILE_SIZE_MISMATCH,
                measured_size=metadata.content_length,
            )

        logger.info(f"Upload verified for {image_id} ({metadata.content_length} bytes)")
        return VerifyOutcome(verified=True, status=STATUS_VERIFYING, content_length=metadata.content_length)

    async def _fail_upload(self, image_id: str, reason: str, **extra: Any) -> VerifyOutcome:
        applied = await transition(
            self.store,
            image_id,
            STATUS_VERIFYING,
            STATUS_UPLOAD_FAILED,
            rejection_reasons=[reason],
            verification_owner=None,
            **extra,
        )
        if applied:
            return VerifyOutcome(verified=False, status=STATUS_UPLOAD_FAILED, applied=True, reason=reason)
        status = await self.current_status(image_id)
        logger.warning(f"Image {image_id} left VERIFYING before it could be marked failed (status={status})")
        return VerifyOutcome(verified=False, status=status, reason=reason)

    async def begin_processing(self, image_id: str, measured_size: Optional[int] = None) -> bool:
        return await transition(
            self.store,
            image_id,
            STATUS_VERIFYING,
            STATUS_PROCESSING,
            measured_size=measured_size,
            verification_owner=None,
        )

    async def finalize(self, image_id: str, key: str, mime_type: str, size: int) -> ProcessResult:
        """Validate the stored image and write the terminal status with its measurements."""
        result = await self.engine.validate(key, mime_type, size)
        final_status = STATUS_ACCEPTED if result.is_valid else STATUS_REJECTED
        meta = result.metadata

        moved = await transition(
            self.store,
            image_id,
            STATUS_PROCESSING,
            final_status,
            rejection_reasons=list(result.reasons),
            width=meta.width,
            height=meta.height,
            phash=meta.phash,
            blur_score=meta.blur_score,
            face_count=meta.face_count,
            face_size=meta.face_size,
            processed_at=utcnow(),
        )
        if not moved:
            status = await self.current_status(image_id)
            logger.warning(f"State of {image_id} changed during validation (status={status}), result dropped")
            return ProcessResult(success=False, status=status)

        logger.info(f"Processing complete for {image_id}: {final_status} {result.reasons}")
        return ProcessResult(success=True, status=final_status)

    async def fail_processing(self, image_id: str, exc: BaseException) -> ProcessResult:
        error = to_app_error(exc)
        logger.error(f"Error during verification/validation of {image_id}: [{error.code}] {error.message}")

        moved = await transition(
            self.store,
            image_id,
            (STATUS_VERIFYING, STATUS_PROCESSING),
            STATUS_REJECTED,
            rejection_reasons=[reasons.PROCESSING_ERROR],
            verification_owner=None,
            processed_at=utcnow(),
        )
        if not moved:
            status = await self.current_status(image_id)
            logger.warning(f"Image {image_id} already final (status={status}), error not recorded")
            return ProcessResult(success=False, status=status)
        return ProcessResult(success=True, status=STATUS_REJECTED)


