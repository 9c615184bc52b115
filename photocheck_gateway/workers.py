"""Queue handlers for the two pipeline stages.

The verify stage is cheap (HEAD requests) and runs wide; the validate stage
downloads and decodes images and runs narrow. Both handlers re-read the
record before acting because a job may be delivered more than once.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict

from photocheck_runner import reasons

from .errors import NotFoundError
from .job_queue import Job, JobQueue
from .records import (
    STATUS_PROCESSING,
    STATUS_REJECTED,
    STATUS_UPLOAD_FAILED,
    STATUS_VERIFYING,
    ImageRecord,
    RecordStore,
    utcnow,
)
from .upload_processor import UploadProcessor, transition

if TYPE_CHECKING:
    from .app import GatewayConfig

logger = logging.getLogger(__name__)

VERIFY_QUEUE = "verify-upload"
VALIDATE_QUEUE = "validate-image"


class PipelineWorkers:
    def __init__(self, processor: UploadProcessor, store: RecordStore, config: "GatewayConfig"):
        self.processor = processor
        self.store = store
        self.verify_queue = JobQueue(
            VERIFY_QUEUE,
            self.handle_verify,
            concurrency=config.verify_concurrency,
            attempts=config.verify_attempts,
            backoff_delay=config.verify_backoff_delay,
            on_exhausted=self.verify_exhausted,
        )
        self.validate_queue = JobQueue(
            VALIDATE_QUEUE,
            self.handle_validate,
            concurrency=config.validate_concurrency,
            attempts=config.validate_attempts,
            backoff_delay=config.validate_backoff_delay,
            on_exhausted=self.validate_exhausted,
        )
        processor.verify_queue = self.verify_queue

    @property
    def queues(self) -> tuple:
        return (self.verify_queue, self.validate_queue)

    async def start(self) -> None:
        for queue in self.queues:
            await queue.start()
        await self.recover()

    async def recover(self) -> Dict[str, int]:
        """Re-enqueue work for records left mid-pipeline by a previous process.

        Queued jobs live in memory only, so a restart drops them. Any claim on
        a VERIFYING record belonged to the dead process and is cleared first.
        Job-id dedupe and the handlers' status guards keep this harmless when
        the jobs are in fact still pending.
        """
        verifying = await self.store.list(STATUS_VERIFYING)
        for record in verifying:
            await self.store.update_where(record.id, STATUS_VERIFYING, verification_owner=None)
            await self.verify_queue.enqueue(
                {"image_id": record.id, "key": record.key},
                job_id=f"verify-{record.id}",
            )
        processing = await self.store.list(STATUS_PROCESSING)
        for record in processing:
            await self.enqueue_validation(record)
        if verifying or processing:
            logger.info(
                f"Recovered {len(verifying)} verifying and {len(processing)} processing images after startup"
            )
        return {"verifying": len(verifying), "processing": len(processing)}

    async def stop(self) -> None:
        for queue in self.queues:
            await queue.stop()

    async def join(self) -> None:
        """Wait for both stages to drain; verify jobs feed the validate queue."""
        await self.verify_queue.join()
        await self.validate_queue.join()

    def stats(self) -> Dict[str, Any]:
        return {queue.name: queue.stats() for queue in self.queues}

    async def _load(self, image_id: str) -> ImageRecord:
        record = await self.store.get(image_id)
        if record is None:
            raise NotFoundError("Image not found", {"image_id": image_id})
        return record

    async def enqueue_validation(self, record: ImageRecord) -> Job:
        return await self.validate_queue.enqueue(
            {
                "image_id": record.id,
                "key": record.key,
                "mime_type": record.mime_type,
                "size": record.file_size or 0,
            },
            job_id=f"validate-{record.id}",
        )

    # -- verify stage ---------------------------------------------------------

    async def handle_verify(self, job: Job) -> Dict[str, Any]:
        image_id = job.payload["image_id"]
        key = job.payload["key"]
        record = await self._load(image_id)

        if record.status == STATUS_PROCESSING:
            # Verification already passed; the validate job may have been lost.
            await self.enqueue_validation(record)
            return {"status": record.status, "validation_queued": True}
        if record.status != STATUS_VERIFYING:
            logger.info(f"[{job.job_id}] Image {image_id} is {record.status}, nothing to verify")
            return {"status": record.status, "skipped": True}

        outcome = await self.processor.verify_upload(image_id, key, record.file_size)
        if not outcome.verified:
            if outcome.reason is None:
                # Another worker holds the verification claim
                return {"status": outcome.status, "skipped": True}
            return {"status": outcome.status, "verified": False, "reason": outcome.reason}

        if not await self.processor.begin_processing(image_id, outcome.content_length):
            status = await self.processor.current_status(image_id)
            logger.info(f"[{job.job_id}] Image {image_id} moved on concurrently (status={status})")
            return {"status": status, "skipped": True}

        await self.enqueue_validation(await self._load(image_id))
        return {"status": STATUS_PROCESSING, "validation_queued": True}

    async def verify_exhausted(self, job: Job, exc: BaseException) -> None:
        image_id = job.payload["image_id"]
        moved = await transition(
            self.store,
            image_id,
            STATUS_VERIFYING,
            STATUS_UPLOAD_FAILED,
            rejection_reasons=[reasons.VERIFICATION_ERROR],
            verification_owner=None,
        )
        if moved:
            logger.error(f"Verification gave up for {image_id} after {job.attempts_made} attempts: {exc}")

    # -- validate stage -------------------------------------------------------

    async def handle_validate(self, job: Job) -> Dict[str, Any]:
        image_id = job.payload["image_id"]
        record = await self._load(image_id)
        if record.status != STATUS_PROCESSING:
            logger.warning(f"[{job.job_id}] Image {image_id} is {record.status}, skipping validation")
            return {"status": record.status, "skipped": True}

        result = await self.processor.finalize(
            image_id,
            job.payload["key"],
            job.payload["mime_type"],
            int(job.payload["size"]),
        )
        return {"status": result.status, "success": result.success}

    async def validate_exhausted(self, job: Job, exc: BaseException) -> None:
        image_id = job.payload["image_id"]
        moved = await transition(
            self.store,
            image_id,
            STATUS_PROCESSING,
            STATUS_REJECTED,
            rejection_reasons=[reasons.PROCESSING_ERROR],
            processed_at=utcnow(),
        )
        if moved:
            logger.error(f"Validation gave up for {image_id} after {job.attempts_made} attempts: {exc}")
