"""End-to-end tests for the verify and validate queue stages."""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from conftest import make_image_bytes
from photocheck_gateway.app import GatewayConfig
from photocheck_gateway.errors import StorageError
from photocheck_gateway.job_queue import STATUS_DONE, STATUS_FAILED
from photocheck_gateway.records import (
    STATUS_ACCEPTED,
    STATUS_AWAITING_UPLOAD,
    STATUS_PROCESSING,
    STATUS_REJECTED,
    STATUS_UPLOAD_FAILED,
    STATUS_VERIFYING,
)
from photocheck_gateway.workers import PipelineWorkers
from photocheck_runner import reasons


@pytest.fixture
def config():
    return GatewayConfig(
        verify_concurrency=4,
        verify_attempts=3,
        verify_backoff_delay=0.01,
        validate_concurrency=2,
        validate_attempts=2,
        validate_backoff_delay=0.01,
    )


@pytest_asyncio.fixture
async def workers(processor, record_store, config):
    pipeline = PipelineWorkers(processor, record_store, config)
    await pipeline.start()
    yield pipeline
    await pipeline.stop()


@pytest.mark.asyncio
async def test_uploaded_image_flows_to_accepted(workers, processor, make_record, object_store, record_store):
    data = make_image_bytes()
    await make_record("img-1", status=STATUS_AWAITING_UPLOAD, file_size=len(data))
    object_store.put("uploads/img-1.jpg", data)

    result = await processor.initiate_verification("img-1")
    await workers.join()

    assert result.started is True
    record = await record_store.get("img-1")
    assert record.status == STATUS_ACCEPTED
    assert record.width == 600
    assert workers.verify_queue.jobs["verify-img-1"].status == STATUS_DONE
    assert workers.validate_queue.jobs["validate-img-1"].status == STATUS_DONE


@pytest.mark.asyncio
async def test_missing_upload_ends_in_upload_failed(workers, processor, make_record, record_store):
    await make_record("img-1", status=STATUS_AWAITING_UPLOAD, file_size=120_000)

    await processor.initiate_verification("img-1")
    await workers.join()

    record = await record_store.get("img-1")
    assert record.status == STATUS_UPLOAD_FAILED
    assert record.rejection_reasons == [reasons.UPLOAD_VERIFICATION_FAILED]
    assert record.verification_attempts == 3
    assert "validate-img-1" not in workers.validate_queue.jobs


@pytest.mark.asyncio
async def test_storage_outage_exhausts_verify_job(workers, processor, make_record, object_store, record_store):
    await make_record("img-1", status=STATUS_AWAITING_UPLOAD, file_size=120_000)
    object_store.head_object = AsyncMock(side_effect=StorageError("bucket unavailable"))

    await processor.initiate_verification("img-1")
    await workers.join()

    job = workers.verify_queue.jobs["verify-img-1"]
    assert job.status == STATUS_FAILED
    assert job.attempts_made == 3
    record = await record_store.get("img-1")
    assert record.status == STATUS_UPLOAD_FAILED
    assert record.rejection_reasons == [reasons.VERIFICATION_ERROR]


@pytest.mark.asyncio
async def test_corrupt_image_exhausts_validate_job(workers, processor, make_record, object_store, record_store):
    await make_record("img-1", status=STATUS_AWAITING_UPLOAD, file_size=120_000)
    object_store.put("uploads/img-1.jpg", b"\xff\xd8" + b"\x00" * 119_998)

    await processor.initiate_verification("img-1")
    await workers.join()

    job = workers.validate_queue.jobs["validate-img-1"]
    assert job.status == STATUS_FAILED
    assert job.attempts_made == 1
    record = await record_store.get("img-1")
    assert record.status == STATUS_REJECTED
    assert record.rejection_reasons == [reasons.PROCESSING_ERROR]


@pytest.mark.asyncio
async def test_verify_job_for_processing_record_requeues_validation(workers, make_record, object_store, record_store):
    data = make_image_bytes()
    await make_record("img-1", status=STATUS_PROCESSING, file_size=len(data))
    object_store.put("uploads/img-1.jpg", data)

    await workers.verify_queue.enqueue({"image_id": "img-1", "key": "uploads/img-1.jpg"}, job_id="verify-img-1")
    await workers.join()

    assert object_store.head_calls == 0
    assert (await record_store.get("img-1")).status == STATUS_ACCEPTED


@pytest.mark.asyncio
async def test_redelivered_jobs_leave_terminal_records_alone(workers, make_record, object_store, record_store):
    await make_record("img-1", status=STATUS_ACCEPTED, width=1000, height=1000)
    before = await record_store.get("img-1")

    await workers.verify_queue.enqueue({"image_id": "img-1", "key": "uploads/img-1.jpg"})
    await workers.validate_queue.enqueue(
        {"image_id": "img-1", "key": "uploads/img-1.jpg", "mime_type": "image/jpeg", "size": 100_000}
    )
    await workers.join()

    assert await record_store.get("img-1") == before
    assert object_store.head_calls == 0
    assert object_store.get_calls == 0


@pytest.mark.asyncio
async def test_validate_skips_records_still_verifying(workers, make_record, object_store, record_store):
    await make_record("img-1", status=STATUS_VERIFYING, file_size=100_000)

    job = await workers.validate_queue.enqueue(
        {"image_id": "img-1", "key": "uploads/img-1.jpg", "mime_type": "image/jpeg", "size": 100_000}
    )
    await workers.join()

    assert job.result == {"status": STATUS_VERIFYING, "skipped": True}
    assert object_store.get_calls == 0


@pytest.mark.asyncio
async def test_stats_report_both_queues(workers):
    stats = workers.stats()

    assert set(stats) == {"verify-upload", "validate-image"}
    assert stats["verify-upload"]["workers_alive"] == 4
    assert stats["validate-image"]["concurrency"] == 2


@pytest.mark.asyncio
async def test_start_requeues_records_stranded_by_a_restart(
    processor, record_store, make_record, object_store, config
):
    stranded = [("verifying", STATUS_VERIFYING, "dead-worker"), ("processing", STATUS_PROCESSING, None)]
    for image_id, status, owner in stranded:
        data = make_image_bytes()
        await make_record(image_id, status=status, file_size=len(data), verification_owner=owner)
        object_store.put(f"uploads/{image_id}.jpg", data)
    await make_record("done", status=STATUS_ACCEPTED, width=1000, height=1000)

    pipeline = PipelineWorkers(processor, record_store, config)
    await pipeline.start()
    try:
        await pipeline.join()
        resumed = await processor.initiate_verification("verifying")
    finally:
        await pipeline.stop()

    assert (await record_store.get("verifying")).status == STATUS_ACCEPTED
    assert (await record_store.get("processing")).status == STATUS_ACCEPTED
    assert resumed.started is False
    assert resumed.status == STATUS_ACCEPTED
    assert "verify-done" not in pipeline.verify_queue.jobs
    assert "validate-done" not in pipeline.validate_queue.jobs


@pytest.mark.asyncio
async def test_redelivered_verify_job_while_claimed_is_skipped(
    workers, processor, make_record, object_store, record_store
):
    await make_record("img-1", file_size=100_000)
    await processor.claim_verification("img-1")

    job = await workers.verify_queue.enqueue({"image_id": "img-1", "key": "uploads/img-1.jpg"})
    await workers.join()

    assert job.result == {"status": STATUS_VERIFYING, "skipped": True}
    assert object_store.head_calls == 0
    assert (await record_store.get("img-1")).verification_attempts == 0
