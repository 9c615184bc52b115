"""In-process durable-style job queue with retries and exponential backoff.

Each ``JobQueue`` owns its own worker tasks, so the cheap verify work and
the expensive validate work scale independently. Delivery is at-least-once:
handlers must check record state before acting.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .errors import to_app_error

logger = logging.getLogger(__name__)

STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_DONE = "done"
STATUS_FAILED = "failed"

PENDING_STATUSES = (STATUS_QUEUED, STATUS_RUNNING)


@dataclass
class Job:
    job_id: str
    queue_name: str
    payload: Dict[str, Any]
    max_attempts: int
    attempts_made: int = 0
    status: str = STATUS_QUEUED
    error: Optional[str] = None
    result: Any = None
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made >= self.max_attempts

    def touch(self, status: Optional[str] = None, error: Optional[str] = None) -> None:
        if status:
            self.status = status
        if error is not None:
            self.error = error
        self.updated_at = datetime.now(timezone.utc)


JobHandler = Callable[[Job], Awaitable[Any]]
ExhaustedHandler = Callable[[Job, BaseException], Awaitable[None]]


class JobQueue:
    def __init__(
        self,
        name: str,
        handler: JobHandler,
        concurrency: int = 1,
        attempts: int = 1,
        backoff_delay: float = 1.0,
        on_exhausted: Optional[ExhaustedHandler] = None,
        retain: int = 1000,
    ):
        """
        Initialize a named queue.

        Args:
            name: Queue name used in logs and job records
            handler: Coroutine run for each job
            concurrency: Number of worker tasks
            attempts: Total attempts per job (first run included)
            backoff_delay: Base delay in seconds; doubles after every failure
            on_exhausted: Awaited once a job fails for good
            retain: Finished jobs kept for inspection
        """
        self.name = name
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.attempts = max(1, attempts)
        self.backoff_delay = backoff_delay
        self.on_exhausted = on_exhausted
        self.retain = retain
        self.jobs: Dict[str, Job] = {}
        self.workers: List[asyncio.Task] = []
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._retries: Set[asyncio.Task] = set()

    def backoff_for(self, attempts_made: int) -> float:
        return self.backoff_delay * (2 ** (attempts_made - 1))

    async def enqueue(self, payload: Dict[str, Any], job_id: Optional[str] = None) -> Job:
        """Add a job. A pending job with the same id is returned instead of duplicated."""
        job_id = job_id or uuid.uuid4().hex
        existing = self.jobs.get(job_id)
        if existing is not None and existing.status in PENDING_STATUSES:
            logger.info(f"[{self.name}] Job {job_id} already pending, not enqueuing again")
            return existing

        job = Job(job_id=job_id, queue_name=self.name, payload=dict(payload), max_attempts=self.attempts)
        self.jobs[job_id] = job
        await self._queue.put(job_id)
        logger.info(f"[{self.name}] Queued job {job_id}")
        return job

    async def start(self) -> None:
        for _ in range(self.concurrency - len(self.workers)):
            self.workers.append(asyncio.create_task(self._worker_loop()))
        logger.info(f"[{self.name}] Started {len(self.workers)} workers")

    async def stop(self) -> None:
        tasks = [*self.workers, *self._retries]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.workers.clear()
        self._retries.clear()
        logger.info(f"[{self.name}] Stopped")

    async def join(self) -> None:
        """Wait until every job, including scheduled retries, has settled."""
        while True:
            await self._queue.join()
            if not self._retries:
                return
            await asyncio.gather(*list(self._retries), return_exceptions=True)

    def stats(self) -> Dict[str, Any]:
        counts = {status: 0 for status in (STATUS_QUEUED, STATUS_RUNNING, STATUS_DONE, STATUS_FAILED)}
        for job in self.jobs.values():
            counts[job.status] += 1
        return {
            "size": self._queue.qsize(),
            "total_jobs": len(self.jobs),
            **counts,
            "workers": len(self.workers),
            "workers_alive": sum(1 for worker in self.workers if not worker.done()),
            "concurrency": self.concurrency,
        }

    async def _worker_loop(self) -> None:
        while True:
            try:
                job_id = await self._queue.get()
            except asyncio.CancelledError:
                break
            job = self.jobs.get(job_id)
            if job is None:
                self._queue.task_done()
                continue
            try:
                await self.run_job(job)
            finally:
                self._queue.task_done()

    async def run_job(self, job: Job) -> None:
        job.attempts_made += 1
        job.touch(status=STATUS_RUNNING)
        try:
            result = await self.handler(job)
        except Exception as exc:  # noqa: BLE001
            error = to_app_error(exc)
            logger.error(
                f"[{self.name}] Job {job.job_id} failed "
                f"(attempt {job.attempts_made}/{job.max_attempts}, code={error.code}): {exc}"
            )
            if error.retryable and not job.is_final_attempt:
                delay = self.backoff_for(job.attempts_made)
                job.touch(status=STATUS_QUEUED, error=str(exc))
                self._schedule_retry(job, delay)
            else:
                job.touch(status=STATUS_FAILED, error=str(exc))
                await self._handle_exhausted(job, exc)
        else:
            job.result = result
            job.touch(status=STATUS_DONE)
            logger.info(f"[{self.name}] Job {job.job_id} completed")
        self._prune()

    def _schedule_retry(self, job: Job, delay: float) -> None:
        logger.info(f"[{self.name}] Retrying job {job.job_id} in {delay:.2f}s")

        async def _requeue() -> None:
            await asyncio.sleep(delay)
            await self._queue.put(job.job_id)

        task = asyncio.create_task(_requeue())
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)

    async def _handle_exhausted(self, job: Job, exc: BaseException) -> None:
        if self.on_exhausted is None:
            return
        try:
            await self.on_exhausted(job, exc)
        except Exception:  # noqa: BLE001
            logger.exception(f"[{self.name}] Exhaustion handler failed for job {job.job_id}")

    def _prune(self) -> None:
        finished = [job for job in self.jobs.values() if job.status not in PENDING_STATUSES]
        overflow = len(finished) - self.retain
        if overflow <= 0:
            return
        finished.sort(key=lambda job: job.updated_at)
        for job in finished[:overflow]:
            del self.jobs[job.job_id]
