"""In-process video job queue.

Submissions go onto a channel of job ids consumed by a bounded pool of worker
tasks. Workers never touch the store directly: they publish lifecycle events
on a second channel, and one recorder task applies every mutation through
``_transition``. That makes the recorder the single writer for job records.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from config import settings
from services.errors import AcquisitionError, CancelledFailure, NotFoundFailure
from services.job_store import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    InMemoryJobStore,
    Job,
    JobStore,
    SqlJobStore,
    utcnow,
)

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job, Callable[[], bool]], Awaitable[Dict[str, Any]]]
UrlValidator = Callable[[str], str]


class JobStateError(RuntimeError):
    """Raised when a job is asked to make a transition its state machine forbids."""


@dataclass
class _JobEvent:
    kind: str
    job_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    done: Optional[asyncio.Future] = None


def _transition(job: Job, status: str) -> None:
    if status not in ALLOWED_TRANSITIONS.get(job.status, ()):
        raise JobStateError(f"Job {job.id} cannot move from {job.status} to {status}")
    job.status = status
    job.updated_at = utcnow()
    if status in TERMINAL_STATUSES:
        job.completed_at = job.updated_at


def _failure_code(exc: Optional[BaseException]) -> str:
    if isinstance(exc, AcquisitionError):
        return exc.error_code
    return "download_failed"


class VideoJobQueue:
    """Bounded-concurrency download queue with retries and retention."""

    def __init__(
        self,
        handler: JobHandler,
        store: Optional[JobStore] = None,
        *,
        validator: Optional[UrlValidator] = None,
        concurrency: int = 3,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        min_processing_seconds: float = 0.0,
        retention_hours: float = 4,
        max_terminal_jobs: int = 500,
    ):
        self.handler = handler
        self.store = store or InMemoryJobStore()
        self.validator = validator
        self.concurrency = max(int(concurrency), 1)
        self.max_attempts = max(int(max_attempts), 1)
        self.retry_base_delay = max(float(retry_base_delay), 0.0)
        self.min_processing_seconds = max(float(min_processing_seconds), 0.0)
        self.retention = timedelta(hours=retention_hours)
        self.max_terminal_jobs = max(int(max_terminal_jobs), 0)

        self._submissions: Optional[asyncio.Queue] = None
        self._events: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._recorder_task: Optional[asyncio.Task] = None
        self._claimed: Set[str] = set()
        self._cancelled: Set[str] = set()
        self._start_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._recorder_task is not None and not self._recorder_task.done()

    async def start(self) -> None:
        """Start the recorder and workers, then recover jobs left by a previous process."""
        async with self._start_lock:
            if self.running:
                return
            self._submissions = asyncio.Queue()
            self._events = asyncio.Queue()
            self._recorder_task = asyncio.create_task(self._recorder(), name="video-queue-recorder")
            self._workers = [
                asyncio.create_task(self._worker(index), name=f"video-queue-worker-{index}")
                for index in range(self.concurrency)
            ]
            requeued = await self._emit("recover")
            for job_id in requeued:
                self._submissions.put_nowait(job_id)
            logger.info(
                "Video job queue started with %d workers (%d jobs re-enqueued)",
                self.concurrency, len(requeued),
            )

    async def stop(self) -> None:
        tasks = list(self._workers)
        if self._recorder_task is not None:
            tasks.append(self._recorder_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._events is not None:
            while not self._events.empty():
                event = self._events.get_nowait()
                if event.done is not None and not event.done.done():
                    event.done.cancel()
        self._workers = []
        self._recorder_task = None
        self._claimed.clear()
        logger.info("Video job queue stopped")

    async def drain(self) -> None:
        """Wait until every submitted job id has been taken through a worker."""
        if self._submissions is not None:
            await self._submissions.join()

    async def submit(self, source_url: str) -> str:
        """Create a pending job and schedule it. Returns the job id.

        Validation errors are raised here and never create a job. A URL that
        already has an active job returns that job's id.
        """
        source_url = (source_url or "").strip()
        platform = self.validator(source_url) if self.validator else "unknown"
        if not self.running:
            await self.start()

        job = Job(
            id=str(uuid.uuid4()),
            source_url=source_url,
            platform=platform,
            max_attempts=self.max_attempts,
        )
        job_id, created = await self._emit("create", payload={"job": job})
        if created:
            self._submissions.put_nowait(job_id)
            logger.info("Queued video job %s for %s", job_id, source_url)
        else:
            logger.info("Reusing active video job %s for %s", job_id, source_url)
        return job_id

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.store.get(job_id)

    async def get_active_jobs(self) -> List[Job]:
        return [job for job in await self.store.list_jobs() if job.status in ACTIVE_STATUSES]

    async def get_stats(self) -> Dict[str, int]:
        stats = {"total": 0, "pending": 0, "processing": 0, "completed": 0, "failed": 0}
        for job in await self.store.list_jobs():
            stats["total"] += 1
            stats[job.status] += 1
        return stats

    async def cancel(self, job_id: str) -> Job:
        """Flag a job for cancellation; workers honour it between steps."""
        if not self.running:
            await self.start()
        job = await self._emit("cancel", job_id)
        if job is None:
            raise NotFoundFailure(f"Video job {job_id} not found")
        if not job.is_terminal:
            self._cancelled.add(job_id)
        return job

    async def cleanup(self) -> int:
        """Evict expired and excess terminal jobs. Returns the number removed."""
        if not self.running:
            return 0
        return await self._emit("evict")

    async def _emit(self, kind: str, job_id: Optional[str] = None, payload: Optional[Dict[str, Any]] = None):
        future = asyncio.get_running_loop().create_future()
        await self._events.put(_JobEvent(kind=kind, job_id=job_id, payload=payload or {}, done=future))
        return await future

    async def _recorder(self) -> None:
        while True:
            event = await self._events.get()
            try:
                outcome = await self._apply(event)
            except asyncio.CancelledError:
                if event.done is not None and not event.done.done():
                    event.done.cancel()
                raise
            except Exception as exc:
                if event.done is not None and not event.done.done():
                    event.done.set_exception(exc)
            else:
                if event.done is not None and not event.done.done():
                    event.done.set_result(outcome)
            finally:
                self._events.task_done()

    async def _apply(self, event: _JobEvent) -> Any:
        if event.kind == "create":
            job: Job = event.payload["job"]
            for existing in await self.store.list_jobs():
                if existing.source_url == job.source_url and existing.status in ACTIVE_STATUSES:
                    return existing.id, False
            await self.store.put(job)
            return job.id, True

        if event.kind == "evict":
            return await self._evict()

        if event.kind == "recover":
            return await self._recover()

        job = await self.store.get(event.job_id)
        if job is None:
            if event.kind == "cancel":
                return None
            raise NotFoundFailure(f"Video job {event.job_id} not found")

        if event.kind == "start":
            _transition(job, "processing")
        elif event.kind == "attempt":
            job.attempts += 1
            job.updated_at = utcnow()
        elif event.kind == "cancel":
            if not job.is_terminal and not job.cancel_requested:
                job.cancel_requested = True
                job.updated_at = utcnow()
            else:
                return job
        elif event.kind == "finish":
            _transition(job, event.payload["status"])
            job.result = event.payload.get("result")
            job.error = event.payload.get("error")
            job.error_code = event.payload.get("error_code")
        else:
            raise ValueError(f"Unknown job event {event.kind}")

        await self.store.put(job)
        if job.is_terminal:
            await self._evict()
        return job.snapshot()

    async def _recover(self) -> List[str]:
        requeue: List[str] = []
        interrupted: List[Job] = []
        for job in await self.store.list_jobs():
            if job.status == "pending":
                requeue.append(job.id)
            elif job.status == "processing":
                _transition(job, "failed")
                job.error = "Job was interrupted by a service restart"
                job.error_code = "interrupted"
                interrupted.append(job)
        if interrupted:
            await self.store.put_many(interrupted)
            logger.warning("Marked %d interrupted video jobs as failed", len(interrupted))
        return requeue

    async def _evict(self) -> int:
        now = utcnow()
        terminal = [job for job in await self.store.list_jobs() if job.is_terminal]
        terminal.sort(key=lambda j: j.completed_at or j.updated_at)

        expired = [job.id for job in terminal if now - (job.completed_at or job.updated_at) > self.retention]
        expired_ids = set(expired)
        kept = [job for job in terminal if job.id not in expired_ids]
        overflow = len(kept) - self.max_terminal_jobs
        if overflow > 0:
            expired.extend(job.id for job in kept[:overflow])

        if not expired:
            return 0
        removed = await self.store.delete(expired)
        logger.info("Evicted %d terminal video jobs", removed)
        return removed

    async def _worker(self, index: int) -> None:
        while True:
            job_id = await self._submissions.get()
            try:
                if job_id in self._claimed:
                    continue
                self._claimed.add(job_id)
                try:
                    await self._run_job(job_id)
                finally:
                    self._claimed.discard(job_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Worker %d crashed while running video job %s", index, job_id)
            finally:
                self._submissions.task_done()

    async def _run_job(self, job_id: str) -> None:
        job = await self.store.get(job_id)
        if job is None or job.status != "pending":
            return
        job = await self._emit("start", job_id)

        def is_cancelled() -> bool:
            return job_id in self._cancelled

        last_error: Optional[BaseException] = None
        for attempt in range(1, job.max_attempts + 1):
            if is_cancelled():
                last_error = CancelledFailure("Job was cancelled")
                break
            job = await self._emit("attempt", job_id)
            try:
                result = await self.handler(job, is_cancelled)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc
                transient = bool(getattr(exc, "transient", False))
                logger.warning(
                    "Video job %s attempt %d/%d failed (%s): %s",
                    job_id, attempt, job.max_attempts, "transient" if transient else "permanent", exc,
                )
                if not transient or attempt >= job.max_attempts:
                    break
                await asyncio.sleep(self.retry_base_delay * (2 ** (attempt - 1)))
                continue

            await self._finish(job, status="completed", result=result)
            return

        await self._finish(
            job,
            status="failed",
            error=str(last_error) if last_error else "Unknown failure",
            error_code=_failure_code(last_error),
        )

    async def _finish(self, job: Job, **payload: Any) -> None:
        elapsed = (utcnow() - job.created_at).total_seconds()
        if elapsed < self.min_processing_seconds:
            await asyncio.sleep(self.min_processing_seconds - elapsed)
        await self._emit("finish", job.id, payload)
        self._cancelled.discard(job.id)
        if payload["status"] == "failed":
            logger.error("Video job %s failed: %s", job.id, payload.get("error"))
        else:
            logger.info("Video job %s completed", job.id)


_queue: Optional[VideoJobQueue] = None


def build_job_store() -> JobStore:
    if settings.MEDIA_JOB_STORE.strip().lower() == "database":
        from database import async_session_maker

        return SqlJobStore(async_session_maker)
    return InMemoryJobStore()


def get_video_queue() -> VideoJobQueue:
    """Process-wide queue wired to the media downloader."""
    global _queue
    if _queue is None:
        from services.media_download import process_media_download, validate_source_url

        _queue = VideoJobQueue(
            process_media_download,
            build_job_store(),
            validator=validate_source_url,
            concurrency=settings.MEDIA_JOB_CONCURRENCY,
            max_attempts=settings.MEDIA_JOB_MAX_ATTEMPTS,
            retry_base_delay=settings.MEDIA_JOB_RETRY_BASE_DELAY_SECONDS,
            min_processing_seconds=settings.MEDIA_JOB_MIN_PROCESSING_SECONDS,
            retention_hours=settings.MEDIA_JOB_RETENTION_HOURS,
            max_terminal_jobs=settings.MEDIA_JOB_MAX_TERMINAL_JOBS,
        )
    return _queue
