"""Job records and their storage backends."""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Sequence

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.video_job import VideoJobRecord

JobStatus = Literal["pending", "processing", "completed", "failed"]
PlatformKey = Literal["tiktok", "instagram", "unknown"]

ACTIVE_STATUSES = ("pending", "processing")
TERMINAL_STATUSES = ("completed", "failed")
ALLOWED_TRANSITIONS: Dict[str, tuple] = {
    "pending": ("processing",),
    "processing": ("completed", "failed"),
    "completed": (),
    "failed": (),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Job:
    """Unit of asynchronous download work."""

    id: str
    source_url: str
    platform: PlatformKey = "unknown"
    status: JobStatus = "pending"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 3
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> "Job":
        """Detached copy safe to hand to callers."""
        return replace(self, result=copy.deepcopy(self.result))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "job_id": self.id,
            "source_url": self.source_url,
            "platform": self.platform,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "cancel_requested": self.cancel_requested,
            "result": copy.deepcopy(self.result),
            "error": self.error,
            "error_code": self.error_code,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class JobStore(ABC):
    """Key-value store of jobs keyed by id."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    @abstractmethod
    async def put(self, job: Job) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, job_ids: Sequence[str]) -> int:
        raise NotImplementedError

    @abstractmethod
    async def list_jobs(self) -> List[Job]:
        """All jobs ordered by creation time."""
        raise NotImplementedError

    async def put_many(self, jobs: Sequence[Job]) -> None:
        for job in jobs:
            await self.put(job)


class InMemoryJobStore(JobStore):
    """Process-local store; state ends with the process."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.snapshot() if job else None

    async def put(self, job: Job) -> None:
        self._jobs[job.id] = job.snapshot()

    async def delete(self, job_ids: Sequence[str]) -> int:
        removed = 0
        for job_id in job_ids:
            if self._jobs.pop(job_id, None) is not None:
                removed += 1
        return removed

    async def list_jobs(self) -> List[Job]:
        jobs = [job.snapshot() for job in self._jobs.values()]
        jobs.sort(key=lambda j: j.created_at)
        return jobs


def _record_to_job(record: VideoJobRecord) -> Job:
    return Job(
        id=record.id,
        source_url=record.source_url,
        platform=record.platform or "unknown",
        status=record.status,
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
        completed_at=as_utc(record.completed_at),
        result=copy.deepcopy(record.result_json),
        error=record.error_message,
        error_code=record.error_code,
        attempts=int(record.attempts or 0),
        max_attempts=int(record.max_attempts or 3),
        cancel_requested=bool(record.cancel_requested),
    )


def _apply_job(record: VideoJobRecord, job: Job) -> None:
    record.source_url = job.source_url
    record.platform = job.platform
    record.status = job.status
    record.attempts = job.attempts
    record.max_attempts = job.max_attempts
    record.error_code = job.error_code
    record.error_message = job.error[:1000] if job.error else None
    record.result_json = copy.deepcopy(job.result)
    record.cancel_requested = job.cancel_requested
    record.created_at = job.created_at
    record.updated_at = job.updated_at
    record.completed_at = job.completed_at


class SqlJobStore(JobStore):
    """Durable store backed by the ``video_jobs`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def get(self, job_id: str) -> Optional[Job]:
        async with self.session_maker() as db:
            result = await db.execute(select(VideoJobRecord).where(VideoJobRecord.id == job_id))
            record = result.scalar_one_or_none()
            return _record_to_job(record) if record else None

    async def put(self, job: Job) -> None:
        await self.put_many([job])

    async def put_many(self, jobs: Sequence[Job]) -> None:
        if not jobs:
            return
        async with self.session_maker() as db:
            ids = [job.id for job in jobs]
            result = await db.execute(select(VideoJobRecord).where(VideoJobRecord.id.in_(ids)))
            existing = {record.id: record for record in result.scalars().all()}
            for job in jobs:
                record = existing.get(job.id)
                if record is None:
                    record = VideoJobRecord(id=job.id)
                    db.add(record)
                _apply_job(record, job)
            await db.commit()

    async def delete(self, job_ids: Sequence[str]) -> int:
        if not job_ids:
            return 0
        async with self.session_maker() as db:
            result = await db.execute(delete(VideoJobRecord).where(VideoJobRecord.id.in_(list(job_ids))))
            await db.commit()
            return int(result.rowcount or 0)

    async def list_jobs(self) -> List[Job]:
        async with self.session_maker() as db:
            result = await db.execute(select(VideoJobRecord).order_by(VideoJobRecord.created_at.asc()))
            return [_record_to_job(record) for record in result.scalars().all()]
