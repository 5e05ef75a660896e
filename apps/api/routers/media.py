"""Media download job router."""

from __future__ import annotations

import base64
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from config import settings
from routers.auth_scope import AuthContext, get_auth_context
from routers.errors import to_http_error
from routers.rate_limit import rate_limit
from services.errors import AcquisitionError
from services.job_store import Job
from services.media_download import get_media_downloader, validate_source_url
from services.video_queue import get_video_queue

router = APIRouter()


class CreateMediaDownloadRequest(BaseModel):
    source_url: str = Field(min_length=8, max_length=2000)
    mode: Literal["async", "sync"] = "async"


class MediaDownloadJobResponse(BaseModel):
    job_id: str
    platform: str
    source_url: str
    status: str
    attempts: int
    max_attempts: int
    cancel_requested: bool = False
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None


class SyncDownloadResponse(BaseModel):
    video_data: str
    size: int
    mime_type: str = "video/mp4"
    metrics: Dict[str, Any]
    additional_metadata: Dict[str, Any]


class MediaQueueStatsResponse(BaseModel):
    total: int
    pending: int
    processing: int
    completed: int
    failed: int


def _serialize_job(job: Job) -> MediaDownloadJobResponse:
    return MediaDownloadJobResponse(**job.to_payload())


@router.post("/download")
async def create_media_download_job(
    request: CreateMediaDownloadRequest,
    _rate_limit: None = Depends(rate_limit("media_download_create", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
):
    """Queue a download, or run it inline when ``mode`` is ``sync``."""
    if not settings.ALLOW_EXTERNAL_MEDIA_DOWNLOAD:
        raise HTTPException(
            status_code=503,
            detail="External media download is disabled. Set ALLOW_EXTERNAL_MEDIA_DOWNLOAD=true.",
        )

    if request.mode == "sync":
        if not settings.ALLOW_SYNC_DOWNLOADS:
            raise HTTPException(status_code=403, detail="Synchronous downloads are disabled.")
        try:
            validate_source_url(request.source_url)
            result = await get_media_downloader().download(request.source_url)
        except AcquisitionError as exc:
            raise to_http_error(exc) from exc
        return SyncDownloadResponse(
            video_data=base64.b64encode(result.video_data).decode("ascii"),
            size=len(result.video_data),
            metrics=result.metrics,
            additional_metadata=result.additional_metadata,
        )

    queue = get_video_queue()
    try:
        job_id = await queue.submit(request.source_url)
    except AcquisitionError as exc:
        raise to_http_error(exc) from exc

    job = await queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Media download job not found")
    return _serialize_job(job)


@router.get("/download/{job_id}", response_model=MediaDownloadJobResponse)
async def get_media_download_job(
    job_id: str,
    auth: AuthContext = Depends(get_auth_context),
):
    """Get a media download job record."""
    job = await get_video_queue().get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Media download job not found")
    return _serialize_job(job)


@router.post("/download/{job_id}/cancel", response_model=MediaDownloadJobResponse)
async def cancel_media_download_job(
    job_id: str,
    auth: AuthContext = Depends(get_auth_context),
):
    """Request cancellation; the job fails with ``cancelled`` at its next step."""
    try:
        job = await get_video_queue().cancel(job_id)
    except AcquisitionError as exc:
        raise to_http_error(exc) from exc
    return _serialize_job(job)


@router.get("/jobs/active", response_model=List[MediaDownloadJobResponse])
async def list_active_media_jobs(auth: AuthContext = Depends(get_auth_context)):
    return [_serialize_job(job) for job in await get_video_queue().get_active_jobs()]


@router.get("/stats", response_model=MediaQueueStatsResponse)
async def get_media_queue_stats(auth: AuthContext = Depends(get_auth_context)):
    return MediaQueueStatsResponse(**await get_video_queue().get_stats())
