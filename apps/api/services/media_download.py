"""Download orchestrator: source URL to rendition bytes, plus the queue job handler."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
from urllib.parse import urlparse

import httpx

from config import settings
from services.errors import (
    AcquisitionError,
    CancelledFailure,
    DownloadFailure,
    NotFoundFailure,
    UpstreamFailure,
    ValidationFailure,
)
from services.job_store import Job
from services.manifest import Rendition, lowest_bandwidth, select_lowest_bandwidth
from services.platform_metadata import (
    InstagramMetadataProvider,
    TikTokMetadataProvider,
    VideoMetadata,
    extract_tiktok_video_id,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
VIDEO_MIME_BY_EXT = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".m4v": "video/x-m4v",
    ".webm": "video/webm",
}

STAGE_RESOLVE = "resolve_platform"
STAGE_METADATA = "fetch_metadata"
STAGE_SELECT = "select_rendition"
STAGE_FETCH = "fetch_rendition"


@dataclass
class DownloadResult:
    video_data: bytes
    metrics: Dict[str, Any] = field(default_factory=dict)
    additional_metadata: Dict[str, Any] = field(default_factory=dict)


def _safe_filename(name: str) -> str:
    base = os.path.basename(name or "download.mp4")
    cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_", "."} else "_" for ch in base)
    return cleaned or "download.mp4"


def _guess_mime(path: Path) -> str:
    return VIDEO_MIME_BY_EXT.get(path.suffix.lower(), "video/mp4")


def detect_direct_cdn(url: str) -> Optional[str]:
    """Platform of a raw CDN video URL, or None when the URL is a post page."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    host = (parsed.hostname or "").lower()
    is_mp4 = parsed.path.lower().endswith(".mp4")
    if "cdninstagram.com" in host or (is_mp4 and "fbcdn" in host):
        return "instagram"
    if "tiktokcdn" in host or "tiktokv.com" in host or "muscdn.com" in host:
        return "tiktok"
    return None


def detect_platform(url: str) -> str:
    lowered = (url or "").lower()
    if "instagram.com" in lowered and any(part in lowered for part in ("/reel", "/p/", "/tv/")):
        return "instagram"
    if "tiktok.com" in lowered:
        return "tiktok"
    return detect_direct_cdn(url) or "unknown"


def validate_source_url(url: str) -> str:
    """Check a submitted URL and return its platform.

    Raises:
        ValidationFailure: Blank or non-http(s) URLs, and Instagram photo posts.
        NotFoundFailure: URLs that belong to no supported platform.
    """
    source_url = (url or "").strip()
    if not source_url:
        raise ValidationFailure("source_url is required")
    if not source_url.startswith(("http://", "https://")):
        raise ValidationFailure("source_url must be an absolute http(s) URL")
    if detect_direct_cdn(source_url):
        return detect_direct_cdn(source_url)
    platform = detect_platform(source_url)
    if platform == "unknown":
        raise NotFoundFailure(
            f"Unsupported URL format: {source_url}. Only TikTok and Instagram videos are supported."
        )
    if platform == "instagram" and "/p/" in source_url.lower():
        raise ValidationFailure("Instagram /p/ posts are not supported; use the reel URL instead")
    return platform


class MediaDownloader:
    """Runs the acquisition stages for one source URL.

    Every stage failure is re-raised as ``DownloadFailure(stage, cause)``; a
    result is only returned when all stages succeeded.
    """

    def __init__(
        self,
        *,
        instagram: Optional[InstagramMetadataProvider] = None,
        tiktok: Optional[TikTokMetadataProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        preferred_quality_label: Optional[str] = None,
        rendition_timeout_seconds: Optional[float] = None,
        min_video_bytes: Optional[int] = None,
    ):
        self.instagram = instagram or InstagramMetadataProvider(transport=transport)
        self.tiktok = tiktok or TikTokMetadataProvider(transport=transport)
        self.transport = transport
        self.preferred_quality_label = (
            preferred_quality_label
            if preferred_quality_label is not None
            else settings.MANIFEST_PREFERRED_QUALITY_LABEL
        )
        self.rendition_timeout_seconds = rendition_timeout_seconds or settings.RENDITION_TIMEOUT_SECONDS
        self.min_video_bytes = min_video_bytes if min_video_bytes is not None else settings.MEDIA_MIN_VIDEO_BYTES

    async def download(
        self,
        source_url: str,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> DownloadResult:
        started = time.perf_counter()

        def _check_cancel(stage: str) -> None:
            if is_cancelled is not None and is_cancelled():
                raise DownloadFailure(stage, CancelledFailure("Job was cancelled"))

        url, platform_key = await self._stage(STAGE_RESOLVE, self._resolve(source_url))
        direct = detect_direct_cdn(url)

        if direct:
            logger.info("Direct %s CDN URL, skipping metadata lookup", direct)
            video_id = _safe_filename(Path(urlparse(url).path).stem)
            metadata = VideoMetadata(platform=direct, video_id=video_id, original_url=source_url)
            rendition = Rendition(bandwidth=0, url=url)
        else:
            _check_cancel(STAGE_METADATA)
            metadata = await self._stage(STAGE_METADATA, self._fetch_metadata(url, platform_key))
            _check_cancel(STAGE_SELECT)
            rendition = await self._stage(STAGE_SELECT, self._select(metadata))

        _check_cancel(STAGE_FETCH)
        fetch_started = time.perf_counter()
        data = await self._stage(STAGE_FETCH, self._fetch_rendition(rendition.url))
        fetch_ms = int((time.perf_counter() - fetch_started) * 1000)

        metrics = {
            "byte_size": len(data),
            "fetch_duration_ms": fetch_ms,
            "total_duration_ms": int((time.perf_counter() - started) * 1000),
            "selected_bandwidth": rendition.bandwidth or None,
            "quality_label": rendition.quality_label,
            "views": metadata.view_count,
            "likes": metadata.like_count,
        }
        additional_metadata = {
            "platform": metadata.platform,
            "video_id": metadata.video_id,
            "author": metadata.author,
            "description": metadata.description,
            "hashtags": list(metadata.hashtags),
            "duration_seconds": metadata.duration_seconds,
            "thumbnail_url": metadata.thumbnail_url,
            "original_url": source_url,
            "rendition_url": rendition.url,
            "method": "direct_cdn" if direct else "metadata",
            "published_at": metadata.published_at.isoformat() if metadata.published_at else None,
            "downloaded_at": datetime.now(timezone.utc).isoformat(),
        }
        logger.info(
            "Downloaded %s video %s: %d bytes in %dms",
            metadata.platform, metadata.video_id, len(data), fetch_ms,
        )
        return DownloadResult(video_data=data, metrics=metrics, additional_metadata=additional_metadata)

    async def _stage(self, stage: str, step: Awaitable[T]) -> T:
        try:
            return await step
        except DownloadFailure:
            raise
        except (AcquisitionError, ValueError, OverflowError) as exc:
            raise DownloadFailure(stage, exc) from exc

    async def _resolve(self, source_url: str):
        platform = validate_source_url(source_url)
        url = source_url.strip()
        if platform == "tiktok" and not detect_direct_cdn(url) and not extract_tiktok_video_id(url):
            url = await self._resolve_short_link(url)
        return url, platform

    async def _resolve_short_link(self, url: str) -> str:
        """Follow vm.tiktok.com and /t/ redirects to the canonical video URL."""
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(settings.METADATA_TIMEOUT_SECONDS),
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                response = await client.head(url, headers={"User-Agent": BROWSER_USER_AGENT})
        except httpx.TimeoutException as exc:
            raise UpstreamFailure("TikTok short link resolution timed out", timeout=True) from exc
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"TikTok short link resolution failed: {exc}") from exc

        resolved = str(response.url)
        if not extract_tiktok_video_id(resolved):
            raise NotFoundFailure(f"Short link {url} did not resolve to a TikTok video")
        return resolved

    async def _fetch_metadata(self, url: str, platform: str) -> VideoMetadata:
        if platform == "instagram":
            return await self.instagram.fetch(url)
        if platform == "tiktok":
            return await self.tiktok.fetch(url)
        raise NotFoundFailure(f"No metadata provider for platform {platform}")

    async def _select(self, metadata: VideoMetadata) -> Rendition:
        if metadata.manifest:
            # Parsing is CPU-bound; keep it off the event loop.
            chosen = await asyncio.to_thread(
                select_lowest_bandwidth, metadata.manifest, self.preferred_quality_label
            )
            if chosen is not None:
                return chosen
            logger.info("Manifest for %s yielded no rendition, using provider list", metadata.video_id)
        chosen = lowest_bandwidth(metadata.renditions)
        if chosen is None:
            raise NotFoundFailure(f"No playable rendition for {metadata.platform} video {metadata.video_id}")
        return chosen

    async def _fetch_rendition(self, url: str) -> bytes:
        headers = {"User-Agent": BROWSER_USER_AGENT, "Accept": "*/*"}
        if "tiktok" in (urlparse(url).hostname or "").lower():
            headers.update(
                {
                    "Referer": "https://www.tiktok.com/",
                    "Origin": "https://www.tiktok.com",
                    "Range": "bytes=0-",
                }
            )
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.rendition_timeout_seconds),
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                response = await client.get(url, headers=headers)
        except httpx.TimeoutException as exc:
            raise UpstreamFailure("Rendition download timed out", timeout=True) from exc
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"Rendition download failed: {exc}") from exc

        if response.status_code >= 400:
            raise UpstreamFailure(
                f"Rendition download returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        content_type = response.headers.get("content-type", "")
        if content_type and "video" not in content_type and "octet-stream" not in content_type:
            logger.warning("Unexpected rendition content type: %s", content_type)

        data = response.content
        if len(data) < self.min_video_bytes:
            raise UpstreamFailure(f"Downloaded file too small: {len(data)} bytes")
        return data


_downloader: Optional[MediaDownloader] = None


def get_media_downloader() -> MediaDownloader:
    global _downloader
    if _downloader is None:
        _downloader = MediaDownloader()
    return _downloader


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


async def process_media_download(job: Job, is_cancelled: Callable[[], bool]) -> Dict[str, Any]:
    """Queue handler: download the job's source and persist the bytes.

    Returns the job result: stored file reference, metrics and metadata.
    """
    result = await get_media_downloader().download(job.source_url, is_cancelled=is_cancelled)

    platform = result.additional_metadata.get("platform") or job.platform
    final_path = Path(settings.MEDIA_STORAGE_DIR) / _safe_filename(f"{platform}-{job.id}.mp4")
    try:
        await asyncio.to_thread(_write_file, final_path, result.video_data)
    except OSError as exc:
        raise DownloadFailure("store_file", exc) from exc

    logger.info("Media download job %s stored %s", job.id, final_path)
    return {
        "file_path": str(final_path),
        "file_name": final_path.name,
        "mime_type": _guess_mime(final_path),
        "file_size_bytes": len(result.video_data),
        "metrics": result.metrics,
        "additional_metadata": result.additional_metadata,
    }
