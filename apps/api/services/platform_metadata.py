"""Per-platform metadata lookups used by the download orchestrator.

Each provider turns a public post URL into a ``VideoMetadata`` record that
carries either a DASH manifest, a list of renditions, or both.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from config import require_rapidapi_key, settings
from services.errors import NotFoundFailure, ParseFailure, UpstreamFailure, ValidationFailure
from services.manifest import Rendition
from services.tiktok_search import parse_bitrate_info, safe_int, utc_from_timestamp

logger = logging.getLogger(__name__)

INSTAGRAM_SHORTCODE_PATTERN = re.compile(r"/(?:reels?|p|tv)/([A-Za-z0-9_-]+)")
TIKTOK_VIDEO_ID_PATTERN = re.compile(r"/(?:video|v)/(\d+)")
HASHTAG_PATTERN = re.compile(r"#(\w+)")


@dataclass
class VideoMetadata:
    platform: str
    video_id: str
    original_url: str
    author: Optional[str] = None
    description: str = ""
    hashtags: List[str] = field(default_factory=list)
    duration_seconds: int = 0
    view_count: int = 0
    like_count: int = 0
    published_at: Optional[datetime] = None
    thumbnail_url: Optional[str] = None
    manifest: Optional[str] = None
    renditions: List[Rendition] = field(default_factory=list)


def _hashtags(text: str) -> List[str]:
    return list(dict.fromkeys(HASHTAG_PATTERN.findall(text or "")))


def extract_instagram_shortcode(url: str) -> Optional[str]:
    match = INSTAGRAM_SHORTCODE_PATTERN.search(url or "")
    return match.group(1) if match else None


def extract_tiktok_video_id(url: str) -> Optional[str]:
    match = TIKTOK_VIDEO_ID_PATTERN.search(url or "")
    return match.group(1) if match else None


class RapidApiProvider:
    """Shared HTTP plumbing for RapidAPI-hosted metadata endpoints."""

    platform = "unknown"

    def __init__(
        self,
        host: str,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.host = host
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds or settings.METADATA_TIMEOUT_SECONDS
        self.transport = transport

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        headers = {
            "x-rapidapi-key": self.api_key or require_rapidapi_key(),
            "x-rapidapi-host": self.host,
        }
        try:
            async with httpx.AsyncClient(
                base_url=f"https://{self.host}",
                timeout=httpx.Timeout(self.timeout_seconds),
                transport=self.transport,
            ) as client:
                response = await client.get(path, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise UpstreamFailure(f"{self.platform} metadata request timed out", timeout=True) from exc
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"{self.platform} metadata transport error: {exc}") from exc

        if response.status_code == 404:
            raise NotFoundFailure(f"{self.platform} post not found")
        if response.status_code >= 400:
            raise UpstreamFailure(
                f"{self.platform} metadata returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamFailure(f"{self.platform} metadata body is not JSON") from exc
        if not isinstance(payload, dict):
            raise ParseFailure(f"{self.platform} metadata payload is not an object")
        return payload


class InstagramMetadataProvider(RapidApiProvider):
    platform = "instagram"

    def __init__(self, **kwargs: Any):
        kwargs.setdefault("host", settings.RAPIDAPI_INSTAGRAM_HOST)
        super().__init__(**kwargs)

    async def fetch(self, url: str) -> VideoMetadata:
        shortcode = extract_instagram_shortcode(url)
        if not shortcode:
            raise ValidationFailure(f"Could not extract an Instagram shortcode from {url}")
        payload = await self._get_json("/v1/post_info", {"code_or_id_or_url": shortcode})
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        return self.parse(data, url=url, shortcode=shortcode)

    @staticmethod
    def parse(data: Dict[str, Any], *, url: str, shortcode: str) -> VideoMetadata:
        owner = data.get("owner") if isinstance(data.get("owner"), dict) else {}
        user = data.get("user") if isinstance(data.get("user"), dict) else {}
        caption = data.get("caption")
        text = caption.get("text", "") if isinstance(caption, dict) else str(caption or "")

        renditions: List[Rendition] = []
        for version in data.get("video_versions") or []:
            if not isinstance(version, dict) or not version.get("url"):
                continue
            width = safe_int(version.get("width")) or None
            height = safe_int(version.get("height")) or None
            # Versions carry no bitrate; pixel area orders them the same way.
            bandwidth = safe_int(version.get("bandwidth")) or (width or 0) * (height or 0)
            if bandwidth <= 0:
                continue
            renditions.append(
                Rendition(
                    bandwidth=bandwidth,
                    url=str(version["url"]),
                    quality_label=f"{height}p" if height else None,
                    width=width,
                    height=height,
                    mime_type="video/mp4",
                )
            )

        manifest = data.get("video_dash_manifest")
        if not manifest and not renditions:
            raise NotFoundFailure(f"Instagram post {shortcode} has no video")

        taken_at = safe_int(data.get("taken_at"))
        thumbnail = data.get("thumbnail_url") or data.get("display_url")
        return VideoMetadata(
            platform="instagram",
            video_id=shortcode,
            original_url=url,
            author=owner.get("username") or user.get("username") or None,
            description=text,
            hashtags=_hashtags(text),
            duration_seconds=safe_int(data.get("video_duration")),
            view_count=safe_int(data.get("play_count") or data.get("video_view_count")),
            like_count=safe_int(data.get("like_count")),
            published_at=utc_from_timestamp(taken_at),
            thumbnail_url=thumbnail or None,
            manifest=manifest if isinstance(manifest, str) else None,
            renditions=renditions,
        )


class TikTokMetadataProvider(RapidApiProvider):
    platform = "tiktok"

    def __init__(self, **kwargs: Any):
        kwargs.setdefault("host", settings.RAPIDAPI_TIKTOK_HOST)
        super().__init__(**kwargs)

    async def fetch(self, url: str) -> VideoMetadata:
        video_id = extract_tiktok_video_id(url)
        if not video_id:
            raise ValidationFailure(f"Could not extract a TikTok video id from {url}")
        payload = await self._get_json("/api/post/detail", {"videoId": video_id})
        return self.parse(payload, url=url, video_id=video_id)

    @staticmethod
    def parse(payload: Dict[str, Any], *, url: str, video_id: str) -> VideoMetadata:
        item_info = payload.get("itemInfo") if isinstance(payload.get("itemInfo"), dict) else {}
        item = item_info.get("itemStruct")
        if not isinstance(item, dict):
            raise NotFoundFailure(f"TikTok post {video_id} not found in response")

        author = item.get("author") if isinstance(item.get("author"), dict) else {}
        stats = item.get("stats") if isinstance(item.get("stats"), dict) else {}
        video = item.get("video") if isinstance(item.get("video"), dict) else {}
        renditions = parse_bitrate_info(video.get("bitrateInfo"))
        if not renditions and video.get("playAddr"):
            # Some posts only expose a single play address.
            renditions = [
                Rendition(
                    bandwidth=max(safe_int(video.get("bitrate")), 1),
                    url=str(video["playAddr"]),
                    width=safe_int(video.get("width")) or None,
                    height=safe_int(video.get("height")) or None,
                    mime_type="video/mp4",
                )
            ]
        if not renditions:
            raise NotFoundFailure(f"TikTok post {video_id} has no playable renditions")

        description = str(item.get("desc") or "")
        created = safe_int(item.get("createTime"))
        return VideoMetadata(
            platform="tiktok",
            video_id=video_id,
            original_url=url,
            author=author.get("uniqueId") or author.get("nickname") or None,
            description=description,
            hashtags=_hashtags(description),
            duration_seconds=safe_int(video.get("duration")),
            view_count=safe_int(stats.get("playCount")),
            like_count=safe_int(stats.get("diggCount")),
            published_at=utc_from_timestamp(created),
            thumbnail_url=video.get("cover") or None,
            renditions=renditions,
        )
