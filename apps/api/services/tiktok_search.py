"""TikTok keyword search client (RapidAPI) with candidate filtering."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from config import require_rapidapi_key, settings
from services.errors import SearchFailure, ValidationFailure
from services.manifest import Rendition, lowest_bandwidth

logger = logging.getLogger(__name__)

SEARCH_PATH = "/api/search/general"
GEAR_HEIGHT_PATTERN = re.compile(r"(?:^|_)(\d{3,4})(?:p|_|$)")


@dataclass(frozen=True)
class FilterOptions:
    """Inclusive bounds, combined with AND. None disables a bound."""

    min_views: Optional[int] = None
    max_views: Optional[int] = None
    min_likes: Optional[int] = None
    max_duration_sec: Optional[int] = None
    within_days: Optional[int] = None


@dataclass(frozen=True)
class CandidateVideo:
    id: str
    url: str
    description: str = ""
    author: Optional[str] = None
    duration_seconds: int = 0
    view_count: int = 0
    like_count: int = 0
    published_at: Optional[datetime] = None
    thumbnail_url: Optional[str] = None
    renditions: List[Rendition] = field(default_factory=list)
    selected_rendition: Optional[Rendition] = None


@dataclass(frozen=True)
class SearchPage:
    items: List[CandidateVideo]
    next_cursor: int
    has_more: bool
    search_session_id: str


def safe_int(value: Any, default: int = 0) -> int:
    """Coerce an upstream number; non-numeric, NaN and infinite values give ``default``."""
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


def utc_from_timestamp(seconds: int) -> Optional[datetime]:
    """Epoch seconds to an aware UTC datetime, or None when absent or out of range."""
    if seconds <= 0:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _preferred_play_url(urls: List[Any]) -> Optional[str]:
    candidates = [u for u in urls if isinstance(u, str) and u.strip()]
    if not candidates:
        return None
    chosen = next((u for u in candidates if u.startswith("https://")), candidates[0])
    if chosen.startswith("http://"):
        chosen = "https://" + chosen[len("http://"):]
    return chosen


def rendition_height(rendition: Rendition) -> Optional[int]:
    """Resolution class of a rendition (the short side, so 540x960 is 540p).

    Falls back to the number in a gear name like ``normal_540_0``.
    """
    if rendition.width and rendition.height:
        return min(rendition.width, rendition.height)
    if rendition.height:
        return rendition.height
    match = GEAR_HEIGHT_PATTERN.search((rendition.quality_label or "").lower())
    if match:
        return int(match.group(1))
    return None


def pick_rendition(renditions: List[Rendition], max_height: int = 540) -> Optional[Rendition]:
    """Best rendition that stays at or below ``max_height``.

    Among renditions no taller than the ceiling, the highest bandwidth wins
    (first seen on ties). When none qualify, fall back to the absolute lowest
    bandwidth.
    """
    qualifying = [
        r for r in renditions
        if r.url and (rendition_height(r) or 0) > 0 and rendition_height(r) <= max_height
    ]
    if qualifying:
        return max(qualifying, key=lambda r: r.bandwidth)
    return lowest_bandwidth(renditions)


def parse_bitrate_info(bitrate_info: Any) -> List[Rendition]:
    """Normalize TikTok ``video.bitrateInfo`` entries into renditions."""
    renditions: List[Rendition] = []
    if not isinstance(bitrate_info, list):
        return renditions
    for info in bitrate_info:
        if not isinstance(info, dict):
            continue
        play = info.get("PlayAddr") or {}
        if not isinstance(play, dict):
            continue
        url = _preferred_play_url(play.get("UrlList") or [])
        bandwidth = safe_int(info.get("Bitrate"))
        if not url or bandwidth <= 0:
            continue
        renditions.append(
            Rendition(
                bandwidth=bandwidth,
                url=url,
                quality_label=info.get("GearName") or None,
                width=safe_int(play.get("Width")) or None,
                height=safe_int(play.get("Height")) or None,
                mime_type="video/mp4",
                data_size=safe_int(play.get("DataSize")) or None,
            )
        )
    return renditions


def normalize_item(item: Any, max_height: Optional[int] = None) -> Optional[CandidateVideo]:
    """Convert a raw TikTok item into a CandidateVideo, or None if unusable."""
    if not isinstance(item, dict):
        return None
    item_id = str(item.get("id") or "").strip()
    if not item_id:
        return None

    author = item.get("author") if isinstance(item.get("author"), dict) else {}
    handle = str(author.get("uniqueId") or "").strip() or None
    stats = item.get("stats") if isinstance(item.get("stats"), dict) else {}
    video = item.get("video") if isinstance(item.get("video"), dict) else {}

    created = safe_int(item.get("createTime"))
    published_at = utc_from_timestamp(created)
    renditions = parse_bitrate_info(video.get("bitrateInfo"))
    ceiling = max_height if max_height is not None else settings.SEARCH_TARGET_HEIGHT

    if handle:
        url = f"https://www.tiktok.com/@{handle}/video/{item_id}"
    else:
        url = f"https://www.tiktok.com/video/{item_id}"

    return CandidateVideo(
        id=item_id,
        url=url,
        description=str(item.get("desc") or ""),
        author=handle,
        duration_seconds=safe_int(video.get("duration")),
        view_count=safe_int(stats.get("playCount")),
        like_count=safe_int(stats.get("diggCount")),
        published_at=published_at,
        thumbnail_url=video.get("cover") or None,
        renditions=renditions,
        selected_rendition=pick_rendition(renditions, ceiling) if renditions else None,
    )


def filter_candidates(
    items: List[CandidateVideo],
    options: Optional[FilterOptions] = None,
    now: Optional[datetime] = None,
) -> List[CandidateVideo]:
    """Apply the filter bounds to ``items``, keeping their relative order."""
    if options is None:
        return list(items)
    reference = now or datetime.now(timezone.utc)
    cutoff = reference - timedelta(days=options.within_days) if options.within_days is not None else None

    def _keep(item: CandidateVideo) -> bool:
        if options.min_views is not None and item.view_count < options.min_views:
            return False
        if options.max_views is not None and item.view_count > options.max_views:
            return False
        if options.min_likes is not None and item.like_count < options.min_likes:
            return False
        if options.max_duration_sec is not None and item.duration_seconds > options.max_duration_sec:
            return False
        if cutoff is not None and (item.published_at is None or item.published_at < cutoff):
            return False
        return True

    return [item for item in items if _keep(item)]


class TikTokSearchClient:
    """Client for the RapidAPI TikTok search endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        host: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        target_height: Optional[int] = None,
    ):
        self.api_key = api_key
        self.host = host or settings.RAPIDAPI_TIKTOK_HOST
        self.timeout_seconds = timeout_seconds or settings.SEARCH_TIMEOUT_SECONDS
        self.transport = transport
        self.target_height = target_height or settings.SEARCH_TARGET_HEIGHT

    def _headers(self) -> Dict[str, str]:
        key = self.api_key or require_rapidapi_key()
        return {"x-rapidapi-key": key, "x-rapidapi-host": self.host}

    async def search(self, keyword: str, cursor: int = 0, search_session_id: str = "0") -> SearchPage:
        """Fetch one page of keyword results.

        Raises:
            ValidationFailure: If the keyword is blank.
            SearchFailure: On transport errors, timeouts, non-2xx responses or
                payloads that do not match the expected schema.
        """
        keyword = (keyword or "").strip()
        if not keyword:
            raise ValidationFailure("keyword is required")
        cursor = max(safe_int(cursor), 0)
        session_id = str(search_session_id or "0")

        params = {"keyword": keyword, "cursor": cursor, "search_id": session_id}
        logger.info("TikTok search keyword=%r cursor=%s", keyword, cursor)
        try:
            async with httpx.AsyncClient(
                base_url=f"https://{self.host}",
                timeout=httpx.Timeout(self.timeout_seconds),
                transport=self.transport,
            ) as client:
                response = await client.get(SEARCH_PATH, params=params, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise SearchFailure(keyword, cursor, "request timed out", timeout=True) from exc
        except httpx.HTTPError as exc:
            raise SearchFailure(keyword, cursor, f"transport error: {exc}") from exc

        if response.status_code >= 400:
            raise SearchFailure(
                keyword,
                cursor,
                f"upstream returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            logger.warning("TikTok search returned non-JSON body (%d bytes)", len(response.content))
            raise SearchFailure(keyword, cursor, "response body is not JSON") from exc

        return self._parse_page(payload, keyword=keyword, cursor=cursor, session_id=session_id)

    def _parse_page(self, payload: Any, *, keyword: str, cursor: int, session_id: str) -> SearchPage:
        if not isinstance(payload, dict):
            raise SearchFailure(keyword, cursor, "unexpected payload shape")
        status_code = payload.get("status_code")
        if status_code not in (None, 0, "0"):
            raise SearchFailure(keyword, cursor, f"upstream status_code={status_code}")
        data = payload.get("data") or []
        if not isinstance(data, list):
            raise SearchFailure(keyword, cursor, "'data' is not a list")

        items: List[CandidateVideo] = []
        for entry in data:
            if not isinstance(entry, dict):
                continue
            candidate = normalize_item(entry.get("item"), self.target_height)
            if candidate is not None:
                items.append(candidate)

        log_pb = payload.get("log_pb") if isinstance(payload.get("log_pb"), dict) else {}
        extra = payload.get("extra") if isinstance(payload.get("extra"), dict) else {}
        next_session = str(log_pb.get("impr_id") or extra.get("logid") or session_id)

        logger.info("TikTok search keyword=%r parsed %d/%d items", keyword, len(items), len(data))
        return SearchPage(
            items=items,
            next_cursor=safe_int(payload.get("cursor"), cursor + len(data)),
            has_more=bool(safe_int(payload.get("has_more"))),
            search_session_id=next_session,
        )


def candidate_payload(candidate: CandidateVideo) -> Dict[str, Any]:
    selected = candidate.selected_rendition
    return {
        "id": candidate.id,
        "url": candidate.url,
        "description": candidate.description,
        "author": candidate.author,
        "duration_seconds": candidate.duration_seconds,
        "views": candidate.view_count,
        "likes": candidate.like_count,
        "published_at": candidate.published_at.isoformat() if candidate.published_at else None,
        "thumbnail_url": candidate.thumbnail_url,
        "rendition_count": len(candidate.renditions),
        "video_url": selected.url if selected else None,
        "gear_name": selected.quality_label if selected else None,
        "bandwidth": selected.bandwidth if selected else None,
        "data_size": selected.data_size if selected else None,
    }


async def search_tiktok_videos_service(
    client: TikTokSearchClient,
    *,
    keyword: str,
    cursor: int = 0,
    search_session_id: str = "0",
    filters: Optional[FilterOptions] = None,
) -> Dict[str, Any]:
    """Search one page and return filtered, serialized candidates."""
    page = await client.search(keyword, cursor, search_session_id)
    videos = filter_candidates(page.items, filters)
    return {
        "keyword": keyword.strip(),
        "videos": [candidate_payload(video) for video in videos],
        "count": len(videos),
        "next_cursor": page.next_cursor,
        "has_more": page.has_more,
        "search_session_id": page.search_session_id,
    }
