"""Platform keyword search router."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from routers.auth_scope import AuthContext, get_auth_context
from routers.errors import to_http_error
from routers.rate_limit import rate_limit
from services.errors import AcquisitionError
from services.keyword_pool import get_keyword_pool_manager
from services.tiktok_search import FilterOptions, TikTokSearchClient, search_tiktok_videos_service

logger = logging.getLogger(__name__)

router = APIRouter()


class SearchFilters(BaseModel):
    min_views: Optional[int] = Field(default=None, ge=0)
    max_views: Optional[int] = Field(default=None, ge=0)
    min_likes: Optional[int] = Field(default=None, ge=0)
    max_duration_sec: Optional[int] = Field(default=None, ge=0)
    within_days: Optional[int] = Field(default=None, ge=0)


class TikTokSearchRequest(BaseModel):
    keyword: str = Field(min_length=1, max_length=200)
    cursor: int = Field(default=0, ge=0)
    search_session_id: str = "0"
    filters: Optional[SearchFilters] = None


class TikTokSearchResponse(BaseModel):
    keyword: str
    videos: List[Dict[str, Any]]
    count: int
    next_cursor: int
    has_more: bool
    search_session_id: str


def get_search_client() -> TikTokSearchClient:
    return TikTokSearchClient()


@router.post("/tiktok", response_model=TikTokSearchResponse)
async def search_tiktok(
    request: TikTokSearchRequest,
    _rate_limit: None = Depends(rate_limit("search_tiktok", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    client: TikTokSearchClient = Depends(get_search_client),
):
    """Search TikTok by keyword and return filtered candidates with a chosen rendition."""
    filters = FilterOptions(**request.filters.model_dump()) if request.filters else None
    try:
        payload = await search_tiktok_videos_service(
            client,
            keyword=request.keyword,
            cursor=request.cursor,
            search_session_id=request.search_session_id,
            filters=filters,
        )
    except AcquisitionError as exc:
        raise to_http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    try:
        await get_keyword_pool_manager().record_search(request.keyword)
    except Exception as exc:
        logger.warning("Could not record keyword history for %r: %s", request.keyword, exc)
    return payload
