"""Keyword pool router: seeding and daily rotation."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from routers.auth_scope import AuthContext, get_auth_context
from routers.errors import to_http_error
from routers.rate_limit import rate_limit
from services.errors import AcquisitionError
from services.keyword_pool import get_keyword_pool_manager, resolve_as_of

router = APIRouter()


class SeedKeywordsRequest(BaseModel):
    keywords: List[str] = Field(min_length=1, max_length=500)
    category: Optional[str] = None


class SeedDefaultsRequest(BaseModel):
    category: str = Field(min_length=1, max_length=100)


class SeedHistoryRequest(BaseModel):
    limit: int = Field(default=50, ge=1, le=500)


class RotateKeywordsRequest(BaseModel):
    count: Optional[int] = Field(default=None, ge=1)
    date: Optional[str] = None
    force: bool = False
    category: Optional[str] = None


class SeedKeywordsResponse(BaseModel):
    added: int
    keywords: List[str]
    category: Optional[str] = None


@router.post("/seed", response_model=SeedKeywordsResponse)
async def seed_keywords(
    request: SeedKeywordsRequest,
    auth: AuthContext = Depends(get_auth_context),
):
    manager = get_keyword_pool_manager()
    try:
        if request.category:
            added = await manager.seed_category(request.category, request.keywords)
        else:
            added = await manager.seed(request.keywords)
    except AcquisitionError as exc:
        raise to_http_error(exc) from exc
    return SeedKeywordsResponse(added=len(added), keywords=added, category=request.category)


@router.post("/seed/defaults", response_model=SeedKeywordsResponse)
async def seed_default_keywords(
    request: SeedDefaultsRequest,
    auth: AuthContext = Depends(get_auth_context),
):
    """Seed a category from the built-in starter pools."""
    try:
        added = await get_keyword_pool_manager().seed_defaults(request.category)
    except AcquisitionError as exc:
        raise to_http_error(exc) from exc
    return SeedKeywordsResponse(added=len(added), keywords=added, category=request.category)


@router.post("/seed/history", response_model=SeedKeywordsResponse)
async def seed_keywords_from_history(
    request: SeedHistoryRequest,
    auth: AuthContext = Depends(get_auth_context),
):
    result = await get_keyword_pool_manager().auto_seed_from_history(request.limit)
    return SeedKeywordsResponse(added=result["added"], keywords=result["keywords"])


@router.post("/rotate")
async def rotate_keywords(
    request: RotateKeywordsRequest,
    _rate_limit: None = Depends(rate_limit("keywords_rotate", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
):
    """Select the keywords for a day. Repeated calls return the same set unless ``force``."""
    try:
        result = await get_keyword_pool_manager().rotate(
            count=request.count,
            as_of=request.date,
            force=request.force,
            category=request.category,
        )
    except AcquisitionError as exc:
        raise to_http_error(exc) from exc
    return result.to_payload()


@router.get("/active")
async def get_active_keywords(
    date: Optional[str] = None,
    category: Optional[str] = None,
    auth: AuthContext = Depends(get_auth_context),
):
    try:
        keywords = await get_keyword_pool_manager().get_active_keywords(date, category)
        date_key = resolve_as_of(date).date().isoformat()
    except AcquisitionError as exc:
        raise to_http_error(exc) from exc
    if keywords is None:
        raise HTTPException(status_code=404, detail=f"No keyword rotation recorded for {date_key}")
    return {"date": date_key, "category": category, "keywords": keywords}
