"""Rotating keyword pool that feeds periodic content discovery."""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from config import settings
from services.errors import NotFoundFailure, ValidationFailure
from services.keyword_catalog import KEYWORD_POOLS, default_keywords, normalize_category
from services.keyword_store import (
    QUERY_HISTORY_LIMIT,
    InMemoryKeywordStore,
    KeywordPoolEntry,
    KeywordStore,
    RotationRecord,
    SqlKeywordStore,
    normalize_keyword,
)

logger = logging.getLogger(__name__)

MAX_AUTOSEED_LIMIT = QUERY_HISTORY_LIMIT // 10
AsOf = Union[datetime, date, str, None]


@dataclass(frozen=True)
class RotationResult:
    date: str
    category: Optional[str]
    keywords: List[str]
    new_count: int = 0
    reused_count: int = 0
    seeded: int = 0
    from_cache: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "category": self.category,
            "keywords": list(self.keywords),
            "count": len(self.keywords),
            "new_count": self.new_count,
            "reused_count": self.reused_count,
            "seeded": self.seeded,
            "from_cache": self.from_cache,
        }


def _clean_keywords(keywords: Sequence[Any]) -> List[str]:
    cleaned: List[str] = []
    seen = set()
    for raw in keywords or []:
        text = " ".join(str(raw or "").split())
        key = text.lower()
        if not text or key in seen:
            continue
        seen.add(key)
        cleaned.append(text)
    return cleaned


def resolve_as_of(value: AsOf) -> datetime:
    """Coerce a rotation date (datetime, date or ISO string) to an aware UTC datetime."""
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        try:
            value = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationFailure(f"Invalid rotation date: {text!r}") from exc
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise ValidationFailure(f"Unsupported rotation date type: {type(value).__name__}")


def _recency_key(entry: KeywordPoolEntry):
    # Never-used first, then least recently used; insertion order breaks ties.
    if entry.last_used_at is None:
        return (0, datetime.min.replace(tzinfo=timezone.utc), entry.seq)
    return (1, entry.last_used_at, entry.seq)


class KeywordPoolManager:
    """Seeds and rotates the keyword pool.

    Writes for one category are serialized with an ``asyncio.Lock``. The
    uncategorized pool (``None``) reads and writes every entry, so its writers
    hold the pool lock plus every category lock.
    """

    def __init__(
        self,
        store: KeywordStore,
        *,
        cooldown_days: int = 3,
        max_count: int = 10,
        default_count: int = 3,
        autoseed_limit: int = 50,
    ):
        self.store = store
        self.cooldown = timedelta(days=max(int(cooldown_days), 0))
        self.max_count = max(int(max_count), 1)
        self.default_count = max(int(default_count), 1)
        self.autoseed_limit = autoseed_limit
        self._pool_lock = asyncio.Lock()
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def _writing(self, category: Optional[str]) -> AsyncIterator[None]:
        if category is None:
            # Category locks are only created under the pool lock, so this set is complete.
            async with self._pool_lock, AsyncExitStack() as held:
                for lock in list(self._locks.values()):
                    await held.enter_async_context(lock)
                yield
            return

        async with self._pool_lock:
            lock = self._locks.setdefault(category, asyncio.Lock())
            await lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def clamp_count(self, count: Optional[int]) -> int:
        if count is None:
            count = self.default_count
        return max(1, min(self.max_count, int(count)))

    async def _insert(self, keywords: Sequence[Any], category: Optional[str]) -> List[str]:
        entries = [KeywordPoolEntry(keyword=kw, category=category) for kw in _clean_keywords(keywords)]
        inserted = await self.store.insert_entries(entries)
        if inserted:
            logger.info("Seeded %d keywords into pool category=%s", len(inserted), category)
        return [entry.keyword for entry in inserted]

    async def seed(self, keywords: Sequence[Any]) -> List[str]:
        """Insert uncategorized keywords. Keywords already in the pool are skipped."""
        async with self._writing(None):
            return await self._insert(keywords, None)

    async def seed_category(self, category: str, keywords: Sequence[Any]) -> List[str]:
        slug = normalize_category(category)
        if slug is None:
            raise ValidationFailure("category is required")
        async with self._writing(slug):
            return await self._insert(keywords, slug)

    async def seed_defaults(self, category: str) -> List[str]:
        slug = normalize_category(category)
        if slug is None:
            raise ValidationFailure("category is required")
        keywords = default_keywords(slug)
        if not keywords:
            known = ", ".join(sorted(KEYWORD_POOLS))
            raise NotFoundFailure(f"No built-in keywords for category '{slug}'. Known categories: {known}")
        return await self.seed_category(slug, keywords)

    async def record_search(self, keyword: str) -> None:
        text = " ".join(str(keyword or "").split())
        if text:
            await self.store.record_query(text)

    async def auto_seed_from_history(self, limit: Optional[int] = None) -> Dict[str, Any]:
        async with self._writing(None):
            return await self._auto_seed(limit)

    async def _auto_seed(self, limit: Optional[int]) -> Dict[str, Any]:
        limit = max(1, min(MAX_AUTOSEED_LIMIT, int(limit if limit is not None else self.autoseed_limit)))
        existing = {normalize_keyword(entry.keyword) for entry in await self.store.list_entries()}
        candidates: List[str] = []
        seen = set()
        for term in await self.store.recent_queries(limit * 10):
            text = " ".join(str(term or "").split())
            key = text.lower()
            if not text or key in seen or key in existing:
                continue
            seen.add(key)
            candidates.append(text)
            if len(candidates) >= limit:
                break
        added = await self._insert(candidates, None)
        return {"added": len(added), "keywords": added}

    async def get_active_keywords(self, as_of: AsOf = None, category: Optional[str] = None) -> Optional[List[str]]:
        """Keywords already rotated in for the day, or None if no rotation ran."""
        moment = resolve_as_of(as_of)
        record = await self.store.get_rotation(moment.date().isoformat(), normalize_category(category))
        return list(record.keywords) if record else None

    async def rotate(
        self,
        count: Optional[int] = None,
        as_of: AsOf = None,
        force: bool = False,
        category: Optional[str] = None,
    ) -> RotationResult:
        """Select up to ``count`` keywords for the period containing ``as_of``.

        Order is never-used first, then least recently used. Keywords inside
        the cool-down window are only taken once the eligible pool runs out.
        Keywords already used in the same period need ``force``.
        Without ``force`` an earlier rotation for the same day is returned as is.
        """
        count = self.clamp_count(count)
        moment = resolve_as_of(as_of)
        date_key = moment.date().isoformat()
        slug = normalize_category(category)

        async with self._writing(slug):
            if not force:
                cached = await self.store.get_rotation(date_key, slug)
                if cached is not None and cached.keywords:
                    return RotationResult(
                        date=date_key,
                        category=slug,
                        keywords=list(cached.keywords),
                        new_count=cached.new_count,
                        reused_count=cached.reused_count,
                        from_cache=True,
                    )

            chosen = await self._select(count, moment, force, slug)
            seeded = 0
            # History terms are seeded uncategorized, so only the global pool can grow here.
            if len(chosen) < count and slug is None:
                seeded = (await self._auto_seed(self.autoseed_limit))["added"]
                if seeded:
                    chosen = await self._select(count, moment, force, slug)

            if not chosen:
                logger.info("Keyword rotation %s category=%s found nothing to select", date_key, slug)
                return RotationResult(date=date_key, category=slug, keywords=[], seeded=seeded)

            new_count = sum(1 for entry in chosen if entry.use_count == 0)
            for entry in chosen:
                entry.last_used_at = moment
                entry.use_count += 1
            await self.store.update_entries(chosen)

            keywords = [entry.keyword for entry in chosen]
            await self.store.put_rotation(
                RotationRecord(
                    date_key=date_key,
                    category=slug,
                    keywords=keywords,
                    new_count=new_count,
                    reused_count=len(chosen) - new_count,
                )
            )
            logger.info(
                "Rotated %d keywords for %s category=%s (new=%d reused=%d force=%s)",
                len(keywords), date_key, slug, new_count, len(chosen) - new_count, force,
            )
            return RotationResult(
                date=date_key,
                category=slug,
                keywords=keywords,
                new_count=new_count,
                reused_count=len(chosen) - new_count,
                seeded=seeded,
            )

    async def _select(
        self,
        count: int,
        moment: datetime,
        force: bool,
        category: Optional[str],
    ) -> List[KeywordPoolEntry]:
        entries = sorted(await self.store.list_entries(category), key=_recency_key)
        period = moment.date()
        eligible: List[KeywordPoolEntry] = []
        cooling: List[KeywordPoolEntry] = []
        same_period: List[KeywordPoolEntry] = []
        for entry in entries:
            used = entry.last_used_at
            if used is None:
                eligible.append(entry)
            elif used.date() == period:
                same_period.append(entry)
            elif moment - used < self.cooldown:
                cooling.append(entry)
            else:
                eligible.append(entry)

        ordered = eligible + cooling
        if force:
            ordered += same_period
        return ordered[:count]


_manager: Optional[KeywordPoolManager] = None


def build_keyword_store() -> KeywordStore:
    if settings.KEYWORD_POOL_STORE.strip().lower() == "database":
        from database import async_session_maker

        return SqlKeywordStore(async_session_maker)
    return InMemoryKeywordStore()


def get_keyword_pool_manager() -> KeywordPoolManager:
    """Process-wide pool manager configured from settings."""
    global _manager
    if _manager is None:
        _manager = KeywordPoolManager(
            build_keyword_store(),
            cooldown_days=settings.KEYWORD_COOLDOWN_DAYS,
            max_count=settings.KEYWORD_ROTATION_MAX_COUNT,
            default_count=settings.KEYWORD_ROTATION_DEFAULT_COUNT,
            autoseed_limit=settings.KEYWORD_AUTOSEED_LIMIT,
        )
    return _manager
