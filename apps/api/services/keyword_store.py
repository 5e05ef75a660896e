"""Keyword pool entries and their storage backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.keyword_pool import KeywordPoolRecord, KeywordQueryRecord, KeywordRotationRecord

# Auto-seeding never reads further back than this many searches.
QUERY_HISTORY_LIMIT = 5000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_keyword(keyword: str) -> str:
    return " ".join(str(keyword or "").split()).lower()


def entry_key(category: Optional[str], keyword: str) -> str:
    return f"{category or ''}__{normalize_keyword(keyword)}"


def rotation_key(date_key: str, category: Optional[str]) -> str:
    return f"{date_key}__{category}" if category else date_key


@dataclass
class KeywordPoolEntry:
    keyword: str
    category: Optional[str] = None
    last_used_at: Optional[datetime] = None
    use_count: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    seq: int = 0

    @property
    def key(self) -> str:
        return entry_key(self.category, self.keyword)


@dataclass
class RotationRecord:
    date_key: str
    category: Optional[str]
    keywords: List[str]
    new_count: int = 0
    reused_count: int = 0
    created_at: datetime = field(default_factory=_utcnow)


class KeywordStore(ABC):
    """Document store for pool entries, rotation records and search history."""

    @abstractmethod
    async def list_entries(self, category: Optional[str] = None) -> List[KeywordPoolEntry]:
        """Entries in insertion order; ``category=None`` returns the whole pool."""
        raise NotImplementedError

    @abstractmethod
    async def insert_entries(self, entries: Sequence[KeywordPoolEntry]) -> List[KeywordPoolEntry]:
        """Insert entries whose key is not present yet; return the inserted ones."""
        raise NotImplementedError

    @abstractmethod
    async def update_entries(self, entries: Sequence[KeywordPoolEntry]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_rotation(self, date_key: str, category: Optional[str]) -> Optional[RotationRecord]:
        raise NotImplementedError

    @abstractmethod
    async def put_rotation(self, record: RotationRecord) -> None:
        raise NotImplementedError

    @abstractmethod
    async def record_query(self, keyword: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def recent_queries(self, limit: int) -> List[str]:
        """Most recent searched keywords first (may contain repeats)."""
        raise NotImplementedError


class InMemoryKeywordStore(KeywordStore):
    def __init__(self, history_limit: int = QUERY_HISTORY_LIMIT) -> None:
        self._entries: Dict[str, KeywordPoolEntry] = {}
        self._rotations: Dict[str, RotationRecord] = {}
        self._queries: Deque[str] = deque(maxlen=max(int(history_limit), 1))
        self._seq = 0

    async def list_entries(self, category: Optional[str] = None) -> List[KeywordPoolEntry]:
        rows = [replace(entry) for entry in self._entries.values()]
        if category is not None:
            rows = [row for row in rows if row.category == category]
        return sorted(rows, key=lambda row: row.seq)

    async def insert_entries(self, entries: Sequence[KeywordPoolEntry]) -> List[KeywordPoolEntry]:
        inserted: List[KeywordPoolEntry] = []
        for entry in entries:
            if entry.key in self._entries:
                continue
            self._seq += 1
            stored = replace(entry, seq=self._seq)
            self._entries[stored.key] = stored
            inserted.append(replace(stored))
        return inserted

    async def update_entries(self, entries: Sequence[KeywordPoolEntry]) -> None:
        for entry in entries:
            if entry.key in self._entries:
                self._entries[entry.key] = replace(entry)

    async def get_rotation(self, date_key: str, category: Optional[str]) -> Optional[RotationRecord]:
        record = self._rotations.get(rotation_key(date_key, category))
        return replace(record, keywords=list(record.keywords)) if record else None

    async def put_rotation(self, record: RotationRecord) -> None:
        self._rotations[rotation_key(record.date_key, record.category)] = replace(
            record, keywords=list(record.keywords)
        )

    async def record_query(self, keyword: str) -> None:
        self._queries.append(keyword)

    async def recent_queries(self, limit: int) -> List[str]:
        return list(reversed(self._queries))[: max(limit, 0)]


def _record_to_entry(record: KeywordPoolRecord) -> KeywordPoolEntry:
    return KeywordPoolEntry(
        keyword=record.keyword,
        category=record.category,
        last_used_at=_as_utc(record.last_used_at),
        use_count=int(record.use_count or 0),
        created_at=_as_utc(record.created_at) or _utcnow(),
        seq=int(record.seq or 0),
    )


class SqlKeywordStore(KeywordStore):
    """Keyword pool persisted through SQLAlchemy."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def list_entries(self, category: Optional[str] = None) -> List[KeywordPoolEntry]:
        async with self.session_maker() as db:
            query = select(KeywordPoolRecord).order_by(KeywordPoolRecord.seq.asc())
            if category is not None:
                query = query.where(KeywordPoolRecord.category == category)
            result = await db.execute(query)
            return [_record_to_entry(record) for record in result.scalars().all()]

    async def insert_entries(self, entries: Sequence[KeywordPoolEntry]) -> List[KeywordPoolEntry]:
        if not entries:
            return []
        async with self.session_maker() as db:
            keys = [entry.key for entry in entries]
            existing_result = await db.execute(select(KeywordPoolRecord.id).where(KeywordPoolRecord.id.in_(keys)))
            existing = set(existing_result.scalars().all())
            seq_result = await db.execute(select(func.coalesce(func.max(KeywordPoolRecord.seq), 0)))
            next_seq = int(seq_result.scalar() or 0)

            inserted: List[KeywordPoolEntry] = []
            for entry in entries:
                if entry.key in existing:
                    continue
                next_seq += 1
                existing.add(entry.key)
                stored = replace(entry, seq=next_seq)
                db.add(
                    KeywordPoolRecord(
                        id=stored.key,
                        keyword=stored.keyword,
                        normalized_keyword=normalize_keyword(stored.keyword),
                        category=stored.category,
                        last_used_at=stored.last_used_at,
                        use_count=stored.use_count,
                        seq=stored.seq,
                        created_at=stored.created_at,
                    )
                )
                inserted.append(stored)
            await db.commit()
            return inserted

    async def update_entries(self, entries: Sequence[KeywordPoolEntry]) -> None:
        if not entries:
            return
        by_key = {entry.key: entry for entry in entries}
        async with self.session_maker() as db:
            result = await db.execute(select(KeywordPoolRecord).where(KeywordPoolRecord.id.in_(list(by_key))))
            for record in result.scalars().all():
                entry = by_key[record.id]
                record.last_used_at = entry.last_used_at
                record.use_count = entry.use_count
            await db.commit()

    async def get_rotation(self, date_key: str, category: Optional[str]) -> Optional[RotationRecord]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(KeywordRotationRecord).where(KeywordRotationRecord.id == rotation_key(date_key, category))
            )
            record = result.scalar_one_or_none()
            if record is None:
                return None
            return RotationRecord(
                date_key=record.date_key,
                category=record.category,
                keywords=list(record.keywords_json or []),
                new_count=int(record.new_count or 0),
                reused_count=int(record.reused_count or 0),
                created_at=_as_utc(record.created_at) or _utcnow(),
            )

    async def put_rotation(self, record: RotationRecord) -> None:
        key = rotation_key(record.date_key, record.category)
        async with self.session_maker() as db:
            result = await db.execute(select(KeywordRotationRecord).where(KeywordRotationRecord.id == key))
            row = result.scalar_one_or_none()
            if row is None:
                row = KeywordRotationRecord(id=key)
                db.add(row)
            row.date_key = record.date_key
            row.category = record.category
            row.keywords_json = list(record.keywords)
            row.new_count = record.new_count
            row.reused_count = record.reused_count
            row.created_at = record.created_at
            await db.commit()

    async def record_query(self, keyword: str) -> None:
        async with self.session_maker() as db:
            db.add(KeywordQueryRecord(keyword=keyword, created_at=_utcnow()))
            await db.commit()

    async def recent_queries(self, limit: int) -> List[str]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(KeywordQueryRecord.keyword)
                .order_by(KeywordQueryRecord.created_at.desc())
                .limit(max(limit, 0))
            )
            return [str(keyword) for keyword in result.scalars().all()]
