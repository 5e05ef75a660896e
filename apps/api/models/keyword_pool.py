"""Keyword pool, rotation and search history models."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, JSON, String

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KeywordPoolRecord(Base):
    """A search keyword in the rotating pool, unique per category."""

    __tablename__ = "keyword_pool"

    id = Column(String, primary_key=True)
    keyword = Column(String, nullable=False)
    normalized_keyword = Column(String, nullable=False, index=True)
    category = Column(String, nullable=True, index=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True, index=True)
    use_count = Column(Integer, nullable=False, default=0)
    seq = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class KeywordRotationRecord(Base):
    """Keywords selected for one rotation period (date + category)."""

    __tablename__ = "keyword_rotation_days"

    id = Column(String, primary_key=True)
    date_key = Column(String, nullable=False, index=True)
    category = Column(String, nullable=True)
    keywords_json = Column(JSON, nullable=False, default=list)
    new_count = Column(Integer, nullable=False, default=0)
    reused_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class KeywordQueryRecord(Base):
    """A keyword that was searched; feeds auto-seeding of the pool."""

    __tablename__ = "keyword_queries"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    keyword = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
