"""Video download job model."""

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text

from database import Base


class VideoJobRecord(Base):
    """Durable copy of a video acquisition job."""

    __tablename__ = "video_jobs"

    id = Column(String, primary_key=True)
    source_url = Column(String, nullable=False, index=True)
    platform = Column(String, nullable=False, default="unknown", index=True)
    status = Column(String, nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    result_json = Column(JSON, nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
