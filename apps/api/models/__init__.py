"""Models package."""

from .video_job import VideoJobRecord
from .keyword_pool import KeywordPoolRecord, KeywordQueryRecord, KeywordRotationRecord
