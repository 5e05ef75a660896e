"""Exception taxonomy for the video acquisition pipeline."""

from __future__ import annotations

from typing import Optional


class AcquisitionError(Exception):
    """Base exception for all acquisition errors."""

    error_code = "download_failed"
    transient = False


class ParseFailure(AcquisitionError):
    """Malformed third-party document (manifest, payload)."""

    error_code = "parse"


class ValidationFailure(AcquisitionError):
    """Missing or invalid caller input. Never retried."""

    error_code = "validation"


class NotFoundFailure(AcquisitionError):
    """Unknown job id or unsupported source platform. Never retried."""

    error_code = "not_found"


class CancelledFailure(AcquisitionError):
    """Job cancellation observed between pipeline steps. Never retried."""

    error_code = "cancelled"


class UpstreamFailure(AcquisitionError):
    """Network error or non-2xx response from an upstream API. Retryable."""

    transient = True

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        timeout: bool = False,
    ) -> None:
        self.status_code = status_code
        self.timeout = timeout
        super().__init__(message)

    @property
    def error_code(self) -> str:  # type: ignore[override]
        return "timeout" if self.timeout else "upstream"


class SearchFailure(UpstreamFailure):
    """Platform search request failed for a given keyword/cursor."""

    def __init__(
        self,
        keyword: str,
        cursor: int,
        message: str,
        *,
        status_code: Optional[int] = None,
        timeout: bool = False,
    ) -> None:
        self.keyword = keyword
        self.cursor = cursor
        super().__init__(
            f"Search failed for keyword={keyword!r} cursor={cursor}: {message}",
            status_code=status_code,
            timeout=timeout,
        )


class DownloadFailure(AcquisitionError):
    """A download pipeline stage failed. Carries the stage name and the cause."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} failed: {cause}")

    @property
    def transient(self) -> bool:  # type: ignore[override]
        return bool(getattr(self.cause, "transient", False))

    @property
    def error_code(self) -> str:  # type: ignore[override]
        if isinstance(self.cause, AcquisitionError):
            return self.cause.error_code
        return "download_failed"
