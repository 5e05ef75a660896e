"""Translate acquisition errors into HTTP responses."""

from fastapi import HTTPException

from services.errors import (
    AcquisitionError,
    DownloadFailure,
    NotFoundFailure,
    SearchFailure,
    UpstreamFailure,
    ValidationFailure,
)


def to_http_error(exc: AcquisitionError) -> HTTPException:
    cause = exc.cause if isinstance(exc, DownloadFailure) else exc
    if isinstance(cause, ValidationFailure):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(cause, NotFoundFailure):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(cause, SearchFailure):
        return HTTPException(
            status_code=504 if cause.timeout else 502,
            detail={"message": str(cause), "keyword": cause.keyword, "cursor": cause.cursor},
        )
    if isinstance(cause, UpstreamFailure):
        return HTTPException(status_code=504 if cause.timeout else 502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
