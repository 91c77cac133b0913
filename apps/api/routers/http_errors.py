"""Translate pipeline errors into HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException

from services.errors import (
    AssetNotFound,
    AssetStateConflict,
    IncompleteUpload,
    IngestError,
    InvalidPart,
    InvalidSession,
    InvalidSignature,
    InvalidSize,
    ProviderUnavailable,
    UnknownObject,
)


def to_http_exception(exc: IngestError) -> HTTPException:
    if isinstance(exc, IncompleteUpload):
        return HTTPException(
            status_code=409,
            detail={
                "code": exc.code,
                "message": str(exc),
                "missingParts": exc.missing_parts,
                "undersizedParts": exc.undersized_parts,
            },
        )
    if isinstance(exc, (InvalidSize, InvalidPart)):
        status_code = 422
    elif isinstance(exc, InvalidSession):
        status_code = 409
    elif isinstance(exc, (AssetNotFound, UnknownObject)):
        status_code = 404
    elif isinstance(exc, AssetStateConflict):
        status_code = 409
    elif isinstance(exc, InvalidSignature):
        status_code = 401
    elif isinstance(exc, ProviderUnavailable):
        status_code = 503
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail={"code": exc.code, "message": str(exc)})
