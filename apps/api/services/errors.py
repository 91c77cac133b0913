"""Ingestion pipeline error taxonomy."""

from __future__ import annotations

from typing import Iterable, List, Optional


class IngestError(Exception):
    """Base class for pipeline errors surfaced to callers."""

    code = "ingest_error"


class InvalidSize(IngestError):
    """Declared upload size is non-positive or over the configured ceiling."""

    code = "invalid_size"


class InvalidSession(IngestError):
    """Upload session is unknown, closed, or expired for the requested operation."""

    code = "invalid_session"


class InvalidPart(IngestError):
    """Part number is outside 1..total_parts or the part payload is unusable."""

    code = "invalid_part"


class IncompleteUpload(IngestError):
    """Completion was requested before every part arrived at a valid size."""

    code = "incomplete_upload"

    def __init__(self, missing_parts: Iterable[int], undersized_parts: Optional[Iterable[int]] = None):
        self.missing_parts: List[int] = sorted(int(p) for p in missing_parts)
        self.undersized_parts: List[int] = sorted(int(p) for p in (undersized_parts or []))
        message = "Upload is incomplete"
        if self.missing_parts:
            message += f"; missing parts {self.missing_parts}"
        if self.undersized_parts:
            message += f"; undersized parts {self.undersized_parts}"
        super().__init__(message)


class UnknownObject(IngestError):
    """Storage key does not resolve to a stored object."""

    code = "unknown_object"


class AssetNotFound(IngestError):
    code = "asset_not_found"


class InvalidSignature(IngestError):
    """Inbound callback failed authenticity verification."""

    code = "invalid_signature"


class MalformedWebhook(IngestError):
    """Verified callback body does not have the expected envelope."""

    code = "malformed_webhook"


class ProviderUnavailable(IngestError):
    """Transient provider failure (network, timeout, 5xx, throttling). Retried later."""

    code = "provider_unavailable"


class ProviderRejected(IngestError):
    """Provider refused the request with a non-retryable client error."""

    code = "provider_rejected"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AssetStateConflict(IngestError):
    """Requested operation is not allowed from the asset's current processing status."""

    code = "asset_state_conflict"
