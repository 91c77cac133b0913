"""External video processing provider client (Mux-compatible REST API)."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from config import require_provider_credentials, settings
from services.errors import ProviderRejected, ProviderUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderAssetStatus:
    external_asset_id: str
    status: str
    playback_id: Optional[str] = None
    duration: Optional[float] = None
    text_track_id: Optional[str] = None
    passthrough: Optional[str] = None
    errors: List[str] = field(default_factory=list)


def parse_asset_data(data: Dict[str, Any]) -> ProviderAssetStatus:
    """Normalise a provider asset object (API response or callback ``data``)."""
    playback_ids = data.get("playback_ids") or []
    playback_id = None
    if playback_ids and isinstance(playback_ids[0], dict):
        playback_id = playback_ids[0].get("id") or None

    text_track_id = None
    for track in data.get("tracks") or []:
        if isinstance(track, dict) and track.get("type") == "text" and track.get("status", "ready") == "ready":
            text_track_id = track.get("id")
            break

    duration = data.get("duration")
    try:
        duration = float(duration) if duration is not None else None
    except (TypeError, ValueError):
        duration = None

    raw_errors = data.get("errors") or {}
    messages: List[str] = []
    if isinstance(raw_errors, dict):
        messages = [str(m) for m in (raw_errors.get("messages") or [])]
        if not messages and raw_errors.get("type"):
            messages = [str(raw_errors["type"])]

    return ProviderAssetStatus(
        external_asset_id=str(data.get("id") or ""),
        status=str(data.get("status") or "preparing"),
        playback_id=playback_id,
        duration=duration,
        text_track_id=text_track_id,
        passthrough=data.get("passthrough") or None,
        errors=messages,
    )


def thumbnail_url(playback_id: str) -> str:
    return f"{settings.MEDIA_IMAGE_BASE_URL}/{playback_id}/thumbnail.jpg?time={int(settings.THUMBNAIL_TIME_SECONDS)}"


def stream_url(playback_id: str) -> str:
    return f"{settings.MEDIA_STREAM_BASE_URL}/{playback_id}.m3u8"


def transcript_url(playback_id: str, track_id: str) -> str:
    return f"{settings.MEDIA_STREAM_BASE_URL}/{playback_id}/text/{track_id}.vtt"


class ProcessingProvider(ABC):
    @abstractmethod
    async def create_asset(self, source_url: str, *, passthrough: Optional[str] = None) -> ProviderAssetStatus:
        raise NotImplementedError

    @abstractmethod
    async def get_asset_status(self, external_asset_id: str) -> ProviderAssetStatus:
        raise NotImplementedError


class MuxProcessingProvider(ProcessingProvider):
    """Thin httpx client over the provider's asset endpoints."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.PROVIDER_BASE_URL).rstrip("/")
        self.timeout = float(timeout or settings.PROVIDER_TIMEOUT_SECONDS)

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            auth = require_provider_credentials()
        except ValueError as exc:
            raise ProviderUnavailable(str(exc)) from exc

        try:
            async with httpx.AsyncClient(base_url=self.base_url, auth=auth, timeout=self.timeout) as client:
                response = await client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(f"Provider request timed out: {method} {path}") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailable(f"Provider unreachable: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailable(f"Provider returned {response.status_code} for {method} {path}")
        if response.status_code >= 400:
            raise ProviderRejected(
                f"Provider rejected {method} {path}: {response.status_code} {response.text[:300]}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderUnavailable(f"Provider returned a non-JSON body for {method} {path}") from exc
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise ProviderUnavailable(f"Provider response for {method} {path} has no data object")
        return data

    async def create_asset(self, source_url: str, *, passthrough: Optional[str] = None) -> ProviderAssetStatus:
        payload: Dict[str, Any] = {
            "input": [{"url": source_url}],
            "playback_policy": [settings.PROVIDER_PLAYBACK_POLICY],
        }
        if passthrough:
            payload["passthrough"] = passthrough
        if settings.PROVIDER_TEST_MODE:
            payload["test"] = True
        data = await self._request("POST", "/video/v1/assets", json=payload)
        status = parse_asset_data(data)
        if not status.external_asset_id:
            raise ProviderUnavailable("Provider accepted the job without returning an asset id")
        logger.info("Provider accepted processing job %s (passthrough=%s)", status.external_asset_id, passthrough)
        return status

    async def get_asset_status(self, external_asset_id: str) -> ProviderAssetStatus:
        data = await self._request("GET", f"/video/v1/assets/{external_asset_id}")
        return parse_asset_data(data)


def get_processing_provider() -> ProcessingProvider:
    return MuxProcessingProvider()
