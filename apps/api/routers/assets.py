"""
Video asset router.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.video_asset import VideoAsset
from routers.http_errors import to_http_exception
from services import asset_registration
from services.errors import IngestError
from services.processing_provider import stream_url

router = APIRouter()


class AssetMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = Field(default=None, max_length=500)
    owner_ref: Optional[str] = Field(default=None, alias="ownerRef")
    content_type: Optional[str] = Field(default=None, alias="contentType")


class RegisterAssetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    storage_key: str = Field(min_length=1, alias="storageKey")
    metadata: AssetMetadata = Field(default_factory=AssetMetadata)


class RecordViewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    viewer_ref: Optional[str] = Field(default=None, alias="viewerRef")
    watch_seconds: int = Field(default=0, ge=0, alias="watchSeconds")


class VideoAssetResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: Optional[str] = None
    owner_ref: Optional[str] = Field(default=None, alias="ownerRef")
    storage_key: Optional[str] = Field(default=None, alias="storageKey")
    external_asset_id: Optional[str] = Field(default=None, alias="externalAssetId")
    external_playback_ref: Optional[str] = Field(default=None, alias="externalPlaybackRef")
    stream_url: Optional[str] = Field(default=None, alias="streamUrl")
    thumbnail_ref: Optional[str] = Field(default=None, alias="thumbnailRef")
    transcript_ref: Optional[str] = Field(default=None, alias="transcriptRef")
    duration_seconds: Optional[int] = Field(default=None, alias="durationSeconds")
    size_bytes: Optional[int] = Field(default=None, alias="sizeBytes")
    content_type: Optional[str] = Field(default=None, alias="contentType")
    processing_status: str = Field(alias="processingStatus")
    error_reason: Optional[str] = Field(default=None, alias="errorReason")
    retry_count: int = Field(default=0, alias="retryCount")
    view_count: int = Field(default=0, alias="viewCount")
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")
    ready_at: Optional[str] = Field(default=None, alias="readyAt")


def serialize_asset(asset: VideoAsset) -> VideoAssetResponse:
    return VideoAssetResponse(
        id=asset.id,
        title=asset.title,
        owner_ref=asset.owner_ref,
        storage_key=asset.storage_key,
        external_asset_id=asset.external_asset_id,
        external_playback_ref=asset.external_playback_ref,
        stream_url=stream_url(asset.external_playback_ref) if asset.external_playback_ref else None,
        thumbnail_ref=asset.thumbnail_ref,
        transcript_ref=asset.transcript_ref,
        duration_seconds=asset.duration_seconds,
        size_bytes=asset.size_bytes,
        content_type=asset.content_type,
        processing_status=asset.processing_status,
        error_reason=asset.error_reason,
        retry_count=int(asset.retry_count or 0),
        view_count=int(asset.view_count or 0),
        created_at=asset.created_at.isoformat() if asset.created_at else None,
        updated_at=asset.updated_at.isoformat() if asset.updated_at else None,
        ready_at=asset.ready_at.isoformat() if asset.ready_at else None,
    )


@router.post("", response_model=VideoAssetResponse)
async def register_asset(request: RegisterAssetRequest, db: AsyncSession = Depends(get_db)):
    """Register a completed upload. Idempotent per storage key."""
    try:
        asset = await asset_registration.register(
            db,
            request.storage_key,
            request.metadata.model_dump(exclude_none=True),
        )
    except IngestError as exc:
        raise to_http_exception(exc) from exc
    return serialize_asset(asset)


@router.get("/{asset_id}", response_model=VideoAssetResponse)
async def get_asset(asset_id: str, db: AsyncSession = Depends(get_db)):
    try:
        asset = await asset_registration.get_asset(db, asset_id)
    except IngestError as exc:
        raise to_http_exception(exc) from exc
    return serialize_asset(asset)


@router.post("/{asset_id}/reprocess", response_model=VideoAssetResponse)
async def reprocess_asset(asset_id: str, db: AsyncSession = Depends(get_db)):
    """Send a ready or errored asset through processing again."""
    try:
        asset = await asset_registration.reprocess(db, asset_id)
    except IngestError as exc:
        raise to_http_exception(exc) from exc
    return serialize_asset(asset)


@router.post("/{asset_id}/views")
async def record_asset_view(
    asset_id: str,
    request: RecordViewRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        view = await asset_registration.record_view(db, asset_id, request.viewer_ref, request.watch_seconds)
    except IngestError as exc:
        raise to_http_exception(exc) from exc
    return {"viewId": view.id, "assetId": asset_id}
