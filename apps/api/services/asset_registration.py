"""Asset registration and processing job submission."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.video_asset import VideoAsset
from models.video_view import VideoView
from services.asset_state import (
    REPROCESSABLE_STATUSES,
    apply_retry_transition,
    dialect_insert,
    load_asset,
    transition,
    utcnow,
)
from services.dedup import find_or_create_by_external_id
from services.errors import (
    AssetNotFound,
    AssetStateConflict,
    ProviderRejected,
    ProviderUnavailable,
    UnknownObject,
)
from services.object_storage import get_object_storage
from services.processing_provider import get_processing_provider

logger = logging.getLogger(__name__)

REGISTRATION_METADATA_FIELDS = ("title", "owner_ref", "content_type")


def retry_backoff_seconds(attempts: int) -> int:
    """Exponential backoff for the ``attempts``-th failed submission, capped."""
    base = max(int(settings.PROVIDER_RETRY_BASE_SECONDS), 1)
    cap = max(int(settings.PROVIDER_RETRY_MAX_BACKOFF_SECONDS), base)
    return min(cap, base * (2 ** max(int(attempts) - 1, 0)))


async def get_asset_by_storage_key(db: AsyncSession, storage_key: str) -> Optional[VideoAsset]:
    result = await db.execute(
        select(VideoAsset)
        .where(VideoAsset.storage_key == storage_key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_asset(db: AsyncSession, asset_id: str) -> VideoAsset:
    asset = await load_asset(db, asset_id)
    if asset is None:
        raise AssetNotFound(f"Asset {asset_id} not found")
    return asset


async def register(db: AsyncSession, storage_key: str, metadata: Optional[Dict[str, Any]] = None) -> VideoAsset:
    """Create (or return) the asset for a completed upload and request processing.

    Idempotent per storage key: only the caller whose insert wins submits the
    processing job; everyone else gets the existing row.
    """
    storage_key = (storage_key or "").strip()
    if not storage_key:
        raise UnknownObject("storage_key is required")

    existing = await get_asset_by_storage_key(db, storage_key)
    if existing is not None:
        return existing

    storage = get_object_storage()
    info = await asyncio.to_thread(storage.stat_object, storage_key)
    if info is None:
        raise UnknownObject(f"No stored object at {storage_key}")

    fields = {
        name: value
        for name, value in (metadata or {}).items()
        if name in REGISTRATION_METADATA_FIELDS and value is not None
    }
    if not fields.get("content_type") and info.content_type:
        fields["content_type"] = info.content_type

    now = utcnow()
    stmt = (
        dialect_insert(db, VideoAsset.__table__)
        .values(
            id=str(uuid.uuid4()),
            storage_key=storage_key,
            size_bytes=int(info.size_bytes),
            processing_status="pending",
            retry_count=0,
            view_count=0,
            created_at=now,
            updated_at=now,
            **fields,
        )
        .on_conflict_do_nothing(index_elements=[VideoAsset.__table__.c.storage_key])
        .returning(VideoAsset.__table__.c.id)
    )
    result = await db.execute(stmt)
    inserted_id = result.scalar_one_or_none()
    await db.commit()

    if inserted_id is None:
        existing = await get_asset_by_storage_key(db, storage_key)
        if existing is None:
            # The winning row was folded into a callback placeholder in the meantime.
            raise UnknownObject(f"Asset for {storage_key} is no longer addressable by storage key")
        return existing

    logger.info("Registered asset %s for %s", inserted_id, storage_key)
    asset = await load_asset(db, inserted_id)
    return await submit_processing_job(db, asset)


async def _record_failed_attempt(db: AsyncSession, asset_id: str, attempts: int, error: str) -> None:
    now = utcnow()
    await db.execute(
        update(VideoAsset)
        .where(VideoAsset.id == asset_id)
        .values(
            retry_count=VideoAsset.retry_count + 1,
            last_attempt_at=now,
            next_attempt_at=now + timedelta(seconds=retry_backoff_seconds(attempts)),
            last_error=error[:1000],
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def _claim_submission(db: AsyncSession, asset_id: str) -> bool:
    """Lease the row for one submission attempt. Commits.

    Pushes ``next_attempt_at`` past the lease so an overlapping sweep (another
    instance, or an operator run) skips the row until this attempt settles.
    """
    now = utcnow()
    lease = max(int(settings.PROVIDER_SUBMIT_LEASE_SECONDS), 1)
    result = await db.execute(
        update(VideoAsset)
        .where(
            VideoAsset.id == asset_id,
            VideoAsset.processing_status == "pending",
            VideoAsset.external_asset_id.is_(None),
            or_(VideoAsset.next_attempt_at.is_(None), VideoAsset.next_attempt_at <= now),
        )
        .values(last_attempt_at=now, next_attempt_at=now + timedelta(seconds=lease), updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return (result.rowcount or 0) == 1


async def submit_processing_job(db: AsyncSession, asset: VideoAsset) -> VideoAsset:
    """Hand ``asset`` to the processing provider.

    Provider failures never raise to the caller: the attempt is persisted on
    the row and the asset stays ``pending`` for the sweeper. A row another
    worker is already submitting is returned untouched.
    """
    asset_id = asset.id
    if asset.external_asset_id:
        return asset
    if not asset.storage_key:
        raise UnknownObject(f"Asset {asset_id} has no stored object to process")

    if not await _claim_submission(db, asset_id):
        logger.info("Asset %s is already being submitted elsewhere; skipping", asset_id)
        return await load_asset(db, asset_id)
    asset = await load_asset(db, asset_id)

    storage = get_object_storage()
    source_url = await asyncio.to_thread(
        storage.presign_download,
        asset.storage_key,
        int(settings.SOURCE_URL_TTL_SECONDS),
    )
    attempts = int(asset.retry_count or 0) + 1
    provider = get_processing_provider()
    try:
        status = await provider.create_asset(source_url, passthrough=asset_id)
    except ProviderUnavailable as exc:
        logger.warning("Provider unavailable for asset %s (attempt %s): %s", asset_id, attempts, exc)
        await _record_failed_attempt(db, asset_id, attempts, str(exc))
        return await load_asset(db, asset_id)
    except ProviderRejected as exc:
        logger.error("Provider rejected asset %s (attempt %s): %s", asset_id, attempts, exc)
        await _record_failed_attempt(db, asset_id, attempts, str(exc))
        return await load_asset(db, asset_id)

    now = utcnow()
    linked = await find_or_create_by_external_id(db, status.external_asset_id, {}, asset_id=asset_id)
    if linked.external_asset_id != status.external_asset_id:
        # Another submission linked the row first; the extra provider job is orphaned.
        await db.rollback()
        return await load_asset(db, asset_id)
    await apply_retry_transition(
        db,
        linked.id,
        "processing",
        values={
            "last_attempt_at": now,
            "next_attempt_at": None,
            "last_error": None,
            "error_reason": None,
        },
    )
    await db.commit()
    logger.info("Asset %s submitted for processing as %s", linked.id, status.external_asset_id)
    return await load_asset(db, linked.id)


async def reprocess(db: AsyncSession, asset_id: str) -> VideoAsset:
    """Send a ready or errored asset through processing again."""
    asset = await get_asset(db, asset_id)
    if not asset.storage_key:
        raise AssetStateConflict(f"Asset {asset_id} has no stored object to reprocess")
    moved = await transition(
        db,
        asset_id,
        "pending",
        allowed_from=REPROCESSABLE_STATUSES,
        values={
            "external_asset_id": None,
            "external_playback_ref": None,
            "thumbnail_ref": None,
            "transcript_ref": None,
            "duration_seconds": None,
            "error_reason": None,
            "ready_at": None,
            "retry_count": 0,
            "last_attempt_at": None,
            "next_attempt_at": None,
            "last_error": None,
        },
    )
    if not moved:
        current_status = asset.processing_status
        await db.rollback()
        raise AssetStateConflict(f"Asset {asset_id} is {current_status} and cannot be reprocessed")
    await db.commit()
    logger.info("Asset %s reset for reprocessing", asset_id)
    asset = await load_asset(db, asset_id)
    return await submit_processing_job(db, asset)


async def record_view(
    db: AsyncSession,
    asset_id: str,
    viewer_ref: Optional[str] = None,
    watch_seconds: int = 0,
) -> VideoView:
    await get_asset(db, asset_id)
    view = VideoView(asset_id=asset_id, viewer_ref=viewer_ref, watch_seconds=max(int(watch_seconds or 0), 0))
    db.add(view)
    await db.execute(
        update(VideoAsset)
        .where(VideoAsset.id == asset_id)
        .values(view_count=VideoAsset.view_count + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return view
