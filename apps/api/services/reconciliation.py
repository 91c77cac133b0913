"""Periodic repair of assets and upload sessions stuck mid-pipeline.

Each sweep walks its candidates in fixed-size pages ordered by
``(created_at, id)``. Rows that were repaired drop out of the filter, so the
offset only advances past rows that were left as they were.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.upload_session import OPEN_SESSION_STATES, UploadSession
from models.video_asset import VideoAsset
from models.webhook_event import WebhookEvent
from services.asset_registration import submit_processing_job
from services.asset_state import apply_callback_transition, apply_retry_transition, load_asset, utcnow
from services.errors import ProviderRejected, ProviderUnavailable
from services.processing_provider import get_processing_provider
from services.upload_sessions import expire_session
from services.webhook_ingestion import apply_errored, apply_ready, fill_ready_metadata

logger = logging.getLogger(__name__)


async def _sweep(
    name: str,
    build_query: Callable[[], Any],
    repair: Callable[[AsyncSession, str], Awaitable[bool]],
) -> Dict[str, int]:
    page_size = max(int(settings.RECONCILE_PAGE_SIZE), 1)
    max_pages = max(int(settings.RECONCILE_MAX_PAGES), 1)
    stats = {"scanned": 0, "repaired": 0, "unchanged": 0, "failed": 0}
    offset = 0
    for _ in range(max_pages):
        async with async_session_maker() as db:
            result = await db.execute(build_query().offset(offset).limit(page_size))
            ids = [row[0] for row in result.all()]
        if not ids:
            break
        for row_id in ids:
            stats["scanned"] += 1
            async with async_session_maker() as db:
                try:
                    repaired = await repair(db, row_id)
                except Exception:
                    await db.rollback()
                    logger.exception("%s: repair of %s failed", name, row_id)
                    stats["failed"] += 1
                    repaired = False
            if repaired:
                stats["repaired"] += 1
            else:
                stats["unchanged"] += 1
                offset += 1
        if len(ids) < page_size:
            break
    if stats["scanned"]:
        logger.info("%s sweep: %s", name, stats)
    return stats


async def _finalize_deferred_events(db: AsyncSession, external_asset_id: str, detail: str) -> None:
    await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.external_asset_id == external_asset_id,
            WebhookEvent.outcome == "deferred",
            WebhookEvent.processed_at.is_(None),
        )
        .values(outcome="applied", detail=detail, processed_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def _stamp_polled(db: AsyncSession, asset_id: str) -> None:
    await db.execute(
        update(VideoAsset)
        .where(VideoAsset.id == asset_id)
        .values(last_polled_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def poll_provider_status(db: AsyncSession, asset: VideoAsset) -> str:
    """Ask the provider about ``asset`` and apply a terminal status. Commits.

    Returns the provider status that was observed (``ready``, ``errored``,
    ``preparing``, ``unavailable``, ...).
    """
    provider = get_processing_provider()
    external_id = asset.external_asset_id
    try:
        status = await provider.get_asset_status(external_id)
    except ProviderUnavailable as exc:
        logger.warning("Provider unavailable while polling %s: %s", external_id, exc)
        await _stamp_polled(db, asset.id)
        await db.commit()
        return "unavailable"
    except ProviderRejected as exc:
        logger.error("Provider no longer knows asset %s: %s", external_id, exc)
        await apply_callback_transition(
            db,
            asset.id,
            "errored",
            values={"error_reason": f"provider_lookup_failed: {exc}"[:1000], "last_polled_at": utcnow()},
        )
        await _finalize_deferred_events(db, external_id, "provider_lookup_failed")
        await db.commit()
        return "errored"

    if status.status == "ready" and status.playback_id:
        if not await apply_ready(db, asset, status):
            await fill_ready_metadata(db, asset.id, status, only_statuses=("ready",))
        await _finalize_deferred_events(db, external_id, "refreshed_from_provider")
    elif status.status == "errored":
        await apply_errored(db, asset, status)
        await _finalize_deferred_events(db, external_id, "refreshed_from_provider")
    else:
        if await apply_callback_transition(db, asset.id, "processing"):
            logger.info("Asset %s is %s at the provider; moved to processing", asset.id, status.status)
        await _stamp_polled(db, asset.id)
        await db.commit()
        return "preparing" if status.status == "ready" else status.status
    await _stamp_polled(db, asset.id)
    await db.commit()
    return status.status


def _stalled_registrations_query(cutoff, now):
    return (
        select(VideoAsset.id)
        .where(
            VideoAsset.processing_status == "pending",
            VideoAsset.external_asset_id.is_(None),
            VideoAsset.storage_key.is_not(None),
            VideoAsset.created_at < cutoff,
            or_(VideoAsset.next_attempt_at.is_(None), VideoAsset.next_attempt_at <= now),
        )
        .order_by(VideoAsset.created_at, VideoAsset.id)
    )


async def sweep_stalled_registrations(threshold_minutes: Optional[int] = None) -> Dict[str, int]:
    """Resubmit pending assets that never got an external id; give up after the attempt budget."""
    minutes = settings.STALLED_REGISTRATION_MINUTES if threshold_minutes is None else threshold_minutes
    now = utcnow()
    cutoff = now - timedelta(minutes=max(int(minutes), 0))
    max_attempts = max(int(settings.PROVIDER_MAX_SUBMIT_ATTEMPTS), 1)

    async def repair(db: AsyncSession, asset_id: str) -> bool:
        asset = await load_asset(db, asset_id)
        if asset is None or asset.processing_status != "pending" or asset.external_asset_id:
            return True
        if int(asset.retry_count or 0) >= max_attempts:
            moved = await apply_retry_transition(
                db,
                asset_id,
                "errored",
                values={"error_reason": "submission_retries_exhausted"},
            )
            await db.commit()
            if moved:
                logger.warning("Asset %s errored after %s failed submissions", asset_id, asset.retry_count)
            return True
        await submit_processing_job(db, asset)
        return True

    return await _sweep("stalled_registrations", lambda: _stalled_registrations_query(cutoff, now), repair)


async def sweep_missing_callbacks(threshold_minutes: Optional[int] = None) -> Dict[str, int]:
    """Poll the provider for linked assets whose terminal callback never arrived."""
    minutes = settings.MISSING_CALLBACK_MINUTES if threshold_minutes is None else threshold_minutes
    cutoff = utcnow() - timedelta(minutes=max(int(minutes), 0))

    def build_query():
        return (
            select(VideoAsset.id)
            .where(
                or_(
                    VideoAsset.processing_status.in_(("pending", "processing")),
                    # ready callbacks that arrived without playback ids
                    and_(VideoAsset.processing_status == "ready", VideoAsset.external_playback_ref.is_(None)),
                ),
                VideoAsset.external_asset_id.is_not(None),
                VideoAsset.updated_at < cutoff,
                or_(VideoAsset.last_polled_at.is_(None), VideoAsset.last_polled_at < cutoff),
            )
            .order_by(VideoAsset.created_at, VideoAsset.id)
        )

    async def repair(db: AsyncSession, asset_id: str) -> bool:
        asset = await load_asset(db, asset_id)
        if asset is None or not asset.external_asset_id:
            return True
        await poll_provider_status(db, asset)
        # Either terminal now or stamped as polled; both leave the filter.
        return True

    return await _sweep("missing_callbacks", build_query, repair)


async def sweep_expired_sessions() -> Dict[str, int]:
    """Expire open upload sessions past their TTL and abort their remote uploads."""
    now = utcnow()

    def build_query():
        return (
            select(UploadSession.id)
            .where(
                UploadSession.state.in_(OPEN_SESSION_STATES),
                UploadSession.expires_at <= now,
            )
            .order_by(UploadSession.created_at, UploadSession.id)
        )

    async def repair(db: AsyncSession, session_id: str) -> bool:
        return await expire_session(db, session_id)

    return await _sweep("expired_sessions", build_query, repair)


async def run_reconciliation() -> Dict[str, Dict[str, int]]:
    """Run every sweep once."""
    return {
        "stalled_registrations": await sweep_stalled_registrations(),
        "missing_callbacks": await sweep_missing_callbacks(),
        "expired_sessions": await sweep_expired_sessions(),
    }


async def refresh_asset_from_provider(asset_id: str, event_id: Optional[str] = None) -> str:
    """Finish work a callback deferred by asking the provider directly.

    Raises ProviderUnavailable while the provider is still preparing the asset
    so the queue's retry schedule runs it again.
    """
    async with async_session_maker() as db:
        asset = await load_asset(db, asset_id)
        if asset is None or not asset.external_asset_id:
            if event_id:
                await db.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.external_event_id == event_id, WebhookEvent.processed_at.is_(None))
                    .values(outcome="applied", detail="asset_missing", processed_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
            logger.warning("Deferred refresh for asset %s found nothing to refresh", asset_id)
            return "missing"

        observed = await poll_provider_status(db, asset)
        if observed in ("ready", "errored"):
            return observed
        raise ProviderUnavailable(f"Asset {asset.external_asset_id} is still {observed}")


def refresh_asset_from_provider_job(asset_id: str, event_id: Optional[str] = None) -> str:
    """RQ worker entrypoint for deferred provider refreshes."""
    return asyncio.run(refresh_asset_from_provider(asset_id, event_id))
