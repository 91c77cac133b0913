"""Asset processing state machine and conditional (compare-and-swap) transitions."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.video_asset import PROCESSING_STATUSES, VideoAsset


# target -> statuses a provider callback may move the asset out of
CALLBACK_TRANSITIONS: Dict[str, tuple] = {
    "processing": ("pending",),
    "ready": ("pending", "processing"),
    "errored": ("pending", "processing"),
}

# explicit retry paths (registration resubmission, sweeper)
RETRY_TRANSITIONS: Dict[str, tuple] = {
    "processing": ("pending", "errored"),
    "errored": ("pending",),
}

REPROCESSABLE_STATUSES = ("ready", "errored")

# a provider-side deletion errors any asset that has not already failed
PROVIDER_DELETABLE_STATUSES = ("pending", "processing", "ready")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands timestamps back naive; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def dialect_insert(db: AsyncSession, table):
    """Return the dialect-specific INSERT construct so ON CONFLICT clauses are available."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)


async def load_asset(db: AsyncSession, asset_id: str) -> Optional[VideoAsset]:
    """Fetch an asset, overwriting any stale identity-map copy."""
    result = await db.execute(
        select(VideoAsset)
        .where(VideoAsset.id == asset_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def load_asset_by_external_id(db: AsyncSession, external_asset_id: str) -> Optional[VideoAsset]:
    result = await db.execute(
        select(VideoAsset)
        .where(VideoAsset.external_asset_id == external_asset_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def transition(
    db: AsyncSession,
    asset_id: str,
    target: str,
    *,
    allowed_from: Iterable[str],
    values: Optional[Dict[str, Any]] = None,
) -> bool:
    """Move ``asset_id`` to ``target`` only if it is currently in ``allowed_from``.

    Returns False when another writer already moved the row (or it is in a
    terminal state); the caller treats that as a stale update and stops.
    Does not commit.
    """
    if target not in PROCESSING_STATUSES:
        raise ValueError(f"Unknown processing status: {target}")
    stmt = (
        update(VideoAsset)
        .where(
            VideoAsset.id == asset_id,
            VideoAsset.processing_status.in_(tuple(allowed_from)),
        )
        .values(processing_status=target, updated_at=utcnow(), **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return (result.rowcount or 0) == 1


async def apply_callback_transition(
    db: AsyncSession,
    asset_id: str,
    target: str,
    values: Optional[Dict[str, Any]] = None,
) -> bool:
    return await transition(db, asset_id, target, allowed_from=CALLBACK_TRANSITIONS[target], values=values)


async def apply_retry_transition(
    db: AsyncSession,
    asset_id: str,
    target: str,
    values: Optional[Dict[str, Any]] = None,
) -> bool:
    return await transition(db, asset_id, target, allowed_from=RETRY_TRANSITIONS[target], values=values)


def round_duration(value: Optional[float]) -> Optional[int]:
    """Provider durations are decimal seconds; persist the nearest whole second."""
    if value is None:
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None
