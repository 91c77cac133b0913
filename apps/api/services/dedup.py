"""One canonical asset row per external processing identifier.

``find_or_create_by_external_id`` is the only path that attaches an external
id to an asset. It never commits; callers commit with their own state
transition so both land atomically.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.video_asset import VideoAsset
from models.video_view import VideoView
from services.asset_state import dialect_insert, load_asset, load_asset_by_external_id, utcnow

logger = logging.getLogger(__name__)

MERGEABLE_FIELDS = (
    "title",
    "owner_ref",
    "external_playback_ref",
    "thumbnail_ref",
    "transcript_ref",
    "duration_seconds",
    "size_bytes",
    "content_type",
)

ResolutionStrategy = Literal["merge", "keep_specific", "delete_duplicates"]
RESOLUTION_STRATEGIES = ("merge", "keep_specific", "delete_duplicates")


@dataclass(frozen=True)
class DuplicateGroup:
    external_asset_id: str
    asset_ids: List[str]

    @property
    def count(self) -> int:
        return len(self.asset_ids)


@dataclass
class ResolutionReport:
    primary_id: str
    strategy: str
    dry_run: bool
    merged_fields: Dict[str, Any] = field(default_factory=dict)
    repointed_views: int = 0
    deleted_ids: List[str] = field(default_factory=list)
    changes: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)


def _candidate_fields(candidate: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        name: value
        for name, value in (candidate or {}).items()
        if name in MERGEABLE_FIELDS and value is not None
    }


async def _view_count(db: AsyncSession, asset_id: str) -> int:
    result = await db.execute(select(func.count(VideoView.id)).where(VideoView.asset_id == asset_id))
    return int(result.scalar() or 0)


async def _absorb(
    db: AsyncSession,
    survivor: VideoAsset,
    duplicate: VideoAsset,
    *,
    merge_fields: bool,
    keep_views: bool = True,
    dry_run: bool = False,
    planned: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Fold ``duplicate`` into ``survivor`` (survivor's non-null values win) and delete it.

    ``planned`` overlays values an earlier dry-run step would already have merged.
    """
    planned = planned or {}

    def current(name: str) -> Any:
        return planned[name] if name in planned else getattr(survivor, name)

    merged: Dict[str, Any] = {}
    if merge_fields:
        for name in MERGEABLE_FIELDS:
            if current(name) is None and getattr(duplicate, name) is not None:
                merged[name] = getattr(duplicate, name)
        if current("storage_key") is None and duplicate.storage_key is not None:
            merged["storage_key"] = duplicate.storage_key

    views = await _view_count(db, duplicate.id)
    change = {
        "duplicate_id": duplicate.id,
        "merged_fields": sorted(merged),
        "views": views,
        "views_action": "repoint" if keep_views else "delete",
    }
    if dry_run:
        return {"change": change, "merged": merged, "views": views}

    if keep_views:
        await db.execute(
            update(VideoView)
            .where(VideoView.asset_id == duplicate.id)
            .values(asset_id=survivor.id)
            .execution_options(synchronize_session=False)
        )
    else:
        await db.execute(
            delete(VideoView)
            .where(VideoView.asset_id == duplicate.id)
            .execution_options(synchronize_session=False)
        )
    duplicate_view_count = int(duplicate.view_count or 0)
    await db.execute(
        delete(VideoAsset)
        .where(VideoAsset.id == duplicate.id)
        .execution_options(synchronize_session=False)
    )
    if duplicate in db:
        db.expunge(duplicate)

    values: Dict[str, Any] = dict(merged)
    values["updated_at"] = utcnow()
    if keep_views:
        values["view_count"] = VideoAsset.view_count + duplicate_view_count
    await db.execute(
        update(VideoAsset)
        .where(VideoAsset.id == survivor.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return {"change": change, "merged": merged, "views": views}


async def find_or_create_by_external_id(
    db: AsyncSession,
    external_id: str,
    candidate: Optional[Dict[str, Any]] = None,
    *,
    asset_id: Optional[str] = None,
) -> VideoAsset:
    """Return the single row for ``external_id``, creating or linking it as needed.

    Without ``asset_id`` this is one ``INSERT ... ON CONFLICT DO UPDATE``
    filling only the columns that are still NULL. With ``asset_id`` the
    registered row is linked to ``external_id``; if another row (a callback
    placeholder) already owns it, the registered row is folded into that one.
    """
    fields = _candidate_fields(candidate)
    now = utcnow()

    if asset_id:
        owner = await load_asset_by_external_id(db, external_id)
        registered = await load_asset(db, asset_id)
        if registered is not None and owner is not None and owner.id != registered.id:
            await _absorb(db, owner, registered, merge_fields=True)
            await _fill_missing(db, owner.id, fields)
            logger.info("Folded registered asset %s into %s for external id %s", asset_id, owner.id, external_id)
            return await load_asset(db, owner.id)

        if registered is not None and registered.external_asset_id in (None, external_id):
            link_values: Dict[str, Any] = {
                name: func.coalesce(getattr(VideoAsset, name), value) for name, value in fields.items()
            }
            try:
                async with db.begin_nested():
                    result = await db.execute(
                        update(VideoAsset)
                        .where(
                            VideoAsset.id == asset_id,
                            (VideoAsset.external_asset_id.is_(None)) | (VideoAsset.external_asset_id == external_id),
                        )
                        .values(external_asset_id=external_id, updated_at=now, **link_values)
                        .execution_options(synchronize_session=False)
                    )
                if (result.rowcount or 0) == 1:
                    return await load_asset(db, asset_id)
            except IntegrityError:
                # A placeholder claimed external_id between the read above and the update.
                owner = await load_asset_by_external_id(db, external_id)
                registered = await load_asset(db, asset_id)
                if owner is not None and registered is not None:
                    await _absorb(db, owner, registered, merge_fields=True)
                    await _fill_missing(db, owner.id, fields)
                    logger.info(
                        "Folded registered asset %s into %s after link conflict on %s",
                        asset_id,
                        owner.id,
                        external_id,
                    )
                    return await load_asset(db, owner.id)
        elif registered is not None:
            logger.warning(
                "Asset %s is already linked to %s; not attaching superseded external id %s",
                asset_id,
                registered.external_asset_id,
                external_id,
            )
            return registered

    insert_stmt = dialect_insert(db, VideoAsset.__table__).values(
        id=str(uuid.uuid4()),
        external_asset_id=external_id,
        processing_status="processing",
        retry_count=0,
        view_count=0,
        created_at=now,
        updated_at=now,
        **fields,
    )
    set_values: Dict[str, Any] = {
        name: func.coalesce(VideoAsset.__table__.c[name], insert_stmt.excluded[name]) for name in fields
    }
    set_values["updated_at"] = now
    stmt = insert_stmt.on_conflict_do_update(
        index_elements=[VideoAsset.__table__.c.external_asset_id],
        set_=set_values,
    ).returning(VideoAsset.__table__.c.id)
    result = await db.execute(stmt)
    row_id = result.scalar_one()
    return await load_asset(db, row_id)


async def _fill_missing(db: AsyncSession, asset_id: str, fields: Dict[str, Any]) -> None:
    if not fields:
        return
    await db.execute(
        update(VideoAsset)
        .where(VideoAsset.id == asset_id)
        .values(**{name: func.coalesce(getattr(VideoAsset, name), value) for name, value in fields.items()})
        .execution_options(synchronize_session=False)
    )


async def detect_duplicate_groups(db: AsyncSession) -> List[DuplicateGroup]:
    """Group rows sharing an external id (data that predates the unique index)."""
    result = await db.execute(
        select(VideoAsset.external_asset_id)
        .where(VideoAsset.external_asset_id.is_not(None))
        .group_by(VideoAsset.external_asset_id)
        .having(func.count(VideoAsset.id) > 1)
        .order_by(VideoAsset.external_asset_id)
    )
    external_ids = [row[0] for row in result.all()]
    groups: List[DuplicateGroup] = []
    for external_id in external_ids:
        rows = await db.execute(
            select(VideoAsset.id)
            .where(VideoAsset.external_asset_id == external_id)
            .order_by(VideoAsset.created_at.desc(), VideoAsset.id)
        )
        groups.append(DuplicateGroup(external_asset_id=external_id, asset_ids=[r[0] for r in rows.all()]))
    return groups


async def resolve(
    db: AsyncSession,
    primary_id: str,
    duplicate_ids: Sequence[str],
    strategy: ResolutionStrategy = "merge",
    dry_run: bool = True,
) -> ResolutionReport:
    """Collapse ``duplicate_ids`` onto ``primary_id``.

    Strategies:
      merge              fill primary's NULL fields from duplicates, re-point views, delete duplicates
      keep_specific      re-point views and delete duplicates, primary fields untouched
      delete_duplicates  delete duplicates together with their views

    ``dry_run`` computes the same report without writing. Commits otherwise.
    """
    if strategy not in RESOLUTION_STRATEGIES:
        raise ValueError(f"Unknown resolution strategy: {strategy}")

    report = ResolutionReport(primary_id=primary_id, strategy=strategy, dry_run=dry_run)
    primary = await load_asset(db, primary_id)
    if primary is None:
        report.errors.append({"asset_id": primary_id, "error": "primary_not_found"})
        return report

    planned: Dict[str, Any] = {}
    seen = set()
    for duplicate_id in duplicate_ids:
        if duplicate_id in seen or duplicate_id == primary_id:
            report.errors.append({"asset_id": duplicate_id, "error": "invalid_duplicate_id"})
            continue
        seen.add(duplicate_id)
        duplicate = await load_asset(db, duplicate_id)
        if duplicate is None:
            report.errors.append({"asset_id": duplicate_id, "error": "not_found"})
            continue
        if (
            primary.external_asset_id
            and duplicate.external_asset_id
            and duplicate.external_asset_id != primary.external_asset_id
        ):
            report.errors.append({"asset_id": duplicate_id, "error": "external_id_mismatch"})
            continue

        outcome = await _absorb(
            db,
            primary,
            duplicate,
            merge_fields=strategy == "merge",
            keep_views=strategy != "delete_duplicates",
            dry_run=dry_run,
            planned=planned,
        )
        if dry_run:
            planned.update(outcome["merged"])
        else:
            primary = await load_asset(db, primary_id)
        report.merged_fields.update(outcome["merged"])
        if strategy != "delete_duplicates":
            report.repointed_views += int(outcome["views"])
        report.deleted_ids.append(duplicate_id)
        report.changes.append(outcome["change"])

    if not dry_run:
        await db.commit()
        logger.info(
            "Resolved %s duplicates onto %s with strategy=%s",
            len(report.deleted_ids),
            primary_id,
            strategy,
        )
    return report
