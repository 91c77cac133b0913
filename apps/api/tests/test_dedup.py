import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, text
from sqlalchemy.future import select

from models.video_asset import VideoAsset
from models.video_view import VideoView
from services import dedup
from services.asset_state import utcnow


async def _drop_external_id_index(engine):
    async with engine.begin() as conn:
        await conn.execute(text("DROP INDEX uq_video_assets_external_asset_id"))


async def _seed_legacy_duplicates(session_maker):
    now = utcnow()
    async with session_maker() as db:
        primary = VideoAsset(
            storage_key="videos/2026/01/primary.mp4",
            external_asset_id="ext-legacy",
            title="Week 1 Lecture",
            processing_status="ready",
            duration_seconds=600,
            created_at=now - timedelta(days=2),
        )
        duplicate = VideoAsset(
            storage_key="videos/2026/01/duplicate.mp4",
            external_asset_id="ext-legacy",
            title="Week 1 Lecture (copy)",
            thumbnail_ref="https://image.example/thumb.jpg",
            processing_status="ready",
            view_count=2,
            created_at=now - timedelta(days=1),
        )
        db.add_all([primary, duplicate])
        await db.flush()
        db.add_all(
            [
                VideoView(asset_id=duplicate.id, viewer_ref="student-1", watch_seconds=30),
                VideoView(asset_id=duplicate.id, viewer_ref="student-2", watch_seconds=45),
            ]
        )
        await db.commit()
        return primary.id, duplicate.id


async def _count(db, model, *criteria):
    result = await db.execute(select(func.count()).select_from(model).where(*criteria))
    return int(result.scalar() or 0)


@pytest.mark.asyncio
async def test_concurrent_find_or_create_yields_one_row_with_union_of_fields(ingest_env):
    async def call(candidate):
        async with ingest_env.session_maker() as db:
            asset = await dedup.find_or_create_by_external_id(db, "ext-race", candidate)
            await db.commit()
            return asset.id

    first_id, second_id = await asyncio.gather(
        call({"title": "Intro to Algorithms", "duration_seconds": 61}),
        call({"thumbnail_ref": "https://image.example/t.jpg", "external_playback_ref": "pb-1"}),
    )

    assert first_id == second_id
    async with ingest_env.session_maker() as db:
        assert await _count(db, VideoAsset, VideoAsset.external_asset_id == "ext-race") == 1
        row = (await db.execute(select(VideoAsset).where(VideoAsset.id == first_id))).scalar_one()
    assert row.title == "Intro to Algorithms"
    assert row.duration_seconds == 61
    assert row.thumbnail_ref == "https://image.example/t.jpg"
    assert row.external_playback_ref == "pb-1"


@pytest.mark.asyncio
async def test_find_or_create_prefers_existing_values(ingest_env):
    async with ingest_env.session_maker() as db:
        await dedup.find_or_create_by_external_id(db, "ext-keep", {"title": "Original", "storage_key": "ignored"})
        await db.commit()
        merged = await dedup.find_or_create_by_external_id(
            db,
            "ext-keep",
            {"title": "Overwrite attempt", "duration_seconds": 12, "unknown_field": "x"},
        )
        await db.commit()

    assert merged.title == "Original"
    assert merged.duration_seconds == 12
    assert merged.storage_key is None
    assert merged.processing_status == "processing"


@pytest.mark.asyncio
async def test_link_attaches_external_id_to_registered_row(ingest_env):
    async with ingest_env.session_maker() as db:
        registered = VideoAsset(storage_key="videos/a.mp4", title="Registered", processing_status="pending")
        db.add(registered)
        await db.commit()

        linked = await dedup.find_or_create_by_external_id(db, "ext-link", {}, asset_id=registered.id)
        await db.commit()

    assert linked.id == registered.id
    assert linked.external_asset_id == "ext-link"
    assert linked.storage_key == "videos/a.mp4"


@pytest.mark.asyncio
async def test_link_folds_registered_row_into_existing_placeholder(ingest_env):
    async with ingest_env.session_maker() as db:
        placeholder = await dedup.find_or_create_by_external_id(
            db,
            "ext-early",
            {"external_playback_ref": "pb-early", "thumbnail_ref": "https://image.example/early.jpg"},
        )
        await db.commit()

        registered = VideoAsset(storage_key="videos/b.mp4", title="Lab Walkthrough", processing_status="pending", view_count=1)
        db.add(registered)
        await db.flush()
        db.add(VideoView(asset_id=registered.id, viewer_ref="ta-1", watch_seconds=5))
        await db.commit()
        registered_id = registered.id

        survivor = await dedup.find_or_create_by_external_id(db, "ext-early", {}, asset_id=registered_id)
        await db.commit()

        assert await _count(db, VideoAsset) == 1
        assert await _count(db, VideoView, VideoView.asset_id == placeholder.id) == 1

    assert survivor.id == placeholder.id
    assert survivor.storage_key == "videos/b.mp4"
    assert survivor.title == "Lab Walkthrough"
    assert survivor.external_playback_ref == "pb-early"
    assert survivor.view_count == 1


@pytest.mark.asyncio
async def test_detect_and_dry_run_resolve_legacy_duplicates(ingest_env):
    await _drop_external_id_index(ingest_env.engine)
    primary_id, duplicate_id = await _seed_legacy_duplicates(ingest_env.session_maker)

    async with ingest_env.session_maker() as db:
        groups = await dedup.detect_duplicate_groups(db)
        assert len(groups) == 1
        assert groups[0].external_asset_id == "ext-legacy"
        assert groups[0].count == 2
        assert groups[0].asset_ids == [duplicate_id, primary_id]

        report = await dedup.resolve(db, primary_id, [duplicate_id], strategy="merge", dry_run=True)

    assert report.dry_run is True
    assert report.deleted_ids == [duplicate_id]
    assert report.merged_fields == {"thumbnail_ref": "https://image.example/thumb.jpg"}
    assert report.repointed_views == 2
    assert report.errors == []

    async with ingest_env.session_maker() as db:
        assert await _count(db, VideoAsset, VideoAsset.external_asset_id == "ext-legacy") == 2
        assert await _count(db, VideoView, VideoView.asset_id == duplicate_id) == 2


@pytest.mark.asyncio
async def test_resolve_merge_repoints_views_and_keeps_primary_values(ingest_env):
    await _drop_external_id_index(ingest_env.engine)
    primary_id, duplicate_id = await _seed_legacy_duplicates(ingest_env.session_maker)

    async with ingest_env.session_maker() as db:
        report = await dedup.resolve(db, primary_id, [duplicate_id, "missing-id"], strategy="merge", dry_run=False)

    assert report.deleted_ids == [duplicate_id]
    assert report.errors == [{"asset_id": "missing-id", "error": "not_found"}]

    async with ingest_env.session_maker() as db:
        primary = (await db.execute(select(VideoAsset).where(VideoAsset.id == primary_id))).scalar_one()
        assert await _count(db, VideoAsset) == 1
        assert await _count(db, VideoView, VideoView.asset_id == primary_id) == 2
        assert await dedup.detect_duplicate_groups(db) == []

    assert primary.title == "Week 1 Lecture"
    assert primary.duration_seconds == 600
    assert primary.thumbnail_ref == "https://image.example/thumb.jpg"
    assert primary.storage_key == "videos/2026/01/primary.mp4"
    assert primary.view_count == 2


@pytest.mark.asyncio
async def test_resolve_keep_specific_and_delete_duplicates(ingest_env):
    await _drop_external_id_index(ingest_env.engine)
    primary_id, duplicate_id = await _seed_legacy_duplicates(ingest_env.session_maker)

    async with ingest_env.session_maker() as db:
        report = await dedup.resolve(db, primary_id, [duplicate_id], strategy="keep_specific", dry_run=False)
        primary = (await db.execute(select(VideoAsset).where(VideoAsset.id == primary_id))).scalar_one()
        assert primary.thumbnail_ref is None
        assert report.merged_fields == {}
        assert await _count(db, VideoView, VideoView.asset_id == primary_id) == 2

    async with ingest_env.session_maker() as db:
        extra = VideoAsset(storage_key="videos/extra.mp4", external_asset_id=None, processing_status="ready")
        db.add(extra)
        await db.flush()
        db.add(VideoView(asset_id=extra.id, viewer_ref="student-9"))
        await db.commit()

        report = await dedup.resolve(db, primary_id, [extra.id], strategy="delete_duplicates", dry_run=False)
        assert report.repointed_views == 0
        assert await _count(db, VideoView, VideoView.asset_id == extra.id) == 0
        assert await _count(db, VideoView, VideoView.asset_id == primary_id) == 2


@pytest.mark.asyncio
async def test_resolve_rejects_unknown_strategy_and_missing_primary(ingest_env):
    async with ingest_env.session_maker() as db:
        with pytest.raises(ValueError):
            await dedup.resolve(db, "a", ["b"], strategy="squash", dry_run=True)
        report = await dedup.resolve(db, "nope", ["b"], strategy="merge", dry_run=True)
    assert report.errors == [{"asset_id": "nope", "error": "primary_not_found"}]


@pytest.mark.asyncio
async def test_linking_already_linked_asset_keeps_single_row(ingest_env):
    async with ingest_env.session_maker() as db:
        registered = VideoAsset(
            storage_key="videos/2026/10/linked.mp4",
            external_asset_id="ext-first",
            processing_status="processing",
        )
        db.add(registered)
        await db.commit()

        result = await dedup.find_or_create_by_external_id(db, "ext-late", {}, asset_id=registered.id)
        await db.commit()

        assert result.id == registered.id
        assert result.external_asset_id == "ext-first"
        assert await _count(db, VideoAsset) == 1
        assert await _count(db, VideoAsset, VideoAsset.external_asset_id == "ext-late") == 0
