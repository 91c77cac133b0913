import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import update
from sqlalchemy.future import select

from models.upload_session import UploadSession
from models.video_asset import VideoAsset
from models.webhook_event import WebhookEvent
from services import asset_registration, reconciliation, upload_sessions
from services.asset_state import utcnow
from services.errors import ProviderUnavailable
from services.processing_provider import ProviderAssetStatus
from tests.conftest import provider_down, signed_headers, webhook_body


def _store_object(storage, key: str) -> str:
    upload_id = storage.initiate_multipart(key, "video/mp4")
    etag = storage.upload_part(key, upload_id, 1, b"frames")
    storage.complete_multipart(key, upload_id, [(1, etag)])
    return key


async def _load(session_maker, asset_id):
    async with session_maker() as db:
        return (await db.execute(select(VideoAsset).where(VideoAsset.id == asset_id))).scalar_one()


async def _make_due(session_maker, asset_id, **values):
    async with session_maker() as db:
        await db.execute(
            update(VideoAsset)
            .where(VideoAsset.id == asset_id)
            .values(next_attempt_at=utcnow() - timedelta(seconds=1), **values)
        )
        await db.commit()


def _ready_status(external_id: str, playback_id: str) -> ProviderAssetStatus:
    return ProviderAssetStatus(external_asset_id=external_id, status="ready", playback_id=playback_id, duration=88.6)


@pytest.mark.asyncio
async def test_stalled_registration_is_resubmitted_once_provider_recovers(ingest_env):
    key = _store_object(ingest_env.storage, "videos/2026/10/stalled.mp4")
    ingest_env.provider.create_error = provider_down()
    async with ingest_env.session_maker() as db:
        asset = await asset_registration.register(db, key)
    assert asset.processing_status == "pending"

    # Backoff has not elapsed yet.
    ingest_env.provider.create_error = None
    stats = await reconciliation.sweep_stalled_registrations()
    assert stats["scanned"] == 0

    await _make_due(ingest_env.session_maker, asset.id)
    stats = await reconciliation.sweep_stalled_registrations()

    assert stats["repaired"] == 1
    refreshed = await _load(ingest_env.session_maker, asset.id)
    assert refreshed.processing_status == "processing"
    assert refreshed.external_asset_id == "ext-1"
    assert refreshed.next_attempt_at is None


@pytest.mark.asyncio
async def test_stalled_registration_errors_after_attempt_budget(ingest_env):
    key = _store_object(ingest_env.storage, "videos/2026/10/hopeless.mp4")
    ingest_env.provider.create_error = provider_down()
    async with ingest_env.session_maker() as db:
        asset = await asset_registration.register(db, key)

    with patch("config.settings.PROVIDER_MAX_SUBMIT_ATTEMPTS", 3):
        await _make_due(ingest_env.session_maker, asset.id, retry_count=3)
        await reconciliation.sweep_stalled_registrations()

    refreshed = await _load(ingest_env.session_maker, asset.id)
    assert refreshed.processing_status == "errored"
    assert refreshed.error_reason == "submission_retries_exhausted"
    assert ingest_env.provider.created == []


@pytest.mark.asyncio
async def test_missing_callback_is_polled_and_deferred_event_finalised(ingest_env):
    key = _store_object(ingest_env.storage, "videos/2026/10/quiet.mp4")
    async with ingest_env.session_maker() as db:
        asset = await asset_registration.register(db, key)

    body = webhook_body("video.asset.ready", "evt-early", asset.external_asset_id)
    response = await ingest_env.client.post("/webhooks/processing", content=body, headers=signed_headers(body))
    assert response.json()["outcome"] == "deferred"

    ingest_env.provider.statuses[asset.external_asset_id] = _ready_status(asset.external_asset_id, "pb-late")
    stats = await reconciliation.sweep_missing_callbacks()

    assert stats["repaired"] == 1
    refreshed = await _load(ingest_env.session_maker, asset.id)
    assert refreshed.processing_status == "ready"
    assert refreshed.external_playback_ref == "pb-late"
    assert refreshed.duration_seconds == 89
    assert refreshed.last_polled_at is not None

    async with ingest_env.session_maker() as db:
        event = (await db.execute(select(WebhookEvent).where(WebhookEvent.external_event_id == "evt-early"))).scalar_one()
    assert event.outcome == "applied"
    assert event.processed_at is not None


@pytest.mark.asyncio
async def test_missing_callback_sweep_tolerates_provider_outage(ingest_env):
    key = _store_object(ingest_env.storage, "videos/2026/10/outage.mp4")
    async with ingest_env.session_maker() as db:
        asset = await asset_registration.register(db, key)

    ingest_env.provider.status_error = provider_down()
    await reconciliation.sweep_missing_callbacks()

    refreshed = await _load(ingest_env.session_maker, asset.id)
    assert refreshed.processing_status == "processing"
    assert refreshed.last_polled_at is not None


@pytest.mark.asyncio
async def test_expired_upload_sessions_are_aborted(ingest_env):
    async with ingest_env.session_maker() as db:
        stale = await upload_sessions.initiate(db, "stale.mp4", 4096, "video/mp4")
        fresh = await upload_sessions.initiate(db, "fresh.mp4", 4096, "video/mp4")
        await db.execute(
            update(UploadSession)
            .where(UploadSession.id == stale.id)
            .values(expires_at=utcnow() - timedelta(hours=1))
        )
        await db.commit()

    stats = await reconciliation.sweep_expired_sessions()

    assert stats["repaired"] == 1
    async with ingest_env.session_maker() as db:
        assert (await upload_sessions.get_session(db, stale.id)).state == "expired"
        assert (await upload_sessions.get_session(db, fresh.id)).state == "initiated"


@pytest.mark.asyncio
async def test_sweep_pages_through_failing_rows_without_looping(ingest_env):
    asset_ids = []
    for index in range(5):
        key = _store_object(ingest_env.storage, f"videos/2026/10/page-{index}.mp4")
        async with ingest_env.session_maker() as db:
            asset_ids.append((await asset_registration.register(db, key)).id)

    ingest_env.provider.status_error = RuntimeError("unexpected payload")
    with patch("config.settings.RECONCILE_PAGE_SIZE", 2):
        failing = await reconciliation.sweep_missing_callbacks()
    assert failing == {"scanned": 5, "repaired": 0, "unchanged": 5, "failed": 5}

    ingest_env.provider.status_error = None
    for index, asset_id in enumerate(asset_ids):
        external_id = (await _load(ingest_env.session_maker, asset_id)).external_asset_id
        ingest_env.provider.statuses[external_id] = _ready_status(external_id, f"pb-{index}")
    with patch("config.settings.RECONCILE_PAGE_SIZE", 2):
        repaired = await reconciliation.sweep_missing_callbacks()

    assert repaired["scanned"] == 5
    assert repaired["repaired"] == 5
    for asset_id in asset_ids:
        assert (await _load(ingest_env.session_maker, asset_id)).processing_status == "ready"


@pytest.mark.asyncio
async def test_deferred_refresh_retries_while_provider_is_preparing(ingest_env):
    key = _store_object(ingest_env.storage, "videos/2026/10/refresh.mp4")
    async with ingest_env.session_maker() as db:
        asset = await asset_registration.register(db, key)

    with pytest.raises(ProviderUnavailable):
        await reconciliation.refresh_asset_from_provider(asset.id, "evt-x")

    ingest_env.provider.statuses[asset.external_asset_id] = _ready_status(asset.external_asset_id, "pb-r")
    assert await reconciliation.refresh_asset_from_provider(asset.id, "evt-x") == "ready"
    assert await reconciliation.refresh_asset_from_provider("gone", "evt-y") == "missing"


@pytest.mark.asyncio
async def test_overlapping_stalled_sweeps_submit_once(ingest_env):
    key = _store_object(ingest_env.storage, "videos/2026/10/sweep.mp4")
    ingest_env.provider.create_error = provider_down()
    async with ingest_env.session_maker() as db:
        asset = await asset_registration.register(db, key)
    await _make_due(ingest_env.session_maker, asset.id)

    ingest_env.provider.create_error = None
    ingest_env.provider.create_delay = 0.05
    await asyncio.gather(
        reconciliation.sweep_stalled_registrations(),
        reconciliation.sweep_stalled_registrations(),
    )

    assert len(ingest_env.provider.created) == 1
    async with ingest_env.session_maker() as db:
        rows = (await db.execute(select(VideoAsset))).scalars().all()
    assert [(row.storage_key, row.external_asset_id, row.processing_status) for row in rows] == [
        ("videos/2026/10/sweep.mp4", "ext-1", "processing")
    ]


@pytest.mark.asyncio
async def test_in_flight_submission_lease_blocks_resubmission(ingest_env):
    key = _store_object(ingest_env.storage, "videos/2026/10/leased.mp4")
    ingest_env.provider.create_error = provider_down()
    async with ingest_env.session_maker() as db:
        asset = await asset_registration.register(db, key)
    # Another worker holds the lease until well into the future.
    async with ingest_env.session_maker() as db:
        await db.execute(
            update(VideoAsset)
            .where(VideoAsset.id == asset.id)
            .values(next_attempt_at=utcnow() + timedelta(minutes=5))
        )
        await db.commit()

    ingest_env.provider.create_error = None
    async with ingest_env.session_maker() as db:
        untouched = await asset_registration.submit_processing_job(db, await _load(ingest_env.session_maker, asset.id))

    assert untouched.external_asset_id is None
    assert untouched.processing_status == "pending"
    assert ingest_env.provider.created == []


@pytest.mark.asyncio
async def test_polling_preparing_asset_moves_pending_to_processing(ingest_env):
    key = _store_object(ingest_env.storage, "videos/2026/10/preparing.mp4")
    async with ingest_env.session_maker() as db:
        asset = await asset_registration.register(db, key)
        await db.execute(update(VideoAsset).where(VideoAsset.id == asset.id).values(processing_status="pending"))
        await db.commit()

    await reconciliation.sweep_missing_callbacks()

    refreshed = await _load(ingest_env.session_maker, asset.id)
    assert refreshed.processing_status == "processing"
    assert refreshed.last_polled_at is not None


@pytest.mark.asyncio
async def test_refresh_fills_refs_for_ready_asset_missing_playback(ingest_env):
    key = _store_object(ingest_env.storage, "videos/2026/10/refs.mp4")
    async with ingest_env.session_maker() as db:
        asset = await asset_registration.register(db, key)

    body = webhook_body("video.asset.ready", "evt-norefs", asset.external_asset_id, duration=12.2)
    await ingest_env.client.post("/webhooks/processing", content=body, headers=signed_headers(body))
    assert (await _load(ingest_env.session_maker, asset.id)).processing_status == "ready"

    ingest_env.provider.statuses[asset.external_asset_id] = _ready_status(asset.external_asset_id, "pb-refs")
    assert await reconciliation.refresh_asset_from_provider(asset.id, "evt-norefs") == "ready"

    refreshed = await _load(ingest_env.session_maker, asset.id)
    assert refreshed.external_playback_ref == "pb-refs"
    assert refreshed.thumbnail_ref.startswith("https://image.mux.com/pb-refs/")
    # The callback's duration was already recorded and wins over the polled one.
    assert refreshed.duration_seconds == 12
    async with ingest_env.session_maker() as db:
        event = (await db.execute(select(WebhookEvent).where(WebhookEvent.external_event_id == "evt-norefs"))).scalar_one()
    assert event.outcome == "applied"
    assert event.processed_at is not None
