import asyncio
import json
from types import SimpleNamespace
from typing import Dict, List, Optional
from unittest.mock import MagicMock, patch

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from services.errors import ProviderUnavailable
from services.object_storage import LocalObjectStorage
from services.processing_provider import ProcessingProvider, ProviderAssetStatus
from services.webhook_ingestion import sign_payload


WEBHOOK_SECRET = "test-webhook-secret-0123456789"


class FakeProvider(ProcessingProvider):
    """In-memory stand-in for the processing provider API."""

    def __init__(self):
        self.created: List[Dict[str, Optional[str]]] = []
        self.statuses: Dict[str, ProviderAssetStatus] = {}
        self.next_ids: List[str] = []
        self.create_error: Optional[Exception] = None
        self.status_error: Optional[Exception] = None
        self.create_delay: float = 0.0

    async def create_asset(self, source_url: str, *, passthrough: Optional[str] = None) -> ProviderAssetStatus:
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_error is not None:
            raise self.create_error
        external_id = self.next_ids.pop(0) if self.next_ids else f"ext-{len(self.created) + 1}"
        self.created.append({"source_url": source_url, "passthrough": passthrough, "external_id": external_id})
        return ProviderAssetStatus(external_asset_id=external_id, status="preparing", passthrough=passthrough)

    async def get_asset_status(self, external_asset_id: str) -> ProviderAssetStatus:
        if self.status_error is not None:
            raise self.status_error
        return self.statuses.get(
            external_asset_id,
            ProviderAssetStatus(external_asset_id=external_asset_id, status="preparing"),
        )


def provider_down() -> ProviderUnavailable:
    return ProviderUnavailable("Provider returned 503 for POST /video/v1/assets")


def webhook_body(
    event_type: str,
    event_id: str,
    external_asset_id: str,
    *,
    playback_id: Optional[str] = None,
    duration: Optional[float] = None,
    passthrough: Optional[str] = None,
    errors: Optional[List[str]] = None,
    text_track_id: Optional[str] = None,
) -> bytes:
    data: Dict[str, object] = {"id": external_asset_id, "status": "preparing"}
    if playback_id:
        data["playback_ids"] = [{"id": playback_id, "policy": "public"}]
    if duration is not None:
        data["duration"] = duration
    if passthrough:
        data["passthrough"] = passthrough
    if errors:
        data["status"] = "errored"
        data["errors"] = {"type": "invalid_input", "messages": errors}
    if text_track_id:
        data["tracks"] = [{"type": "text", "id": text_track_id, "status": "ready"}]
    if event_type == "video.asset.ready":
        data["status"] = "ready"
    return json.dumps(
        {
            "type": event_type,
            "id": event_id,
            "object": {"type": "asset", "id": external_asset_id},
            "data": data,
        }
    ).encode("utf-8")


def signed_headers(body: bytes, secret: str = WEBHOOK_SECRET) -> Dict[str, str]:
    return {"mux-signature": sign_payload(body, secret), "content-type": "application/json"}


@pytest_asyncio.fixture
async def ingest_env(tmp_path):
    db_path = tmp_path / "ingest.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    storage = LocalObjectStorage(str(tmp_path / "objects"))
    provider = FakeProvider()
    enqueue_refresh = MagicMock(return_value=SimpleNamespace(id="refresh:job"))

    app.dependency_overrides[get_db] = override_get_db
    with (
        patch("config.settings.WEBHOOK_SECRET", WEBHOOK_SECRET),
        patch("config.settings.UPLOAD_MIN_PART_SIZE_BYTES", 1024),
        patch("config.settings.UPLOAD_PART_SIZE_BYTES", 2048),
        patch("config.settings.STALLED_REGISTRATION_MINUTES", 0),
        patch("config.settings.MISSING_CALLBACK_MINUTES", 0),
        patch("services.upload_sessions.get_object_storage", return_value=storage),
        patch("services.asset_registration.get_object_storage", return_value=storage),
        patch("services.asset_registration.get_processing_provider", return_value=provider),
        patch("services.reconciliation.get_processing_provider", return_value=provider),
        patch("services.reconciliation.async_session_maker", session_maker),
        patch("services.webhook_ingestion.enqueue_asset_refresh", enqueue_refresh),
    ):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield SimpleNamespace(
                client=client,
                session_maker=session_maker,
                engine=engine,
                storage=storage,
                provider=provider,
                enqueue_refresh=enqueue_refresh,
            )

    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()
