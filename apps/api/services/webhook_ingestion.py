"""Provider callback ingestion.

Order of work per delivery: verify the signature (no database access before
that), dedupe on the provider's event id, drive the asset state machine with
conditional updates, finalise the ledger row in the same transaction.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.video_asset import VideoAsset
from models.webhook_event import WebhookEvent
from services.asset_state import (
    PROVIDER_DELETABLE_STATUSES,
    apply_callback_transition,
    dialect_insert,
    load_asset,
    load_asset_by_external_id,
    round_duration,
    transition,
    utcnow,
)
from services.dedup import find_or_create_by_external_id
from services.errors import InvalidSignature, MalformedWebhook
from services.processing_provider import (
    ProviderAssetStatus,
    parse_asset_data,
    thumbnail_url,
    transcript_url,
)
from services.task_queue import enqueue_asset_refresh

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "mux-signature"

EVENT_CREATED = "video.asset.created"
EVENT_READY = "video.asset.ready"
EVENT_ERRORED = "video.asset.errored"
EVENT_UPDATED = "video.asset.updated"
EVENT_DELETED = "video.asset.deleted"

HANDLED_EVENTS = (EVENT_CREATED, EVENT_READY, EVENT_ERRORED, EVENT_UPDATED, EVENT_DELETED)


class WebhookObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Optional[str] = None
    id: Optional[str] = None


class WebhookEnvelope(BaseModel):
    """Provider callback body: ``{type, id, object: {id}, data: {...}}``."""

    model_config = ConfigDict(extra="ignore")

    type: str = Field(min_length=1)
    id: str = Field(min_length=1)
    object: Optional[WebhookObject] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def external_asset_id(self) -> Optional[str]:
        if self.object is not None and self.object.id:
            return self.object.id
        value = self.data.get("id")
        return str(value) if value else None


@dataclass(frozen=True)
class WebhookResult:
    outcome: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    asset_id: Optional[str] = None
    detail: Optional[str] = None


def _parse_signature_header(header: str) -> Tuple[Optional[str], List[str]]:
    timestamp: Optional[str] = None
    signatures: List[str] = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    *,
    secret: Optional[str] = None,
    tolerance_seconds: Optional[int] = None,
    now: Optional[float] = None,
) -> None:
    """Check ``t=<unix>,v1=<hex hmac-sha256("<t>.<body>")>``. Raises InvalidSignature."""
    secret = secret if secret is not None else settings.WEBHOOK_SECRET
    if not secret:
        raise InvalidSignature("Webhook signing secret is not configured")
    if not signature_header:
        raise InvalidSignature(f"Missing {SIGNATURE_HEADER} header")

    timestamp, signatures = _parse_signature_header(signature_header)
    if not timestamp or not signatures:
        raise InvalidSignature("Malformed signature header")
    try:
        signed_at = int(timestamp)
    except ValueError as exc:
        raise InvalidSignature("Malformed signature timestamp") from exc

    tolerance = int(settings.WEBHOOK_TOLERANCE_SECONDS if tolerance_seconds is None else tolerance_seconds)
    current = time.time() if now is None else now
    if abs(current - signed_at) > tolerance:
        raise InvalidSignature("Signature timestamp outside tolerance window")

    expected = hmac.new(
        secret.encode("utf-8"),
        timestamp.encode("utf-8") + b"." + raw_body,
        hashlib.sha256,
    ).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise InvalidSignature("Signature mismatch")


def sign_payload(raw_body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a signature header value (used by tests and local tooling)."""
    timestamp = int(time.time()) if timestamp is None else int(timestamp)
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.".encode("utf-8") + raw_body, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def parse_envelope(raw_body: bytes) -> Tuple[WebhookEnvelope, Dict[str, Any]]:
    try:
        envelope = WebhookEnvelope.model_validate_json(raw_body)
        payload = json.loads(raw_body)
    except (ValidationError, ValueError) as exc:
        raise MalformedWebhook(str(exc)) from exc
    return envelope, payload


def ready_fields(status: ProviderAssetStatus) -> Dict[str, Any]:
    fields: Dict[str, Any] = {"duration_seconds": round_duration(status.duration)}
    if status.playback_id:
        fields["external_playback_ref"] = status.playback_id
        fields["thumbnail_ref"] = thumbnail_url(status.playback_id)
        if status.text_track_id:
            fields["transcript_ref"] = transcript_url(status.playback_id, status.text_track_id)
    return {name: value for name, value in fields.items() if value is not None}


async def find_target_asset(
    db: AsyncSession,
    external_id: str,
    passthrough: Optional[str],
    candidate: Optional[Dict[str, Any]] = None,
    *,
    create: bool,
) -> Tuple[Optional[VideoAsset], str]:
    """Locate (or create) the canonical row for a callback.

    Returns ``(asset, detail)``; ``asset`` is None when the callback cannot be
    attributed to a row and ``create`` is False, or when the passthrough row has
    since been resubmitted under a different external id.
    """
    owner = await load_asset_by_external_id(db, external_id)
    if owner is not None:
        # Ready fields reach an existing row only through its state transition.
        return owner, "matched_external_id"

    if passthrough:
        registered = await load_asset(db, passthrough)
        if registered is not None:
            if registered.external_asset_id and registered.external_asset_id != external_id:
                return None, "superseded_external_asset"
            linked = await find_or_create_by_external_id(db, external_id, candidate, asset_id=passthrough)
            return linked, "linked_passthrough"

    if not create:
        return None, "asset_not_registered"
    placeholder = await find_or_create_by_external_id(db, external_id, candidate)
    return placeholder, "created_placeholder"


async def apply_ready(db: AsyncSession, asset: VideoAsset, status: ProviderAssetStatus) -> bool:
    values = ready_fields(status)
    values["ready_at"] = utcnow()
    values["error_reason"] = None
    return await apply_callback_transition(db, asset.id, "ready", values=values)


async def apply_errored(db: AsyncSession, asset: VideoAsset, status: ProviderAssetStatus) -> bool:
    reason = "; ".join(status.errors) or "processing_failed"
    return await apply_callback_transition(db, asset.id, "errored", values={"error_reason": reason[:1000]})


async def fill_ready_metadata(
    db: AsyncSession,
    asset_id: str,
    status: ProviderAssetStatus,
    *,
    only_statuses: Optional[Tuple[str, ...]] = None,
) -> bool:
    """Fill playback refs and duration that are still NULL; existing values win."""
    fields = ready_fields(status)
    if not fields:
        return False
    stmt = update(VideoAsset).where(VideoAsset.id == asset_id)
    if only_statuses:
        stmt = stmt.where(VideoAsset.processing_status.in_(only_statuses))
    result = await db.execute(
        stmt.values(
            updated_at=utcnow(),
            **{name: func.coalesce(getattr(VideoAsset, name), value) for name, value in fields.items()},
        ).execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def apply_deleted(db: AsyncSession, asset: VideoAsset) -> bool:
    """The provider dropped the asset: stop pointing at its playback id."""
    return await transition(
        db,
        asset.id,
        "errored",
        allowed_from=PROVIDER_DELETABLE_STATUSES,
        values={
            "external_playback_ref": None,
            "thumbnail_ref": None,
            "transcript_ref": None,
            "error_reason": "provider_asset_deleted",
        },
    )


async def _claim_ledger_row(
    db: AsyncSession,
    envelope: WebhookEnvelope,
    payload: Dict[str, Any],
) -> Optional[str]:
    """Insert the ledger row, or return the existing unfinished one. None means already processed."""
    table = WebhookEvent.__table__
    stmt = (
        dialect_insert(db, table)
        .values(
            id=str(uuid.uuid4()),
            external_event_id=envelope.id,
            external_asset_id=envelope.external_asset_id,
            event_type=envelope.type,
            payload=payload,
            received_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=[table.c.external_event_id])
        .returning(table.c.id)
    )
    inserted = (await db.execute(stmt)).scalar_one_or_none()
    if inserted is not None:
        return inserted

    result = await db.execute(
        select(WebhookEvent)
        .where(WebhookEvent.external_event_id == envelope.id)
        .execution_options(populate_existing=True)
    )
    existing = result.scalar_one()
    if existing.processed_at is not None:
        return None
    # Inserted earlier but never finalised (deferred or interrupted); process again.
    return existing.id


async def finalize_event(
    db: AsyncSession,
    ledger_id: str,
    outcome: str,
    detail: Optional[str],
    *,
    processed: bool = True,
) -> None:
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == ledger_id, WebhookEvent.processed_at.is_(None))
        .values(
            outcome=outcome,
            detail=(detail or "")[:255] or None,
            processed_at=utcnow() if processed else None,
        )
        .execution_options(synchronize_session=False)
    )


async def _dispatch(
    db: AsyncSession,
    envelope: WebhookEnvelope,
) -> Tuple[str, Optional[str], str]:
    """Apply one event. Returns ``(outcome, asset_id, detail)``."""
    external_id = envelope.external_asset_id
    if envelope.type not in HANDLED_EVENTS:
        return "applied", None, "ignored_event_type"
    if not external_id:
        logger.critical("Verified %s event %s carries no asset id; dropping", envelope.type, envelope.id)
        return "applied", None, "missing_asset_id"

    status = parse_asset_data({**envelope.data, "id": external_id})

    if envelope.type == EVENT_CREATED:
        asset, detail = await find_target_asset(db, external_id, status.passthrough, create=False)
        if asset is None:
            return "applied", None, detail
        moved = await apply_callback_transition(db, asset.id, "processing")
        return "applied", asset.id, "transitioned" if moved else f"stale:{asset.processing_status}"

    if envelope.type == EVENT_ERRORED:
        asset, detail = await find_target_asset(db, external_id, status.passthrough, create=False)
        if asset is None:
            return "applied", None, detail
        moved = await apply_errored(db, asset, status)
        return "applied", asset.id, "transitioned" if moved else f"stale:{asset.processing_status}"

    if envelope.type == EVENT_UPDATED:
        asset, detail = await find_target_asset(db, external_id, None, create=False)
        if asset is None:
            return "applied", None, detail
        filled = await fill_ready_metadata(db, asset.id, status)
        return "applied", asset.id, "metadata_filled" if filled else "no_metadata"

    if envelope.type == EVENT_DELETED:
        asset, detail = await find_target_asset(db, external_id, None, create=False)
        if asset is None:
            return "applied", None, detail
        moved = await apply_deleted(db, asset)
        if moved:
            logger.warning("Provider deleted asset %s (row %s); playback refs cleared", external_id, asset.id)
        return "applied", asset.id, "refs_cleared" if moved else f"stale:{asset.processing_status}"

    candidate = ready_fields(status)
    asset, detail = await find_target_asset(db, external_id, status.passthrough, candidate, create=True)
    if asset is None:
        return "applied", None, detail
    moved = await apply_ready(db, asset, status)
    if not status.playback_id and not asset.external_playback_ref:
        # Ready without playback ids: the transition stands, the refs come from a provider refresh.
        return "deferred", asset.id, "missing_playback_id"
    return "applied", asset.id, "transitioned" if moved else f"stale:{asset.processing_status}"


async def handle(db: AsyncSession, raw_body: bytes, signature_header: Optional[str]) -> WebhookResult:
    """Process one callback delivery. Raises InvalidSignature before touching the database."""
    verify_signature(raw_body, signature_header)

    try:
        envelope, payload = parse_envelope(raw_body)
    except MalformedWebhook as exc:
        logger.critical("Dropping malformed signed webhook: %s", exc)
        return WebhookResult(outcome="malformed", detail="malformed_payload")

    ledger_id = await _claim_ledger_row(db, envelope, payload)
    if ledger_id is None:
        await db.rollback()
        logger.info("Duplicate delivery of webhook event %s ignored", envelope.id)
        return WebhookResult(
            outcome="ignored_duplicate",
            event_id=envelope.id,
            event_type=envelope.type,
        )

    try:
        outcome, asset_id, detail = await _dispatch(db, envelope)
        await finalize_event(db, ledger_id, outcome, detail, processed=outcome != "deferred")
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("Failed to apply webhook event %s (%s)", envelope.id, envelope.type)
        raise

    if outcome == "deferred" and asset_id:
        try:
            enqueue_asset_refresh(asset_id, envelope.id)
        except Exception as exc:
            logger.warning("Could not enqueue deferred refresh for asset %s: %s", asset_id, exc)

    logger.info("Webhook %s (%s) -> %s [%s]", envelope.id, envelope.type, outcome, detail)
    return WebhookResult(
        outcome=outcome,
        event_id=envelope.id,
        event_type=envelope.type,
        asset_id=asset_id,
        detail=detail,
    )
