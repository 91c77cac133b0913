"""Chunked upload session coordination.

The ``upload_sessions`` row is the only record of an in-flight upload; parts
are upserted one row per part number so out-of-order and repeated part
reports never clobber each other.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from config import settings
from models.upload_session import OPEN_SESSION_STATES, UploadPart, UploadSession
from services.asset_state import as_utc, dialect_insert, utcnow
from services.errors import IncompleteUpload, InvalidPart, InvalidSession, InvalidSize
from services.object_storage import get_object_storage

logger = logging.getLogger(__name__)

MIB = 1024 * 1024


@dataclass(frozen=True)
class PartTarget:
    session_id: str
    part_number: int
    url: str
    method: str
    expires_in: int
    proxied: bool


def _safe_filename(name: str) -> str:
    base = os.path.basename(name or "upload.mp4")
    cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_", "."} else "_" for ch in base)
    return cleaned.strip(".") or "upload.mp4"


def compute_part_plan(total_size: int, requested_part_size: Optional[int] = None) -> Tuple[int, int]:
    """Return ``(part_size, total_parts)`` honouring the provider floor and part-count ceiling."""
    if total_size <= 0:
        raise InvalidSize("Upload size must be positive")
    if total_size > int(settings.UPLOAD_MAX_BYTES):
        raise InvalidSize(f"Upload size {total_size} exceeds the {settings.UPLOAD_MAX_BYTES} byte limit")

    floor = int(settings.UPLOAD_MIN_PART_SIZE_BYTES)
    part_size = max(int(requested_part_size or settings.UPLOAD_PART_SIZE_BYTES), floor)
    by_count = math.ceil(total_size / int(settings.UPLOAD_MAX_PARTS))
    if by_count > part_size:
        part_size = math.ceil(by_count / MIB) * MIB
    total_parts = max(math.ceil(total_size / part_size), 1)
    return part_size, total_parts


def build_storage_key(session_id: str, filename: str, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"videos/{now:%Y}/{now:%m}/{session_id}-{_safe_filename(filename)}"


def _is_expired(session: UploadSession, now: Optional[datetime] = None) -> bool:
    expires_at = as_utc(session.expires_at)
    return expires_at is not None and expires_at <= (now or utcnow())


async def get_session(db: AsyncSession, session_id: str) -> Optional[UploadSession]:
    result = await db.execute(
        select(UploadSession)
        .options(selectinload(UploadSession.part_rows))
        .where(UploadSession.id == session_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _require_open_session(db: AsyncSession, session_id: str) -> UploadSession:
    session = await get_session(db, session_id)
    if session is None:
        raise InvalidSession(f"Upload session {session_id} not found")
    if session.state not in OPEN_SESSION_STATES:
        raise InvalidSession(f"Upload session {session_id} is {session.state}")
    if _is_expired(session):
        raise InvalidSession(f"Upload session {session_id} has expired")
    return session


def _require_part_number(session: UploadSession, part_number: int) -> None:
    if part_number < 1 or part_number > int(session.total_parts):
        raise InvalidPart(f"Part number must be between 1 and {session.total_parts}, got {part_number}")


async def _mark_in_progress(db: AsyncSession, session_id: str) -> None:
    await db.execute(
        update(UploadSession)
        .where(UploadSession.id == session_id, UploadSession.state == "initiated")
        .values(state="in_progress", updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def initiate(
    db: AsyncSession,
    filename: str,
    total_size: int,
    content_type: str,
    *,
    part_size: Optional[int] = None,
    owner_ref: Optional[str] = None,
) -> UploadSession:
    """Open a multipart upload in the object store and persist its session."""
    chosen_part_size, total_parts = compute_part_plan(int(total_size), part_size)
    session_id = str(uuid.uuid4())
    now = utcnow()
    storage_key = build_storage_key(session_id, filename, now)
    content_type = (content_type or "application/octet-stream").strip()

    storage = get_object_storage()
    upload_id = await asyncio.to_thread(storage.initiate_multipart, storage_key, content_type)

    session = UploadSession(
        id=session_id,
        storage_key=storage_key,
        upload_id=upload_id,
        filename=_safe_filename(filename),
        content_type=content_type,
        owner_ref=owner_ref,
        total_size=int(total_size),
        part_size=chosen_part_size,
        total_parts=total_parts,
        state="initiated",
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(hours=max(int(settings.UPLOAD_SESSION_TTL_HOURS), 1)),
    )
    db.add(session)
    try:
        await db.commit()
    except Exception:
        await db.rollback()
        await asyncio.to_thread(storage.abort_multipart, storage_key, upload_id)
        raise
    logger.info(
        "Upload session %s initiated: %s bytes in %s parts of %s",
        session_id,
        total_size,
        total_parts,
        chosen_part_size,
    )
    return await get_session(db, session_id)


async def get_part_target(db: AsyncSession, session_id: str, part_number: int) -> PartTarget:
    """Return where the client should send ``part_number``."""
    session = await _require_open_session(db, session_id)
    _require_part_number(session, part_number)

    await _mark_in_progress(db, session_id)
    await db.commit()

    expires_in = int(settings.UPLOAD_PART_URL_TTL_SECONDS)
    storage = get_object_storage()
    url = await asyncio.to_thread(
        storage.get_part_upload_target,
        session.storage_key,
        session.upload_id,
        part_number,
        expires_in,
    )
    if url is None:
        return PartTarget(
            session_id=session_id,
            part_number=part_number,
            url=f"/uploads/{session_id}/parts/{part_number}",
            method="PUT",
            expires_in=expires_in,
            proxied=True,
        )
    return PartTarget(
        session_id=session_id,
        part_number=part_number,
        url=url,
        method="PUT",
        expires_in=expires_in,
        proxied=False,
    )


async def record_part(
    db: AsyncSession,
    session_id: str,
    part_number: int,
    etag: str,
    size_bytes: int,
) -> UploadSession:
    """Record a received part. Same etag is a no-op; a new etag replaces only that part."""
    etag = (etag or "").strip().strip('"')
    if not etag:
        raise InvalidPart("Part etag is required")
    session = await _require_open_session(db, session_id)
    _require_part_number(session, part_number)
    if int(size_bytes) <= 0 or int(size_bytes) > int(session.part_size):
        raise InvalidPart(f"Part {part_number} size {size_bytes} is outside 1..{session.part_size}")

    now = utcnow()
    table = UploadPart.__table__
    insert_stmt = dialect_insert(db, table).values(
        id=str(uuid.uuid4()),
        session_id=session_id,
        part_number=int(part_number),
        etag=etag,
        size_bytes=int(size_bytes),
        recorded_at=now,
    )
    await db.execute(
        insert_stmt.on_conflict_do_update(
            index_elements=[table.c.session_id, table.c.part_number],
            set_={
                "etag": insert_stmt.excluded.etag,
                "size_bytes": insert_stmt.excluded.size_bytes,
                "recorded_at": now,
            },
            where=(table.c.etag != insert_stmt.excluded.etag) | (table.c.size_bytes != insert_stmt.excluded.size_bytes),
        )
    )
    await _mark_in_progress(db, session_id)
    await db.commit()
    return await get_session(db, session_id)


async def upload_part(db: AsyncSession, session_id: str, part_number: int, data: bytes) -> str:
    """Proxy a part body to the object store and record its etag."""
    session = await _require_open_session(db, session_id)
    _require_part_number(session, part_number)
    if not data or len(data) > int(session.part_size):
        raise InvalidPart(f"Part {part_number} body must be 1..{session.part_size} bytes")

    storage = get_object_storage()
    etag = await asyncio.to_thread(
        storage.upload_part,
        session.storage_key,
        session.upload_id,
        part_number,
        data,
    )
    await record_part(db, session_id, part_number, etag, len(data))
    return etag


async def complete(db: AsyncSession, session_id: str) -> str:
    """Finalise the object. Idempotent: a completed session returns its storage key again."""
    session = await get_session(db, session_id)
    if session is None:
        raise InvalidSession(f"Upload session {session_id} not found")
    if session.state == "completed":
        return session.storage_key
    if session.state not in OPEN_SESSION_STATES or _is_expired(session):
        raise InvalidSession(f"Upload session {session_id} cannot be completed from {session.state}")

    parts = session.parts
    total_parts = int(session.total_parts)
    floor = int(settings.UPLOAD_MIN_PART_SIZE_BYTES)
    missing = [n for n in range(1, total_parts + 1) if n not in parts]
    undersized = [n for n in range(1, total_parts) if n in parts and int(parts[n]["size"]) < floor]
    if missing or undersized:
        raise IncompleteUpload(missing, undersized)

    storage_key = session.storage_key
    upload_id = session.upload_id
    now = utcnow()
    claim = await db.execute(
        update(UploadSession)
        .where(UploadSession.id == session_id, UploadSession.state.in_(OPEN_SESSION_STATES))
        .values(state="completed", completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if (claim.rowcount or 0) != 1:
        await db.rollback()
        session = await get_session(db, session_id)
        if session is not None and session.state == "completed":
            return session.storage_key
        raise InvalidSession(f"Upload session {session_id} was closed concurrently")

    storage = get_object_storage()
    try:
        await asyncio.to_thread(
            storage.complete_multipart,
            storage_key,
            upload_id,
            [(number, str(part["etag"])) for number, part in sorted(parts.items())],
        )
    except Exception:
        await db.rollback()
        logger.exception("Object store rejected completion of upload session %s", session_id)
        raise
    await db.commit()
    logger.info("Upload session %s completed as %s", session_id, storage_key)
    return storage_key


async def abort(db: AsyncSession, session_id: str) -> UploadSession:
    """Cancel an open session. Aborting an aborted or expired session is a no-op."""
    session = await get_session(db, session_id)
    if session is None:
        raise InvalidSession(f"Upload session {session_id} not found")
    if session.state in ("aborted", "expired"):
        return session
    if session.state == "completed":
        raise InvalidSession(f"Upload session {session_id} is already completed")

    claim = await db.execute(
        update(UploadSession)
        .where(UploadSession.id == session_id, UploadSession.state.in_(OPEN_SESSION_STATES))
        .values(state="aborted", updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if (claim.rowcount or 0) != 1:
        await db.rollback()
        session = await get_session(db, session_id)
        if session is not None and session.state == "completed":
            raise InvalidSession(f"Upload session {session_id} is already completed")
        return session

    storage = get_object_storage()
    try:
        await asyncio.to_thread(storage.abort_multipart, session.storage_key, session.upload_id)
    except Exception:
        await db.rollback()
        logger.exception("Object store abort failed for upload session %s", session_id)
        raise
    await db.commit()
    logger.info("Upload session %s aborted", session_id)
    return await get_session(db, session_id)


async def expire_session(db: AsyncSession, session_id: str) -> bool:
    """Mark an open session past its TTL as expired and release the remote upload."""
    now = utcnow()
    result = await db.execute(
        select(UploadSession.storage_key, UploadSession.upload_id).where(UploadSession.id == session_id)
    )
    row = result.first()
    if row is None:
        return False
    claim = await db.execute(
        update(UploadSession)
        .where(
            UploadSession.id == session_id,
            UploadSession.state.in_(OPEN_SESSION_STATES),
            UploadSession.expires_at <= now,
        )
        .values(state="expired", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if (claim.rowcount or 0) != 1:
        await db.rollback()
        return False

    storage = get_object_storage()
    try:
        await asyncio.to_thread(storage.abort_multipart, row.storage_key, row.upload_id)
    except Exception as exc:
        await db.rollback()
        logger.warning("Remote abort for expired upload session %s failed: %s", session_id, exc)
        return False
    await db.commit()
    return True
