"""
Chunked upload session router.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.upload_session import UploadSession
from routers.http_errors import to_http_exception
from services import upload_sessions
from services.errors import IngestError

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateUploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str = Field(min_length=1, max_length=512)
    size: int
    content_type: str = Field(default="application/octet-stream", alias="contentType")
    part_size: Optional[int] = Field(default=None, alias="partSize")
    owner_ref: Optional[str] = Field(default=None, alias="ownerRef")


class RecordPartRequest(BaseModel):
    etag: str = Field(min_length=1)
    size: int


class UploadPartResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    part_number: int = Field(alias="partNumber")
    etag: str
    size: int


class UploadSessionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    storage_key: str = Field(alias="storageKey")
    state: str
    part_size: int = Field(alias="partSize")
    total_parts: int = Field(alias="totalParts")
    total_size: int = Field(alias="totalSize")
    expires_at: Optional[str] = Field(default=None, alias="expiresAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    parts: List[UploadPartResponse] = Field(default_factory=list)


class PartTargetResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    part_number: int = Field(alias="partNumber")
    url: str
    method: str
    expires_in: int = Field(alias="expiresIn")
    proxied: bool


class CompleteUploadResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    storage_key: str = Field(alias="storageKey")


def _serialize_session(session: UploadSession) -> UploadSessionResponse:
    parts: Dict[int, Dict[str, object]] = session.parts
    return UploadSessionResponse(
        session_id=session.id,
        storage_key=session.storage_key,
        state=session.state,
        part_size=int(session.part_size),
        total_parts=int(session.total_parts),
        total_size=int(session.total_size),
        expires_at=session.expires_at.isoformat() if session.expires_at else None,
        completed_at=session.completed_at.isoformat() if session.completed_at else None,
        parts=[
            UploadPartResponse(part_number=number, etag=str(part["etag"]), size=int(part["size"]))
            for number, part in sorted(parts.items())
        ],
    )


@router.post("", response_model=UploadSessionResponse)
async def create_upload_session(
    request: CreateUploadRequest,
    db: AsyncSession = Depends(get_db),
):
    """Open a chunked upload session."""
    try:
        session = await upload_sessions.initiate(
            db,
            request.filename,
            request.size,
            request.content_type,
            part_size=request.part_size,
            owner_ref=request.owner_ref,
        )
    except IngestError as exc:
        raise to_http_exception(exc) from exc
    return _serialize_session(session)


@router.get("/{session_id}", response_model=UploadSessionResponse)
async def get_upload_session(session_id: str, db: AsyncSession = Depends(get_db)):
    session = await upload_sessions.get_session(db, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Upload session not found")
    return _serialize_session(session)


@router.put("/{session_id}/parts/{part_number}")
async def put_upload_part(
    session_id: str,
    part_number: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Empty body: return where to send the part.
    Non-empty body: proxy the part bytes to the object store and record it.
    """
    body = await request.body()
    try:
        if not body:
            target = await upload_sessions.get_part_target(db, session_id, part_number)
            return PartTargetResponse(
                session_id=target.session_id,
                part_number=target.part_number,
                url=target.url,
                method=target.method,
                expires_in=target.expires_in,
                proxied=target.proxied,
            ).model_dump(by_alias=True)
        etag = await upload_sessions.upload_part(db, session_id, part_number, body)
    except IngestError as exc:
        raise to_http_exception(exc) from exc
    return UploadPartResponse(part_number=part_number, etag=etag, size=len(body)).model_dump(by_alias=True)


@router.post("/{session_id}/parts/{part_number}/record", response_model=UploadSessionResponse)
async def record_upload_part(
    session_id: str,
    part_number: int,
    request: RecordPartRequest,
    db: AsyncSession = Depends(get_db),
):
    """Record a part the client sent directly to the object store."""
    try:
        session = await upload_sessions.record_part(db, session_id, part_number, request.etag, request.size)
    except IngestError as exc:
        raise to_http_exception(exc) from exc
    return _serialize_session(session)


@router.post("/{session_id}/complete", response_model=CompleteUploadResponse)
async def complete_upload_session(session_id: str, db: AsyncSession = Depends(get_db)):
    try:
        storage_key = await upload_sessions.complete(db, session_id)
    except IngestError as exc:
        raise to_http_exception(exc) from exc
    return CompleteUploadResponse(session_id=session_id, storage_key=storage_key)


@router.delete("/{session_id}", response_model=UploadSessionResponse)
async def abort_upload_session(session_id: str, db: AsyncSession = Depends(get_db)):
    try:
        session = await upload_sessions.abort(db, session_id)
    except IngestError as exc:
        raise to_http_exception(exc) from exc
    return _serialize_session(session)
