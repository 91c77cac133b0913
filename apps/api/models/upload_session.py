"""Chunked upload session models."""

from datetime import datetime, timezone
from typing import Dict
import uuid

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


OPEN_SESSION_STATES = ("initiated", "in_progress")


class UploadSession(Base):
    """Server-side record of one multipart transfer into the object store."""

    __tablename__ = "upload_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    storage_key = Column(String, nullable=False, unique=True)
    upload_id = Column(String, nullable=False)
    filename = Column(String, nullable=False)
    content_type = Column(String, nullable=False)
    owner_ref = Column(String, nullable=True, index=True)
    total_size = Column(BigInteger, nullable=False)
    part_size = Column(BigInteger, nullable=False)
    total_parts = Column(Integer, nullable=False)
    state = Column(String, nullable=False, default="initiated", index=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=True,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    part_rows = relationship(
        "UploadPart",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="UploadPart.part_number",
    )

    @property
    def parts(self) -> Dict[int, Dict[str, object]]:
        """Received parts keyed by part number."""
        return {
            int(part.part_number): {"etag": part.etag, "size": int(part.size_bytes or 0)}
            for part in self.part_rows
        }


class UploadPart(Base):
    """One received part of an upload session (last write wins per part number)."""

    __tablename__ = "upload_session_parts"
    __table_args__ = (UniqueConstraint("session_id", "part_number", name="uq_upload_session_parts_number"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String, ForeignKey("upload_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    part_number = Column(Integer, nullable=False)
    etag = Column(String, nullable=False)
    size_bytes = Column(BigInteger, nullable=False)
    recorded_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    session = relationship("UploadSession", back_populates="part_rows")
