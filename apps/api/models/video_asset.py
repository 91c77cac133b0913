"""Video asset model."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


PROCESSING_STATUSES = ("pending", "processing", "ready", "errored")


class VideoAsset(Base):
    """Canonical record for one uploaded video and its external processing job."""

    __tablename__ = "video_assets"
    __table_args__ = (
        # Unique when non-null; NULLs are allowed on many rows.
        Index("uq_video_assets_external_asset_id", "external_asset_id", unique=True),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String, nullable=True)
    owner_ref = Column(String, nullable=True, index=True)
    # Null only for placeholder rows created from a callback that beat registration.
    storage_key = Column(String, nullable=True, unique=True)
    external_asset_id = Column(String, nullable=True)
    external_playback_ref = Column(String, nullable=True)
    thumbnail_ref = Column(String, nullable=True)
    transcript_ref = Column(String, nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    size_bytes = Column(BigInteger, nullable=True)
    content_type = Column(String, nullable=True)
    processing_status = Column(String, nullable=False, default="pending", index=True)
    error_reason = Column(Text, nullable=True)

    retry_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    last_polled_at = Column(DateTime(timezone=True), nullable=True)

    view_count = Column(Integer, nullable=False, default=0)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        index=True,
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=True,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    ready_at = Column(DateTime(timezone=True), nullable=True)

    views = relationship("VideoView", back_populates="asset", passive_deletes=True)
