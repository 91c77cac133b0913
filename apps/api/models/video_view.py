"""Video view model."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from database import Base


class VideoView(Base):
    """One playback of an asset. Re-pointed onto the survivor when duplicates are resolved."""

    __tablename__ = "video_views"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    asset_id = Column(String, ForeignKey("video_assets.id", ondelete="CASCADE"), nullable=False, index=True)
    viewer_ref = Column(String, nullable=True)
    watch_seconds = Column(Integer, nullable=False, default=0)
    viewed_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    asset = relationship("VideoAsset", back_populates="views")
