"""Inbound provider webhook ledger model."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, JSON, String
from sqlalchemy.sql import func

from database import Base


class WebhookEvent(Base):
    """Idempotency ledger and audit trail for provider callbacks."""

    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    external_event_id = Column(String, nullable=False, unique=True)
    external_asset_id = Column(String, nullable=True, index=True)
    event_type = Column(String, nullable=False, index=True)
    payload = Column(JSON, nullable=True)
    received_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
    )
    processed_at = Column(DateTime(timezone=True), nullable=True)
    outcome = Column(String, nullable=True, index=True)
    detail = Column(String, nullable=True)
