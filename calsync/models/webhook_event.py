# calsync/models/webhook_event.py
from sqlalchemy import Column, DateTime, Integer, String

from calsync.models.base import Base
from calsync.timeutils import utcnow


class WebhookEvent(Base):
    """Idempotency ledger for provider webhook deliveries."""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)

    # sha256 of trigger + booking uid + createdAt + startTime
    event_key = Column(String(64), nullable=False, unique=True, index=True)

    trigger_event = Column(String(64), nullable=False)
    booking_uid = Column(String(255), nullable=True, index=True)

    # applied | ignored | rejected
    outcome = Column(String(16), nullable=False)

    received_at = Column(DateTime, default=utcnow, nullable=False)
