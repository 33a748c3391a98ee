"""
Webhook Event Log Model

One row per payment-provider event id. The unique (provider, event_id)
pair is what makes redelivered events a no-op.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Index, UniqueConstraint
from ..database import Base
import enum


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"
    IGNORED = "ignored"  # Intentionally not processed


class WebhookEventLog(Base):
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    provider = Column(String(50), default="stripe", nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=True)
    payload_hash = Column(String(64), nullable=True)  # SHA256 of the raw body

    status = Column(String(20), default=WebhookEventStatus.RECEIVED.value, nullable=False)

    # Processing result
    result_action = Column(String(50), nullable=True)  # completed, refunded, duplicate, ...
    booking_id = Column(String(36), nullable=True)
    refund_id = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)

    received_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_event_provider_event_id"),
        Index("ix_webhook_event_status", "status", "received_at"),
    )

    def __repr__(self):
        return f"<WebhookEventLog {self.provider} {self.event_type} status={self.status}>"
