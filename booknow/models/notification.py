"""
Notification Model
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, Boolean, DateTime, Text, Index
from sqlalchemy.sql import func
import enum

from ..database import Base


class NotificationType(str, enum.Enum):
    BOOKING = "BOOKING"
    PAYMENT = "PAYMENT"
    REVIEW = "REVIEW"
    SYSTEM = "SYSTEM"


class RecipientRole(str, enum.Enum):
    USER = "user"
    HOTEL = "hotel"
    ADMIN = "admin"


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Guest id or hotel id, depending on recipient_role
    recipient_id = Column(String(36), nullable=False, index=True)
    recipient_role = Column(String(20), nullable=False, default=RecipientRole.USER.value)

    type = Column(String(20), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)

    is_read = Column(Boolean, default=False, nullable=False, index=True)
    read_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), index=True)

    __table_args__ = (
        Index("ix_notifications_recipient_read", "recipient_id", "is_read"),
    )

    def __repr__(self):
        return f"<Notification {self.type} - {self.title}>"

    def mark_as_read(self):
        self.is_read = True
        self.read_at = datetime.utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
