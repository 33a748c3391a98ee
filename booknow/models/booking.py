import uuid
from datetime import datetime
from sqlalchemy import Column, String, Date, Numeric, Text, ForeignKey, DateTime, Index, Integer
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class BookingStatus(str, enum.Enum):
    ACTIVE = "Active"
    CANCELLED = "Cancelled"


class PaymentOption(str, enum.Enum):
    PAY_ONLINE = "pay_online"
    PAY_LATER = "pay_later"


class PaymentStatus(str, enum.Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"
    REFUNDED = "Refunded"


class CancelledBy(str, enum.Enum):
    USER = "user"
    HOTEL = "hotel"
    ADMIN = "admin"


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("guests.id", ondelete="RESTRICT"), nullable=False)
    hotel_id = Column(String(36), ForeignKey("hotels.id", ondelete="RESTRICT"), nullable=False)

    # Stay window is [check_in_date, check_out_date)
    check_in_date = Column(Date, nullable=False)
    check_out_date = Column(Date, nullable=False)
    room_type = Column(String(50), nullable=False)
    room_quantity = Column(Integer, nullable=False, default=1)
    total_amount = Column(Numeric(10, 2), nullable=False)

    # Payment mirror of the provider's intent
    payment_option = Column(String(20), nullable=False, default=PaymentOption.PAY_LATER.value)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_intent_id = Column(String(255), nullable=True)
    payment_client_secret = Column(String(255), nullable=True)
    refund_id = Column(String(255), nullable=True)

    status = Column(String(20), nullable=False, default=BookingStatus.ACTIVE.value)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(20), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    # Bumped on every write, including the conditional payment updates
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    guest = relationship("Guest", back_populates="bookings")
    hotel = relationship("Hotel", back_populates="bookings")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_bookings_user_created", "user_id", "created_at"),
        Index("ix_bookings_hotel_created", "hotel_id", "created_at"),
        Index("ix_bookings_payment_intent", "payment_intent_id"),
    )

    @property
    def is_cancelled(self) -> bool:
        return self.status == BookingStatus.CANCELLED.value

    @property
    def is_pay_online(self) -> bool:
        return self.payment_option == PaymentOption.PAY_ONLINE.value

    def __repr__(self):
        return f"<Booking {self.id} {self.status}/{self.payment_status}>"
