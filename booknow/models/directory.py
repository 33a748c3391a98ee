"""
Guest and Hotel directory models.

Profile management lives in a separate service; the booking engine only
reads the fields it needs for ownership checks, capacity and notifications.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime
from sqlalchemy.orm import relationship
from ..database import Base


class Guest(Base):
    __tablename__ = "guests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    phone = Column(String(20), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    bookings = relationship("Booking", back_populates="guest")

    def __repr__(self):
        return f"<Guest {self.name}>"


class Hotel(Base):
    __tablename__ = "hotels"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False)
    total_rooms = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    bookings = relationship("Booking", back_populates="hotel")

    def __repr__(self):
        return f"<Hotel {self.name} rooms={self.total_rooms}>"
