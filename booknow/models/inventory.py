"""
Inventory Ledger Model

Rooms committed per hotel per night. The table is sparse: a missing row
means nothing is committed for that night, and rows that drop to zero are
deleted.
"""

from sqlalchemy import Column, String, Date, Integer, ForeignKey, CheckConstraint
from ..database import Base


class InventoryLedgerEntry(Base):
    __tablename__ = "inventory_ledger"

    # (hotel_id, stay_date) is the upsert conflict target
    hotel_id = Column(String(36), ForeignKey("hotels.id", ondelete="CASCADE"), primary_key=True)
    stay_date = Column(Date, primary_key=True)
    rooms_committed = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("rooms_committed >= 0", name="ck_inventory_ledger_non_negative"),
    )

    def __repr__(self):
        return f"<InventoryLedgerEntry {self.hotel_id} {self.stay_date} committed={self.rooms_committed}>"
