"""Guest / hotel lookups used by the booking lifecycle."""

from sqlalchemy.orm import Session

from ..errors import NotFoundError
from ..models.directory import Guest, Hotel
from ..utils.db_helpers import acquire_row_lock


def get_guest(db: Session, guest_id: str) -> Guest:
    guest = db.get(Guest, guest_id)
    if guest is None:
        raise NotFoundError("Guest not found", context={"guest_id": guest_id})
    return guest


def get_hotel(db: Session, hotel_id: str, lock: bool = False) -> Hotel:
    """Fetch a hotel; with lock=True the row is held FOR UPDATE (PostgreSQL)."""
    if lock:
        hotel = acquire_row_lock(db, Hotel, Hotel.id == hotel_id)
    else:
        hotel = db.get(Hotel, hotel_id)
    if hotel is None:
        raise NotFoundError("Hotel not found", context={"hotel_id": hotel_id})
    return hotel
