"""
Inventory Ledger

Per-(hotel, night) count of committed rooms. Every mutation is a single
atomic statement so concurrent bookings for the same nights never lose an
update:

- commit:  INSERT ... ON CONFLICT DO UPDATE SET rooms = rooms + :q
- release: UPDATE ... SET rooms = max(rooms - :q, 0), then DELETE rows at 0

The ledger never commits the session itself; callers run it inside their
own transaction together with the booking row.
"""

import logging
from datetime import date, timedelta
from typing import Dict, List

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import Session

from ..errors import ValidationError
from ..models.inventory import InventoryLedgerEntry
from ..utils.db_helpers import upsert_insert

logger = logging.getLogger(__name__)


def stay_dates(check_in: date, check_out: date) -> List[date]:
    """Nights covered by a stay: check_in inclusive, check_out exclusive."""
    dates = []
    current = check_in
    while current < check_out:
        dates.append(current)
        current += timedelta(days=1)
    return dates


class InventoryLedger:
    """
    Committed-room counters for hotels.

    A missing row means zero rooms committed for that night.
    """

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _validate(check_in: date, check_out: date, quantity: int) -> None:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Room quantity must be a positive integer", context={"quantity": quantity})
        if check_out <= check_in:
            raise ValidationError(
                "Check-out date must be after check-in date",
                context={"check_in": check_in.isoformat(), "check_out": check_out.isoformat()},
            )

    def _range_filter(self, hotel_id: str, check_in: date, check_out: date):
        return (
            InventoryLedgerEntry.hotel_id == hotel_id,
            InventoryLedgerEntry.stay_date >= check_in,
            InventoryLedgerEntry.stay_date < check_out,
        )

    def commit(self, hotel_id: str, check_in: date, check_out: date, quantity: int) -> int:
        """
        Add `quantity` committed rooms to every night of the stay.
        Returns the number of nights touched.
        """
        self._validate(check_in, check_out, quantity)
        nights = stay_dates(check_in, check_out)

        stmt = upsert_insert(self.db, InventoryLedgerEntry).values([
            {"hotel_id": hotel_id, "stay_date": night, "rooms_committed": quantity}
            for night in nights
        ])
        stmt = stmt.on_conflict_do_update(
            index_elements=["hotel_id", "stay_date"],
            set_={"rooms_committed": InventoryLedgerEntry.rooms_committed + stmt.excluded.rooms_committed},
        )
        self.db.execute(stmt)

        logger.info(f"Committed {quantity} room(s) for hotel {hotel_id} over {len(nights)} night(s) from {check_in}")
        return len(nights)

    def release(self, hotel_id: str, check_in: date, check_out: date, quantity: int) -> int:
        """
        Remove `quantity` committed rooms from every night of the stay,
        flooring at zero. Returns the number of nights touched.
        """
        self._validate(check_in, check_out, quantity)
        range_filter = self._range_filter(hotel_id, check_in, check_out)

        short = self.db.execute(
            select(func.count()).select_from(InventoryLedgerEntry).where(
                *range_filter, InventoryLedgerEntry.rooms_committed < quantity
            )
        ).scalar_one()
        if short:
            # Ledger drift: releasing more than was committed on some nights
            logger.warning(
                f"Releasing {quantity} room(s) for hotel {hotel_id} but {short} night(s) "
                f"hold fewer; flooring at 0"
            )

        remaining = InventoryLedgerEntry.rooms_committed - quantity
        result = self.db.execute(
            update(InventoryLedgerEntry)
            .where(*range_filter)
            .values(rooms_committed=case((remaining < 0, 0), else_=remaining))
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            delete(InventoryLedgerEntry)
            .where(*range_filter, InventoryLedgerEntry.rooms_committed <= 0)
            .execution_options(synchronize_session=False)
        )

        logger.info(f"Released {quantity} room(s) for hotel {hotel_id} from {check_in} to {check_out}")
        return result.rowcount

    def peak_committed(self, hotel_id: str, check_in: date, check_out: date) -> int:
        """Highest committed count on any night of the stay."""
        peak = self.db.execute(
            select(func.max(InventoryLedgerEntry.rooms_committed)).where(
                *self._range_filter(hotel_id, check_in, check_out)
            )
        ).scalar()
        return int(peak or 0)

    def snapshot(self, hotel_id: str, start: date, end: date) -> Dict[date, int]:
        """Committed rooms for every night in [start, end), zero-filled."""
        if end <= start:
            raise ValidationError("End date must be after start date")
        rows = self.db.execute(
            select(InventoryLedgerEntry.stay_date, InventoryLedgerEntry.rooms_committed).where(
                *self._range_filter(hotel_id, start, end)
            )
        ).all()
        committed = {row.stay_date: row.rooms_committed for row in rows}
        return {night: committed.get(night, 0) for night in stay_dates(start, end)}
