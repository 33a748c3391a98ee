from datetime import date
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..errors import NotFoundError
from ..services.directory import get_hotel
from ..services.inventory_ledger import InventoryLedger
from ..utils.dependencies import require_role
from ..utils.security import Principal

router = APIRouter(prefix="/api/hotels", tags=["Hotels"])


@router.get("/{hotel_id}/inventory")
def get_inventory(
    hotel_id: str,
    start: date = Query(...),
    end: date = Query(...),
    principal: Principal = Depends(require_role("hotel", "admin")),
    db: Session = Depends(get_db),
):
    """Committed rooms per night in [start, end)"""
    if principal.is_hotel and principal.subject_id != hotel_id:
        raise NotFoundError("Hotel not found", context={"hotel_id": hotel_id})
    hotel = get_hotel(db, hotel_id)

    snapshot = InventoryLedger(db).snapshot(hotel.id, start, end)
    return {
        "success": True,
        "hotel_id": hotel.id,
        "total_rooms": hotel.total_rooms,
        "nights": [
            {
                "date": night.isoformat(),
                "committed": committed,
                "available": max(hotel.total_rooms - committed, 0),
            }
            for night, committed in snapshot.items()
        ],
    }
