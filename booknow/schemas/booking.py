from pydantic import BaseModel, Field, field_validator, ConfigDict
from typing import Optional, List
from datetime import datetime, date
from decimal import Decimal

from ..models.booking import PaymentOption


class BookingCreate(BaseModel):
    hotel_id: str = Field(..., min_length=1, max_length=36)
    check_in_date: date
    check_out_date: date
    room_type: str = Field(..., min_length=1, max_length=50)
    # Range checks happen in the service so they surface as 400 domain errors
    room_quantity: int = 1
    total_amount: Decimal
    payment_option: PaymentOption = PaymentOption.PAY_LATER

    @field_validator('room_type', mode='before')
    @classmethod
    def strip_room_type(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    hotel_id: str
    check_in_date: date
    check_out_date: date
    room_type: str
    room_quantity: int
    total_amount: Decimal
    payment_option: str
    payment_status: str
    payment_intent_id: Optional[str] = None
    status: str
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BookingCreatedResponse(BaseModel):
    success: bool = True
    booking: BookingResponse
    client_secret: Optional[str] = None


class BookingListResponse(BaseModel):
    success: bool = True
    count: int
    bookings: List[BookingResponse]


class PaymentStatusResponse(BaseModel):
    success: bool = True
    booking_id: str
    payment_option: str
    payment_status: str
    status: str


class PaymentOptionResponse(BaseModel):
    success: bool = True
    booking: BookingResponse
    client_secret: Optional[str] = None
