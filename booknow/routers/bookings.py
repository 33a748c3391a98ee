"""
Bookings Router

Thin HTTP layer over BookingService. Endpoints are plain `def` so FastAPI
runs them in its threadpool; each request gets its own DB session.
"""

from fastapi import APIRouter, Depends, Query, Request, status
from typing import Optional

from ..schemas.booking import (
    BookingCreate,
    BookingCreatedResponse,
    BookingListResponse,
    BookingResponse,
    CancelRequest,
    PaymentOptionResponse,
    PaymentStatusResponse,
)
from ..services.booking_service import BookingService
from ..utils.dependencies import get_booking_service, get_current_principal, require_role
from ..utils.rate_limiter import get_rate_limit, limiter
from ..utils.security import Principal

router = APIRouter(prefix="/api/bookings", tags=["Bookings"])


def _listing(bookings) -> BookingListResponse:
    return BookingListResponse(
        count=len(bookings),
        bookings=[BookingResponse.model_validate(b) for b in bookings],
    )


@router.post("", response_model=BookingCreatedResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(get_rate_limit("booking_create"))
def create_booking(
    request: Request,
    data: BookingCreate,
    principal: Principal = Depends(require_role("user")),
    service: BookingService = Depends(get_booking_service),
):
    """Book rooms; returns the Stripe client secret for pay_online bookings"""
    booking, client_secret = service.create_booking(principal.subject_id, data)
    return BookingCreatedResponse(
        booking=BookingResponse.model_validate(booking),
        client_secret=client_secret,
    )


@router.get("/mine", response_model=BookingListResponse)
def list_my_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    principal: Principal = Depends(require_role("user")),
    service: BookingService = Depends(get_booking_service),
):
    return _listing(service.list_guest_bookings(principal.subject_id, status=status_filter))


@router.get("/hotel", response_model=BookingListResponse)
def list_hotel_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    payment_status: Optional[str] = Query(None),
    principal: Principal = Depends(require_role("hotel")),
    service: BookingService = Depends(get_booking_service),
):
    return _listing(service.list_hotel_bookings(
        principal.subject_id, status=status_filter, payment_status=payment_status
    ))


@router.get("", response_model=BookingListResponse)
def list_all_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    payment_status: Optional[str] = Query(None),
    principal: Principal = Depends(require_role("admin")),
    service: BookingService = Depends(get_booking_service),
):
    return _listing(service.list_all_bookings(status=status_filter, payment_status=payment_status))


@router.get("/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    principal: Principal = Depends(get_current_principal),
    service: BookingService = Depends(get_booking_service),
):
    return BookingResponse.model_validate(service.get_booking(principal, booking_id))


@router.get("/{booking_id}/payment-status", response_model=PaymentStatusResponse)
def check_payment_status(
    booking_id: str,
    principal: Principal = Depends(require_role("user", "admin")),
    service: BookingService = Depends(get_booking_service),
):
    """Refresh the payment status from Stripe (idempotent)"""
    booking = service.check_payment_status(principal, booking_id)
    return PaymentStatusResponse(
        booking_id=booking.id,
        payment_option=booking.payment_option,
        payment_status=booking.payment_status,
        status=booking.status,
    )


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    data: Optional[CancelRequest] = None,
    principal: Principal = Depends(get_current_principal),
    service: BookingService = Depends(get_booking_service),
):
    """Cancel a booking, refunding a completed online payment first"""
    reason = data.reason if data else None
    return BookingResponse.model_validate(service.cancel_booking(principal, booking_id, reason))


@router.post("/{booking_id}/pay-online", response_model=PaymentOptionResponse)
def convert_to_pay_online(
    booking_id: str,
    principal: Principal = Depends(require_role("user")),
    service: BookingService = Depends(get_booking_service),
):
    booking, client_secret = service.convert_to_pay_online(principal, booking_id)
    return PaymentOptionResponse(booking=BookingResponse.model_validate(booking), client_secret=client_secret)


@router.post("/{booking_id}/pay-later", response_model=PaymentOptionResponse)
def revert_to_pay_later(
    booking_id: str,
    principal: Principal = Depends(require_role("user")),
    service: BookingService = Depends(get_booking_service),
):
    booking = service.revert_to_pay_later(principal, booking_id)
    return PaymentOptionResponse(booking=BookingResponse.model_validate(booking))


@router.post("/{booking_id}/payment-confirmation", status_code=status.HTTP_202_ACCEPTED)
def resend_payment_confirmation(
    booking_id: str,
    principal: Principal = Depends(require_role("admin")),
    service: BookingService = Depends(get_booking_service),
):
    """Re-send payment confirmation emails to guest and hotel"""
    service.resend_payment_confirmation(principal, booking_id)
    return {"success": True, "message": "Payment confirmation emails scheduled"}
