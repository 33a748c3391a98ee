"""
Booking notification fan-out.

Each lifecycle event notifies the guest and/or the hotel in-app and by
email. Every delivery is attempted independently: a failure for one party
or one channel is logged and does not stop the others.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from starlette.concurrency import run_in_threadpool

from ..models.notification import NotificationType, RecipientRole
from .email_service import EmailSender, get_email_sender, send_email_safely
from .notification_dispatcher import NotificationDispatcher, get_notification_dispatcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingSnapshot:
    """Detached copy of the booking fields the messages need."""
    booking_id: str
    guest_id: str
    guest_name: str
    guest_email: Optional[str]
    hotel_id: str
    hotel_name: str
    hotel_email: Optional[str]
    room_type: str
    room_quantity: int
    check_in: date
    check_out: date
    total_amount: Decimal
    cancellation_reason: Optional[str] = None

    @classmethod
    def from_booking(cls, booking) -> "BookingSnapshot":
        return cls(
            booking_id=booking.id,
            guest_id=booking.user_id,
            guest_name=booking.guest.name,
            guest_email=booking.guest.email,
            hotel_id=booking.hotel_id,
            hotel_name=booking.hotel.name,
            hotel_email=booking.hotel.email,
            room_type=booking.room_type,
            room_quantity=booking.room_quantity,
            check_in=booking.check_in_date,
            check_out=booking.check_out_date,
            total_amount=booking.total_amount,
            cancellation_reason=booking.cancellation_reason,
        )

    @property
    def rooms_label(self) -> str:
        return f"{self.room_quantity} {self.room_type} room(s)"

    @property
    def stay_label(self) -> str:
        return f"from {self.check_in.isoformat()} to {self.check_out.isoformat()}"


class BookingNotifier:

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        email_sender: Optional[EmailSender] = None,
    ):
        self.dispatcher = dispatcher or get_notification_dispatcher()
        self.email_sender = email_sender or get_email_sender()

    async def _notify(self, recipient_id: str, role: RecipientRole, ntype: NotificationType,
                      title: str, message: str) -> bool:
        try:
            await self.dispatcher.notify(recipient_id, role.value, ntype, title, message)
            return True
        except Exception:
            logger.exception(f"Notification '{title}' for {role.value} {recipient_id} failed")
            return False

    async def _email(self, to: Optional[str], subject: str, body: str) -> bool:
        return await run_in_threadpool(send_email_safely, self.email_sender, to, subject, body)

    async def booking_created(self, snap: BookingSnapshot) -> None:
        await self._notify(
            snap.guest_id, RecipientRole.USER, NotificationType.BOOKING,
            "Booking Confirmed",
            f"Your booking at {snap.hotel_name} for {snap.rooms_label} {snap.stay_label} has been confirmed.",
        )
        await self._notify(
            snap.hotel_id, RecipientRole.HOTEL, NotificationType.BOOKING,
            "New Booking",
            f"New booking received for {snap.rooms_label} {snap.stay_label}.",
        )
        await self._email(
            snap.guest_email, f"Booking confirmed - {snap.hotel_name}",
            f"Hello {snap.guest_name},\n\nYour booking {snap.booking_id} at {snap.hotel_name} "
            f"for {snap.rooms_label} {snap.stay_label} is confirmed.\n"
            f"Total amount: {snap.total_amount}\n",
        )
        await self._email(
            snap.hotel_email, f"New booking {snap.booking_id}",
            f"{snap.guest_name} booked {snap.rooms_label} {snap.stay_label}.\n"
            f"Total amount: {snap.total_amount}\n",
        )

    async def payment_completed(self, snap: BookingSnapshot) -> None:
        await self._notify(
            snap.guest_id, RecipientRole.USER, NotificationType.PAYMENT,
            "Payment Successful",
            f"Your payment of {snap.total_amount} for your booking at {snap.hotel_name} was successful.",
        )
        await self._notify(
            snap.hotel_id, RecipientRole.HOTEL, NotificationType.PAYMENT,
            "Payment Received",
            f"Payment of {snap.total_amount} received from {snap.guest_name} for booking {snap.booking_id}.",
        )
        await self.payment_confirmation_emails(snap)

    async def payment_confirmation_emails(self, snap: BookingSnapshot) -> None:
        await self._email(
            snap.guest_email, f"Payment received - {snap.hotel_name}",
            f"Hello {snap.guest_name},\n\nWe received your payment of {snap.total_amount} "
            f"for booking {snap.booking_id} ({snap.rooms_label} {snap.stay_label}).\n",
        )
        await self._email(
            snap.hotel_email, f"Payment received for booking {snap.booking_id}",
            f"{snap.guest_name} paid {snap.total_amount} for {snap.rooms_label} {snap.stay_label}.\n",
        )

    async def payment_failed(self, snap: BookingSnapshot, reason: Optional[str] = None) -> None:
        message = f"Your payment for the booking at {snap.hotel_name} did not go through."
        if reason:
            message += f" Reason: {reason}"
        await self._notify(snap.guest_id, RecipientRole.USER, NotificationType.PAYMENT, "Payment Failed", message)

    async def refund_processed(self, snap: BookingSnapshot) -> None:
        await self._notify(
            snap.guest_id, RecipientRole.USER, NotificationType.PAYMENT,
            "Refund Processed",
            f"Your refund of {snap.total_amount} for the booking at {snap.hotel_name} has been processed.",
        )
        await self._notify(
            snap.hotel_id, RecipientRole.HOTEL, NotificationType.PAYMENT,
            "Refund Processed",
            f"A refund of {snap.total_amount} for booking {snap.booking_id} has been processed.",
        )
        await self._email(
            snap.guest_email, "Refund processed",
            f"Hello {snap.guest_name},\n\nYour refund of {snap.total_amount} for booking "
            f"{snap.booking_id} has been processed.\n",
        )
        await self._email(
            snap.hotel_email, f"Refund processed for booking {snap.booking_id}",
            f"A refund of {snap.total_amount} to {snap.guest_name} has been processed.\n",
        )

    async def refund_failed(self, snap: BookingSnapshot, reason: Optional[str] = None) -> None:
        logger.error(
            f"Refund failed for booking {snap.booking_id} ({reason or 'no reason given'}); "
            f"manual intervention required"
        )
        await self._notify(
            snap.guest_id, RecipientRole.USER, NotificationType.PAYMENT,
            "Refund Processing Issue",
            f"There was a problem processing the refund for your booking at {snap.hotel_name}. "
            f"Our team has been alerted and will follow up.",
        )
        await self._notify(
            snap.hotel_id, RecipientRole.HOTEL, NotificationType.PAYMENT,
            "Refund Processing Failed",
            f"The refund for booking {snap.booking_id} ({snap.guest_name}) failed and needs manual review.",
        )

    async def booking_cancelled(self, snap: BookingSnapshot, cancelled_by: str, refunded: bool) -> None:
        guest_message = f"Your booking at {snap.hotel_name} {snap.stay_label} has been cancelled."
        if cancelled_by == RecipientRole.HOTEL.value:
            guest_message = f"Your booking at {snap.hotel_name} {snap.stay_label} was cancelled by the hotel."
        if refunded:
            guest_message += " A refund has been processed."

        await self._notify(
            snap.guest_id, RecipientRole.USER, NotificationType.BOOKING, "Booking Cancelled", guest_message,
        )
        await self._email(
            snap.guest_email, f"Booking cancelled - {snap.hotel_name}",
            f"Hello {snap.guest_name},\n\n{guest_message}\n",
        )

        # The hotel already knows about cancellations it made itself
        if cancelled_by != RecipientRole.HOTEL.value:
            reason = snap.cancellation_reason or "Not specified"
            hotel_message = (
                f"A booking from {snap.guest_name} for {snap.rooms_label} has been cancelled. "
                f"Reason: {reason}"
            )
            await self._notify(
                snap.hotel_id, RecipientRole.HOTEL, NotificationType.BOOKING, "Booking Cancelled", hotel_message,
            )
            await self._email(snap.hotel_email, f"Booking {snap.booking_id} cancelled", hotel_message + "\n")
