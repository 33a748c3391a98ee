"""
Booking Lifecycle Service

Owns every state change of a booking and keeps three things consistent:
the booking row, the inventory ledger, and the mirror of the provider's
payment state.

Rules:
- Booking row and ledger change in the same DB transaction.
- Payment-status transitions are conditional UPDATEs (compare-and-set on
  the current status). Only the caller whose UPDATE changed the row
  dispatches notifications, so webhook and poll races cannot double-notify.
- Notifications / emails are scheduled after commit and never affect the
  outcome of the request.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload
from sqlalchemy.orm.exc import StaleDataError

from ..config import settings
from ..errors import BookingError, ConflictError, NotFoundError, RefundError, ValidationError
from ..models.booking import Booking, BookingStatus, CancelledBy, PaymentOption, PaymentStatus
from ..models.webhook_event import WebhookEventLog, WebhookEventStatus
from ..schemas.booking import BookingCreate
from ..utils.db_helpers import acquire_row_lock
from ..utils.logging_config import get_logger
from ..utils.metrics import (
    bookings_cancelled_total,
    bookings_created_total,
    payment_transitions_total,
    record_webhook_event,
)
from ..utils.security import Principal
from .background import BackgroundDispatcher
from .booking_notifications import BookingNotifier, BookingSnapshot
from .directory import get_guest, get_hotel
from .inventory_ledger import InventoryLedger
from .payment_gateway import EventKind, GatewayEvent, IntentHandle, PaymentGateway, PaymentState

logger = get_logger(__name__)


def _enum_filter(value: Optional[str], enum_cls, field: str) -> Optional[str]:
    if value is None or value == "":
        return None
    allowed = [e.value for e in enum_cls]
    if value not in allowed:
        raise ValidationError(f"Invalid {field} filter '{value}'", context={"allowed": allowed})
    return value


class BookingService:

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        scheduler: Optional[BackgroundDispatcher] = None,
        notifier: Optional[BookingNotifier] = None,
        ledger: Optional[InventoryLedger] = None,
        enforce_capacity: Optional[bool] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.scheduler = scheduler or BackgroundDispatcher()
        self.notifier = notifier or BookingNotifier()
        self.ledger = ledger or InventoryLedger(db)
        self.enforce_capacity = settings.enforce_room_capacity if enforce_capacity is None else enforce_capacity

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _commit(self) -> None:
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise ConflictError("Booking was modified concurrently, please retry")

    def _load(self, booking_id: str, lock: bool = False) -> Booking:
        if lock:
            booking = acquire_row_lock(self.db, Booking, Booking.id == booking_id)
        else:
            booking = self.db.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", context={"booking_id": booking_id})
        return booking

    def _load_for(self, principal: Principal, booking_id: str, roles: Tuple[str, ...] = ("user", "hotel", "admin"),
                  lock: bool = False) -> Booking:
        """Load a booking the caller may act on; anything else looks like a missing booking."""
        booking = self._load(booking_id, lock=lock)
        allowed = principal.role in roles and (
            principal.is_admin
            or (principal.is_user and booking.user_id == principal.subject_id)
            or (principal.is_hotel and booking.hotel_id == principal.subject_id)
        )
        if not allowed:
            if lock:
                self.db.rollback()
            raise NotFoundError("Booking not found", context={"booking_id": booking_id})
        return booking

    def _schedule(self, name: str, func, *args) -> None:
        self.scheduler.schedule(name, func, *args)

    def _validate_new_booking(self, data: BookingCreate) -> None:
        if data.check_out_date <= data.check_in_date:
            raise ValidationError("Check-out date must be after check-in date")
        if (data.check_out_date - data.check_in_date).days > settings.max_stay_nights:
            raise ValidationError(f"A stay cannot exceed {settings.max_stay_nights} nights")
        if data.room_quantity < 1:
            raise ValidationError("Room quantity must be at least 1", context={"room_quantity": data.room_quantity})
        if data.total_amount is None or data.total_amount <= 0:
            raise ValidationError("Total amount must be greater than zero", context={"total_amount": str(data.total_amount)})
        if not data.room_type:
            raise ValidationError("Room type is required")

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    def create_booking(self, guest_id: str, data: BookingCreate) -> Tuple[Booking, Optional[str]]:
        """
        Reserve inventory and, for online payment, open a payment intent.

        Returns (booking, client_secret). On any failure nothing is persisted:
        no booking row, no ledger change, no live intent.
        """
        self._validate_new_booking(data)
        guest = get_guest(self.db, guest_id)
        # Serializes concurrent creates for one hotel around the capacity check
        hotel = get_hotel(self.db, data.hotel_id, lock=True)

        if self.enforce_capacity:
            peak = self.ledger.peak_committed(hotel.id, data.check_in_date, data.check_out_date)
            if peak + data.room_quantity > hotel.total_rooms:
                self.db.rollback()
                raise ConflictError(
                    "Not enough rooms available for the selected dates",
                    context={
                        "available": max(hotel.total_rooms - peak, 0),
                        "requested": data.room_quantity,
                        "inventory_committed": False,
                    },
                )

        booking = Booking(
            user_id=guest.id,
            hotel_id=hotel.id,
            check_in_date=data.check_in_date,
            check_out_date=data.check_out_date,
            room_type=data.room_type,
            room_quantity=data.room_quantity,
            total_amount=data.total_amount,
            payment_option=data.payment_option.value,
            payment_status=PaymentStatus.PENDING.value,
            status=BookingStatus.ACTIVE.value,
        )
        self.db.add(booking)
        self.db.flush()
        self.ledger.commit(hotel.id, data.check_in_date, data.check_out_date, data.room_quantity)

        handle: Optional[IntentHandle] = None
        if booking.is_pay_online:
            try:
                handle = self.gateway.create_intent(data.total_amount, booking.id)
            except BookingError as e:
                self.db.rollback()
                e.context.update({"inventory_committed": False, "booking_persisted": False})
                raise
            booking.payment_intent_id = handle.external_ref
            booking.payment_client_secret = handle.client_secret

        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            if handle is not None:
                self.gateway.cancel_intent(handle.external_ref)
            raise

        self.db.refresh(booking)
        logger.booking_created(booking.id, booking.hotel_id, booking.room_quantity, booking.payment_option)
        bookings_created_total.inc(payment_option=booking.payment_option)

        self._schedule("booking_created", self.notifier.booking_created, BookingSnapshot.from_booking(booking))
        return booking, booking.payment_client_secret

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def _listing(self):
        return self.db.query(Booking).options(joinedload(Booking.hotel), joinedload(Booking.guest))

    def get_booking(self, principal: Principal, booking_id: str) -> Booking:
        return self._load_for(principal, booking_id)

    def list_guest_bookings(self, guest_id: str, status: Optional[str] = None) -> List[Booking]:
        query = self._listing().filter(Booking.user_id == guest_id)
        status = _enum_filter(status, BookingStatus, "status")
        if status:
            query = query.filter(Booking.status == status)
        return query.order_by(Booking.created_at.desc()).all()

    def list_all_bookings(self, status: Optional[str] = None, payment_status: Optional[str] = None) -> List[Booking]:
        query = self._listing()
        status = _enum_filter(status, BookingStatus, "status")
        payment_status = _enum_filter(payment_status, PaymentStatus, "payment_status")
        if status:
            query = query.filter(Booking.status == status)
        if payment_status:
            query = query.filter(Booking.payment_status == payment_status)
        return query.order_by(Booking.created_at.desc()).all()

    def list_hotel_bookings(self, hotel_id: str, status: Optional[str] = None,
                            payment_status: Optional[str] = None) -> List[Booking]:
        query = self._listing().filter(Booking.hotel_id == hotel_id)
        status = _enum_filter(status, BookingStatus, "status")
        payment_status = _enum_filter(payment_status, PaymentStatus, "payment_status")
        if status:
            query = query.filter(Booking.status == status)
        if payment_status:
            query = query.filter(Booking.payment_status == payment_status)
        return query.order_by(Booking.created_at.desc()).all()

    # ------------------------------------------------------------------
    # payment mirror
    # ------------------------------------------------------------------

    def _transition(self, booking_id: str, to_status: PaymentStatus, from_statuses: List[PaymentStatus],
                    source: str, **values) -> bool:
        """Compare-and-set on payment_status. True only for the caller that changed the row."""
        result = self.db.execute(
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.payment_option == PaymentOption.PAY_ONLINE.value,
                Booking.payment_status.in_([s.value for s in from_statuses]),
            )
            .values(
                payment_status=to_status.value,
                version=Booking.version + 1,
                updated_at=datetime.utcnow(),
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        changed = result.rowcount == 1
        if changed:
            payment_transitions_total.inc(to_status=to_status.value, source=source)
            logger.payment_status_changed(
                booking_id, "/".join(s.value for s in from_statuses), to_status.value, source
            )
        return changed

    def _apply_payment_succeeded(self, booking_id: str, source: str) -> bool:
        changed = self._transition(
            booking_id, PaymentStatus.COMPLETED, [PaymentStatus.PENDING, PaymentStatus.FAILED], source
        )
        if not changed:
            return False
        booking = self._load(booking_id)
        if booking.is_cancelled:
            # Paid after cancellation: money is captured but the stay is gone
            logger.error(
                f"Payment completed for cancelled booking {booking_id} ({booking.payment_intent_id}); "
                f"manual refund required"
            )
            return True
        self._schedule("payment_completed", self.notifier.payment_completed, BookingSnapshot.from_booking(booking))
        return True

    def _apply_payment_failed(self, booking_id: str, source: str, reason: Optional[str] = None) -> bool:
        changed = self._transition(booking_id, PaymentStatus.FAILED, [PaymentStatus.PENDING], source)
        if changed:
            booking = self._load(booking_id)
            if not booking.is_cancelled:
                self._schedule("payment_failed", self.notifier.payment_failed,
                               BookingSnapshot.from_booking(booking), reason)
        return changed

    def _apply_refunded(self, booking_id: str, source: str, refund_id: Optional[str] = None) -> bool:
        values = {"refund_id": refund_id} if refund_id else {}
        changed = self._transition(booking_id, PaymentStatus.REFUNDED, [PaymentStatus.COMPLETED], source, **values)
        if changed:
            booking = self._load(booking_id)
            if not booking.is_cancelled:
                logger.warning(f"Refund recorded for active booking {booking_id}; booking stays active")
            self._schedule("refund_processed", self.notifier.refund_processed, BookingSnapshot.from_booking(booking))
        return changed

    def check_payment_status(self, principal: Principal, booking_id: str) -> Booking:
        """
        Refresh the payment mirror from the provider.

        Safe to call repeatedly: the Completed transition and its
        notifications happen at most once.
        """
        booking = self._load_for(principal, booking_id, roles=("user", "admin"))
        if booking.is_cancelled or not booking.is_pay_online or not booking.payment_intent_id:
            return booking
        if booking.payment_status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
            return booking

        state = self.gateway.retrieve_status(booking.payment_intent_id)
        if state == PaymentState.SUCCEEDED:
            self._apply_payment_succeeded(booking.id, source="poll")
        elif state == PaymentState.FAILED:
            self._apply_payment_failed(booking.id, source="poll")

        self.db.expire_all()
        return self._load(booking_id)

    # ------------------------------------------------------------------
    # webhooks
    # ------------------------------------------------------------------

    def _find_event_booking(self, event: GatewayEvent) -> Optional[Booking]:
        booking = None
        if event.external_ref:
            booking = self.db.query(Booking).filter(Booking.payment_intent_id == event.external_ref).first()
        if booking is None and event.booking_id:
            booking = self.db.get(Booking, event.booking_id)
        return booking

    def _refund_failure_alerted(self, event: GatewayEvent) -> bool:
        """True when another event already raised the alert for this refund."""
        if not event.refund_id:
            return False
        return self.db.query(WebhookEventLog.id).filter(
            WebhookEventLog.provider == "stripe",
            WebhookEventLog.event_id != event.event_id,
            WebhookEventLog.refund_id == event.refund_id,
            WebhookEventLog.result_action == "refund_failed",
        ).first() is not None

    def _apply_event(self, event: GatewayEvent) -> Tuple[str, Optional[str]]:
        if event.kind == EventKind.IGNORED:
            return "ignored", None

        booking = self._find_event_booking(event)
        if booking is None:
            logger.warning(f"No booking for {event.raw_type} event {event.event_id} (ref {event.external_ref})")
            return "unknown_booking", None

        if event.external_ref and booking.payment_intent_id != event.external_ref:
            # Intent was detached (reverted to pay later) before the event arrived
            if event.kind == EventKind.PAYMENT_SUCCEEDED:
                logger.error(
                    f"Payment {event.external_ref} succeeded but booking {booking.id} no longer uses it; "
                    f"manual refund required"
                )
            return "detached_intent", booking.id

        if event.kind == EventKind.PAYMENT_SUCCEEDED:
            changed = self._apply_payment_succeeded(booking.id, source="webhook")
            return ("completed" if changed else "noop"), booking.id

        if event.kind == EventKind.PAYMENT_FAILED:
            changed = self._apply_payment_failed(booking.id, source="webhook", reason=event.failure_reason)
            return ("failed" if changed else "noop"), booking.id

        if event.kind == EventKind.REFUND_SUCCEEDED:
            changed = self._apply_refunded(booking.id, source="webhook", refund_id=event.refund_id)
            return ("refunded" if changed else "noop"), booking.id

        if event.kind == EventKind.REFUND_FAILED:
            if self._refund_failure_alerted(event):
                return "noop", booking.id
            self._schedule("refund_failed", self.notifier.refund_failed,
                           BookingSnapshot.from_booking(booking), event.failure_reason)
            return "refund_failed", booking.id

        return "ignored", booking.id

    def handle_gateway_event(self, event: GatewayEvent, payload_hash: Optional[str] = None) -> dict:
        """
        Apply a verified provider event exactly once per event id.

        Redeliveries of an already processed event return duplicate=True
        without touching state. A failed attempt is retried on redelivery.
        """
        log = self.db.query(WebhookEventLog).filter(
            WebhookEventLog.provider == "stripe",
            WebhookEventLog.event_id == event.event_id,
        ).first()

        if log is not None and log.status in (WebhookEventStatus.PROCESSED.value, WebhookEventStatus.IGNORED.value):
            record_webhook_event(event.raw_type, "duplicate")
            logger.info(f"Duplicate webhook event {event.event_id} ({event.raw_type}) skipped")
            return {"duplicate": True, "action": log.result_action, "booking_id": log.booking_id}

        if log is None:
            log = WebhookEventLog(
                provider="stripe",
                event_id=event.event_id,
                event_type=event.raw_type,
                payload_hash=payload_hash,
                refund_id=event.refund_id,
                status=WebhookEventStatus.RECEIVED.value,
            )
            self.db.add(log)
            try:
                self.db.commit()
            except IntegrityError:
                # Concurrent delivery of the same event won the insert
                self.db.rollback()
                record_webhook_event(event.raw_type, "duplicate")
                return {"duplicate": True, "action": None, "booking_id": None}
        log_id = log.id

        try:
            action, booking_id = self._apply_event(event)
        except Exception as e:
            self.db.rollback()
            failed = self.db.get(WebhookEventLog, log_id)
            failed.status = WebhookEventStatus.FAILED.value
            failed.error_message = str(e)[:2000]
            self.db.commit()
            record_webhook_event(event.raw_type, "failed")
            logger.error(f"Webhook event {event.event_id} ({event.raw_type}) failed: {e}")
            raise

        done = self.db.get(WebhookEventLog, log_id)
        ignored = action in ("ignored", "unknown_booking")
        done.status = WebhookEventStatus.IGNORED.value if ignored else WebhookEventStatus.PROCESSED.value
        done.result_action = action
        done.booking_id = booking_id
        done.error_message = None
        done.processed_at = datetime.utcnow()
        self.db.commit()
        record_webhook_event(event.raw_type, done.status)
        return {"duplicate": False, "action": action, "booking_id": booking_id}

    # ------------------------------------------------------------------
    # cancel
    # ------------------------------------------------------------------

    def cancel_booking(self, principal: Principal, booking_id: str, reason: Optional[str] = None) -> Booking:
        """
        Cancel a booking on behalf of its guest, its hotel, or an admin.

        A completed online payment is refunded first; if the refund fails the
        booking is left exactly as it was.
        """
        booking = self._load_for(principal, booking_id, lock=True)
        if booking.is_cancelled:
            self.db.rollback()
            raise ConflictError("Booking is already cancelled", context={"booking_id": booking_id})

        refunded = False
        if booking.is_pay_online and booking.payment_intent_id:
            if booking.payment_status == PaymentStatus.COMPLETED.value:
                try:
                    result = self.gateway.refund(booking.payment_intent_id)
                except RefundError as e:
                    self.db.rollback()
                    e.context.update({"booking_cancelled": False, "inventory_released": False})
                    raise
                refunded = True
                booking.refund_id = result.refund_id
                booking.payment_status = PaymentStatus.REFUNDED.value
            elif booking.payment_status in (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value):
                self.gateway.cancel_intent(booking.payment_intent_id)

        self.ledger.release(booking.hotel_id, booking.check_in_date, booking.check_out_date, booking.room_quantity)

        booking.status = BookingStatus.CANCELLED.value
        booking.cancelled_at = datetime.utcnow()
        booking.cancelled_by = CancelledBy(principal.role).value
        booking.cancellation_reason = reason or None
        try:
            self._commit()
        except Exception:
            if refunded:
                logger.error(
                    f"Refund {booking.refund_id} issued for booking {booking_id} but cancellation "
                    f"was not saved; manual reconciliation required"
                )
            raise

        self.db.refresh(booking)
        logger.booking_cancelled(booking.id, principal.role, refunded)
        bookings_cancelled_total.inc(cancelled_by=principal.role, refunded=str(refunded).lower())

        self._schedule("booking_cancelled", self.notifier.booking_cancelled,
                       BookingSnapshot.from_booking(booking), principal.role, refunded)
        return booking

    # ------------------------------------------------------------------
    # payment option conversion
    # ------------------------------------------------------------------

    def convert_to_pay_online(self, principal: Principal, booking_id: str) -> Tuple[Booking, Optional[str]]:
        booking = self._load_for(principal, booking_id, roles=("user",), lock=True)
        if booking.is_cancelled:
            self.db.rollback()
            raise ConflictError("Cancelled bookings cannot be paid online")
        if booking.is_pay_online:
            self.db.rollback()
            raise ConflictError("Booking is already set to pay online")
        if booking.payment_status == PaymentStatus.COMPLETED.value:
            self.db.rollback()
            raise ConflictError("Payment is already completed")
        if booking.payment_status == PaymentStatus.REFUNDED.value:
            self.db.rollback()
            raise ConflictError("Payment was refunded", context={"payment_status": booking.payment_status})
        if booking.total_amount is None or Decimal(booking.total_amount) <= 0:
            self.db.rollback()
            raise ValidationError("Booking amount is invalid for online payment")

        try:
            handle = self.gateway.create_intent(booking.total_amount, booking.id)
        except BookingError:
            self.db.rollback()
            raise

        booking.payment_option = PaymentOption.PAY_ONLINE.value
        booking.payment_intent_id = handle.external_ref
        booking.payment_client_secret = handle.client_secret
        if booking.payment_status == PaymentStatus.FAILED.value:
            booking.payment_status = PaymentStatus.PENDING.value
        try:
            self._commit()
        except Exception:
            self.gateway.cancel_intent(handle.external_ref)
            raise

        self.db.refresh(booking)
        logger.info(f"Booking {booking.id} converted to pay online ({handle.external_ref})")
        return booking, booking.payment_client_secret

    def revert_to_pay_later(self, principal: Principal, booking_id: str) -> Booking:
        booking = self._load_for(principal, booking_id, roles=("user",), lock=True)
        if booking.is_cancelled:
            self.db.rollback()
            raise ConflictError("Cancelled bookings cannot change payment option")
        if not booking.is_pay_online:
            self.db.rollback()
            raise ConflictError("Booking is already set to pay later")
        if booking.payment_status == PaymentStatus.COMPLETED.value:
            self.db.rollback()
            raise ConflictError("Payment is already completed")
        if booking.payment_status == PaymentStatus.REFUNDED.value:
            self.db.rollback()
            raise ConflictError("Payment was refunded", context={"payment_status": booking.payment_status})

        if booking.payment_intent_id:
            self.gateway.cancel_intent(booking.payment_intent_id)

        booking.payment_option = PaymentOption.PAY_LATER.value
        booking.payment_intent_id = None
        booking.payment_client_secret = None
        if booking.payment_status == PaymentStatus.FAILED.value:
            booking.payment_status = PaymentStatus.PENDING.value
        self._commit()

        self.db.refresh(booking)
        logger.info(f"Booking {booking.id} reverted to pay later")
        return booking

    # ------------------------------------------------------------------
    # admin
    # ------------------------------------------------------------------

    def resend_payment_confirmation(self, principal: Principal, booking_id: str) -> Booking:
        booking = self._load_for(principal, booking_id, roles=("admin",))
        if booking.payment_status != PaymentStatus.COMPLETED.value:
            raise ConflictError("Payment is not completed", context={"payment_status": booking.payment_status})
        self._schedule("payment_confirmation_emails", self.notifier.payment_confirmation_emails,
                       BookingSnapshot.from_booking(booking))
        return booking
