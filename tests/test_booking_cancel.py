"""
Cancellation Tests

Test Coverage:
1. Pay-later cancel releases inventory and records who cancelled
2. Completed online payment is refunded before cancelling
3. Refund failure leaves booking and inventory untouched
4. Pending online payment: intent voided, no refund
5. Double cancel rejected, refund issued once
6. Guest / hotel / admin authorization
7. Cancellation notifications per party
"""

import asyncio
import pytest

from booknow.errors import ConflictError, NotFoundError, RefundError
from booknow.models import Booking, Notification
from booknow.services.booking_service import BookingService
from booknow.services.inventory_ledger import InventoryLedger

from conftest import mark_paid, principal


def committed(db, booking):
    return InventoryLedger(db).peak_committed(booking.hotel_id, booking.check_in_date, booking.check_out_date)


class TestCancelPayLater:

    def test_guest_cancel(self, db, service, scheduler, guest, make_booking_data):
        booking, _ = service.create_booking(guest.id, make_booking_data())
        assert committed(db, booking) == 2

        cancelled = service.cancel_booking(principal("user", guest.id), booking.id, reason="Change of plans")

        assert cancelled.status == "Cancelled"
        assert cancelled.cancelled_by == "user"
        assert cancelled.cancellation_reason == "Change of plans"
        assert cancelled.cancelled_at is not None
        assert cancelled.payment_status == "Pending"
        assert committed(db, booking) == 0
        assert scheduler.scheduled_names == ["booking_created", "booking_cancelled"]

    def test_double_cancel_rejected(self, db, service, guest, make_booking_data):
        booking, _ = service.create_booking(guest.id, make_booking_data())
        service.cancel_booking(principal("user", guest.id), booking.id)

        with pytest.raises(ConflictError):
            service.cancel_booking(principal("user", guest.id), booking.id)

    def test_other_guest_cannot_cancel(self, db, service, guest, other_guest, make_booking_data):
        booking, _ = service.create_booking(guest.id, make_booking_data())

        with pytest.raises(NotFoundError):
            service.cancel_booking(principal("user", other_guest.id), booking.id)
        assert db.get(Booking, booking.id).status == "Active"

    def test_unknown_booking(self, service, guest):
        with pytest.raises(NotFoundError):
            service.cancel_booking(principal("user", guest.id), "no-such-booking")


class TestCancelPayOnline:

    def test_completed_payment_is_refunded(self, db, service, gateway, guest, make_booking_data):
        booking, _ = service.create_booking(guest.id, make_booking_data(payment_option="pay_online"))
        mark_paid(db, booking.id)

        cancelled = service.cancel_booking(principal("user", guest.id), booking.id)

        assert gateway.refunded == [booking.payment_intent_id]
        assert cancelled.status == "Cancelled"
        assert cancelled.payment_status == "Refunded"
        assert cancelled.refund_id == "re_test_1"
        assert committed(db, booking) == 0

    def test_refund_failure_changes_nothing(self, db, service, gateway, scheduler, guest, make_booking_data):
        booking, _ = service.create_booking(guest.id, make_booking_data(payment_option="pay_online"))
        mark_paid(db, booking.id)
        gateway.fail_refund = True

        with pytest.raises(RefundError) as exc:
            service.cancel_booking(principal("user", guest.id), booking.id)

        assert exc.value.context["booking_cancelled"] is False
        assert exc.value.context["inventory_released"] is False
        db.expire_all()
        stored = db.get(Booking, booking.id)
        assert stored.status == "Active"
        assert stored.payment_status == "Completed"
        assert committed(db, stored) == 2
        assert "booking_cancelled" not in scheduler.scheduled_names

    def test_refund_issued_once(self, db, service, gateway, guest, make_booking_data):
        booking, _ = service.create_booking(guest.id, make_booking_data(payment_option="pay_online"))
        mark_paid(db, booking.id)

        service.cancel_booking(principal("user", guest.id), booking.id)
        with pytest.raises(ConflictError):
            service.cancel_booking(principal("admin", "admin-1"), booking.id)

        assert len(gateway.refunded) == 1

    def test_pending_payment_intent_is_voided(self, db, service, gateway, guest, make_booking_data):
        booking, _ = service.create_booking(guest.id, make_booking_data(payment_option="pay_online"))

        cancelled = service.cancel_booking(principal("user", guest.id), booking.id)

        assert gateway.refunded == []
        assert gateway.cancelled == [booking.payment_intent_id]
        assert cancelled.payment_status == "Pending"

    def test_hotel_cancel_also_refunds(self, db, service, gateway, guest, hotel, make_booking_data):
        booking, _ = service.create_booking(guest.id, make_booking_data(payment_option="pay_online"))
        mark_paid(db, booking.id)

        cancelled = service.cancel_booking(principal("hotel", hotel.id), booking.id, reason="Overbooked")

        assert cancelled.cancelled_by == "hotel"
        assert cancelled.payment_status == "Refunded"

    def test_admin_cancel(self, db, service, guest, make_booking_data):
        booking, _ = service.create_booking(guest.id, make_booking_data())
        cancelled = service.cancel_booking(principal("admin", "admin-1"), booking.id)
        assert cancelled.cancelled_by == "admin"


class TestCancelNotifications:

    def _service(self, db, gateway, scheduler):
        return BookingService(db, gateway, scheduler=scheduler)

    def test_guest_cancel_notifies_both(self, db, gateway, scheduler, guest, hotel, make_booking_data,
                                        email_outbox):
        service = self._service(db, gateway, scheduler)
        booking, _ = service.create_booking(guest.id, make_booking_data(payment_option="pay_online"))
        mark_paid(db, booking.id)
        scheduler.pending.clear()

        service.cancel_booking(principal("user", guest.id), booking.id, reason="Flight cancelled")
        asyncio.run(scheduler.run_pending())

        guest_note = db.query(Notification).filter(Notification.recipient_id == guest.id).one()
        hotel_note = db.query(Notification).filter(Notification.recipient_id == hotel.id).one()
        assert guest_note.title == "Booking Cancelled"
        assert guest_note.message.endswith("A refund has been processed.")
        assert "Reason: Flight cancelled" in hotel_note.message
        assert "2 Deluxe room(s)" in hotel_note.message
        assert sorted(to for to, _, _ in email_outbox) == sorted([guest.email, hotel.email])

    def test_hotel_cancel_notifies_guest_only(self, db, gateway, scheduler, guest, hotel, make_booking_data,
                                              email_outbox):
        service = self._service(db, gateway, scheduler)
        booking, _ = service.create_booking(guest.id, make_booking_data())
        scheduler.pending.clear()

        service.cancel_booking(principal("hotel", hotel.id), booking.id)
        asyncio.run(scheduler.run_pending())

        assert db.query(Notification).filter(Notification.recipient_id == guest.id).count() == 1
        assert db.query(Notification).filter(Notification.recipient_id == hotel.id).count() == 0
        assert [to for to, _, _ in email_outbox] == [guest.email]

    def test_missing_reason_reads_not_specified(self, db, gateway, scheduler, guest, hotel, make_booking_data):
        service = self._service(db, gateway, scheduler)
        booking, _ = service.create_booking(guest.id, make_booking_data())
        scheduler.pending.clear()

        service.cancel_booking(principal("user", guest.id), booking.id)
        asyncio.run(scheduler.run_pending())

        hotel_note = db.query(Notification).filter(Notification.recipient_id == hotel.id).one()
        assert hotel_note.message.endswith("Reason: Not specified")
