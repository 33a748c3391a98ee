"""
Stripe Webhook Tests

Test Coverage:
1. payment_intent.succeeded completes the booking and notifies once
2. Redelivered event is a no-op (duplicate=True)
3. Webhook and poll racing: a single Completed transition
4. Unknown booking / unhandled type acknowledged and ignored
5. Refund events mirror Refunded; refund failure only alerts, once per refund
6. Bad signature -> 400 with nothing recorded
7. Processing failure -> 500, redelivery then succeeds
"""

import json
import pytest

from booknow.models import Booking, Notification, WebhookEventLog
from booknow.services.booking_service import BookingService
from booknow.services.payment_gateway import parse_event

from conftest import FakePaymentGateway, auth_headers, mark_paid, principal, stripe_event


def intent_event(event_id, event_type, booking):
    return parse_event(stripe_event(event_id, event_type, {
        "id": booking.payment_intent_id,
        "object": "payment_intent",
        "metadata": {"booking_id": booking.id},
    }))


@pytest.fixture
def online_booking(service, guest, make_booking_data):
    booking, _ = service.create_booking(guest.id, make_booking_data(payment_option="pay_online"))
    return booking


class TestHandleGatewayEvent:

    def test_payment_succeeded(self, db, service, scheduler, online_booking):
        result = service.handle_gateway_event(intent_event("evt_1", "payment_intent.succeeded", online_booking))

        assert result == {"duplicate": False, "action": "completed", "booking_id": online_booking.id}
        assert db.get(Booking, online_booking.id).payment_status == "Completed"
        assert scheduler.scheduled_names.count("payment_completed") == 1

        log = db.query(WebhookEventLog).filter(WebhookEventLog.event_id == "evt_1").one()
        assert log.status == "processed"
        assert log.result_action == "completed"

    def test_redelivery_is_duplicate(self, db, service, scheduler, online_booking):
        event = intent_event("evt_1", "payment_intent.succeeded", online_booking)
        service.handle_gateway_event(event)

        again = service.handle_gateway_event(event)

        assert again["duplicate"] is True
        assert again["action"] == "completed"
        assert scheduler.scheduled_names.count("payment_completed") == 1
        assert db.query(WebhookEventLog).count() == 1

    def test_webhook_after_poll_is_noop(self, db, service, gateway, scheduler, guest, online_booking):
        gateway.succeed(online_booking.payment_intent_id)
        service.check_payment_status(principal("user", guest.id), online_booking.id)

        result = service.handle_gateway_event(intent_event("evt_2", "payment_intent.succeeded", online_booking))

        assert result["action"] == "noop"
        assert scheduler.scheduled_names.count("payment_completed") == 1

    def test_payment_failed(self, db, service, scheduler, online_booking):
        event = parse_event(stripe_event("evt_3", "payment_intent.payment_failed", {
            "id": online_booking.payment_intent_id,
            "last_payment_error": {"message": "Your card was declined."},
        }))

        result = service.handle_gateway_event(event)

        assert result["action"] == "failed"
        assert db.get(Booking, online_booking.id).payment_status == "Failed"
        assert "payment_failed" in scheduler.scheduled_names

    def test_unknown_booking_is_ignored(self, db, service):
        event = parse_event(stripe_event("evt_4", "payment_intent.succeeded", {"id": "pi_unknown", "metadata": {}}))

        result = service.handle_gateway_event(event)

        assert result["action"] == "unknown_booking"
        assert db.query(WebhookEventLog).one().status == "ignored"

    def test_unhandled_type_is_ignored(self, db, service):
        event = parse_event(stripe_event("evt_5", "customer.created", {"id": "cus_1"}))
        assert service.handle_gateway_event(event)["action"] == "ignored"

    def test_detached_intent_does_not_change_booking(self, db, service, guest, online_booking):
        old_ref = online_booking.payment_intent_id
        service.revert_to_pay_later(principal("user", guest.id), online_booking.id)

        event = parse_event(stripe_event("evt_6", "payment_intent.succeeded", {
            "id": old_ref, "metadata": {"booking_id": online_booking.id},
        }))
        result = service.handle_gateway_event(event)

        assert result["action"] == "detached_intent"
        assert db.get(Booking, online_booking.id).payment_status == "Pending"

    def test_charge_refunded_mirrors_refund(self, db, service, scheduler, online_booking):
        mark_paid(db, online_booking.id)
        event = parse_event(stripe_event("evt_7", "charge.refunded", {
            "id": "ch_1", "payment_intent": online_booking.payment_intent_id,
        }))

        result = service.handle_gateway_event(event)

        assert result["action"] == "refunded"
        assert db.get(Booking, online_booking.id).payment_status == "Refunded"
        assert "refund_processed" in scheduler.scheduled_names

    def test_refund_webhook_after_cancel_refund_is_noop(self, db, service, guest, online_booking):
        mark_paid(db, online_booking.id)
        service.cancel_booking(principal("user", guest.id), online_booking.id)

        event = parse_event(stripe_event("evt_8", "refund.updated", {
            "id": "re_test_1", "payment_intent": online_booking.payment_intent_id, "status": "succeeded",
        }))
        assert service.handle_gateway_event(event)["action"] == "noop"

    def test_refund_failed_alerts_without_state_change(self, db, service, scheduler, guest, online_booking):
        mark_paid(db, online_booking.id)
        service.cancel_booking(principal("user", guest.id), online_booking.id)

        event = parse_event(stripe_event("evt_9", "refund.failed", {
            "id": "re_test_1", "payment_intent": online_booking.payment_intent_id,
            "status": "failed", "failure_reason": "lost_or_stolen_card",
        }))
        result = service.handle_gateway_event(event)

        assert result["action"] == "refund_failed"
        assert db.get(Booking, online_booking.id).payment_status == "Refunded"
        assert scheduler.scheduled_names[-1] == "refund_failed"

    def test_refund_failure_alerted_once_per_refund(self, db, service, scheduler, guest, online_booking):
        mark_paid(db, online_booking.id)
        service.cancel_booking(principal("user", guest.id), online_booking.id)
        refund = {"id": "re_test_1", "payment_intent": online_booking.payment_intent_id, "status": "failed"}

        first = service.handle_gateway_event(parse_event(stripe_event("evt_11", "refund.failed", refund)))
        second = service.handle_gateway_event(parse_event(stripe_event("evt_12", "refund.updated", refund)))

        assert first["action"] == "refund_failed"
        assert second["action"] == "noop"
        assert scheduler.scheduled_names.count("refund_failed") == 1
        assert db.query(WebhookEventLog).filter(WebhookEventLog.refund_id == "re_test_1").count() == 2

    def test_distinct_refunds_each_alert(self, db, service, scheduler, guest, online_booking):
        mark_paid(db, online_booking.id)
        service.cancel_booking(principal("user", guest.id), online_booking.id)
        ref = online_booking.payment_intent_id

        for event_id, refund_id in (("evt_13", "re_a"), ("evt_14", "re_b")):
            service.handle_gateway_event(parse_event(stripe_event(event_id, "refund.failed", {
                "id": refund_id, "payment_intent": ref, "status": "failed",
            })))

        assert scheduler.scheduled_names.count("refund_failed") == 2

    def test_payment_after_cancel_is_recorded_without_notifications(self, db, service, scheduler, guest,
                                                                   online_booking):
        service.cancel_booking(principal("user", guest.id), online_booking.id)

        result = service.handle_gateway_event(intent_event("evt_15", "payment_intent.succeeded", online_booking))

        stored = db.get(Booking, online_booking.id)
        assert result["action"] == "completed"
        assert stored.status == "Cancelled"
        assert stored.payment_status == "Completed"
        assert "payment_completed" not in scheduler.scheduled_names

    def test_failed_processing_is_retried(self, db, service, online_booking, monkeypatch):
        event = intent_event("evt_10", "payment_intent.succeeded", online_booking)

        def boom(self, event):
            raise RuntimeError("database hiccup")

        monkeypatch.setattr(BookingService, "_apply_event", boom)
        with pytest.raises(RuntimeError):
            service.handle_gateway_event(event)

        log = db.query(WebhookEventLog).one()
        assert log.status == "failed"
        assert "database hiccup" in log.error_message

        monkeypatch.undo()
        result = service.handle_gateway_event(event)

        assert result["action"] == "completed"
        db.expire_all()
        assert db.query(WebhookEventLog).one().status == "processed"


class TestWebhookEndpoint:

    def _post(self, client, body, signature=FakePaymentGateway.VALID_SIGNATURE):
        headers = {"Content-Type": "application/json"}
        if signature is not None:
            headers["Stripe-Signature"] = signature
        return client.post("/api/payments/webhook", content=json.dumps(body).encode(), headers=headers)

    def _create_online(self, client, guest, hotel, stay):
        check_in, check_out = stay
        response = client.post(
            "/api/bookings",
            json={
                "hotel_id": hotel.id,
                "check_in_date": check_in.isoformat(),
                "check_out_date": check_out.isoformat(),
                "room_type": "Deluxe",
                "room_quantity": 1,
                "total_amount": "1800.00",
                "payment_option": "pay_online",
            },
            headers=auth_headers("user", guest.id),
        )
        assert response.status_code == 201
        return response.json()["booking"]

    def test_success_and_redelivery(self, db, client, guest, hotel, stay):
        booking = self._create_online(client, guest, hotel, stay)
        body = stripe_event("evt_api_1", "payment_intent.succeeded", {
            "id": booking["payment_intent_id"], "metadata": {"booking_id": booking["id"]},
        })

        first = self._post(client, body)
        second = self._post(client, body)

        assert first.status_code == 200
        assert first.json()["action"] == "completed"
        assert second.status_code == 200
        assert second.json()["duplicate"] is True

        db.expire_all()
        assert db.get(Booking, booking["id"]).payment_status == "Completed"
        titles = [n.title for n in db.query(Notification).filter(Notification.recipient_id == guest.id)]
        assert titles.count("Payment Successful") == 1

    def test_bad_signature_rejected(self, db, client):
        body = stripe_event("evt_api_2", "payment_intent.succeeded", {"id": "pi_x"})

        response = self._post(client, body, signature="t=1,v1=forged")

        assert response.status_code == 400
        assert response.json()["code"] == "signature_invalid"
        assert db.query(WebhookEventLog).count() == 0

    def test_missing_signature_rejected(self, db, client):
        response = self._post(client, stripe_event("evt_api_3", "charge.succeeded", {"id": "ch"}), signature=None)
        assert response.status_code == 400

    def test_unknown_booking_acknowledged(self, db, client):
        body = stripe_event("evt_api_4", "payment_intent.succeeded", {"id": "pi_nobody", "metadata": {}})

        response = self._post(client, body)

        assert response.status_code == 200
        assert response.json()["action"] == "unknown_booking"

    def test_processing_failure_returns_500(self, db, client, guest, hotel, stay, monkeypatch):
        booking = self._create_online(client, guest, hotel, stay)
        body = stripe_event("evt_api_5", "payment_intent.succeeded", {"id": booking["payment_intent_id"]})

        def boom(self, event):
            raise RuntimeError("transient")

        monkeypatch.setattr(BookingService, "_apply_event", boom)
        assert self._post(client, body).status_code == 500

        monkeypatch.undo()
        retry = self._post(client, body)
        assert retry.status_code == 200
        assert retry.json()["action"] == "completed"
