"""
Shared fixtures.

Every test runs against a fresh in-memory SQLite database and a fake
payment gateway; nothing talks to Stripe or SMTP.
"""

import os
import sys
import json
from datetime import date, timedelta
from decimal import Decimal

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["SMTP_HOST"] = ""
os.environ["ENFORCE_ROOM_CAPACITY"] = "true"

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from fastapi.testclient import TestClient

from booknow.database import SessionLocal, create_tables, drop_tables
from booknow.errors import GatewayError, InvalidAmount, RefundError, SignatureInvalid
from booknow.main import app
from booknow.models import Guest, Hotel
from booknow.services.background import BackgroundDispatcher
from booknow.services.email_service import get_email_sender
from booknow.services.payment_gateway import (
    IntentHandle,
    PaymentGateway,
    PaymentState,
    RefundResult,
    get_payment_gateway,
    parse_event,
)
from booknow.utils.rate_limiter import limiter
from booknow.utils.security import Principal, create_access_token

limiter.enabled = False


class FakePaymentGateway(PaymentGateway):
    """In-memory stand-in for Stripe."""

    VALID_SIGNATURE = "t=1,v1=valid"

    def __init__(self):
        self.intents = {}
        self.created = []
        self.cancelled = []
        self.refunded = []
        self.fail_create = False
        self.fail_refund = False
        self.fail_retrieve = False

    def create_intent(self, amount, booking_id):
        if amount is None or Decimal(str(amount)) <= 0:
            raise InvalidAmount("Payment amount must be greater than zero")
        if self.fail_create:
            raise GatewayError("Payment provider could not create a payment")
        ref = f"pi_test_{len(self.created) + 1}"
        self.intents[ref] = PaymentState.PENDING
        self.created.append((ref, booking_id, Decimal(str(amount))))
        return IntentHandle(external_ref=ref, client_secret=f"{ref}_secret_abc")

    def retrieve_status(self, external_ref):
        if self.fail_retrieve:
            raise GatewayError("Payment provider could not report payment status")
        return self.intents.get(external_ref, PaymentState.PENDING)

    def cancel_intent(self, external_ref):
        self.cancelled.append(external_ref)
        return True

    def refund(self, external_ref):
        if self.fail_refund:
            raise RefundError("Refund could not be processed")
        self.refunded.append(external_ref)
        return RefundResult(refund_id=f"re_test_{len(self.refunded)}", status="succeeded")

    def verify_and_parse(self, raw_payload, signature_header):
        if signature_header != self.VALID_SIGNATURE:
            raise SignatureInvalid("Invalid webhook signature")
        return parse_event(json.loads(raw_payload))

    # test helper
    def succeed(self, external_ref):
        self.intents[external_ref] = PaymentState.SUCCEEDED


def stripe_event(event_id, event_type, obj):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


@pytest.fixture
def db():
    create_tables()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        drop_tables()


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def scheduler():
    return BackgroundDispatcher()


@pytest.fixture
def guest(db):
    g = Guest(name="Asha Rao", email="asha@example.com", phone="9000000001")
    db.add(g)
    db.commit()
    db.refresh(g)
    return g


@pytest.fixture
def other_guest(db):
    g = Guest(name="Ravi Menon", email="ravi@example.com")
    db.add(g)
    db.commit()
    db.refresh(g)
    return g


@pytest.fixture
def hotel(db):
    h = Hotel(name="Lakeview Inn", email="desk@lakeview.example", total_rooms=5)
    db.add(h)
    db.commit()
    db.refresh(h)
    return h


@pytest.fixture
def stay():
    """A two-night stay starting ten days from now."""
    check_in = date.today() + timedelta(days=10)
    return check_in, check_in + timedelta(days=2)


@pytest.fixture
def email_outbox():
    sender = get_email_sender()
    sender.outbox.clear()
    return sender.outbox


@pytest.fixture
def client(db, gateway):
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_headers(role, subject_id):
    return {"Authorization": f"Bearer {create_access_token(subject_id, role)}"}


def principal(role, subject_id):
    return Principal(role=role, subject_id=subject_id)


@pytest.fixture
def service(db, gateway, scheduler):
    from unittest.mock import MagicMock
    from booknow.services.booking_service import BookingService

    # Notifier calls are only scheduled, never run, unless a test runs them
    return BookingService(db, gateway, scheduler=scheduler, notifier=MagicMock())


@pytest.fixture
def make_booking_data(hotel, stay):
    from booknow.schemas.booking import BookingCreate

    def factory(**overrides):
        check_in, check_out = stay
        data = {
            "hotel_id": hotel.id,
            "check_in_date": check_in,
            "check_out_date": check_out,
            "room_type": "Deluxe",
            "room_quantity": 2,
            "total_amount": Decimal("2500.00"),
            "payment_option": "pay_later",
        }
        data.update(overrides)
        return BookingCreate(**data)
    return factory


def mark_paid(db, booking_id):
    from booknow.models import Booking

    booking = db.get(Booking, booking_id)
    booking.payment_status = "Completed"
    db.commit()
    return booking
