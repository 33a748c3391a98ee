"""
Payment Gateway Adapter

Thin wrapper around the Stripe SDK that:
- Creates / inspects / cancels PaymentIntents
- Issues refunds
- Verifies and normalizes webhook events
- Maps every Stripe failure (including network timeouts) onto domain errors

No call is retried automatically; callers decide what a failure means.
"""

import enum
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from functools import lru_cache
from typing import Optional

import stripe

from ..config import settings
from ..errors import GatewayError, InvalidAmount, RefundError, SignatureInvalid
from ..utils.metrics import record_gateway_call

logger = logging.getLogger(__name__)


class PaymentState(str, enum.Enum):
    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"


class EventKind(str, enum.Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    REFUND_SUCCEEDED = "refund_succeeded"
    REFUND_FAILED = "refund_failed"
    IGNORED = "ignored"


@dataclass
class IntentHandle:
    external_ref: str
    client_secret: Optional[str]


@dataclass
class RefundResult:
    refund_id: str
    status: str


@dataclass
class GatewayEvent:
    """Provider event reduced to what the booking lifecycle needs"""
    event_id: str
    kind: EventKind
    raw_type: str
    external_ref: Optional[str] = None
    booking_id: Optional[str] = None  # from intent metadata, when present
    refund_id: Optional[str] = None
    failure_reason: Optional[str] = None


def to_minor_units(amount) -> int:
    """Major currency units (e.g. rupees) to the integer minor units Stripe expects."""
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentGateway(ABC):
    """Interface the booking lifecycle depends on"""

    @abstractmethod
    def create_intent(self, amount, booking_id: str) -> IntentHandle:
        ...

    @abstractmethod
    def retrieve_status(self, external_ref: str) -> PaymentState:
        ...

    @abstractmethod
    def cancel_intent(self, external_ref: str) -> bool:
        ...

    @abstractmethod
    def refund(self, external_ref: str) -> RefundResult:
        ...

    @abstractmethod
    def verify_and_parse(self, raw_payload: bytes, signature_header: Optional[str]) -> GatewayEvent:
        ...


# Refund statuses that mean the provider accepted the refund
ACCEPTED_REFUND_STATUSES = {"succeeded", "pending", "requires_action"}


class StripeGateway(PaymentGateway):
    """Stripe-backed gateway"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        currency: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self.currency = currency or settings.payment_currency
        self.timeout_seconds = timeout_seconds or settings.payment_gateway_timeout_seconds

        stripe.api_key = self.api_key
        stripe.max_network_retries = 0
        # Bounded timeout on every call; a timeout surfaces as APIConnectionError
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout_seconds)

    def _timed(self, operation: str, call, *args, **kwargs):
        started = time.perf_counter()
        try:
            result = call(*args, **kwargs)
        except stripe.StripeError:
            record_gateway_call(operation, False, time.perf_counter() - started)
            raise
        record_gateway_call(operation, True, time.perf_counter() - started)
        return result

    def create_intent(self, amount, booking_id: str) -> IntentHandle:
        if amount is None or Decimal(str(amount)) <= 0:
            raise InvalidAmount("Payment amount must be greater than zero", context={"amount": str(amount)})

        try:
            intent = self._timed(
                "create_intent",
                stripe.PaymentIntent.create,
                amount=to_minor_units(amount),
                currency=self.currency,
                metadata={"booking_id": booking_id},
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as e:
            logger.error(f"PaymentIntent creation failed for booking {booking_id}: {e}")
            raise GatewayError(
                "Payment provider could not create a payment",
                context={"provider_error": getattr(e, "user_message", None) or str(e)},
            )

        logger.info(f"Created PaymentIntent {intent.id} for booking {booking_id}")
        return IntentHandle(external_ref=intent.id, client_secret=intent.client_secret)

    def retrieve_status(self, external_ref: str) -> PaymentState:
        try:
            intent = self._timed("retrieve_intent", stripe.PaymentIntent.retrieve, external_ref)
        except stripe.StripeError as e:
            logger.error(f"PaymentIntent retrieval failed for {external_ref}: {e}")
            raise GatewayError("Payment provider could not report payment status")

        status = intent.status
        if status == "succeeded":
            return PaymentState.SUCCEEDED
        if status == "canceled":
            return PaymentState.FAILED
        if status == "requires_payment_method" and getattr(intent, "last_payment_error", None):
            return PaymentState.FAILED
        return PaymentState.PENDING

    def cancel_intent(self, external_ref: str) -> bool:
        """Best effort. Never raises; returns whether the provider confirmed."""
        try:
            self._timed("cancel_intent", stripe.PaymentIntent.cancel, external_ref)
        except stripe.StripeError as e:
            logger.warning(f"Could not cancel PaymentIntent {external_ref}: {e}")
            return False
        logger.info(f"Cancelled PaymentIntent {external_ref}")
        return True

    def refund(self, external_ref: str) -> RefundResult:
        try:
            refund = self._timed(
                "refund",
                stripe.Refund.create,
                payment_intent=external_ref,
                reason="requested_by_customer",
            )
        except stripe.StripeError as e:
            logger.error(f"Refund failed for PaymentIntent {external_ref}: {e}")
            raise RefundError(
                "Refund could not be processed",
                context={"provider_error": getattr(e, "user_message", None) or str(e)},
            )

        if refund.status not in ACCEPTED_REFUND_STATUSES:
            logger.error(f"Refund {refund.id} for {external_ref} returned status {refund.status}")
            raise RefundError(
                "Refund was rejected by the payment provider",
                context={"refund_id": refund.id, "refund_status": refund.status},
            )

        logger.info(f"Refund {refund.id} ({refund.status}) issued for PaymentIntent {external_ref}")
        return RefundResult(refund_id=refund.id, status=refund.status)

    def verify_and_parse(self, raw_payload: bytes, signature_header: Optional[str]) -> GatewayEvent:
        if not signature_header:
            raise SignatureInvalid("Missing Stripe-Signature header")
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not configured; rejecting webhook")
            raise SignatureInvalid("Webhook secret not configured")

        try:
            stripe.Webhook.construct_event(raw_payload, signature_header, self.webhook_secret)
        except stripe.SignatureVerificationError:
            raise SignatureInvalid("Invalid webhook signature")
        except ValueError:
            raise SignatureInvalid("Malformed webhook payload")

        # Signature is valid; work from the plain JSON body
        return parse_event(json.loads(raw_payload))


def parse_event(payload: dict) -> GatewayEvent:
    """Normalize a Stripe event body into a GatewayEvent."""
    event_id = payload.get("id") or ""
    event_type = payload.get("type") or ""
    obj = (payload.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    event = GatewayEvent(event_id=event_id, kind=EventKind.IGNORED, raw_type=event_type)

    if event_type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        event.external_ref = obj.get("id")
        event.booking_id = metadata.get("booking_id")
        if event_type == "payment_intent.succeeded":
            event.kind = EventKind.PAYMENT_SUCCEEDED
        else:
            event.kind = EventKind.PAYMENT_FAILED
            error = obj.get("last_payment_error") or {}
            event.failure_reason = error.get("message")

    elif event_type == "charge.refunded":
        event.kind = EventKind.REFUND_SUCCEEDED
        event.external_ref = obj.get("payment_intent")
        event.booking_id = metadata.get("booking_id")

    elif event_type in ("refund.succeeded", "refund.updated", "charge.refund.updated", "refund.failed"):
        event.external_ref = obj.get("payment_intent")
        event.refund_id = obj.get("id")
        status = obj.get("status")
        if event_type == "refund.failed" or status in ("failed", "canceled"):
            event.kind = EventKind.REFUND_FAILED
            event.failure_reason = obj.get("failure_reason")
        elif event_type == "refund.succeeded" or status == "succeeded":
            event.kind = EventKind.REFUND_SUCCEEDED

    if event.kind == EventKind.IGNORED:
        logger.info(f"Ignoring Stripe event {event_id} ({event_type})")

    return event


@lru_cache()
def get_payment_gateway() -> PaymentGateway:
    """Process-wide gateway; overridden in tests."""
    return StripeGateway()
