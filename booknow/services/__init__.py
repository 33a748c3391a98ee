# Services package
from .inventory_ledger import InventoryLedger, stay_dates
from .payment_gateway import (
    PaymentGateway,
    StripeGateway,
    GatewayEvent,
    EventKind,
    PaymentState,
    IntentHandle,
    RefundResult,
    get_payment_gateway,
)
from .notification_dispatcher import NotificationDispatcher, get_notification_dispatcher
from .presence import InMemoryPresenceDirectory, get_presence_directory
from .background import BackgroundDispatcher, advisory
from .booking_notifications import BookingNotifier, BookingSnapshot
from .booking_service import BookingService

__all__ = [
    "InventoryLedger", "stay_dates",
    "PaymentGateway", "StripeGateway", "GatewayEvent", "EventKind", "PaymentState",
    "IntentHandle", "RefundResult", "get_payment_gateway",
    "NotificationDispatcher", "get_notification_dispatcher",
    "InMemoryPresenceDirectory", "get_presence_directory",
    "BackgroundDispatcher", "advisory",
    "BookingNotifier", "BookingSnapshot",
    "BookingService",
]
