# Models package
from .directory import Guest, Hotel
from .booking import Booking, BookingStatus, PaymentOption, PaymentStatus, CancelledBy
from .inventory import InventoryLedgerEntry
from .notification import Notification, NotificationType, RecipientRole
from .webhook_event import WebhookEventLog, WebhookEventStatus

__all__ = [
    "Guest", "Hotel",
    "Booking", "BookingStatus", "PaymentOption", "PaymentStatus", "CancelledBy",
    "InventoryLedgerEntry",
    "Notification", "NotificationType", "RecipientRole",
    "WebhookEventLog", "WebhookEventStatus",
]
