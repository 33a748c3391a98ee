"""
Domain errors for the booking engine.

Every error carries an HTTP status, a stable machine-readable code and a
context dict. The context tells the caller whether inventory or payment
state was touched before the failure, e.g.::

    GatewayError("...", context={"inventory_committed": False})

main.py renders them as ``{"success": false, "code", "detail", "context"}``.
"""

from typing import Any, Dict, Optional


class BookingError(Exception):
    status_code = 400
    code = "booking_error"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "code": self.code,
            "detail": self.message,
            "context": self.context,
        }


class ValidationError(BookingError):
    status_code = 400
    code = "validation_error"


class InvalidAmount(ValidationError):
    code = "invalid_amount"


class NotFoundError(BookingError):
    status_code = 404
    code = "not_found"


class ConflictError(BookingError):
    status_code = 409
    code = "conflict"


class GatewayError(BookingError):
    """Payment provider failed, rejected the call, or timed out."""
    status_code = 502
    code = "gateway_error"


class RefundError(GatewayError):
    code = "refund_error"


class SignatureInvalid(BookingError):
    status_code = 400
    code = "signature_invalid"
