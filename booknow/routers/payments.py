"""
Stripe webhook endpoint.

Response contract towards Stripe:
- 400 on a bad signature (nothing recorded)
- 200 for processed, ignored and duplicate events
- 500 when processing failed, so Stripe redelivers
"""

import hashlib
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ..services.booking_service import BookingService
from ..services.payment_gateway import PaymentGateway, get_payment_gateway
from ..utils.dependencies import get_booking_service
from ..utils.rate_limiter import get_rate_limit, limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["Payments"])


@router.post("/webhook")
@limiter.limit(get_rate_limit("webhook"))
async def stripe_webhook(
    request: Request,
    gateway: PaymentGateway = Depends(get_payment_gateway),
    service: BookingService = Depends(get_booking_service),
):
    raw_body = await request.body()
    # SignatureInvalid propagates to the 400 handler
    event = gateway.verify_and_parse(raw_body, request.headers.get("stripe-signature"))
    payload_hash = hashlib.sha256(raw_body).hexdigest()

    try:
        result = await run_in_threadpool(service.handle_gateway_event, event, payload_hash)
    except Exception:
        logger.exception(f"Stripe event {event.event_id} ({event.raw_type}) could not be processed")
        return JSONResponse(
            status_code=500,
            content={"success": False, "received": True, "detail": "Webhook processing failed"},
        )

    return {"success": True, "received": True, "event_id": event.event_id, **result}
