"""
Rate Limiter Configuration

Uses slowapi with the storage backend from RATE_LIMIT_STORAGE_URI.
memory:// is fine for a single instance; point it at redis:// when running
more than one.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request

from ..config import settings


def get_real_client_ip(request: Request) -> str:
    """Get real client IP behind a reverse proxy"""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # First IP is the original client
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


limiter = Limiter(
    key_func=get_real_client_ip,
    storage_uri=settings.rate_limit_storage_uri,
    default_limits=["200/minute"],
)


RATE_LIMITS = {
    "booking_create": settings.booking_rate_limit,
    "webhook": "300/minute",
}


def get_rate_limit(operation: str) -> str:
    """Get rate limit for a specific operation."""
    return RATE_LIMITS.get(operation, "100/minute")
