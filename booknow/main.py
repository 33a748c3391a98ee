from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from contextlib import asynccontextmanager
from slowapi.errors import RateLimitExceeded
import logging
import time
import uuid

from .config import settings
from .database import create_tables
from .errors import BookingError
from .utils.logging_config import setup_logging, get_logger, set_request_context, clear_request_context
from .utils.metrics import record_http_request
from .utils.rate_limiter import limiter

from .routers import bookings, payments, hotels, notifications, health, metrics

setup_logging(level=settings.log_level, json_format=settings.log_json)
logger = logging.getLogger("booknow")
request_logger = get_logger("booknow.requests")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info(f"Starting booknow-backend ({settings.environment})")
    logger.info(f"CORS origins: {settings.cors_origins}")
    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY is not set; online payments will fail")
    if not settings.email_enabled:
        logger.info("SMTP_HOST not set; emails are logged instead of sent")

    create_tables()
    logger.info("Database ready")

    yield

    logger.info("Shutting down booknow-backend")


app = FastAPI(
    title="BookNow Booking API",
    description="Hotel booking lifecycle: inventory, payments, cancellations and notifications",
    version="1.0.0",
    lifespan=lifespan
)

# Rate limiter state
app.state.limiter = limiter


# ================================
# CORS MIDDLEWARE - MUST BE FIRST!
# ================================
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tags logs with a request id and records request metrics."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        set_request_context(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            route = request.scope.get("route")
            path = getattr(route, "path", request.url.path)
            duration = time.perf_counter() - started
            record_http_request(request.method, path, response.status_code, duration)
            request_logger.api_request(request.method, path, response.status_code, round(duration * 1000, 2))
        finally:
            clear_request_context()
        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(RequestIdMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"success": False, "code": "rate_limited", "detail": "Too many requests, try again later"}
    )


app.include_router(bookings.router)
app.include_router(payments.router)
app.include_router(hotels.router)
app.include_router(notifications.router)
app.include_router(notifications.ws_router)
app.include_router(health.router)
app.include_router(metrics.router)


@app.get("/")
async def root():
    return {
        "message": "BookNow Booking API",
        "version": "1.0.0",
        "docs": "/docs",
        "status": "running",
    }
