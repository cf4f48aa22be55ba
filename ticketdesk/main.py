import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from .config import settings
from .database import SessionLocal, create_tables
from .exceptions import (
    BlobNotFoundError,
    DeliveryConfigurationError,
    NotFoundError,
    UpstreamError,
)
from .services.scheduler import get_scheduler
from .services.templates import seed_default_templates
from .utils.logging_config import clear_request_context, set_request_context, setup_logging
from .utils.rate_limiter import limiter

from .routers import attachments, bookings, conversations, downloads, health, messages, twilio_callbacks, webhooks

VERSION = "1.0.0"

logger = logging.getLogger("ticketdesk")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    setup_logging(level=settings.log_level, json_format=settings.is_production)
    logger.info(f"Starting ticketdesk ({settings.environment})")
    logger.info(f"CORS origins: {settings.cors_origins}")

    create_tables()

    db = SessionLocal()
    try:
        seeded = seed_default_templates(db)
        if seeded:
            logger.info(f"Seeded {seeded} default message templates")
    finally:
        db.close()

    # ==========================================
    # START BACKGROUND SCHEDULER
    # ==========================================
    scheduler = None
    if settings.scheduler_enabled:
        scheduler = get_scheduler()
        scheduler.start()
    else:
        logger.warning("Scheduler disabled; run worker.py for background jobs")

    yield

    # Shutdown
    logger.info("Shutting down ticketdesk...")
    if scheduler:
        scheduler.shutdown()


app = FastAPI(
    title="Ticket Desk API",
    description="Tour ticket bookings, Bokun sync and ticket delivery",
    version=VERSION,
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


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


# Request ID Middleware
class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        set_request_context(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Request-ID"] = request_id
        return response


# Add other middleware AFTER CORS
app.add_middleware(RequestIdMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


# Rate limit handler
@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests, try again later"}
    )


# Domain errors that escape a router
@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(BlobNotFoundError)
async def blob_not_found_handler(request: Request, exc: BlobNotFoundError):
    return JSONResponse(status_code=404, content={"detail": "File not found"})


@app.exception_handler(DeliveryConfigurationError)
async def delivery_configuration_handler(request: Request, exc: DeliveryConfigurationError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError):
    logger.error(f"[{getattr(request.state, 'request_id', '-')}] Upstream error: {exc}")
    return JSONResponse(status_code=502, content={"detail": str(exc)})


# Include routers
app.include_router(health.router)
app.include_router(webhooks.router)
app.include_router(webhooks.admin_router)
app.include_router(downloads.router)
app.include_router(twilio_callbacks.router)
app.include_router(bookings.router)
app.include_router(attachments.router)
app.include_router(messages.router)
app.include_router(conversations.router)


@app.get("/")
async def root():
    return {
        "message": "Ticket Desk API",
        "version": VERSION,
        "docs": "/docs",
        "status": "running",
    }
