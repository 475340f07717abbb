"""
main.py — FastAPI application entry point for Stockgift.

Wires together middleware, routers, error handlers, and startup checks.
Run with:  python -m uvicorn main:app --reload
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from config import settings
from database import create_tables
from routers import auth, gifts, health, notifications, portfolio
from security import limiter
from src.services.broker_auth import BrokerCredentials
from src.services.claim_errors import ClaimError

# ─────────────────────────────────────────────
# Logging
# ─────────────────────────────────────────────

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────
# Sentry
# ─────────────────────────────────────────────

# Onboarding payloads carry identity data; never ship it to Sentry.
_SCRUBBED_FIELDS = {"password", "tax_id", "date_of_birth", "street_address"}


def scrub_event(event: dict, hint: dict) -> dict:
    """Sentry before_send hook: mask claimant PII in captured request bodies."""
    data = event.get("request", {}).get("data")
    if isinstance(data, dict):
        for key in _SCRUBBED_FIELDS & data.keys():
            data[key] = "[Filtered]"
    return event


if settings.sentry_dsn:
    try:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            release=f"stockgift@{settings.app_version}",
            traces_sample_rate=0.2,
            send_default_pii=False,
            before_send=scrub_event,
        )
        logger.info("Sentry initialised")
    except Exception as _e:
        logger.warning("Sentry init failed (skipping): %s", _e)
else:
    logger.info("Sentry not configured — skipping")


# ─────────────────────────────────────────────
# Middleware
# ─────────────────────────────────────────────

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Security headers on every response; API responses are never cached (they carry tokens)."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line per request, tagged with a request id echoed back as X-Request-ID.

    Bodies are never logged: claim and auth payloads carry tax ids and passwords.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000

        logger.info(
            "[%s] %s %s → %d (%.0fms)",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        response.headers["X-Request-ID"] = request_id
        return response


# ─────────────────────────────────────────────
# Lifespan
# ─────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s v%s (%s)", settings.app_name, settings.app_version, settings.environment)

    await create_tables()

    missing = BrokerCredentials.from_settings().missing()
    if missing:
        logger.warning("Broker API: NOT configured (%s) — claims will fail", ", ".join(missing))
    else:
        logger.info(
            "Broker API: %s, polling activation %dx%.0fs / settlement %dx%.0fs",
            "sandbox" if settings.broker_is_sandbox else "production",
            settings.activation_poll_attempts,
            settings.activation_poll_interval_seconds,
            settings.settlement_poll_attempts,
            settings.settlement_poll_interval_seconds,
        )

    if settings.whatsapp_enabled:
        logger.info("Twilio WhatsApp: sending from %s", settings.twilio_whatsapp_from)
    else:
        logger.warning("Twilio WhatsApp: NOT configured — gift messages will be logged only")

    yield

    logger.info("%s shutting down", settings.app_name)


# ─────────────────────────────────────────────
# App
# ─────────────────────────────────────────────

app = FastAPI(
    title="Stockgift API",
    description="Send fractional stock as a gift; the receiver claims it into a brokerage account.",
    version=settings.app_version,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None,
    lifespan=lifespan,
)
app.state.limiter = limiter

# Added last = outermost
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
)

# ─────────────────────────────────────────────
# Error Handlers
# ─────────────────────────────────────────────

@app.exception_handler(ClaimError)
async def claim_error_handler(request: Request, exc: ClaimError):
    """Typed workflow/broker failures surfacing outside the claim route."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "error", "error": exc.message, "details": jsonable_encoder(exc.details)},
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning("Rate limit hit on %s (%s)", request.url.path, exc.detail)
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"status": "error", "error": "Too many requests. Please slow down."},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    # Drop the leading "body"/"query" segment so the frontend gets plain field names
    errors = [
        {"field": ".".join(str(loc) for loc in e["loc"][1:]) or str(e["loc"][0]), "message": e["msg"]}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"status": "error", "error": "Validation failed", "details": errors},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"status": "error", "error": "An internal server error occurred"},
    )


# ─────────────────────────────────────────────
# Routers
# ─────────────────────────────────────────────

app.include_router(health.router)
app.include_router(auth.router)
app.include_router(gifts.router)
app.include_router(portfolio.router)
app.include_router(notifications.router)


@app.get("/", include_in_schema=False)
async def root():
    return {
        "app": settings.app_name,
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
