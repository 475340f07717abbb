"""
routers/health.py — Health check endpoints for Stockgift.

Endpoints:
    GET /health           — Basic application liveness
    GET /health/database  — Database connectivity
    GET /health/broker    — Alpaca Broker API credentials and token grant
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from schemas import HealthResponse, ServiceStatus
from src.services.broker_auth import BrokerCredentials, authenticate
from src.services.claim_errors import ClaimError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


# ─────────────────────────────────────────────
# GET /health
# ─────────────────────────────────────────────

@router.get("", response_model=HealthResponse, summary="Application liveness")
async def health_check():
    """Return basic application status. Always 200 if the server is running."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
    )


# ─────────────────────────────────────────────
# GET /health/database
# ─────────────────────────────────────────────

@router.get("/database", response_model=HealthResponse, summary="Database connectivity")
async def database_health(db: AsyncSession = Depends(get_db)):
    """Verify that the database can accept connections and execute queries."""
    try:
        await db.execute(text("SELECT 1"))
        db_status = ServiceStatus(status="healthy")
    except Exception as exc:
        logger.error("Database health check failed: %s", exc)
        db_status = ServiceStatus(status="error", detail="Cannot connect to database")

    overall = "healthy" if db_status.status == "healthy" else "degraded"
    return HealthResponse(
        status=overall,
        timestamp=datetime.now(timezone.utc),
        services={"database": db_status},
    )


# ─────────────────────────────────────────────
# GET /health/broker
# ─────────────────────────────────────────────

@router.get("/broker", response_model=HealthResponse, summary="Alpaca Broker API connectivity")
async def broker_health():
    """Verify broker credentials are configured and a token can be obtained."""
    credentials = BrokerCredentials.from_settings()
    missing = credentials.missing()
    if missing:
        broker_status = ServiceStatus(
            status="error", detail=f"Not configured: {', '.join(missing)}"
        )
        return HealthResponse(
            status="degraded",
            timestamp=datetime.now(timezone.utc),
            services={"broker": broker_status},
        )

    try:
        await authenticate(credentials.api_key, credentials.api_secret, credentials.base_url)
        broker_status = ServiceStatus(status="healthy")
    except ClaimError as exc:
        logger.error("Broker health check failed: %s %s", exc.message, exc.details)
        broker_status = ServiceStatus(status="error", detail=exc.message)

    overall = "healthy" if broker_status.status == "healthy" else "degraded"
    return HealthResponse(
        status=overall,
        timestamp=datetime.now(timezone.utc),
        services={"broker": broker_status},
    )
