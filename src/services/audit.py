"""
src/services/audit.py — Best-effort AuditLog writes.
"""

import logging

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from models import AuditLog

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> str:
    """Originating IP, honouring the first X-Forwarded-For hop behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"


async def log_event(
    db: AsyncSession,
    event_type: str,
    request: Request,
    user_id: str | None = None,
    details: dict | None = None,
) -> None:
    """Insert an AuditLog row. Best-effort: never raises."""
    try:
        db.add(
            AuditLog(
                user_id=user_id,
                event_type=event_type,
                event_details=details or {},
                ip_address=client_ip(request),
                user_agent=request.headers.get("user-agent"),
            )
        )
    except Exception:
        logger.warning("Failed to write audit log for event=%s", event_type)
