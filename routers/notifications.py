"""
routers/notifications.py — Direct WhatsApp send.

Endpoints:
    POST /api/notifications/whatsapp — Send one message (logged when Twilio is not configured)
"""

import logging

from fastapi import APIRouter, HTTPException, status

from schemas import SuccessResponse, WhatsAppSendRequest
from src.integrations.whatsapp_notifier import get_notifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])


@router.post("/whatsapp", response_model=SuccessResponse)
async def send_whatsapp(body: WhatsAppSendRequest):
    try:
        receipt = await get_notifier().notify(body.to, body.message, media_url=body.media_url)
    except Exception as exc:
        logger.error("WhatsApp send to %s failed: %s", body.to, exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to send WhatsApp message: {exc}",
        )

    if not receipt.delivered:
        return SuccessResponse(
            message="WhatsApp message logged (Twilio not configured)",
            data={"note": receipt.note},
        )
    return SuccessResponse(
        message="WhatsApp message sent",
        data={"message_sid": receipt.message_sid, "status": receipt.status},
    )
