"""
src/integrations/whatsapp_notifier.py — Outbound WhatsApp messages via Twilio.

WhatsApp-specific constraints:
  - 1600-char message limit per WhatsApp message
  - Twilio `Client.messages.create()` is synchronous; wrapped in asyncio executor
  - Media URLs must be publicly reachable, so localhost URLs are dropped

When Twilio is not configured the message is logged instead of sent.
"""

import asyncio
import logging
from dataclasses import dataclass
from functools import partial

from config import settings

logger = logging.getLogger(__name__)

_MAX_MSG = 1_600  # Twilio WhatsApp limit


def _trunc(text: str, limit: int = _MAX_MSG) -> str:
    """Truncate a message to WhatsApp's per-message character limit."""
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _whatsapp_address(number: str) -> str:
    return number if number.startswith("whatsapp:") else f"whatsapp:{number}"


def is_public_url(url: str | None) -> bool:
    return bool(url) and "localhost" not in url and "127.0.0.1" not in url


@dataclass(frozen=True)
class DeliveryReceipt:
    delivered: bool
    message_sid: str | None = None
    status: str | None = None
    note: str | None = None


class WhatsAppNotifier:
    """Send WhatsApp messages through Twilio's Messaging API."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        whatsapp_from: str,
    ) -> None:
        from twilio.rest import Client  # lazy import
        self._client = Client(account_sid, auth_token)
        self._from = _whatsapp_address(whatsapp_from)

    async def notify(
        self,
        to_number: str,
        body: str,
        media_url: str | None = None,
    ) -> DeliveryReceipt:
        """Send one message; raises the Twilio exception on failure."""
        kwargs = {
            "from_": self._from,
            "to": _whatsapp_address(to_number),
            "body": _trunc(body),
        }
        if media_url:
            if is_public_url(media_url):
                kwargs["media_url"] = [media_url]
            else:
                logger.warning("Media URL %s is not public; sending without media", media_url)

        loop = asyncio.get_event_loop()
        message = await loop.run_in_executor(
            None, partial(self._client.messages.create, **kwargs)
        )
        logger.info("WhatsApp message sent to %s (sid=%s)", kwargs["to"], message.sid)
        return DeliveryReceipt(delivered=True, message_sid=message.sid, status=message.status)


class LoggingNotifier:
    """Stand-in used when Twilio credentials are not configured."""

    async def notify(
        self,
        to_number: str,
        body: str,
        media_url: str | None = None,
    ) -> DeliveryReceipt:
        logger.info(
            "WhatsApp message (Twilio not configured) to=%s media=%s\n%s",
            to_number, media_url, body,
        )
        return DeliveryReceipt(
            delivered=False,
            note="Twilio not configured; message logged instead of sent",
        )


_notifier = None


def get_notifier():
    """Return the process-wide notifier, building it on first use."""
    global _notifier
    if _notifier is None:
        if settings.whatsapp_enabled:
            _notifier = WhatsAppNotifier(
                account_sid=settings.twilio_account_sid,
                auth_token=settings.twilio_auth_token,
                whatsapp_from=settings.twilio_whatsapp_from,
            )
        else:
            _notifier = LoggingNotifier()
    return _notifier


def set_notifier(notifier) -> None:
    global _notifier
    _notifier = notifier
