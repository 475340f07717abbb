"""
src/services/gifts.py — Gift creation and the recipient's WhatsApp notification.

Creating a gift never waits on the notification: the message is scheduled as
a background task and any delivery failure is only logged.
"""

import asyncio
import logging
import re
from decimal import Decimal, InvalidOperation

from config import settings
from src.integrations.whatsapp_notifier import get_notifier, is_public_url
from src.services.order_placement import to_money

logger = logging.getLogger(__name__)

PLACEHOLDER_EMAIL_DOMAIN = "whatsapp.temp"

STOCK_IMAGES = {
    "TSLA": "/images/tsla.png",
    "AAPL": "/images/aapl.png",
    "NVDA": "/images/nvda.png",
}

# Strong references to in-flight notification tasks
_background_tasks: set[asyncio.Task] = set()


class GiftValidationError(ValueError):
    """Gift input rejected before anything is stored."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


def placeholder_email(mobile: str) -> str:
    """Synthesize a receiver email from a mobile number's digits.

    "+1 (555) 010-2030" and "15550102030" map to the same address.
    """
    digits = re.sub(r"[^0-9]", "", mobile or "")
    if not digits:
        raise GiftValidationError("Receiver mobile must contain digits")
    return f"{digits}@{PLACEHOLDER_EMAIL_DOMAIN}"


def is_placeholder_email(email: str | None) -> bool:
    return bool(email) and email.endswith(f"@{PLACEHOLDER_EMAIL_DOMAIN}")


def claim_url(gift_id: str, base_url: str | None = None) -> str:
    base = (base_url or settings.public_base_url).rstrip("/")
    return f"{base}/claim/{gift_id}"


def stock_image_url(symbol: str, base_url: str | None = None) -> str | None:
    """Public image URL for a symbol; None when the host is not reachable by Twilio."""
    base = (base_url or settings.public_base_url).rstrip("/")
    path = STOCK_IMAGES.get(symbol.upper())
    if path is None:
        return None
    url = f"{base}{path}"
    return url if is_public_url(url) else None


def build_gift_message(sender_name: str, amount, symbol: str, url: str) -> str:
    return (
        f"🎁 You received a gift from {sender_name}! via {settings.app_name} 📈\n\n"
        f"{sender_name} gifted you ${amount} worth of {symbol} stock!\n\n"
        f"Claim your gift here: {url}"
    )


def validate_gift_input(
    sender_name: str,
    sender_mobile: str,
    receiver_name: str,
    receiver_mobile: str,
    amount,
    stock_symbol: str,
) -> tuple[Decimal, str]:
    """Check gift fields; returns the normalised (amount, symbol)."""
    missing = [
        name
        for name, value in (
            ("sender_name", sender_name),
            ("sender_mobile", sender_mobile),
            ("receiver_name", receiver_name),
            ("receiver_mobile", receiver_mobile),
            ("amount", amount),
            ("stock_symbol", stock_symbol),
        )
        if value in (None, "")
    ]
    if missing:
        raise GiftValidationError("Missing required fields", details={"missing": missing})

    try:
        money = to_money(amount)
    except (InvalidOperation, ValueError):
        raise GiftValidationError("Amount must be a number", details={"amount": str(amount)})
    if money <= 0:
        raise GiftValidationError("Amount must be greater than zero", details={"amount": str(amount)})

    symbol = stock_symbol.strip().upper()
    allowed = settings.allowed_stock_symbols_list
    if symbol not in allowed:
        raise GiftValidationError(
            f"Unsupported stock symbol: {symbol}",
            details={"allowed": allowed},
        )
    return money, symbol


async def create_gift(
    gift_store,
    *,
    sender_name: str,
    sender_mobile: str,
    receiver_name: str,
    receiver_mobile: str,
    amount,
    stock_symbol: str,
    receiver_email: str | None = None,
):
    """Validate and store a PENDING gift. Does not send the notification."""
    money, symbol = validate_gift_input(
        sender_name, sender_mobile, receiver_name, receiver_mobile, amount, stock_symbol
    )
    email = receiver_email or placeholder_email(receiver_mobile)
    gift = await gift_store.create(
        sender_name=sender_name,
        sender_mobile=sender_mobile,
        receiver_name=receiver_name,
        receiver_email=email,
        receiver_mobile=receiver_mobile,
        amount=money,
        stock_symbol=symbol,
    )
    logger.info("Gift %s created: $%s %s for %s", gift.id, money, symbol, receiver_mobile)
    return gift


# ─────────────────────────────────────────────
# Notification
# ─────────────────────────────────────────────

async def send_gift_notification(gift, notifier=None) -> bool:
    """Tell the receiver about their gift. Failures are logged, never raised."""
    notifier = notifier or get_notifier()
    url = claim_url(gift.id)
    body = build_gift_message(gift.sender_name, gift.amount, gift.stock_symbol, url)
    try:
        receipt = await notifier.notify(
            gift.receiver_mobile, body, media_url=stock_image_url(gift.stock_symbol)
        )
    except Exception as exc:
        logger.error("WhatsApp notification for gift %s failed: %s", gift.id, exc)
        return False
    logger.info("Gift %s notification delivered=%s", gift.id, receipt.delivered)
    return True


def schedule_gift_notification(gift, notifier=None) -> asyncio.Task:
    """Fire-and-forget send_gift_notification on the running loop."""
    task = asyncio.create_task(
        send_gift_notification(gift, notifier), name=f"gift_notify_{gift.id}"
    )
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
