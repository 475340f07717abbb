"""
src/services/order_placement.py — Size and submit the gift's market buy.

Pure sizing helpers first (no I/O, unit-testable), then the submission call.

The broker holds back a 5 % collar on notional market orders, so an account
with $100 of buying power can only send a $100 / 1.05 ≈ $95.24 order.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from src.integrations.broker_client import AlpacaBrokerClient, BrokerAPIError
from src.services.claim_errors import OrderSubmissionError

logger = logging.getLogger(__name__)

COLLAR_BUFFER = Decimal("1.05")
_CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    """Coerce a float / str / Decimal amount to a 2-dp Decimal."""
    return Decimal(str(value)).quantize(_CENTS, rounding=ROUND_HALF_UP)


def compute_order_notional(gift_amount) -> Decimal:
    """Return the collar-adjusted order size, rounded to cents.

    >>> compute_order_notional("100.00")
    Decimal('95.24')
    """
    return (Decimal(str(gift_amount)) / COLLAR_BUFFER).quantize(_CENTS, rounding=ROUND_HALF_UP)


def build_market_buy(symbol: str, notional: Decimal) -> dict:
    return {
        "symbol": symbol,
        "notional": f"{notional:.2f}",
        "side": "buy",
        "type": "market",
        "time_in_force": "day",
    }


@dataclass(frozen=True)
class OrderReceipt:
    order_id: str | None
    symbol: str
    notional: Decimal
    status: str | None


async def place_market_buy(
    broker: AlpacaBrokerClient,
    account_id: str,
    symbol: str,
    gift_amount,
) -> OrderReceipt:
    """Submit a day market buy for the collar-adjusted notional.

    No retry: a failure here happens after funding and is left for an
    operator to reconcile.

    Raises:
        OrderSubmissionError: the broker rejected the order or was unreachable.
    """
    notional = compute_order_notional(gift_amount)
    payload = build_market_buy(symbol, notional)
    logger.info(
        "Placing order: account=%s symbol=%s gift=%s notional=%s",
        account_id, symbol, to_money(gift_amount), payload["notional"],
    )
    try:
        data = await broker.place_order(account_id, payload)
    except BrokerAPIError as exc:
        logger.error(
            "Order submission failed after funding (account=%s symbol=%s notional=%s): %s",
            account_id, symbol, payload["notional"], exc.message,
        )
        raise OrderSubmissionError(
            f"Failed to place order: {exc.message}",
            details={
                "account_id": account_id,
                "symbol": symbol,
                "notional": payload["notional"],
                "status": exc.status_code,
                "response": exc.payload,
            },
        ) from exc

    return OrderReceipt(
        order_id=data.get("id"),
        symbol=symbol,
        notional=notional,
        status=data.get("status"),
    )
