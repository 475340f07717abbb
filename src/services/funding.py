"""
src/services/funding.py — Move the gift's cash into the claimant's account.

Two sub-steps:
    fund()             — cash journal (JNLC) from the firm account
    await_settlement() — poll until buying power covers the FULL journaled amount

The settlement gate uses the gift amount, not the smaller order notional:
waiting only for the notional could send an order against uncleared funds.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from src.integrations.broker_client import AlpacaBrokerClient, BrokerAPIError
from src.services.claim_errors import FundingError, SettlementTimeoutError
from src.services.order_placement import compute_order_notional, to_money
from src.services.polling import PollBudget, Sleep, real_sleep

logger = logging.getLogger(__name__)

_BALANCE_FIELDS = ("buying_power", "cash", "equity")


@dataclass(frozen=True)
class JournalReceipt:
    journal_id: str | None
    from_account: str
    to_account: str
    amount: Decimal
    status: str | None


def available_buying_power(account: dict) -> Decimal:
    """Read the first balance field present on an account payload."""
    for key in _BALANCE_FIELDS:
        value = account.get(key)
        if value in (None, ""):
            continue
        try:
            return Decimal(str(value))
        except InvalidOperation:
            logger.warning("Unparseable %s value on account: %r", key, value)
    return Decimal("0")


async def fund(
    broker: AlpacaBrokerClient,
    firm_account_id: str,
    destination_account_id: str,
    amount,
) -> JournalReceipt:
    """Journal `amount` from the firm account into the destination account.

    Raises:
        FundingError: the journal was rejected; nothing downstream may run.
    """
    amount = to_money(amount)
    try:
        data = await broker.create_journal(
            from_account=firm_account_id,
            to_account=destination_account_id,
            amount=f"{amount:.2f}",
        )
    except BrokerAPIError as exc:
        logger.error("Journal to %s failed: %s", destination_account_id, exc.message)
        raise FundingError(
            f"Failed to journal cash: {exc.message}",
            details={
                "from_account": firm_account_id,
                "to_account": destination_account_id,
                "amount": f"{amount:.2f}",
                "status": exc.status_code,
                "response": exc.payload,
            },
        ) from exc

    logger.info(
        "Journaled $%s from %s to %s (journal=%s status=%s)",
        amount, firm_account_id, destination_account_id, data.get("id"), data.get("status"),
    )
    return JournalReceipt(
        journal_id=data.get("id"),
        from_account=firm_account_id,
        to_account=destination_account_id,
        amount=amount,
        status=data.get("status"),
    )


async def reverse(broker: AlpacaBrokerClient, receipt: JournalReceipt) -> JournalReceipt:
    """Journal the same amount back to where it came from."""
    data = await broker.create_journal(
        from_account=receipt.to_account,
        to_account=receipt.from_account,
        amount=f"{receipt.amount:.2f}",
    )
    logger.warning(
        "Reversed journal %s: $%s returned to %s (journal=%s)",
        receipt.journal_id, receipt.amount, receipt.from_account, data.get("id"),
    )
    return JournalReceipt(
        journal_id=data.get("id"),
        from_account=receipt.to_account,
        to_account=receipt.from_account,
        amount=receipt.amount,
        status=data.get("status"),
    )


async def await_settlement(
    broker: AlpacaBrokerClient,
    account_id: str,
    required_amount,
    budget: PollBudget,
    sleep: Sleep = real_sleep,
) -> Decimal:
    """Poll buying power until it reaches `required_amount`.

    Reads the trading-account view; if that endpoint 404s, the general account
    endpoint is read in the same attempt and used for the rest.

    Returns:
        The observed buying power.

    Raises:
        SettlementTimeoutError: budget exhausted; details report observed vs
            required buying power and the order notional.
    """
    required = to_money(required_amount)
    observed: Decimal | None = None
    use_fallback = False
    attempts = 0

    while attempts < budget.max_attempts:
        await sleep(budget.interval_seconds)
        attempts += 1
        try:
            if not use_fallback:
                try:
                    account = await broker.get_trading_account(account_id)
                except BrokerAPIError as exc:
                    if not exc.is_not_found:
                        raise
                    logger.info("Trading account endpoint unavailable, using account endpoint")
                    use_fallback = True
            if use_fallback:
                account = await broker.get_account(account_id)
        except BrokerAPIError as exc:
            logger.warning(
                "Buying power check %d/%d failed: %s", attempts, budget.max_attempts, exc.message
            )
            continue

        observed = available_buying_power(account)
        if observed >= required:
            logger.info(
                "Buying power available: $%s, required: $%s (order notional $%s)",
                observed, required, compute_order_notional(required),
            )
            return observed

        logger.info(
            "Waiting for buying power... available=$%s required=$%s attempt %d/%d",
            observed, required, attempts, budget.max_attempts,
        )

    notional = compute_order_notional(required)
    shown = observed if observed is not None else Decimal("0")
    raise SettlementTimeoutError(
        "Insufficient buying power after journal",
        details={
            "account_id": account_id,
            "available_buying_power": f"{shown:.2f}",
            "required_buying_power": f"{required:.2f}",
            "order_notional": f"{notional:.2f}",
            "attempts": attempts,
            "message": (
                f"Account has ${shown:.2f} available, but need ${required:.2f} to place "
                f"a market order of ${notional:.2f} (accounting for the 5% collar). "
                "The journal may need more time to settle."
            ),
        },
    )
