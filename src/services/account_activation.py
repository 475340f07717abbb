"""
src/services/account_activation.py — Wait for a brokerage account to become ACTIVE.

Newly opened accounts are polled on a fixed interval; reused accounts get a
single status check. A failed poll counts as an attempt rather than aborting,
so a transient API error does not sink the claim.
"""

import logging
import time

from src.integrations.broker_client import AlpacaBrokerClient, BrokerAPIError
from src.services.claim_errors import (
    AccountInactiveError,
    AccountStatusError,
    ActivationTimeoutError,
)
from src.services.polling import PollBudget, Sleep, real_sleep

logger = logging.getLogger(__name__)

ACTIVE = "ACTIVE"


async def await_active(
    broker: AlpacaBrokerClient,
    account_id: str,
    budget: PollBudget,
    initial_status: str | None = None,
    sleep: Sleep = real_sleep,
) -> str:
    """Poll the account until its status is ACTIVE.

    Returns:
        The final status ("ACTIVE").

    Raises:
        ActivationTimeoutError: budget exhausted; details carry the last status,
            attempts used, and elapsed seconds.
    """
    status = initial_status
    if status == ACTIVE:
        return status

    logger.info(
        "Account %s initial status %s, polling for ACTIVE (%d x %.1fs)",
        account_id, status, budget.max_attempts, budget.interval_seconds,
    )
    started = time.monotonic()
    attempts = 0
    last_error: str | None = None

    while attempts < budget.max_attempts:
        await sleep(budget.interval_seconds)
        attempts += 1
        try:
            data = await broker.get_account(account_id)
        except BrokerAPIError as exc:
            last_error = exc.message
            logger.warning(
                "Account status check %d/%d failed: %s",
                attempts, budget.max_attempts, exc.message,
            )
            continue

        status = data.get("status")
        logger.info("Account status check %d/%d: %s", attempts, budget.max_attempts, status)
        if status == ACTIVE:
            logger.info("Account %s ACTIVE after %d attempts", account_id, attempts)
            return status

    waited = attempts * budget.interval_seconds
    raise ActivationTimeoutError(
        "Account did not become active in time",
        details={
            "account_id": account_id,
            "last_status": status,
            "last_error": last_error,
            "attempts": attempts,
            "waited_seconds": waited,
            "elapsed_seconds": round(time.monotonic() - started, 2),
            "message": (
                f'Account status is "{status}" after {waited:g} seconds. '
                "The account may need manual review or more time to process."
            ),
        },
    )


async def check_active(broker: AlpacaBrokerClient, account_id: str) -> str:
    """Single-shot status check for an account that already existed."""
    try:
        data = await broker.get_account(account_id)
    except BrokerAPIError as exc:
        logger.error("Failed to verify account %s: %s", account_id, exc.message)
        raise AccountStatusError(
            f"Failed to verify account: {exc.message}",
            details={"account_id": account_id, "status": exc.status_code, "response": exc.payload},
        ) from exc

    status = data.get("status")
    if status != ACTIVE:
        raise AccountInactiveError(
            "Account is not active",
            details={
                "account_id": account_id,
                "last_status": status,
                "message": f'Your account status is "{status}". Please contact support.',
            },
        )
    logger.info("Using existing ACTIVE account %s", account_id)
    return status
