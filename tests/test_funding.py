"""
tests/test_funding.py — Cash journal and settlement polling.

Run with:  pytest tests/test_funding.py -v
"""

from decimal import Decimal

import pytest

from conftest import FakeBroker
from src.integrations.broker_client import BrokerAPIError
from src.services import funding
from src.services.claim_errors import FundingError, SettlementTimeoutError
from src.services.polling import PollBudget

BUDGET = PollBudget(max_attempts=10, interval_seconds=2.0)


# ─────────────────────────────────────────────
# available_buying_power
# ─────────────────────────────────────────────

class TestAvailableBuyingPower:
    def test_prefers_buying_power(self):
        account = {"buying_power": "120.00", "cash": "50", "equity": "10"}
        assert funding.available_buying_power(account) == Decimal("120.00")

    def test_falls_back_to_cash_then_equity(self):
        assert funding.available_buying_power({"cash": "42.10"}) == Decimal("42.10")
        assert funding.available_buying_power({"equity": "7"}) == Decimal("7")

    def test_missing_fields_is_zero(self):
        assert funding.available_buying_power({}) == Decimal("0")

    def test_empty_string_skipped(self):
        assert funding.available_buying_power({"buying_power": "", "cash": "3"}) == Decimal("3")


# ─────────────────────────────────────────────
# fund / reverse
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_fund_posts_journal_from_firm_account():
    broker = FakeBroker(create_journal=[{"id": "jnl-1", "status": "executed"}])

    receipt = await funding.fund(broker, "firm-001", "acct-1", Decimal("100"))

    assert broker.payloads("create_journal") == [("firm-001", "acct-1", "100.00")]
    assert receipt.journal_id == "jnl-1"
    assert receipt.amount == Decimal("100.00")


@pytest.mark.asyncio
async def test_fund_failure_raises_funding_error():
    broker = FakeBroker(
        create_journal=[BrokerAPIError("firm account has insufficient funds", status_code=422)]
    )

    with pytest.raises(FundingError) as exc_info:
        await funding.fund(broker, "firm-001", "acct-1", Decimal("100"))

    assert "insufficient funds" in exc_info.value.message
    assert exc_info.value.details["status"] == 422


@pytest.mark.asyncio
async def test_reverse_sends_money_back():
    broker = FakeBroker(create_journal=[{"id": "jnl-2", "status": "queued"}])
    original = funding.JournalReceipt("jnl-1", "firm-001", "acct-1", Decimal("100.00"), "executed")

    reversal = await funding.reverse(broker, original)

    assert broker.payloads("create_journal") == [("acct-1", "firm-001", "100.00")]
    assert reversal.to_account == "firm-001"


# ─────────────────────────────────────────────
# await_settlement
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_settlement_waits_for_full_amount(no_sleep):
    broker = FakeBroker(
        get_trading_account=[
            {"buying_power": "0"},
            {"buying_power": "95.24"},  # covers the notional but not the gift
            {"buying_power": "100.00"},
        ]
    )

    observed = await funding.await_settlement(broker, "acct-1", Decimal("100"), BUDGET, sleep=no_sleep)

    assert observed == Decimal("100.00")
    assert broker.count("get_trading_account") == 3
    assert no_sleep.delays == [2.0, 2.0, 2.0]


@pytest.mark.asyncio
async def test_settlement_timeout_when_only_notional_available(no_sleep):
    broker = FakeBroker(get_trading_account=[{"buying_power": "95.24"}])

    with pytest.raises(SettlementTimeoutError) as exc_info:
        await funding.await_settlement(broker, "acct-1", Decimal("100"), BUDGET, sleep=no_sleep)

    details = exc_info.value.details
    assert details["available_buying_power"] == "95.24"
    assert details["required_buying_power"] == "100.00"
    assert details["order_notional"] == "95.24"
    assert details["attempts"] == 10
    assert broker.count("get_trading_account") == 10


@pytest.mark.asyncio
async def test_settlement_falls_back_after_404(no_sleep):
    broker = FakeBroker(
        get_trading_account=[BrokerAPIError("not found", status_code=404)],
        get_account=[{"cash": "100.00"}],
    )

    observed = await funding.await_settlement(broker, "acct-1", Decimal("100"), BUDGET, sleep=no_sleep)

    assert observed == Decimal("100.00")
    assert broker.count("get_trading_account") == 1
    assert broker.count("get_account") == 1
    assert len(no_sleep.delays) == 1


@pytest.mark.asyncio
async def test_settlement_fallback_sticks_for_later_attempts(no_sleep):
    broker = FakeBroker(
        get_trading_account=[BrokerAPIError("not found", status_code=404)],
        get_account=[{"cash": "40.00"}, {"cash": "100.00"}],
    )

    await funding.await_settlement(broker, "acct-1", Decimal("100"), BUDGET, sleep=no_sleep)

    assert broker.count("get_trading_account") == 1
    assert broker.count("get_account") == 2
    assert len(no_sleep.delays) == 2


@pytest.mark.asyncio
async def test_settlement_errors_consume_attempts(no_sleep):
    broker = FakeBroker(get_trading_account=[BrokerAPIError("boom", status_code=500)])
    budget = PollBudget(max_attempts=3, interval_seconds=0.5)

    with pytest.raises(SettlementTimeoutError) as exc_info:
        await funding.await_settlement(broker, "acct-1", Decimal("50"), budget, sleep=no_sleep)

    assert exc_info.value.details["attempts"] == 3
    assert exc_info.value.details["available_buying_power"] == "0.00"
    assert broker.count("get_account") == 0
