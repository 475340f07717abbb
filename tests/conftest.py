"""
tests/conftest.py — Shared pytest configuration and fixtures.

Everything here is offline: the broker is a scripted FakeBroker, the stores
are in-memory fakes, and polling sleeps return immediately.

Markers:
  @pytest.mark.live  — requires real Alpaca sandbox keys; skipped unless set

Run unit tests only:
    pytest tests/ -m "not live" -v
"""

import os
import sys
from decimal import Decimal
from itertools import count
from pathlib import Path
from types import SimpleNamespace

import pytest

# ─── Path setup ──────────────────────────────────────────────────────────────
# Ensure the project root is on sys.path so imports resolve correctly
ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

# Load .env.test if present (never overrides variables already exported)
from dotenv import load_dotenv
load_dotenv(ROOT / ".env.test", override=False)


# ─── Marker registration ─────────────────────────────────────────────────────
def pytest_configure(config):
    config.addinivalue_line("markers", "live: marks test as a live integration test requiring real API keys")


# ─── Settings override for tests ─────────────────────────────────────────────
@pytest.fixture(autouse=True)
def reload_settings():
    """Force settings to reload from env on each test (avoids cached stale values)."""
    from config import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ─── Broker fake ─────────────────────────────────────────────────────────────

class FakeBroker:
    """Scripted stand-in for AlpacaBrokerClient.

    Each endpoint is given a list of responses consumed in order; the last
    entry repeats once the list is down to one. An exception instance in the
    list is raised instead of returned. Every call is recorded in `calls`.
    """

    def __init__(self, **scripts):
        self.scripts = {name: list(items) for name, items in scripts.items()}
        self.calls: list[tuple] = []
        self.closed = False

    def _next(self, name: str):
        script = self.scripts.get(name)
        if not script:
            raise AssertionError(f"unexpected broker call: {name}")
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def payloads(self, name: str) -> list:
        return [call[1:] for call in self.calls if call[0] == name]

    async def create_account(self, payload):
        self.calls.append(("create_account", payload))
        return self._next("create_account")

    async def search_accounts(self, query):
        self.calls.append(("search_accounts", query))
        return self._next("search_accounts")

    async def get_account(self, account_id):
        self.calls.append(("get_account", account_id))
        return self._next("get_account")

    async def get_trading_account(self, account_id):
        self.calls.append(("get_trading_account", account_id))
        return self._next("get_trading_account")

    async def create_journal(self, from_account, to_account, amount, entry_type="JNLC"):
        self.calls.append(("create_journal", from_account, to_account, amount))
        return self._next("create_journal")

    async def place_order(self, account_id, payload):
        self.calls.append(("place_order", account_id, payload))
        return self._next("place_order")

    async def list_orders(self, account_id, status=None, limit=50):
        self.calls.append(("list_orders", account_id, status, limit))
        return self._next("list_orders")

    async def aclose(self):
        self.closed = True


# ─── Store fakes ─────────────────────────────────────────────────────────────

_ids = count(1)


class FakeUserStore:
    def __init__(self, users=()):
        self.users = {u.email: u for u in users}
        self.created: list = []

    async def get(self, user_id):
        return next((u for u in self.users.values() if u.id == user_id), None)

    async def find_by_email(self, email):
        return self.users.get(email)

    async def create(self, email, password_hash, alpaca_account_id=None):
        user = make_user(email=email, password_hash=password_hash, alpaca_account_id=alpaca_account_id)
        self.users[email] = user
        self.created.append(user)
        return user

    async def update_account_id(self, user, account_id):
        user.alpaca_account_id = account_id
        return user


class FakeGiftStore:
    """In-memory GiftStore honouring the claim lock and PENDING → COMPLETED rule."""

    def __init__(self, gifts=()):
        self.gifts = {g.id: g for g in gifts}
        self.commits = 0
        self.rollbacks = 0
        self.renewals = []
        self.fail_commit = False

    async def get(self, gift_id):
        return self.gifts.get(gift_id)

    async def create(self, **fields):
        gift = make_gift(**fields)
        self.gifts[gift.id] = gift
        return gift

    async def acquire_claim(self, gift_id, token, ttl_seconds):
        gift = self.gifts.get(gift_id)
        if gift is None or gift.status != "PENDING" or gift.claim_token is not None:
            return False
        gift.claim_token = token
        return True

    async def renew_claim(self, gift_id, token):
        gift = self.gifts.get(gift_id)
        renewed = gift is not None and gift.status == "PENDING" and gift.claim_token == token
        self.renewals.append((gift_id, renewed))
        return renewed

    async def release_claim(self, gift_id, token):
        gift = self.gifts.get(gift_id)
        if gift is not None and gift.claim_token == token:
            gift.claim_token = None

    async def mark_completed(self, gift_id, account_id, user_id, token=None):
        gift = self.gifts.get(gift_id)
        if gift is None or gift.status != "PENDING":
            return None
        if token is not None and gift.claim_token != token:
            return None
        gift.status = "COMPLETED"
        gift.alpaca_account_id = account_id
        gift.user_id = user_id
        gift.claim_token = None
        return gift

    async def commit(self):
        if self.fail_commit:
            raise RuntimeError("database is locked")
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1


def make_gift(**overrides) -> SimpleNamespace:
    fields = dict(
        id=f"gift-{next(_ids)}",
        sender_name="Dana",
        sender_mobile="+15550000001",
        receiver_name="Sam",
        receiver_email="sam@example.com",
        receiver_mobile="+15550000002",
        amount=Decimal("100.00"),
        stock_symbol="TSLA",
        status="PENDING",
        alpaca_account_id=None,
        user_id=None,
        claim_token=None,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


def make_user(**overrides) -> SimpleNamespace:
    fields = dict(
        id=f"user-{next(_ids)}",
        email="sam@example.com",
        password_hash=None,
        alpaca_account_id=None,
        is_active=True,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


# ─── Fixtures ────────────────────────────────────────────────────────────────

@pytest.fixture
def no_sleep():
    """Injectable sleep that records requested delays instead of waiting."""
    delays: list[float] = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep


@pytest.fixture
def credentials():
    from src.services.broker_auth import BrokerCredentials
    return BrokerCredentials(
        api_key="CK-test",
        api_secret="secret-test",
        base_url="https://broker-api.sandbox.alpaca.markets",
        firm_account_id="firm-001",
    )


@pytest.fixture
def onboarding():
    """Claim form fields for a first-time claimant."""
    return dict(
        email="sam@example.com",
        password="hunter22",
        first_name="Sam",
        last_name="Rivera",
        date_of_birth="1990-04-12",
        tax_id="666-55-4321",
        street_address="20 N San Mateo Dr",
        city="San Mateo",
        state="CA",
        zip_code="94401",
        ip_address="203.0.113.7",
    )
