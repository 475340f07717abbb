"""
tests/test_api.py — HTTP surface: gifts, claim, auth, portfolio, health.

Requests go through the real FastAPI app via httpx.ASGITransport. The database
dependency is overridden with an in-memory SQLite session; the claim workflow
itself is patched out (it is covered in test_claim_workflow.py).
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from database import Base, get_db
from main import app, scrub_event
from security import issue_session_token, limiter
from src.services.account_resolver import ReturningClaimant
from src.services.claim_errors import SettlementTimeoutError
from src.services.claim_workflow import ClaimOutcome
from src.services.order_placement import OrderReceipt
from src.services.stores import UserStore

GIFT = {
    "sender_name": "Dana",
    "sender_mobile": "+15550000001",
    "receiver_name": "Sam",
    "receiver_mobile": "+1 555 000 0002",
    "amount": "119.98",
    "stock_symbol": "tsla",
}


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def client(session_factory):
    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    limiter.enabled = False
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    limiter.enabled = True
    app.dependency_overrides.clear()


# ═════════════════════════════════════════════
# GIFTS
# ═════════════════════════════════════════════

class TestGifts:
    @pytest.mark.asyncio
    async def test_create_and_fetch(self, client):
        with patch("routers.gifts.schedule_gift_notification") as notify:
            resp = await client.post("/api/gifts", json=GIFT)

        assert resp.status_code == 201
        gift_id = resp.json()["gift_id"]
        notify.assert_called_once()

        resp = await client.get(f"/api/gifts/{gift_id}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "PENDING"
        assert body["stock_symbol"] == "TSLA"
        assert Decimal(body["amount"]) == Decimal("119.98")
        assert body["receiver_email"] == "15550000002@whatsapp.temp"

    @pytest.mark.asyncio
    async def test_zero_amount_rejected(self, client):
        with patch("routers.gifts.schedule_gift_notification") as notify:
            resp = await client.post("/api/gifts", json={**GIFT, "amount": "0"})

        assert resp.status_code == 422
        assert resp.json()["error"] == "Validation failed"
        notify.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_symbol_rejected(self, client):
        resp = await client.post("/api/gifts", json={**GIFT, "stock_symbol": "GME"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_missing_gift(self, client):
        resp = await client.get("/api/gifts/does-not-exist")
        assert resp.status_code == 404


# ═════════════════════════════════════════════
# CLAIM
# ═════════════════════════════════════════════

class TestClaimEndpoint:
    @pytest.mark.asyncio
    async def test_success_sets_session_cookie(self, client):
        outcome = ClaimOutcome(
            gift_id="g-1",
            account_id="acct-1",
            user_id="user-1",
            email="sam@example.com",
            is_existing_user=False,
            resolution=ReturningClaimant("acct-1"),
            order=OrderReceipt("ord-1", "TSLA", Decimal("114.27"), "accepted"),
            session_token="jwt-token",
        )
        workflow = MagicMock()
        workflow.run = AsyncMock(return_value=outcome)

        with patch("routers.gifts.ClaimWorkflow", return_value=workflow):
            resp = await client.post("/api/gifts/claim", json={"gift_id": "g-1", "email": "sam@example.com"})

        assert resp.status_code == 200
        body = resp.json()
        assert body == {
            "success": True,
            "account_id": "acct-1",
            "is_existing_user": False,
            "token": "jwt-token",
            "order_id": "ord-1",
            "notional": "114.27",
        }
        assert resp.cookies.get("auth-token") == "jwt-token"
        (claim_request,) = workflow.run.await_args.args
        assert claim_request.gift_id == "g-1"

    @pytest.mark.asyncio
    async def test_claim_error_maps_to_status_and_envelope(self, client):
        workflow = MagicMock()
        workflow.run = AsyncMock(
            side_effect=SettlementTimeoutError(
                "Insufficient buying power after journal",
                details={"available_buying_power": "95.24", "required_buying_power": "100.00"},
            )
        )

        with patch("routers.gifts.ClaimWorkflow", return_value=workflow):
            resp = await client.post("/api/gifts/claim", json={"gift_id": "g-1"})

        assert resp.status_code == 504
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"] == "Insufficient buying power after journal"
        assert body["details"]["available_buying_power"] == "95.24"
        assert "auth-token" not in resp.cookies


# ═════════════════════════════════════════════
# AUTH
# ═════════════════════════════════════════════

class TestAuth:
    @pytest.mark.asyncio
    async def test_register_login_me(self, client):
        resp = await client.post(
            "/api/auth/register",
            json={"email": "sam@example.com", "password": "hunter22", "alpaca_account_id": "acct-1"},
        )
        assert resp.status_code == 201
        token = resp.json()["token"]
        assert resp.cookies.get("auth-token") == token

        resp = await client.post("/api/auth/login", json={"email": "sam@example.com", "password": "hunter22"})
        assert resp.status_code == 200

        resp = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["alpaca_account_id"] == "acct-1"
        assert resp.json()["has_password"] is True

    @pytest.mark.asyncio
    async def test_duplicate_register(self, client):
        payload = {"email": "sam@example.com", "password": "hunter22"}
        assert (await client.post("/api/auth/register", json=payload)).status_code == 201
        assert (await client.post("/api/auth/register", json=payload)).status_code == 409

    @pytest.mark.asyncio
    async def test_short_password_rejected(self, client):
        resp = await client.post("/api/auth/register", json={"email": "sam@example.com", "password": "12345"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_wrong_password(self, client):
        await client.post("/api/auth/register", json={"email": "sam@example.com", "password": "hunter22"})
        resp = await client.post("/api/auth/login", json={"email": "sam@example.com", "password": "nope-nope"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_check_user(self, client):
        resp = await client.post("/api/auth/check-user", json={"email": "new@example.com"})
        assert resp.json() == {"exists": False, "has_account": False}

        await client.post(
            "/api/auth/register",
            json={"email": "new@example.com", "password": "hunter22", "alpaca_account_id": "acct-7"},
        )
        resp = await client.post("/api/auth/check-user", json={"email": "new@example.com"})
        assert resp.json() == {"exists": True, "has_account": True}

    @pytest.mark.asyncio
    async def test_me_requires_session(self, client):
        resp = await client.get("/api/auth/me")
        assert resp.status_code == 401


# ═════════════════════════════════════════════
# PORTFOLIO
# ═════════════════════════════════════════════

@pytest.mark.asyncio
async def test_orders_only_for_own_account(client, session_factory):
    async with session_factory() as session:
        user = await UserStore(session).create("sam@example.com", None, "acct-1")
        await session.commit()
    token = issue_session_token(user.id, user.email)

    resp = await client.get(
        "/api/portfolio/acct-other/orders", headers={"Authorization": f"Bearer {token}"}
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_orders_require_login(client):
    resp = await client.get("/api/portfolio/acct-1/orders")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_orders_listed_for_owner(client, session_factory):
    async with session_factory() as session:
        user = await UserStore(session).create("sam@example.com", None, "acct-1")
        await session.commit()
    token = issue_session_token(user.id, user.email)

    broker = AsyncMock()
    broker.list_orders.return_value = [
        {"id": "ord-1", "symbol": "TSLA", "notional": "114.27", "side": "buy", "status": "filled",
         "client_order_id": "ignored"},
    ]
    broker_cls = MagicMock()
    broker_cls.return_value.__aenter__.return_value = broker

    with patch("routers.portfolio.authenticate", AsyncMock(return_value="tok")), \
         patch("routers.portfolio.AlpacaBrokerClient", broker_cls):
        resp = await client.get(
            "/api/portfolio/acct-1/orders?status=closed",
            headers={"Authorization": f"Bearer {token}"},
        )

    assert resp.status_code == 200
    (order,) = resp.json()["orders"]
    assert order["id"] == "ord-1"
    assert order["notional"] == "114.27"
    broker.list_orders.assert_awaited_once_with("acct-1", status="closed", limit=50)


@pytest.mark.asyncio
async def test_orders_without_broker_keys_use_error_envelope(client, session_factory, monkeypatch):
    from config import settings
    monkeypatch.setattr(settings, "alpaca_api_key", "")

    async with session_factory() as session:
        user = await UserStore(session).create("sam@example.com", None, "acct-1")
        await session.commit()
    token = issue_session_token(user.id, user.email)

    resp = await client.get("/api/portfolio/acct-1/orders", headers={"Authorization": f"Bearer {token}"})

    assert resp.status_code == 500
    assert resp.json()["error"] == "Missing Alpaca API credentials"
    assert "ALPACA_API_KEY" in resp.json()["details"]["missing"]


# ═════════════════════════════════════════════
# HEALTH
# ═════════════════════════════════════════════

@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_database_health(client):
    resp = await client.get("/health/database")
    assert resp.json()["services"]["database"]["status"] == "healthy"


@pytest.mark.asyncio
async def test_broker_health_reports_missing_config(client, monkeypatch):
    from config import settings
    monkeypatch.setattr(settings, "alpaca_api_key", "")
    monkeypatch.setattr(settings, "firm_account_id", "")

    resp = await client.get("/health/broker")

    body = resp.json()
    assert body["status"] == "degraded"
    assert "ALPACA_API_KEY" in body["services"]["broker"]["detail"]


# ═════════════════════════════════════════════
# MIDDLEWARE
# ═════════════════════════════════════════════

@pytest.mark.asyncio
async def test_request_id_echoed_and_api_not_cached(client):
    resp = await client.get("/api/gifts/missing", headers={"X-Request-ID": "req-123"})

    assert resp.headers["x-request-id"] == "req-123"
    assert resp.headers["cache-control"] == "no-store"
    assert resp.headers["x-content-type-options"] == "nosniff"


@pytest.mark.asyncio
async def test_validation_errors_name_plain_fields(client):
    resp = await client.post("/api/gifts", json={**GIFT, "stock_symbol": "GME"})
    fields = [d["field"] for d in resp.json()["details"]]
    assert fields == ["stock_symbol"]


def test_sentry_scrubs_claimant_identity():
    event = {"request": {"data": {"gift_id": "g-1", "tax_id": "666-55-4321", "password": "hunter22"}}}
    scrubbed = scrub_event(event, {})
    assert scrubbed["request"]["data"] == {
        "gift_id": "g-1",
        "tax_id": "[Filtered]",
        "password": "[Filtered]",
    }
