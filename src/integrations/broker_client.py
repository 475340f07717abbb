"""
src/integrations/broker_client.py — Alpaca Broker API client for Stockgift.

Thin async wrapper over the endpoints the claim workflow needs: OAuth token
grant, account create/search/status, cash journals, and orders. Every HTTP or
network failure surfaces as BrokerAPIError so callers can classify it.

No retries at this layer; the claim workflow owns its polling budgets.
Docs: https://docs.alpaca.markets/reference/ (Broker API)
"""

import logging
from typing import Any

import httpx

from config import settings

logger = logging.getLogger(__name__)

SANDBOX_AUTH_URL = "https://authx.sandbox.alpaca.markets/v1/oauth2/token"
PRODUCTION_AUTH_URL = "https://authx.alpaca.markets/v1/oauth2/token"


def auth_url_for(base_url: str) -> str:
    """Pick the OAuth host matching the configured broker environment."""
    return SANDBOX_AUTH_URL if "sandbox" in base_url else PRODUCTION_AUTH_URL


# ─────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────

class BrokerAPIError(Exception):
    """A broker request failed, either on the network or with an HTTP error."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        payload: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    def __repr__(self) -> str:
        return f"<BrokerAPIError status={self.status_code} message={self.message!r}>"


def _safe_json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text or None


def _error_message(payload: Any, fallback: str) -> str:
    """Pull the provider's human-readable message out of an error body."""
    if isinstance(payload, dict):
        for key in ("error_description", "message", "error"):
            value = payload.get(key)
            if value:
                return str(value)
    elif isinstance(payload, str) and payload:
        return payload[:300]
    return fallback


def _raise_for_broker_status(resp: httpx.Response) -> None:
    if resp.is_error:
        payload = _safe_json(resp)
        raise BrokerAPIError(
            _error_message(payload, f"HTTP {resp.status_code}"),
            status_code=resp.status_code,
            payload=payload,
        )


# ─────────────────────────────────────────────
# OAuth
# ─────────────────────────────────────────────

async def fetch_access_token(
    client_id: str,
    client_secret: str,
    auth_url: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """Run the client-credentials grant and return the raw token response.

    Raises:
        BrokerAPIError: on network failure or a non-2xx response.
    """
    async with httpx.AsyncClient(
        timeout=settings.broker_timeout_seconds, transport=transport
    ) as http:
        try:
            resp = await http.post(
                auth_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": client_id,
                    "client_secret": client_secret,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            raise BrokerAPIError(f"Auth request failed: {exc}") from exc
        _raise_for_broker_status(resp)
        return _safe_json(resp) or {}


# ─────────────────────────────────────────────
# Broker Client
# ─────────────────────────────────────────────

class AlpacaBrokerClient:
    """Alpaca Broker API client authenticated with a short-lived bearer token.

    Use as an async context manager, or call aclose() when done.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = (base_url or settings.alpaca_base_url).rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            timeout=settings.broker_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "AlpacaBrokerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
    ) -> Any:
        try:
            resp = await self._http.request(method, path, params=params, json=json)
        except httpx.HTTPError as exc:
            raise BrokerAPIError(f"{method} {path} failed: {exc}") from exc
        _raise_for_broker_status(resp)
        return _safe_json(resp) if resp.content else {}

    # ── Accounts ─────────────────────────────────────────────────────────────

    async def create_account(self, payload: dict) -> dict:
        return await self._request("POST", "/v1/accounts", json=payload)

    async def search_accounts(self, query: str) -> list[dict]:
        data = await self._request("GET", "/v1/accounts", params={"query": query})
        return data if isinstance(data, list) else []

    async def get_account(self, account_id: str) -> dict:
        return await self._request("GET", f"/v1/accounts/{account_id}")

    async def get_trading_account(self, account_id: str) -> dict:
        """Trading view of the account (buying_power, cash, equity)."""
        return await self._request("GET", f"/v1/trading/accounts/{account_id}/account")

    # ── Funding ──────────────────────────────────────────────────────────────

    async def create_journal(
        self,
        from_account: str,
        to_account: str,
        amount: str,
        entry_type: str = "JNLC",
    ) -> dict:
        return await self._request(
            "POST",
            "/v1/journals",
            json={
                "entry_type": entry_type,
                "from_account": from_account,
                "to_account": to_account,
                "amount": amount,
            },
        )

    # ── Orders ───────────────────────────────────────────────────────────────

    async def place_order(self, account_id: str, payload: dict) -> dict:
        return await self._request(
            "POST", f"/v1/trading/accounts/{account_id}/orders", json=payload
        )

    async def list_orders(
        self,
        account_id: str,
        status: str | None = None,
        limit: int = 50,
    ) -> list[dict]:
        params: dict = {"limit": limit}
        if status and status != "all":
            params["status"] = status
        data = await self._request(
            "GET", f"/v1/trading/accounts/{account_id}/orders", params=params
        )
        return data if isinstance(data, list) else []

    async def aclose(self) -> None:
        await self._http.aclose()
