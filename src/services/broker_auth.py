"""
src/services/broker_auth.py — Obtain a short-lived Broker API access token.

The token is used only for the current claim; nothing is cached or persisted.
"""

import logging
from dataclasses import dataclass

import httpx

from config import settings
from src.integrations.broker_client import (
    BrokerAPIError,
    auth_url_for,
    fetch_access_token,
)
from src.services.claim_errors import BrokerAuthError, BrokerConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BrokerCredentials:
    """Service-level broker configuration used for one claim."""

    api_key: str
    api_secret: str
    base_url: str
    firm_account_id: str

    @classmethod
    def from_settings(cls) -> "BrokerCredentials":
        return cls(
            api_key=settings.alpaca_api_key,
            api_secret=settings.alpaca_secret_key,
            base_url=settings.alpaca_base_url,
            firm_account_id=settings.firm_account_id,
        )

    def missing(self) -> list[str]:
        """Env var names of the values that are not configured."""
        names = []
        if not self.api_key:
            names.append("ALPACA_API_KEY")
        if not self.api_secret:
            names.append("ALPACA_SECRET_KEY")
        if not self.firm_account_id:
            names.append("FIRM_ACCOUNT_ID")
        return names

    def require(self) -> None:
        """Raise BrokerConfigurationError naming every missing value."""
        missing = self.missing()
        if missing:
            logger.error("Missing broker configuration: %s", ", ".join(missing))
            raise BrokerConfigurationError(
                "Missing Alpaca API credentials",
                details={
                    "missing": missing,
                    "message": f"Missing: {', '.join(missing)}. Check the server environment.",
                },
            )


async def authenticate(
    api_key: str,
    api_secret: str,
    base_url: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    """Exchange the service key/secret for a bearer token.

    Args:
        api_key: Broker client id.
        api_secret: Broker client secret.
        base_url: Configured Broker API base URL; decides sandbox vs production auth host.

    Raises:
        BrokerConfigurationError: key or secret not configured.
        BrokerAuthError: the provider rejected the request or sent no token.
    """
    missing = []
    if not api_key:
        missing.append("ALPACA_API_KEY")
    if not api_secret:
        missing.append("ALPACA_SECRET_KEY")
    if missing:
        raise BrokerConfigurationError(
            "Missing Alpaca API credentials", details={"missing": missing}
        )

    auth_url = auth_url_for(base_url)
    try:
        data = await fetch_access_token(api_key, api_secret, auth_url, transport=transport)
    except BrokerAPIError as exc:
        logger.error(
            "Broker auth failed url=%s status=%s: %s",
            auth_url, exc.status_code, exc.message,
        )
        raise BrokerAuthError(
            "Failed to authenticate with Alpaca",
            details={
                "url": auth_url,
                "status": exc.status_code,
                "reason": exc.message,
                "response": exc.payload,
            },
        ) from exc

    token = data.get("access_token") if isinstance(data, dict) else None
    if not token:
        logger.error("Broker auth returned no access token (url=%s)", auth_url)
        raise BrokerAuthError(
            "Failed to authenticate with Alpaca",
            details={"url": auth_url, "reason": "No access token received from Alpaca"},
        )

    logger.debug("Broker access token obtained from %s", auth_url)
    return token
