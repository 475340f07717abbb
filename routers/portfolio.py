"""
routers/portfolio.py — Read-only view of a claimant's brokerage orders.

Endpoints:
    GET /api/portfolio/{account_id}/orders?status=all|open|closed
"""

import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status

from models import User
from routers.auth import get_current_user
from schemas import OrderListResponse, OrderSummary
from src.integrations.broker_client import AlpacaBrokerClient, BrokerAPIError
from src.services.broker_auth import BrokerCredentials, authenticate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/portfolio", tags=["Portfolio"])

ORDER_LIMIT = 50


@router.get("/{account_id}/orders", response_model=OrderListResponse)
async def list_orders(
    account_id: str,
    order_status: Literal["all", "open", "closed"] = Query("all", alias="status"),
    current_user: User = Depends(get_current_user),
):
    """Return the account's most recent orders (newest first, at most 50).

    Only the account linked to the signed-in user can be read.
    """
    if current_user.alpaca_account_id != account_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This account does not belong to you",
        )

    # ClaimError (missing keys, rejected credentials) is answered by the app-level handler
    credentials = BrokerCredentials.from_settings()
    access_token = await authenticate(
        credentials.api_key, credentials.api_secret, credentials.base_url
    )

    async with AlpacaBrokerClient(access_token, base_url=credentials.base_url) as broker:
        try:
            orders = await broker.list_orders(account_id, status=order_status, limit=ORDER_LIMIT)
        except BrokerAPIError as exc:
            logger.error("Fetching orders for %s failed: %s", account_id, exc.message)
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"Failed to fetch orders: {exc.message}",
            )

    return OrderListResponse(orders=[OrderSummary.model_validate(o) for o in orders])
