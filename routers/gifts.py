"""
routers/gifts.py — Gift endpoints for Stockgift.

Endpoints:
    POST /api/gifts        — Create a gift and notify the receiver on WhatsApp
    GET  /api/gifts/{id}   — Fetch a gift
    POST /api/gifts/claim  — Claim a gift: open/fund an account and buy the stock
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth import set_session_cookie
from schemas import (
    ClaimGiftRequest,
    ClaimGiftResponse,
    ErrorResponse,
    GiftCreatedResponse,
    GiftCreateRequest,
    GiftResponse,
)
from security import limiter
from src.services.audit import client_ip, log_event
from src.services.claim_errors import ClaimError
from src.services.claim_workflow import ClaimRequest, ClaimWorkflow
from src.services.gifts import GiftValidationError, create_gift, schedule_gift_notification
from src.services.stores import GiftStore, UserStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/gifts", tags=["Gifts"])


# ─────────────────────────────────────────────
# POST /api/gifts
# ─────────────────────────────────────────────

@router.post("", response_model=GiftCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create(
    body: GiftCreateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Store a PENDING gift, then send the WhatsApp message in the background.

    The response never waits on (or fails because of) the notification.
    """
    try:
        gift = await create_gift(
            GiftStore(db),
            sender_name=body.sender_name,
            sender_mobile=body.sender_mobile,
            receiver_name=body.receiver_name,
            receiver_mobile=body.receiver_mobile,
            receiver_email=body.receiver_email,
            amount=body.amount,
            stock_symbol=body.stock_symbol,
        )
    except GiftValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)

    await log_event(
        db, "gift_created", request,
        details={"gift_id": gift.id, "amount": str(gift.amount), "symbol": gift.stock_symbol},
    )
    await db.commit()

    schedule_gift_notification(gift)
    return GiftCreatedResponse(gift_id=gift.id)


# ─────────────────────────────────────────────
# POST /api/gifts/claim
# ─────────────────────────────────────────────

@router.post(
    "/claim",
    response_model=ClaimGiftResponse,
    responses={code: {"model": ErrorResponse} for code in (400, 404, 409, 500, 502, 504)},
)
@limiter.limit(settings.rate_limit_claim)
async def claim(
    body: ClaimGiftRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Run the claim workflow for one gift.

    On success the claimant gets a session cookie (new signups, or returning
    users who supplied their password). On failure the typed reason is
    returned with its HTTP status; the gift stays PENDING.
    """
    claim_request = ClaimRequest(**body.model_dump(), ip_address=client_ip(request))
    workflow = ClaimWorkflow(GiftStore(db), UserStore(db))

    try:
        outcome = await workflow.run(claim_request)
    except ClaimError as exc:
        await log_event(
            db, "claim_aborted", request,
            details={
                "gift_id": body.gift_id,
                "kind": exc.kind,
                "failed_after": exc.details.get("failed_after"),
            },
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "status": "error",
                "error": exc.message,
                "details": jsonable_encoder(exc.details),
            },
        )

    await log_event(
        db, "claim_completed", request,
        user_id=outcome.user_id,
        details={
            "gift_id": outcome.gift_id,
            "account_id": outcome.account_id,
            "resolution": type(outcome.resolution).__name__,
            "order_id": outcome.order.order_id,
        },
    )

    if outcome.session_token:
        set_session_cookie(response, outcome.session_token)

    return ClaimGiftResponse(
        account_id=outcome.account_id,
        is_existing_user=outcome.is_existing_user,
        token=outcome.session_token,
        order_id=outcome.order.order_id,
        notional=f"{outcome.order.notional:.2f}",
    )


# ─────────────────────────────────────────────
# GET /api/gifts/{gift_id}
# ─────────────────────────────────────────────

@router.get("/{gift_id}", response_model=GiftResponse)
async def get_gift(gift_id: str, db: AsyncSession = Depends(get_db)):
    """Return a gift by id."""
    gift = await GiftStore(db).get(gift_id)
    if gift is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Gift not found")
    return GiftResponse.model_validate(gift)
