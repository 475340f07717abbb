"""
schemas.py — Pydantic request/response schemas for Stockgift.

Schemas validate input data and define the shape of API responses.
They are intentionally separate from SQLAlchemy models to keep the
API contract stable even when the database schema evolves.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, EmailStr, Field, field_validator

from config import settings


# ─────────────────────────────────────────────
# Generic / Envelope
# ─────────────────────────────────────────────

class SuccessResponse(BaseModel):
    """Standard success envelope."""

    status: str = "success"
    message: str | None = None
    data: Any | None = None


class ErrorResponse(BaseModel):
    """Standard error envelope."""

    status: str = "error"
    error: str
    details: dict[str, Any] | None = None


# ─────────────────────────────────────────────
# Gifts
# ─────────────────────────────────────────────

class GiftCreateRequest(BaseModel):
    """Payload for POST /api/gifts."""

    sender_name: str = Field(..., min_length=1, max_length=120)
    sender_mobile: str = Field(..., min_length=3, max_length=32)
    receiver_name: str = Field(..., min_length=1, max_length=120)
    receiver_email: EmailStr | None = None
    receiver_mobile: str = Field(..., min_length=3, max_length=32)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    stock_symbol: str = Field(..., min_length=1, max_length=10)

    @field_validator("stock_symbol")
    @classmethod
    def symbol_allowed(cls, v: str) -> str:
        symbol = v.strip().upper()
        if symbol not in settings.allowed_stock_symbols_list:
            raise ValueError(
                f"stock_symbol must be one of {settings.allowed_stock_symbols_list}"
            )
        return symbol

    @field_validator("receiver_mobile", "sender_mobile")
    @classmethod
    def mobile_has_digits(cls, v: str) -> str:
        if not any(c.isdigit() for c in v):
            raise ValueError("Mobile number must contain digits")
        return v.strip()


class GiftCreatedResponse(BaseModel):
    status: str = "success"
    gift_id: str


class GiftResponse(BaseModel):
    """Gift record returned from the API."""

    id: str
    sender_name: str
    sender_mobile: str
    receiver_name: str
    receiver_email: str
    receiver_mobile: str
    amount: Decimal
    stock_symbol: str
    status: str
    alpaca_account_id: str | None
    user_id: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


# ─────────────────────────────────────────────
# Claim
# ─────────────────────────────────────────────

class ClaimGiftRequest(BaseModel):
    """Payload for POST /api/gifts/claim.

    Returning claimants send only gift_id (and email); everyone else sends
    the full onboarding profile plus a password. Which case applies is
    decided server-side, so every field except gift_id is optional here.
    """

    gift_id: str = Field(..., min_length=1)
    email: str | None = None
    password: str | None = Field(default=None, max_length=128)
    first_name: str | None = None
    last_name: str | None = None
    date_of_birth: str | None = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    tax_id: str | None = None
    street_address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None


class ClaimGiftResponse(BaseModel):
    success: bool = True
    account_id: str
    is_existing_user: bool
    token: str | None = None
    order_id: str | None = None
    notional: str | None = None


# ─────────────────────────────────────────────
# Auth
# ─────────────────────────────────────────────

class UserRegisterRequest(BaseModel):
    """Payload for POST /api/auth/register."""

    email: EmailStr
    password: str = Field(..., max_length=128)
    alpaca_account_id: str | None = None

    @field_validator("password")
    @classmethod
    def password_length(cls, v: str) -> str:
        if len(v) < settings.min_password_length:
            raise ValueError(
                f"Password must be at least {settings.min_password_length} characters"
            )
        return v


class UserLoginRequest(BaseModel):
    """Payload for POST /api/auth/login."""

    email: EmailStr
    password: str


class CheckUserRequest(BaseModel):
    """Payload for POST /api/auth/check-user."""

    email: EmailStr


class UserResponse(BaseModel):
    """Public user profile returned from the API."""

    id: str
    email: str
    alpaca_account_id: str | None
    has_password: bool = False
    created_at: datetime

    model_config = {"from_attributes": True}


class AuthResponse(BaseModel):
    status: str = "success"
    user: UserResponse
    token: str


class CheckUserResponse(BaseModel):
    exists: bool
    has_account: bool = False


# ─────────────────────────────────────────────
# Notifications
# ─────────────────────────────────────────────

class WhatsAppSendRequest(BaseModel):
    """Payload for POST /api/notifications/whatsapp."""

    to: str = Field(..., min_length=3)
    message: str = Field(..., min_length=1)
    media_url: str | None = None


# ─────────────────────────────────────────────
# Portfolio
# ─────────────────────────────────────────────

class OrderSummary(BaseModel):
    id: str
    symbol: str | None = None
    notional: str | None = None
    qty: str | None = None
    filled_qty: str | None = None
    filled_avg_price: str | None = None
    side: str | None = None
    type: str | None = None
    status: str | None = None
    created_at: str | None = None
    filled_at: str | None = None


class OrderListResponse(BaseModel):
    status: str = "success"
    orders: list[OrderSummary]


# ─────────────────────────────────────────────
# Health
# ─────────────────────────────────────────────

class ServiceStatus(BaseModel):
    status: str  # healthy | degraded | error
    detail: str | None = None


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    services: dict[str, ServiceStatus] | None = None
