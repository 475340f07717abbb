"""
routers/auth.py — Authentication endpoints for Stockgift.

Endpoints:
    POST /api/auth/register    — Create a user (optionally bound to an account)
    POST /api/auth/login       — Email + password login, sets the session cookie
    POST /api/auth/check-user  — Does this email already have a user / account?
    GET  /api/auth/me          — Current user profile

The session is a JWT carried in the `auth-token` httpOnly cookie; a Bearer
header is accepted as well.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models import User
from schemas import (
    AuthResponse,
    CheckUserRequest,
    CheckUserResponse,
    UserLoginRequest,
    UserRegisterRequest,
    UserResponse,
)
from security import hash_password, issue_session_token, limiter, verify_password, verify_token
from src.services.audit import log_event
from src.services.stores import GiftStore, UserStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


# ─────────────────────────────────────────────
# Shared dependency
# ─────────────────────────────────────────────

async def get_current_user(
    request: Request,
    bearer: str | None = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Validate the session cookie (or Bearer token) and return the active User."""
    exc = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )
    token = request.cookies.get(settings.session_cookie_name) or bearer
    if not token:
        raise exc
    try:
        payload = verify_token(token)
        if payload.get("type") != "access":
            raise exc
        user_id: str | None = payload.get("sub")
        if not user_id:
            raise exc
    except JWTError:
        raise exc

    user = await UserStore(db).get(user_id)
    if not user or not user.is_active:
        raise exc
    return user


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=settings.session_cookie_max_age,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse.model_validate(user)


# ─────────────────────────────────────────────
# POST /api/auth/register
# ─────────────────────────────────────────────

@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    body: UserRegisterRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Register a user and start a session.

    When an account id is supplied, previously claimed gifts for this email
    and account are attached to the new user.
    """
    users = UserStore(db)
    if await users.find_by_email(body.email):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User with this email already exists",
        )

    user = await users.create(
        body.email, hash_password(body.password), body.alpaca_account_id
    )

    linked = 0
    if body.alpaca_account_id:
        linked = await GiftStore(db).link_to_user(body.email, body.alpaca_account_id, user.id)

    await log_event(db, "register", request, user_id=user.id, details={"linked_gifts": linked})
    await db.commit()
    await db.refresh(user)  # load server-side timestamps

    token = issue_session_token(user.id, user.email)
    set_session_cookie(response, token)
    logger.info("New user registered: %s (linked gifts=%d)", body.email, linked)
    return AuthResponse(user=_user_response(user), token=token)


# ─────────────────────────────────────────────
# POST /api/auth/login
# ─────────────────────────────────────────────

@router.post("/login", response_model=AuthResponse)
@limiter.limit(settings.rate_limit_login)
async def login(
    body: UserLoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Authenticate with email + password and set the session cookie."""
    user = await UserStore(db).find_by_email(body.email)

    if not user or not verify_password(body.password, user.password_hash):
        await log_event(
            db, "login_failed", request,
            details={"email": body.email, "reason": "bad credentials"},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is disabled",
        )

    user.last_login = datetime.now(timezone.utc)
    await log_event(db, "login", request, user_id=user.id)

    token = issue_session_token(user.id, user.email)
    set_session_cookie(response, token)
    return AuthResponse(user=_user_response(user), token=token)


# ─────────────────────────────────────────────
# POST /api/auth/check-user
# ─────────────────────────────────────────────

@router.post("/check-user", response_model=CheckUserResponse)
async def check_user(body: CheckUserRequest, db: AsyncSession = Depends(get_db)):
    """Tell the claim page whether it can skip the onboarding form."""
    user = await UserStore(db).find_by_email(body.email)
    return CheckUserResponse(
        exists=user is not None,
        has_account=bool(user and user.alpaca_account_id),
    )


# ─────────────────────────────────────────────
# GET /api/auth/me
# ─────────────────────────────────────────────

@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Return the authenticated user's profile."""
    return _user_response(current_user)
