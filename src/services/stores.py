"""
src/services/stores.py — Gift and user persistence used by the claim workflow.

Plain unique-key lookups and updates over an AsyncSession. Lock writes commit
on their own: they have to be visible to concurrent requests before any
broker call is made. Everything else is committed by the caller.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models import Gift, GiftStatus, User

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────
# Users
# ─────────────────────────────────────────────

class UserStore:
    def __init__(self, db: AsyncSession):
        self._db = db

    async def get(self, user_id: str) -> User | None:
        result = await self._db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def find_by_email(self, email: str) -> User | None:
        result = await self._db.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    async def create(
        self,
        email: str,
        password_hash: str | None,
        alpaca_account_id: str | None = None,
    ) -> User:
        user = User(
            email=email,
            username=email,
            password_hash=password_hash,
            alpaca_account_id=alpaca_account_id,
        )
        self._db.add(user)
        await self._db.flush()  # assign user.id without committing
        logger.info("Created user %s (account=%s)", email, alpaca_account_id)
        return user

    async def update_account_id(self, user: User, account_id: str) -> User:
        if user.alpaca_account_id != account_id:
            logger.info(
                "Linking user %s to account %s (was %s)",
                user.id, account_id, user.alpaca_account_id,
            )
            user.alpaca_account_id = account_id
            await self._db.flush()
        return user


# ─────────────────────────────────────────────
# Gifts
# ─────────────────────────────────────────────

class GiftStore:
    def __init__(self, db: AsyncSession):
        self._db = db

    async def get(self, gift_id: str) -> Gift | None:
        result = await self._db.execute(
            select(Gift).where(Gift.id == gift_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        sender_name: str,
        sender_mobile: str,
        receiver_name: str,
        receiver_email: str,
        receiver_mobile: str,
        amount: Decimal,
        stock_symbol: str,
    ) -> Gift:
        gift = Gift(
            sender_name=sender_name,
            sender_mobile=sender_mobile,
            receiver_name=receiver_name,
            receiver_email=receiver_email,
            receiver_mobile=receiver_mobile,
            amount=amount,
            stock_symbol=stock_symbol,
            status=GiftStatus.PENDING,
        )
        self._db.add(gift)
        await self._db.flush()
        return gift

    async def acquire_claim(self, gift_id: str, token: str, ttl_seconds: int) -> bool:
        """Take the claim lock if the gift is still PENDING and unlocked.

        A lock older than ttl_seconds is treated as abandoned and taken over.
        Returns True when this caller now holds the lock.
        """
        now = _now()
        stale_before = now - timedelta(seconds=ttl_seconds)
        result = await self._db.execute(
            update(Gift)
            .where(
                and_(
                    Gift.id == gift_id,
                    Gift.status == GiftStatus.PENDING,
                    or_(Gift.claim_token.is_(None), Gift.claim_started_at < stale_before),
                )
            )
            .values(claim_token=token, claim_started_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()
        return result.rowcount == 1

    async def renew_claim(self, gift_id: str, token: str) -> bool:
        """Restart the lock's clock; False once another caller has taken it over."""
        result = await self._db.execute(
            update(Gift)
            .where(
                and_(
                    Gift.id == gift_id,
                    Gift.status == GiftStatus.PENDING,
                    Gift.claim_token == token,
                )
            )
            .values(claim_started_at=_now())
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()
        return result.rowcount == 1

    async def release_claim(self, gift_id: str, token: str) -> None:
        await self._db.execute(
            update(Gift)
            .where(and_(Gift.id == gift_id, Gift.claim_token == token))
            .values(claim_token=None, claim_started_at=None)
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()

    async def mark_completed(
        self,
        gift_id: str,
        account_id: str,
        user_id: str,
        token: str | None = None,
    ) -> Gift | None:
        """Move a PENDING gift to COMPLETED and link it; None if it was not PENDING."""
        conditions = [Gift.id == gift_id, Gift.status == GiftStatus.PENDING]
        if token is not None:
            conditions.append(Gift.claim_token == token)
        result = await self._db.execute(
            update(Gift)
            .where(and_(*conditions))
            .values(
                status=GiftStatus.COMPLETED,
                alpaca_account_id=account_id,
                user_id=user_id,
                claim_token=None,
                claim_started_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await self.get(gift_id)

    async def rollback(self) -> None:
        """Discard uncommitted changes made on this session."""
        await self._db.rollback()

    async def commit(self) -> None:
        await self._db.commit()

    async def link_to_user(self, receiver_email: str, account_id: str, user_id: str) -> int:
        """Attach already-claimed gifts for this email and account to a user."""
        result = await self._db.execute(
            update(Gift)
            .where(
                and_(
                    Gift.receiver_email == receiver_email,
                    Gift.alpaca_account_id == account_id,
                    Gift.user_id.is_(None),
                )
            )
            .values(user_id=user_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
