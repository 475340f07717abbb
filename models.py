"""
models.py — SQLAlchemy ORM models for Stockgift.

All models use UUIDs as primary keys and include audit timestamps.
Brokerage accounts and orders live at the broker; only their ids are stored here.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class GiftStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class TimestampMixin:
    """Adds created_at / updated_at to any model."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ─────────────────────────────────────────────────────────────────────────────
# USER
# ─────────────────────────────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Platform identity, optionally bound to one brokerage account.

    email is the natural key used to deduplicate brokerage accounts.
    password_hash may be empty for users created before they chose a password.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)

    alpaca_account_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_login: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # ── Relationships ──────────────────────────────────────────────────────
    gifts: Mapped[list["Gift"]] = relationship("Gift", back_populates="user")
    audit_logs: Mapped[list["AuditLog"]] = relationship(
        "AuditLog", back_populates="user", passive_deletes=True
    )

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email} account={self.alpaca_account_id}>"


# ─────────────────────────────────────────────────────────────────────────────
# GIFT
# ─────────────────────────────────────────────────────────────────────────────

class Gift(TimestampMixin, Base):
    """A pledged amount of money to be spent on one stock for a recipient.

    Lifecycle: created PENDING by the sender, moved to COMPLETED exactly once
    by the claim workflow. claim_token / claim_started_at form the per-gift
    claim lock held while a claim is in flight.
    """

    __tablename__ = "gifts"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_gifts_amount_positive"),
        Index("ix_gifts_receiver_email", "receiver_email"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    sender_name: Mapped[str] = mapped_column(String(120), nullable=False)
    sender_mobile: Mapped[str] = mapped_column(String(32), nullable=False)
    receiver_name: Mapped[str] = mapped_column(String(120), nullable=False)
    receiver_email: Mapped[str] = mapped_column(String(255), nullable=False)
    receiver_mobile: Mapped[str] = mapped_column(String(32), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    stock_symbol: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=GiftStatus.PENDING, index=True
    )

    alpaca_account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    claim_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claim_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # ── Relationships ──────────────────────────────────────────────────────
    user: Mapped["User | None"] = relationship("User", back_populates="gifts")

    def __repr__(self) -> str:
        return (
            f"<Gift id={self.id} amount={self.amount} symbol={self.stock_symbol} "
            f"status={self.status}>"
        )


# ─────────────────────────────────────────────────────────────────────────────
# AUDIT LOG
# ─────────────────────────────────────────────────────────────────────────────

class AuditLog(Base):
    """Immutable record of gift and auth events.

    Insert-only. event_details is free-form JSON so new
    event types can be added without schema migrations.
    """

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,  # nullable for anonymous events (gift creation, failed claims)
    )

    event_type: Mapped[str] = mapped_column(
        String(50), nullable=False, index=True
        # gift_created | claim_completed | claim_aborted | register | login | login_failed
    )
    event_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    # ── Relationships ──────────────────────────────────────────────────────
    user: Mapped["User | None"] = relationship("User", back_populates="audit_logs")

    def __repr__(self) -> str:
        return f"<AuditLog event={self.event_type} user_id={self.user_id}>"
