"""
database.py — Async engine, session factory, and the per-request session dependency.

PostgreSQL runs through asyncpg, local development and tests through aiosqlite.
Schema is created from the ORM models at startup; gifts tables that predate
the claim lock get its two columns added in place.
"""

import logging
from collections.abc import AsyncGenerator

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from config import settings

logger = logging.getLogger(__name__)

_ASYNC_PREFIXES = {
    "postgres://": "postgresql+asyncpg://",
    "postgresql://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}

# Columns added to `gifts` after the first release: (name, DDL type)
_CLAIM_LOCK_COLUMNS = [
    ("claim_token", "VARCHAR(64)"),
    ("claim_started_at", "TIMESTAMP"),
]


def async_database_url(url: str) -> str:
    """Rewrite a plain driver URL (as hosting providers hand them out) to its async driver."""
    for prefix, replacement in _ASYNC_PREFIXES.items():
        if url.startswith(prefix):
            return replacement + url[len(prefix):]
    return url


def engine_options(url: str) -> dict:
    """Engine kwargs for the given (already async) URL. SQLite gets no pool tuning."""
    options: dict = {"echo": settings.debug}
    if url.startswith("sqlite"):
        return options

    options.update(
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=True,
    )
    if settings.db_ssl_args:
        options["connect_args"] = settings.db_ssl_args
    return options


# ─────────────────────────────────────────────
# Engine + sessions
# ─────────────────────────────────────────────

DATABASE_URL = async_database_url(settings.database_url)
engine = create_async_engine(DATABASE_URL, **engine_options(DATABASE_URL))

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    pass


# ─────────────────────────────────────────────
# Schema
# ─────────────────────────────────────────────

async def add_missing_claim_columns(conn: AsyncConnection) -> list[str]:
    """ALTER an existing gifts table to carry the claim-lock columns; returns what was added."""
    existing = await conn.run_sync(
        lambda sync_conn: {col["name"] for col in inspect(sync_conn).get_columns("gifts")}
    )
    added = []
    for name, ddl_type in _CLAIM_LOCK_COLUMNS:
        if name in existing:
            continue
        await conn.exec_driver_sql(f"ALTER TABLE gifts ADD COLUMN {name} {ddl_type}")
        logger.info("Migration: added column gifts.%s", name)
        added.append(name)
    return added


async def create_tables() -> None:
    """Create every table in models.py (existing tables are left as they are)."""
    import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await add_missing_claim_columns(conn)

    logger.info("Database tables initialised")


# ─────────────────────────────────────────────
# Dependency
# ─────────────────────────────────────────────

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """One session per request: committed when the handler returns, rolled back if it raises."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
