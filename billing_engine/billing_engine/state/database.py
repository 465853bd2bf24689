"""Async SQLAlchemy engine and cross-process account locking.

Supports both PostgreSQL (production) and SQLite (local dev mode and tests).
Engine type is determined by the database URL scheme:
  - ``postgresql+asyncpg://`` → connection-pooled PostgreSQL engine
  - ``sqlite+aiosqlite://``   → SQLite engine via :mod:`sqlite_adapter`
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    create_async_engine,
)

logger = logging.getLogger(__name__)


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Parameters
    ----------
    database_url:
        Connection string (PostgreSQL or SQLite scheme).
    pool_size:
        Number of persistent connections for PostgreSQL (ignored for SQLite).
    max_overflow:
        Maximum overflow connections for PostgreSQL (ignored for SQLite).
    """
    if database_url.startswith("sqlite"):
        from billing_engine.state.sqlite_adapter import get_local_engine

        # Extract path from URL: sqlite+aiosqlite:///path/to/db
        db_path = database_url.split("///", 1)[-1] if "///" in database_url else ":memory:"
        return get_local_engine(db_path if db_path else ":memory:")

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        echo=False,
        connect_args={
            "server_settings": {
                "statement_timeout": "30000",  # 30 s
                "lock_timeout": "10000",  # 10 s
            }
        },
    )
    logger.info(
        "Created async engine pool_size=%d max_overflow=%d",
        pool_size,
        max_overflow,
    )
    return engine


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    dialect = getattr(bind, "dialect", None)
    if dialect is not None:
        return str(getattr(dialect, "name", ""))
    return str(getattr(bind, "url", ""))


async def acquire_account_lock(session: AsyncSession, account_id: str) -> None:
    """Take a transaction-scoped advisory lock on *account_id*.

    Serializes writers for the same account across API worker processes.
    The lock is released automatically when the transaction ends.  For
    SQLite this is a no-op: SQLite allows a single writer and local mode
    runs one process.
    """
    if "sqlite" in _dialect_name(session):
        return

    await session.execute(
        text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
        {"key": f"billing:{account_id}"},
    )
