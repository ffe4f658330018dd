"""Async SQLAlchemy engine and session factory.

Supports both PostgreSQL (production) and SQLite (local dev mode and tests).
Engine type is determined by the database URL scheme:
  - ``postgresql+asyncpg://`` → connection-pooled PostgreSQL engine
  - ``sqlite+aiosqlite://``   → SQLite engine (see :mod:`sqlite_adapter`)
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# Tenant IDs are used as primary keys and log fields; keep them boring.
_TENANT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,128}$")

# Cache of async_sessionmaker instances keyed by engine identity to avoid
# re-creating the factory on every get_session call.
_session_factories: dict[int, tuple[AsyncEngine, async_sessionmaker[AsyncSession]]] = {}


def validate_tenant_id(tenant_id: str) -> str:
    """Return *tenant_id* unchanged or raise :class:`ValueError` if it is not allowlisted."""
    if not _TENANT_ID_RE.match(tenant_id):
        raise ValueError(f"Invalid tenant_id: must match {_TENANT_ID_RE.pattern!r}, got {tenant_id!r}")
    return tenant_id


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
    lock_timeout_ms: int = 5000,
    statement_timeout_ms: int = 10000,
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
    lock_timeout_ms:
        PostgreSQL ``lock_timeout``; bounds how long a webhook or usage
        request may wait on a tenant's row lock.
    statement_timeout_ms:
        PostgreSQL ``statement_timeout``.

    Returns
    -------
    AsyncEngine
        A configured async engine ready for session creation.
    """
    if database_url.startswith("sqlite"):
        from entitlement_engine.state.sqlite_adapter import get_local_engine

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
                "statement_timeout": str(statement_timeout_ms),
                "lock_timeout": str(lock_timeout_ms),
            }
        },
    )
    logger.info(
        "Created async engine pool_size=%d max_overflow=%d lock_timeout_ms=%d",
        pool_size,
        max_overflow,
        lock_timeout_ms,
    )
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the (cached) session factory bound to *engine*."""
    engine_key = id(engine)
    cached = _session_factories.get(engine_key)
    # Holding the engine keeps its id from being reused by a newer engine.
    if cached is not None and cached[0] is engine:
        return cached[1]
    factory = async_sessionmaker(engine, expire_on_commit=False)
    _session_factories[engine_key] = (engine, factory)
    return factory


def dialect_name(session: AsyncSession) -> str:
    """Return the dialect name (``"postgresql"``, ``"sqlite"``) of the session's bind."""
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session with automatic commit/rollback semantics.

    On successful exit the session is committed.  If an exception propagates
    the session is rolled back before the error is re-raised.
    """
    session = get_session_factory(engine)()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
