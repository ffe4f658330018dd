"""FastAPI dependency injection for settings, database sessions, and entitlement services."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Path
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from entitlement_api.config import APISettings, load_api_settings
from entitlement_api.middleware.prometheus import record_gate_decision
from entitlement_engine.gate import AuthorizationGate
from entitlement_engine.models.entitlement import AccessDecision
from entitlement_engine.plans import PlanCatalog
from entitlement_engine.state.database import get_engine
from entitlement_engine.sync import EntitlementSync

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        lock_timeout_ms=settings.db_lock_timeout_ms,
        statement_timeout_ms=settings.db_statement_timeout_ms,
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used directly by components that open their own transactions (the
    webhook sync service, the ledger retention task).
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session(session_factory: SessionFactoryDep) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on error."""
    session = session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Entitlement services
# ---------------------------------------------------------------------------


def get_plan_catalog(settings: SettingsDep) -> PlanCatalog:
    return PlanCatalog(settings.plan_limit_overrides)


PlanCatalogDep = Annotated[PlanCatalog, Depends(get_plan_catalog)]


def get_entitlement_sync(
    settings: SettingsDep,
    session_factory: SessionFactoryDep,
    catalog: PlanCatalogDep,
) -> EntitlementSync:
    """Build the sync service; each operation opens its own transaction."""
    return EntitlementSync(
        session_factory,
        catalog=catalog,
        price_plan_map=settings.price_plan_map,
        timeout_seconds=settings.webhook_processing_timeout_seconds,
    )


SyncDep = Annotated[EntitlementSync, Depends(get_entitlement_sync)]

# ---------------------------------------------------------------------------
# Service authentication
# ---------------------------------------------------------------------------


def verify_service_token(
    settings: SettingsDep,
    x_service_token: Annotated[str | None, Header()] = None,
) -> None:
    """Require the ``X-Service-Token`` header to match ``API_SERVICE_TOKEN``.

    With no token configured (dev mode only, the settings validator forbids
    it elsewhere) every request is accepted.
    """
    expected = settings.service_token.get_secret_value()
    if not expected:
        return
    if not x_service_token or not hmac.compare_digest(x_service_token.encode(), expected.encode()):
        logger.warning("Rejected request with missing or invalid service token")
        raise HTTPException(status_code=401, detail="Invalid service token")


# ---------------------------------------------------------------------------
# Entitlement gate
# ---------------------------------------------------------------------------


async def require_entitlement(
    tenant_id: Annotated[str, Path(pattern=r"^[a-zA-Z0-9_-]{1,128}$")],
    session: SessionDep,
) -> AccessDecision:
    """Deny with 402 before any downstream work when the tenant may not act.

    Usage::

        @router.post("/tenants/{tenant_id}/generate")
        async def generate(decision: EntitlementDep) -> ...:
            ...
    """
    decision = await AuthorizationGate(session).check(tenant_id)
    record_gate_decision(decision.reason)
    if not decision.allowed:
        raise HTTPException(
            status_code=402,
            detail={
                "message": "An active subscription is required for this action.",
                "reason": decision.reason,
                "tenant_id": tenant_id,
            },
        )
    return decision


EntitlementDep = Annotated[AccessDecision, Depends(require_entitlement)]
