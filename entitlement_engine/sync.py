"""Entitlement synchronization service.

Ties the pieces of webhook processing together: normalize a verified
payload, run the reconciler in its own bounded transaction, and translate
every failure into either an acknowledged outcome or a retryable
:class:`StorageTransientError`.  The HTTP webhook route and the ``replay``
CLI command both go through :meth:`EntitlementSync.handle`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_engine.billing.normalizer import EventNormalizer
from entitlement_engine.billing.reconciler import Reconciler
from entitlement_engine.errors import (
    MalformedEventError,
    StorageTransientError,
    UnrecognizedEventTypeError,
)
from entitlement_engine.metering import DEFAULT_ACTION, UsageMeter
from entitlement_engine.models.entitlement import ApplyOutcome, ConsumeResult, ReleaseResult, SyncResult
from entitlement_engine.plans import DEFAULT_CATALOG, PlanCatalog
from entitlement_engine.state.repository import ProcessedEventRepository

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


class EntitlementSync:
    """Process billing events and usage against one database.

    Parameters
    ----------
    session_factory:
        Factory for the sessions each operation runs in.  Every call opens
        and commits (or rolls back) its own transaction.
    catalog:
        Plan catalog used to resolve usage limits.
    price_plan_map:
        Provider price ID to plan name, forwarded to the normalizer.
    timeout_seconds:
        Hard bound on one event application, lock waits included.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: PlanCatalog | None = None,
        price_plan_map: Mapping[str, str] | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._catalog = catalog or DEFAULT_CATALOG
        self._normalizer = EventNormalizer(price_plan_map)
        self._timeout_seconds = timeout_seconds

    async def handle(self, payload: Mapping[str, Any]) -> SyncResult:
        """Handle one verified webhook payload.

        Returns a :class:`SyncResult` for every outcome the provider should
        treat as delivered, including ``ignored`` and ``dropped``.

        Raises
        ------
        StorageTransientError
            The transaction failed or timed out and was rolled back; the
            provider should redeliver.
        """
        try:
            event = self._normalizer.normalize(payload)
        except UnrecognizedEventTypeError as exc:
            logger.info("Ignoring billing event %s of type %s", exc.event_id, exc.event_type)
            return SyncResult(outcome=ApplyOutcome.IGNORED, event_id=exc.event_id, event_type=exc.event_type)
        except MalformedEventError as exc:
            return await self._drop(exc)

        try:
            async with asyncio.timeout(self._timeout_seconds):
                async with self._session_factory() as session:
                    async with session.begin():
                        outcome = await Reconciler(session, self._catalog).apply(event)
        except TimeoutError as exc:
            logger.error(
                "Applying billing event %s timed out after %.1fs; rolled back",
                event.event_id,
                self._timeout_seconds,
            )
            raise StorageTransientError(f"Timed out applying event {event.event_id}") from exc
        except SQLAlchemyError as exc:
            logger.error("Storage failure applying billing event %s: %s", event.event_id, exc)
            raise StorageTransientError(f"Storage failure applying event {event.event_id}") from exc

        return SyncResult(
            outcome=outcome,
            event_id=event.event_id,
            event_type=event.event_type,
            tenant_id=event.tenant_id,
        )

    async def _drop(self, exc: MalformedEventError) -> SyncResult:
        """Acknowledge a malformed event, recording it when its ID is known."""
        logger.warning("Dropping malformed billing event %s (%s): %s", exc.event_id, exc.event_type, exc)
        if exc.event_id:
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        await ProcessedEventRepository(session).mark_applied(
                            exc.event_id,
                            None,
                            event_type=exc.event_type,
                            outcome=ApplyOutcome.DROPPED.value,
                        )
            except SQLAlchemyError as db_exc:
                raise StorageTransientError(f"Storage failure recording dropped event {exc.event_id}") from db_exc
        return SyncResult(
            outcome=ApplyOutcome.DROPPED,
            event_id=exc.event_id,
            event_type=exc.event_type,
            detail=str(exc),
        )

    async def consume(self, tenant_id: str, n: int = 1, action: str = DEFAULT_ACTION) -> ConsumeResult:
        """Run :meth:`UsageMeter.try_consume` in its own transaction."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    return await UsageMeter(session).try_consume(tenant_id, n, action)
        except SQLAlchemyError as exc:
            logger.error("Storage failure consuming usage for tenant=%s: %s", tenant_id, exc)
            raise StorageTransientError(f"Storage failure consuming usage for tenant {tenant_id}") from exc

    async def release(self, tenant_id: str, n: int = 1, action: str = DEFAULT_ACTION) -> ReleaseResult:
        """Run :meth:`UsageMeter.release` in its own transaction."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    return await UsageMeter(session).release(tenant_id, n, action)
        except SQLAlchemyError as exc:
            logger.error("Storage failure releasing usage for tenant=%s: %s", tenant_id, exc)
            raise StorageTransientError(f"Storage failure releasing usage for tenant {tenant_id}") from exc
