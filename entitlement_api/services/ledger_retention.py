"""Background purge of the billing event dedup ledger.

Ledger rows only need to outlive the provider's redelivery window; after
``retention_days`` they are deleted to bound storage.  The task runs inside
the API process as an ``asyncio`` background task started by the lifespan.
"""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_engine.state.repository import ProcessedEventRepository

logger = logging.getLogger(__name__)


class LedgerRetentionTask:
    """Periodically delete ledger rows older than the retention window.

    Parameters
    ----------
    session_factory:
        Factory used to open one short transaction per purge.
    retention_days:
        Rows whose ``applied_at`` is older than this are removed.
    interval_seconds:
        Pause between purges.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retention_days: int = 90,
        interval_seconds: float = 3600,
    ) -> None:
        self._session_factory = session_factory
        self._retention_days = retention_days
        self._interval_seconds = interval_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("LedgerRetentionTask already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "LedgerRetentionTask started (retention=%d days, interval=%ss)",
            self._retention_days,
            self._interval_seconds,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("LedgerRetentionTask stopped")

    async def purge_once(self) -> int:
        """Run one purge and return the number of rows deleted."""
        async with self._session_factory() as session:
            async with session.begin():
                deleted = await ProcessedEventRepository(session).purge_older_than(self._retention_days)
        if deleted:
            logger.info("Purged %d ledger rows older than %d days", deleted, self._retention_days)
        return deleted

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.purge_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                # Transient database trouble; try again next interval.
                logger.error("Ledger purge failed: %s", exc, exc_info=True)
            await asyncio.sleep(self._interval_seconds)
