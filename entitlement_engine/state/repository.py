"""Repository classes providing access to the entitlement store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
(or execute Core statements directly); the caller is responsible for
``session.commit()``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.errors import StorageTransientError, TenantAlreadyExistsError
from entitlement_engine.state.database import dialect_name
from entitlement_engine.state.tables import (
    EntitlementTable,
    ProcessedEventTable,
    UsageEventTable,
)

logger = logging.getLogger(__name__)


async def _dialect_insert_ignore(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> int:
    """Dialect-aware ``INSERT ... ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.

    Returns
    -------
    int
        Number of rows inserted: ``1`` for a new row, ``0`` on conflict.
    """
    stmt: Any
    if dialect_name(session) == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    result = await session.execute(stmt)
    return result.rowcount or 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# EntitlementRepository
# ---------------------------------------------------------------------------


class EntitlementRepository:
    """Read and write per-tenant entitlement records."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, tenant_id: str) -> EntitlementTable:
        """Provision the record for a new tenant with ``status=none``.

        Raises
        ------
        TenantAlreadyExistsError
            If the tenant already has a record.
        """
        now = datetime.now(UTC)
        inserted = await _dialect_insert_ignore(
            self._session,
            EntitlementTable,
            values={
                "tenant_id": tenant_id,
                "status": "none",
                "plan": "none",
                "usage_count": 0,
                "usage_limit": 0,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["tenant_id"],
        )
        if not inserted:
            raise TenantAlreadyExistsError(tenant_id)
        row = await self.get(tenant_id)
        if row is None:
            raise StorageTransientError(f"Entitlement record for tenant '{tenant_id}' not readable after insert")
        logger.info("Provisioned entitlement record for tenant=%s", tenant_id)
        return row

    async def get(self, tenant_id: str) -> EntitlementTable | None:
        """Fetch a tenant's record without locking it.

        Always reloads from the database: metering updates ``usage_count``
        with Core statements that bypass the identity map.
        """
        stmt = (
            select(EntitlementTable)
            .where(EntitlementTable.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_update(self, tenant_id: str) -> EntitlementTable | None:
        """Fetch a tenant's record and hold its row lock until the transaction ends.

        On PostgreSQL this is ``SELECT ... FOR UPDATE``; SQLite ignores the
        clause and relies on its database-level write lock instead.
        """
        stmt = (
            select(EntitlementTable)
            .where(EntitlementTable.tenant_id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def increment_usage(self, tenant_id: str, quantity: int) -> int | None:
        """Atomically add *quantity* to ``usage_count`` if it stays within ``usage_limit``.

        A single conditional ``UPDATE ... RETURNING`` is both the check and
        the write, so concurrent callers can never jointly overshoot the limit.

        Returns
        -------
        int | None
            The new ``usage_count``, or ``None`` when the increment was
            refused (quota exhausted or unknown tenant).
        """
        stmt = (
            update(EntitlementTable)
            .where(
                EntitlementTable.tenant_id == tenant_id,
                EntitlementTable.usage_count + quantity <= EntitlementTable.usage_limit,
            )
            .values(
                usage_count=EntitlementTable.usage_count + quantity,
                updated_at=datetime.now(UTC),
            )
            .returning(EntitlementTable.usage_count)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def decrement_usage(self, tenant_id: str, quantity: int) -> int | None:
        """Atomically subtract *quantity* from ``usage_count``, flooring at zero.

        Returns the new ``usage_count``, or ``None`` for an unknown tenant.
        """
        stmt = (
            update(EntitlementTable)
            .where(EntitlementTable.tenant_id == tenant_id)
            .values(
                usage_count=case(
                    (EntitlementTable.usage_count >= quantity, EntitlementTable.usage_count - quantity),
                    else_=0,
                ),
                updated_at=datetime.now(UTC),
            )
            .returning(EntitlementTable.usage_count)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self, limit: int = 100, offset: int = 0) -> list[EntitlementTable]:
        """Return records ordered by tenant ID."""
        stmt = select(EntitlementTable).order_by(EntitlementTable.tenant_id).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# ProcessedEventRepository
# ---------------------------------------------------------------------------


class ProcessedEventRepository:
    """The dedup ledger: billing event IDs that have already been handled.

    Rows are write-once.  :meth:`mark_applied` is an atomic claim: it
    returns ``False`` when another transaction has already recorded (or is
    concurrently recording) the same event ID.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def has_been_applied(self, event_id: str) -> bool:
        stmt = select(ProcessedEventTable.event_id).where(ProcessedEventTable.event_id == event_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def mark_applied(
        self,
        event_id: str,
        tenant_id: str | None,
        *,
        event_type: str | None = None,
        outcome: str = "applied",
    ) -> bool:
        """Record *event_id* in the ledger.

        Returns ``True`` if this call inserted the row, ``False`` if the
        event ID was already present.
        """
        inserted = await _dialect_insert_ignore(
            self._session,
            ProcessedEventTable,
            values={
                "event_id": event_id,
                "tenant_id": tenant_id,
                "event_type": event_type,
                "outcome": outcome,
                "applied_at": datetime.now(UTC),
            },
            index_elements=["event_id"],
        )
        return inserted > 0

    async def set_outcome(self, event_id: str, outcome: str) -> None:
        """Set the outcome of a ledger row claimed earlier in this same transaction."""
        stmt = (
            update(ProcessedEventTable)
            .where(ProcessedEventTable.event_id == event_id)
            .values(outcome=outcome)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def get(self, event_id: str) -> ProcessedEventTable | None:
        stmt = select(ProcessedEventTable).where(ProcessedEventTable.event_id == event_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_tenant(self, tenant_id: str, limit: int = 50) -> list[ProcessedEventTable]:
        stmt = (
            select(ProcessedEventTable)
            .where(ProcessedEventTable.tenant_id == tenant_id)
            .order_by(ProcessedEventTable.applied_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def purge_older_than(self, retention_days: int) -> int:
        """Delete ledger rows older than *retention_days*.

        Returns the number of rows removed.
        """
        if retention_days < 1:
            raise ValueError(f"retention_days must be >= 1, got {retention_days}")
        cutoff = datetime.now(UTC) - timedelta(days=retention_days)
        stmt = delete(ProcessedEventTable).where(ProcessedEventTable.applied_at < cutoff)
        result = await self._session.execute(stmt)
        return result.rowcount or 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# UsageEventRepository
# ---------------------------------------------------------------------------


class UsageEventRepository:
    """Append-only usage history for one tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def record(self, action: str, quantity: int, usage_count_after: int) -> UsageEventTable:
        row = UsageEventTable(
            event_id=f"use-{uuid.uuid4().hex[:16]}",
            tenant_id=self._tenant_id,
            action=action,
            quantity=quantity,
            usage_count_after=usage_count_after,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_recent(self, limit: int = 50) -> list[UsageEventTable]:
        stmt = (
            select(UsageEventTable)
            .where(UsageEventTable.tenant_id == self._tenant_id)
            .order_by(UsageEventTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
