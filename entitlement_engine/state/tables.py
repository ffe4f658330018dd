"""SQLAlchemy 2.0 ORM table definitions for the entitlement store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always yields UTC-aware values.

    PostgreSQL returns aware datetimes natively; SQLite stores them as text
    and hands back naive values, which would make comparisons against
    ``datetime.now(UTC)`` raise.  Naive results are therefore tagged as UTC,
    and aware inputs are normalised to UTC before storage.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if isinstance(value, datetime) and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all entitlement tables."""


# ---------------------------------------------------------------------------
# Entitlements
# ---------------------------------------------------------------------------


class EntitlementTable(Base):
    """Per-tenant authorization snapshot.

    Exactly one row per tenant.  ``status``/``plan``/period columns and
    ``usage_limit`` are written only by the reconciler; ``usage_count`` is
    written by metering, except for period-boundary resets.
    """

    __tablename__ = "entitlements"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    billing_customer_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    billing_subscription_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    plan: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    usage_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_applied_event_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    last_applied_event_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("usage_count >= 0", name="ck_entitlements_usage_count_non_negative"),
        CheckConstraint("usage_limit >= 0", name="ck_entitlements_usage_limit_non_negative"),
        CheckConstraint(
            "status IN ('none', 'trialing', 'active', 'past_due', 'canceled')",
            name="ck_entitlements_status",
        ),
        CheckConstraint(
            "plan IN ('none', 'prototype', 'operator', 'foundry')",
            name="ck_entitlements_plan",
        ),
        Index("ix_entitlements_subscription_ref", "billing_subscription_ref"),
        Index("ix_entitlements_customer_ref", "billing_customer_ref"),
    )


# ---------------------------------------------------------------------------
# Dedup ledger
# ---------------------------------------------------------------------------


class ProcessedEventTable(Base):
    """Write-once ledger of billing event IDs that have been handled.

    The primary key on ``event_id`` is the backstop that prevents two
    concurrent deliveries of the same event from both being applied.
    ``tenant_id`` is nullable because malformed events may not carry one.
    """

    __tablename__ = "processed_events"

    event_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    tenant_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    event_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False, default="applied")
    applied_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_processed_events_tenant", "tenant_id"),
        Index("ix_processed_events_applied_at", "applied_at"),
    )


# ---------------------------------------------------------------------------
# Usage history
# ---------------------------------------------------------------------------


class UsageEventTable(Base):
    """One row per successful usage consumption or release.

    Written in the same transaction as the counter change; releases carry a
    negative ``quantity``.  Quota decisions never read this table; it exists
    for usage history.
    """

    __tablename__ = "usage_events"

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    usage_count_after: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_usage_events_tenant_created", "tenant_id", "created_at"),)
