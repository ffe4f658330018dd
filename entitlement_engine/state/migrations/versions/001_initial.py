"""Create the entitlement store tables.

Creates ``entitlements`` (one row per tenant), ``processed_events`` (the
billing event dedup ledger), and ``usage_events`` (usage history).

Revision ID: 001
Revises:
Create Date: 2026-10-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "entitlements",
        sa.Column("tenant_id", sa.String(128), primary_key=True),
        sa.Column("billing_customer_ref", sa.String(256), nullable=True),
        sa.Column("billing_subscription_ref", sa.String(256), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="none"),
        sa.Column("plan", sa.String(32), nullable=False, server_default="none"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usage_limit", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_applied_event_id", sa.String(256), nullable=True),
        sa.Column("last_applied_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("usage_count >= 0", name="ck_entitlements_usage_count_non_negative"),
        sa.CheckConstraint("usage_limit >= 0", name="ck_entitlements_usage_limit_non_negative"),
        sa.CheckConstraint(
            "status IN ('none', 'trialing', 'active', 'past_due', 'canceled')",
            name="ck_entitlements_status",
        ),
        sa.CheckConstraint(
            "plan IN ('none', 'prototype', 'operator', 'foundry')",
            name="ck_entitlements_plan",
        ),
    )
    op.create_index("ix_entitlements_subscription_ref", "entitlements", ["billing_subscription_ref"])
    op.create_index("ix_entitlements_customer_ref", "entitlements", ["billing_customer_ref"])

    op.create_table(
        "processed_events",
        sa.Column("event_id", sa.String(256), primary_key=True),
        sa.Column("tenant_id", sa.String(128), nullable=True),
        sa.Column("event_type", sa.String(128), nullable=True),
        sa.Column("outcome", sa.String(32), nullable=False, server_default="applied"),
        sa.Column("applied_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_processed_events_tenant", "processed_events", ["tenant_id"])
    op.create_index("ix_processed_events_applied_at", "processed_events", ["applied_at"])

    op.create_table(
        "usage_events",
        sa.Column("event_id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("usage_count_after", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_usage_events_tenant_created", "usage_events", ["tenant_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_usage_events_tenant_created", table_name="usage_events")
    op.drop_table("usage_events")
    op.drop_index("ix_processed_events_applied_at", table_name="processed_events")
    op.drop_index("ix_processed_events_tenant", table_name="processed_events")
    op.drop_table("processed_events")
    op.drop_index("ix_entitlements_customer_ref", table_name="entitlements")
    op.drop_index("ix_entitlements_subscription_ref", table_name="entitlements")
    op.drop_table("entitlements")
