"""Initial schema: tasks, wallet ledger and balances, outbox, operator alerts.

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

# Transaction types that may occur at most once per task.
_ONCE_PER_TASK = "type IN ('escrow_hold', 'release', 'refund', 'platform_fee')"


def upgrade() -> None:
    # --- tasks ---
    op.create_table(
        "tasks",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("poster_id", sa.VARCHAR(), nullable=False),
        sa.Column("hunter_id", sa.VARCHAR(), nullable=True),
        sa.Column("amount_cents", sa.INTEGER(), nullable=False),
        sa.Column("currency", sa.VARCHAR(), nullable=False, server_default="usd"),
        sa.Column("status", sa.VARCHAR(), nullable=False, server_default="open"),
        sa.Column("escrow_reference_id", sa.VARCHAR(), nullable=True),
        sa.Column("hold_ref", sa.VARCHAR(), nullable=True),
        sa.Column("accepted_at", sa.DATETIME(), nullable=True),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.Column("updated_at", sa.DATETIME(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("escrow_reference_id"),
        sa.CheckConstraint("amount_cents > 0", name="ck_tasks_amount_positive"),
    )
    op.create_index("ix_tasks_poster_id", "tasks", ["poster_id"])
    op.create_index("ix_tasks_hunter_id", "tasks", ["hunter_id"])
    op.create_index("ix_tasks_status", "tasks", ["status"])
    op.create_index("ix_tasks_status_updated_at", "tasks", ["status", "updated_at"])

    # --- wallet_transactions (append-only ledger) ---
    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("task_id", sa.VARCHAR(), nullable=True),
        sa.Column("user_id", sa.VARCHAR(), nullable=False),
        sa.Column("type", sa.VARCHAR(), nullable=False),
        sa.Column("amount_cents", sa.INTEGER(), nullable=False),
        sa.Column("external_reference_id", sa.VARCHAR(), nullable=True),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"]),
    )
    op.create_index("ix_wallet_transactions_task_id", "wallet_transactions", ["task_id"])
    op.create_index("ix_wallet_transactions_user_id", "wallet_transactions", ["user_id"])
    op.create_index(
        "ix_wallet_transactions_user_created", "wallet_transactions", ["user_id", "created_at"]
    )
    op.create_index(
        "ux_wallet_transactions_task_type",
        "wallet_transactions",
        ["task_id", "type"],
        unique=True,
        sqlite_where=sa.text(_ONCE_PER_TASK),
        postgresql_where=sa.text(_ONCE_PER_TASK),
    )

    # --- wallet_balances ---
    op.create_table(
        "wallet_balances",
        sa.Column("user_id", sa.VARCHAR(), nullable=False),
        sa.Column("balance_cents", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DATETIME(), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
        sa.CheckConstraint("balance_cents >= 0", name="ck_wallet_balances_non_negative"),
    )

    # --- outbox_events ---
    op.create_table(
        "outbox_events",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("event_type", sa.VARCHAR(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.VARCHAR(), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("next_retry_at", sa.DATETIME(), nullable=False),
        sa.Column("last_error", sa.VARCHAR(), nullable=True),
        sa.Column("dedupe_key", sa.VARCHAR(), nullable=True),
        sa.Column("task_id", sa.VARCHAR(), nullable=True),
        sa.Column("claimed_at", sa.DATETIME(), nullable=True),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.Column("processed_at", sa.DATETIME(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedupe_key"),
    )
    op.create_index("ix_outbox_events_event_type", "outbox_events", ["event_type"])
    op.create_index("ix_outbox_events_task_id", "outbox_events", ["task_id"])
    op.create_index(
        "ix_outbox_events_status_next_retry", "outbox_events", ["status", "next_retry_at"]
    )

    # --- operator_alerts ---
    op.create_table(
        "operator_alerts",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("kind", sa.VARCHAR(), nullable=False),
        sa.Column("outbox_event_id", sa.VARCHAR(), nullable=True),
        sa.Column("task_id", sa.VARCHAR(), nullable=True),
        sa.Column("detail", sa.VARCHAR(), nullable=False),
        sa.Column("resolved", sa.BOOLEAN(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.Column("resolved_at", sa.DATETIME(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_operator_alerts_outbox_event_id", "operator_alerts", ["outbox_event_id"])
    op.create_index("ix_operator_alerts_task_id", "operator_alerts", ["task_id"])
    op.create_index("ix_operator_alerts_resolved", "operator_alerts", ["resolved"])


def downgrade() -> None:
    op.drop_table("operator_alerts")
    op.drop_table("outbox_events")
    op.drop_table("wallet_balances")
    op.drop_table("wallet_transactions")
    op.drop_table("tasks")
