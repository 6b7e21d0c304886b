"""SQLModel table definitions for gigledger."""

from __future__ import annotations

import enum
from datetime import UTC, datetime

from sqlalchemy import JSON, CheckConstraint, Column, Index, text
from sqlmodel import Field, SQLModel


class TaskStatus(str, enum.Enum):
    open = "open"
    pending_escrow = "pending_escrow"
    in_progress = "in_progress"
    completed = "completed"
    cancellation_requested = "cancellation_requested"
    cancelled = "cancelled"


class TransactionType(str, enum.Enum):
    deposit = "deposit"
    withdrawal = "withdrawal"
    escrow_hold = "escrow_hold"
    release = "release"
    refund = "refund"
    platform_fee = "platform_fee"


# Types that may occur at most once per task.
ONCE_PER_TASK = (
    TransactionType.escrow_hold,
    TransactionType.release,
    TransactionType.refund,
    TransactionType.platform_fee,
)


class OutboxStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class AlertKind(str, enum.Enum):
    outbox_exhausted = "outbox_exhausted"
    permanent_failure = "permanent_failure"
    reconciliation = "reconciliation"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands datetimes back naive; everything we store is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


_ONCE_PER_TASK_SQL = "type IN ({})".format(", ".join(f"'{t.value}'" for t in ONCE_PER_TASK))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_status_updated_at", "status", "updated_at"),
        CheckConstraint("amount_cents > 0", name="ck_tasks_amount_positive"),
    )

    id: str = Field(primary_key=True)
    # Canonical owner reference. Written once at creation; all ownership checks read it.
    poster_id: str = Field(index=True)
    hunter_id: str | None = Field(default=None, index=True)
    amount_cents: int
    currency: str = Field(default="usd")
    status: TaskStatus = Field(default=TaskStatus.open, index=True)
    escrow_reference_id: str | None = Field(default=None, unique=True)
    hold_ref: str | None = None
    accepted_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class WalletTransaction(SQLModel, table=True):
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        Index("ix_wallet_transactions_user_created", "user_id", "created_at"),
        Index(
            "ux_wallet_transactions_task_type",
            "task_id",
            "type",
            unique=True,
            sqlite_where=text(_ONCE_PER_TASK_SQL),
            postgresql_where=text(_ONCE_PER_TASK_SQL),
        ),
    )

    id: str = Field(primary_key=True)
    task_id: str | None = Field(default=None, foreign_key="tasks.id", index=True)
    user_id: str = Field(index=True)
    type: TransactionType
    amount_cents: int
    external_reference_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class UserWalletBalance(SQLModel, table=True):
    __tablename__ = "wallet_balances"
    __table_args__ = (
        CheckConstraint("balance_cents >= 0", name="ck_wallet_balances_non_negative"),
    )

    user_id: str = Field(primary_key=True)
    balance_cents: int = Field(default=0)
    updated_at: datetime = Field(default_factory=_utcnow)


class OutboxEvent(SQLModel, table=True):
    __tablename__ = "outbox_events"
    __table_args__ = (Index("ix_outbox_events_status_next_retry", "status", "next_retry_at"),)

    id: str = Field(primary_key=True)
    event_type: str = Field(index=True)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    status: OutboxStatus = Field(default=OutboxStatus.pending)
    retry_count: int = Field(default=0)
    next_retry_at: datetime = Field(default_factory=_utcnow)
    last_error: str | None = None
    # At most one live intent per key, e.g. one settlement (release or refund) per task.
    dedupe_key: str | None = Field(default=None, unique=True)
    task_id: str | None = Field(default=None, index=True)
    claimed_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    processed_at: datetime | None = None


class OperatorAlert(SQLModel, table=True):
    __tablename__ = "operator_alerts"

    id: str = Field(primary_key=True)
    kind: AlertKind
    outbox_event_id: str | None = Field(default=None, index=True)
    task_id: str | None = Field(default=None, index=True)
    detail: str
    resolved: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=_utcnow)
    resolved_at: datetime | None = None
