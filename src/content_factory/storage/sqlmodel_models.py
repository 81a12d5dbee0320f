"""SQLModel ORM tables for accounts, ledger, tasks and the durable queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel


class UserAccount(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint("credits_remaining >= 0", name="ck_users_credits_remaining_non_negative"),
        CheckConstraint("credits_used >= 0", name="ck_users_credits_used_non_negative"),
    )

    user_id: str = Field(primary_key=True)
    email: str = Field(sa_column=Column(Text, nullable=False, unique=True))
    display_name: str | None = None
    avatar_url: str | None = None
    role: str = Field(default="user")
    subscription_tier: str = Field(default="free", index=True)
    subscription_status: str = Field(default="active")
    subscription_started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    subscription_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    subscription_cancelled_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    credits_remaining: int = Field(default=0)
    credits_total: int = Field(default=0)
    credits_used: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_login_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class CreditTransaction(SQLModel, table=True):
    __tablename__ = "credit_transactions"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_credit_transactions_user_time", "user_id", "created_at"),
        Index(
            "uq_credit_transactions_task_refund",
            "task_id",
            unique=True,
            sqlite_where=text("type = 'refund' AND task_id IS NOT NULL"),
        ),
        CheckConstraint("amount > 0", name="ck_credit_transactions_amount_positive"),
    )

    transaction_id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    type: str = Field(index=True)
    amount: int
    balance_before: int
    balance_after: int
    task_id: str | None = Field(default=None, index=True)
    entity_type: str | None = None
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_user_status", "user_id", "status", "created_at"),)

    task_id: str = Field(primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    kind: str = Field(index=True)
    params_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    progress: int = Field(default=0)
    units_expected: int
    units_completed: int = Field(default=0)
    units_failed: int = Field(default=0)
    credits_cost: int
    credits_refunded: int = Field(default=0)
    research_payload_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = Field(default=None, index=True)
    overdue_alerted_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskUnit(SQLModel, table=True):
    __tablename__ = "task_units"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("task_id", "unit_id", name="uq_task_units_task_unit"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    unit_id: str
    status: str = Field(index=True)
    category: str | None = None
    size: int | None = None
    generation_time_ms: int | None = None
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueMessage(SQLModel, table=True):
    __tablename__ = "queue_messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queue_messages_ready", "status", "run_after", "created_at"),)

    message_key: str = Field(primary_key=True)
    task_kind: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    payload_hash: str
    status: str = Field(index=True)
    attempt: int = Field(default=0)
    max_attempts: int = Field(default=3)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    worker_id: str | None = None
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class Subscription(SQLModel, table=True):
    __tablename__ = "subscriptions"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("payment_provider", "payment_id", name="uq_subscriptions_payment"),
        Index("idx_subscriptions_user", "user_id", "created_at"),
    )

    subscription_id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    tier: str
    status: str = Field(index=True)
    amount_paid_cents: int = Field(default=0)
    currency: str = Field(default="USD")
    credits_granted: int
    payment_provider: str | None = None
    payment_id: str | None = None
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    cancelled_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
