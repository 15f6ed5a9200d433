"""SQLModel ORM tables for orchestration storage."""

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
)
from sqlmodel import Field, SQLModel


class TokenAccount(SQLModel, table=True):
    __tablename__ = "token_accounts"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_token_accounts_balance_non_negative"),
    )

    owner_id: str = Field(primary_key=True)
    balance: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LedgerEntry(SQLModel, table=True):
    __tablename__ = "ledger_entries"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_ledger_entries_owner_time", "owner_id", "created_at"),)

    entry_id: int | None = Field(default=None, primary_key=True)
    owner_id: str = Field(
        sa_column=Column(
            ForeignKey("token_accounts.owner_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    amount: int
    reason_code: str = Field(index=True)
    balance_before: int
    balance_after: int
    task_id: str | None = Field(default=None, index=True)
    attempt_no: int | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LedgerReservation(SQLModel, table=True):
    __tablename__ = "ledger_reservations"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "attempt_no", name="uq_ledger_reservations_task_attempt"),
    )

    reservation_id: int | None = Field(default=None, primary_key=True)
    owner_id: str = Field(
        sa_column=Column(
            ForeignKey("token_accounts.owner_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str = Field(index=True)
    attempt_no: int
    amount: int
    state: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    settled_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class GenerationTask(SQLModel, table=True):
    __tablename__ = "generation_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_generation_tasks_queue", "status", "run_after", "created_at"),
        Index(
            "uq_generation_tasks_provider_external_id",
            "provider",
            "external_task_id",
            unique=True,
        ),
    )

    task_id: str = Field(primary_key=True)
    owner_id: str = Field(index=True)
    kind: str = Field(index=True)
    provider: str = Field(index=True)
    model: str
    prompt_text: str = Field(sa_column=Column(Text, nullable=False))
    auxiliary_ref: str | None = None
    fingerprint: str = Field(index=True)
    cost: int
    status: str = Field(index=True)
    progress: int = Field(default=0)
    external_task_id: str | None = None
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = Field(default=None, index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    from_cache: bool = Field(default=False)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    settling_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationTaskEvent(SQLModel, table=True):
    __tablename__ = "generation_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ParkedNotice(SQLModel, table=True):
    __tablename__ = "parked_notices"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    provider: str | None = None
    external_task_id: str = Field(index=True)
    status: str
    progress: int | None = None
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    received_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ResultCacheEntry(SQLModel, table=True):
    __tablename__ = "result_cache_entries"  # type: ignore[bad-override]

    fingerprint: str = Field(primary_key=True)
    kind: str
    result_json: str = Field(sa_column=Column(Text, nullable=False))
    hit_count: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class OwnerSession(SQLModel, table=True):
    __tablename__ = "owner_sessions"  # type: ignore[bad-override]

    owner_id: str = Field(primary_key=True)
    current_action: str
    action_data_json: str | None = Field(default=None, sa_column=Column(Text))
    last_activity_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
