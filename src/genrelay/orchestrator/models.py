"""Domain models for generation task queue, ledger, cache and sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskKind(str, Enum):
    """Kinds of generation content."""

    IMAGE = "image"
    VIDEO = "video"
    CHAT = "chat"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED}


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    PROVIDER_TRANSIENT = "provider_transient"
    PROVIDER_NON_RETRYABLE = "provider_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    CONTENT_POLICY = "content_policy"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INTERNAL_ERROR = "internal_error"
    CANCELED = "canceled"
    RECONCILIATION_EXPIRED = "reconciliation_expired"

    @property
    def is_retryable(self) -> bool:
        return self in {FailureClass.PROVIDER_TRANSIENT, FailureClass.TIMEOUT}


class ReservationState(str, Enum):
    """Ledger reservation lifecycle."""

    RESERVED = "reserved"
    COMMITTED = "committed"
    REFUNDED = "refunded"


class LedgerReason(str, Enum):
    """Reason codes recorded on ledger entries."""

    RESERVATION = "reservation"
    REFUND = "refund"
    CREDIT = "credit"
    SIGNUP_BONUS = "signup_bonus"


class SessionAction(str, Enum):
    """What an owner's conversation is currently waiting for."""

    GENERATE_IMAGE = "generate_image"
    GENERATE_VIDEO = "generate_video"
    CHAT = "chat"
    AWAIT_REFERENCE_IMAGE = "await_reference_image"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a generation task."""

    owner_id: str
    kind: TaskKind
    provider: str
    model: str
    prompt_text: str
    fingerprint: str
    cost: int
    max_attempts: int = 3
    auxiliary_ref: str | None = None
    task_id: str | None = None
    run_after: datetime | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI, scheduler and reconciler."""

    task_id: str
    owner_id: str
    kind: TaskKind
    provider: str
    model: str
    prompt_text: str
    auxiliary_ref: str | None
    fingerprint: str
    cost: int
    status: TaskStatus
    progress: int
    external_task_id: str | None
    result: dict[str, Any] | None
    error_summary: str | None
    failure_class: FailureClass | None
    attempts: int
    max_attempts: int
    from_cache: bool
    run_after: datetime
    settling_at: datetime | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class LedgerEntryView:
    """One append-only ledger movement."""

    entry_id: int
    owner_id: str
    amount: int
    reason_code: LedgerReason
    balance_before: int
    balance_after: int
    task_id: str | None
    attempt_no: int | None
    created_at: datetime


@dataclass(slots=True)
class ReservationView:
    """Tokens held for one task attempt."""

    reservation_id: int
    owner_id: str
    task_id: str
    attempt_no: int
    amount: int
    state: ReservationState
    created_at: datetime
    settled_at: datetime | None


@dataclass(frozen=True, slots=True)
class CacheEntryView:
    """Immutable cached generation result."""

    fingerprint: str
    kind: str
    result: dict[str, Any]
    created_at: datetime
    expires_at: datetime
    hit_count: int = 0


@dataclass(frozen=True, slots=True)
class SessionState:
    """Conversation context for one owner."""

    current_action: SessionAction
    action_data: dict[str, Any] = field(default_factory=dict)
    last_activity_at: datetime | None = None


@dataclass(slots=True)
class CompletionNotice:
    """Completion report received from a provider, pushed or polled."""

    external_task_id: str
    status: TaskStatus
    provider: str | None = None
    progress: int | None = None
    result: dict[str, Any] | None = None
    error: str | None = None


@dataclass(slots=True)
class NoticeAck:
    """Outcome of handling one completion notice."""

    accepted: bool
    applied: bool
    task_id: str | None = None
    reason: str | None = None


@dataclass(slots=True)
class QueueStats:
    """Queue counters and timing aggregates."""

    pending: int
    processing: int
    completed_count: int
    failed_count: int
    avg_wait_seconds: float | None
    avg_processing_seconds: float | None


@dataclass(slots=True)
class CacheStats:
    """Result cache counters."""

    size: int
    hits: int
    misses: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        if lookups == 0:
            return 0.0
        return self.hits / lookups
