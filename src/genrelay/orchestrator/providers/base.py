"""Provider adapter interface for generation calls."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from genrelay.orchestrator.models import TaskStatus

_COMPLETED_STATUSES = frozenset({"success", "succeeded", "completed", "complete", "done"})
_FAILED_STATUSES = frozenset({"failed", "failure", "cancelled", "canceled", "error"})


class ProviderStatus(str, Enum):
    """Normalized provider job status."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {ProviderStatus.COMPLETED, ProviderStatus.FAILED}

    def to_task_status(self) -> TaskStatus:
        if self == ProviderStatus.COMPLETED:
            return TaskStatus.COMPLETED
        if self == ProviderStatus.FAILED:
            return TaskStatus.FAILED
        return TaskStatus.PROCESSING


@dataclass(slots=True)
class ProviderRequest:
    """Inputs required to start one generation attempt."""

    task_id: str
    attempt_no: int
    owner_id: str
    kind: str
    model: str
    prompt: str
    auxiliary_ref: str | None = None


@dataclass(slots=True)
class ProviderStart:
    """Either an immediate result or a provider job id to wait for."""

    result: dict[str, Any] | None = None
    external_task_id: str | None = None

    def __post_init__(self) -> None:
        if (self.result is None) == (self.external_task_id is None):
            raise ValueError("ProviderStart needs exactly one of result or external_task_id.")


@dataclass(slots=True)
class ProviderPoll:
    """Snapshot of a provider job."""

    status: ProviderStatus
    progress: int | None = None
    result: dict[str, Any] | None = None
    error: str | None = None


class ProviderAdapter(Protocol):
    """Protocol implemented by generation providers.

    Adapters raise ``ProviderError`` for failed calls.
    """

    name: str
    supports_callbacks: bool

    def start(self, request: ProviderRequest) -> ProviderStart:
        """Submit a generation job."""

    def poll(self, external_task_id: str) -> ProviderPoll:
        """Fetch current status of a submitted job."""


def normalize_provider_status(raw: str | None) -> ProviderStatus:
    """Map provider-specific status strings onto ``ProviderStatus``."""

    value = (raw or "").strip().lower()
    if value in _COMPLETED_STATUSES:
        return ProviderStatus.COMPLETED
    if value in _FAILED_STATUSES:
        return ProviderStatus.FAILED
    if value in {"queued", "pending", "waiting", "submitted"}:
        return ProviderStatus.QUEUED
    return ProviderStatus.RUNNING


def coerce_progress(raw: Any) -> int | None:
    """Clamp a reported progress value to 0..100; non-numeric or non-finite gives ``None``."""

    if isinstance(raw, bool) or not isinstance(raw, int | float):
        return None
    if not math.isfinite(raw):
        return None
    return max(0, min(100, int(raw)))
