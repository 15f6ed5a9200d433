"""Exception hierarchy for generation orchestration."""

from __future__ import annotations


class GenrelayError(Exception):
    """Base class for orchestration errors."""


class RequestValidationError(GenrelayError):
    """Submitted request is malformed; nothing was queued or charged."""


class InsufficientBalanceError(GenrelayError):
    """Owner balance does not cover the requested cost."""

    def __init__(self, owner_id: str, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient balance for {owner_id}: required={required} available={available}",
        )
        self.owner_id = owner_id
        self.required = required
        self.available = available


class ProviderError(GenrelayError):
    """Provider rejected or failed a generation call.

    ``transient=None`` leaves the retry decision to the failure classifier.
    """

    def __init__(
        self,
        message: str,
        *,
        transient: bool | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.transient = transient
        self.status_code = status_code


class PollTimeoutError(GenrelayError):
    """Provider did not reach a terminal status within the poll window."""

    def __init__(self, external_task_id: str, timeout_seconds: float) -> None:
        super().__init__(f"No terminal status for {external_task_id} within {timeout_seconds:g}s")
        self.external_task_id = external_task_id
        self.timeout_seconds = timeout_seconds


class StoreError(GenrelayError):
    """Cache, ledger or session storage failure."""


class TaskStateError(GenrelayError):
    """Requested mutation is not valid for the task's current status."""
