"""Use-case services for the generation queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from genrelay.orchestrator.errors import (
    InsufficientBalanceError,
    RequestValidationError,
    TaskStateError,
)
from genrelay.orchestrator.fingerprint import compute_fingerprint, normalize_prompt
from genrelay.orchestrator.ledger import TokenLedger
from genrelay.orchestrator.models import TaskCreate, TaskKind, TaskStatus, TaskView
from genrelay.orchestrator.notifier import Notifier, safe_notify
from genrelay.orchestrator.pricing import token_cost
from genrelay.orchestrator.reconciler import Reconciler
from genrelay.orchestrator.repository import TaskRepository
from genrelay.orchestrator.retry import RetryPolicy

logger = logging.getLogger(__name__)

MAX_PROMPT_CHARS = 4_000


@dataclass(slots=True)
class SubmitGeneration:
    """High-level command to queue one generation request."""

    owner_id: str
    kind: str
    provider: str
    model: str
    prompt: str
    auxiliary_ref: str | None = None


class GenerationService:
    """Validates, prices and enqueues generation requests."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        ledger: TokenLedger,
        reconciler: Reconciler,
        notifier: Notifier,
        retry_policy: RetryPolicy | None = None,
        known_providers: frozenset[str] | None = None,
        token_costs: str | None = None,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.reconciler = reconciler
        self.notifier = notifier
        self.retry_policy = retry_policy or RetryPolicy()
        self.known_providers = known_providers
        self.token_costs = token_costs

    def submit(self, command: SubmitGeneration) -> TaskView:
        """Queue a request; raises before enqueue when it is invalid or unaffordable."""

        kind = self._validate(command)
        provider = command.provider.strip().lower()
        self.ledger.ensure_account(command.owner_id)
        cost = token_cost(provider=provider, kind=kind.value, overrides=self.token_costs)
        available = self.ledger.balance(command.owner_id)
        if available < cost:
            raise InsufficientBalanceError(command.owner_id, cost, available)

        task = self.repository.enqueue_task(
            TaskCreate(
                owner_id=command.owner_id,
                kind=kind,
                provider=provider,
                model=command.model.strip(),
                prompt_text=command.prompt.strip(),
                auxiliary_ref=command.auxiliary_ref,
                fingerprint=compute_fingerprint(
                    kind=kind.value,
                    provider=provider,
                    model=command.model,
                    prompt=command.prompt,
                    auxiliary_ref=command.auxiliary_ref,
                ),
                cost=cost,
                max_attempts=self.retry_policy.attempts_for(kind.value),
            ),
        )
        position = self.repository.queue_position(task_id=task.task_id)
        logger.info(
            "Queued task %s owner=%s kind=%s provider=%s cost=%d position=%s",
            task.task_id,
            task.owner_id,
            kind.value,
            provider,
            cost,
            position,
        )
        safe_notify(
            self.notifier,
            command.owner_id,
            f"Your {kind.value} request is queued (position {position or 1}).",
        )
        return task

    def cancel(self, task_id: str) -> TaskView:
        return self.reconciler.cancel(task_id)

    def resubmit(self, task_id: str) -> TaskView:
        """Queue a fresh task with the same inputs as a finished one."""

        task = self.repository.get_task(task_id=task_id)
        if task is None:
            raise TaskStateError(f"Task not found: {task_id}")
        if not task.status.is_terminal:
            raise TaskStateError(
                f"Only completed/failed tasks can be resubmitted, got {task.status.value}.",
            )
        return self.submit(
            SubmitGeneration(
                owner_id=task.owner_id,
                kind=task.kind.value,
                provider=task.provider,
                model=task.model,
                prompt=task.prompt_text,
                auxiliary_ref=task.auxiliary_ref,
            ),
        )

    def list_tasks(
        self,
        *,
        owner_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        return self.repository.list_tasks(owner_id=owner_id, status=status, limit=limit)

    def _validate(self, command: SubmitGeneration) -> TaskKind:
        if not command.owner_id.strip():
            raise RequestValidationError("owner_id must not be empty")
        try:
            kind = TaskKind(command.kind.strip().lower())
        except ValueError as error:
            allowed = ", ".join(item.value for item in TaskKind)
            raise RequestValidationError(
                f"Unsupported kind {command.kind!r}; expected one of: {allowed}",
            ) from error
        provider = command.provider.strip().lower()
        if not provider:
            raise RequestValidationError("provider must not be empty")
        if self.known_providers is not None and provider not in self.known_providers:
            raise RequestValidationError(f"Unknown provider {command.provider!r}")
        if not command.model.strip():
            raise RequestValidationError("model must not be empty")
        prompt = normalize_prompt(command.prompt)
        if not prompt:
            raise RequestValidationError("prompt must not be empty")
        if len(command.prompt) > MAX_PROMPT_CHARS:
            raise RequestValidationError(f"prompt exceeds {MAX_PROMPT_CHARS} characters")
        return kind
