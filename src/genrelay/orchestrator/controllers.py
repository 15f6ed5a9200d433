"""Controllers for generation queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path

import uvicorn

from genrelay.callbacks import create_app
from genrelay.config import Settings
from genrelay.orchestrator.cache import ResultCache, build_result_cache
from genrelay.orchestrator.intake import GenerationIntake
from genrelay.orchestrator.ledger import TokenLedger
from genrelay.orchestrator.metrics import get_cache_stats, get_queue_stats, render_stats_lines
from genrelay.orchestrator.models import CompletionNotice, SessionAction, TaskStatus, TaskView
from genrelay.orchestrator.notifier import LoggingNotifier, Notifier, WebhookNotifier
from genrelay.orchestrator.providers import (
    EchoProviderAdapter,
    HttpProviderAdapter,
    ProviderAdapter,
)
from genrelay.orchestrator.reconciler import Reconciler
from genrelay.orchestrator.repository import TaskRepository
from genrelay.orchestrator.retry import RetryPolicy
from genrelay.orchestrator.scheduler import GenerationScheduler
from genrelay.orchestrator.services import GenerationService, SubmitGeneration
from genrelay.orchestrator.sessions import SessionStore, build_session_store


@dataclass(slots=True)
class SubmitTaskCommand:
    """CLI input for queueing one generation request."""

    db_path: Path | None
    owner_id: str
    kind: str
    provider: str
    model: str
    prompt: str
    auxiliary_ref: str | None = None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    owner_id: str | None
    limit: int


@dataclass(slots=True)
class TaskIdCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for the scheduler loop."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = 1


@dataclass(slots=True)
class LedgerOwnerCommand:
    db_path: Path | None
    owner_id: str
    limit: int = 20


@dataclass(slots=True)
class LedgerCreditCommand:
    db_path: Path | None
    owner_id: str
    amount: int


@dataclass(slots=True)
class DbCommand:
    db_path: Path | None


@dataclass(slots=True)
class ApplyCallbackCommand:
    """CLI input for feeding a provider completion report by hand."""

    db_path: Path | None
    provider: str | None
    external_task_id: str
    status: str
    result_json: str | None
    error: str | None


@dataclass(slots=True)
class ServeCallbacksCommand:
    """CLI input for the callback HTTP server."""

    db_path: Path | None
    host: str | None
    port: int | None
    with_worker: bool


@dataclass(slots=True)
class ChatBeginCommand:
    db_path: Path | None
    owner_id: str
    action: str
    provider: str
    model: str


@dataclass(slots=True)
class ChatSendCommand:
    db_path: Path | None
    owner_id: str
    text: str
    attachment_ref: str | None


@dataclass(slots=True)
class Runtime:
    """Wired components sharing one repository."""

    settings: Settings
    repository: TaskRepository
    ledger: TokenLedger
    cache: ResultCache
    sessions: SessionStore
    notifier: Notifier
    adapters: dict[str, ProviderAdapter]
    retry_policy: RetryPolicy
    reconciler: Reconciler
    service: GenerationService

    def scheduler(self) -> GenerationScheduler:
        orchestrator = self.settings.orchestrator
        return GenerationScheduler(
            repository=self.repository,
            ledger=self.ledger,
            reconciler=self.reconciler,
            adapters=self.adapters,
            cache=self.cache,
            sessions=self.sessions,
            max_concurrency=orchestrator.max_concurrency,
            worker_id=orchestrator.worker_id,
            idle_poll_seconds=orchestrator.idle_poll_seconds,
            sweep_interval_seconds=orchestrator.sweep_interval_seconds,
            reconcile_grace_seconds=orchestrator.reconcile_grace_seconds,
            parked_notice_ttl_seconds=orchestrator.parked_notice_ttl_seconds,
        )


class GenerationCliController:
    """Adapter between CLI commands and the generation queue services."""

    def submit_task(self, command: SubmitTaskCommand) -> list[str]:
        with open_runtime(load_settings(command.db_path)) as runtime:
            task = runtime.service.submit(
                SubmitGeneration(
                    owner_id=command.owner_id,
                    kind=command.kind,
                    provider=command.provider,
                    model=command.model,
                    prompt=command.prompt,
                    auxiliary_ref=command.auxiliary_ref,
                ),
            )
            position = runtime.repository.queue_position(task_id=task.task_id)
            balance = runtime.ledger.balance(task.owner_id)
        return [
            f"Task queued: {task.task_id}",
            f"Position: {position if position is not None else '-'}",
            f"Cost: {task.cost} tokens (balance {balance})",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = load_settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                status=status_filter,
                owner_id=command.owner_id,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} owner={task.owner_id} kind={task.kind.value} "
                f"provider={task.provider} status={task.status.value} "
                f"progress={task.progress} attempt={task.attempts}/{task.max_attempts} "
                f"created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskIdCommand) -> list[str]:
        settings = load_settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
            position = repository.queue_position(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Owner: {task.owner_id}",
            f"Kind: {task.kind.value}",
            f"Provider: {task.provider} model={task.model}",
            f"Status: {task.status.value}",
            f"Queue position: {position if position is not None else '-'}",
            f"Progress: {task.progress}",
            f"Attempt: {task.attempts}/{task.max_attempts}",
            f"Cost: {task.cost}",
            f"External id: {task.external_task_id or '-'}",
            f"From cache: {'yes' if task.from_cache else 'no'}",
            f"Failure class: {task.failure_class.value if task.failure_class else '-'}",
            f"Error: {task.error_summary or '-'}",
            f"Result: {_render_result(task)}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_task(self, command: TaskIdCommand) -> list[str]:
        with open_runtime(load_settings(command.db_path)) as runtime:
            task = runtime.service.cancel(command.task_id)
        return [f"Task canceled: {task.task_id} status={task.status.value}"]

    def resubmit_task(self, command: TaskIdCommand) -> list[str]:
        with open_runtime(load_settings(command.db_path)) as runtime:
            task = runtime.service.resubmit(command.task_id)
        return [f"Task queued: {task.task_id} (resubmitted from {command.task_id})"]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        with open_runtime(load_settings(command.db_path)) as runtime:
            scheduler = runtime.scheduler()
            summary = (
                scheduler.run_once()
                if command.once
                else scheduler.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"cache_hits={summary.cache_hits} failed={summary.failed} "
            f"retried={summary.retried} "
            f"awaiting_reconciliation={summary.awaiting_reconciliation} "
            f"idle_polls={summary.idle_polls}",
        ]

    def run_maintenance(self, command: DbCommand) -> list[str]:
        with open_runtime(load_settings(command.db_path)) as runtime:
            summary = runtime.scheduler().run_maintenance()
        return [
            "Maintenance summary: "
            f"cache_removed={summary.cache_removed} "
            f"sessions_removed={summary.sessions_removed} "
            f"notices_purged={summary.notices_purged} "
            f"tasks_expired={summary.tasks_expired}",
        ]

    def ledger_balance(self, command: LedgerOwnerCommand) -> list[str]:
        settings = load_settings(command.db_path)
        with _repository(settings) as repository:
            ledger = TokenLedger(
                engine=repository.engine,
                initial_balance=settings.ledger.initial_balance,
            )
            ledger.ensure_account(command.owner_id)
            balance = ledger.balance(command.owner_id)
        return [f"Balance for {command.owner_id}: {balance}"]

    def ledger_credit(self, command: LedgerCreditCommand) -> list[str]:
        settings = load_settings(command.db_path)
        with _repository(settings) as repository:
            ledger = TokenLedger(
                engine=repository.engine,
                initial_balance=settings.ledger.initial_balance,
            )
            ledger.ensure_account(command.owner_id)
            entry = ledger.credit(owner_id=command.owner_id, amount=command.amount)
        return [
            f"Credited {entry.amount} tokens to {entry.owner_id}: "
            f"{entry.balance_before} -> {entry.balance_after}",
        ]

    def ledger_history(self, command: LedgerOwnerCommand) -> list[str]:
        settings = load_settings(command.db_path)
        with _repository(settings) as repository:
            ledger = TokenLedger(
                engine=repository.engine,
                initial_balance=settings.ledger.initial_balance,
            )
            entries = ledger.history(command.owner_id, limit=command.limit)
            balance = ledger.balance(command.owner_id)

        lines = [f"Ledger for {command.owner_id}: balance={balance} entries={len(entries)}"]
        for entry in entries:
            attempt = f"{entry.task_id}#{entry.attempt_no}" if entry.task_id else "-"
            lines.append(
                f"  {entry.created_at.isoformat()} {entry.reason_code.value} "
                f"amount={entry.amount:+d} balance={entry.balance_after} task={attempt}",
            )
        return lines

    def cache_sweep(self, command: DbCommand) -> list[str]:
        settings = load_settings(command.db_path)
        with _repository(settings) as repository:
            cache = build_result_cache(backend=settings.cache.backend, engine=repository.engine)
            removed = cache.sweep()
        return [f"Cache sweep removed {removed} expired entries"]

    def stats(self, command: DbCommand) -> list[str]:
        """Show queue health and result cache counters."""

        settings = load_settings(command.db_path)
        with _repository(settings) as repository:
            queue = get_queue_stats(repository)
            cache_stats = None
            if settings.cache.backend == "sqlite":
                cache = build_result_cache(backend="sqlite", engine=repository.engine)
                cache_stats = get_cache_stats(cache)
        return render_stats_lines(queue=queue, cache=cache_stats)

    def apply_callback(self, command: ApplyCallbackCommand) -> list[str]:
        result = json.loads(command.result_json) if command.result_json else None
        if result is not None and not isinstance(result, dict):
            raise ValueError("--result-json must be a JSON object.")
        notice = CompletionNotice(
            external_task_id=command.external_task_id,
            status=TaskStatus(command.status.strip().lower()),
            provider=command.provider,
            result=result,
            error=command.error,
        )
        with open_runtime(load_settings(command.db_path)) as runtime:
            ack = runtime.reconciler.handle_notice(notice)
        return [
            f"Callback accepted={ack.accepted} applied={ack.applied} "
            f"task={ack.task_id or '-'} reason={ack.reason or '-'}",
        ]

    def serve_callbacks(self, command: ServeCallbacksCommand) -> list[str]:
        """Serve provider callbacks until interrupted, optionally with the scheduler."""

        settings = load_settings(command.db_path)
        host = command.host or settings.callback_server.host
        port = command.port or settings.callback_server.port
        with open_runtime(settings) as runtime:
            scheduler = runtime.scheduler() if command.with_worker else None
            if scheduler is not None:
                scheduler.start()
            try:
                uvicorn.run(create_app(runtime.reconciler), host=host, port=port)
            finally:
                if scheduler is not None:
                    scheduler.stop(timeout=settings.orchestrator.poll_timeout_seconds)
        return [f"Callback server on {host}:{port} stopped"]

    def chat_begin(self, command: ChatBeginCommand) -> list[str]:
        action = SessionAction(command.action.strip().lower())
        with open_runtime(load_settings(command.db_path)) as runtime:
            intake = GenerationIntake(sessions=runtime.sessions, service=runtime.service)
            intake.begin(
                owner_id=command.owner_id,
                action=action,
                provider=command.provider,
                model=command.model,
            )
        return [f"Waiting for input from {command.owner_id}: {action.value}"]

    def chat_send(self, command: ChatSendCommand) -> list[str]:
        with open_runtime(load_settings(command.db_path)) as runtime:
            intake = GenerationIntake(sessions=runtime.sessions, service=runtime.service)
            outcome = intake.handle_input(
                command.owner_id,
                command.text,
                attachment_ref=command.attachment_ref,
            )
        lines = [f"Outcome: {outcome.kind.value}"]
        if outcome.task is not None:
            lines.append(f"Task queued: {outcome.task.task_id}")
        if outcome.message:
            lines.append(outcome.message)
        return lines


def load_settings(db_path: Path | None = None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def open_runtime(settings: Settings) -> Iterator[Runtime]:
    """Wire repository, ledger, cache, sessions, adapters and services from settings."""

    with ExitStack() as stack:
        repository = stack.enter_context(_repository(settings))
        notifier = _build_notifier(settings, stack)
        adapters = _build_adapters(settings, stack)
        cache = build_result_cache(backend=settings.cache.backend, engine=repository.engine)
        sessions = build_session_store(
            backend=settings.sessions.backend,
            ttl_seconds=settings.sessions.ttl_seconds,
            engine=repository.engine,
        )
        ledger = TokenLedger(
            engine=repository.engine,
            initial_balance=settings.ledger.initial_balance,
        )
        retry_policy = RetryPolicy.from_settings(settings.retry)
        reconciler = Reconciler(
            repository=repository,
            ledger=ledger,
            notifier=notifier,
            retry_policy=retry_policy,
            cache=cache,
            sessions=sessions,
            cache_ttl_seconds=settings.cache.ttl_seconds,
            poll_interval_seconds=settings.orchestrator.poll_interval_seconds,
            poll_timeout_seconds=settings.orchestrator.poll_timeout_seconds,
        )
        service = GenerationService(
            repository=repository,
            ledger=ledger,
            reconciler=reconciler,
            notifier=notifier,
            retry_policy=retry_policy,
            known_providers=frozenset(adapters),
            token_costs=settings.ledger.token_costs,
        )
        yield Runtime(
            settings=settings,
            repository=repository,
            ledger=ledger,
            cache=cache,
            sessions=sessions,
            notifier=notifier,
            adapters=adapters,
            retry_policy=retry_policy,
            reconciler=reconciler,
            service=service,
        )


def _build_notifier(settings: Settings, stack: ExitStack) -> Notifier:
    if settings.notifier.webhook_url is None:
        return LoggingNotifier()
    notifier = WebhookNotifier(
        url=settings.notifier.webhook_url,
        timeout_seconds=settings.notifier.timeout_seconds,
    )
    stack.callback(notifier.close)
    return notifier


def _build_adapters(settings: Settings, stack: ExitStack) -> dict[str, ProviderAdapter]:
    providers = settings.providers
    adapters: dict[str, ProviderAdapter] = {}
    if providers.echo_enabled:
        adapters["echo"] = EchoProviderAdapter()
    for name, url in providers.http_providers.items():
        adapter = HttpProviderAdapter(
            name=name,
            base_url=url,
            supports_callbacks=name in providers.callback_providers,
            api_key=providers.api_key,
            timeout_seconds=providers.request_timeout_seconds,
        )
        stack.callback(adapter.close)
        adapters[name] = adapter
    return adapters


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _render_result(task: TaskView) -> str:
    if task.result is None:
        return "-"
    return json.dumps(task.result, ensure_ascii=False, sort_keys=True)


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
