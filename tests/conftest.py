"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from genrelay.orchestrator.fingerprint import compute_fingerprint
from genrelay.orchestrator.ledger import TokenLedger
from genrelay.orchestrator.models import TaskCreate, TaskKind, TaskView
from genrelay.orchestrator.providers.base import ProviderPoll, ProviderRequest, ProviderStart
from genrelay.orchestrator.reconciler import Reconciler
from genrelay.orchestrator.repository import TaskRepository
from genrelay.orchestrator.retry import RetryPolicy

ScriptItem = ProviderStart | ProviderPoll | Exception | Callable[[], object]


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingNotifier:
    """Keeps every notification; optionally fails like a broken channel."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.messages: list[tuple[str, str, tuple[str, ...]]] = []
        self._lock = threading.Lock()

    def notify(self, owner_id: str, message: str, attachments: Sequence[str] = ()) -> None:
        with self._lock:
            self.messages.append((owner_id, message, tuple(attachments)))
        if self.fail:
            raise RuntimeError("notification channel down")

    def texts(self) -> list[str]:
        with self._lock:
            return [message for _, message, _ in self.messages]


class ScriptedAdapter:
    """Provider adapter that replays scripted start/poll outcomes.

    Each script item is a ``ProviderStart``/``ProviderPoll`` to return, an
    exception to raise, or a callable producing either. The last item repeats.
    """

    def __init__(
        self,
        *,
        name: str = "fake",
        supports_callbacks: bool = False,
        starts: Sequence[ScriptItem] = (),
        polls: Sequence[ScriptItem] = (),
    ) -> None:
        self.name = name
        self.supports_callbacks = supports_callbacks
        self._starts = list(starts) or [ProviderStart(result={"url": "https://cdn.example/1.png"})]
        self._polls = list(polls)
        self.start_calls: list[ProviderRequest] = []
        self.poll_calls: list[str] = []
        self._lock = threading.Lock()

    def start(self, request: ProviderRequest) -> ProviderStart:
        with self._lock:
            self.start_calls.append(request)
            item = self._starts.pop(0) if len(self._starts) > 1 else self._starts[0]
        return _play(item)

    def poll(self, external_task_id: str) -> ProviderPoll:
        with self._lock:
            self.poll_calls.append(external_task_id)
            if not self._polls:
                raise AssertionError("poll called without a poll script")
            item = self._polls.pop(0) if len(self._polls) > 1 else self._polls[0]
        return _play(item)


def _play(item: ScriptItem):
    if isinstance(item, Exception):
        raise item
    if callable(item):
        produced = item()
        if isinstance(produced, Exception):
            raise produced
        return produced
    return item


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "genrelay.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def ledger(repository: TaskRepository) -> TokenLedger:
    return TokenLedger(engine=repository.engine, initial_balance=10)


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def failing_notifier() -> RecordingNotifier:
    return RecordingNotifier(fail=True)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def no_delay_retry() -> RetryPolicy:
    return RetryPolicy(
        max_attempts={"image": 3, "video": 3, "chat": 3},
        base_seconds={"image": 0.0, "video": 0.0, "chat": 0.0},
    )


@pytest.fixture()
def queue_task(repository: TaskRepository, ledger: TokenLedger) -> Callable[..., TaskView]:
    """Enqueue a task directly, bypassing submit-time validation and pricing."""

    def _queue(  # noqa: PLR0913
        *,
        owner_id: str = "owner-1",
        kind: TaskKind = TaskKind.IMAGE,
        provider: str = "fake",
        model: str = "model-a",
        prompt: str = "a red fox",
        cost: int = 2,
        max_attempts: int = 3,
    ) -> TaskView:
        ledger.ensure_account(owner_id)
        return repository.enqueue_task(
            TaskCreate(
                owner_id=owner_id,
                kind=kind,
                provider=provider,
                model=model,
                prompt_text=prompt,
                fingerprint=compute_fingerprint(
                    kind=kind.value,
                    provider=provider,
                    model=model,
                    prompt=prompt,
                ),
                cost=cost,
                max_attempts=max_attempts,
            ),
        )

    return _queue


@pytest.fixture()
def make_reconciler(
    repository: TaskRepository,
    ledger: TokenLedger,
    notifier: RecordingNotifier,
    no_delay_retry: RetryPolicy,
) -> Callable[..., Reconciler]:
    def _make(**overrides) -> Reconciler:
        options = {
            "repository": repository,
            "ledger": ledger,
            "notifier": notifier,
            "retry_policy": no_delay_retry,
            "poll_interval_seconds": 0.0,
            "poll_timeout_seconds": 5.0,
            "sleep": lambda _: None,
        }
        options.update(overrides)
        return Reconciler(**options)

    return _make


@pytest.fixture()
def make_adapter() -> Callable[..., ScriptedAdapter]:
    return ScriptedAdapter
