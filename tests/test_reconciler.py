from __future__ import annotations

import itertools
import threading
from datetime import timedelta

import allure
import pytest
from sqlalchemy.exc import OperationalError

from genrelay.orchestrator.cache import MemoryResultCache
from genrelay.orchestrator.errors import ProviderError, TaskStateError
from genrelay.orchestrator.ledger import TokenLedger
from genrelay.orchestrator.models import (
    CompletionNotice,
    FailureClass,
    ReservationState,
    SessionAction,
    SessionState,
    TaskStatus,
    TaskView,
)
from genrelay.orchestrator.providers.base import ProviderPoll, ProviderStatus
from genrelay.orchestrator.reconciler import SettleOutcome
from genrelay.orchestrator.repository import TaskRepository
from genrelay.orchestrator.sessions import MemorySessionStore
from genrelay.storage.common import utc_now

pytestmark = [
    allure.epic("Generation Queue"),
    allure.feature("Reconciliation"),
]

RESULT = {"url": "https://cdn.example/fox.png"}


def _start_attempt(
    repository: TaskRepository,
    ledger: TokenLedger,
    *,
    external_task_id: str | None = "job-1",
) -> TaskView:
    task = repository.claim_next_ready_task(worker_id="test")
    assert task is not None
    ledger.reserve(
        owner_id=task.owner_id,
        amount=task.cost,
        task_id=task.task_id,
        attempt_no=task.attempts,
    )
    if external_task_id is not None:
        assert repository.attach_external_id(
            task_id=task.task_id,
            attempt_no=task.attempts,
            external_task_id=external_task_id,
        )
    current = repository.get_task(task_id=task.task_id)
    assert current is not None
    return current


def _ticking_monotonic(step: float = 1.0):
    counter = itertools.count()
    return lambda: next(counter) * step


def test_duplicate_completion_notice_settles_once(
    repository, ledger, notifier, queue_task, make_reconciler
) -> None:
    queue_task(cost=3)
    task = _start_attempt(repository, ledger)
    reconciler = make_reconciler()
    notice = CompletionNotice(
        external_task_id="job-1",
        status=TaskStatus.COMPLETED,
        provider="fake",
        result=RESULT,
    )

    first = reconciler.handle_notice(notice)
    second = reconciler.handle_notice(notice)

    assert (first.accepted, first.applied) == (True, True)
    assert (second.accepted, second.applied, second.reason) == (True, False, "already_settled")
    done = repository.get_task(task_id=task.task_id)
    assert done is not None
    assert done.status == TaskStatus.COMPLETED
    assert done.result == RESULT
    reservation = ledger.get_reservation(task_id=task.task_id, attempt_no=1)
    assert reservation is not None
    assert reservation.state == ReservationState.COMMITTED
    assert ledger.balance(task.owner_id) == 7
    assert notifier.texts() == ["Your image is ready."]
    assert notifier.messages[0][2] == ("https://cdn.example/fox.png",)


def test_unknown_external_id_is_acknowledged(repository, make_reconciler) -> None:
    ack = make_reconciler().handle_notice(
        CompletionNotice(external_task_id="ghost", status=TaskStatus.COMPLETED, result=RESULT),
    )

    assert ack.accepted is True
    assert ack.applied is False
    assert ack.reason == "unknown_external_id"
    assert len(repository.take_parked_notices(external_task_id="ghost")) == 1


def test_early_callback_is_applied_once_after_attach(
    repository, ledger, queue_task, make_reconciler
) -> None:
    queue_task()
    reconciler = make_reconciler()
    early = reconciler.handle_notice(
        CompletionNotice(
            external_task_id="job-early",
            status=TaskStatus.COMPLETED,
            provider="fake",
            result=RESULT,
        ),
    )
    assert early.reason == "unknown_external_id"

    task = _start_attempt(repository, ledger, external_task_id=None)
    assert reconciler.attach_external_id(task=task, external_task_id="job-early") is True

    done = repository.get_task(task_id=task.task_id)
    assert done is not None
    assert done.status == TaskStatus.COMPLETED
    assert repository.take_parked_notices(external_task_id="job-early") == []
    events = repository.get_task_details(task_id=task.task_id).events
    assert [event.event_type for event in events].count("completed") == 1


def test_poll_and_callback_race_commits_once(
    repository, ledger, notifier, queue_task, make_reconciler
) -> None:
    queue_task(cost=4)
    task = _start_attempt(repository, ledger)
    reconciler = make_reconciler()
    barrier = threading.Barrier(2)
    outcomes: list[SettleOutcome] = []
    lock = threading.Lock()

    def _poll_side() -> None:
        barrier.wait()
        outcome = reconciler.apply_result(task=task, result=RESULT)
        with lock:
            outcomes.append(outcome)

    def _callback_side() -> None:
        barrier.wait()
        ack = reconciler.handle_notice(
            CompletionNotice(
                external_task_id="job-1",
                status=TaskStatus.COMPLETED,
                provider="fake",
                result=RESULT,
            ),
        )
        with lock:
            outcomes.append(SettleOutcome.COMPLETED if ack.applied else SettleOutcome.LOST)

    threads = [threading.Thread(target=_poll_side), threading.Thread(target=_callback_side)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcome.value for outcome in outcomes) == ["completed", "lost"]
    assert ledger.balance(task.owner_id) == 6
    assert len(notifier.texts()) == 1


def test_late_result_after_cancel_is_a_no_op(
    repository, ledger, notifier, queue_task, make_reconciler
) -> None:
    queue_task(cost=5)
    task = _start_attempt(repository, ledger)
    reconciler = make_reconciler()

    canceled = reconciler.cancel(task.task_id)
    late = reconciler.handle_notice(
        CompletionNotice(
            external_task_id="job-1",
            status=TaskStatus.COMPLETED,
            provider="fake",
            result=RESULT,
        ),
    )

    assert canceled.status == TaskStatus.FAILED
    assert canceled.failure_class == FailureClass.CANCELED
    assert late.applied is False
    assert ledger.balance(task.owner_id) == 10
    reservation = ledger.get_reservation(task_id=task.task_id, attempt_no=1)
    assert reservation is not None
    assert reservation.state == ReservationState.REFUNDED
    assert "Reserved tokens were returned" in notifier.texts()[-1]


def test_cancel_pending_and_terminal(repository, queue_task, make_reconciler) -> None:
    task = queue_task()
    reconciler = make_reconciler()

    canceled = reconciler.cancel(task.task_id)

    assert canceled.status == TaskStatus.FAILED
    assert canceled.failure_class == FailureClass.CANCELED
    with pytest.raises(TaskStateError, match="cannot be canceled"):
        reconciler.cancel(task.task_id)
    with pytest.raises(TaskStateError, match="not found"):
        reconciler.cancel("missing")


def test_poll_timeout_keeps_callback_task_pending_reconciliation(
    repository, ledger, queue_task, make_reconciler, make_adapter
) -> None:
    queue_task()
    task = _start_attempt(repository, ledger)
    adapter = make_adapter(
        supports_callbacks=True,
        polls=[ProviderPoll(status=ProviderStatus.RUNNING, progress=30)],
    )
    reconciler = make_reconciler(poll_timeout_seconds=3.0, monotonic=_ticking_monotonic())

    outcome = reconciler.poll_until_settled(task=task, adapter=adapter, external_task_id="job-1")

    assert outcome == SettleOutcome.AWAITING_CALLBACK
    current = repository.get_task(task_id=task.task_id)
    assert current is not None
    assert current.status == TaskStatus.PROCESSING
    assert current.progress == 30
    reservation = ledger.get_reservation(task_id=task.task_id, attempt_no=1)
    assert reservation is not None
    assert reservation.state == ReservationState.RESERVED
    events = [event.event_type for event in repository.get_task_details(task_id=task.task_id).events]
    assert "poll_timeout" in events

    ack = reconciler.handle_notice(
        CompletionNotice(
            external_task_id="job-1",
            status=TaskStatus.COMPLETED,
            provider="fake",
            result=RESULT,
        ),
    )
    assert ack.applied is True


def test_poll_timeout_refunds_when_provider_has_no_callbacks(
    repository, ledger, queue_task, make_reconciler, make_adapter
) -> None:
    queue_task(cost=2, max_attempts=1)
    task = _start_attempt(repository, ledger)
    adapter = make_adapter(polls=[ProviderPoll(status=ProviderStatus.QUEUED)])
    reconciler = make_reconciler(poll_timeout_seconds=3.0, monotonic=_ticking_monotonic())

    outcome = reconciler.poll_until_settled(task=task, adapter=adapter, external_task_id="job-1")

    assert outcome == SettleOutcome.FAILED
    failed = repository.get_task(task_id=task.task_id)
    assert failed is not None
    assert failed.failure_class == FailureClass.TIMEOUT
    assert "job-1" in (failed.error_summary or "")
    assert ledger.balance(task.owner_id) == 10


def test_poll_timeout_retries_when_attempts_remain(
    repository, ledger, queue_task, make_reconciler, make_adapter
) -> None:
    queue_task(cost=2, max_attempts=2)
    task = _start_attempt(repository, ledger)
    adapter = make_adapter(polls=[ProviderPoll(status=ProviderStatus.RUNNING)])
    reconciler = make_reconciler(poll_timeout_seconds=2.0, monotonic=_ticking_monotonic())

    outcome = reconciler.poll_until_settled(task=task, adapter=adapter, external_task_id="job-1")

    assert outcome == SettleOutcome.RETRY_SCHEDULED
    retried = repository.get_task(task_id=task.task_id)
    assert retried is not None
    assert retried.status == TaskStatus.PENDING
    assert retried.external_task_id is None
    assert ledger.balance(task.owner_id) == 10


def test_poll_tolerates_transient_errors_then_completes(
    repository, ledger, queue_task, make_reconciler, make_adapter
) -> None:
    queue_task()
    task = _start_attempt(repository, ledger)
    adapter = make_adapter(
        polls=[
            ProviderError("gateway timeout", status_code=504),
            ProviderPoll(status=ProviderStatus.RUNNING, progress=50),
            ProviderPoll(status=ProviderStatus.COMPLETED, progress=100, result=RESULT),
        ],
    )

    outcome = make_reconciler().poll_until_settled(
        task=task,
        adapter=adapter,
        external_task_id="job-1",
    )

    assert outcome == SettleOutcome.COMPLETED
    assert len(adapter.poll_calls) == 3


def test_provider_reported_failure_is_classified(
    repository, ledger, queue_task, make_reconciler
) -> None:
    queue_task()
    task = _start_attempt(repository, ledger)

    ack = make_reconciler().handle_notice(
        CompletionNotice(
            external_task_id="job-1",
            status=TaskStatus.FAILED,
            provider="fake",
            error="Prompt violates content policy",
        ),
    )

    assert ack.applied is True
    failed = repository.get_task(task_id=task.task_id)
    assert failed is not None
    assert failed.status == TaskStatus.FAILED
    assert failed.failure_class == FailureClass.CONTENT_POLICY
    assert ledger.balance(task.owner_id) == 10


def test_unexplained_reported_failure_is_retried(
    repository, ledger, queue_task, make_reconciler
) -> None:
    queue_task(cost=2, max_attempts=2)
    task = _start_attempt(repository, ledger)

    ack = make_reconciler().handle_notice(
        CompletionNotice(external_task_id="job-1", status=TaskStatus.FAILED, provider="fake"),
    )

    assert ack.applied is True
    retried = repository.get_task(task_id=task.task_id)
    assert retried is not None
    assert retried.status == TaskStatus.PENDING
    assert retried.failure_class == FailureClass.PROVIDER_TRANSIENT
    assert ledger.balance(task.owner_id) == 10


def test_completion_without_result_fails_task(
    repository, ledger, queue_task, make_reconciler
) -> None:
    queue_task()
    task = _start_attempt(repository, ledger)

    make_reconciler().handle_notice(
        CompletionNotice(external_task_id="job-1", status=TaskStatus.COMPLETED, provider="fake"),
    )

    failed = repository.get_task(task_id=task.task_id)
    assert failed is not None
    assert failed.status == TaskStatus.FAILED
    assert failed.failure_class == FailureClass.PROVIDER_NON_RETRYABLE


def test_progress_notice_updates_without_settling(
    repository, ledger, queue_task, make_reconciler
) -> None:
    queue_task()
    task = _start_attempt(repository, ledger)

    ack = make_reconciler().handle_notice(
        CompletionNotice(
            external_task_id="job-1",
            status=TaskStatus.PROCESSING,
            provider="fake",
            progress=60,
        ),
    )

    assert ack.applied is True
    current = repository.get_task(task_id=task.task_id)
    assert current is not None
    assert current.status == TaskStatus.PROCESSING
    assert current.progress == 60


def test_success_caches_result_and_clears_matching_session(
    repository, ledger, queue_task, make_reconciler
) -> None:
    queue_task()
    task = _start_attempt(repository, ledger)
    cache = MemoryResultCache()
    sessions = MemorySessionStore()
    sessions.set(
        task.owner_id,
        SessionState(
            current_action=SessionAction.GENERATE_IMAGE,
            action_data={"task_id": task.task_id},
        ),
    )
    reconciler = make_reconciler(cache=cache, sessions=sessions)

    assert reconciler.apply_result(task=task, result=RESULT) == SettleOutcome.COMPLETED

    cached = cache.get(task.fingerprint)
    assert cached is not None
    assert cached.result == RESULT
    assert sessions.get(task.owner_id) is None


def test_notifier_failure_does_not_block_settlement(
    repository, ledger, queue_task, make_reconciler, failing_notifier
) -> None:
    queue_task()
    task = _start_attempt(repository, ledger)
    reconciler = make_reconciler(notifier=failing_notifier)

    assert reconciler.apply_result(task=task, result=RESULT) == SettleOutcome.COMPLETED


def test_expire_stale_refunds_unreconciled_tasks(
    repository, ledger, queue_task, make_reconciler
) -> None:
    queue_task(cost=6)
    task = _start_attempt(repository, ledger)

    expired = make_reconciler().expire_stale(grace_seconds=0)

    assert expired == 1
    failed = repository.get_task(task_id=task.task_id)
    assert failed is not None
    assert failed.failure_class == FailureClass.RECONCILIATION_EXPIRED
    assert ledger.balance(task.owner_id) == 10
    events = [event.event_type for event in repository.get_task_details(task_id=task.task_id).events]
    assert "reconciliation_expired" in events


def _locked_error() -> OperationalError:
    return OperationalError("UPDATE generation_tasks", {}, Exception("database is locked"))


def test_completion_write_is_retried_after_store_error(
    repository, ledger, queue_task, make_reconciler, monkeypatch
) -> None:
    queue_task(cost=2)
    task = _start_attempt(repository, ledger)
    original = repository.mark_completed
    calls: list[int] = []

    def _flaky_mark_completed(**kwargs) -> bool:
        calls.append(1)
        if len(calls) == 1:
            raise _locked_error()
        return original(**kwargs)

    monkeypatch.setattr(repository, "mark_completed", _flaky_mark_completed)

    outcome = make_reconciler().apply_result(task=task, result=RESULT)

    assert outcome == SettleOutcome.COMPLETED
    assert len(calls) == 2
    done = repository.get_task(task_id=task.task_id)
    assert done is not None
    assert done.status == TaskStatus.COMPLETED
    assert ledger.balance(task.owner_id) == 8


def test_stuck_settlement_is_released_by_stale_expiry(
    repository, ledger, queue_task, make_reconciler, monkeypatch
) -> None:
    queue_task(cost=2)
    task = _start_attempt(repository, ledger)
    reconciler = make_reconciler()

    def _always_locked(**_kwargs) -> bool:
        raise _locked_error()

    monkeypatch.setattr(repository, "mark_completed", _always_locked)
    assert reconciler.apply_result(task=task, result=RESULT) == SettleOutcome.LOST
    stuck = repository.get_task(task_id=task.task_id)
    assert stuck is not None
    assert stuck.status == TaskStatus.PROCESSING
    assert stuck.settling_at is not None

    expired = reconciler.expire_stale(grace_seconds=0)

    assert expired == 1
    failed = repository.get_task(task_id=task.task_id)
    assert failed is not None
    assert failed.status == TaskStatus.FAILED
    assert failed.failure_class == FailureClass.RECONCILIATION_EXPIRED
    events = [event.event_type for event in repository.get_task_details(task_id=task.task_id).events]
    assert "settlement_released" in events
    assert reconciler.expire_stale(grace_seconds=0) == 0


def test_fresh_settlement_claim_is_not_released(repository, ledger, queue_task) -> None:
    queue_task()
    task = _start_attempt(repository, ledger)
    assert repository.begin_settlement(task_id=task.task_id, attempt_no=task.attempts)

    released = repository.release_stale_settlement(
        task_id=task.task_id,
        attempt_no=task.attempts,
        claimed_before=utc_now() - timedelta(minutes=5),
    )

    assert released is False
    current = repository.get_task(task_id=task.task_id)
    assert current is not None
    assert current.settling_at is not None
