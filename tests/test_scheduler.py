from __future__ import annotations

import threading
import time

import allure
import pytest

from genrelay.orchestrator.cache import MemoryResultCache
from genrelay.orchestrator.errors import ProviderError
from genrelay.orchestrator.models import FailureClass, ReservationState, TaskStatus
from genrelay.orchestrator.providers.base import ProviderPoll, ProviderStart, ProviderStatus
from genrelay.orchestrator.scheduler import GenerationScheduler

pytestmark = [
    allure.epic("Generation Queue"),
    allure.feature("Scheduler"),
]

RESULT = {"url": "https://cdn.example/fox.png"}


@pytest.fixture()
def make_scheduler(repository, ledger, make_reconciler):
    def _make(*, adapters, cache=None, reconciler=None, **overrides) -> GenerationScheduler:
        options = {
            "repository": repository,
            "ledger": ledger,
            "reconciler": reconciler or make_reconciler(cache=cache),
            "adapters": {adapter.name: adapter for adapter in adapters},
            "cache": cache,
            "max_concurrency": 3,
            "worker_id": "test-worker",
            "idle_poll_seconds": 0.01,
        }
        options.update(overrides)
        return GenerationScheduler(**options)

    return _make


def test_run_once_completes_immediate_result(
    repository, ledger, notifier, queue_task, make_adapter, make_scheduler
) -> None:
    task = queue_task(cost=3)
    adapter = make_adapter(starts=[ProviderStart(result=RESULT)])

    summary = make_scheduler(adapters=[adapter]).run_once()

    assert (summary.processed, summary.completed) == (1, 1)
    done = repository.get_task(task_id=task.task_id)
    assert done is not None
    assert done.status == TaskStatus.COMPLETED
    assert done.result == RESULT
    assert ledger.balance(task.owner_id) == 7
    assert adapter.start_calls[0].prompt == "a red fox"
    assert "Your image is ready." in notifier.texts()


def test_run_once_without_work_counts_idle_poll(make_adapter, make_scheduler) -> None:
    summary = make_scheduler(adapters=[make_adapter()]).run_once()

    assert summary.processed == 0
    assert summary.idle_polls == 1


def test_cache_hit_skips_reservation_and_provider(
    repository, ledger, queue_task, make_adapter, make_scheduler
) -> None:
    task = queue_task(cost=4)
    cache = MemoryResultCache()
    cache.set(task.fingerprint, RESULT, ttl_seconds=60, kind="image")
    adapter = make_adapter()

    summary = make_scheduler(adapters=[adapter], cache=cache).run_once()

    assert summary.cache_hits == 1
    assert summary.completed == 1
    assert adapter.start_calls == []
    assert ledger.reservations_for_task(task.task_id) == []
    assert ledger.balance(task.owner_id) == 10
    done = repository.get_task(task_id=task.task_id)
    assert done is not None
    assert done.from_cache is True
    assert done.result == RESULT


def test_second_identical_request_is_served_from_cache(
    repository, ledger, queue_task, make_adapter, make_scheduler
) -> None:
    first = queue_task(cost=2)
    second = queue_task(cost=2, prompt="  A RED   fox ")
    adapter = make_adapter(starts=[ProviderStart(result=RESULT)])
    scheduler = make_scheduler(adapters=[adapter], cache=MemoryResultCache())

    scheduler.run_once()
    summary = scheduler.run_once()

    assert summary.cache_hits == 1
    assert len(adapter.start_calls) == 1
    assert ledger.balance(first.owner_id) == 8
    cached = repository.get_task(task_id=second.task_id)
    assert cached is not None
    assert cached.from_cache is True


def test_transient_failures_stop_at_retry_cap(
    repository, ledger, queue_task, make_adapter, make_scheduler
) -> None:
    task = queue_task(cost=2, max_attempts=3)
    adapter = make_adapter(starts=[ProviderError("service unavailable", transient=True)])

    summary = make_scheduler(adapters=[adapter]).run_loop(max_idle_polls=1)

    assert len(adapter.start_calls) == 3
    assert [request.attempt_no for request in adapter.start_calls] == [1, 2, 3]
    assert (summary.retried, summary.failed) == (2, 1)
    failed = repository.get_task(task_id=task.task_id)
    assert failed is not None
    assert failed.status == TaskStatus.FAILED
    assert failed.failure_class == FailureClass.PROVIDER_TRANSIENT
    reservations = ledger.reservations_for_task(task.task_id)
    assert [item.state for item in reservations] == [ReservationState.REFUNDED] * 3
    assert ledger.balance(task.owner_id) == 10


def test_transient_failure_then_success(
    repository, ledger, queue_task, make_adapter, make_scheduler
) -> None:
    task = queue_task(cost=2)
    adapter = make_adapter(
        starts=[ProviderError("rate limit", status_code=429), ProviderStart(result=RESULT)],
    )

    summary = make_scheduler(adapters=[adapter]).run_loop(max_idle_polls=1)

    assert (summary.retried, summary.completed) == (1, 1)
    reservations = ledger.reservations_for_task(task.task_id)
    assert [item.state for item in reservations] == [
        ReservationState.REFUNDED,
        ReservationState.COMMITTED,
    ]
    assert ledger.balance(task.owner_id) == 8


def test_terminal_provider_error_is_not_retried(
    repository, ledger, notifier, queue_task, make_adapter, make_scheduler
) -> None:
    task = queue_task(cost=2)
    adapter = make_adapter(starts=[ProviderError("invalid api key", status_code=401)])

    summary = make_scheduler(adapters=[adapter]).run_loop(max_idle_polls=1)

    assert summary.failed == 1
    assert len(adapter.start_calls) == 1
    failed = repository.get_task(task_id=task.task_id)
    assert failed is not None
    assert failed.failure_class == FailureClass.ACCESS_OR_AUTH
    assert ledger.balance(task.owner_id) == 10
    assert "Your image request failed: invalid api key." in notifier.texts()[-1]


def test_unexpected_adapter_exception_is_retried_with_refunds(
    repository, ledger, queue_task, make_adapter, make_scheduler
) -> None:
    task = queue_task(cost=2, max_attempts=3)
    adapter = make_adapter(starts=[RuntimeError("adapter bug")])

    summary = make_scheduler(adapters=[adapter]).run_loop(max_idle_polls=1)

    assert len(adapter.start_calls) == 3
    assert (summary.retried, summary.failed) == (2, 1)
    failed = repository.get_task(task_id=task.task_id)
    assert failed is not None
    assert failed.status == TaskStatus.FAILED
    assert failed.failure_class == FailureClass.PROVIDER_TRANSIENT
    assert "adapter bug" in (failed.error_summary or "")
    reservations = ledger.reservations_for_task(task.task_id)
    assert [item.state for item in reservations] == [ReservationState.REFUNDED] * 3
    assert ledger.balance(task.owner_id) == 10


@pytest.mark.parametrize(
    "error",
    [ProviderError("upstream exploded"), ConnectionError("connection dropped")],
)
def test_unclassified_start_failure_retries_then_succeeds(
    repository, ledger, queue_task, make_adapter, make_scheduler, error
) -> None:
    task = queue_task(cost=2, max_attempts=3)
    adapter = make_adapter(starts=[error, error, ProviderStart(result=RESULT)])

    summary = make_scheduler(adapters=[adapter]).run_loop(max_idle_polls=1)

    assert len(adapter.start_calls) == 3
    assert (summary.retried, summary.completed) == (2, 1)
    done = repository.get_task(task_id=task.task_id)
    assert done is not None
    assert done.status == TaskStatus.COMPLETED
    assert ledger.balance(task.owner_id) == 8


def test_unexpected_poll_exception_keeps_polling(
    repository, ledger, queue_task, make_adapter, make_scheduler
) -> None:
    task = queue_task(cost=2)
    adapter = make_adapter(
        starts=[ProviderStart(external_task_id="job-43")],
        polls=[
            ValueError("garbled status payload"),
            ProviderPoll(status=ProviderStatus.COMPLETED, progress=100, result=RESULT),
        ],
    )

    summary = make_scheduler(adapters=[adapter]).run_once()

    assert summary.completed == 1
    assert adapter.poll_calls == ["job-43", "job-43"]
    done = repository.get_task(task_id=task.task_id)
    assert done is not None
    assert done.status == TaskStatus.COMPLETED
    assert ledger.balance(task.owner_id) == 8


def test_insufficient_balance_at_dispatch_fails_without_provider_call(
    repository, ledger, queue_task, make_adapter, make_scheduler
) -> None:
    task = queue_task(cost=25)
    adapter = make_adapter()

    summary = make_scheduler(adapters=[adapter]).run_once()

    assert summary.failed == 1
    assert adapter.start_calls == []
    failed = repository.get_task(task_id=task.task_id)
    assert failed is not None
    assert failed.failure_class == FailureClass.INSUFFICIENT_BALANCE
    assert ledger.balance(task.owner_id) == 10


def test_unknown_provider_fails_task(repository, queue_task, make_adapter, make_scheduler) -> None:
    task = queue_task(provider="nowhere")

    make_scheduler(adapters=[make_adapter()]).run_once()

    failed = repository.get_task(task_id=task.task_id)
    assert failed is not None
    assert failed.status == TaskStatus.FAILED
    assert failed.failure_class == FailureClass.PROVIDER_NON_RETRYABLE


def test_deferred_start_is_polled_to_completion(
    repository, ledger, queue_task, make_adapter, make_scheduler
) -> None:
    task = queue_task(cost=2)
    adapter = make_adapter(
        starts=[ProviderStart(external_task_id="job-42")],
        polls=[
            ProviderPoll(status=ProviderStatus.RUNNING, progress=40),
            ProviderPoll(status=ProviderStatus.COMPLETED, progress=100, result=RESULT),
        ],
    )

    summary = make_scheduler(adapters=[adapter]).run_once()

    assert summary.completed == 1
    assert adapter.poll_calls == ["job-42", "job-42"]
    done = repository.get_task(task_id=task.task_id)
    assert done is not None
    assert done.external_task_id == "job-42"
    assert done.status == TaskStatus.COMPLETED
    assert ledger.balance(task.owner_id) == 8


def test_cancel_while_polling_refunds_once(
    repository, ledger, queue_task, make_adapter, make_reconciler, make_scheduler
) -> None:
    task = queue_task(cost=3)
    reconciler = make_reconciler()

    def _cancel_then_report_running() -> ProviderPoll:
        reconciler.cancel(task.task_id)
        return ProviderPoll(status=ProviderStatus.RUNNING)

    adapter = make_adapter(
        starts=[ProviderStart(external_task_id="job-7")],
        polls=[_cancel_then_report_running, ProviderPoll(status=ProviderStatus.COMPLETED)],
    )

    summary = make_scheduler(adapters=[adapter], reconciler=reconciler).run_once()

    assert summary.completed == 0
    canceled = repository.get_task(task_id=task.task_id)
    assert canceled is not None
    assert canceled.failure_class == FailureClass.CANCELED
    assert ledger.balance(task.owner_id) == 10
    assert [item.state for item in ledger.reservations_for_task(task.task_id)] == [
        ReservationState.REFUNDED,
    ]


def test_concurrency_never_exceeds_cap(repository, queue_task, make_adapter, make_scheduler) -> None:
    for index in range(8):
        queue_task(cost=1, prompt=f"prompt {index}")
    active = 0
    peak = 0
    lock = threading.Lock()

    def _slow_start() -> ProviderStart:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with lock:
            active -= 1
        return ProviderStart(result=RESULT)

    adapter = make_adapter(starts=[_slow_start])

    summary = make_scheduler(adapters=[adapter], max_concurrency=3).run_loop(max_idle_polls=1)

    assert summary.completed == 8
    assert 1 <= peak <= 3
    assert repository.queue_stats().completed_count == 8


def test_max_tasks_limits_claims(repository, queue_task, make_adapter, make_scheduler) -> None:
    for index in range(3):
        queue_task(cost=1, prompt=f"prompt {index}")

    summary = make_scheduler(adapters=[make_adapter()]).run_loop(max_tasks=2)

    assert summary.processed == 2
    assert repository.queue_stats().pending == 1


def test_background_start_and_stop(repository, queue_task, make_adapter, make_scheduler) -> None:
    task = queue_task(cost=1)
    scheduler = make_scheduler(adapters=[make_adapter()])

    scheduler.start()
    try:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            current = repository.get_task(task_id=task.task_id)
            if current is not None and current.status == TaskStatus.COMPLETED:
                break
            time.sleep(0.02)
    finally:
        scheduler.stop(timeout=5)

    done = repository.get_task(task_id=task.task_id)
    assert done is not None
    assert done.status == TaskStatus.COMPLETED


def test_maintenance_sweeps_cache_and_stale_tasks(
    repository, ledger, queue_task, clock, make_adapter, make_scheduler
) -> None:
    cache = MemoryResultCache(clock=clock)
    cache.set("old", RESULT, ttl_seconds=1, kind="image")
    clock.advance(5)
    task = queue_task(cost=2)
    claimed = repository.claim_next_ready_task(worker_id="crashed-worker")
    assert claimed is not None
    ledger.reserve(owner_id=task.owner_id, amount=2, task_id=task.task_id, attempt_no=1)

    summary = make_scheduler(
        adapters=[make_adapter()],
        cache=cache,
        reconcile_grace_seconds=0,
    ).run_maintenance()

    assert summary.cache_removed == 1
    assert summary.tasks_expired == 1
    assert ledger.balance(task.owner_id) == 10


def test_max_concurrency_must_be_positive(make_adapter, make_scheduler) -> None:
    with pytest.raises(ValueError, match="max_concurrency"):
        make_scheduler(adapters=[make_adapter()], max_concurrency=0)
