from __future__ import annotations

import threading
from datetime import timedelta

import allure

from genrelay.orchestrator.models import (
    CompletionNotice,
    FailureClass,
    TaskKind,
    TaskStatus,
)
from genrelay.orchestrator.repository import TaskRepository
from genrelay.storage.common import utc_now

pytestmark = [
    allure.epic("Generation Queue"),
    allure.feature("Task Queue"),
]


def test_enqueue_records_pending_task_and_event(repository: TaskRepository, queue_task) -> None:
    task = queue_task(kind=TaskKind.VIDEO, cost=15)

    assert task.status == TaskStatus.PENDING
    assert task.attempts == 0
    assert task.cost == 15
    details = repository.get_task_details(task_id=task.task_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["enqueued"]
    assert details.events[0].details["cost"] == 15


def test_claim_is_fifo_and_increments_attempts(repository: TaskRepository, queue_task) -> None:
    first = queue_task(prompt="first")
    second = queue_task(prompt="second")

    assert repository.queue_position(task_id=first.task_id) == 1
    assert repository.queue_position(task_id=second.task_id) == 2

    claimed = repository.claim_next_ready_task(worker_id="w1")

    assert claimed is not None
    assert claimed.task_id == first.task_id
    assert claimed.status == TaskStatus.PROCESSING
    assert claimed.attempts == 1
    assert claimed.started_at is not None
    assert repository.queue_position(task_id=first.task_id) is None
    assert repository.queue_position(task_id=second.task_id) == 1


def test_concurrent_claims_never_share_a_task(repository: TaskRepository, queue_task) -> None:
    for index in range(6):
        queue_task(prompt=f"prompt {index}")
    barrier = threading.Barrier(8)
    claimed: list[str] = []
    lock = threading.Lock()

    def _claim() -> None:
        barrier.wait()
        task = repository.claim_next_ready_task(worker_id=threading.current_thread().name)
        if task is not None:
            with lock:
                claimed.append(task.task_id)

    threads = [threading.Thread(target=_claim) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(claimed) == 6
    assert len(set(claimed)) == 6


def test_claim_skips_tasks_scheduled_in_the_future(repository: TaskRepository, queue_task) -> None:
    task = queue_task()
    claimed = repository.claim_next_ready_task(worker_id="w1")
    assert claimed is not None
    assert repository.begin_settlement(task_id=task.task_id, attempt_no=1)
    assert repository.schedule_retry(
        task_id=task.task_id,
        attempt_no=1,
        run_after=utc_now() + timedelta(hours=1),
        failure_class=FailureClass.PROVIDER_TRANSIENT,
        error_summary="503",
    )

    assert repository.claim_next_ready_task(worker_id="w1") is None
    pending = repository.get_task(task_id=task.task_id)
    assert pending is not None
    assert pending.status == TaskStatus.PENDING
    assert pending.settling_at is None
    assert pending.failure_class == FailureClass.PROVIDER_TRANSIENT


def test_settlement_claim_has_a_single_winner(repository: TaskRepository, queue_task) -> None:
    task = queue_task()
    repository.claim_next_ready_task(worker_id="w1")

    assert repository.begin_settlement(task_id=task.task_id, attempt_no=1) is True
    assert repository.begin_settlement(task_id=task.task_id, attempt_no=1) is False
    assert repository.mark_completed(
        task_id=task.task_id,
        attempt_no=1,
        result={"url": "https://cdn.example/x.png"},
    )
    assert not repository.mark_failed(
        task_id=task.task_id,
        attempt_no=1,
        failure_class=FailureClass.INTERNAL_ERROR,
        error_summary="late",
    )

    done = repository.get_task(task_id=task.task_id)
    assert done is not None
    assert done.status == TaskStatus.COMPLETED
    assert done.progress == 100
    assert done.result == {"url": "https://cdn.example/x.png"}


def test_terminal_writes_require_settlement_claim(repository: TaskRepository, queue_task) -> None:
    task = queue_task()
    repository.claim_next_ready_task(worker_id="w1")

    assert not repository.mark_completed(task_id=task.task_id, attempt_no=1, result={"a": 1})
    assert not repository.begin_settlement(task_id=task.task_id, attempt_no=2)


def test_progress_only_moves_forward(repository: TaskRepository, queue_task) -> None:
    task = queue_task()
    repository.claim_next_ready_task(worker_id="w1")

    assert repository.update_progress(task_id=task.task_id, attempt_no=1, progress=40)
    assert not repository.update_progress(task_id=task.task_id, attempt_no=1, progress=20)
    assert repository.update_progress(task_id=task.task_id, attempt_no=1, progress=250)

    current = repository.get_task(task_id=task.task_id)
    assert current is not None
    assert current.progress == 100


def test_find_by_external_id_scopes_by_provider(repository: TaskRepository, queue_task) -> None:
    first = queue_task(provider="freepik", prompt="one")
    second = queue_task(provider="runway", prompt="two")
    repository.claim_next_ready_task(worker_id="w1")
    repository.claim_next_ready_task(worker_id="w1")
    repository.attach_external_id(task_id=first.task_id, attempt_no=1, external_task_id="job-1")
    repository.attach_external_id(task_id=second.task_id, attempt_no=1, external_task_id="job-1")

    found = repository.find_task_by_external_id(external_task_id="job-1", provider="runway")

    assert found is not None
    assert found.task_id == second.task_id
    assert repository.find_task_by_external_id(external_task_id="job-1") is None
    assert repository.find_task_by_external_id(external_task_id="job-2") is None


def test_parked_notices_are_taken_once(repository: TaskRepository) -> None:
    repository.park_notice(
        CompletionNotice(
            external_task_id="job-1",
            status=TaskStatus.COMPLETED,
            provider="freepik",
            result={"url": "https://cdn.example/x.png"},
        ),
    )

    taken = repository.take_parked_notices(external_task_id="job-1", provider="freepik")

    assert len(taken) == 1
    assert taken[0].result == {"url": "https://cdn.example/x.png"}
    assert repository.take_parked_notices(external_task_id="job-1", provider="freepik") == []


def test_purge_parked_notices_by_age(repository: TaskRepository) -> None:
    repository.park_notice(CompletionNotice(external_task_id="job-1", status=TaskStatus.FAILED))

    assert repository.purge_parked_notices(received_before=utc_now() - timedelta(hours=1)) == 0
    assert repository.purge_parked_notices(received_before=utc_now() + timedelta(seconds=1)) == 1


def test_queue_stats_counts_statuses(repository: TaskRepository, queue_task) -> None:
    done = queue_task(prompt="done")
    queue_task(prompt="waiting")
    repository.claim_next_ready_task(worker_id="w1")
    repository.begin_settlement(task_id=done.task_id, attempt_no=1)
    repository.mark_completed(task_id=done.task_id, attempt_no=1, result={"text": "ok"})

    stats = repository.queue_stats()

    assert stats.pending == 1
    assert stats.processing == 0
    assert stats.completed_count == 1
    assert stats.failed_count == 0
    assert stats.avg_wait_seconds is not None
    assert stats.avg_wait_seconds >= 0
    assert stats.avg_processing_seconds is not None
