"""Bounded worker pool that drains the generation queue."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, fields
from datetime import timedelta

from genrelay.orchestrator.cache import ResultCache
from genrelay.orchestrator.errors import InsufficientBalanceError, ProviderError
from genrelay.orchestrator.ledger import TokenLedger
from genrelay.orchestrator.models import CacheEntryView, FailureClass, TaskStatus, TaskView
from genrelay.orchestrator.providers.base import ProviderAdapter, ProviderRequest
from genrelay.orchestrator.reconciler import Reconciler, SettleOutcome
from genrelay.orchestrator.repository import TaskRepository
from genrelay.orchestrator.sessions import SessionStore
from genrelay.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchSummary:
    """Aggregate dispatch counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    cache_hits: int = 0
    failed: int = 0
    retried: int = 0
    awaiting_reconciliation: int = 0
    idle_polls: int = 0

    def merge(self, other: DispatchSummary) -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))


@dataclass(slots=True)
class MaintenanceSummary:
    """Counters from one maintenance sweep."""

    cache_removed: int = 0
    sessions_removed: int = 0
    notices_purged: int = 0
    tasks_expired: int = 0


class GenerationScheduler:
    """Claims ready tasks FIFO and runs at most ``max_concurrency`` at once."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        ledger: TokenLedger,
        reconciler: Reconciler,
        adapters: Mapping[str, ProviderAdapter],
        cache: ResultCache | None = None,
        sessions: SessionStore | None = None,
        max_concurrency: int = 3,
        worker_id: str = "genrelay-worker",
        idle_poll_seconds: float = 1.0,
        sweep_interval_seconds: int = 600,
        reconcile_grace_seconds: int = 3_600,
        parked_notice_ttl_seconds: int = 3_600,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError(f"max_concurrency must be > 0, got {max_concurrency}")
        self.repository = repository
        self.ledger = ledger
        self.reconciler = reconciler
        self.adapters = dict(adapters)
        self.cache = cache
        self.sessions = sessions
        self.max_concurrency = max_concurrency
        self.worker_id = worker_id
        self.idle_poll_seconds = idle_poll_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.reconcile_grace_seconds = reconcile_grace_seconds
        self.parked_notice_ttl_seconds = parked_notice_ttl_seconds
        self._monotonic = monotonic
        self._slots = threading.BoundedSemaphore(max_concurrency)
        self._stop_event = threading.Event()
        self._last_sweep_at: float | None = None
        self._thread: threading.Thread | None = None

    def run_once(self) -> DispatchSummary:
        """Claim and process at most one task in the calling thread."""

        if self._stop_event.is_set():
            return DispatchSummary(idle_polls=1)
        self._maybe_run_maintenance()
        task = self.repository.claim_next_ready_task(worker_id=self.worker_id)
        if task is None:
            return DispatchSummary(idle_polls=1)
        return self._process(task)

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> DispatchSummary:
        """Drain the queue with up to ``max_concurrency`` tasks in flight.

        Args:
            max_tasks: Stop claiming after this many tasks (None = unlimited).
            max_idle_polls: Consecutive empty polls with nothing in flight before
                returning (None = run until ``stop``).
        """

        aggregate = DispatchSummary()
        consecutive_idle = 0
        claimed = 0
        in_flight: set[Future[DispatchSummary]] = set()
        with (
            self._signal_handlers(),
            ThreadPoolExecutor(
                max_workers=self.max_concurrency,
                thread_name_prefix=f"{self.worker_id}-slot",
            ) as pool,
        ):
            while not self._stop_event.is_set():
                _collect_done(in_flight, aggregate)
                if max_tasks is not None and claimed >= max_tasks:
                    break
                self._maybe_run_maintenance()

                if not self._slots.acquire(timeout=0.1):
                    continue
                try:
                    task = self.repository.claim_next_ready_task(worker_id=self.worker_id)
                except Exception:
                    self._slots.release()
                    logger.exception("Failed to claim next task")
                    self._sleep_with_stop(self.idle_poll_seconds)
                    continue
                if task is None:
                    self._slots.release()
                    if in_flight:
                        # Running attempts may schedule retries; wait for one to finish.
                        wait(in_flight, timeout=self.idle_poll_seconds, return_when=FIRST_COMPLETED)
                        continue
                    consecutive_idle += 1
                    aggregate.idle_polls += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(self.idle_poll_seconds)
                    continue

                consecutive_idle = 0
                claimed += 1
                in_flight.add(pool.submit(self._run_slot, task))

            wait(in_flight)
            _collect_done(in_flight, aggregate)
        return aggregate

    def start(self) -> None:
        """Run the dispatch loop in a background daemon thread."""

        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_forever,
            name=f"{self.worker_id}-dispatch",
            daemon=True,
        )
        self._thread.start()

    def stop(self, *, timeout: float | None = None) -> None:
        """Stop claiming new tasks and wait for in-flight attempts."""

        self.request_stop()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def request_stop(self) -> None:
        self._stop_event.set()

    def run_maintenance(self) -> MaintenanceSummary:
        """Sweep expired cache entries, sessions, parked notices and stale tasks."""

        summary = MaintenanceSummary()
        if self.cache is not None:
            try:
                summary.cache_removed = self.cache.sweep()
            except Exception:  # noqa: BLE001
                logger.warning("Result cache sweep failed", exc_info=True)
        if self.sessions is not None:
            try:
                summary.sessions_removed = self.sessions.sweep()
            except Exception:  # noqa: BLE001
                logger.warning("Session sweep failed", exc_info=True)
        try:
            summary.notices_purged = self.repository.purge_parked_notices(
                received_before=utc_now() - timedelta(seconds=self.parked_notice_ttl_seconds),
            )
        except Exception:  # noqa: BLE001
            logger.warning("Parked notice purge failed", exc_info=True)
        try:
            summary.tasks_expired = self.reconciler.expire_stale(
                grace_seconds=self.reconcile_grace_seconds,
            )
        except Exception:  # noqa: BLE001
            logger.warning("Stale reconciliation expiry failed", exc_info=True)
        return summary

    def _run_forever(self) -> None:
        try:
            self.run_loop(max_tasks=None, max_idle_polls=None)
        except Exception:
            logger.exception("Dispatch loop crashed")

    def _run_slot(self, task: TaskView) -> DispatchSummary:
        try:
            return self._process(task)
        finally:
            self._slots.release()

    def _process(self, task: TaskView) -> DispatchSummary:
        summary = DispatchSummary(processed=1)
        try:
            outcome = self._execute(task=task, summary=summary)
        except Exception as error:
            logger.exception("Unexpected error processing task %s", task.task_id)
            outcome = self._fail_internal(task=task, error=error)
        _count_outcome(summary, outcome)
        return summary

    def _execute(self, *, task: TaskView, summary: DispatchSummary) -> SettleOutcome:
        adapter = self.adapters.get(task.provider)
        if adapter is None:
            return self.reconciler.apply_failure(
                task=task,
                failure_class=FailureClass.PROVIDER_NON_RETRYABLE,
                error=f"No adapter configured for provider {task.provider!r}",
                allow_retry=False,
            )

        cached = self._cache_lookup(task)
        if cached is not None:
            summary.cache_hits = 1
            return self.reconciler.apply_result(task=task, result=cached.result, from_cache=True)

        try:
            self.ledger.reserve(
                owner_id=task.owner_id,
                amount=task.cost,
                task_id=task.task_id,
                attempt_no=task.attempts,
            )
        except InsufficientBalanceError as error:
            return self.reconciler.apply_failure(
                task=task,
                failure_class=FailureClass.INSUFFICIENT_BALANCE,
                error=str(error),
                allow_retry=False,
            )

        if not self._attempt_open(task):
            # Canceled or expired between claim and reserve; the settler saw no reservation.
            self.ledger.refund(
                task_id=task.task_id,
                attempt_no=task.attempts,
                reason="settled_before_start",
            )
            return SettleOutcome.LOST

        request = ProviderRequest(
            task_id=task.task_id,
            attempt_no=task.attempts,
            owner_id=task.owner_id,
            kind=task.kind.value,
            model=task.model,
            prompt=task.prompt_text,
            auxiliary_ref=task.auxiliary_ref,
        )
        try:
            started = adapter.start(request)
        except ProviderError as error:
            return self.reconciler.apply_provider_error(task=task, error=error)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Adapter %s raised while starting task %s",
                task.provider,
                task.task_id,
                exc_info=True,
            )
            return self.reconciler.apply_provider_error(
                task=task,
                error=ProviderError(f"{task.provider}: adapter error: {error}", transient=True),
            )

        if started.result is not None:
            return self.reconciler.apply_result(task=task, result=started.result)

        external_task_id = started.external_task_id or ""
        if not self.reconciler.attach_external_id(task=task, external_task_id=external_task_id):
            return SettleOutcome.LOST
        if not self._attempt_open(task):
            return SettleOutcome.LOST
        return self.reconciler.poll_until_settled(
            task=task,
            adapter=adapter,
            external_task_id=external_task_id,
        )

    def _cache_lookup(self, task: TaskView) -> CacheEntryView | None:
        if self.cache is None:
            return None
        try:
            return self.cache.get(task.fingerprint)
        except Exception:  # noqa: BLE001
            logger.warning("Result cache lookup failed for task %s", task.task_id, exc_info=True)
            return None

    def _attempt_open(self, task: TaskView) -> bool:
        current = self.repository.get_task(task_id=task.task_id)
        return (
            current is not None
            and current.status == TaskStatus.PROCESSING
            and current.attempts == task.attempts
            and current.settling_at is None
        )

    def _fail_internal(self, *, task: TaskView, error: Exception) -> SettleOutcome:
        try:
            return self.reconciler.apply_failure(
                task=task,
                failure_class=FailureClass.INTERNAL_ERROR,
                error=f"Internal error: {error}",
                allow_retry=False,
            )
        except Exception:
            logger.exception("Could not record failure for task %s", task.task_id)
            return SettleOutcome.LOST

    def _maybe_run_maintenance(self) -> None:
        now = self._monotonic()
        if (
            self._last_sweep_at is not None
            and now - self._last_sweep_at < self.sweep_interval_seconds
        ):
            return
        self._last_sweep_at = now
        summary = self.run_maintenance()
        if any(getattr(summary, item.name) for item in fields(summary)):
            logger.info(
                "Maintenance: cache_removed=%d sessions_removed=%d notices_purged=%d "
                "tasks_expired=%d",
                summary.cache_removed,
                summary.sessions_removed,
                summary.notices_purged,
                summary.tasks_expired,
            )

    def _sleep_with_stop(self, seconds: float) -> None:
        self._stop_event.wait(max(0.0, seconds))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        # Signal handlers can only be installed in the main thread.
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; finishing in-flight tasks", name)
            self.request_stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _collect_done(in_flight: set[Future[DispatchSummary]], aggregate: DispatchSummary) -> None:
    for future in [item for item in in_flight if item.done()]:
        in_flight.discard(future)
        aggregate.merge(future.result())


def _count_outcome(summary: DispatchSummary, outcome: SettleOutcome) -> None:
    if outcome == SettleOutcome.COMPLETED:
        summary.completed += 1
    elif outcome == SettleOutcome.FAILED:
        summary.failed += 1
    elif outcome == SettleOutcome.RETRY_SCHEDULED:
        summary.retried += 1
    elif outcome == SettleOutcome.AWAITING_CALLBACK:
        summary.awaiting_reconciliation += 1
