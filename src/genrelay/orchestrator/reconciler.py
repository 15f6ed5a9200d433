"""Single settlement path for generation results, whichever channel reports them."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from datetime import timedelta
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from genrelay.orchestrator.cache import ResultCache
from genrelay.orchestrator.errors import (
    GenrelayError,
    PollTimeoutError,
    ProviderError,
    TaskStateError,
)
from genrelay.orchestrator.failure_classifier import classify_provider_failure
from genrelay.orchestrator.ledger import TokenLedger
from genrelay.orchestrator.models import (
    CompletionNotice,
    FailureClass,
    NoticeAck,
    TaskStatus,
    TaskView,
)
from genrelay.orchestrator.notifier import Notifier, result_attachments, safe_notify
from genrelay.orchestrator.providers.base import ProviderAdapter, ProviderStatus
from genrelay.orchestrator.repository import TaskRepository
from genrelay.orchestrator.retry import RetryPolicy
from genrelay.orchestrator.sessions import SessionStore
from genrelay.storage.common import utc_now

logger = logging.getLogger(__name__)

_CANCEL_ATTEMPTS = 3
_TERMINAL_WRITE_ATTEMPTS = 3
_TERMINAL_WRITE_BACKOFF_SECONDS = 0.2


class SettleOutcome(str, Enum):
    """What happened to an attempt after a settle request."""

    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    AWAITING_CALLBACK = "awaiting_callback"
    LOST = "lost"


class Reconciler:
    """Applies results and failures exactly once per attempt.

    Every path (scheduler, poll loop, provider callback, operator cancel,
    stale expiry) goes through ``begin_settlement``; the loser of that
    compare-and-set does nothing.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        ledger: TokenLedger,
        notifier: Notifier,
        retry_policy: RetryPolicy | None = None,
        cache: ResultCache | None = None,
        sessions: SessionStore | None = None,
        cache_ttl_seconds: Mapping[str, int] | None = None,
        poll_interval_seconds: float = 2.0,
        poll_timeout_seconds: float = 300.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.notifier = notifier
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache = cache
        self.sessions = sessions
        self.cache_ttl_seconds = dict(
            cache_ttl_seconds or {"image": 3_600, "video": 7_200, "chat": 1_800},
        )
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_timeout_seconds = poll_timeout_seconds
        self._sleep = sleep
        self._monotonic = monotonic

    def handle_notice(self, notice: CompletionNotice) -> NoticeAck:
        """Apply a provider completion notice. Never raises for unknown ids."""

        task = self.repository.find_task_by_external_id(
            external_task_id=notice.external_task_id,
            provider=notice.provider,
        )
        if task is None:
            self.repository.park_notice(notice)
            # The id may have been attached between the lookup and the park.
            task = self.repository.find_task_by_external_id(
                external_task_id=notice.external_task_id,
                provider=notice.provider,
            )
            if task is None:
                logger.warning(
                    "Parked notice for unknown external id provider=%s external_task_id=%s",
                    notice.provider or "-",
                    notice.external_task_id,
                )
                return NoticeAck(accepted=True, applied=False, reason="unknown_external_id")
            applied = self._apply_parked(task)
            return NoticeAck(accepted=True, applied=applied, task_id=task.task_id)

        if task.status != TaskStatus.PROCESSING or task.settling_at is not None:
            logger.info(
                "Ignoring notice for settled task=%s status=%s",
                task.task_id,
                task.status.value,
            )
            return NoticeAck(
                accepted=True,
                applied=False,
                task_id=task.task_id,
                reason="already_settled",
            )
        outcome = self._apply_notice(task, notice)
        return NoticeAck(
            accepted=True,
            applied=outcome != SettleOutcome.LOST,
            task_id=task.task_id,
            reason=None if outcome != SettleOutcome.LOST else "already_settled",
        )

    def attach_external_id(self, *, task: TaskView, external_task_id: str) -> bool:
        """Record the provider job id, then apply any notice that beat it here."""

        attached = self.repository.attach_external_id(
            task_id=task.task_id,
            attempt_no=task.attempts,
            external_task_id=external_task_id,
        )
        if not attached:
            return False
        logger.info(
            "Task %s attempt %d awaiting provider job %s",
            task.task_id,
            task.attempts,
            external_task_id,
        )
        refreshed = self.repository.get_task(task_id=task.task_id)
        if refreshed is not None:
            self._apply_parked(refreshed)
        return True

    def apply_result(
        self,
        *,
        task: TaskView,
        result: dict[str, Any],
        from_cache: bool = False,
    ) -> SettleOutcome:
        """Settle the current attempt as completed."""

        if not self.repository.begin_settlement(task_id=task.task_id, attempt_no=task.attempts):
            return SettleOutcome.LOST

        if not from_cache:
            try:
                self.ledger.commit(task_id=task.task_id, attempt_no=task.attempts)
            except GenrelayError as error:
                logger.exception("Ledger commit failed for task %s", task.task_id)
                return self._settle_failure(
                    task=task,
                    failure_class=FailureClass.INTERNAL_ERROR,
                    error=f"Ledger commit failed: {error}",
                    allow_retry=False,
                )
            self._cache_result(task=task, result=result)

        safe_notify(
            self.notifier,
            task.owner_id,
            f"Your {task.kind.value} is ready.",
            result_attachments(result),
        )
        self._clear_session(task)
        completed = self._write_terminal(
            task,
            lambda: self.repository.mark_completed(
                task_id=task.task_id,
                attempt_no=task.attempts,
                result=result,
                from_cache=from_cache,
            ),
        )
        if not completed:
            logger.error("Task %s lost its settlement claim before completion", task.task_id)
            return SettleOutcome.LOST
        logger.info(
            "Task %s completed attempt=%d from_cache=%s",
            task.task_id,
            task.attempts,
            from_cache,
        )
        return SettleOutcome.COMPLETED

    def apply_failure(
        self,
        *,
        task: TaskView,
        failure_class: FailureClass,
        error: str,
        details: dict[str, object] | None = None,
        allow_retry: bool = True,
    ) -> SettleOutcome:
        """Settle the current attempt as failed: refund, then retry or fail."""

        if not self.repository.begin_settlement(task_id=task.task_id, attempt_no=task.attempts):
            return SettleOutcome.LOST
        return self._settle_failure(
            task=task,
            failure_class=failure_class,
            error=error,
            details=details,
            allow_retry=allow_retry,
        )

    def apply_provider_error(self, *, task: TaskView, error: ProviderError) -> SettleOutcome:
        """Classify an adapter error and settle the attempt accordingly."""

        classification = classify_provider_failure(
            provider=task.provider,
            message=error.message,
            status_code=error.status_code,
            transient=error.transient,
        )
        return self.apply_failure(
            task=task,
            failure_class=classification.failure_class,
            error=error.message,
            details=classification.to_event_details(provider=task.provider),
        )

    def poll_until_settled(
        self,
        *,
        task: TaskView,
        adapter: ProviderAdapter,
        external_task_id: str,
    ) -> SettleOutcome:
        """Poll the provider until a terminal status, another settler, or timeout."""

        deadline = self._monotonic() + self.poll_timeout_seconds
        while True:
            current = self.repository.get_task(task_id=task.task_id)
            if not _attempt_open(current, attempt_no=task.attempts):
                logger.info("Task %s settled elsewhere; polling stopped", task.task_id)
                return SettleOutcome.LOST

            try:
                snapshot = adapter.poll(external_task_id)
            except ProviderError as error:
                classification = classify_provider_failure(
                    provider=task.provider,
                    message=error.message,
                    status_code=error.status_code,
                    transient=error.transient,
                )
                if not classification.retryable:
                    return self.apply_failure(
                        task=task,
                        failure_class=classification.failure_class,
                        error=error.message,
                        details=classification.to_event_details(provider=task.provider),
                    )
                logger.warning(
                    "Transient poll error task=%s external_task_id=%s: %s",
                    task.task_id,
                    external_task_id,
                    error.message,
                )
            except Exception:  # noqa: BLE001
                logger.warning(
                    "Adapter error while polling task=%s external_task_id=%s",
                    task.task_id,
                    external_task_id,
                    exc_info=True,
                )
            else:
                if snapshot.status == ProviderStatus.COMPLETED:
                    return self._apply_completion(task=task, result=snapshot.result)
                if snapshot.status == ProviderStatus.FAILED:
                    return self._apply_reported_failure(task=task, error=snapshot.error)
                if snapshot.progress is not None:
                    self.repository.update_progress(
                        task_id=task.task_id,
                        attempt_no=task.attempts,
                        progress=snapshot.progress,
                    )

            remaining = deadline - self._monotonic()
            if remaining <= 0:
                return self._handle_poll_timeout(
                    task=task,
                    adapter=adapter,
                    timeout=PollTimeoutError(external_task_id, self.poll_timeout_seconds),
                )
            self._sleep(min(self.poll_interval_seconds, remaining))

    def cancel(self, task_id: str) -> TaskView:
        """Operator cancel: pending fails at once, processing settles with refund."""

        for _ in range(_CANCEL_ATTEMPTS):
            task = self.repository.get_task(task_id=task_id)
            if task is None:
                raise TaskStateError(f"Task not found: {task_id}")
            if task.status.is_terminal:
                raise TaskStateError(
                    f"Task {task_id} cannot be canceled from status={task.status.value}",
                )
            if task.status == TaskStatus.PENDING:
                if self.repository.fail_pending_task(
                    task_id=task_id,
                    failure_class=FailureClass.CANCELED,
                    error_summary="Canceled by operator",
                ):
                    self._clear_session(task)
                    return self._reload(task_id)
                continue
            outcome = self.apply_failure(
                task=task,
                failure_class=FailureClass.CANCELED,
                error="Canceled by operator",
                allow_retry=False,
            )
            if outcome != SettleOutcome.LOST:
                return self._reload(task_id)
        raise TaskStateError(
            f"Task state changed concurrently while canceling; retry (task_id={task_id}).",
        )

    def expire_stale(self, *, grace_seconds: int) -> int:
        """Fail and refund processing tasks that never reconciled within the grace window."""

        cutoff = utc_now() - timedelta(seconds=grace_seconds)
        expired = 0
        for task in self.repository.list_stale_processing(started_before=cutoff):
            if task.settling_at is not None:
                logger.warning(
                    "Releasing settlement claim held since %s for task %s",
                    task.settling_at.isoformat(),
                    task.task_id,
                )
                if not self.repository.release_stale_settlement(
                    task_id=task.task_id,
                    attempt_no=task.attempts,
                    claimed_before=cutoff,
                ):
                    continue
            outcome = self.apply_failure(
                task=task,
                failure_class=FailureClass.RECONCILIATION_EXPIRED,
                error=f"No provider result within {grace_seconds}s",
                allow_retry=False,
            )
            if outcome == SettleOutcome.FAILED:
                expired += 1
                self.repository.add_task_event(
                    task_id=task.task_id,
                    event_type="reconciliation_expired",
                    details={"grace_seconds": grace_seconds, "attempt": task.attempts},
                )
        if expired:
            logger.warning("Expired %d tasks pending reconciliation", expired)
        return expired

    def _apply_notice(self, task: TaskView, notice: CompletionNotice) -> SettleOutcome:
        if notice.status == TaskStatus.COMPLETED:
            return self._apply_completion(task=task, result=notice.result)
        if notice.status == TaskStatus.FAILED:
            return self._apply_reported_failure(task=task, error=notice.error)
        if notice.progress is not None:
            self.repository.update_progress(
                task_id=task.task_id,
                attempt_no=task.attempts,
                progress=notice.progress,
            )
        return SettleOutcome.AWAITING_CALLBACK

    def _apply_parked(self, task: TaskView) -> bool:
        if task.external_task_id is None:
            return False
        applied = False
        for notice in self.repository.take_parked_notices(
            external_task_id=task.external_task_id,
            provider=task.provider,
        ):
            current = self.repository.get_task(task_id=task.task_id)
            if not _attempt_open(current, attempt_no=task.attempts):
                break
            logger.info("Applying parked notice for task %s", task.task_id)
            outcome = self._apply_notice(task, notice)
            applied = applied or outcome != SettleOutcome.LOST
        return applied

    def _apply_completion(
        self,
        *,
        task: TaskView,
        result: dict[str, Any] | None,
    ) -> SettleOutcome:
        if not result:
            return self.apply_failure(
                task=task,
                failure_class=FailureClass.PROVIDER_NON_RETRYABLE,
                error="Provider reported completion without a result",
            )
        return self.apply_result(task=task, result=result)

    def _apply_reported_failure(self, *, task: TaskView, error: str | None) -> SettleOutcome:
        message = error or "Provider reported failure"
        classification = classify_provider_failure(provider=task.provider, message=message)
        return self.apply_failure(
            task=task,
            failure_class=classification.failure_class,
            error=message,
            details=classification.to_event_details(provider=task.provider),
        )

    def _handle_poll_timeout(
        self,
        *,
        task: TaskView,
        adapter: ProviderAdapter,
        timeout: PollTimeoutError,
    ) -> SettleOutcome:
        if adapter.supports_callbacks:
            self.repository.add_task_event(
                task_id=task.task_id,
                event_type="poll_timeout",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.PROCESSING,
                details={
                    "attempt": task.attempts,
                    "external_task_id": timeout.external_task_id,
                    "poll_timeout_seconds": timeout.timeout_seconds,
                },
            )
            logger.info(
                "Task %s poll window elapsed; awaiting provider callback",
                task.task_id,
            )
            return SettleOutcome.AWAITING_CALLBACK
        return self.apply_failure(
            task=task,
            failure_class=FailureClass.TIMEOUT,
            error=str(timeout),
            details={"external_task_id": timeout.external_task_id},
        )

    def _settle_failure(
        self,
        *,
        task: TaskView,
        failure_class: FailureClass,
        error: str,
        details: dict[str, object] | None = None,
        allow_retry: bool = True,
    ) -> SettleOutcome:
        try:
            self.ledger.refund(
                task_id=task.task_id,
                attempt_no=task.attempts,
                reason=failure_class.value,
            )
        except GenrelayError:
            logger.exception("Refund failed for task %s attempt %d", task.task_id, task.attempts)

        retries_left = task.attempts < task.max_attempts
        if allow_retry and retries_left and failure_class.is_retryable:
            delay_seconds = self.retry_policy.compute_delay(
                kind=task.kind.value,
                retry_number=task.attempts,
            )
            run_after = utc_now() + timedelta(seconds=delay_seconds)
            if self._write_terminal(
                task,
                lambda: self.repository.schedule_retry(
                    task_id=task.task_id,
                    attempt_no=task.attempts,
                    run_after=run_after,
                    failure_class=failure_class,
                    error_summary=error,
                    details={"delay_seconds": round(delay_seconds, 3), **(details or {})},
                ),
            ):
                logger.info(
                    "Task %s attempt %d failed (%s); retry in %.1fs",
                    task.task_id,
                    task.attempts,
                    failure_class.value,
                    delay_seconds,
                )
                return SettleOutcome.RETRY_SCHEDULED
            return SettleOutcome.LOST

        safe_notify(
            self.notifier,
            task.owner_id,
            f"Your {task.kind.value} request failed: {error}. "
            "Reserved tokens were returned to your balance.",
        )
        self._clear_session(task)
        if not self._write_terminal(
            task,
            lambda: self.repository.mark_failed(
                task_id=task.task_id,
                attempt_no=task.attempts,
                failure_class=failure_class,
                error_summary=error,
                details=details,
            ),
        ):
            return SettleOutcome.LOST
        logger.info(
            "Task %s failed after attempt %d (%s): %s",
            task.task_id,
            task.attempts,
            failure_class.value,
            error,
        )
        return SettleOutcome.FAILED

    def _write_terminal(self, task: TaskView, write: Callable[[], bool]) -> bool:
        """Run the status write that ends a settlement, retrying store errors.

        A claim still held after the last try is released by ``expire_stale``.
        """

        for attempt in range(1, _TERMINAL_WRITE_ATTEMPTS + 1):
            try:
                return write()
            except (SQLAlchemyError, GenrelayError):
                if attempt == _TERMINAL_WRITE_ATTEMPTS:
                    logger.exception(
                        "Giving up on settlement write for task %s attempt %d",
                        task.task_id,
                        task.attempts,
                    )
                    return False
                logger.warning(
                    "Settlement write for task %s failed (try %d/%d)",
                    task.task_id,
                    attempt,
                    _TERMINAL_WRITE_ATTEMPTS,
                    exc_info=True,
                )
                self._sleep(_TERMINAL_WRITE_BACKOFF_SECONDS * attempt)
        return False

    def _cache_result(self, *, task: TaskView, result: dict[str, Any]) -> None:
        if self.cache is None:
            return
        ttl_seconds = self.cache_ttl_seconds.get(task.kind.value, 1_800)
        try:
            self.cache.set(task.fingerprint, result, ttl_seconds=ttl_seconds, kind=task.kind.value)
        except Exception:  # noqa: BLE001
            logger.warning("Result cache write failed for task %s", task.task_id, exc_info=True)

    def _clear_session(self, task: TaskView) -> None:
        if self.sessions is None:
            return
        try:
            state = self.sessions.get(task.owner_id)
            if state is not None and state.action_data.get("task_id") == task.task_id:
                self.sessions.clear(task.owner_id)
        except Exception:  # noqa: BLE001
            logger.warning("Session cleanup failed for owner %s", task.owner_id, exc_info=True)

    def _reload(self, task_id: str) -> TaskView:
        task = self.repository.get_task(task_id=task_id)
        if task is None:
            raise TaskStateError(f"Task not found: {task_id}")
        return task


def _attempt_open(task: TaskView | None, *, attempt_no: int) -> bool:
    return (
        task is not None
        and task.status == TaskStatus.PROCESSING
        and task.attempts == attempt_no
        and task.settling_at is None
    )
