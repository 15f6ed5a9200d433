"""Persistent queue repository for generation tasks."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from genrelay.orchestrator.errors import TaskStateError
from genrelay.orchestrator.models import (
    CompletionNotice,
    FailureClass,
    QueueStats,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskKind,
    TaskStatus,
    TaskView,
)
from genrelay.storage.alembic_runner import upgrade_head
from genrelay.storage.common import (
    build_sqlite_engine,
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from genrelay.storage.sqlmodel_models import GenerationTask, GenerationTaskEvent, ParkedNotice

logger = logging.getLogger(__name__)


class TaskRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every status change is a conditional ``UPDATE`` whose rowcount decides the
    winner, so concurrent scheduler workers and callback handlers never
    overwrite each other.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue_task(self, payload: TaskCreate) -> TaskView:
        """Create a pending task."""

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            row = GenerationTask(
                task_id=task_id,
                owner_id=payload.owner_id,
                kind=payload.kind.value,
                provider=payload.provider,
                model=payload.model,
                prompt_text=payload.prompt_text,
                auxiliary_ref=payload.auxiliary_ref,
                fingerprint=payload.fingerprint,
                cost=payload.cost,
                status=TaskStatus.PENDING.value,
                progress=0,
                attempts=0,
                max_attempts=payload.max_attempts,
                from_cache=False,
                run_after=to_db_datetime(payload.run_after or now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "owner_id": payload.owner_id,
                    "kind": payload.kind.value,
                    "provider": payload.provider,
                    "model": payload.model,
                    "cost": payload.cost,
                    "max_attempts": payload.max_attempts,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def claim_next_ready_task(self, *, worker_id: str) -> TaskView | None:
        """Atomically claim the oldest pending task whose ``run_after`` has passed."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(GenerationTask)
                    .where(
                        GenerationTask.status == TaskStatus.PENDING.value,
                        GenerationTask.run_after <= to_db_datetime(now),
                    )
                    .order_by(
                        col(GenerationTask.run_after).asc(),
                        col(GenerationTask.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(GenerationTask)
                    .where(
                        col(GenerationTask.task_id) == candidate.task_id,
                        col(GenerationTask.status) == TaskStatus.PENDING.value,
                    )
                    .values(
                        status=TaskStatus.PROCESSING.value,
                        attempts=candidate.attempts + 1,
                        progress=0,
                        external_task_id=None,
                        settling_at=None,
                        started_at=to_db_datetime(now),
                        completed_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(GenerationTask).where(GenerationTask.task_id == candidate.task_id),
                ).one()
                self._add_event(
                    session=session,
                    task_id=claimed.task_id,
                    event_type="claimed",
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.PROCESSING,
                    details={"worker_id": worker_id, "attempt": claimed.attempts},
                )
                session.commit()
                return _to_task_view(claimed)

    def attach_external_id(
        self,
        *,
        task_id: str,
        attempt_no: int,
        external_task_id: str,
    ) -> bool:
        """Record the provider job id for an in-flight attempt."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.PROCESSING.value,
                    col(GenerationTask.attempts) == attempt_no,
                    col(GenerationTask.settling_at).is_(None),
                )
                .values(
                    external_task_id=external_task_id,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="external_id_attached",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.PROCESSING,
                details={"external_task_id": external_task_id, "attempt": attempt_no},
            )
            session.commit()
            return True

    def update_progress(self, *, task_id: str, attempt_no: int, progress: int) -> bool:
        """Raise progress for an unsettled attempt; never moves backwards."""

        progress = max(0, min(100, progress))
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.PROCESSING.value,
                    col(GenerationTask.attempts) == attempt_no,
                    col(GenerationTask.settling_at).is_(None),
                    col(GenerationTask.progress) < progress,
                )
                .values(progress=progress, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="progress",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.PROCESSING,
                details={"progress": progress, "attempt": attempt_no},
            )
            session.commit()
            return True

    def begin_settlement(self, *, task_id: str, attempt_no: int) -> bool:
        """Take the per-task settlement claim; exactly one caller wins."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.PROCESSING.value,
                    col(GenerationTask.attempts) == attempt_no,
                    col(GenerationTask.settling_at).is_(None),
                )
                .values(settling_at=to_db_datetime(now), updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="settlement_started",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.PROCESSING,
                details={"attempt": attempt_no},
            )
            session.commit()
            return True

    def mark_completed(
        self,
        *,
        task_id: str,
        attempt_no: int,
        result: dict[str, Any],
        from_cache: bool = False,
    ) -> bool:
        """Finish a settling attempt as completed."""

        now = utc_now()
        with Session(self.engine) as session:
            update_result = session.exec(
                sa_update(GenerationTask)
                .where(*_settling_clause(task_id=task_id, attempt_no=attempt_no))
                .values(
                    status=TaskStatus.COMPLETED.value,
                    progress=100,
                    result_json=json.dumps(result, ensure_ascii=False, sort_keys=True),
                    from_cache=from_cache,
                    error_summary=None,
                    failure_class=None,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="cache_hit" if from_cache else "completed",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.COMPLETED,
                details={"attempt": attempt_no, "from_cache": from_cache},
            )
            session.commit()
            return True

    def mark_failed(
        self,
        *,
        task_id: str,
        attempt_no: int,
        failure_class: FailureClass,
        error_summary: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Finish a settling attempt as terminally failed."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(*_settling_clause(task_id=task_id, attempt_no=attempt_no))
                .values(
                    status=TaskStatus.FAILED.value,
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="canceled" if failure_class == FailureClass.CANCELED else "failed",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.FAILED,
                details={
                    "attempt": attempt_no,
                    "failure_class": failure_class.value,
                    "error_summary": error_summary,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        attempt_no: int,
        run_after: datetime,
        failure_class: FailureClass,
        error_summary: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Requeue a settling attempt for automatic retry."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(*_settling_clause(task_id=task_id, attempt_no=attempt_no))
                .values(
                    status=TaskStatus.PENDING.value,
                    run_after=to_db_datetime(run_after),
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    external_task_id=None,
                    settling_at=None,
                    progress=0,
                    started_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="retry_scheduled",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.PENDING,
                details={
                    "attempt": attempt_no,
                    "run_after": to_utc_aware(run_after).isoformat(),
                    "failure_class": failure_class.value,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def fail_pending_task(
        self,
        *,
        task_id: str,
        failure_class: FailureClass,
        error_summary: str,
    ) -> bool:
        """Move a never-claimed (or waiting-for-retry) task straight to failed."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="canceled" if failure_class == FailureClass.CANCELED else "failed",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.FAILED,
                details={"failure_class": failure_class.value, "error_summary": error_summary},
            )
            session.commit()
            return True

    def add_task_event(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None = None,
        status_to: TaskStatus | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append an audit event outside of a status transition."""

        with Session(self.engine) as session:
            self._get_task_row(session=session, task_id=task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details or {},
            )
            session.commit()

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationTask).where(GenerationTask.task_id == task_id),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def find_task_by_external_id(
        self,
        *,
        external_task_id: str,
        provider: str | None = None,
    ) -> TaskView | None:
        """Locate the task that owns a provider job id."""

        with Session(self.engine) as session:
            statement = select(GenerationTask).where(
                GenerationTask.external_task_id == external_task_id,
            )
            if provider is not None:
                statement = statement.where(GenerationTask.provider == provider)
            rows = session.exec(
                statement.order_by(col(GenerationTask.updated_at).desc()).limit(2),
            ).all()
        if not rows:
            return None
        if len(rows) > 1:
            logger.warning(
                "External id %s matches several providers; pass provider to disambiguate",
                external_task_id,
            )
            return None
        return _to_task_view(rows[0])

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        owner_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status and owner."""

        with Session(self.engine) as session:
            statement = select(GenerationTask)
            if status is not None:
                statement = statement.where(GenerationTask.status == status.value)
            if owner_id is not None:
                statement = statement.where(GenerationTask.owner_id == owner_id)
            rows = session.exec(
                statement.order_by(col(GenerationTask.created_at).desc()).limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_stale_processing(self, *, started_before: datetime) -> list[TaskView]:
        """Processing tasks started, or stuck mid-settlement, since before the cutoff."""

        cutoff = to_db_datetime(started_before)
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationTask)
                .where(
                    GenerationTask.status == TaskStatus.PROCESSING.value,
                    or_(
                        and_(
                            col(GenerationTask.settling_at).is_(None),
                            col(GenerationTask.started_at) < cutoff,
                        ),
                        col(GenerationTask.settling_at) < cutoff,
                    ),
                )
                .order_by(col(GenerationTask.started_at).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def release_stale_settlement(
        self,
        *,
        task_id: str,
        attempt_no: int,
        claimed_before: datetime,
    ) -> bool:
        """Drop a settlement claim taken before the cutoff so the attempt can settle again."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    *_settling_clause(task_id=task_id, attempt_no=attempt_no),
                    col(GenerationTask.settling_at) < to_db_datetime(claimed_before),
                )
                .values(settling_at=None, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="settlement_released",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.PROCESSING,
                details={"attempt": attempt_no},
            )
            session.commit()
            return True

    def queue_position(self, *, task_id: str) -> int | None:
        """1-based FIFO position of a pending task, ``None`` when not pending."""

        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationTask).where(GenerationTask.task_id == task_id),
            ).one_or_none()
            if row is None or row.status != TaskStatus.PENDING.value:
                return None
            ahead = session.exec(
                select(func.count())
                .select_from(GenerationTask)
                .where(
                    GenerationTask.status == TaskStatus.PENDING.value,
                    (col(GenerationTask.run_after) < row.run_after)
                    | (
                        (col(GenerationTask.run_after) == row.run_after)
                        & (col(GenerationTask.created_at) < row.created_at)
                    ),
                ),
            ).one()
        return int(ahead) + 1

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.exec(
                select(GenerationTask).where(GenerationTask.task_id == task_id),
            ).one_or_none()
            if task is None:
                return None

            event_rows = session.exec(
                select(GenerationTaskEvent)
                .where(GenerationTaskEvent.task_id == task_id)
                .order_by(col(GenerationTaskEvent.created_at).asc(), col(GenerationTaskEvent.id)),
            ).all()

        events: list[TaskEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=(
                        TaskStatus(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware(row.created_at),
                    details=details,
                ),
            )

        return TaskDetails(task=_to_task_view(task), events=events)

    def queue_stats(self) -> QueueStats:
        """Counts per status plus average wait and processing durations."""

        seconds = 86_400.0
        with Session(self.engine) as session:
            counts = dict(
                session.exec(
                    select(GenerationTask.status, func.count()).group_by(GenerationTask.status),
                ).all(),
            )
            avg_wait = session.exec(
                select(
                    func.avg(
                        (
                            func.julianday(GenerationTask.started_at)
                            - func.julianday(GenerationTask.created_at)
                        )
                        * seconds,
                    ),
                ).where(col(GenerationTask.started_at).is_not(None)),
            ).one()
            avg_processing = session.exec(
                select(
                    func.avg(
                        (
                            func.julianday(GenerationTask.completed_at)
                            - func.julianday(GenerationTask.started_at)
                        )
                        * seconds,
                    ),
                ).where(
                    GenerationTask.status == TaskStatus.COMPLETED.value,
                    col(GenerationTask.started_at).is_not(None),
                    col(GenerationTask.completed_at).is_not(None),
                ),
            ).one()
        return QueueStats(
            pending=int(counts.get(TaskStatus.PENDING.value, 0)),
            processing=int(counts.get(TaskStatus.PROCESSING.value, 0)),
            completed_count=int(counts.get(TaskStatus.COMPLETED.value, 0)),
            failed_count=int(counts.get(TaskStatus.FAILED.value, 0)),
            avg_wait_seconds=float(avg_wait) if avg_wait is not None else None,
            avg_processing_seconds=float(avg_processing) if avg_processing is not None else None,
        )

    def park_notice(self, notice: CompletionNotice) -> None:
        """Hold a notice whose external id is not yet recorded on any task."""

        with Session(self.engine) as session:
            session.add(
                ParkedNotice(
                    provider=notice.provider,
                    external_task_id=notice.external_task_id,
                    status=notice.status.value,
                    progress=notice.progress,
                    result_json=(
                        json.dumps(notice.result, ensure_ascii=False, sort_keys=True)
                        if notice.result is not None
                        else None
                    ),
                    error=notice.error,
                    received_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def take_parked_notices(
        self,
        *,
        external_task_id: str,
        provider: str | None = None,
    ) -> list[CompletionNotice]:
        """Remove and return parked notices for one external id, oldest first."""

        with Session(self.engine) as session:
            statement = select(ParkedNotice).where(
                ParkedNotice.external_task_id == external_task_id,
            )
            rows = session.exec(statement.order_by(col(ParkedNotice.id).asc())).all()
            matched = [
                row
                for row in rows
                if provider is None or row.provider is None or row.provider == provider
            ]
            for row in matched:
                session.delete(row)
            notices = [
                CompletionNotice(
                    external_task_id=row.external_task_id,
                    status=TaskStatus(row.status),
                    provider=row.provider,
                    progress=row.progress,
                    result=json.loads(row.result_json) if row.result_json else None,
                    error=row.error,
                )
                for row in matched
            ]
            session.commit()
        return notices

    def purge_parked_notices(self, *, received_before: datetime) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(ParkedNotice).where(
                    col(ParkedNotice.received_at) < to_db_datetime(received_before),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def _get_task_row(self, *, session: Session, task_id: str) -> GenerationTask:
        row = session.exec(
            select(GenerationTask).where(GenerationTask.task_id == task_id),
        ).one_or_none()
        if row is None:
            raise TaskStateError(f"Task not found: {task_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            GenerationTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _settling_clause(*, task_id: str, attempt_no: int) -> tuple[Any, ...]:
    return (
        col(GenerationTask.task_id) == task_id,
        col(GenerationTask.status) == TaskStatus.PROCESSING.value,
        col(GenerationTask.attempts) == attempt_no,
        col(GenerationTask.settling_at).is_not(None),
    )


def _to_task_view(row: GenerationTask) -> TaskView:
    result: dict[str, Any] | None = None
    if row.result_json:
        parsed = json.loads(row.result_json)
        result = parsed if isinstance(parsed, dict) else {"value": parsed}
    return TaskView(
        task_id=row.task_id,
        owner_id=row.owner_id,
        kind=TaskKind(row.kind),
        provider=row.provider,
        model=row.model,
        prompt_text=row.prompt_text,
        auxiliary_ref=row.auxiliary_ref,
        fingerprint=row.fingerprint,
        cost=row.cost,
        status=TaskStatus(row.status),
        progress=row.progress,
        external_task_id=row.external_task_id,
        result=result,
        error_summary=row.error_summary,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        from_cache=bool(row.from_cache),
        run_after=to_utc_aware(row.run_after),
        settling_at=optional_utc_aware(row.settling_at),
        created_at=to_utc_aware(row.created_at),
        started_at=optional_utc_aware(row.started_at),
        completed_at=optional_utc_aware(row.completed_at),
        updated_at=to_utc_aware(row.updated_at),
    )
