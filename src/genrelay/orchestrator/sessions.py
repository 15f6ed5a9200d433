"""Per-owner conversation state with inactivity expiry."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import delete as sa_delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from genrelay.orchestrator.errors import StoreError
from genrelay.orchestrator.models import SessionAction, SessionState
from genrelay.storage.common import to_db_datetime, to_utc_aware, utc_now
from genrelay.storage.sqlmodel_models import OwnerSession

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

DEFAULT_SESSION_TTL_SECONDS = 900


class SessionStore(Protocol):
    """Session contract shared by memory and SQLite implementations."""

    def set(self, owner_id: str, state: SessionState) -> SessionState: ...

    def get(self, owner_id: str) -> SessionState | None: ...

    def clear(self, owner_id: str) -> None: ...

    def sweep(self) -> int: ...


class MemorySessionStore:
    """Process-local session map."""

    def __init__(
        self,
        *,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._sessions: dict[str, SessionState] = {}
        self._lock = threading.Lock()

    def set(self, owner_id: str, state: SessionState) -> SessionState:
        stored = replace(state, last_activity_at=self._clock())
        with self._lock:
            self._sessions[owner_id] = stored
        return stored

    def get(self, owner_id: str) -> SessionState | None:
        now = self._clock()
        with self._lock:
            state = self._sessions.get(owner_id)
            if state is None:
                return None
            if _is_expired(state, now=now, ttl=self.ttl):
                del self._sessions[owner_id]
                return None
            return state

    def clear(self, owner_id: str) -> None:
        with self._lock:
            self._sessions.pop(owner_id, None)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                owner_id
                for owner_id, state in self._sessions.items()
                if _is_expired(state, now=now, ttl=self.ttl)
            ]
            for owner_id in expired:
                del self._sessions[owner_id]
        return len(expired)


class SqlSessionStore:
    """SQLite-backed session table."""

    def __init__(
        self,
        *,
        engine: Engine,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        self.engine = engine
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def set(self, owner_id: str, state: SessionState) -> SessionState:
        now = self._clock()
        try:
            with Session(self.engine) as session:
                row = session.exec(
                    select(OwnerSession).where(OwnerSession.owner_id == owner_id),
                ).one_or_none()
                if row is None:
                    row = OwnerSession(
                        owner_id=owner_id,
                        current_action=state.current_action.value,
                        last_activity_at=to_db_datetime(now),
                    )
                row.current_action = state.current_action.value
                row.action_data_json = json.dumps(
                    state.action_data,
                    ensure_ascii=False,
                    sort_keys=True,
                )
                row.last_activity_at = to_db_datetime(now)
                session.add(row)
                session.commit()
        except SQLAlchemyError as error:
            raise StoreError(f"Session write failed for {owner_id}: {error}") from error
        return replace(state, last_activity_at=now)

    def get(self, owner_id: str) -> SessionState | None:
        now = self._clock()
        try:
            with Session(self.engine) as session:
                row = session.exec(
                    select(OwnerSession).where(OwnerSession.owner_id == owner_id),
                ).one_or_none()
                if row is None:
                    return None
                if to_utc_aware(row.last_activity_at) + self.ttl <= now:
                    session.delete(row)
                    session.commit()
                    return None
                state = _to_state(row)
                if state is None:
                    logger.warning("Dropping unreadable session for owner %s", owner_id)
                    session.delete(row)
                    session.commit()
                return state
        except SQLAlchemyError as error:
            raise StoreError(f"Session read failed for {owner_id}: {error}") from error

    def clear(self, owner_id: str) -> None:
        try:
            with Session(self.engine) as session:
                session.exec(sa_delete(OwnerSession).where(col(OwnerSession.owner_id) == owner_id))
                session.commit()
        except SQLAlchemyError as error:
            raise StoreError(f"Session clear failed for {owner_id}: {error}") from error

    def sweep(self) -> int:
        cutoff = to_db_datetime(self._clock() - self.ttl)
        try:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_delete(OwnerSession).where(col(OwnerSession.last_activity_at) <= cutoff),
                )
                session.commit()
                removed = int(result.rowcount or 0)
        except SQLAlchemyError as error:
            raise StoreError(f"Session sweep failed: {error}") from error
        if removed:
            logger.info("Session sweep removed %d expired sessions", removed)
        return removed


def build_session_store(
    *,
    backend: str,
    ttl_seconds: int,
    engine: Engine | None = None,
) -> SessionStore:
    """Construct the configured session backend."""

    if backend == "memory":
        return MemorySessionStore(ttl_seconds=ttl_seconds)
    if backend == "sqlite":
        if engine is None:
            raise ValueError("SQLite session store requires an engine.")
        return SqlSessionStore(engine=engine, ttl_seconds=ttl_seconds)
    raise ValueError(f"Unsupported session backend: {backend!r}")


def _is_expired(state: SessionState, *, now: datetime, ttl: timedelta) -> bool:
    if state.last_activity_at is None:
        return False
    return state.last_activity_at + ttl <= now


def _to_state(row: OwnerSession) -> SessionState | None:
    try:
        action = SessionAction(row.current_action)
        parsed = json.loads(row.action_data_json) if row.action_data_json else {}
    except ValueError:
        return None
    return SessionState(
        current_action=action,
        action_data=parsed if isinstance(parsed, dict) else {},
        last_activity_at=to_utc_aware(row.last_activity_at),
    )
