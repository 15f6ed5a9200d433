from __future__ import annotations

import allure
import pytest
from sqlmodel import Session

from genrelay.orchestrator.models import SessionAction, SessionState
from genrelay.orchestrator.repository import TaskRepository
from genrelay.orchestrator.sessions import (
    MemorySessionStore,
    SqlSessionStore,
    build_session_store,
)
from genrelay.storage.common import to_db_datetime
from genrelay.storage.sqlmodel_models import OwnerSession

pytestmark = [
    allure.epic("Generation Queue"),
    allure.feature("Session State"),
]


@pytest.fixture(params=["memory", "sqlite"])
def store_with_clock(request, repository: TaskRepository, clock):
    if request.param == "memory":
        return MemorySessionStore(ttl_seconds=900, clock=clock), clock
    return SqlSessionStore(engine=repository.engine, ttl_seconds=900, clock=clock), clock


def test_session_round_trip_keeps_action_data(store_with_clock) -> None:
    store, clock = store_with_clock
    store.set(
        "owner-1",
        SessionState(
            current_action=SessionAction.GENERATE_IMAGE,
            action_data={"provider": "freepik", "model": "classic"},
        ),
    )

    state = store.get("owner-1")

    assert state is not None
    assert state.current_action == SessionAction.GENERATE_IMAGE
    assert state.action_data == {"provider": "freepik", "model": "classic"}
    assert state.last_activity_at == clock.now


def test_session_expires_after_inactivity(store_with_clock) -> None:
    store, clock = store_with_clock
    store.set("owner-1", SessionState(current_action=SessionAction.CHAT))

    clock.advance(899)
    assert store.get("owner-1") is not None

    clock.advance(1)
    assert store.get("owner-1") is None


def test_set_refreshes_activity(store_with_clock) -> None:
    store, clock = store_with_clock
    store.set("owner-1", SessionState(current_action=SessionAction.CHAT))
    clock.advance(600)
    store.set("owner-1", SessionState(current_action=SessionAction.GENERATE_VIDEO))
    clock.advance(600)

    state = store.get("owner-1")

    assert state is not None
    assert state.current_action == SessionAction.GENERATE_VIDEO


def test_clear_and_sweep(store_with_clock) -> None:
    store, clock = store_with_clock
    store.set("owner-1", SessionState(current_action=SessionAction.CHAT))
    store.set("owner-2", SessionState(current_action=SessionAction.CHAT))
    store.clear("owner-1")
    assert store.get("owner-1") is None

    clock.advance(1_000)
    store.set("owner-3", SessionState(current_action=SessionAction.CHAT))

    assert store.sweep() == 1
    assert store.get("owner-3") is not None


def test_build_session_store_backends(repository: TaskRepository) -> None:
    assert isinstance(
        build_session_store(backend="memory", ttl_seconds=60),
        MemorySessionStore,
    )
    assert isinstance(
        build_session_store(backend="sqlite", ttl_seconds=60, engine=repository.engine),
        SqlSessionStore,
    )
    with pytest.raises(ValueError, match="Unsupported session backend"):
        build_session_store(backend="redis", ttl_seconds=60)


@pytest.mark.parametrize(
    ("current_action", "action_data_json"),
    [("teleport", None), ("chat", "{not json")],
)
def test_unreadable_sql_session_is_dropped(
    repository: TaskRepository, clock, current_action, action_data_json
) -> None:
    store = SqlSessionStore(engine=repository.engine, ttl_seconds=900, clock=clock)
    with Session(repository.engine) as session:
        session.add(
            OwnerSession(
                owner_id="owner-1",
                current_action=current_action,
                action_data_json=action_data_json,
                last_activity_at=to_db_datetime(clock.now),
            ),
        )
        session.commit()

    assert store.get("owner-1") is None
    with Session(repository.engine) as session:
        assert session.get(OwnerSession, "owner-1") is None
