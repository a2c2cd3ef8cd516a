from __future__ import annotations

from datetime import timedelta

import pytest

from securebank.database import Database
from securebank.errors import InvalidSession, SessionExpired
from securebank.sessions import SessionManager

from conftest import FakeClock


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def manager(database: Database, clock: FakeClock) -> SessionManager:
    return SessionManager(database, ttl=timedelta(hours=24), clock=clock)


@pytest.fixture()
def user_id(database: Database) -> int:
    return database.create_user("alice", "alice@example.com", "pw123456").id


def test_session_expiry_is_creation_plus_ttl(manager: SessionManager, clock: FakeClock, user_id: int) -> None:
    session = manager.create(user_id)

    assert session.created_at == clock.current
    assert session.expires_at == clock.current + timedelta(hours=24)
    assert manager.resolve(session.token) == session


def test_tokens_are_unique(manager: SessionManager, user_id: int) -> None:
    tokens = {manager.create(user_id).token for _ in range(20)}
    assert len(tokens) == 20


def test_unknown_token_is_invalid(manager: SessionManager) -> None:
    with pytest.raises(InvalidSession):
        manager.resolve("does-not-exist")


def test_session_is_valid_until_exactly_expiry(manager: SessionManager, clock: FakeClock, user_id: int) -> None:
    session = manager.create(user_id)

    clock.advance(timedelta(hours=24))
    assert manager.resolve(session.token).token == session.token


def test_expired_session_is_deleted_on_lookup(
    manager: SessionManager, database: Database, clock: FakeClock, user_id: int
) -> None:
    session = manager.create(user_id)

    clock.advance(timedelta(hours=24, seconds=1))

    with pytest.raises(SessionExpired):
        manager.resolve(session.token)
    assert database.get_session(session.token) is None

    # A repeated lookup sees an absent session rather than an expired one.
    with pytest.raises(InvalidSession):
        manager.resolve(session.token)


def test_resolve_does_not_extend_lifetime(manager: SessionManager, clock: FakeClock, user_id: int) -> None:
    session = manager.create(user_id)

    clock.advance(timedelta(hours=23))
    manager.resolve(session.token)
    clock.advance(timedelta(hours=2))

    with pytest.raises(SessionExpired):
        manager.resolve(session.token)


def test_destroy_and_destroy_all(manager: SessionManager, database: Database, user_id: int) -> None:
    first = manager.create(user_id)
    manager.create(user_id)
    manager.create(user_id)

    assert manager.destroy(first.token) is True
    assert manager.destroy(first.token) is False
    assert manager.destroy_all(user_id) == 2
    assert database.list_sessions_for_user(user_id) == []


def test_purge_expired_only_removes_lapsed_sessions(
    manager: SessionManager, database: Database, clock: FakeClock, user_id: int
) -> None:
    old = manager.create(user_id)
    clock.advance(timedelta(hours=12))
    fresh = manager.create(user_id)
    clock.advance(timedelta(hours=13))

    assert manager.purge_expired() == 1
    assert database.get_session(old.token) is None
    assert database.get_session(fresh.token) is not None
