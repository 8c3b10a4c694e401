from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest

from creatorauth.logging import get_logger
from creatorauth.storage.errors import ConcurrentModification
from creatorauth.storage.models import SecurityState, Session, User, UserRole, UserStatus
from creatorauth.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class DummyCursor:
    def __init__(self, row=None, rows=None, rowcount=0):
        self._row = row
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class DummyConnection:
    def __init__(self, results):
        self.results = list(results)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        return self.results.pop(0) if self.results else DummyCursor()


class DummyPool:
    def __init__(self, *results):
        self.conn = DummyConnection(results)
        self.checkouts = 0

    @contextmanager
    def connection(self):
        self.checkouts += 1
        yield self.conn


def _store(*results) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool(*results)
    store.dsn = "postgresql://stub"
    store.timeout_seconds = 5.0
    store.logger = get_logger(__name__)
    return store


def _user_row(**overrides):
    row = {
        "id": "u1",
        "username": "alice",
        "email": "alice@example.com",
        "password_hash": "hash",
        "role": "CREATOR",
        "status": "ACTIVE",
        "email_verified": True,
        "creator_verified": True,
        "failed_login_attempts": 2,
        "lockout_until": NOW + timedelta(minutes=5),
        "last_login": NOW,
        "security_events": [
            {"type": "LOGIN_FAILED", "description": "x", "timestamp": NOW.isoformat()}
        ],
        "created_at": NOW,
        "updated_at": NOW,
        "last_active_at": None,
        "version": 3,
    }
    row.update(overrides)
    return row


def test_user_row_mapping():
    store = _store(DummyCursor(row=_user_row()))
    user = store.get_user("u1")

    assert user.role == UserRole.CREATOR
    assert user.status == UserStatus.ACTIVE
    assert user.security.failed_login_attempts == 2
    assert user.security.events[0].timestamp == NOW
    assert user.version == 3


def test_get_user_for_update_locks_row():
    store = _store(DummyCursor(row=_user_row()))
    store.get_user_for_update("u1")
    sql, params = store.pool.conn.executed[0]
    assert sql.endswith("FOR UPDATE")
    assert params == ("u1",)


def test_save_user_uses_version_guard():
    store = _store(DummyCursor(row={"version": 4}))
    user = User(id="u1", username="alice", email="a@example.com", password_hash="h", version=3)

    store.save_user(user)

    sql, params = store.pool.conn.executed[0]
    assert "WHERE id = %s AND version = %s" in sql
    assert params[-2:] == ("u1", 3)
    assert user.version == 4


def test_save_user_stale_version_raises():
    store = _store(DummyCursor(row=None))
    user = User(
        id="u1",
        username="alice",
        email="a@example.com",
        password_hash="h",
        security=SecurityState(),
        version=1,
    )
    with pytest.raises(ConcurrentModification):
        store.save_user(user)


def test_transaction_reuses_one_connection():
    store = _store(DummyCursor(row=_user_row()), DummyCursor(row={"version": 4}))
    with store.transaction():
        user = store.get_user_for_update("u1")
        store.save_user(user)
    assert store.pool.checkouts == 1
    assert len(store.pool.conn.executed) == 2


def test_list_active_sessions_ordered_by_creation():
    session_row = {
        "id": "s1",
        "user_id": "u1",
        "session_token": "r",
        "access_token": "a",
        "device_info": {"browser": "Firefox"},
        "is_active": True,
        "created_at": NOW,
        "expires_at": NOW + timedelta(days=7),
        "last_activity": NOW,
    }
    store = _store(DummyCursor(rows=[session_row]))
    sessions = store.list_active_sessions("u1")
    sql, _ = store.pool.conn.executed[0]
    assert "ORDER BY created_at ASC" in sql
    assert sessions[0].device_info.browser == "Firefox"


def test_purge_expired_sessions_reports_rowcount():
    store = _store(DummyCursor(rowcount=2))
    assert store.purge_expired_sessions(NOW) == 2


def test_session_upsert_never_reactivates():
    store = _store()
    store.save_session(Session.new("u1", session_token="r", access_token="a", now=NOW))
    sql, _ = store.pool.conn.executed[0]
    assert "is_active = auth_session.is_active AND EXCLUDED.is_active" in sql


def test_touch_session_only_updates_active_rows():
    store = _store(DummyCursor(row={"id": "s1"}), DummyCursor(row=None))
    assert store.touch_session("s1", "a2", NOW) is True
    assert store.touch_session("s1", "a3", NOW) is False
    sql, params = store.pool.conn.executed[0]
    assert "WHERE id = %s AND is_active" in sql
    assert "RETURNING id" in sql
    assert params == ("a2", NOW, "s1")
