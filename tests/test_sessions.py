"""Session lifecycle and concurrent session cap."""

from datetime import timedelta

import pytest

from creatorauth.service.sessions import SessionManager
from creatorauth.service.tokens import HS256Signer, TokenService
from creatorauth.storage.memory import MemoryStore
from creatorauth.storage.models import User


@pytest.fixture
def tokens(clock, revocation_cache):
    return TokenService(
        HS256Signer("session-tests-signing-secret-0123456789"),
        issuer="desifans-user-service",
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
        cache=revocation_cache,
        clock=clock,
    )


@pytest.fixture
def user(memory_store):
    return memory_store.create_user(User.new("bob", "bob@example.com", "hash"))


@pytest.fixture
def manager(memory_store, tokens, clock):
    return SessionManager(memory_store, tokens, max_concurrent_sessions=3, clock=clock)


def _open(manager, tokens, user, session_id):
    return manager.create_session(
        user.id,
        session_id,
        refresh_token=tokens.issue_refresh_token(user, session_id),
        access_token=tokens.issue_access_token(user, session_id),
    )


def test_create_session_defaults(manager, tokens, user, clock):
    sess = _open(manager, tokens, user, "s1")
    assert sess.is_active
    assert sess.created_at == clock()
    assert sess.expires_at == clock() + timedelta(days=7)


def test_create_session_is_idempotent_per_id(manager, tokens, user, memory_store):
    _open(manager, tokens, user, "s1")
    _open(manager, tokens, user, "s1")
    assert len(memory_store.list_active_sessions(user.id)) == 1


def test_no_eviction_below_cap(manager, tokens, user, clock):
    for i in range(2):
        _open(manager, tokens, user, f"s{i}")
        clock.advance(seconds=1)
    assert manager.evict_for_new_session(user.id) == []


async def test_oldest_sessions_evicted_and_revoked(manager, tokens, user, clock, memory_store):
    for i in range(4):
        _open(manager, tokens, user, f"s{i}")
        clock.advance(seconds=1)

    evicted = await manager.enforce_concurrency_limit(user.id)

    # 4 active with cap 3: make room for one more -> two oldest go
    assert [s.id for s in evicted] == ["s0", "s1"]
    assert sorted(s.id for s in memory_store.list_active_sessions(user.id)) == ["s2", "s3"]
    for sess in evicted:
        assert not await tokens.is_valid(sess.access_token)
        assert not await tokens.is_valid(sess.session_token)


def test_eviction_ties_keep_fetch_order(manager, tokens, user):
    for i in range(3):
        _open(manager, tokens, user, f"s{i}")
    evicted = manager.evict_for_new_session(user.id)
    assert [s.id for s in evicted] == ["s0"]


async def test_terminate_session_is_idempotent(manager, tokens, user, revocation_cache):
    sess = _open(manager, tokens, user, "s1")

    assert await manager.terminate_session(sess) is True
    revoked_after_first = dict(revocation_cache.revoked)
    assert await manager.terminate_session(sess) is False

    assert len(revoked_after_first) == 2
    assert revocation_cache.revoked == revoked_after_first


async def test_terminate_all_sessions(manager, tokens, user, memory_store):
    sessions = [_open(manager, tokens, user, f"s{i}") for i in range(3)]

    assert await manager.terminate_all_sessions(user.id) == 3
    assert memory_store.list_active_sessions(user.id) == []
    for sess in sessions:
        assert not await tokens.is_valid(sess.access_token)


async def test_revocation_failure_does_not_block_termination(memory_store, user, clock, failing_cache):
    tokens = TokenService(
        HS256Signer("session-tests-signing-secret-0123456789"),
        issuer="desifans-user-service",
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
        cache=failing_cache,
        clock=clock,
    )
    manager = SessionManager(memory_store, tokens, clock=clock)
    sess = _open(manager, tokens, user, "s1")

    assert await manager.terminate_session(sess)
    assert memory_store.get_session("s1").is_active is False


def test_list_sessions_hides_expired(manager, tokens, user, clock):
    _open(manager, tokens, user, "s1")
    clock.advance(days=8)
    _open(manager, tokens, user, "s2")
    assert [s.id for s in manager.list_sessions(user.id)] == ["s2"]
