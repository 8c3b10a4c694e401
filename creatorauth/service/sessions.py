from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, List, Optional

from creatorauth.logging import get_logger
from creatorauth.service.tokens import TokenService
from creatorauth.storage.models import DeviceInfo, Session, utcnow


class SessionManager:
    """Session lifecycle and the per-user concurrent session cap."""

    def __init__(
        self,
        store: Any,
        tokens: TokenService,
        *,
        max_concurrent_sessions: int = 5,
        session_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.max_concurrent_sessions = max_concurrent_sessions
        self.session_ttl = session_ttl
        self._clock = clock
        self.logger = get_logger(__name__)

    def evict_for_new_session(self, user_id: str) -> List[Session]:
        """Deactivate the oldest sessions so one more fits under the cap.

        Runs synchronously so it can share the caller's store transaction.
        Returns the evicted sessions; their tokens are still live until
        ``revoke_session_tokens`` is awaited.
        """
        active = self.store.list_active_sessions(user_id)
        overflow = len(active) - self.max_concurrent_sessions + 1
        if overflow <= 0:
            return []
        # sorted() is stable, so equal created_at keeps the store's order
        oldest = sorted(active, key=lambda sess: sess.created_at)[:overflow]
        evicted = []
        for sess in oldest:
            ended = replace(sess, is_active=False)
            self.store.save_session(ended)
            evicted.append(ended)
        self.logger.info(
            "sessions_evicted",
            user_id=user_id,
            count=len(evicted),
            limit=self.max_concurrent_sessions,
        )
        return evicted

    async def enforce_concurrency_limit(self, user_id: str) -> List[Session]:
        with self.store.transaction():
            evicted = self.evict_for_new_session(user_id)
        await self.revoke_session_tokens(evicted)
        return evicted

    def create_session(
        self,
        user_id: str,
        session_id: str,
        *,
        refresh_token: str,
        access_token: str,
        device_info: Optional[DeviceInfo] = None,
        ttl: Optional[timedelta] = None,
    ) -> Session:
        session = Session.new(
            user_id,
            session_id=session_id,
            session_token=refresh_token,
            access_token=access_token,
            device_info=device_info,
            ttl=ttl or self.session_ttl,
            now=self._clock(),
        )
        return self.store.save_session(session)

    async def terminate_session(self, session: Session) -> bool:
        """End ``session`` and revoke its tokens; False if it was already inactive."""
        current = self.store.get_session(session.id) or session
        if not current.is_active:
            return False
        ended = replace(current, is_active=False, last_activity=self._clock())
        self.store.save_session(ended)
        await self.revoke_session_tokens([ended])
        self.logger.info("session_terminated", user_id=ended.user_id, session_id=ended.id)
        return True

    async def terminate_all_sessions(self, user_id: str) -> int:
        now = self._clock()
        with self.store.transaction():
            active = self.store.list_active_sessions(user_id)
            ended = [replace(sess, is_active=False, last_activity=now) for sess in active]
            for sess in ended:
                self.store.save_session(sess)
        await self.revoke_session_tokens(ended)
        self.logger.info("sessions_terminated", user_id=user_id, count=len(ended))
        return len(ended)

    async def revoke_session_tokens(self, sessions: Iterable[Session]) -> None:
        # TokenService.revoke logs and absorbs its own failures
        for sess in sessions:
            await self.tokens.revoke(sess.session_token)
            await self.tokens.revoke(sess.access_token)

    def list_sessions(self, user_id: str) -> List[Session]:
        now = self._clock()
        return [
            sess
            for sess in self.store.list_active_sessions(user_id)
            if not sess.is_expired(now)
        ]
