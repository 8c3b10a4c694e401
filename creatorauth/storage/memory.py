from __future__ import annotations

import contextlib
import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from creatorauth.logging import get_logger
from creatorauth.storage.errors import ConcurrentModification, ConstraintViolation
from creatorauth.storage.models import (
    DeviceInfo,
    SecurityEvent,
    SecurityState,
    Session,
    User,
    UserRole,
    UserStatus,
    utcnow,
)


class MemoryStore:
    """In-process user and session store with optional JSON snapshotting.

    Records are copied on the way in and out so a caller holding a ``User``
    never changes stored state without going through ``save_user``.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so store methods can be called from inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """Apply every write in the block or none of them.

        Holds the data lock for the whole block, which also serialises
        read-modify-write cycles on a user's security state.
        """
        with self._data_lock:
            users_snapshot = dict(self.users)
            sessions_snapshot = dict(self.sessions)
            self._tx_depth += 1
            try:
                yield
            except BaseException:
                self.users = users_snapshot
                self.sessions = sessions_snapshot
                raise
            finally:
                self._tx_depth -= 1
            if self._tx_depth == 0:
                self._persist_state()

    def _maybe_persist(self) -> None:
        if self._tx_depth == 0:
            self._persist_state()

    # users
    @staticmethod
    def _norm(value: str) -> str:
        return value.strip().lower()

    def create_user(self, user: User) -> User:
        with self._data_lock:
            if self.username_exists(user.username):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if self.email_exists(user.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = replace(user, version=1)
            self.users[stored.id] = stored
            user.version = stored.version
            self._maybe_persist()
            return replace(stored)

    def save_user(self, user: User) -> User:
        with self._data_lock:
            current = self.users.get(user.id)
            if current is None:
                raise ConstraintViolation("user does not exist", {"user_id": user.id})
            if current.version != user.version:
                raise ConcurrentModification(user.id, user.version)
            for other in self.users.values():
                if other.id == user.id:
                    continue
                if self._norm(other.username) == self._norm(user.username):
                    raise ConstraintViolation("username already exists", {"field": "username"})
                if self._norm(other.email) == self._norm(user.email):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            user.version = current.version + 1
            user.updated_at = utcnow()
            self.users[user.id] = replace(user)
            self._maybe_persist()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_for_update(self, user_id: str) -> Optional[User]:
        # Exclusion comes from the data lock held by transaction()
        return self.get_user(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        wanted = self._norm(username)
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if self._norm(u.username) == wanted), None
            )
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        wanted = self._norm(email)
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if self._norm(u.email) == wanted), None
            )
            return replace(user) if user else None

    def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        """Resolve a login identifier that may be either a username or an email."""
        with self._data_lock:
            return self.get_user_by_username(identifier) or self.get_user_by_email(
                identifier
            )

    def username_exists(self, username: str) -> bool:
        return self.get_user_by_username(username) is not None

    def email_exists(self, email: str) -> bool:
        return self.get_user_by_email(email) is not None

    # sessions
    def save_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            existing = self.sessions.get(session.id)
            stored = replace(session)
            if existing is not None and not existing.is_active:
                stored.is_active = False
            self.sessions[session.id] = stored
            self._maybe_persist()
            return replace(stored)

    def touch_session(
        self, session_id: str, access_token: str, last_activity: datetime
    ) -> bool:
        """Swap in a new access token; False when the session is no longer active."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or not sess.is_active:
                return False
            self.sessions[session_id] = replace(
                sess, access_token=access_token, last_activity=last_activity
            )
            self._maybe_persist()
            return True

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_session_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.session_token == token), None
            )
            return replace(sess) if sess else None

    def get_session_by_access_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.access_token == token), None
            )
            return replace(sess) if sess else None

    def list_active_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_active
            ]

    def delete_sessions_for_user(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._maybe_persist()
            return len(stale)

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        """Deactivate active sessions past their expiry."""
        current = now or utcnow()
        with self._data_lock:
            expired = [
                sess
                for sess in self.sessions.values()
                if sess.is_active and sess.is_expired(current)
            ]
            for sess in expired:
                self.sessions[sess.id] = replace(sess, is_active=False)
            if expired:
                self._maybe_persist()
            return len(expired)

    # snapshotting
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True

    @staticmethod
    def _dt(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        sec = user.security
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "role": user.role.value,
            "status": user.status.value,
            "email_verified": user.email_verified,
            "creator_verified": user.creator_verified,
            "security": {
                "failed_login_attempts": sec.failed_login_attempts,
                "lockout_until": self._dt(sec.lockout_until),
                "last_login": self._dt(sec.last_login),
                "events": [
                    {
                        "type": evt.type,
                        "description": evt.description,
                        "ip_address": evt.ip_address,
                        "user_agent": evt.user_agent,
                        "timestamp": self._dt(evt.timestamp),
                    }
                    for evt in sec.events
                ],
            },
            "created_at": self._dt(user.created_at),
            "updated_at": self._dt(user.updated_at),
            "last_active_at": self._dt(user.last_active_at),
            "version": user.version,
        }

    def _deserialize_user(self, data: dict) -> User:
        sec = data.get("security") or {}
        return User(
            id=data["id"],
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            role=UserRole(data.get("role", UserRole.SUBSCRIBER.value)),
            status=UserStatus(data.get("status", UserStatus.PENDING_VERIFICATION.value)),
            email_verified=data.get("email_verified", False),
            creator_verified=data.get("creator_verified", False),
            security=SecurityState(
                failed_login_attempts=sec.get("failed_login_attempts", 0),
                lockout_until=self._parse_dt(sec.get("lockout_until")),
                last_login=self._parse_dt(sec.get("last_login")),
                events=tuple(
                    SecurityEvent(
                        type=evt["type"],
                        description=evt.get("description", ""),
                        ip_address=evt.get("ip_address"),
                        user_agent=evt.get("user_agent"),
                        timestamp=self._parse_dt(evt.get("timestamp")) or utcnow(),
                    )
                    for evt in sec.get("events", [])
                ),
            ),
            created_at=self._parse_dt(data.get("created_at")) or utcnow(),
            updated_at=self._parse_dt(data.get("updated_at")) or utcnow(),
            last_active_at=self._parse_dt(data.get("last_active_at")),
            version=data.get("version", 1),
        )

    def _serialize_session(self, session: Session) -> dict:
        device = session.device_info
        return {
            "id": session.id,
            "user_id": session.user_id,
            "session_token": session.session_token,
            "access_token": session.access_token,
            "device_info": {
                "user_agent": device.user_agent,
                "ip_address": device.ip_address,
                "device_type": device.device_type,
                "os": device.os,
                "browser": device.browser,
            },
            "is_active": session.is_active,
            "created_at": self._dt(session.created_at),
            "expires_at": self._dt(session.expires_at),
            "last_activity": self._dt(session.last_activity),
        }

    def _deserialize_session(self, data: dict) -> Session:
        device = data.get("device_info") or {}
        created_at = self._parse_dt(data["created_at"])
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            session_token=data["session_token"],
            access_token=data["access_token"],
            created_at=created_at,
            expires_at=self._parse_dt(data["expires_at"]),
            device_info=DeviceInfo(**device),
            is_active=data.get("is_active", True),
            last_activity=self._parse_dt(data.get("last_activity")) or created_at,
        )
