from __future__ import annotations

import contextlib
import json
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

# Connection pinned by the innermost open transaction() on this task/thread
_tx_conn: ContextVar[Optional[Any]] = ContextVar("creatorauth_pg_tx_conn", default=None)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL,
        status TEXT NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        creator_verified BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        lockout_until TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        security_events JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_active_at TIMESTAMPTZ,
        version INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_key ON app_user (lower(username))",
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        session_token TEXT NOT NULL,
        access_token TEXT NOT NULL,
        device_info JSONB NOT NULL DEFAULT '{}'::jsonb,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_activity TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id, is_active)",
    "CREATE INDEX IF NOT EXISTS auth_session_token_idx ON auth_session (session_token)",
    "CREATE INDEX IF NOT EXISTS auth_session_access_idx ON auth_session (access_token)",
)


class PostgresStore:
    """Postgres-backed user and session store."""

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_ms}",
            },
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        active = _tx_conn.get()
        if active is not None:
            yield active
            return
        with self.pool.connection() as conn:
            yield conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the block on one pooled connection, committing on success.

        Nested calls reuse the outer connection and commit with it.
        """
        if _tx_conn.get() is not None:
            yield
            return
        with self.pool.connection() as conn:
            token = _tx_conn.set(conn)
            try:
                # the pool commits on clean exit and rolls back on error
                yield
            finally:
                _tx_conn.reset(token)

    def close(self) -> None:
        self.pool.close()

    # users
    @staticmethod
    def _events_json(state: SecurityState) -> str:
        return json.dumps(
            [
                {
                    "type": evt.type,
                    "description": evt.description,
                    "ip_address": evt.ip_address,
                    "user_agent": evt.user_agent,
                    "timestamp": evt.timestamp.isoformat(),
                }
                for evt in state.events
            ]
        )

    @staticmethod
    def _user_from_row(row: dict) -> User:
        raw_events = row.get("security_events") or []
        if isinstance(raw_events, str):
            raw_events = json.loads(raw_events)
        events = tuple(
            SecurityEvent(
                type=evt["type"],
                description=evt.get("description", ""),
                ip_address=evt.get("ip_address"),
                user_agent=evt.get("user_agent"),
                timestamp=datetime.fromisoformat(evt["timestamp"])
                if evt.get("timestamp")
                else utcnow(),
            )
            for evt in raw_events
        )
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=UserRole(row.get("role") or UserRole.SUBSCRIBER.value),
            status=UserStatus(row.get("status") or UserStatus.PENDING_VERIFICATION.value),
            email_verified=bool(row.get("email_verified", False)),
            creator_verified=bool(row.get("creator_verified", False)),
            security=SecurityState(
                failed_login_attempts=row.get("failed_login_attempts") or 0,
                lockout_until=row.get("lockout_until"),
                last_login=row.get("last_login"),
                events=events,
            ),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            last_active_at=row.get("last_active_at"),
            version=row.get("version", 1),
        )

    @staticmethod
    def _unique_field(exc: errors.UniqueViolation) -> str:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
        return "username" if "username" in constraint else "email"

    def create_user(self, user: User) -> User:
        sec = user.security
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (
                        id, username, email, password_hash, role, status,
                        email_verified, creator_verified, failed_login_attempts,
                        lockout_until, last_login, security_events,
                        created_at, updated_at, last_active_at, version
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 1)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        user.password_hash,
                        user.role.value,
                        user.status.value,
                        user.email_verified,
                        user.creator_verified,
                        sec.failed_login_attempts,
                        sec.lockout_until,
                        sec.last_login,
                        self._events_json(sec),
                        user.created_at,
                        user.updated_at,
                        user.last_active_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = self._unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        user.version = 1
        return user

    def save_user(self, user: User) -> User:
        """Write ``user`` back if nobody else has saved it since it was read."""
        sec = user.security
        now = utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user SET
                        username = %s, email = %s, password_hash = %s, role = %s,
                        status = %s, email_verified = %s, creator_verified = %s,
                        failed_login_attempts = %s, lockout_until = %s, last_login = %s,
                        security_events = %s, updated_at = %s, last_active_at = %s,
                        version = version + 1
                    WHERE id = %s AND version = %s
                    RETURNING version
                    """,
                    (
                        user.username,
                        user.email,
                        user.password_hash,
                        user.role.value,
                        user.status.value,
                        user.email_verified,
                        user.creator_verified,
                        sec.failed_login_attempts,
                        sec.lockout_until,
                        sec.last_login,
                        self._events_json(sec),
                        now,
                        user.last_active_at,
                        user.id,
                        user.version,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = self._unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        if not row:
            raise ConcurrentModification(user.id, user.version)
        user.version = row["version"]
        user.updated_at = now
        return user

    def _fetch_user(self, sql: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("SELECT * FROM app_user WHERE id = %s", (user_id,))

    def get_user_for_update(self, user_id: str) -> Optional[User]:
        """Read and row-lock a user; only meaningful inside ``transaction()``."""
        return self._fetch_user(
            "SELECT * FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
        )

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user(
            "SELECT * FROM app_user WHERE lower(username) = lower(%s)", (username.strip(),)
        )

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user(
            "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email.strip(),)
        )

    def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        return self._fetch_user(
            """
            SELECT * FROM app_user
            WHERE lower(username) = lower(%s) OR lower(email) = lower(%s)
            ORDER BY (lower(username) = lower(%s)) DESC
            LIMIT 1
            """,
            (identifier.strip(), identifier.strip(), identifier.strip()),
        )

    def username_exists(self, username: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM app_user WHERE lower(username) = lower(%s)",
                (username.strip(),),
            ).fetchone()
        return row is not None

    def email_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM app_user WHERE lower(email) = lower(%s)", (email.strip(),)
            ).fetchone()
        return row is not None

    # sessions
    @staticmethod
    def _session_from_row(row: dict) -> Session:
        device = row.get("device_info") or {}
        if isinstance(device, str):
            device = json.loads(device)
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            session_token=row["session_token"],
            access_token=row["access_token"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            device_info=DeviceInfo(**device),
            is_active=bool(row.get("is_active", True)),
            last_activity=row.get("last_activity") or row["created_at"],
        )

    def save_session(self, session: Session) -> Session:
        device = session.device_info
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, session_token, access_token, device_info,
                        is_active, created_at, expires_at, last_activity
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        session_token = EXCLUDED.session_token,
                        access_token = EXCLUDED.access_token,
                        device_info = EXCLUDED.device_info,
                        is_active = auth_session.is_active AND EXCLUDED.is_active,
                        expires_at = EXCLUDED.expires_at,
                        last_activity = EXCLUDED.last_activity
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.session_token,
                        session.access_token,
                        json.dumps(
                            {
                                "user_agent": device.user_agent,
                                "ip_address": device.ip_address,
                                "device_type": device.device_type,
                                "os": device.os,
                                "browser": device.browser,
                            }
                        ),
                        session.is_active,
                        session.created_at,
                        session.expires_at,
                        session.last_activity,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        return session

    def touch_session(
        self, session_id: str, access_token: str, last_activity: datetime
    ) -> bool:
        """Swap in a new access token; False when the session is no longer active."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET access_token = %s, last_activity = %s
                WHERE id = %s AND is_active
                RETURNING id
                """,
                (access_token, last_activity, session_id),
            ).fetchone()
        return row is not None

    def _fetch_session(self, sql: str, params: tuple) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._session_from_row(row) if row else None

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._fetch_session("SELECT * FROM auth_session WHERE id = %s", (session_id,))

    def get_session_by_session_token(self, token: str) -> Optional[Session]:
        return self._fetch_session(
            "SELECT * FROM auth_session WHERE session_token = %s", (token,)
        )

    def get_session_by_access_token(self, token: str) -> Optional[Session]:
        return self._fetch_session(
            "SELECT * FROM auth_session WHERE access_token = %s", (token,)
        )

    def list_active_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND is_active
                ORDER BY created_at ASC
                """,
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_sessions_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
        return cur.rowcount or 0

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET is_active = FALSE WHERE is_active AND expires_at < %s",
                (now or utcnow(),),
            )
        count = cur.rowcount or 0
        if count:
            self.logger.info("expired_sessions_purged", count=count)
        return count
