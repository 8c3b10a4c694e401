from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, ContextManager, Iterable, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher

from creatorauth.config import Settings
from creatorauth.logging import get_logger
from creatorauth.service.errors import (
    AccountLockedError,
    AccountUnavailableError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    ServiceError,
    SessionNotFoundError,
    TokenError,
    TokenInvalidError,
    ValidationError,
)
from creatorauth.service.lockout import LockoutPolicy
from creatorauth.service.passwords import PasswordService
from creatorauth.service.sessions import SessionManager
from creatorauth.service.tokens import HS256Signer, TokenService, TokenType
from creatorauth.storage.errors import ConstraintViolation
from creatorauth.storage.models import (
    DeviceInfo,
    SecurityEventType,
    Session,
    User,
    UserRole,
    UserStatus,
    utcnow,
)

logger = get_logger(__name__)

# Effectively permanent; cleared only by reactivate_account
_DEACTIVATION_LOCKOUT = timedelta(days=365 * 100)


class AuthStore(Protocol):
    def transaction(self) -> ContextManager[None]: ...

    def create_user(self, user: User) -> User: ...

    def save_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_for_update(self, user_id: str) -> Optional[User]: ...

    def get_user_by_identifier(self, identifier: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def username_exists(self, username: str) -> bool: ...

    def email_exists(self, email: str) -> bool: ...

    def save_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_session_token(self, token: str) -> Optional[Session]: ...

    def get_session_by_access_token(self, token: str) -> Optional[Session]: ...

    def touch_session(
        self, session_id: str, access_token: str, last_activity: datetime
    ) -> bool: ...

    def list_active_sessions(self, user_id: str) -> List[Session]: ...

    def delete_sessions_for_user(self, user_id: str) -> int: ...

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int: ...


@dataclass
class AuthContext:
    """Identity attached to a request that presented a valid access token."""

    user_id: str
    username: Optional[str]
    email: Optional[str]
    role: UserRole
    permissions: Tuple[str, ...]
    session_id: str
    token_id: str

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


@dataclass
class AuthResult:
    access_token: str
    refresh_token: str
    user: User
    session: Session


class AuthService:
    """Login, token refresh, logout and the request-authentication checkpoint."""

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        sessions: SessionManager,
        lockout: LockoutPolicy,
        passwords: PasswordService,
        *,
        public_paths: Iterable[str] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.sessions = sessions
        self.lockout = lockout
        self.passwords = passwords
        self.public_paths = tuple(public_paths)
        self._clock = clock
        self.logger = logger

    @classmethod
    def from_settings(
        cls,
        store: AuthStore,
        cache: Optional[Any],
        settings: Settings,
        *,
        password_hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "AuthService":
        tokens = TokenService(
            HS256Signer(settings.jwt_secret),
            issuer=settings.jwt_issuer,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            cache=cache,
            cache_timeout=settings.cache_timeout_seconds,
            leeway=timedelta(seconds=settings.token_leeway_seconds),
            clock=clock,
        )
        sessions = SessionManager(
            store,
            tokens,
            max_concurrent_sessions=settings.max_concurrent_sessions,
            session_ttl=timedelta(days=settings.session_ttl_days),
            clock=clock,
        )
        lockout = LockoutPolicy(
            settings.max_login_attempts,
            timedelta(minutes=settings.lockout_duration_minutes),
            max_events=settings.max_security_events,
        )
        return cls(
            store,
            tokens,
            sessions,
            lockout,
            PasswordService(password_hasher),
            public_paths=settings.public_paths,
            clock=clock,
        )

    # login / refresh / logout
    async def login(
        self,
        identifier: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        identifier = (identifier or "").strip()
        password = password or ""
        candidate = self.store.get_user_by_identifier(identifier) if identifier else None
        if candidate is None:
            self.passwords.verify_dummy(password)
            self.logger.info("login_failed", reason="unknown_identifier", ip_address=ip_address)
            raise InvalidCredentialsError()

        result, evicted, error = self._attempt_login(
            candidate.id, password, ip_address=ip_address, user_agent=user_agent
        )
        if result is None:
            raise error or InvalidCredentialsError()
        # Evicted sessions are already inactive; revoking their tokens is best effort.
        await self.sessions.revoke_session_tokens(evicted)
        self.logger.info(
            "login_succeeded",
            user_id=result.user.id,
            session_id=result.session.id,
            evicted_sessions=len(evicted),
        )
        return result

    def _attempt_login(
        self,
        user_id: str,
        password: str,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> Tuple[Optional[AuthResult], List[Session], Optional[ServiceError]]:
        """Check and update the user under the store lock.

        Failures are returned instead of raised so the recorded failed
        attempt commits with the transaction.
        """
        now = self._clock()
        with self.store.transaction():
            user = self.store.get_user_for_update(user_id)
            if user is None:
                return None, [], InvalidCredentialsError()
            if self.lockout.is_locked(user.security, now):
                self.logger.info("login_rejected", user_id=user.id, reason="locked")
                return None, [], AccountLockedError(user.security.lockout_until)
            if not user.can_login:
                self.logger.info("login_rejected", user_id=user.id, reason=user.status.value)
                return None, [], AccountUnavailableError()
            if not self.passwords.verify(user.password_hash, password):
                user.security = self.lockout.record_failure(
                    user.security, now, ip_address=ip_address, user_agent=user_agent
                )
                self.store.save_user(user)
                attempts = user.security.failed_login_attempts
                if self.lockout.is_locked(user.security, now):
                    self.logger.warning("account_locked", user_id=user.id, attempts=attempts)
                    return None, [], AccountLockedError(user.security.lockout_until)
                self.logger.info(
                    "login_failed", user_id=user.id, reason="bad_password", attempts=attempts
                )
                return None, [], InvalidCredentialsError()

            user.security = self.lockout.record_success(
                user.security, now, ip_address=ip_address, user_agent=user_agent
            )
            user.last_active_at = now
            if self.passwords.needs_rehash(user.password_hash):
                user.password_hash = self.passwords.hash(password)
            evicted = self.sessions.evict_for_new_session(user.id)
            session_id = str(uuid.uuid4())
            access_token = self.tokens.issue_access_token(user, session_id)
            refresh_token = self.tokens.issue_refresh_token(user, session_id)
            session = self.sessions.create_session(
                user.id,
                session_id,
                refresh_token=refresh_token,
                access_token=access_token,
                device_info=DeviceInfo.parse(user_agent, ip_address),
            )
            self.store.save_user(user)
        return AuthResult(access_token, refresh_token, user, session), evicted, None

    async def refresh(self, refresh_token: str) -> AuthResult:
        """Mint a new access token for the session that owns ``refresh_token``.

        The refresh token itself is returned unchanged.
        """
        claims = await self.tokens.verify(refresh_token)
        if claims.type != TokenType.REFRESH:
            raise TokenInvalidError("not a refresh token")
        now = self._clock()
        session = self.store.get_session_by_session_token(refresh_token)
        if (
            session is None
            or not session.is_active
            or session.is_expired(now)
            or session.id != claims.session_id
            or session.user_id != claims.subject
        ):
            raise SessionNotFoundError()
        user = self.store.get_user(session.user_id)
        if user is None:
            raise SessionNotFoundError()
        if not user.can_login:
            raise AccountUnavailableError()
        access_token = self.tokens.issue_access_token(user, session.id)
        if not self.store.touch_session(session.id, access_token, now):
            # Ended between the lookup and the update
            raise SessionNotFoundError()
        session = replace(session, access_token=access_token, last_activity=now)
        self.logger.info("token_refreshed", user_id=user.id, session_id=session.id)
        return AuthResult(access_token, refresh_token, user, session)

    async def logout(self, token: str) -> bool:
        """End the session holding ``token`` (refresh or access); unknown tokens are ignored."""
        if not token:
            return False
        session = self.store.get_session_by_session_token(
            token
        ) or self.store.get_session_by_access_token(token)
        if session is None:
            self.logger.info("logout_session_not_found")
            return False
        return await self.sessions.terminate_session(session)

    async def logout_all(self, user_id: str) -> int:
        return await self.sessions.terminate_all_sessions(user_id)

    # request checkpoint
    def is_public_path(self, path: str) -> bool:
        for prefix in self.public_paths:
            base = prefix.rstrip("/")
            if path == base or path.startswith(base + "/"):
                return True
        return False

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() != "bearer" or not credentials.strip():
            return None
        return credentials.strip()

    async def authenticate(
        self, authorization: Optional[str], path: str
    ) -> Optional[AuthContext]:
        if self.is_public_path(path):
            return None
        token = self._extract_bearer(authorization)
        if not token:
            return None
        try:
            # If the revocation list cannot be reached verify() treats the
            # token as not revoked and authentication proceeds.
            claims = await self.tokens.verify(token)
        except TokenError as exc:
            self.logger.info("bearer_token_rejected", reason=exc.error_code, path=path)
            return None
        if claims.type != TokenType.ACCESS or claims.role is None:
            self.logger.info("bearer_token_rejected", reason="wrong_token_type", path=path)
            return None
        return AuthContext(
            user_id=claims.subject,
            username=claims.username,
            email=claims.email,
            role=claims.role,
            permissions=claims.permissions,
            session_id=claims.session_id,
            token_id=claims.token_id,
        )

    # account lifecycle
    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user_for_update(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        role: UserRole = UserRole.SUBSCRIBER,
    ) -> User:
        username = (username or "").strip()
        email = (email or "").strip()
        if not username or not email or "@" not in email:
            raise ValidationError("username and a valid email are required")
        reason = self.passwords.validate_strength(password or "")
        if reason:
            raise ValidationError(reason, detail={"field": "password"})
        if self.store.username_exists(username):
            raise ConflictError("username already taken", detail={"field": "username"})
        if self.store.email_exists(email):
            raise ConflictError("email already registered", detail={"field": "email"})
        user = User.new(username, email, self.passwords.hash(password), role=role)
        try:
            user = self.store.create_user(user)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        self.logger.info("user_registered", user_id=user.id, role=role.value)
        return user

    def verify_email(self, user_id: str) -> User:
        with self.store.transaction():
            user = self._require_user(user_id)
            user.email_verified = True
            if user.status == UserStatus.PENDING_VERIFICATION:
                user.status = UserStatus.ACTIVE
            self.store.save_user(user)
        self.logger.info("email_verified", user_id=user.id)
        return user

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> User:
        reason = self.passwords.validate_strength(new_password or "")
        if reason:
            raise ValidationError(reason, detail={"field": "new_password"})
        now = self._clock()
        with self.store.transaction():
            user = self._require_user(user_id)
            if not self.passwords.verify(user.password_hash, current_password or ""):
                self.logger.info("password_change_rejected", user_id=user.id)
                raise InvalidCredentialsError("current password is incorrect")
            user.password_hash = self.passwords.hash(new_password)
            user.security = self.lockout.record_event(
                user.security, SecurityEventType.PASSWORD_CHANGE, "Password changed", now
            )
            self.store.save_user(user)
        await self.sessions.terminate_all_sessions(user.id)
        self.logger.info("password_changed", user_id=user.id)
        return user

    async def deactivate_account(self, user_id: str) -> User:
        now = self._clock()
        with self.store.transaction():
            user = self._require_user(user_id)
            if user.status == UserStatus.DELETED:
                raise ConflictError("deleted accounts cannot be deactivated")
            user.status = UserStatus.SUSPENDED
            user.security = self.lockout.record_event(
                replace(user.security, lockout_until=now + _DEACTIVATION_LOCKOUT),
                SecurityEventType.ACCOUNT_DEACTIVATED,
                "Account deactivated",
                now,
            )
            self.store.save_user(user)
        await self.sessions.terminate_all_sessions(user.id)
        self.logger.info("account_deactivated", user_id=user.id)
        return user

    def reactivate_account(self, user_id: str) -> User:
        now = self._clock()
        with self.store.transaction():
            user = self._require_user(user_id)
            if user.status == UserStatus.DELETED:
                raise ConflictError("deleted accounts cannot be reactivated")
            user.status = UserStatus.ACTIVE
            user.security = self.lockout.record_event(
                replace(user.security, lockout_until=None, failed_login_attempts=0),
                SecurityEventType.ACCOUNT_REACTIVATED,
                "Account reactivated",
                now,
            )
            self.store.save_user(user)
        self.logger.info("account_reactivated", user_id=user.id)
        return user

    async def delete_account(self, user_id: str, reason: Optional[str] = None) -> User:
        now = self._clock()
        with self.store.transaction():
            user = self._require_user(user_id)
            user.status = UserStatus.DELETED
            user.security = self.lockout.record_event(
                user.security,
                SecurityEventType.ACCOUNT_DELETION,
                f"Account deleted: {reason}" if reason else "Account deleted",
                now,
            )
            self.store.save_user(user)
        await self.sessions.terminate_all_sessions(user.id)
        self.logger.info("account_deleted", user_id=user.id)
        return user

    def list_sessions(self, user_id: str) -> List[Session]:
        return self.sessions.list_sessions(user_id)

    def purge_expired_sessions(self) -> int:
        return self.store.purge_expired_sessions(self._clock())
