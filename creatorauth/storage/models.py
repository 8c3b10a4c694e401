from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Closed set of platform roles; permission derivation is total over it."""

    SUBSCRIBER = "SUBSCRIBER"
    CREATOR = "CREATOR"
    ADMIN = "ADMIN"


class UserStatus(str, Enum):
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    DELETED = "DELETED"


class SecurityEventType(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    ACCOUNT_DEACTIVATED = "ACCOUNT_DEACTIVATED"
    ACCOUNT_REACTIVATED = "ACCOUNT_REACTIVATED"
    ACCOUNT_DELETION = "ACCOUNT_DELETION"


@dataclass(frozen=True)
class SecurityEvent:
    type: str
    description: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SecurityState:
    """Brute-force counters and audit trail embedded in a user record.

    Instances are never mutated; ``LockoutPolicy`` and the explicit
    security actions in ``AuthService`` swap in a new value.
    """

    failed_login_attempts: int = 0
    lockout_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    events: Tuple[SecurityEvent, ...] = ()

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.lockout_until is None:
            return False
        return self.lockout_until > (now or utcnow())

    def with_event(self, event: SecurityEvent, *, keep: int = 100) -> "SecurityState":
        events = (self.events + (event,))[-keep:]
        return replace(self, events=events)


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    role: UserRole = UserRole.SUBSCRIBER
    status: UserStatus = UserStatus.PENDING_VERIFICATION
    email_verified: bool = False
    creator_verified: bool = False
    security: SecurityState = field(default_factory=SecurityState)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_active_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def new(
        cls,
        username: str,
        email: str,
        password_hash: str,
        *,
        role: UserRole = UserRole.SUBSCRIBER,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=password_hash,
            role=role,
        )

    @property
    def can_login(self) -> bool:
        return self.status not in (UserStatus.SUSPENDED, UserStatus.DELETED)


@dataclass(frozen=True)
class DeviceInfo:
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    device_type: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None

    @classmethod
    def parse(cls, user_agent: Optional[str], ip_address: Optional[str]) -> "DeviceInfo":
        """Best-effort device classification from a raw User-Agent header."""
        if not user_agent:
            return cls(user_agent=user_agent, ip_address=ip_address)
        ua = user_agent.lower()

        if "mobile" in ua or "android" in ua or "iphone" in ua:
            device_type = "MOBILE"
        elif "tablet" in ua or "ipad" in ua:
            device_type = "TABLET"
        else:
            device_type = "DESKTOP"

        os_name = None
        if "windows" in ua:
            os_name = "Windows"
        elif "android" in ua:
            os_name = "Android"
        elif "iphone" in ua or "ipad" in ua or "ios" in ua:
            os_name = "iOS"
        elif "mac" in ua:
            os_name = "macOS"
        elif "linux" in ua:
            os_name = "Linux"

        # Edge and Chrome both advertise Safari; check the most specific first
        browser = None
        if "edg" in ua:
            browser = "Edge"
        elif "chrome" in ua:
            browser = "Chrome"
        elif "firefox" in ua:
            browser = "Firefox"
        elif "safari" in ua:
            browser = "Safari"

        return cls(
            user_agent=user_agent,
            ip_address=ip_address,
            device_type=device_type,
            os=os_name,
            browser=browser,
        )


@dataclass
class Session:
    id: str
    user_id: str
    session_token: str
    access_token: str
    created_at: datetime
    expires_at: datetime
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    is_active: bool = True
    last_activity: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        session_id: Optional[str] = None,
        session_token: str,
        access_token: str,
        device_info: Optional[DeviceInfo] = None,
        ttl: timedelta = timedelta(days=7),
        now: Optional[datetime] = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            session_token=session_token,
            access_token=access_token,
            created_at=created,
            expires_at=created + ttl,
            device_info=device_info or DeviceInfo(),
            is_active=True,
            last_activity=created,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at < (now or utcnow())
