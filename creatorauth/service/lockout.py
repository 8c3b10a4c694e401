from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

from creatorauth.storage.models import SecurityEvent, SecurityEventType, SecurityState


class LockoutPolicy:
    """Brute-force protection as pure transitions over ``SecurityState``.

    A failure that brings the counter to ``max_attempts`` locks the account
    for ``lockout_duration``. The counter itself is only cleared by a
    successful login.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        lockout_duration: timedelta = timedelta(minutes=30),
        *,
        max_events: int = 100,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        self.max_attempts = max_attempts
        self.lockout_duration = lockout_duration
        self.max_events = max_events

    def is_locked(self, state: SecurityState, now: datetime) -> bool:
        return state.is_locked(now)

    def record_failure(
        self,
        state: SecurityState,
        now: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SecurityState:
        attempts = state.failed_login_attempts + 1
        updated = replace(state, failed_login_attempts=attempts)
        updated = updated.with_event(
            SecurityEvent(
                type=SecurityEventType.LOGIN_FAILED.value,
                description=f"Failed login attempt {attempts}",
                ip_address=ip_address,
                user_agent=user_agent,
                timestamp=now,
            ),
            keep=self.max_events,
        )
        if attempts >= self.max_attempts:
            updated = replace(updated, lockout_until=now + self.lockout_duration)
            updated = updated.with_event(
                SecurityEvent(
                    type=SecurityEventType.ACCOUNT_LOCKED.value,
                    description=f"Account locked after {attempts} failed login attempts",
                    ip_address=ip_address,
                    user_agent=user_agent,
                    timestamp=now,
                ),
                keep=self.max_events,
            )
        return updated

    def record_success(
        self,
        state: SecurityState,
        now: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SecurityState:
        updated = replace(
            state, failed_login_attempts=0, lockout_until=None, last_login=now
        )
        return updated.with_event(
            SecurityEvent(
                type=SecurityEventType.LOGIN_SUCCESS.value,
                description="Successful login",
                ip_address=ip_address,
                user_agent=user_agent,
                timestamp=now,
            ),
            keep=self.max_events,
        )

    def record_event(
        self,
        state: SecurityState,
        event_type: SecurityEventType,
        description: str,
        now: datetime,
    ) -> SecurityState:
        """Append an audit event without touching the counters."""
        return state.with_event(
            SecurityEvent(type=event_type.value, description=description, timestamp=now),
            keep=self.max_events,
        )
