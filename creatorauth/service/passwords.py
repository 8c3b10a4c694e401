from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from creatorauth.logging import get_logger

_MIN_PASSWORD_LENGTH = 8


class PasswordService:
    """argon2id hashing with a constant-cost path for unknown accounts."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self.logger = get_logger(__name__)
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the login identifier matches no account so the
        # response time does not reveal whether it exists.
        self._dummy_hash = self._hasher.hash("creatorauth-timing-equaliser")

    @staticmethod
    def validate_strength(password: str) -> Optional[str]:
        """Return a reason the password is unacceptable, or None."""
        if len(password) < _MIN_PASSWORD_LENGTH:
            return f"password must be at least {_MIN_PASSWORD_LENGTH} characters"
        if password.strip() != password:
            return "password must not start or end with whitespace"
        return None

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unreadable")
            return False

    def verify_dummy(self, password: str) -> None:
        self.verify(self._dummy_hash, password)

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True
