from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConcurrentModification(Exception):
    """Raised when a user row changed between read and write."""

    def __init__(self, user_id: str, expected_version: int):
        super().__init__(
            f"user {user_id} was modified concurrently (expected version {expected_version})"
        )
        self.user_id = user_id
        self.expected_version = expected_version


__all__ = ["ConstraintViolation", "ConcurrentModification"]
