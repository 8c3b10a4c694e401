from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from creatorauth.logging import get_correlation_id

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "invalid_credentials",
    "token_expired",
    "token_invalid",
    "token_revoked",
    "session_not_found",
    "forbidden",
    "account_unavailable",
    "not_found",
    "conflict",
    "account_locked",
    "server_error",
}


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)

