from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Tuple

from redis.exceptions import RedisError

from creatorauth.logging import get_logger
from creatorauth.service.errors import (
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
)
from creatorauth.storage.models import User, UserRole, utcnow

logger = get_logger(__name__)


class TokenType(str, Enum):
    ACCESS = "ACCESS"
    REFRESH = "REFRESH"


_ROLE_PERMISSIONS: dict[UserRole, frozenset[str]] = {
    UserRole.ADMIN: frozenset(
        {
            "USER_MANAGEMENT",
            "CREATOR_VERIFICATION",
            "CONTENT_MODERATION",
            "ANALYTICS_VIEW",
            "SYSTEM_SETTINGS",
        }
    ),
    UserRole.CREATOR: frozenset(
        {"CREATE_CONTENT", "MANAGE_SUBSCRIPTIONS", "VIEW_ANALYTICS", "MANAGE_TIPS"}
    ),
    UserRole.SUBSCRIBER: frozenset(
        {"VIEW_CONTENT", "SUBSCRIBE", "SEND_TIPS", "SEND_MESSAGES"}
    ),
}
_VERIFIED_CREATOR_PERMISSIONS = frozenset({"LIVE_STREAM", "CUSTOM_REQUESTS"})

_unmapped_roles = set(UserRole) - set(_ROLE_PERMISSIONS)
if _unmapped_roles:
    raise RuntimeError(f"roles without a permission set: {sorted(_unmapped_roles)}")


def permissions_for(user: User) -> list[str]:
    """Capabilities granted by the user's role, sorted for stable token payloads."""
    granted = set(_ROLE_PERMISSIONS[user.role])
    if user.role == UserRole.CREATOR and user.creator_verified:
        granted |= _VERIFIED_CREATOR_PERMISSIONS
    return sorted(granted)


class Signer(Protocol):
    def sign(self, claims: bytes) -> str:
        ...

    def verify(self, token: str) -> bytes:
        ...


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _decode_segment(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class HS256Signer:
    """Compact JWS with HMAC-SHA256; only ``alg=HS256`` is accepted back."""

    _HEADER = _encode_segment(
        json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
    )

    def __init__(self, secret: str) -> None:
        self._key = secret.encode()

    def _signature(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, claims: bytes) -> str:
        signing_input = f"{self._HEADER}.{_encode_segment(claims)}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str) -> bytes:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("malformed token")
        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError:
            raise TokenInvalidError("malformed token header")
        # pinned to prevent algorithm confusion
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenInvalidError("unsupported token algorithm")
        expected = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected, sig_b64):
            raise TokenInvalidError("bad token signature")
        try:
            return _decode_segment(payload_b64)
        except ValueError:
            raise TokenInvalidError("malformed token payload")


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    session_id: str
    token_id: str
    type: TokenType
    issued_at: datetime
    expires_at: datetime
    issuer: str
    username: Optional[str] = None
    email: Optional[str] = None
    role: Optional[UserRole] = None
    permissions: Tuple[str, ...] = ()


def _timestamp(value: Any, name: str) -> datetime:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TokenInvalidError(f"token claim {name} is not a timestamp")
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _claims_from_payload(payload: Any) -> TokenClaims:
    if not isinstance(payload, dict):
        raise TokenInvalidError("token payload is not an object")
    for name in ("sub", "sessionId", "tokenId", "type", "iss"):
        if not isinstance(payload.get(name), str) or not payload[name]:
            raise TokenInvalidError(f"token claim {name} is missing")
    try:
        token_type = TokenType(payload["type"])
    except ValueError:
        raise TokenInvalidError("unknown token type")
    role = None
    permissions: Tuple[str, ...] = ()
    if token_type == TokenType.ACCESS:
        try:
            role = UserRole(payload.get("role"))
        except ValueError:
            raise TokenInvalidError("unknown role in token")
        raw_permissions = payload.get("permissions") or []
        if not isinstance(raw_permissions, list):
            raise TokenInvalidError("token permissions must be a list")
        permissions = tuple(str(p) for p in raw_permissions)
    return TokenClaims(
        subject=payload["sub"],
        session_id=payload["sessionId"],
        token_id=payload["tokenId"],
        type=token_type,
        issued_at=_timestamp(payload.get("iat"), "iat"),
        expires_at=_timestamp(payload.get("exp"), "exp"),
        issuer=payload["iss"],
        username=payload.get("username"),
        email=payload.get("email"),
        role=role,
        permissions=permissions,
    )


class TokenService:
    """Issues and validates signed access/refresh tokens.

    ``cache`` is the revocation list. When it is ``None`` (Redis was not
    reachable at startup) revocation becomes a no-op and every token is
    treated as not revoked.
    """

    def __init__(
        self,
        signer: Signer,
        *,
        issuer: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        cache: Optional[Any] = None,
        cache_timeout: float = 2.0,
        leeway: timedelta = timedelta(0),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.signer = signer
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.cache = cache
        self.cache_timeout = cache_timeout
        self.leeway = leeway
        self._clock = clock

    @property
    def revocation_enabled(self) -> bool:
        return self.cache is not None

    def _encode(self, payload: dict[str, Any]) -> str:
        return self.signer.sign(json.dumps(payload, separators=(",", ":")).encode())

    def _base_payload(self, user: User, session_id: str, token_type: TokenType, ttl: timedelta) -> dict:
        now = self._clock()
        return {
            "sub": user.id,
            "sessionId": session_id,
            "type": token_type.value,
            "tokenId": str(uuid.uuid4()),
            "iss": self.issuer,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }

    def issue_access_token(self, user: User, session_id: str) -> str:
        payload = self._base_payload(user, session_id, TokenType.ACCESS, self.access_ttl)
        payload.update(
            {
                "username": user.username,
                "email": user.email,
                "role": user.role.value,
                "permissions": permissions_for(user),
            }
        )
        return self._encode(payload)

    def issue_refresh_token(self, user: User, session_id: str) -> str:
        return self._encode(
            self._base_payload(user, session_id, TokenType.REFRESH, self.refresh_ttl)
        )

    def _parse(self, token: str) -> TokenClaims:
        """Signature, issuer and shape checks; expiry is left to the caller."""
        if not token or not isinstance(token, str):
            raise TokenInvalidError("empty token")
        raw = self.signer.verify(token)
        try:
            payload = json.loads(raw)
        except ValueError:
            raise TokenInvalidError("token payload is not JSON")
        claims = _claims_from_payload(payload)
        if claims.issuer != self.issuer:
            raise TokenInvalidError("unexpected token issuer")
        return claims

    def _check_expiry(self, claims: TokenClaims) -> None:
        if self._clock() >= claims.expires_at + self.leeway:
            raise TokenExpiredError()

    def decode(self, token: str) -> TokenClaims:
        """Validate ``token`` without consulting the revocation list."""
        claims = self._parse(token)
        self._check_expiry(claims)
        return claims

    async def _is_revoked(self, token_id: str) -> bool:
        if self.cache is None:
            return False
        try:
            return await asyncio.wait_for(
                self.cache.is_token_revoked(token_id), timeout=self.cache_timeout
            )
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            # Fail open: an unreachable revocation list must not lock every
            # user out, so the token is treated as not revoked.
            logger.warning("token_revocation_check_failed", token_id=token_id, error=str(exc))
            return False

    async def verify(self, token: str) -> TokenClaims:
        claims = self._parse(token)
        if await self._is_revoked(claims.token_id):
            raise TokenRevokedError()
        self._check_expiry(claims)
        return claims

    async def is_valid(self, token: str) -> bool:
        try:
            await self.verify(token)
        except (TokenExpiredError, TokenInvalidError, TokenRevokedError):
            return False
        return True

    async def is_revoked(self, token: str) -> bool:
        """True only when the token parses and its id is on the revocation list."""
        try:
            claims = self._parse(token)
        except TokenInvalidError:
            return False
        return await self._is_revoked(claims.token_id)

    async def revoke(self, token: str) -> None:
        """Put ``token`` on the revocation list for the rest of its lifetime.

        Never raises; failures are logged.
        """
        if self.cache is None:
            logger.info("token_revocation_skipped", reason="revocation_disabled")
            return
        try:
            claims = self._parse(token)
        except TokenInvalidError as exc:
            logger.warning("token_revocation_failed", reason="undecodable", error=exc.message)
            return
        ttl = int((claims.expires_at - self._clock()).total_seconds())
        if ttl <= 0:
            return
        try:
            await asyncio.wait_for(
                self.cache.revoke_token(claims.token_id, ttl), timeout=self.cache_timeout
            )
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.warning(
                "token_revocation_failed", token_id=claims.token_id, error=str(exc)
            )
            return
        logger.info(
            "token_revoked", token_id=claims.token_id, token_type=claims.type.value
        )
