from __future__ import annotations

from typing import Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from creatorauth.logging import get_logger, set_correlation_id
from creatorauth.service.auth import AuthContext, AuthService
from creatorauth.service.errors import AuthenticationError, ForbiddenError

logger = get_logger(__name__)


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Resolve the bearer token once per request.

    The outcome is left on ``request.state.auth``: an ``AuthContext`` for a
    valid access token, ``None`` for anonymous or public requests. Rejection
    is up to the route, via ``require_auth``.
    """

    def __init__(self, app: ASGIApp, auth_service: Callable[[], AuthService]) -> None:
        super().__init__(app)
        self._auth_service = auth_service

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        request.state.auth = await self._auth_service().authenticate(
            request.headers.get("Authorization"), request.url.path
        )
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response


def current_auth(request: Request) -> Optional[AuthContext]:
    return getattr(request.state, "auth", None)


def require_auth(request: Request) -> AuthContext:
    """FastAPI dependency: the caller's identity, or 401."""
    ctx = current_auth(request)
    if ctx is None:
        raise AuthenticationError("authentication required")
    return ctx


def require_permission(permission: str) -> Callable[[Request], AuthContext]:
    def _dependency(request: Request) -> AuthContext:
        ctx = require_auth(request)
        if not ctx.has_permission(permission):
            logger.info(
                "permission_denied", user_id=ctx.user_id, permission=permission
            )
            raise ForbiddenError(
                "insufficient permissions", detail={"required": permission}
            )
        return ctx

    return _dependency
