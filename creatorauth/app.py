from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from creatorauth.api.error_handling import register_exception_handlers
from creatorauth.api.middleware import BearerAuthMiddleware
from creatorauth.api.schemas import Envelope
from creatorauth.logging import get_logger
from creatorauth.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the app with the bearer checkpoint and error envelopes installed.

    Without an explicit ``runtime`` the process-wide singleton is created
    lazily on first use.
    """

    def _runtime() -> Runtime:
        return runtime or get_runtime()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        try:
            await _runtime().close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="creatorauth", version=__version__, lifespan=lifespan)
    app.add_middleware(BearerAuthMiddleware, auth_service=lambda: _runtime().auth)
    register_exception_handlers(app)

    @app.get("/health/live")
    async def live() -> dict:
        return Envelope(status="ok", data={"status": "alive"}).model_dump()

    return app
