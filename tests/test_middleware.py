"""HTTP checkpoint, error envelopes and runtime wiring."""

import asyncio
from datetime import datetime, timezone

import pytest
from fastapi import Depends, Request
from fastapi.testclient import TestClient

from creatorauth.api.middleware import current_auth, require_auth, require_permission
from creatorauth.app import create_app
from creatorauth.config import Settings
from creatorauth.service.auth import AuthContext, AuthService
from creatorauth.service.errors import AccountLockedError
from creatorauth.service.runtime import Runtime
from creatorauth.storage.errors import ConstraintViolation
from creatorauth.storage.memory import MemoryStore


@pytest.fixture
def runtime(tmp_path, settings, fast_hasher, revocation_cache):
    rt = Runtime(Settings(**{**settings.model_dump(), "shared_fs_root": str(tmp_path)}))
    rt.cache = revocation_cache
    rt.auth = AuthService.from_settings(
        rt.store, revocation_cache, rt.settings, password_hasher=fast_hasher
    )
    return rt


@pytest.fixture
def app(runtime):
    app = create_app(runtime)

    @app.get("/content")
    async def content(ctx: AuthContext = Depends(require_auth)):
        return {"user_id": ctx.user_id, "permissions": list(ctx.permissions)}

    @app.get("/admin/settings")
    async def admin_settings(ctx: AuthContext = Depends(require_permission("SYSTEM_SETTINGS"))):
        return {"ok": True}

    @app.get("/auth/whoami")
    async def whoami(request: Request):
        return {"authenticated": current_auth(request) is not None}

    @app.get("/locked")
    async def locked():
        raise AccountLockedError(datetime(2030, 1, 1, tzinfo=timezone.utc))

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("username already exists", {"field": "username"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("unexpected")

    return app


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def _login(runtime, password, username="alice"):
    user = runtime.auth.register(username, f"{username}@example.com", password)
    runtime.auth.verify_email(user.id)
    return asyncio.run(runtime.auth.login(username, password))


def test_public_health_route(client):
    resp = client.get("/health/live", headers={"X-Request-ID": "req-123"})
    assert resp.status_code == 200
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.json()["data"] == {"status": "alive"}


def test_request_id_generated(client):
    resp = client.get("/health/live")
    assert resp.headers["X-Request-ID"]


def test_anonymous_request_rejected(client):
    resp = client.get("/content")
    body = resp.json()
    assert resp.status_code == 401
    assert body["status"] == "error"
    assert body["error"]["code"] == "unauthorized"
    assert resp.headers["WWW-Authenticate"] == "Bearer"
    assert body["request_id"] == resp.headers["X-Request-ID"]


def test_valid_token_reaches_route(client, runtime, password):
    login = _login(runtime, password)
    resp = client.get("/content", headers={"Authorization": f"Bearer {login.access_token}"})
    assert resp.status_code == 200
    assert resp.json()["user_id"] == login.user.id
    assert "VIEW_CONTENT" in resp.json()["permissions"]


def test_logged_out_token_rejected(client, runtime, password):
    login = _login(runtime, password)
    asyncio.run(runtime.auth.logout(login.refresh_token))
    resp = client.get("/content", headers={"Authorization": f"Bearer {login.access_token}"})
    assert resp.status_code == 401


def test_public_prefix_ignores_token(client, runtime, password):
    login = _login(runtime, password)
    resp = client.get("/auth/whoami", headers={"Authorization": f"Bearer {login.access_token}"})
    assert resp.json() == {"authenticated": False}


def test_missing_permission_is_forbidden(client, runtime, password):
    login = _login(runtime, password)
    resp = client.get(
        "/admin/settings", headers={"Authorization": f"Bearer {login.access_token}"}
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


def test_account_locked_envelope(client):
    resp = client.get("/locked")
    assert resp.status_code == 423
    error = resp.json()["error"]
    assert error["code"] == "account_locked"
    assert error["details"]["locked_until"].startswith("2030-01-01")


def test_constraint_violation_maps_to_conflict(client):
    resp = client.get("/conflict")
    assert resp.status_code == 409
    assert resp.json()["error"]["details"] == {"field": "username"}


def test_uncaught_error_is_server_error(app):
    with TestClient(app, raise_server_exceptions=False) as c:
        resp = c.get("/boom")
    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "server_error"


def test_shutdown_closes_cache(app, revocation_cache):
    with TestClient(app):
        pass
    assert revocation_cache.closed


def test_runtime_falls_back_without_redis(tmp_path, settings):
    rt = Runtime(
        Settings(
            **{
                **settings.model_dump(),
                "shared_fs_root": str(tmp_path),
                "redis_url": "redis://127.0.0.1:1/0",
            }
        )
    )
    assert rt.cache is None
    assert isinstance(rt.store, MemoryStore)
    assert not rt.auth.tokens.revocation_enabled


def test_runtime_requires_redis_when_fallback_disabled(tmp_path, settings):
    strict = Settings(
        **{
            **settings.model_dump(),
            "shared_fs_root": str(tmp_path),
            "redis_url": "redis://127.0.0.1:1/0",
            "test_mode": False,
            "allow_redis_fallback": False,
        }
    )
    with pytest.raises(RuntimeError):
        Runtime(strict)
