import pytest
from pydantic import ValidationError

from creatorauth.config import DEFAULT_PUBLIC_PATHS, Settings, get_settings, reset_settings_cache

SECRET = "x" * 40


def test_defaults():
    settings = Settings(jwt_secret=SECRET)
    assert settings.jwt_issuer == "desifans-user-service"
    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
    assert settings.max_login_attempts == 5
    assert settings.lockout_duration_minutes == 30
    assert settings.max_concurrent_sessions == 5
    assert settings.token_leeway_seconds == 0
    assert settings.public_paths == list(DEFAULT_PUBLIC_PATHS)


def test_short_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


def test_missing_secret_required_outside_test_mode():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=None, test_mode=False)


def test_missing_secret_generated_in_test_mode():
    first = Settings(jwt_secret=None, test_mode=True)
    second = Settings(jwt_secret=None, test_mode=True)
    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret != second.jwt_secret


@pytest.mark.parametrize(
    "field", ["max_login_attempts", "max_concurrent_sessions", "access_token_ttl_minutes"]
)
def test_non_positive_limits_rejected(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, **{field: 0})


def test_negative_leeway_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, token_leeway_seconds=-1)


def test_from_env(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "3")
    monkeypatch.setenv("PUBLIC_PATHS", "/auth/, /status")
    monkeypatch.setenv("REDIS_URL", " ")
    reset_settings_cache()
    try:
        settings = get_settings()
        assert settings.max_login_attempts == 3
        assert settings.public_paths == ["/auth/", "/status"]
        assert settings.redis_url is None
        assert get_settings() is settings
    finally:
        reset_settings_cache()
