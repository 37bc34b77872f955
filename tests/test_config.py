import pytest
from pydantic import ValidationError

from ssocenter.config import Settings, get_settings, reset_settings_cache


def test_defaults():
    settings = Settings(session_secret="x" * 40)
    assert settings.authorization_code_ttl_seconds == 300
    assert settings.access_token_ttl_seconds == 3600
    assert settings.refresh_token_ttl_days == 30
    assert settings.revocation_fail_closed is False
    assert settings.login_path == "/login"


def test_missing_session_secret_is_generated():
    first = Settings()
    second = Settings()
    assert first.session_secret and len(first.session_secret) >= 64
    assert first.session_secret != second.session_secret


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "120")
    monkeypatch.setenv("REVOCATION_FAIL_CLOSED", "true")
    monkeypatch.setenv("LOGIN_PATH", "/sso/login")

    settings = Settings.from_env()

    assert settings.access_token_ttl_seconds == 120
    assert settings.revocation_fail_closed is True
    assert settings.login_path == "/sso/login"


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("DEFAULT_SCOPE", "openid")
    reset_settings_cache()
    assert get_settings().default_scope == "openid"
    reset_settings_cache()


@pytest.mark.parametrize(
    "field,value",
    [
        ("authorization_code_ttl_seconds", 0),
        ("access_token_ttl_seconds", -5),
        ("refresh_token_ttl_days", 0),
        ("reaper_interval_seconds", 0),
        ("revocation_timeout_seconds", 0),
    ],
)
def test_non_positive_values_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings(session_secret="x" * 40, **{field: value})


@pytest.mark.parametrize("path", ["login", "//evil.example.com/login", "https://x/login"])
def test_login_path_must_be_local(path):
    with pytest.raises(ValidationError):
        Settings(session_secret="x" * 40, login_path=path)
