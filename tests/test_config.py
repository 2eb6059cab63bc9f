import pytest
from pydantic import ValidationError

from hikariauth.config import Settings, get_settings, reset_settings_cache


def test_env_names_follow_field_metadata():
    names = Settings.env_names()
    assert names["jwt_secret"] == "JWT_SECRET"
    assert names["signup_rate_limit"] == "SIGNUP_RATE_LIMIT"


def test_environment_wins_over_env_file(monkeypatch, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("SIGNUP_RATE_LIMIT=9\nLOGIN_FAILED_LIMIT=7\n")
    monkeypatch.setenv("SIGNUP_RATE_LIMIT", "2")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")

    settings = Settings.from_env(str(env_file))

    assert settings.signup_rate_limit == 2
    assert settings.login_failed_limit == 7
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_trusted_proxies_parse_from_csv(monkeypatch, tmp_path):
    monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.0/8, 127.0.0.1")
    settings = Settings.from_env(str(tmp_path / "missing.env"))
    assert settings.trusted_proxies == ["10.0.0.0/8", "127.0.0.1"]
    assert Settings(test_mode=True).trusted_proxies == []


def test_prefix_gets_trailing_colon():
    assert Settings(test_mode=True, redis_key_prefix="hikari").redis_key_prefix == "hikari:"


def test_short_secret_rejected_outside_test_mode():
    with pytest.raises(ValidationError):
        Settings(test_mode=False, jwt_secret="too-short")


def test_missing_secret_rejected_outside_test_mode():
    with pytest.raises(ValidationError):
        Settings(test_mode=False, jwt_secret=None)


def test_test_mode_supplies_a_secret():
    assert Settings(test_mode=True, jwt_secret=None).jwt_secret


def test_settings_are_cached_until_reset(monkeypatch):
    monkeypatch.setenv("SIGNUP_RATE_LIMIT", "4")
    first = get_settings()
    assert get_settings() is first
    assert first.signup_rate_limit == 4

    monkeypatch.setenv("SIGNUP_RATE_LIMIT", "6")
    reset_settings_cache()
    assert get_settings().signup_rate_limit == 6
