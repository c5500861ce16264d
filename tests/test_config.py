"""Tests for settings parsing and environment loading."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from vib3sales.config import Settings, get_settings, parse_duration, reset_settings_cache

SECRET = "config-test-secret-key-with-enough-length-123456"


class TestParseDuration:
    """Lifetime strings used by JWT_EXPIRES_IN and REFRESH_TOKEN_EXPIRES_IN."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("45s", timedelta(seconds=45)),
            ("15m", timedelta(minutes=15)),
            ("12h", timedelta(hours=12)),
            ("7d", timedelta(days=7)),
            ("30", timedelta(days=30)),
        ],
    )
    def test_units(self, raw, expected):
        assert parse_duration(raw) == expected

    def test_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_duration("soon")


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_secret=SECRET)
        assert settings.access_token_ttl == timedelta(days=7)
        assert settings.refresh_token_ttl == timedelta(days=30)
        assert settings.login_attempt_window == timedelta(minutes=15)
        assert settings.max_login_attempts == 5
        assert settings.password_reset_ttl_minutes == 60
        assert settings.email_verification_ttl_hours == 24

    def test_access_lifetime_cannot_exceed_refresh(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, jwt_expires_in="60d", refresh_token_expires_in="30d")

    def test_invalid_duration_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, jwt_expires_in="forever")

    def test_cors_origins_split_from_string(self):
        settings = Settings(
            jwt_secret=SECRET, cors_allow_origins="https://a.example, https://b.example,"
        )
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_missing_secret_is_generated_and_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)
        assert first.jwt_secret
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text().strip() == first.jwt_secret


class TestFromEnv:
    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "3")
        monkeypatch.setenv("LOGIN_ATTEMPT_WINDOW", "60000")
        monkeypatch.setenv("JWT_EXPIRES_IN", "15m")
        settings = Settings.from_env()
        assert settings.max_login_attempts == 3
        assert settings.login_attempt_window == timedelta(minutes=1)
        assert settings.access_token_ttl == timedelta(minutes=15)

    def test_get_settings_caches_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("CRM_MAX_TAGS", "4")
        assert get_settings().crm_max_tags == first.crm_max_tags
        reset_settings_cache()
        assert get_settings().crm_max_tags == 4
