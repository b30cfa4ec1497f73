"""Tests for settings loading and validation."""

import pytest
from pydantic import ValidationError

from everest.config import Settings, get_settings, reset_settings_cache


class TestSettingsFromEnv:
    def test_env_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "15")
        monkeypatch.setenv("JWT_ISSUER", "everest-staging")

        settings = Settings.from_env()

        assert settings.access_token_ttl_minutes == 15
        assert settings.jwt_issuer == "everest-staging"

    def test_cors_origins_split_on_commas(self, monkeypatch):
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")

        assert Settings.from_env().cors_allow_origins == [
            "https://a.example",
            "https://b.example",
        ]

    def test_settings_cache_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("SESSION_TIMEOUT_MINUTES", "5")
        reset_settings_cache()
        assert get_settings().session_timeout_minutes == 5
        reset_settings_cache()


class TestSettingsValidation:
    def test_environment_normalized(self):
        settings = Settings(environment=" Production ")

        assert settings.environment == "production"
        assert settings.is_production
        assert not settings.is_development

    def test_unknown_environment_rejected(self):
        with pytest.raises(ValidationError):
            Settings(environment="staging")

    def test_blank_secrets_become_none(self):
        settings = Settings(jwt_secret="  ", jwt_refresh_secret="")

        assert settings.jwt_secret is None
        assert settings.jwt_refresh_secret is None

    @pytest.mark.parametrize(
        "field", ["access_token_ttl_minutes", "session_timeout_minutes", "device_retention_days"]
    )
    def test_lifetimes_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    def test_refresh_window_may_be_zero(self):
        assert Settings(token_refresh_window_seconds=0).token_refresh_window_seconds == 0

    def test_defaults(self):
        settings = Settings()

        assert settings.access_token_ttl_minutes == 60
        assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
        assert settings.password_reset_ttl_minutes == 10
        assert settings.device_cookie_max_age_days == 30
