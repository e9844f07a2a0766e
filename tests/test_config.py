"""Tests for settings loading and startup validation."""

import pytest

from taskhub.config import (
    PLACEHOLDER_ACCESS_SECRET,
    PLACEHOLDER_REFRESH_SECRET,
    Environment,
    Settings,
    get_settings,
    parse_duration,
    reset_settings_cache,
)

STRONG_ACCESS = "a" * 40
STRONG_REFRESH = "b" * 40


class TestParseDuration:
    """Duration strings used for token and reset-code lifetimes."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("15m", 900),
            ("30d", 30 * 86400),
            ("1h", 3600),
            ("45s", 45),
            ("2w", 14 * 86400),
            ("1y", 365 * 86400),
            ("120", 120),
            (60, 60),
            ("10M", 600),
        ],
    )
    def test_valid_units(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "abc", "15x", "-5m", "0", "1.5h", True])
    def test_invalid_values_raise(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)


class TestSettingsValidation:
    def test_defaults_are_usable_in_development(self):
        settings = Settings()
        assert settings.environment == Environment.DEVELOPMENT
        assert settings.access_token_ttl_seconds == 900
        assert settings.refresh_token_ttl_seconds == 30 * 86400
        assert settings.password_reset_ttl_seconds == 3600

    def test_identical_secrets_rejected(self):
        with pytest.raises(ValueError):
            Settings(access_token_secret="same-secret", refresh_token_secret="same-secret")

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            Settings(access_token_secret="", refresh_token_secret="something")

    @pytest.mark.parametrize("env", ["production", "prod", "staging"])
    def test_placeholder_secrets_rejected_in_production_like_env(self, env):
        with pytest.raises(ValueError):
            Settings(
                environment=env,
                access_token_secret=PLACEHOLDER_ACCESS_SECRET,
                refresh_token_secret=STRONG_REFRESH,
            )
        with pytest.raises(ValueError):
            Settings(
                environment=env,
                access_token_secret=STRONG_ACCESS,
                refresh_token_secret=PLACEHOLDER_REFRESH_SECRET,
            )

    def test_short_secret_rejected_in_production(self):
        with pytest.raises(ValueError):
            Settings(
                environment="production",
                access_token_secret="short",
                refresh_token_secret=STRONG_REFRESH,
            )

    def test_test_mode_rejected_in_production(self):
        with pytest.raises(ValueError):
            Settings(
                environment="production",
                access_token_secret=STRONG_ACCESS,
                refresh_token_secret=STRONG_REFRESH,
                test_mode=True,
            )

    def test_production_accepts_strong_distinct_secrets(self):
        settings = Settings(
            environment="PRODUCTION",
            access_token_secret=STRONG_ACCESS,
            refresh_token_secret=STRONG_REFRESH,
        )
        assert settings.environment.is_production_like

    @pytest.mark.parametrize("ttl", ["10m", "2h", "bogus"])
    def test_reset_ttl_bounds(self, ttl):
        with pytest.raises(ValueError):
            Settings(password_reset_ttl=ttl)

    def test_invalid_access_ttl_rejected(self):
        with pytest.raises(ValueError):
            Settings(access_token_ttl="forever")

    def test_pool_bounds_checked(self):
        with pytest.raises(ValueError):
            Settings(database_pool_min=5, database_pool_max=2)

    def test_cors_origins_split(self):
        settings = Settings(cors_allow_origins="http://a.test, http://b.test,")
        assert settings.cors_origins == ["http://a.test", "http://b.test"]


class TestFromEnv:
    def test_env_variables_override_defaults(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL", "5m")
        monkeypatch.setenv("PASSWORD_REQUIRE_SPECIAL", "false")
        monkeypatch.setenv("AUTH_RATE_LIMIT_MAX_REQUESTS", "7")
        settings = Settings.from_env()
        assert settings.access_token_ttl_seconds == 300
        assert settings.password_require_special is False
        assert settings.auth_rate_limit_per_window == 7

    def test_production_env_with_placeholder_fails_fast(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        monkeypatch.setenv("TEST_MODE", "false")
        monkeypatch.setenv("JWT_ACCESS_TOKEN_SECRET", PLACEHOLDER_ACCESS_SECRET)
        monkeypatch.setenv("JWT_REFRESH_TOKEN_SECRET", STRONG_REFRESH)
        with pytest.raises(ValueError):
            Settings.from_env()

    def test_settings_cache_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("ACCESS_TOKEN_TTL", "7m")
        reset_settings_cache()
        try:
            assert get_settings().access_token_ttl == "7m"
        finally:
            monkeypatch.delenv("ACCESS_TOKEN_TTL")
            reset_settings_cache()
