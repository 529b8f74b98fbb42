"""Tests for settings loading and validation."""

import pytest
from pydantic import ValidationError

from authcore.config import Settings, get_settings, reset_settings_cache

SECRET = "config-test-secret-0123456789abcdefghijklmnop"


class TestDefaults:
    """Tests for default values."""

    def test_defaults_match_the_documented_policy(self):
        settings = Settings(jwt_secret=SECRET)

        assert settings.max_concurrent_sessions == 5
        assert settings.max_login_attempts == 5
        assert settings.lockout_duration_minutes == 15
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
        assert settings.password_reset_ttl_minutes == 60
        assert settings.require_device_consistency is True

    def test_cors_origins_are_split(self):
        settings = Settings(
            jwt_secret=SECRET, cors_allow_origins="https://a.example, ,https://b.example"
        )
        assert settings.cors_origins == ["https://a.example", "https://b.example"]


class TestValidation:
    """Tests for range checks."""

    @pytest.mark.parametrize("value", [0, 101])
    def test_session_cap_range(self, value):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, max_concurrent_sessions=value)

    @pytest.mark.parametrize("value", [4, 61])
    def test_lockout_duration_range(self, value):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, lockout_duration_minutes=value)

    def test_ttls_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, access_token_ttl_minutes=0)

    def test_generated_secret_is_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


class TestFromEnv:
    """Tests for environment loading."""

    def test_env_values_are_coerced(self, monkeypatch):
        monkeypatch.setenv("MAX_CONCURRENT_SESSIONS", "3")
        monkeypatch.setenv("REQUIRE_DEVICE_CONSISTENCY", "false")
        monkeypatch.setenv("LOCKOUT_DURATION_MINUTES", "30")

        settings = Settings.from_env()

        assert settings.max_concurrent_sessions == 3
        assert settings.require_device_consistency is False
        assert settings.lockout_duration_minutes == 30

    def test_invalid_env_value_is_rejected(self, monkeypatch):
        # Scoped so the runtime rebuilt after the test sees a valid environment
        with monkeypatch.context() as patched:
            patched.setenv("MAX_CONCURRENT_SESSIONS", "500")
            with pytest.raises(ValidationError):
                Settings.from_env()

    def test_settings_cache_resets(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "7")
        reset_settings_cache()
        assert get_settings().max_login_attempts == 7
