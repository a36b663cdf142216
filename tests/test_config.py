"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from reflective_auth.config import (
    ChallengeStoreMode,
    Settings,
    get_settings,
    reset_settings_cache,
)

SECRET = "x" * 32


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    # Keep a developer's .env out of the picture
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JWT_SECRET", SECRET)
    return monkeypatch


class TestJwtSecret:
    def test_secret_is_required(self):
        with pytest.raises(ValidationError):
            Settings()

    def test_short_secret_is_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            Settings(jwt_secret="too-short")
        assert "at least 32" in str(exc_info.value)

    def test_secret_of_minimum_length(self):
        assert Settings(jwt_secret=SECRET).jwt_secret == SECRET


class TestDefaults:
    def test_challenge_defaults(self):
        settings = Settings(jwt_secret=SECRET)

        assert settings.challenge_ttl_seconds == 600
        assert settings.challenge_max_attempts == 3
        assert settings.challenge_store is ChallengeStoreMode.REDIS
        assert settings.email_dev_mode is False

    @pytest.mark.parametrize(
        "field", ["challenge_ttl_seconds", "challenge_max_attempts", "token_ttl_minutes"]
    )
    def test_positive_integers(self, field):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, **{field: 0})


class TestFromEnv:
    def test_reads_environment(self, clean_env):
        clean_env.setenv("CHALLENGE_STORE", "memory")
        clean_env.setenv("CHALLENGE_MAX_ATTEMPTS", "5")
        clean_env.setenv("EMAIL_DEV_MODE", "true")
        clean_env.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")

        settings = Settings.from_env()

        assert settings.challenge_store is ChallengeStoreMode.MEMORY
        assert settings.challenge_max_attempts == 5
        assert settings.email_dev_mode is True
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_reads_dotenv_file(self, clean_env, tmp_path):
        clean_env.delenv("JWT_SECRET")
        (tmp_path / ".env").write_text(f"JWT_SECRET={SECRET}\nSMTP_PORT=2525\n")

        settings = Settings.from_env()

        assert settings.jwt_secret == SECRET
        assert settings.smtp_port == 2525

    def test_environment_wins_over_dotenv(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("SMTP_PORT=2525\n")
        clean_env.setenv("SMTP_PORT", "465")

        assert Settings.from_env().smtp_port == 465

    def test_invalid_store_mode(self, clean_env):
        clean_env.setenv("CHALLENGE_STORE", "memcached")

        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_get_settings_is_cached_until_reset(self, clean_env):
        first = get_settings()
        assert get_settings() is first

        reset_settings_cache()
        assert get_settings() is not first
