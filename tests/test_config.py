"""Tests for settings loading and the production secret guard."""

import pytest
from pydantic import SecretStr, ValidationError

from lifecycle.config import Environment, Settings, get_settings


class TestDefaults:
    def test_lifecycle_windows(self):
        settings = Settings(_env_file=None)
        assert settings.verification_window_hours == 72
        assert settings.deletion_grace_period_days == 30
        assert settings.export_artifact_ttl_days == 30
        assert settings.retention_policy_timeout_seconds == 300.0
        assert settings.daily_run_hour_utc == 2

    def test_dev_enables_debug(self):
        settings = Settings(_env_file=None, environment=Environment.DEV)
        assert settings.debug is True
        assert settings.is_dev
        assert not settings.is_prod

    def test_test_environment_counts_as_dev(self):
        settings = Settings(_env_file=None, environment=Environment.TEST)
        assert settings.is_dev
        assert settings.debug is False

    def test_reads_environment_variables(self, monkeypatch):
        monkeypatch.setenv("DELETION_GRACE_PERIOD_DAYS", "14")
        monkeypatch.setenv("RETENTION_OVERRIDES", '{"notification_logs": 180}')
        get_settings.cache_clear()
        try:
            settings = get_settings()
        finally:
            get_settings.cache_clear()
        assert settings.deletion_grace_period_days == 14
        assert settings.retention_overrides == {"notification_logs": 180}

    def test_grace_period_is_bounded(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, deletion_grace_period_days=91)


class TestProductionGuard:
    def test_default_secrets_block_startup(self):
        with pytest.raises(RuntimeError, match="SECRET_KEY"):
            Settings(_env_file=None, environment=Environment.PROD)

    def test_weak_database_password_blocks_startup(self):
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            Settings(
                _env_file=None,
                environment=Environment.PROD,
                secret_key=SecretStr("e3b0c44298fc1c149afbf4c8996fb924"),
                database_url="postgresql+asyncpg://app:postgres@db:5432/lifecycle",
            )

    def test_strong_secrets_pass(self):
        settings = Settings(
            _env_file=None,
            environment=Environment.PROD,
            secret_key=SecretStr("e3b0c44298fc1c149afbf4c8996fb924"),
            database_url="postgresql+asyncpg://app:Xq7vL2pR9wK4@db:5432/lifecycle",
        )
        assert settings.is_prod
        assert settings.debug is False
