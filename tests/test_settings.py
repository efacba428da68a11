"""Tests for syncstore.settings."""

import pytest

from syncstore import settings
from syncstore.settings import LoadPolicy, SavePolicy, SyncConfig, validate_config


class TestSyncConfig:
    """SyncConfig coercion and validation."""

    def test_defaults_are_valid(self):
        config = SyncConfig().validate()
        assert isinstance(config.default_save_policy, SavePolicy)
        assert isinstance(config.default_load_policy, LoadPolicy)

    def test_policy_strings_are_coerced(self):
        config = SyncConfig(default_save_policy="remote_first", default_load_policy="local_only")
        assert config.default_save_policy is SavePolicy.REMOTE_FIRST
        assert config.default_load_policy is LoadPolicy.LOCAL_ONLY

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            SyncConfig(default_save_policy="eventually")

    def test_every_problem_reported(self):
        config = SyncConfig(
            foreground_queue_concurrency=0,
            max_load_queue_capacity=0,
            jitter_percent=1.5,
            backoff_multiplier=0.5,
            min_retry_delay=10,
            max_retry_delay=5,
        )
        with pytest.raises(ValueError) as excinfo:
            config.validate()
        message = str(excinfo.value)
        assert "foreground_queue_concurrency" in message
        assert "max_load_queue_capacity" in message
        assert "jitter_percent" in message
        assert "backoff_multiplier" in message
        assert "min_retry_delay must not exceed max_retry_delay" in message


class TestValidateConfig:
    """Process-level settings for the bundled adapters."""

    def test_valid(self, monkeypatch):
        monkeypatch.setattr(settings, "DATABASE_URL", "postgresql://localhost/sync")
        monkeypatch.setattr(settings, "API_BASE_URL", "https://api.test")
        monkeypatch.setattr(settings, "API_TIMEOUT", 20.0)
        validate_config()

    def test_missing_values(self, monkeypatch):
        monkeypatch.setattr(settings, "DATABASE_URL", None)
        monkeypatch.setattr(settings, "API_BASE_URL", "ftp://api.test")
        with pytest.raises(ValueError) as excinfo:
            validate_config()
        assert "DATABASE_URL is required" in str(excinfo.value)
        assert "http(s)" in str(excinfo.value)
