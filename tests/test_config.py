"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from config import LogSettings, RecoverySettings, Settings, StorageSettings, SyncSettings, get_settings


class TestDefaults:
    def test_recovery_defaults(self):
        recovery = RecoverySettings()
        assert recovery.max_retries == 3
        assert recovery.base_delay_seconds == 1.0
        assert recovery.max_delay_seconds == 30.0
        assert recovery.backoff_multiplier == 2.0
        assert recovery.jitter_enabled is True
        assert recovery.circuit_breaker_threshold == 5
        assert recovery.circuit_breaker_timeout_seconds == 60
        assert recovery.circuit_breaker_success_threshold == 3
        assert recovery.health_check_interval_seconds == 60

    def test_sync_defaults(self):
        sync = SyncSettings()
        assert sync.interval_seconds == 30
        assert sync.max_queue_size == 1000


class TestEnvironment:
    def test_prefixed_env_vars(self, monkeypatch):
        monkeypatch.setenv("RECOVERY_MAX_RETRIES", "7")
        monkeypatch.setenv("SYNC_SYNC_ON_ENQUEUE", "false")
        monkeypatch.setenv("NETWORK_PROBE_URL", "https://example.test/ping")
        settings = Settings()
        assert settings.recovery.max_retries == 7
        assert settings.sync.sync_on_enqueue is False
        assert settings.network.probe_url == "https://example.test/ping"

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        assert get_settings() is get_settings()
        get_settings.cache_clear()


class TestValidation:
    def test_production_rejects_debug(self):
        with pytest.raises(ValidationError):
            Settings(environment="production", debug=True)

    def test_production_rejects_memory_store(self):
        with pytest.raises(ValidationError):
            Settings(environment="production", storage=StorageSettings(path=":memory:"))

    def test_production_rejects_debug_logging(self):
        with pytest.raises(ValidationError):
            Settings(environment="production", log=LogSettings(level="DEBUG"))

    def test_cap_below_base_delay(self):
        with pytest.raises(ValidationError):
            Settings(recovery=RecoverySettings(base_delay_seconds=10, max_delay_seconds=5))

    def test_out_of_range_values(self):
        with pytest.raises(ValidationError):
            SyncSettings(max_queue_size=0)
