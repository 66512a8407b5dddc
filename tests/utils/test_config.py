"""
Tests for centralized configuration system.
Verifies environment variable loading and default values.
"""
from crm_sync.config import Settings, get_settings


class TestConfigurationSystem:
    """Test suite for configuration management."""

    def test_default_values(self):
        """Verify all configuration fields have sensible defaults."""
        settings = Settings(_env_file=None)

        # Queue defaults
        assert settings.default_max_attempts == 3
        assert settings.retry_base_delay_seconds == 60
        assert settings.retry_max_delay_seconds == 3600
        assert settings.processing_lease_seconds == 300

        # Security
        assert settings.verify_webhook_signature is False
        assert settings.trust_scheduler_header is False

        # Logging
        assert settings.log_level == "INFO"
        assert settings.enable_structured_logging is False

    def test_environment_variables_override(self, monkeypatch):
        """Environment variables take precedence over defaults."""
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        monkeypatch.setenv("CRON_SECRET", "from-env")
        monkeypatch.setenv("DEFAULT_MAX_ATTEMPTS", "5")

        settings = Settings(_env_file=None)

        assert settings.storage_backend == "memory"
        assert settings.cron_secret == "from-env"
        assert settings.default_max_attempts == 5

    def test_batch_sizes_per_queue(self):
        settings = Settings(_env_file=None)

        assert settings.batch_size_for("critical") == 10
        assert settings.batch_size_for("general") == 100
        assert settings.batch_size_for("unknown") == settings.default_batch_size

    def test_sla_targets_per_queue(self):
        settings = Settings(_env_file=None)

        assert settings.sla_target_for("messages") == 2_000
        assert settings.sla_target_for("unknown") == settings.default_sla_target_ms

    def test_singleton_pattern(self):
        """get_settings() returns the same instance."""
        assert get_settings() is get_settings()
