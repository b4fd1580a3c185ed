"""
Tests for environment-driven settings and logging helpers.
"""

import logging

from dataplane.config import configure_logging, sanitize_for_logging, settings
from dataplane.config.settings import (
    AppSettings,
    ConnectorSettings,
    PipelineSettings,
    QualitySettings,
    SyncSettings,
    get_env_bool,
    get_env_float,
    get_env_int,
)


class TestEnvironmentHelpers:
    """Typed environment lookups."""

    def test_int_override(self, monkeypatch):
        """Test integers are read from the environment."""
        monkeypatch.setenv("DATAPLANE_TEST_INT", "42")
        assert get_env_int("DATAPLANE_TEST_INT", 7) == 42

    def test_bad_int_falls_back(self, monkeypatch):
        """Test an unparseable value yields the default."""
        monkeypatch.setenv("DATAPLANE_TEST_INT", "forty-two")
        assert get_env_int("DATAPLANE_TEST_INT", 7) == 7

    def test_float(self, monkeypatch):
        """Test floats parse and fall back."""
        monkeypatch.setenv("DATAPLANE_TEST_FLOAT", "0.5")
        assert get_env_float("DATAPLANE_TEST_FLOAT", 1.0) == 0.5
        monkeypatch.setenv("DATAPLANE_TEST_FLOAT", "half")
        assert get_env_float("DATAPLANE_TEST_FLOAT", 1.0) == 1.0

    def test_bool(self, monkeypatch):
        """Test the accepted truthy spellings."""
        for value in ("true", "1", "YES", "on"):
            monkeypatch.setenv("DATAPLANE_TEST_BOOL", value)
            assert get_env_bool("DATAPLANE_TEST_BOOL") is True
        monkeypatch.setenv("DATAPLANE_TEST_BOOL", "off")
        assert get_env_bool("DATAPLANE_TEST_BOOL", True) is False
        monkeypatch.delenv("DATAPLANE_TEST_BOOL")
        assert get_env_bool("DATAPLANE_TEST_BOOL", True) is True


class TestSettingsSections:
    """Defaults and overrides of each settings section."""

    def test_sync_defaults(self, monkeypatch):
        """Test sync defaults when nothing is set."""
        for name in ("SYNC_BATCH_SIZE", "SYNC_MAX_BATCHES_PER_RUN", "SYNC_RETENTION_DAYS"):
            monkeypatch.delenv(name, raising=False)
        sync = SyncSettings()
        assert sync.batch_size == 1000
        assert sync.max_batches_per_run == 100
        assert sync.retention_days == 30

    def test_sync_override(self, monkeypatch):
        """Test sections read the environment at construction time."""
        monkeypatch.setenv("SYNC_BATCH_SIZE", "250")
        monkeypatch.setenv("SYNC_MAX_CONCURRENCY", "not-a-number")
        sync = SyncSettings()
        assert sync.batch_size == 250
        assert sync.max_concurrency == 4

    def test_quality_and_pipeline(self, monkeypatch):
        """Test quality thresholds and pipeline retry settings."""
        monkeypatch.setenv("QUALITY_COMPLETENESS_THRESHOLD", "0.8")
        monkeypatch.setenv("PIPELINE_MAX_STEP_RETRIES", "5")
        assert QualitySettings().completeness_threshold == 0.8
        assert PipelineSettings().max_step_retries == 5

    def test_connector_and_app(self, monkeypatch):
        """Test Salesforce API settings and optional webhook URL."""
        monkeypatch.setenv("SALESFORCE_API_VERSION", "v60.0")
        monkeypatch.setenv("NOTIFICATION_WEBHOOK_URL", "")
        assert ConnectorSettings().salesforce_api_version == "v60.0"
        assert AppSettings().notification_webhook_url is None

    def test_global_instance(self):
        """Test the global instance exposes every section."""
        assert settings.sync.batch_size > 0
        assert settings.connectors.salesforce_login_url.startswith("https://")
        assert settings.pipeline.step_timeout > 0


class TestLoggingHelpers:
    """Credential masking and logging setup."""

    def test_masks_secrets(self):
        """Test secret-looking keys are masked and others kept."""
        sanitized = sanitize_for_logging({
            "host": "db.internal",
            "username": "etl",
            "password": "hunter2",
            "access_token": "abc",
            "client_secret": "xyz",
            "private-key": "-----BEGIN",
            "port": 5432,
        })
        assert sanitized == {
            "host": "db.internal",
            "username": "etl",
            "password": "***",
            "access_token": "***",
            "client_secret": "***",
            "private-key": "***",
            "port": 5432,
        }

    def test_masks_nested_and_skips_none(self):
        """Test nested mappings are masked and None is left alone."""
        sanitized = sanitize_for_logging({"auth": {"ApiToken": "t", "user": "u"}, "password": None})
        assert sanitized == {"auth": {"ApiToken": "***", "user": "u"}, "password": None}

    def test_does_not_mutate(self):
        """Test the input mapping is untouched."""
        credentials = {"password": "hunter2"}
        sanitize_for_logging(credentials)
        assert credentials == {"password": "hunter2"}

    def test_configure_logging_quiets_sqlalchemy(self, monkeypatch):
        """Test engine logging is raised to WARNING unless echo is on."""
        monkeypatch.setattr(settings.app, "state_database_echo", False)
        engine_logger = logging.getLogger("sqlalchemy.engine")
        previous = engine_logger.level
        engine_logger.setLevel(logging.DEBUG)
        try:
            configure_logging("debug")
            assert engine_logger.level == logging.WARNING
        finally:
            engine_logger.setLevel(previous)
