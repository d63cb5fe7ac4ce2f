"""
Unit tests for settings loading and manager configuration.
"""

import logging

import pytest

from compute_orchestrator.config import Settings, get_settings
from compute_orchestrator.logging_config import configure_logging
from compute_orchestrator.managers.types import ManagerConfig


@pytest.fixture
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.mark.unit
class TestSettings:

    def test_defaults(self, monkeypatch, fresh_settings):
        monkeypatch.delenv("K8S_DEFAULT_TIMEOUT_SECONDS", raising=False)
        monkeypatch.delenv("COMPUTE_CLAIM_TIMEOUT_SECONDS", raising=False)

        settings = Settings(_env_file=None)

        assert settings.k8s_default_timeout_seconds == 30.0
        assert settings.compute_claim_timeout_seconds == 60.0
        assert settings.compute_cache_refresh_interval_seconds == 30.0
        assert settings.replica_update_max_attempts == 5

    def test_environment_overrides(self, monkeypatch, fresh_settings):
        monkeypatch.setenv("K8S_NAMESPACE", "sandboxes")
        monkeypatch.setenv("COMPUTE_CLAIM_TIMEOUT_SECONDS", "15")
        monkeypatch.setenv("INITIALIZE_DEFAULT_PRESETS", "true")

        settings = get_settings()

        assert settings.k8s_namespace == "sandboxes"
        assert settings.compute_claim_timeout_seconds == 15.0
        assert settings.initialize_default_presets is True

    def test_get_settings_is_cached(self, fresh_settings):
        assert get_settings() is get_settings()


@pytest.mark.unit
class TestManagerConfig:

    def test_from_settings(self):
        settings = Settings(
            _env_file=None,
            k8s_namespace="sandboxes",
            compute_claim_timeout_seconds=12,
            compute_claim_poll_interval_seconds=0.5,
            compute_cache_refresh_interval_seconds=0,
            replica_update_max_attempts=3,
        )
        custom_logger = logging.getLogger("custom")

        config = ManagerConfig.from_settings(settings, logger=custom_logger)

        assert config.namespace == "sandboxes"
        assert config.claim_timeout == 12
        assert config.claim_poll_interval == 0.5
        assert config.cache_refresh_interval == 0
        assert config.replica_update_max_attempts == 3
        assert config.logger is custom_logger


@pytest.mark.unit
class TestConfigureLogging:

    def test_quiets_client_loggers(self):
        configure_logging(Settings(_env_file=None, log_level="debug"))

        assert logging.getLogger("kubernetes").level == logging.WARNING
        assert logging.getLogger("urllib3").level == logging.WARNING
