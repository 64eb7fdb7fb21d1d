"""Tests for YAML configuration loading."""

import pytest

from recordsync.config import ConfigManager, RetryPolicy, load_config

CONFIG_YAML = """
log_level: DEBUG
web_port: 9000
sync:
  source_adapter: memory
  source_config:
    record_count: 5
  target_resource: memory
  target_config:
    unique_field: id
    duplicate_strategy: skip
  processing_config:
    batch_size: 50
  retry_policy: conservative
  circuit_breaker:
    enabled: true
  session_config:
    sync_type: contacts
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML, encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in (*ConfigManager.ENV_OVERRIDES, *ConfigManager.APP_ENV_OVERRIDES, "SYNC_CONFIG"):
        monkeypatch.delenv(key, raising=False)


class TestConfigManager:
    """Test ConfigManager functionality."""

    def test_loads_yaml(self, config_file):
        """Test sections are parsed into config objects."""
        app_config = load_config(str(config_file))

        assert app_config.log_level == "DEBUG"
        assert app_config.web_port == 9000
        sync = app_config.sync
        assert sync.target_config.duplicate_strategy == "skip"
        assert sync.processing_config.batch_size == 50
        assert sync.processing_config.limit == 1000
        assert sync.retry_policy == RetryPolicy.named("conservative")
        assert sync.circuit_breaker.enabled is True

    def test_environment_overrides(self, config_file, monkeypatch):
        """Test environment variables win over the file."""
        monkeypatch.setenv("SYNC_BATCH_SIZE", "25")
        monkeypatch.setenv("SYNC_PARALLEL", "yes")
        monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("WEB_PORT", "8181")

        app_config = ConfigManager(str(config_file)).load_app_config()

        assert app_config.sync.processing_config.batch_size == 25
        assert app_config.sync.processing_config.parallel is True
        assert app_config.sync.retry_policy.max_attempts == 7
        assert app_config.sync.retry_policy.type == "linear"
        assert app_config.web_port == 8181

    def test_invalid_override_is_ignored(self, config_file, monkeypatch):
        """Test unparsable overrides keep the file value."""
        monkeypatch.setenv("SYNC_BATCH_SIZE", "lots")

        sync = ConfigManager(str(config_file)).load_sync_config()

        assert sync.processing_config.batch_size == 50

    def test_missing_file_gives_defaults(self, tmp_path):
        """Test an absent file yields an empty configuration."""
        app_config = ConfigManager(str(tmp_path / "absent.yaml")).load_app_config()

        assert app_config.sync.source_adapter is None
        assert app_config.schedule == "0 * * * *"

    def test_non_mapping_document_is_rejected(self, tmp_path):
        """Test a YAML list at top level is an error."""
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")

        with pytest.raises(ValueError):
            ConfigManager(str(path)).load_raw()
