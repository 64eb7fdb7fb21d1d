"""Configuration management module for recordsync."""

from dotenv import load_dotenv

from .manager import (
    AppConfig,
    CircuitBreakerConfig,
    ConfigManager,
    NAMED_RETRY_POLICIES,
    ProcessingConfig,
    RetryPolicy,
    SessionConfig,
    SyncConfig,
    TargetConfig,
)
from .validator import ConfigIssue, validate_or_raise, validate_sync_config

load_dotenv()


def load_config(config_path: str | None = None) -> AppConfig:
    """Load the application configuration from YAML and the environment."""
    return ConfigManager(config_path).load_app_config()


__all__ = [
    "AppConfig",
    "CircuitBreakerConfig",
    "ConfigIssue",
    "ConfigManager",
    "NAMED_RETRY_POLICIES",
    "ProcessingConfig",
    "RetryPolicy",
    "SessionConfig",
    "SyncConfig",
    "TargetConfig",
    "load_config",
    "validate_or_raise",
    "validate_sync_config",
]
