"""Configuration objects and loader backed by YAML files and environment variables."""

import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

RETRY_TYPES = ("fixed", "linear", "exponential")
DUPLICATE_STRATEGIES = ("create", "update", "skip", "error")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff policy for retrying a unit of work."""

    type: str = "exponential"
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    multiplier: float = 2.0
    increment_ms: int = 1000
    max_attempts: int = 3
    jitter: bool = True

    def delay_ms(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt, without jitter."""
        if self.type == "exponential":
            delay = self.base_delay_ms * (self.multiplier ** (attempt - 1))
        elif self.type == "linear":
            delay = self.base_delay_ms + self.increment_ms * (attempt - 1)
        else:
            return float(self.base_delay_ms)
        return float(min(delay, self.max_delay_ms))

    @classmethod
    def named(cls, name: str) -> "RetryPolicy":
        """Return one of the predefined policies: aggressive, conservative or fast."""
        try:
            return NAMED_RETRY_POLICIES[name]
        except KeyError:
            raise ValueError(f"Unknown retry policy: {name}") from None

    @classmethod
    def from_dict(cls, data: Any) -> "RetryPolicy":
        if isinstance(data, cls):
            return data
        if isinstance(data, str):
            return cls.named(data)
        return cls(**_known_fields(cls, data or {}))


NAMED_RETRY_POLICIES = {
    "aggressive": RetryPolicy(
        type="exponential",
        base_delay_ms=500,
        max_delay_ms=60_000,
        multiplier=2.5,
        max_attempts=10,
        jitter=True,
    ),
    "conservative": RetryPolicy(
        type="linear",
        base_delay_ms=5000,
        max_delay_ms=30_000,
        increment_ms=5000,
        max_attempts=3,
        jitter=False,
    ),
    "fast": RetryPolicy(type="fixed", base_delay_ms=1000, max_attempts=5, jitter=True),
}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    enabled: bool = False
    failure_threshold: int = 5
    cooldown_ms: int = 60_000
    batch_success_threshold: float = 0.5


@dataclass(frozen=True)
class TargetConfig:
    """How records are applied to the target store."""

    unique_field: Optional[str] = None
    create_action: str = "create"
    update_action: str = "update"
    field_mapping: Optional[Dict[str, str]] = None
    transformations: List[Any] = field(default_factory=list)
    validation_rules: List[Any] = field(default_factory=list)
    duplicate_strategy: str = "update"
    continue_on_validation_error: bool = False


@dataclass(frozen=True)
class ProcessingConfig:
    batch_size: int = 100
    limit: int = 1000
    enable_error_recovery: bool = True
    continue_on_batch_error: bool = True
    filters: List[Any] = field(default_factory=list)
    transformations: List[Any] = field(default_factory=list)
    parallel: bool = False
    max_concurrency: int = 4
    record_timeout_s: float = 30.0
    progress_interval: int = 10


@dataclass(frozen=True)
class SessionConfig:
    sync_type: str = "generic"
    initiated_by: Optional[str] = None


@dataclass(frozen=True)
class SyncConfig:
    """Immutable description of one sync run."""

    source_adapter: Any = None
    source_config: Dict[str, Any] = field(default_factory=dict)
    target_resource: Any = None
    target_options: Dict[str, Any] = field(default_factory=dict)
    target_config: TargetConfig = field(default_factory=TargetConfig)
    processing_config: ProcessingConfig = field(default_factory=ProcessingConfig)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    session_config: SessionConfig = field(default_factory=SessionConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConfig":
        """Build a config from plain mappings, e.g. a parsed YAML document."""
        data = data or {}
        return cls(
            source_adapter=data.get("source_adapter"),
            source_config=dict(data.get("source_config") or {}),
            target_resource=data.get("target_resource"),
            target_options=dict(data.get("target_options") or {}),
            target_config=_section(TargetConfig, data.get("target_config")),
            processing_config=_section(ProcessingConfig, data.get("processing_config")),
            retry_policy=RetryPolicy.from_dict(data.get("retry_policy")),
            circuit_breaker=_section(CircuitBreakerConfig, data.get("circuit_breaker")),
            session_config=_section(SessionConfig, data.get("session_config")),
        )

    def with_processing(self, **changes: Any) -> "SyncConfig":
        """Return a copy with processing options overridden."""
        return replace(self, processing_config=replace(self.processing_config, **changes))


@dataclass
class AppConfig:
    sync: SyncConfig
    log_level: str = "INFO"
    log_dir: str = "./logs"
    data_dir: str = "./data"
    metrics_dir: str = "./metrics"
    schedule: str = "0 * * * *"
    web_port: int = 8080


def _known_fields(cls: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    unknown = set(data) - names
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return {key: value for key, value in data.items() if key in names}


def _section(cls: Any, data: Any) -> Any:
    if isinstance(data, cls):
        return data
    return cls(**_known_fields(cls, data or {}))


def _to_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes", "on")


class ConfigManager:
    """Loads the application configuration from a YAML file with environment overrides."""

    ENV_OVERRIDES = {
        "SYNC_BATCH_SIZE": ("processing_config", "batch_size", int),
        "SYNC_LIMIT": ("processing_config", "limit", int),
        "SYNC_CONTINUE_ON_BATCH_ERROR": (
            "processing_config",
            "continue_on_batch_error",
            _to_bool,
        ),
        "SYNC_PARALLEL": ("processing_config", "parallel", _to_bool),
        "RETRY_MAX_ATTEMPTS": ("retry_policy", "max_attempts", int),
    }

    APP_ENV_OVERRIDES = {
        "LOG_LEVEL": ("log_level", str),
        "LOG_DIR": ("log_dir", str),
        "DATA_DIR": ("data_dir", str),
        "METRICS_DIR": ("metrics_dir", str),
        "SYNC_SCHEDULE": ("schedule", str),
        "WEB_PORT": ("web_port", int),
    }

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to the YAML configuration file
        """
        self.config_path = Path(config_path or os.getenv("SYNC_CONFIG", "config.yaml"))

    def load_raw(self) -> Dict[str, Any]:
        """Read the YAML document, returning an empty mapping if the file is absent."""
        if not self.config_path.exists():
            logger.warning(f"Configuration file not found: {self.config_path}")
            return {}
        with open(self.config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.config_path} must contain a mapping at top level")
        return data

    def load_app_config(self) -> AppConfig:
        """Load the complete application configuration."""
        raw = self.load_raw()
        sync_data = dict(raw.get("sync") or {})
        self._apply_sync_overrides(sync_data)

        app_values: Dict[str, Any] = {
            key: raw[key]
            for key in ("log_level", "log_dir", "data_dir", "metrics_dir", "schedule", "web_port")
            if key in raw
        }
        for env_key, (name, convert) in self.APP_ENV_OVERRIDES.items():
            env_value = os.getenv(env_key)
            if env_value is not None:
                app_values[name] = convert(env_value)

        return AppConfig(sync=SyncConfig.from_dict(sync_data), **app_values)

    def load_sync_config(self) -> SyncConfig:
        return self.load_app_config().sync

    def _apply_sync_overrides(self, sync_data: Dict[str, Any]) -> None:
        for env_key, (section, name, convert) in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_key)
            if env_value is None:
                continue
            try:
                value = convert(env_value)
            except ValueError:
                logger.warning(f"Ignoring invalid value for {env_key}: {env_value!r}")
                continue
            current = sync_data.get(section)
            if isinstance(current, str):
                # Named retry policy: expand before overriding a single field.
                current = asdict(RetryPolicy.named(current))
            section_data = dict(current or {})
            section_data[name] = value
            sync_data[section] = section_data
