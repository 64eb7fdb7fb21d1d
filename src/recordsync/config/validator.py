"""Validation of sync configurations before anything is initialized."""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from recordsync.config.manager import DUPLICATE_STRATEGIES, RETRY_TYPES, SyncConfig
from recordsync.domain.errors import ConfigValidationError
from recordsync.factories.registry import is_known_adapter, is_known_target

BATCH_SIZE_RANGE = (1, 1000)
LIMIT_RANGE = (1, 100_000)


@dataclass(frozen=True)
class ConfigIssue:
    field: str
    error: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "error": self.error,
            "message": self.message,
            "details": dict(self.details),
        }


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_range(
    issues: List[ConfigIssue], name: str, value: Any, low: int, high: int
) -> None:
    if not _is_int(value):
        issues.append(
            ConfigIssue(name, "invalid_type", f"{name} must be an integer", {"value": value})
        )
    elif not low <= value <= high:
        issues.append(
            ConfigIssue(
                name,
                "invalid_range",
                f"{name} must be between {low:,} and {high:,}",
                {"value": value, "min": low, "max": high},
            )
        )


def _check_minimum(issues: List[ConfigIssue], name: str, value: Any, minimum: float) -> None:
    if not _is_number(value) or value < minimum:
        issues.append(
            ConfigIssue(
                name,
                "invalid_value",
                f"{name} must be a number >= {minimum}",
                {"value": value, "min": minimum},
            )
        )


def validate_sync_config(config: SyncConfig) -> List[ConfigIssue]:
    """Check a sync configuration and return every problem found.

    Args:
        config: Configuration to check

    Returns:
        List of issues; empty when the configuration is valid
    """
    issues: List[ConfigIssue] = []

    if config.source_adapter is None:
        issues.append(
            ConfigIssue("source_adapter", "missing_required_field", "source_adapter is required")
        )
    elif not is_known_adapter(config.source_adapter):
        issues.append(
            ConfigIssue(
                "source_adapter",
                "module_not_found",
                f"Unknown source adapter: {config.source_adapter!r}",
                {"adapter": repr(config.source_adapter)},
            )
        )
    if not isinstance(config.source_config, dict):
        issues.append(
            ConfigIssue("source_config", "invalid_type", "source_config must be a mapping")
        )

    if config.target_resource is None:
        issues.append(
            ConfigIssue("target_resource", "missing_required_field", "target_resource is required")
        )
    elif not is_known_target(config.target_resource):
        issues.append(
            ConfigIssue(
                "target_resource",
                "module_not_found",
                f"Unknown target resource: {config.target_resource!r}",
                {"resource": repr(config.target_resource)},
            )
        )

    issues.extend(_validate_target(config))
    issues.extend(_validate_processing(config))
    issues.extend(_validate_retry(config))
    issues.extend(_validate_circuit_breaker(config))

    if not config.session_config.sync_type:
        issues.append(
            ConfigIssue(
                "session_config.sync_type",
                "missing_required_field",
                "sync_type is required",
            )
        )

    return issues


def validate_or_raise(config: SyncConfig) -> None:
    issues = validate_sync_config(config)
    if issues:
        raise ConfigValidationError(issues)


def _validate_target(config: SyncConfig) -> List[ConfigIssue]:
    target = config.target_config
    issues: List[ConfigIssue] = []

    if not target.unique_field:
        issues.append(
            ConfigIssue(
                "target_config.unique_field",
                "missing_required_field",
                "unique_field is required for duplicate detection",
            )
        )
    if target.duplicate_strategy not in DUPLICATE_STRATEGIES:
        issues.append(
            ConfigIssue(
                "target_config.duplicate_strategy",
                "invalid_value",
                f"duplicate_strategy must be one of {', '.join(DUPLICATE_STRATEGIES)}",
                {"value": target.duplicate_strategy},
            )
        )
    if target.field_mapping is not None and not isinstance(target.field_mapping, dict):
        issues.append(
            ConfigIssue(
                "target_config.field_mapping", "invalid_type", "field_mapping must be a mapping"
            )
        )
    for name in ("transformations", "validation_rules"):
        if not isinstance(getattr(target, name), (list, tuple)):
            issues.append(
                ConfigIssue(f"target_config.{name}", "invalid_type", f"{name} must be a list")
            )
    for name in ("create_action", "update_action"):
        if not isinstance(getattr(target, name), str) or not getattr(target, name):
            issues.append(
                ConfigIssue(
                    f"target_config.{name}", "missing_required_field", f"{name} is required"
                )
            )
    return issues


def _validate_processing(config: SyncConfig) -> List[ConfigIssue]:
    processing = config.processing_config
    issues: List[ConfigIssue] = []

    _check_range(issues, "processing_config.batch_size", processing.batch_size, *BATCH_SIZE_RANGE)
    _check_range(issues, "processing_config.limit", processing.limit, *LIMIT_RANGE)
    _check_minimum(issues, "processing_config.max_concurrency", processing.max_concurrency, 1)
    _check_minimum(issues, "processing_config.record_timeout_s", processing.record_timeout_s, 0.001)
    _check_minimum(issues, "processing_config.progress_interval", processing.progress_interval, 1)
    for name in ("filters", "transformations"):
        if not isinstance(getattr(processing, name), (list, tuple)):
            issues.append(
                ConfigIssue(f"processing_config.{name}", "invalid_type", f"{name} must be a list")
            )
    return issues


def _validate_retry(config: SyncConfig) -> List[ConfigIssue]:
    policy = config.retry_policy
    issues: List[ConfigIssue] = []

    if policy.type not in RETRY_TYPES:
        issues.append(
            ConfigIssue(
                "retry_policy.type",
                "invalid_value",
                f"retry_policy.type must be one of {', '.join(RETRY_TYPES)}",
                {"value": policy.type},
            )
        )
    if not _is_int(policy.max_attempts) or policy.max_attempts < 1:
        issues.append(
            ConfigIssue(
                "retry_policy.max_attempts",
                "invalid_value",
                "max_attempts must be a positive integer",
                {"value": policy.max_attempts},
            )
        )
    _check_minimum(issues, "retry_policy.base_delay_ms", policy.base_delay_ms, 0)
    _check_minimum(issues, "retry_policy.max_delay_ms", policy.max_delay_ms, 0)
    _check_minimum(issues, "retry_policy.increment_ms", policy.increment_ms, 0)
    if policy.type == "exponential":
        _check_minimum(issues, "retry_policy.multiplier", policy.multiplier, 1)
    return issues


def _validate_circuit_breaker(config: SyncConfig) -> List[ConfigIssue]:
    breaker = config.circuit_breaker
    issues: List[ConfigIssue] = []

    _check_minimum(issues, "circuit_breaker.failure_threshold", breaker.failure_threshold, 1)
    _check_minimum(issues, "circuit_breaker.cooldown_ms", breaker.cooldown_ms, 0)
    threshold = breaker.batch_success_threshold
    if not _is_number(threshold) or not 0 <= threshold <= 1:
        issues.append(
            ConfigIssue(
                "circuit_breaker.batch_success_threshold",
                "invalid_range",
                "batch_success_threshold must be between 0 and 1",
                {"value": threshold},
            )
        )
    return issues
