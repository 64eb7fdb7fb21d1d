"""Error classification for retry and escalation decisions.

``ErrorClassifier.classify`` is a pure function of the error and its
context: identical input always yields an identical
``ErrorClassification``. It decides the category,
the severity, whether the error may be retried, and which backoff policy to
suggest to the retry engine.
"""

import hashlib
import sqlite3
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from recordsync.config.manager import RetryPolicy
from recordsync.domain.errors import (
    CircuitOpenError,
    DuplicateKeyError,
    PerformanceError,
    RecordTimeoutError,
    RetryExhaustedError,
    SyncError,
)

MAX_CONSECUTIVE_FAILURES = 5
LARGE_DUPLICATE_BATCH = 100
LARGE_PERFORMANCE_BATCH = 500
REPEATED_NETWORK_FAILURES = 3

NETWORK_RETRY = RetryPolicy(
    type="exponential",
    base_delay_ms=1000,
    max_delay_ms=30_000,
    multiplier=2.0,
    max_attempts=5,
    jitter=True,
)
PERFORMANCE_RETRY = RetryPolicy(
    type="linear",
    base_delay_ms=5000,
    max_delay_ms=60_000,
    increment_ms=5000,
    max_attempts=3,
    jitter=False,
)


class ErrorCategory(str, Enum):
    NETWORK = "network"
    DATA_INTEGRITY = "data_integrity"
    VALIDATION = "validation"
    PERFORMANCE = "performance"
    BUSINESS_RULE = "business_rule"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


RETRYABLE_CATEGORIES = (ErrorCategory.NETWORK, ErrorCategory.PERFORMANCE)

RECOVERY_ACTIONS = {
    ErrorCategory.NETWORK: ("retry_with_backoff", "check_connectivity"),
    ErrorCategory.PERFORMANCE: ("reduce_batch_size", "retry_with_backoff"),
    ErrorCategory.DATA_INTEGRITY: ("manual_review", "fix_source_data"),
    ErrorCategory.VALIDATION: ("fix_source_data", "review_validation_rules"),
    ErrorCategory.BUSINESS_RULE: ("apply_duplicate_strategy",),
    ErrorCategory.UNKNOWN: ("investigate",),
}

USER_MESSAGES = {
    ErrorCategory.NETWORK: "Could not reach a remote service while {operation}.",
    ErrorCategory.PERFORMANCE: "A remote service is overloaded or rate limiting {operation}.",
    ErrorCategory.DATA_INTEGRITY: "The target rejected data while {operation}; manual correction is needed.",
    ErrorCategory.VALIDATION: "A record failed validation while {operation}.",
    ErrorCategory.BUSINESS_RULE: "A business rule prevented {operation}.",
    ErrorCategory.UNKNOWN: "An unexpected error occurred while {operation}.",
}


@dataclass(frozen=True)
class ErrorClassification:
    category: ErrorCategory
    subcategory: str
    severity: Severity
    recoverable: bool
    retry_eligible: bool
    retry_strategy: Optional[RetryPolicy]
    fingerprint: str
    error_type: str
    operation: str
    resource_type: str
    message: str
    recovery_actions: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def requires_immediate_attention(self) -> bool:
        return self.severity is Severity.CRITICAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "subcategory": self.subcategory,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "retry_eligible": self.retry_eligible,
            "retry_strategy": self.retry_strategy.type if self.retry_strategy else None,
            "fingerprint": self.fingerprint,
            "error_type": self.error_type,
            "operation": self.operation,
            "resource_type": self.resource_type,
            "message": self.message,
            "requires_immediate_attention": self.requires_immediate_attention,
            "recovery_actions": list(self.recovery_actions),
        }


class ErrorClassifier:
    """Maps raw errors plus context to an ``ErrorClassification``."""

    def classify(
        self, error: BaseException, context: Optional[Dict[str, Any]] = None
    ) -> ErrorClassification:
        """Classify an error.

        Args:
            error: The raised exception
            context: ``operation``, ``resource_type``, ``batch_size`` and
                ``consecutive_failures``; all optional

        Returns:
            Classification of the error
        """
        context = context or {}
        if isinstance(error, RetryExhaustedError):
            error = error.last_error

        operation = str(context.get("operation", "unknown"))
        resource_type = str(context.get("resource_type", "unknown"))
        batch_size = int(context.get("batch_size") or 0)
        consecutive_failures = int(context.get("consecutive_failures") or 0)

        category, subcategory = self.categorize(error)
        severity = self._severity(category, subcategory, batch_size, consecutive_failures)
        retry_eligible = (
            category in RETRYABLE_CATEGORIES
            and consecutive_failures < MAX_CONSECUTIVE_FAILURES
        )
        error_type = type(error).__name__

        return ErrorClassification(
            category=category,
            subcategory=subcategory,
            severity=severity,
            recoverable=category not in (ErrorCategory.DATA_INTEGRITY, ErrorCategory.UNKNOWN),
            retry_eligible=retry_eligible,
            retry_strategy=self._retry_strategy(category) if retry_eligible else None,
            fingerprint=fingerprint(category, error_type, operation, resource_type),
            error_type=error_type,
            operation=operation,
            resource_type=resource_type,
            message=str(error) or error_type,
            recovery_actions=RECOVERY_ACTIONS[category],
        )

    def categorize(self, error: BaseException) -> Tuple[ErrorCategory, str]:
        """Return (category, subcategory) for an exception."""
        if isinstance(error, DuplicateKeyError):
            return ErrorCategory.BUSINESS_RULE, "duplicate_record"
        if isinstance(error, RecordTimeoutError):
            return ErrorCategory.PERFORMANCE, "timeout"
        if isinstance(error, CircuitOpenError):
            return ErrorCategory.PERFORMANCE, "circuit_open"
        if isinstance(error, PerformanceError):
            status = error.details.get("status_code")
            if status == 429:
                return ErrorCategory.PERFORMANCE, "rate_limited"
            if status == 503:
                return ErrorCategory.PERFORMANCE, "service_unavailable"
            return ErrorCategory.PERFORMANCE, "overload"
        if isinstance(error, SyncError):
            category = ErrorCategory(error.category)
            return category, _snake_case(type(error).__name__)

        if isinstance(error, requests.Timeout):
            return ErrorCategory.NETWORK, "timeout"
        if isinstance(error, requests.ConnectionError):
            return ErrorCategory.NETWORK, "connection_failed"
        if isinstance(error, requests.HTTPError):
            return self._categorize_http(error)
        if isinstance(error, sqlite3.IntegrityError):
            return ErrorCategory.DATA_INTEGRITY, "constraint_violation"
        if isinstance(error, sqlite3.OperationalError):
            return ErrorCategory.PERFORMANCE, "database_overload"
        if isinstance(error, TimeoutError):
            return ErrorCategory.NETWORK, "timeout"
        if isinstance(error, ConnectionError):
            return ErrorCategory.NETWORK, "connection_failed"
        if isinstance(error, (ValueError, TypeError, KeyError)):
            return ErrorCategory.VALIDATION, "invalid_data"
        return ErrorCategory.UNKNOWN, "unexpected"

    @staticmethod
    def _categorize_http(error: requests.HTTPError) -> Tuple[ErrorCategory, str]:
        status = error.response.status_code if error.response is not None else 0
        if status in (429, 503):
            return ErrorCategory.PERFORMANCE, "rate_limited" if status == 429 else "service_unavailable"
        if status >= 500:
            return ErrorCategory.NETWORK, "server_error"
        if status == 409:
            return ErrorCategory.BUSINESS_RULE, "duplicate_record"
        if status in (400, 422):
            return ErrorCategory.VALIDATION, "rejected_by_target"
        return ErrorCategory.UNKNOWN, f"http_{status}"

    @staticmethod
    def _severity(
        category: ErrorCategory,
        subcategory: str,
        batch_size: int,
        consecutive_failures: int,
    ) -> Severity:
        if category is ErrorCategory.DATA_INTEGRITY:
            return Severity.CRITICAL
        if subcategory == "duplicate_record" and batch_size > LARGE_DUPLICATE_BATCH:
            return Severity.CRITICAL
        if category is ErrorCategory.PERFORMANCE and batch_size > LARGE_PERFORMANCE_BATCH:
            return Severity.HIGH
        if category is ErrorCategory.NETWORK and consecutive_failures > REPEATED_NETWORK_FAILURES:
            return Severity.HIGH
        if category in (ErrorCategory.NETWORK, ErrorCategory.VALIDATION):
            return Severity.MEDIUM
        if category is ErrorCategory.BUSINESS_RULE:
            return Severity.LOW
        if category is ErrorCategory.PERFORMANCE:
            return Severity.MEDIUM
        return Severity.LOW

    @staticmethod
    def _retry_strategy(category: ErrorCategory) -> Optional[RetryPolicy]:
        if category is ErrorCategory.NETWORK:
            return NETWORK_RETRY
        if category is ErrorCategory.PERFORMANCE:
            return PERFORMANCE_RETRY
        return None

    def user_message(self, classification: ErrorClassification) -> Dict[str, Any]:
        """Structured, stack-trace free description for end users."""
        operation = classification.operation.replace("_", " ")
        return {
            "category": classification.category.value,
            "severity": classification.severity.value,
            "message": USER_MESSAGES[classification.category].format(operation=operation),
            "detail": classification.message,
            "recoverable": classification.recoverable,
            "retry_eligible": classification.retry_eligible,
            "suggested_actions": list(classification.recovery_actions),
        }

    def analyze_error_patterns(
        self, history: Iterable[ErrorClassification], high_frequency_share: float = 0.3
    ) -> Dict[str, Any]:
        """Summarize a set of classifications to spot recurring failures.

        A category is flagged as high frequency when it accounts for at least
        ``high_frequency_share`` of the errors and occurs three times or more.
        """
        history = list(history)
        total = len(history)
        by_category = Counter(item.category.value for item in history)
        by_operation = Counter(item.operation for item in history)
        by_fingerprint = Counter(item.fingerprint for item in history)

        high_frequency: List[str] = [
            category
            for category, count in by_category.items()
            if total and count >= 3 and count / total >= high_frequency_share
        ]
        recommendations = sorted(
            {
                action
                for item in history
                if item.category.value in high_frequency
                for action in item.recovery_actions
            }
        )

        return {
            "total_errors": total,
            "by_category": dict(by_category),
            "by_operation": dict(by_operation),
            "top_fingerprints": by_fingerprint.most_common(5),
            "critical": sum(1 for item in history if item.requires_immediate_attention),
            "high_frequency_categories": sorted(high_frequency),
            "recommendations": recommendations,
        }


def fingerprint(
    category: ErrorCategory, error_type: str, operation: str, resource_type: str
) -> str:
    """Stable 16-character hash used to deduplicate alerts."""
    raw = f"{category.value}:{error_type}:{operation}:{resource_type}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def _snake_case(name: str) -> str:
    name = name.removesuffix("Error") or name
    return "".join(f"_{char.lower()}" if char.isupper() else char for char in name).lstrip("_")
