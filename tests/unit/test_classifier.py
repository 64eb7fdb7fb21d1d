"""Tests for error classification."""

import sqlite3
from unittest.mock import Mock

import pytest
import requests

from recordsync.domain.errors import (
    DataIntegrityError,
    DuplicateKeyError,
    NetworkError,
    PerformanceError,
    RecordValidationError,
    RetryExhaustedError,
)
from recordsync.sync.classifier import (
    ErrorCategory,
    ErrorClassifier,
    Severity,
    fingerprint,
)


@pytest.fixture
def classifier():
    return ErrorClassifier()


def http_error(status):
    response = Mock(status_code=status)
    return requests.HTTPError(f"HTTP {status}", response=response)


class TestCategorize:
    """Test mapping of exceptions to categories."""

    @pytest.mark.parametrize(
        "error, category, subcategory",
        [
            (requests.ConnectionError("refused"), ErrorCategory.NETWORK, "connection_failed"),
            (requests.Timeout("slow"), ErrorCategory.NETWORK, "timeout"),
            (PerformanceError("throttled", status_code=429), ErrorCategory.PERFORMANCE, "rate_limited"),
            (DuplicateKeyError("email", "a@b.c"), ErrorCategory.BUSINESS_RULE, "duplicate_record"),
            (sqlite3.IntegrityError("UNIQUE"), ErrorCategory.DATA_INTEGRITY, "constraint_violation"),
            (ValueError("bad"), ErrorCategory.VALIDATION, "invalid_data"),
            (RuntimeError("boom"), ErrorCategory.UNKNOWN, "unexpected"),
        ],
    )
    def test_categories(self, classifier, error, category, subcategory):
        """Test known error types."""
        assert classifier.categorize(error) == (category, subcategory)

    def test_http_status_codes(self, classifier):
        """Test HTTP errors are categorized by status code."""
        assert classifier.categorize(http_error(503))[0] is ErrorCategory.PERFORMANCE
        assert classifier.categorize(http_error(502))[0] is ErrorCategory.NETWORK
        assert classifier.categorize(http_error(409)) == (ErrorCategory.BUSINESS_RULE, "duplicate_record")
        assert classifier.categorize(http_error(422))[0] is ErrorCategory.VALIDATION


class TestSeverity:
    """Test severity precedence."""

    def test_data_integrity_is_critical(self, classifier):
        """Test constraint violations need immediate attention."""
        result = classifier.classify(DataIntegrityError("constraint"))
        assert result.severity is Severity.CRITICAL
        assert result.requires_immediate_attention is True

    def test_duplicates_in_large_batches_are_critical(self, classifier):
        """Test batch size escalates duplicate severity."""
        error = DuplicateKeyError("email", "a@b.c")
        assert classifier.classify(error, {"batch_size": 101}).severity is Severity.CRITICAL
        assert classifier.classify(error, {"batch_size": 100}).severity is Severity.LOW

    def test_performance_in_large_batches_is_high(self, classifier):
        """Test large batches escalate performance errors."""
        error = PerformanceError("slow")
        assert classifier.classify(error, {"batch_size": 501}).severity is Severity.HIGH
        assert classifier.classify(error, {"batch_size": 10}).severity is Severity.MEDIUM

    def test_repeated_network_failures_are_high(self, classifier):
        """Test consecutive failures escalate network errors."""
        error = NetworkError("down")
        assert classifier.classify(error, {"consecutive_failures": 4}).severity is Severity.HIGH
        assert classifier.classify(error, {"consecutive_failures": 1}).severity is Severity.MEDIUM

    def test_validation_is_medium(self, classifier):
        """Test ordinary validation errors."""
        assert classifier.classify(RecordValidationError("missing")).severity is Severity.MEDIUM


class TestRetryEligibility:
    """Test retry eligibility and suggested policies."""

    def test_network_is_retryable(self, classifier):
        """Test network errors suggest exponential backoff."""
        result = classifier.classify(NetworkError("down"))
        assert result.retry_eligible is True
        assert result.retry_strategy.type == "exponential"

    def test_performance_suggests_linear_backoff(self, classifier):
        """Test performance errors suggest linear backoff."""
        assert classifier.classify(PerformanceError("slow")).retry_strategy.type == "linear"

    def test_non_retryable_categories(self, classifier):
        """Test record-level categories are never retried."""
        for error in (DataIntegrityError("x"), RecordValidationError("x"), DuplicateKeyError("f", 1)):
            result = classifier.classify(error)
            assert result.retry_eligible is False
            assert result.retry_strategy is None

    def test_retry_storm_guard(self, classifier):
        """Test five consecutive failures disable retry for any category."""
        result = classifier.classify(NetworkError("down"), {"consecutive_failures": 5})
        assert result.retry_eligible is False

    def test_exhausted_errors_are_unwrapped(self, classifier):
        """Test classification looks at the last underlying error."""
        error = RetryExhaustedError("op", 3, NetworkError("down"))
        result = classifier.classify(error)
        assert result.category is ErrorCategory.NETWORK
        assert result.error_type == "NetworkError"


class TestFingerprint:
    """Test alert deduplication fingerprints."""

    def test_fingerprint_is_stable(self, classifier):
        """Test identical input yields identical classification."""
        context = {"operation": "create", "resource_type": "contacts"}
        first = classifier.classify(NetworkError("a"), context)
        second = classifier.classify(NetworkError("b"), context)
        assert first.fingerprint == second.fingerprint
        assert len(first.fingerprint) == 16

    def test_fingerprint_depends_on_context(self):
        """Test operation and resource type change the fingerprint."""
        base = fingerprint(ErrorCategory.NETWORK, "NetworkError", "create", "contacts")
        assert base != fingerprint(ErrorCategory.NETWORK, "NetworkError", "update", "contacts")
        assert base != fingerprint(ErrorCategory.NETWORK, "NetworkError", "create", "deals")


class TestReporting:
    """Test user messages and pattern analysis."""

    def test_user_message_is_structured(self, classifier):
        """Test user messages carry flags but no traceback."""
        result = classifier.classify(NetworkError("down"), {"operation": "creating_records"})
        message = classifier.user_message(result)

        assert message["category"] == "network"
        assert "creating records" in message["message"]
        assert message["retry_eligible"] is True
        assert "retry_with_backoff" in message["suggested_actions"]

    def test_analyze_error_patterns(self, classifier):
        """Test high frequency categories are flagged."""
        history = [classifier.classify(NetworkError("down"), {"operation": "create"}) for _ in range(4)]
        history.append(classifier.classify(ValueError("bad"), {"operation": "create"}))

        analysis = classifier.analyze_error_patterns(history)

        assert analysis["total_errors"] == 5
        assert analysis["by_category"] == {"network": 4, "validation": 1}
        assert analysis["high_frequency_categories"] == ["network"]
        assert "check_connectivity" in analysis["recommendations"]
