"""Tests for TargetProcessor, record validation and transformation."""

import threading
import time
from unittest.mock import Mock

import pytest

from recordsync.config import TargetConfig
from recordsync.domain.errors import (
    DuplicateKeyError,
    NetworkError,
    RecordTimeoutError,
    RecordValidationError,
    TransformationError,
)
from recordsync.domain.models import Outcome, ProcessingResult, Record
from recordsync.target.processor import TargetProcessor
from recordsync.target.store import InMemoryTargetStore
from recordsync.target.transformer import RecordTransformer
from recordsync.target.validator import RecordValidator


def record(record_id="rec-1", **fields):
    return Record(id=record_id, fields={"email": f"{record_id}@example.com", **fields})


def processor_for(strategy="update", **options):
    store = InMemoryTargetStore(unique_field="email")
    config = TargetConfig(unique_field="email", duplicate_strategy=strategy, **options)
    return TargetProcessor(store, config), store


class TestProcessRecord:
    """Test single-record processing."""

    def test_creates_new_record(self):
        """Test a new record is created with its source id."""
        processor, store = processor_for()

        result = processor.process_record(record(name="Ada"))

        assert result.outcome is Outcome.CREATED
        assert result.data["source_id"] == "rec-1"
        assert len(store) == 1

    def test_update_strategy_is_idempotent(self):
        """Test the same record twice is created then existing."""
        processor, store = processor_for("update")

        first = processor.process_record(record(name="Ada"))
        second = processor.process_record(record(name="Ada"))

        assert (first.outcome, second.outcome) == (Outcome.CREATED, Outcome.EXISTING)
        assert len(store) == 1

    def test_update_strategy_applies_changes(self):
        """Test changed attributes update the existing record."""
        processor, store = processor_for("update")
        processor.process_record(record(name="Ada"))

        result = processor.process_record(record(name="Ada Lovelace"))

        assert result.outcome is Outcome.UPDATED
        assert store.find_by("email", "rec-1@example.com")["name"] == "Ada Lovelace"

    def test_skip_strategy_returns_existing(self):
        """Test skip leaves the existing record untouched."""
        processor, store = processor_for("skip")
        processor.process_record(record(name="Ada"))

        result = processor.process_record(record(name="Changed"))

        assert result.outcome is Outcome.EXISTING
        assert store.find_by("email", "rec-1@example.com")["name"] == "Ada"

    @pytest.mark.parametrize("strategy", ["error", "create"])
    def test_error_strategies_return_duplicate(self, strategy):
        """Test error and create strategies report the collision."""
        processor, _ = processor_for(strategy)
        processor.process_record(record())

        result = processor.process_record(record())

        assert result.is_error
        assert isinstance(result.error, DuplicateKeyError)
        assert result.error.field == "email"

    def test_update_failure_falls_back_to_existing(self):
        """Test a failing update is non-fatal."""
        processor, store = processor_for("update")
        processor.process_record(record(name="Ada"))
        store.update = Mock(side_effect=NetworkError("down"))

        result = processor.process_record(record(name="Changed"))

        assert result.outcome is Outcome.EXISTING
        assert result.data["name"] == "Ada"

    def test_non_duplicate_create_failure_is_error(self):
        """Test other create failures are returned, not raised."""
        processor, store = processor_for()
        store.create = Mock(side_effect=NetworkError("down"))

        result = processor.process_record(record())

        assert result.is_error
        assert isinstance(result.error, NetworkError)

    def test_validation_failure(self):
        """Test invalid records are rejected before the store is touched."""
        processor, store = processor_for(
            validation_rules=[{"type": "required_fields", "fields": ["name"]}]
        )

        result = processor.process_record(record())

        assert result.is_error
        assert isinstance(result.error, RecordValidationError)
        assert result.error.failures[0]["field"] == "name"
        assert len(store) == 0

    def test_validation_can_be_downgraded(self):
        """Test continue_on_validation_error still writes the record."""
        processor, _ = processor_for(
            validation_rules=[{"type": "required_fields", "fields": ["name"]}],
            continue_on_validation_error=True,
        )

        assert processor.process_record(record()).outcome is Outcome.CREATED

    def test_field_mapping(self):
        """Test explicit field mapping renames attributes."""
        processor, store = processor_for(field_mapping={"email": "email", "name": "full_name"})

        result = processor.process_record(record(name="Ada"))

        assert result.data == {"email": "rec-1@example.com", "full_name": "Ada", "id": 1}

    def test_transformation_failure(self):
        """Test a failing transformation abandons the record."""
        def explode(fields):
            raise KeyError("missing")

        processor, _ = processor_for(transformations=[explode])

        result = processor.process_record(record())

        assert isinstance(result.error, TransformationError)


class TestProcessBatch:
    """Test batch processing."""

    def test_every_record_yields_one_result(self):
        """Test results are returned in record order."""
        processor, _ = processor_for()
        records = [record(f"rec-{index}") for index in range(5)] + [record("rec-0")]

        results = processor.process_batch(records)

        assert [result.record_id for result in results] == [r.id for r in records]
        assert TargetProcessor.get_batch_stats(results) == {
            "total": 6,
            "created": 5,
            "updated": 0,
            "existing": 1,
            "errors": 0,
        }

    def test_parallel_preserves_order(self):
        """Test thread pool processing keeps record order."""
        processor, store = processor_for()
        records = [record(f"rec-{index}") for index in range(30)]

        results = processor.process_batch(records, parallel=True, max_concurrency=4)

        assert [result.record_id for result in results] == [r.id for r in records]
        assert all(result.outcome is Outcome.CREATED for result in results)
        assert len(store) == 30

    def test_parallel_record_timeout(self):
        """Test a stuck record times out without blocking the batch."""
        processor, _ = processor_for()
        release = threading.Event()

        def process(item):
            if item.id == "rec-3":
                release.wait(5)
            return ProcessingResult.created(item.id, {})

        records = [record(f"rec-{index}") for index in range(12)]
        started = time.monotonic()
        try:
            results = processor.process_batch(
                records, parallel=True, max_concurrency=4, timeout_s=0.2, process=process
            )
        finally:
            release.set()

        assert time.monotonic() - started < 3
        assert isinstance(results[3].error, RecordTimeoutError)
        assert sum(result.is_error for result in results) == 1

    def test_unexpected_exception_becomes_error_result(self):
        """Test a raising processor does not lose records."""
        processor, _ = processor_for()

        results = processor.process_batch(
            [record("a"), record("b")], process=Mock(side_effect=[RuntimeError("x"), ProcessingResult.created("b", {})])
        )

        assert results[0].is_error
        assert results[1].outcome is Outcome.CREATED

    def test_on_result_reports_progress(self):
        """Test the progress callback sees results in order."""
        processor, _ = processor_for()
        seen = []

        processor.process_batch(
            [record(f"rec-{index}") for index in range(3)],
            on_result=lambda results: seen.append(len(results)),
        )

        assert seen == [1, 2, 3]


class TestRecordValidator:
    """Test validation rules."""

    def test_rule_types(self):
        """Test each built-in rule type."""
        validator = RecordValidator(
            [
                {"type": "required_fields", "fields": ["name"]},
                {"type": "field_types", "fields": {"age": "integer"}},
                {"type": "field_formats", "fields": {"email": r"^[^@]+@[^@]+$"}},
                {"type": "field_lengths", "fields": {"code": {"min": 3}}},
                {"type": "field_ranges", "fields": {"score": {"max": 10}}},
                {"type": "allowed_values", "fields": {"status": ["active"]}},
            ]
        )

        failures = validator.validate(
            {"name": " ", "age": "12", "email": "nope", "code": "ab", "score": 11, "status": "gone"}
        )

        assert [failure["rule"] for failure in failures] == [
            "required_field",
            "field_type",
            "field_format",
            "field_length",
            "field_range",
            "allowed_values",
        ]

    def test_custom_rule_and_unknown_rule(self):
        """Test custom callables run and unknown rules are skipped."""
        validator = RecordValidator(
            [lambda fields: "no vip" if fields.get("vip") else None, {"type": "telepathy"}]
        )

        assert validator.validate({"vip": False}) == []
        with pytest.raises(RecordValidationError):
            validator.check({"vip": True})


class TestRecordTransformer:
    """Test transformations."""

    def test_builtin_transformations(self):
        """Test transformations apply in order."""
        transformer = RecordTransformer(
            [
                {"type": "trim_strings"},
                {"type": "normalize_booleans", "fields": ["active"]},
                {"type": "normalize_numbers", "fields": ["amount"]},
                {"type": "normalize_case", "fields": ["email"], "case": "lower"},
                {"type": "extract_nested", "fields": {"city": "address.city"}},
                {"type": "rename_fields", "fields": {"name": "full_name"}},
                {"type": "remove_empty_fields"},
            ]
        )

        result = transformer.transform(
            {
                "name": "  Ada ",
                "active": "yes",
                "amount": "42.5",
                "email": "ADA@Example.com",
                "address": {"city": "London"},
                "notes": "   ",
            }
        )

        assert result == {
            "full_name": "Ada",
            "active": True,
            "amount": 42.5,
            "email": "ada@example.com",
            "address": {"city": "London"},
            "city": "London",
        }

    def test_normalize_dates(self):
        """Test dates become ISO strings."""
        result = RecordTransformer([{"type": "normalize_dates", "fields": ["due"]}]).transform(
            {"due": "2024-03-01T10:00:00Z"}
        )
        assert result["due"].startswith("2024-03-01T10:00:00")
