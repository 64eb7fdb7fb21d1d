"""Tests for SyncOrchestrator end-to-end behaviour."""

from unittest.mock import patch

import pytest

from recordsync.config import CircuitBreakerConfig, RetryPolicy
from recordsync.domain.errors import (
    ConfigValidationError,
    NetworkError,
    SyncInitializationError,
)
from recordsync.domain.models import ResultStatus, SessionStatus
from recordsync.sync import events
from recordsync.sync.retry import BreakerStatus
from recordsync.target.store import InMemoryTargetStore

REQUIRE_NAME = [{"type": "required_fields", "fields": ["name"]}]


class FlakyStore(InMemoryTargetStore):
    """Fails the first ``failures`` create calls with a network error."""

    def __init__(self, unique_field=None, failures=1):
        super().__init__(unique_field)
        self.failures = failures
        self.create_calls = 0

    def create(self, attrs, action="create"):
        self.create_calls += 1
        if self.create_calls <= self.failures:
            raise NetworkError("connection reset")
        return super().create(attrs, action)


class TestExecuteSync:
    """Test complete sync runs."""

    def test_end_to_end_with_invalid_records(
        self, orchestrator, target_store, config_factory, records_factory
    ):
        """Test 250 records in batches of 100 with 5 invalid records still succeeds."""
        records = records_factory(250)
        for index in (9, 59, 109, 159, 209):
            records[index]["name"] = None
        config = config_factory(
            records,
            target_store,
            batch_size=100,
            limit=1000,
            continue_on_batch_error=True,
            validation_rules=REQUIRE_NAME,
        )

        result = orchestrator.execute_sync(config)

        assert result.status is ResultStatus.SUCCESS
        assert result.stats.total_processed == 250
        assert result.stats.errors == 5
        assert result.stats.created == 245
        assert len(target_store) == 245

        status = orchestrator.get_sync_status(result.session_id)
        assert status["status"] == "completed"
        assert status["batch_count"] == 3
        assert [batch["batch_size"] for batch in status["batches"]] == [100, 100, 50]
        assert status["processed"] == 250

        assert len(result.error_details) == 5
        first = result.error_details[0]
        assert first["record_id"] == "rec-10"
        assert first["category"] == "validation"
        assert first["retry_eligible"] is False

    def test_duplicate_runs_are_idempotent(
        self, orchestrator, target_store, config_factory, records_factory
    ):
        """Test a second run over unchanged data yields only existing records."""
        config = config_factory(records_factory(40), target_store, batch_size=15)

        first = orchestrator.execute_sync(config)
        second = orchestrator.execute_sync(config)

        assert (first.stats.created, first.stats.updated, first.stats.existing) == (40, 0, 0)
        assert (second.stats.created, second.stats.updated, second.stats.existing) == (0, 0, 40)
        assert len(target_store) == 40

    def test_changed_records_are_updated(
        self, orchestrator, target_store, config_factory, records_factory
    ):
        """Test changed source data updates existing records."""
        records = records_factory(5)
        orchestrator.execute_sync(config_factory(records, target_store))

        records[0]["name"] = "Renamed"
        result = orchestrator.execute_sync(config_factory(records, target_store))

        assert (result.stats.updated, result.stats.existing) == (1, 4)
        assert target_store.find_by("source_id", "rec-1")["name"] == "Renamed"

    def test_processed_always_equals_outcome_sum(
        self, orchestrator, target_store, config_factory, records_factory
    ):
        """Test session and batch counters add up."""
        records = records_factory(30)
        records[3]["name"] = ""
        config = config_factory(records, target_store, batch_size=7, validation_rules=REQUIRE_NAME)

        result = orchestrator.execute_sync(config)
        status = orchestrator.get_sync_status(result.session_id)

        for entry in [status, *status["batches"]]:
            total = entry["created"] + entry["updated"] + entry["existing"] + entry["errors"]
            assert entry.get("processed", entry.get("total_processed")) == total

    def test_limit_caps_processed_records(
        self, orchestrator, target_store, config_factory, records_factory
    ):
        """Test the record limit stops the stream."""
        config = config_factory(records_factory(50), target_store, batch_size=10, limit=25)

        result = orchestrator.execute_sync(config)

        assert result.stats.total_processed == 25
        session = orchestrator.tracker.get_session(result.session_id)
        assert session.batch_count == 3
        assert session.estimated_total == 25

    def test_filters_and_transforms_apply_before_batching(
        self, orchestrator, target_store, config_factory, records_factory
    ):
        """Test processing filters and transformations."""
        config = config_factory(
            records_factory(10),
            target_store,
            filters=[lambda record: record.get("name") != "Record 3"],
            transformations=[{"type": "map_field", "field": "name", "function": str.upper}],
        )

        result = orchestrator.execute_sync(config)

        assert result.stats.created == 9
        assert target_store.find_by("source_id", "rec-3") is None
        assert target_store.find_by("source_id", "rec-1")["name"] == "RECORD 1"

    def test_dry_run_does_not_touch_target(
        self, orchestrator, event_sink, target_store, config_factory, records_factory
    ):
        """Test dry run validates only."""
        config = config_factory(records_factory(10), target_store)

        result = orchestrator.execute_sync(config, dry_run=True)

        assert result.status is ResultStatus.DRY_RUN
        assert result.session_id is None
        assert result.stats.total_processed == 0
        assert len(target_store) == 0
        assert event_sink.events() == []

    def test_invalid_config_fails_fast(self, orchestrator, event_sink, target_store, config_factory):
        """Test configuration errors are raised before anything runs."""
        config = config_factory([], target_store, batch_size=0)

        with pytest.raises(ConfigValidationError) as exc_info:
            orchestrator.execute_sync(config)

        assert exc_info.value.issues[0].field == "processing_config.batch_size"
        assert exc_info.value.issues[0].error == "invalid_range"
        assert event_sink.events() == []

    def test_adapter_initialization_failure(self, orchestrator, target_store, config_factory):
        """Test adapter setup errors are wrapped."""
        config = config_factory(None, target_store)

        with pytest.raises(SyncInitializationError) as exc_info:
            orchestrator.execute_sync(config)

        assert exc_info.value.stage == "source adapter"
        assert orchestrator.tracker.list_sessions() == []

    def test_transient_errors_are_retried(
        self, orchestrator, event_sink, sleeps, config_factory, records_factory
    ):
        """Test a network failure is retried and the record still created."""
        store = FlakyStore(unique_field="source_id", failures=1)
        config = config_factory(records_factory(3), store)

        result = orchestrator.execute_sync(config)

        assert result.status is ResultStatus.SUCCESS
        assert result.stats.created == 3
        assert sleeps == [0.01]
        assert len(event_sink.events(events.RETRY_SCHEDULED)) == 1
        assert len(event_sink.events(events.RETRY_SUCCEEDED)) == 1

    def test_retries_disabled_without_error_recovery(
        self, orchestrator, sleeps, config_factory, records_factory
    ):
        """Test enable_error_recovery=False makes a single attempt."""
        store = FlakyStore(unique_field="source_id", failures=1)
        config = config_factory(records_factory(3), store, enable_error_recovery=False)

        result = orchestrator.execute_sync(config)

        assert result.stats.errors == 1
        assert result.stats.created == 2
        assert sleeps == []


class TestBatchFailures:
    """Test batch-level error handling."""

    def test_stream_failure_with_continue(
        self, orchestrator, target_store, config_factory, records_factory
    ):
        """Test a broken stream fails its batch and the run ends partial."""
        config = config_factory(
            records_factory(250),
            target_store,
            source_options={"fail_after": 150},
            batch_size=100,
            continue_on_batch_error=True,
        )

        result = orchestrator.execute_sync(config)

        assert result.status is ResultStatus.PARTIAL
        assert result.stats.created == 150
        status = orchestrator.get_sync_status(result.session_id)
        assert status["status"] == "completed"
        assert [batch["status"] for batch in status["batches"]] == ["completed", "failed"]
        assert result.error_details[-1]["batch_number"] == 2
        assert result.error_details[-1]["category"] == "network"

    def test_stream_failure_without_continue(
        self, orchestrator, target_store, config_factory, records_factory
    ):
        """Test a broken stream fails the session when batches must not fail."""
        config = config_factory(
            records_factory(250),
            target_store,
            source_options={"fail_after": 100},
            batch_size=100,
            continue_on_batch_error=False,
        )

        result = orchestrator.execute_sync(config)

        assert result.status is ResultStatus.FAILURE
        session = orchestrator.tracker.get_session(result.session_id)
        assert session.status is SessionStatus.FAILED
        assert session.batch_count == 2
        assert session.error_summary["batch_number"] == 2

    def test_record_errors_halt_without_continue(
        self, orchestrator, target_store, config_factory, records_factory
    ):
        """Test record errors escalate to batch failure and stop the session."""
        records = records_factory(30)
        records[2]["name"] = None
        config = config_factory(
            records,
            target_store,
            batch_size=10,
            continue_on_batch_error=False,
            validation_rules=REQUIRE_NAME,
        )

        result = orchestrator.execute_sync(config)

        assert result.status is ResultStatus.FAILURE
        assert result.stats.total_processed == 10
        assert orchestrator.tracker.get_session(result.session_id).status is SessionStatus.FAILED

    def test_unexpected_error_never_leaves_session_running(
        self, orchestrator, target_store, config_factory, records_factory
    ):
        """Test a crash inside the run still finalizes the session."""
        config = config_factory(records_factory(5), target_store)

        with patch.object(
            orchestrator.tracker, "complete_batch", side_effect=RuntimeError("disk full")
        ):
            result = orchestrator.execute_sync(config)

        assert result.status is ResultStatus.FAILURE
        session = orchestrator.tracker.get_session(result.session_id)
        assert session.status is SessionStatus.FAILED
        assert "disk full" in result.error_details[-1]["detail"]

    def test_interrupt_finalizes_and_propagates(
        self, orchestrator, target_store, config_factory, records_factory
    ):
        """Test KeyboardInterrupt fails the session and is re-raised."""
        config = config_factory(records_factory(5), target_store)

        with patch.object(
            orchestrator.tracker, "complete_batch", side_effect=KeyboardInterrupt
        ):
            with pytest.raises(KeyboardInterrupt):
                orchestrator.execute_sync(config, session_id="interrupted")

        assert orchestrator.tracker.get_session("interrupted").status is SessionStatus.FAILED

    def test_low_batch_success_rate_opens_breaker(
        self, orchestrator, event_sink, config_factory, records_factory
    ):
        """Test a failing batch opens the breaker and later records fail fast."""
        store = FlakyStore(unique_field="source_id", failures=1000)
        config = config_factory(
            records_factory(20),
            store,
            batch_size=10,
            retry_policy=RetryPolicy(type="fixed", base_delay_ms=0, max_attempts=1, jitter=False),
            circuit_breaker=CircuitBreakerConfig(enabled=True, failure_threshold=100),
        )

        result = orchestrator.execute_sync(config)

        assert result.stats.errors == 20
        assert store.create_calls == 10
        opened = event_sink.events(events.BREAKER_OPENED)
        assert opened[0].payload["trigger"] == "batch_success_rate"
        assert opened[0].batch_number == 1
        assert result.error_details[-1]["message"]

    def test_breaker_recovers_after_cooldown(
        self, orchestrator, event_sink, clock, config_factory, records_factory
    ):
        """Test refused batches leave the cool-down alone so a later trial closes the breaker."""
        store = FlakyStore(unique_field="source_id", failures=2)
        config = config_factory(
            records_factory(30),
            store,
            batch_size=10,
            continue_on_batch_error=True,
            retry_policy=RetryPolicy(type="fixed", base_delay_ms=0, max_attempts=1, jitter=False),
            circuit_breaker=CircuitBreakerConfig(enabled=True, failure_threshold=2, cooldown_ms=1000),
        )
        stream = orchestrator.stream_and_process(config, session_id="recovering")

        first = next(stream)
        second = next(stream)
        clock.advance(1.0)
        rest = list(stream)

        assert (first.stats.errors, second.stats.errors) == (10, 10)
        assert [batch.stats.created for batch in rest] == [10]
        assert store.create_calls == 12
        assert [event.batch_number for event in event_sink.events(events.BREAKER_OPENED)] == [1, 1]
        assert [event.batch_number for event in event_sink.events(events.BREAKER_CLOSED)] == [3]
        assert orchestrator.retry_engine.breakers.get(
            "contacts.process_record"
        ).status is BreakerStatus.CLOSED


class TestStreaming:
    """Test the streaming API and cancellation."""

    def test_yields_batch_results(
        self, orchestrator, target_store, config_factory, records_factory
    ):
        """Test one result per batch."""
        config = config_factory(records_factory(25), target_store, batch_size=10)

        batches = list(orchestrator.stream_and_process(config, session_id="stream-1"))

        assert [batch.batch_number for batch in batches] == [1, 2, 3]
        assert [batch.stats.created for batch in batches] == [10, 10, 5]
        assert orchestrator.tracker.get_session("stream-1").status is SessionStatus.COMPLETED

    def test_cancel_stops_at_batch_boundary(
        self, orchestrator, event_sink, target_store, config_factory, records_factory
    ):
        """Test cancellation between batches keeps counts frozen."""
        config = config_factory(records_factory(30), target_store, batch_size=10)
        stream = orchestrator.stream_and_process(config, session_id="cancel-me")

        first = next(stream)
        orchestrator.cancel_sync("cancel-me", reason="operator request")
        remaining = list(stream)

        assert first.batch_number == 1
        assert remaining == []
        session = orchestrator.tracker.get_session("cancel-me")
        assert session.status is SessionStatus.CANCELLED
        assert session.processed == 10
        assert session.error_summary == {"reason": "operator request"}
        assert events.SESSION_COMPLETED not in event_sink.event_types("cancel-me")

    def test_cancel_while_reading_records(
        self, orchestrator, target_store, config_factory, records_factory
    ):
        """Test a cancel that lands mid-pull drops the chunk and ends the run partial."""

        def cancel_midway(record):
            if record.id == "rec-15":
                orchestrator.cancel_sync("pulled", reason="operator request")
            return True

        config = config_factory(
            records_factory(30), target_store, batch_size=10, filters=[cancel_midway]
        )

        result = orchestrator.execute_sync(config, session_id="pulled")

        assert result.status is ResultStatus.PARTIAL
        assert result.stats.total_processed == 10
        assert result.error_details == []
        assert len(target_store) == 10
        session = orchestrator.tracker.get_session("pulled")
        assert session.status is SessionStatus.CANCELLED
        assert session.batch_count == 1

    def test_closing_stream_cancels_session(
        self, orchestrator, target_store, config_factory, records_factory
    ):
        """Test abandoning the iterator cancels the session."""
        config = config_factory(records_factory(30), target_store, batch_size=10)
        stream = orchestrator.stream_and_process(config, session_id="abandoned")

        next(stream)
        stream.close()

        session = orchestrator.tracker.get_session("abandoned")
        assert session.status is SessionStatus.CANCELLED

    def test_event_order(self, orchestrator, event_sink, target_store, config_factory, records_factory):
        """Test lifecycle events are emitted in order."""
        config = config_factory(records_factory(3), target_store, batch_size=10)

        orchestrator.execute_sync(config, session_id="ordered")

        assert event_sink.event_types("ordered") == [
            events.SESSION_STARTED,
            events.SESSION_RUNNING,
            events.BATCH_STARTED,
            events.BATCH_COMPLETED,
            events.SESSION_COMPLETED,
        ]

    def test_progress_events(self, orchestrator, event_sink, target_store, config_factory, records_factory):
        """Test progress is reported every progress_interval records."""
        config = config_factory(records_factory(25), target_store, batch_size=25, progress_interval=10)

        orchestrator.execute_sync(config, session_id="progress")

        progress = event_sink.events(events.BATCH_PROGRESS, session_id="progress")
        assert [event.payload["total_processed"] for event in progress] == [10, 20]
