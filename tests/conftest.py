"""Shared fixtures for the unit tests."""

import random
from typing import Any, Dict, List

import pytest

from recordsync.config import (
    AppConfig,
    CircuitBreakerConfig,
    ProcessingConfig,
    RetryPolicy,
    SessionConfig,
    SyncConfig,
    TargetConfig,
)
from recordsync.sync.engine import SyncOrchestrator
from recordsync.sync.events import InMemoryEventSink
from recordsync.sync.retry import RetryEngine
from recordsync.sync.tracker import SessionTracker
from recordsync.target.store import InMemoryTargetStore


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def event_sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def retry_engine(event_sink, sleeps, clock) -> RetryEngine:
    return RetryEngine(
        event_sink=event_sink,
        sleep=sleeps.append,
        clock=clock,
        rng=random.Random(42),
    )


@pytest.fixture
def orchestrator(event_sink, retry_engine) -> SyncOrchestrator:
    return SyncOrchestrator(
        tracker=SessionTracker(event_sink=event_sink),
        retry_engine=retry_engine,
        event_sink=event_sink,
    )


@pytest.fixture
def target_store() -> InMemoryTargetStore:
    return InMemoryTargetStore(unique_field="source_id")


def synthetic_records(count: int, start: int = 1) -> List[Dict[str, Any]]:
    return [
        {"id": f"rec-{index}", "name": f"Record {index}", "email": f"user{index}@example.com"}
        for index in range(start, start + count)
    ]


def make_config(
    records: Any,
    target: Any,
    unique_field: str = "source_id",
    retry_policy: RetryPolicy = RetryPolicy(type="fixed", base_delay_ms=10, max_attempts=3, jitter=False),
    circuit_breaker: CircuitBreakerConfig = CircuitBreakerConfig(),
    source_options: Dict[str, Any] | None = None,
    **processing: Any,
) -> SyncConfig:
    target_options = {
        key: processing.pop(key)
        for key in ("duplicate_strategy", "validation_rules", "field_mapping", "continue_on_validation_error")
        if key in processing
    }
    if "target_transformations" in processing:
        target_options["transformations"] = processing.pop("target_transformations")
    return SyncConfig(
        source_adapter="memory",
        source_config={"records": records, **(source_options or {})},
        target_resource=target,
        target_config=TargetConfig(unique_field=unique_field, **target_options),
        processing_config=ProcessingConfig(**processing),
        retry_policy=retry_policy,
        circuit_breaker=circuit_breaker,
        session_config=SessionConfig(sync_type="contacts", initiated_by="tests"),
    )


@pytest.fixture
def config_factory():
    return make_config


@pytest.fixture
def records_factory():
    return synthetic_records


@pytest.fixture
def app_config(tmp_path, target_store) -> AppConfig:
    return AppConfig(
        sync=make_config(synthetic_records(5), target_store, batch_size=2),
        log_dir=str(tmp_path / "logs"),
        data_dir=str(tmp_path / "data"),
        metrics_dir=str(tmp_path / "metrics"),
        schedule="*/15 2 * * 1-5",
    )
