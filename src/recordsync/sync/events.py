"""Lifecycle events and the sinks they are emitted through.

All components emit through a single ``EventSink`` passed down from the
orchestrator; concrete delivery is up to the sink.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

import structlog

logger = logging.getLogger(__name__)

SESSION_STARTED = "session.started"
SESSION_RUNNING = "session.running"
SESSION_COMPLETED = "session.completed"
SESSION_FAILED = "session.failed"
SESSION_CANCELLED = "session.cancelled"
BATCH_STARTED = "batch.started"
BATCH_PROGRESS = "batch.progressUpdated"
BATCH_COMPLETED = "batch.completed"
BATCH_FAILED = "batch.failed"
RETRY_SCHEDULED = "retry.scheduled"
RETRY_SUCCEEDED = "retry.succeeded"
RETRY_EXHAUSTED = "retry.exhausted"
RETRY_ABORTED = "retry.aborted"
BREAKER_OPENED = "circuitBreaker.opened"
BREAKER_CLOSED = "circuitBreaker.closed"


@dataclass(frozen=True)
class SyncEvent:
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    batch_number: Optional[int] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "payload": dict(self.payload),
        }
        if self.batch_number is not None:
            data["batch_number"] = self.batch_number
        return data


class EventSink(Protocol):
    def emit(self, event: SyncEvent) -> None:
        ...


class NullEventSink:
    """Discards every event."""

    def emit(self, event: SyncEvent) -> None:
        pass


class InMemoryEventSink:
    """Keeps emitted events in order; useful for tests and status endpoints."""

    def __init__(self, max_events: Optional[int] = None) -> None:
        self._lock = threading.Lock()
        self._events: List[SyncEvent] = []
        self.max_events = max_events

    def emit(self, event: SyncEvent) -> None:
        with self._lock:
            self._events.append(event)
            if self.max_events is not None and len(self._events) > self.max_events:
                del self._events[: len(self._events) - self.max_events]

    def events(
        self, event_type: Optional[str] = None, session_id: Optional[str] = None
    ) -> List[SyncEvent]:
        with self._lock:
            return [
                event
                for event in self._events
                if (event_type is None or event.event_type == event_type)
                and (session_id is None or event.session_id == session_id)
            ]

    def event_types(self, session_id: Optional[str] = None) -> List[str]:
        return [event.event_type for event in self.events(session_id=session_id)]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class StructlogEventSink:
    """Writes each event as a structured log entry."""

    def __init__(self, logger_name: str = "recordsync.events") -> None:
        self.logger = structlog.get_logger(logger_name)

    def emit(self, event: SyncEvent) -> None:
        data = event.to_dict()
        event_type = data.pop("event_type")
        if event_type.endswith(("failed", "exhausted", "opened")):
            self.logger.warning(event_type, **data)
        else:
            self.logger.info(event_type, **data)


Handler = Callable[[SyncEvent], None]


class EventBus:
    """In-process event sink with topic routing ("*" subscribes to everything)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> None:
        with self._lock:
            self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        with self._lock:
            if handler in self._subscribers.get(topic, []):
                self._subscribers[topic].remove(handler)

    def emit(self, event: SyncEvent) -> None:
        handlers: List[Handler] = []
        with self._lock:
            handlers.extend(self._subscribers.get(event.event_type, []))
            handlers.extend(self._subscribers.get("*", []))
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler failed for '{event.event_type}': {e}")
