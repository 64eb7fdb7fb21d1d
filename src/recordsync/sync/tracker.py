"""Session and batch lifecycle tracking.

Sessions move ``pending -> running -> completed | failed | cancelled`` and
batches ``pending -> processing -> completed | failed``. No state is ever
revisited and a terminal session rejects every further write. Each
transition is persisted through the session store and emitted as an event.
"""

import logging
import threading
import uuid
from copy import deepcopy
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from recordsync.domain.errors import (
    InvalidTransitionError,
    SessionNotFoundError,
    SessionTerminalError,
)
from recordsync.domain.models import BatchProgress, BatchStatus, SessionStatus, SyncSession, SyncStats
from recordsync.sync import events
from recordsync.sync.events import EventSink, NullEventSink, SyncEvent
from recordsync.sync.session_store import InMemorySessionStore, SessionStore

logger = logging.getLogger(__name__)

SESSION_TRANSITIONS = {
    SessionStatus.PENDING: (SessionStatus.RUNNING, SessionStatus.FAILED, SessionStatus.CANCELLED),
    SessionStatus.RUNNING: (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED),
}

BATCH_TRANSITIONS = {
    BatchStatus.PENDING: (BatchStatus.PROCESSING, BatchStatus.FAILED),
    BatchStatus.PROCESSING: (BatchStatus.COMPLETED, BatchStatus.FAILED),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionTracker:
    """Owns session and batch state for sync runs."""

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        event_sink: Optional[EventSink] = None,
    ):
        self.store: SessionStore = store or InMemorySessionStore()
        self.event_sink: EventSink = event_sink or NullEventSink()
        self._lock = threading.RLock()
        self._sessions: Dict[str, SyncSession] = {}
        self._batches: Dict[Tuple[str, int], BatchProgress] = {}

    def start_session(
        self,
        sync_type: str,
        initiated_by: Optional[str] = None,
        estimated_total: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> SyncSession:
        """Create a new pending session."""
        session = SyncSession(
            session_id=session_id or str(uuid.uuid4()),
            sync_type=sync_type,
            initiated_by=initiated_by,
            estimated_total=estimated_total,
            started_at=_now(),
        )
        with self._lock:
            if (
                session.session_id in self._sessions
                or self.store.get_session(session.session_id) is not None
            ):
                raise InvalidTransitionError("session", "existing", SessionStatus.PENDING.value)
            self._sessions[session.session_id] = session
            self.store.save_session(session)
            snapshot = deepcopy(session)

        logger.info(f"Started sync session {session.session_id} ({sync_type})")
        self._emit(
            events.SESSION_STARTED,
            session.session_id,
            sync_type=sync_type,
            initiated_by=initiated_by,
            estimated_total=estimated_total,
        )
        return snapshot

    def mark_running(self, session_id: str) -> SyncSession:
        return self._transition(session_id, SessionStatus.RUNNING, events.SESSION_RUNNING)

    def complete_session(self, session_id: str) -> SyncSession:
        return self._transition(session_id, SessionStatus.COMPLETED, events.SESSION_COMPLETED)

    def fail_session(self, session_id: str, error: Optional[Dict[str, Any]] = None) -> SyncSession:
        return self._transition(
            session_id, SessionStatus.FAILED, events.SESSION_FAILED, error_summary=error
        )

    def cancel_session(self, session_id: str, reason: Optional[str] = None) -> SyncSession:
        """Flip the session to cancelled; the running orchestrator stops at the next batch boundary."""
        return self._transition(
            session_id,
            SessionStatus.CANCELLED,
            events.SESSION_CANCELLED,
            error_summary={"reason": reason or "cancelled"},
        )

    def start_batch(
        self, session_id: str, batch_size: int, source_ids: Sequence[Any] = ()
    ) -> BatchProgress:
        """Open the next batch of a running session and mark it processing."""
        with self._lock:
            session = self._require(session_id, "batch")
            if session.status is not SessionStatus.RUNNING:
                self._reject(session, "batch")
            batch_number = session.batch_count + 1
            batch = BatchProgress(
                batch_id=f"{session_id}-{batch_number}",
                session_id=session_id,
                batch_number=batch_number,
                batch_size=batch_size,
                source_ids=list(source_ids),
            )
            self._check_batch(batch, BatchStatus.PROCESSING)
            batch.status = BatchStatus.PROCESSING
            batch.started_at = _now()
            session.batch_count = batch_number
            self._batches[(session_id, batch_number)] = batch
            self.store.save_batch(batch)
            self.store.save_session(session)
            snapshot = replace(batch, source_ids=list(batch.source_ids))

        self._emit(
            events.BATCH_STARTED,
            session_id,
            batch_number=batch_number,
            batch_size=batch_size,
        )
        return snapshot

    def update_batch_progress(
        self, session_id: str, batch_number: int, stats: SyncStats
    ) -> BatchProgress:
        """Record the cumulative counts of a batch still being processed."""
        with self._lock:
            batch = self._require_batch(session_id, batch_number)
            if batch.status is not BatchStatus.PROCESSING:
                raise InvalidTransitionError("batch", batch.status.value, "progress")
            if stats.total_processed < batch.stats.total_processed:
                raise ValueError("Batch progress cannot go backwards")
            batch.stats = stats
            self.store.save_batch(batch)
            session_processed = self._sessions[session_id].processed
            snapshot = replace(batch)

        self._emit(
            events.BATCH_PROGRESS,
            session_id,
            batch_number=batch_number,
            batch_size=snapshot.batch_size,
            session_processed=session_processed + stats.total_processed,
            **stats.to_dict(),
        )
        return snapshot

    def complete_batch(self, session_id: str, batch_number: int, stats: SyncStats) -> BatchProgress:
        return self._finish_batch(session_id, batch_number, stats, BatchStatus.COMPLETED)

    def fail_batch(
        self, session_id: str, batch_number: int, stats: SyncStats, error: str
    ) -> BatchProgress:
        return self._finish_batch(session_id, batch_number, stats, BatchStatus.FAILED, error)

    def get_session(self, session_id: str) -> SyncSession:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                return deepcopy(session)
        stored = self.store.get_session(session_id)
        if stored is None:
            raise SessionNotFoundError(session_id)
        return stored

    def get_status(self, session_id: str) -> Dict[str, Any]:
        """Session snapshot with its batches."""
        session = self.get_session(session_id)
        with self._lock:
            batches = [
                replace(batch)
                for (owner, _), batch in sorted(self._batches.items(), key=lambda item: item[0][1])
                if owner == session_id
            ]
        if not batches:
            batches = self.store.get_batches(session_id)
        status = session.to_dict()
        status["batches"] = [batch.to_dict() for batch in batches]
        return status

    def is_cancelled(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                return session.status is SessionStatus.CANCELLED
        return self.get_session(session_id).status is SessionStatus.CANCELLED

    def list_sessions(self, limit: int = 50) -> List[SyncSession]:
        return self.store.list_sessions(limit)

    def forget(self, session_id: str) -> None:
        """Drop in-memory state of a finished session; the store keeps it."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.status.is_terminal:
                return
            del self._sessions[session_id]
            for key in [key for key in self._batches if key[0] == session_id]:
                del self._batches[key]

    def _transition(
        self,
        session_id: str,
        target: SessionStatus,
        event_type: str,
        error_summary: Optional[Dict[str, Any]] = None,
    ) -> SyncSession:
        with self._lock:
            session = self._require(session_id, target.value)
            if target not in SESSION_TRANSITIONS.get(session.status, ()):
                self._reject(session, target.value)
            session.status = target
            if target.is_terminal:
                session.finished_at = _now()
            if error_summary is not None:
                session.error_summary = error_summary
            self.store.save_session(session)
            snapshot = deepcopy(session)

        logger.info(f"Session {session_id} is now {target.value}")
        payload: Dict[str, Any] = {"status": target.value, **snapshot.stats.to_dict()}
        if target.is_terminal:
            payload["batch_count"] = snapshot.batch_count
        if error_summary is not None:
            payload["error"] = error_summary
        self._emit(event_type, session_id, **payload)
        return snapshot

    def _finish_batch(
        self,
        session_id: str,
        batch_number: int,
        stats: SyncStats,
        target: BatchStatus,
        error: Optional[str] = None,
    ) -> BatchProgress:
        with self._lock:
            batch = self._require_batch(session_id, batch_number)
            self._check_batch(batch, target)
            batch.status = target
            batch.stats = stats
            batch.finished_at = _now()
            batch.error = error
            self.store.save_batch(batch)

            session = self._sessions[session_id]
            if session.status.is_terminal:
                # Counts of a cancelled or failed session are frozen.
                logger.info(
                    f"Batch {batch_number} finished after session {session_id} "
                    f"became {session.status.value}"
                )
            else:
                session.stats = session.stats + stats
                self.store.save_session(session)
            session_stats = session.stats
            snapshot = replace(batch)

        payload: Dict[str, Any] = {
            "batch_size": snapshot.batch_size,
            **stats.to_dict(),
            "session_processed": session_stats.total_processed,
        }
        if error:
            payload["error"] = error
        event_type = events.BATCH_COMPLETED if target is BatchStatus.COMPLETED else events.BATCH_FAILED
        self._emit(event_type, session_id, batch_number=batch_number, **payload)
        return snapshot

    def _require(self, session_id: str, action: str = "update") -> SyncSession:
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        stored = self.store.get_session(session_id)
        if stored is not None and stored.status.is_terminal:
            self._reject(stored, action)
        raise SessionNotFoundError(session_id)

    def _require_batch(self, session_id: str, batch_number: int) -> BatchProgress:
        self._require(session_id, "batch")
        batch = self._batches.get((session_id, batch_number))
        if batch is None:
            raise InvalidTransitionError("batch", "missing", f"batch {batch_number}")
        return batch

    @staticmethod
    def _check_batch(batch: BatchProgress, target: BatchStatus) -> None:
        if target not in BATCH_TRANSITIONS.get(batch.status, ()):
            raise InvalidTransitionError("batch", batch.status.value, target.value)

    @staticmethod
    def _reject(session: SyncSession, target: str) -> None:
        if session.status.is_terminal:
            raise SessionTerminalError("session", session.status.value, target)
        raise InvalidTransitionError("session", session.status.value, target)

    def _emit(
        self, event_type: str, session_id: str, batch_number: Optional[int] = None, **payload: Any
    ) -> None:
        self.event_sink.emit(
            SyncEvent(
                event_type=event_type,
                payload=payload,
                session_id=session_id,
                batch_number=batch_number,
            )
        )
