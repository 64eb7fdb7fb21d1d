"""Persistence for sync sessions and their batches."""

import json
import logging
import sqlite3
import threading
from copy import deepcopy
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from recordsync.domain.models import BatchProgress, BatchStatus, SessionStatus, SyncSession, SyncStats

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    def save_session(self, session: SyncSession) -> None:
        ...

    def get_session(self, session_id: str) -> Optional[SyncSession]:
        ...

    def list_sessions(self, limit: int = 50) -> List[SyncSession]:
        ...

    def save_batch(self, batch: BatchProgress) -> None:
        ...

    def get_batches(self, session_id: str) -> List[BatchProgress]:
        ...


class InMemorySessionStore:
    """Keeps sessions in process memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, SyncSession] = {}
        self._batches: Dict[str, Dict[int, BatchProgress]] = {}

    def save_session(self, session: SyncSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = deepcopy(session)

    def get_session(self, session_id: str) -> Optional[SyncSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return deepcopy(session) if session else None

    def list_sessions(self, limit: int = 50) -> List[SyncSession]:
        with self._lock:
            sessions = list(self._sessions.values())[-limit:]
            return [deepcopy(session) for session in reversed(sessions)]

    def save_batch(self, batch: BatchProgress) -> None:
        with self._lock:
            self._batches.setdefault(batch.session_id, {})[batch.batch_number] = replace(
                batch, source_ids=list(batch.source_ids)
            )

    def get_batches(self, session_id: str) -> List[BatchProgress]:
        with self._lock:
            batches = self._batches.get(session_id, {})
            return [replace(batches[number]) for number in sorted(batches)]


class SqliteSessionStore:
    """Stores sessions and batches in a SQLite database."""

    def __init__(self, db_path: str = "data/sessions.db") -> None:
        """Initialize session database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    sync_type TEXT NOT NULL,
                    initiated_by TEXT,
                    status TEXT NOT NULL,
                    estimated_total INTEGER,
                    created INTEGER DEFAULT 0,
                    updated INTEGER DEFAULT 0,
                    existing INTEGER DEFAULT 0,
                    errors INTEGER DEFAULT 0,
                    batch_count INTEGER DEFAULT 0,
                    started_at TEXT,
                    finished_at TEXT,
                    error_summary TEXT,
                    saved_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS batches (
                    batch_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    batch_number INTEGER NOT NULL,
                    batch_size INTEGER NOT NULL,
                    source_ids TEXT,
                    status TEXT NOT NULL,
                    created INTEGER DEFAULT 0,
                    updated INTEGER DEFAULT 0,
                    existing INTEGER DEFAULT 0,
                    errors INTEGER DEFAULT 0,
                    started_at TEXT,
                    finished_at TEXT,
                    error TEXT,
                    UNIQUE (session_id, batch_number)
                )
                """
            )
            conn.commit()
            logger.debug(f"Initialized session database at {self.db_path}")

    def save_session(self, session: SyncSession) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO sessions (session_id, sync_type, initiated_by, status,
                    estimated_total, created, updated, existing, errors, batch_count,
                    started_at, finished_at, error_summary, saved_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.session_id,
                    session.sync_type,
                    session.initiated_by,
                    session.status.value,
                    session.estimated_total,
                    session.stats.created,
                    session.stats.updated,
                    session.stats.existing,
                    session.stats.errors,
                    session.batch_count,
                    _iso(session.started_at),
                    _iso(session.finished_at),
                    json.dumps(session.error_summary) if session.error_summary else None,
                    datetime.now().isoformat(),
                ),
            )
            conn.commit()

    def get_session(self, session_id: str) -> Optional[SyncSession]:
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
            return self._session_from_row(row) if row else None

    def list_sessions(self, limit: int = 50) -> List[SyncSession]:
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                "SELECT * FROM sessions ORDER BY started_at DESC, saved_at DESC LIMIT ?", (limit,)
            ).fetchall()
            return [self._session_from_row(row) for row in rows]

    def save_batch(self, batch: BatchProgress) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO batches (batch_id, session_id, batch_number, batch_size,
                    source_ids, status, created, updated, existing, errors,
                    started_at, finished_at, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    batch.batch_id,
                    batch.session_id,
                    batch.batch_number,
                    batch.batch_size,
                    json.dumps([str(source_id) for source_id in batch.source_ids]),
                    batch.status.value,
                    batch.stats.created,
                    batch.stats.updated,
                    batch.stats.existing,
                    batch.stats.errors,
                    _iso(batch.started_at),
                    _iso(batch.finished_at),
                    batch.error,
                ),
            )
            conn.commit()

    def get_batches(self, session_id: str) -> List[BatchProgress]:
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                "SELECT * FROM batches WHERE session_id = ? ORDER BY batch_number", (session_id,)
            ).fetchall()
            return [self._batch_from_row(row) for row in rows]

    def clear_old_sessions(self, days: int = 90) -> None:
        """Delete sessions (and their batches) older than N days.

        Args:
            days: Number of days to keep
        """
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                DELETE FROM batches WHERE session_id IN (
                    SELECT session_id FROM sessions
                    WHERE datetime(saved_at) < datetime('now', ? || ' days')
                )
                """,
                (f"-{days}",),
            )
            conn.execute(
                "DELETE FROM sessions WHERE datetime(saved_at) < datetime('now', ? || ' days')",
                (f"-{days}",),
            )
            conn.commit()
            logger.info(f"Cleaned up sessions older than {days} days")

    @staticmethod
    def _session_from_row(row: sqlite3.Row) -> SyncSession:
        return SyncSession(
            session_id=row["session_id"],
            sync_type=row["sync_type"],
            initiated_by=row["initiated_by"],
            status=SessionStatus(row["status"]),
            estimated_total=row["estimated_total"],
            stats=_stats(row),
            batch_count=row["batch_count"],
            started_at=_parse(row["started_at"]),
            finished_at=_parse(row["finished_at"]),
            error_summary=json.loads(row["error_summary"]) if row["error_summary"] else None,
        )

    @staticmethod
    def _batch_from_row(row: sqlite3.Row) -> BatchProgress:
        return BatchProgress(
            batch_id=row["batch_id"],
            session_id=row["session_id"],
            batch_number=row["batch_number"],
            batch_size=row["batch_size"],
            source_ids=json.loads(row["source_ids"]) if row["source_ids"] else [],
            status=BatchStatus(row["status"]),
            stats=_stats(row),
            started_at=_parse(row["started_at"]),
            finished_at=_parse(row["finished_at"]),
            error=row["error"],
        )


def _stats(row: Any) -> SyncStats:
    return SyncStats(
        created=row["created"], updated=row["updated"], existing=row["existing"], errors=row["errors"]
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
