"""Domain models and value objects for sync operations."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass
class Record:
    """A normalized unit produced by a source adapter."""

    id: Any
    fields: Dict[str, Any]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def with_fields(self, fields: Dict[str, Any]) -> "Record":
        """Return a copy carrying a new field map."""
        return replace(self, fields=fields)


class Outcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    EXISTING = "existing"
    ERROR = "error"


@dataclass(frozen=True)
class ProcessingResult:
    """Outcome of applying one record to the target store."""

    outcome: Outcome
    record_id: Any = None
    data: Any = None
    error: Optional[BaseException] = None

    @property
    def is_error(self) -> bool:
        return self.outcome is Outcome.ERROR

    @classmethod
    def created(cls, record_id: Any, data: Any) -> "ProcessingResult":
        return cls(Outcome.CREATED, record_id, data)

    @classmethod
    def updated(cls, record_id: Any, data: Any) -> "ProcessingResult":
        return cls(Outcome.UPDATED, record_id, data)

    @classmethod
    def existing(cls, record_id: Any, data: Any) -> "ProcessingResult":
        return cls(Outcome.EXISTING, record_id, data)

    @classmethod
    def failed(cls, record_id: Any, error: BaseException) -> "ProcessingResult":
        return cls(Outcome.ERROR, record_id, error=error)


@dataclass(frozen=True)
class SyncStats:
    """Record counts for a batch or a whole session.

    ``total_processed`` always equals the sum of the four outcome counters.
    """

    created: int = 0
    updated: int = 0
    existing: int = 0
    errors: int = 0

    @property
    def total_processed(self) -> int:
        return self.created + self.updated + self.existing + self.errors

    def __add__(self, other: "SyncStats") -> "SyncStats":
        return SyncStats(
            created=self.created + other.created,
            updated=self.updated + other.updated,
            existing=self.existing + other.existing,
            errors=self.errors + other.errors,
        )

    @classmethod
    def from_results(cls, results: List[ProcessingResult]) -> "SyncStats":
        counts = {outcome: 0 for outcome in Outcome}
        for result in results:
            counts[result.outcome] += 1
        return cls(
            created=counts[Outcome.CREATED],
            updated=counts[Outcome.UPDATED],
            existing=counts[Outcome.EXISTING],
            errors=counts[Outcome.ERROR],
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_processed": self.total_processed,
            "created": self.created,
            "updated": self.updated,
            "existing": self.existing,
            "errors": self.errors,
        }


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        )


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.FAILED)


@dataclass
class SyncSession:
    """One end-to-end run of the sync pipeline."""

    session_id: str
    sync_type: str
    initiated_by: Optional[str] = None
    status: SessionStatus = SessionStatus.PENDING
    estimated_total: Optional[int] = None
    stats: SyncStats = field(default_factory=SyncStats)
    batch_count: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_summary: Optional[Dict[str, Any]] = None

    @property
    def processed(self) -> int:
        return self.stats.total_processed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "sync_type": self.sync_type,
            "initiated_by": self.initiated_by,
            "status": self.status.value,
            "estimated_total": self.estimated_total,
            "processed": self.processed,
            "created": self.stats.created,
            "updated": self.stats.updated,
            "existing": self.stats.existing,
            "errors": self.stats.errors,
            "batch_count": self.batch_count,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error_summary": self.error_summary,
        }


@dataclass
class BatchProgress:
    """Progress of one batch within a session."""

    batch_id: str
    session_id: str
    batch_number: int
    batch_size: int
    source_ids: List[Any] = field(default_factory=list)
    status: BatchStatus = BatchStatus.PENDING
    stats: SyncStats = field(default_factory=SyncStats)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def processed(self) -> int:
        return self.stats.total_processed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "session_id": self.session_id,
            "batch_number": self.batch_number,
            "batch_size": self.batch_size,
            "source_ids": list(self.source_ids),
            "status": self.status.value,
            **self.stats.to_dict(),
            "error": self.error,
        }


@dataclass(frozen=True)
class BatchResult:
    """Per-batch result yielded by the streaming API."""

    batch_number: int
    stats: SyncStats
    results: List[ProcessingResult] = field(default_factory=list)
    failed: bool = False
    error: Optional[Dict[str, Any]] = None


class ResultStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"
    DRY_RUN = "dry_run"


@dataclass(frozen=True)
class SyncResult:
    """Result returned to the caller of a sync run."""

    status: ResultStatus
    stats: SyncStats
    session_id: Optional[str] = None
    error_details: List[Dict[str, Any]] = field(default_factory=list)
    processing_time_ms: int = 0

    @classmethod
    def empty(
        cls, status: ResultStatus = ResultStatus.DRY_RUN, processing_time_ms: int = 0
    ) -> "SyncResult":
        """Create empty result for no-operation cases."""
        return cls(status=status, stats=SyncStats(), processing_time_ms=processing_time_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "stats": self.stats.to_dict(),
            "session_id": self.session_id,
            "error_details": list(self.error_details),
            "processing_time_ms": self.processing_time_ms,
        }
