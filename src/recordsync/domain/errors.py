"""Exception hierarchy for sync operations.

Every error raised by the engine derives from ``SyncError`` and carries the
category used by the error classifier, so callers never need to match on
message text.
"""

from typing import Any, Dict, List, Optional


class SyncError(Exception):
    """Base class for all sync engine errors."""

    category = "unknown"
    recoverable = False
    retry_eligible = False

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Structured, user-facing representation of the error."""
        return {
            "category": self.category,
            "error_type": type(self).__name__,
            "message": self.message or str(self),
            "recoverable": self.recoverable,
            "retry_eligible": self.retry_eligible,
            "details": dict(self.details),
        }


class NetworkError(SyncError):
    """Transport failure talking to a source or target."""

    category = "network"
    recoverable = True
    retry_eligible = True


class PerformanceError(SyncError):
    """Remote side is overloaded or rate limiting."""

    category = "performance"
    recoverable = True
    retry_eligible = True


class DataIntegrityError(SyncError):
    """Constraint violation on the target that needs manual correction."""

    category = "data_integrity"


class RecordValidationError(SyncError):
    """A record failed one or more validation rules."""

    category = "validation"
    recoverable = True

    def __init__(self, message: str, failures: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, failures=failures or [])
        self.failures = failures or []


class TransformationError(SyncError):
    category = "validation"


class BusinessRuleError(SyncError):
    category = "business_rule"
    recoverable = True


class DuplicateKeyError(BusinessRuleError):
    """Unique key collision reported by a target store."""

    def __init__(self, field: str, value: Any, existing: Any = None):
        super().__init__(
            f"Record with {field}={value!r} already exists", field=field, value=value
        )
        self.field = field
        self.value = value
        self.existing = existing


class RecordTimeoutError(SyncError):
    """Processing of a single record exceeded its time budget."""

    category = "performance"
    recoverable = True


class AdapterError(SyncError):
    """Source adapter could not be initialized or queried."""

    category = "network"
    recoverable = True


class AdapterStreamError(AdapterError):
    """The source stream terminated with an error."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class RetryExhaustedError(SyncError):
    """All retry attempts for an operation failed."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"Operation '{operation}' failed after {attempts} attempts: {last_error}",
            operation=operation,
            attempts=attempts,
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        self.category = getattr(last_error, "category", "unknown")


class CircuitOpenError(SyncError):
    """Circuit breaker for the operation is open; the call was not attempted."""

    category = "performance"
    recoverable = True

    def __init__(self, operation: str):
        super().__init__(f"Circuit breaker open for '{operation}'", operation=operation)
        self.operation = operation


class InvalidTransitionError(SyncError):
    """A session or batch state change that the lifecycle does not allow."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            f"Cannot transition {entity} from {current} to {target}",
            entity=entity,
            current=current,
            target=target,
        )


class SessionTerminalError(InvalidTransitionError):
    """Write attempted on a session that already reached a terminal state."""


class SessionNotFoundError(SyncError):
    def __init__(self, session_id: str):
        super().__init__(f"Unknown sync session: {session_id}", session_id=session_id)
        self.session_id = session_id


class ConfigValidationError(SyncError):
    """Sync configuration failed validation; nothing was executed."""

    category = "validation"

    def __init__(self, issues: List[Any]):
        fields = ", ".join(issue.field for issue in issues)
        super().__init__(f"Invalid sync configuration: {fields}")
        self.issues = issues

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["details"] = {"issues": [issue.to_dict() for issue in self.issues]}
        return data


class SyncInitializationError(SyncError):
    """Adapter, target or session could not be set up."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"Failed to initialize {stage}: {cause}", stage=stage)
        self.stage = stage
        self.cause = cause


class BatchFailedError(SyncError):
    def __init__(self, batch_number: int, reason: str):
        super().__init__(
            f"Batch {batch_number} failed: {reason}", batch_number=batch_number
        )
        self.batch_number = batch_number
