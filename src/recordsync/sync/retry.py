"""Retry engine with backoff policies and per-operation circuit breakers.

Breaker state is owned by a ``CircuitBreakerRegistry`` injected into the
engine. Each operation name has its own breaker and lock, so callers on
different operations never contend.

Breaker failure counting is per ``execute_with_retry`` call: a call that ends
in a network, performance or unknown failure counts once, however many
attempts it made. Failures caused by the record itself (validation, data
integrity, business rules) say nothing about the operation's health and count
as a successful round trip.

When both triggers fire in the same batch, the batch success-rate check runs
after all units have finished and wins: it (re)opens the breaker and restarts
the cool-down even if per-call counting had already opened it. Units the open
breaker refused do not take part in that check.
"""

import logging
import random
import statistics
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

from recordsync.config.manager import CircuitBreakerConfig, RetryPolicy
from recordsync.domain.errors import CircuitOpenError, RetryExhaustedError
from recordsync.sync import events
from recordsync.sync.classifier import ErrorCategory, ErrorClassification, ErrorClassifier
from recordsync.sync.events import EventSink, NullEventSink, SyncEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_FACTOR = 0.1
HEALTH_CATEGORIES = (ErrorCategory.NETWORK, ErrorCategory.PERFORMANCE, ErrorCategory.UNKNOWN)
DEFAULT_POLICY = RetryPolicy(type="fixed", base_delay_ms=2000, max_attempts=3, jitter=False)


class BreakerStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    operation: str
    failure_threshold: int
    cooldown_ms: int
    status: BreakerStatus = BreakerStatus.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    trial_in_flight: bool = False
    last_trigger: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "cooldown_ms": self.cooldown_ms,
            "opened_at": self.opened_at,
            "last_trigger": self.last_trigger,
        }


class CircuitBreaker:
    """Fail-fast gate for one operation name."""

    def __init__(
        self,
        operation: str,
        failure_threshold: int = 5,
        cooldown_ms: int = 60_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lock = threading.Lock()
        self._clock = clock
        self._state = CircuitBreakerState(operation, failure_threshold, cooldown_ms)

    @property
    def status(self) -> BreakerStatus:
        with self._lock:
            return self._state.status

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._state.consecutive_failures

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            return replace(self._state)

    def acquire(self) -> bool:
        """Return True if a call may proceed, claiming the half-open trial if needed."""
        with self._lock:
            state = self._state
            if state.status is BreakerStatus.CLOSED:
                return True
            if state.status is BreakerStatus.OPEN:
                elapsed_ms = (self._clock() - (state.opened_at or 0.0)) * 1000
                if elapsed_ms < state.cooldown_ms:
                    return False
                state.status = BreakerStatus.HALF_OPEN
                logger.info(f"Circuit breaker for '{state.operation}' is half-open")
            if state.trial_in_flight:
                return False
            state.trial_in_flight = True
            return True

    def record_success(self) -> bool:
        """Register a healthy call. Returns True if the breaker closed."""
        with self._lock:
            state = self._state
            if state.status is BreakerStatus.OPEN:
                # Call was admitted before the breaker was forced open.
                return False
            closed = state.status is BreakerStatus.HALF_OPEN
            state.status = BreakerStatus.CLOSED
            state.consecutive_failures = 0
            state.trial_in_flight = False
            state.opened_at = None
            return closed

    def record_failure(self) -> bool:
        """Register a failed call. Returns True if the breaker opened."""
        with self._lock:
            state = self._state
            state.consecutive_failures += 1
            if state.status is BreakerStatus.HALF_OPEN:
                self._open("trial_failed")
                return True
            if (
                state.status is BreakerStatus.CLOSED
                and state.consecutive_failures >= state.failure_threshold
            ):
                self._open("failure_threshold")
                return True
            return False

    def release_trial(self) -> None:
        """Give up a claimed trial without an outcome (e.g. interrupted call)."""
        with self._lock:
            self._state.trial_in_flight = False

    def force_open(self, trigger: str) -> bool:
        """Open regardless of counters. Returns True if it was not open already."""
        with self._lock:
            was_open = self._state.status is BreakerStatus.OPEN
            self._open(trigger)
            return not was_open

    def reset(self) -> None:
        with self._lock:
            state = self._state
            state.status = BreakerStatus.CLOSED
            state.consecutive_failures = 0
            state.opened_at = None
            state.trial_in_flight = False
            state.last_trigger = None

    def _open(self, trigger: str) -> None:
        state = self._state
        state.status = BreakerStatus.OPEN
        state.opened_at = self._clock()
        state.trial_in_flight = False
        state.last_trigger = trigger


class CircuitBreakerRegistry:
    """Owns one breaker per operation name."""

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_config = default_config or CircuitBreakerConfig(enabled=True)
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, operation: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(operation)
            if breaker is None:
                config = config or self.default_config
                breaker = CircuitBreaker(
                    operation,
                    failure_threshold=config.failure_threshold,
                    cooldown_ms=config.cooldown_ms,
                    clock=self._clock,
                )
                self._breakers[operation] = breaker
            return breaker

    def find(self, operation: str) -> Optional[CircuitBreaker]:
        with self._lock:
            return self._breakers.get(operation)

    def all(self) -> Dict[str, CircuitBreaker]:
        with self._lock:
            return dict(self._breakers)

    def remove(self, operation: str) -> None:
        with self._lock:
            self._breakers.pop(operation, None)

    def clear(self) -> None:
        with self._lock:
            self._breakers.clear()


@dataclass(frozen=True)
class CallRecord:
    operation: str
    attempts: int
    success: bool
    duration_ms: float
    category: Optional[str] = None


@dataclass
class BatchRetryResult:
    results: List[Any] = field(default_factory=list)
    errors: List[Optional[BaseException]] = field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    success_rate: float = 1.0
    breaker_forced_open: bool = False


BreakerOption = Union[bool, CircuitBreakerConfig, None]


class RetryEngine:
    """Executes units of work under a backoff policy and optional circuit breaker."""

    def __init__(
        self,
        classifier: Optional[ErrorClassifier] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        event_sink: Optional[EventSink] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        history_size: int = 1000,
    ):
        self.classifier = classifier or ErrorClassifier()
        self.breakers = breakers or CircuitBreakerRegistry(clock=clock)
        self.event_sink: EventSink = event_sink or NullEventSink()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._history_lock = threading.Lock()
        self._history: Deque[CallRecord] = deque(maxlen=history_size)

    def compute_delay_ms(self, policy: RetryPolicy, attempt: int) -> float:
        """Backoff delay after a failed attempt, with ±10% jitter when enabled."""
        delay = policy.delay_ms(attempt)
        if policy.jitter:
            delay *= 1 + self._rng.uniform(-JITTER_FACTOR, JITTER_FACTOR)
        return max(delay, 0.0)

    def execute_with_retry(
        self,
        operation_name: str,
        unit_of_work: Callable[[], T],
        context: Optional[Dict[str, Any]] = None,
        policy: Optional[RetryPolicy] = None,
        circuit_breaker: BreakerOption = False,
    ) -> T:
        """Run ``unit_of_work`` until it succeeds or retrying stops.

        Args:
            operation_name: Name used for breaker state, events and analytics
            unit_of_work: Zero-argument callable; bind any cancellable
                context into it before passing it in
            context: Classification context plus optional ``session_id`` and
                ``batch_number`` for events
            policy: Backoff policy; defaults to the classifier's suggestion
            circuit_breaker: True or a ``CircuitBreakerConfig`` to gate the
                call through the operation's breaker

        Returns:
            Whatever ``unit_of_work`` returned

        Raises:
            CircuitOpenError: the breaker is open; the unit was not invoked
            RetryExhaustedError: every allowed attempt failed
            Exception: the original error when it is not retry eligible
        """
        context = dict(context or {})
        context.setdefault("operation", operation_name)
        breaker = self._breaker_for(operation_name, circuit_breaker)

        if breaker is not None and not breaker.acquire():
            self._record(CallRecord(operation_name, 0, False, 0.0, "circuit_open"))
            raise CircuitOpenError(operation_name)

        started = self._clock()
        attempt = 0
        settled = breaker is None
        try:
            while True:
                attempt += 1
                try:
                    result = unit_of_work()
                except Exception as error:
                    classification = self._classify(error, context, breaker)
                    effective = policy or classification.retry_strategy or DEFAULT_POLICY
                    duration_ms = (self._clock() - started) * 1000

                    if not classification.retry_eligible:
                        settled = self._settle(breaker, classification, operation_name, context)
                        self._record(
                            CallRecord(operation_name, attempt, False, duration_ms, classification.category.value)
                        )
                        self._emit(
                            events.RETRY_ABORTED,
                            context,
                            operation=operation_name,
                            attempt=attempt,
                            error_category=classification.category.value,
                            error=classification.message,
                        )
                        raise

                    if attempt >= effective.max_attempts:
                        settled = self._settle(breaker, classification, operation_name, context)
                        self._record(
                            CallRecord(operation_name, attempt, False, duration_ms, classification.category.value)
                        )
                        self._emit(
                            events.RETRY_EXHAUSTED,
                            context,
                            operation=operation_name,
                            attempts=attempt,
                            duration_ms=round(duration_ms, 2),
                            error_category=classification.category.value,
                            error=classification.message,
                        )
                        logger.warning(
                            f"'{operation_name}' exhausted {attempt} attempts: {classification.message}"
                        )
                        raise RetryExhaustedError(operation_name, attempt, error) from error

                    delay_ms = self.compute_delay_ms(effective, attempt)
                    self._emit(
                        events.RETRY_SCHEDULED,
                        context,
                        operation=operation_name,
                        attempt=attempt,
                        next_attempt=attempt + 1,
                        delay_ms=round(delay_ms, 2),
                        error_category=classification.category.value,
                        error=classification.message,
                    )
                    logger.info(
                        f"Retrying '{operation_name}' in {delay_ms:.0f}ms "
                        f"(attempt {attempt + 1}/{effective.max_attempts})"
                    )
                    self._sleep(delay_ms / 1000)
                    continue

                duration_ms = (self._clock() - started) * 1000
                if breaker is not None:
                    if breaker.record_success():
                        self._emit_breaker(events.BREAKER_CLOSED, operation_name, context)
                    settled = True
                self._record(CallRecord(operation_name, attempt, True, duration_ms))
                if attempt > 1:
                    self._emit(
                        events.RETRY_SUCCEEDED,
                        context,
                        operation=operation_name,
                        attempts=attempt,
                        duration_ms=round(duration_ms, 2),
                    )
                return result
        finally:
            if not settled and breaker is not None:
                breaker.release_trial()

    def execute_batch_with_retry(
        self,
        operation_name: str,
        units: Sequence[Callable[[], Any]],
        context: Optional[Dict[str, Any]] = None,
        policy: Optional[RetryPolicy] = None,
        circuit_breaker: BreakerOption = False,
        success_threshold: Optional[float] = None,
    ) -> BatchRetryResult:
        """Run each unit independently, then check the batch success rate.

        When a breaker is in use and the success rate falls below
        ``success_threshold`` (default: the breaker config's
        ``batch_success_threshold``), the breaker is forced open.
        """
        outcome = BatchRetryResult()
        for unit in units:
            try:
                outcome.results.append(
                    self.execute_with_retry(operation_name, unit, context, policy, circuit_breaker)
                )
                outcome.errors.append(None)
                outcome.success_count += 1
            except Exception as error:
                outcome.results.append(None)
                outcome.errors.append(error)
                outcome.failure_count += 1

        outcome.success_rate, outcome.breaker_forced_open = self.evaluate_batch(
            operation_name, outcome.errors, context, circuit_breaker, success_threshold
        )
        return outcome

    def evaluate_batch(
        self,
        operation_name: str,
        errors: Sequence[Optional[BaseException]],
        context: Optional[Dict[str, Any]] = None,
        circuit_breaker: BreakerOption = False,
        success_threshold: Optional[float] = None,
    ) -> Tuple[float, bool]:
        """Compute a batch's success rate and force the breaker open if it is too low.

        ``errors`` holds one entry per unit, None for a success. Only network,
        performance and unknown failures lower the rate. Units refused by an
        open breaker never ran and are left out of the rate.

        Returns:
            (success rate, whether the breaker was forced open)
        """
        context = dict(context or {})
        attempted = 0
        failures = 0
        for error in errors:
            if isinstance(error, CircuitOpenError):
                continue
            attempted += 1
            if error is None:
                continue
            classification = self.classifier.classify(error, {**context, "operation": operation_name})
            if classification.category in HEALTH_CATEGORIES:
                failures += 1
        success_rate = 1 - failures / attempted if attempted else 1.0

        breaker = self._breaker_for(operation_name, circuit_breaker)
        if breaker is None or not attempted:
            return success_rate, False

        if success_threshold is None:
            config = circuit_breaker if isinstance(circuit_breaker, CircuitBreakerConfig) else None
            success_threshold = (config or self.breakers.default_config).batch_success_threshold
        if success_rate >= success_threshold:
            return success_rate, False

        newly_opened = breaker.force_open("batch_success_rate")
        logger.warning(
            f"Batch success rate {success_rate:.0%} for '{operation_name}' "
            f"below {success_threshold:.0%}; circuit breaker opened"
        )
        self._emit_breaker(
            events.BREAKER_OPENED,
            operation_name,
            context,
            trigger="batch_success_rate",
            success_rate=round(success_rate, 4),
            threshold=success_threshold,
            already_open=not newly_opened,
        )
        return success_rate, True

    def get_retry_analytics(self) -> Dict[str, Any]:
        """Aggregate statistics over recent calls and current breaker states."""
        with self._history_lock:
            history = list(self._history)

        successes = [record for record in history if record.success]
        attempted = [record for record in history if record.attempts > 0]
        by_operation: Dict[str, Dict[str, Any]] = {}
        for record in history:
            stats = by_operation.setdefault(
                record.operation, {"calls": 0, "successes": 0, "failures": 0, "attempts": 0}
            )
            stats["calls"] += 1
            stats["attempts"] += record.attempts
            stats["successes" if record.success else "failures"] += 1
        for stats in by_operation.values():
            stats["success_rate"] = stats["successes"] / stats["calls"]
            stats["average_attempts"] = stats.pop("attempts") / stats["calls"]

        by_category: Dict[str, int] = {}
        for record in history:
            if record.category:
                by_category[record.category] = by_category.get(record.category, 0) + 1

        return {
            "total_calls": len(history),
            "successful_calls": len(successes),
            "failed_calls": len(history) - len(successes),
            "success_rate": len(successes) / len(history) if history else 1.0,
            "average_attempts": (
                sum(record.attempts for record in attempted) / len(attempted) if attempted else 0.0
            ),
            "median_execution_ms": (
                statistics.median(record.duration_ms for record in attempted) if attempted else 0.0
            ),
            "retried_calls": sum(1 for record in history if record.attempts > 1),
            "by_operation": by_operation,
            "by_error_category": by_category,
            "circuit_breakers": {
                name: breaker.snapshot().to_dict() for name, breaker in self.breakers.all().items()
            },
        }

    def reset_retry_state(self, operation_name: Optional[str] = None) -> None:
        """Forget call history and reset breakers, for one operation or all."""
        with self._history_lock:
            if operation_name is None:
                self._history.clear()
            else:
                kept = [record for record in self._history if record.operation != operation_name]
                self._history.clear()
                self._history.extend(kept)

        if operation_name is None:
            for breaker in self.breakers.all().values():
                breaker.reset()
        else:
            breaker = self.breakers.find(operation_name)
            if breaker is not None:
                breaker.reset()
        logger.info(f"Reset retry state for {operation_name or 'all operations'}")

    def _breaker_for(self, operation_name: str, option: BreakerOption) -> Optional[CircuitBreaker]:
        if isinstance(option, CircuitBreakerConfig):
            return self.breakers.get(operation_name, option) if option.enabled else None
        if option:
            return self.breakers.get(operation_name)
        return None

    def _classify(
        self,
        error: BaseException,
        context: Dict[str, Any],
        breaker: Optional[CircuitBreaker],
    ) -> ErrorClassification:
        classify_context = dict(context)
        if "consecutive_failures" not in classify_context:
            classify_context["consecutive_failures"] = (
                breaker.consecutive_failures if breaker is not None else 0
            )
        return self.classifier.classify(error, classify_context)

    def _settle(
        self,
        breaker: Optional[CircuitBreaker],
        classification: ErrorClassification,
        operation: str,
        context: Dict[str, Any],
    ) -> bool:
        if breaker is None:
            return True
        if classification.category in HEALTH_CATEGORIES:
            if breaker.record_failure():
                snapshot = breaker.snapshot()
                logger.warning(
                    f"Circuit breaker for '{operation}' opened after "
                    f"{snapshot.consecutive_failures} consecutive failures"
                )
                self._emit_breaker(
                    events.BREAKER_OPENED,
                    operation,
                    context,
                    trigger=snapshot.last_trigger,
                    consecutive_failures=snapshot.consecutive_failures,
                )
        elif breaker.record_success():
            self._emit_breaker(events.BREAKER_CLOSED, operation, context)
        return True

    def _emit_breaker(
        self, event_type: str, operation: str, context: Dict[str, Any], **payload: Any
    ) -> None:
        self._emit(event_type, context, operation=operation, **payload)

    def _emit(self, event_type: str, context: Dict[str, Any], **payload: Any) -> None:
        self.event_sink.emit(
            SyncEvent(
                event_type=event_type,
                payload=payload,
                session_id=context.get("session_id"),
                batch_number=context.get("batch_number"),
            )
        )

    def _record(self, record: CallRecord) -> None:
        with self._history_lock:
            self._history.append(record)
