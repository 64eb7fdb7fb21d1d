"""Sync orchestrator: streams source records through the target processor in batches."""

import logging
import time
from dataclasses import dataclass, field
from itertools import islice
from typing import Any, Callable, Dict, Iterator, List, Optional

from recordsync.adapters.base import AdapterState, SourceAdapter
from recordsync.config.manager import SyncConfig
from recordsync.config.validator import validate_or_raise
from recordsync.domain.errors import (
    AdapterStreamError,
    BatchFailedError,
    SessionTerminalError,
    SyncError,
    SyncInitializationError,
)
from recordsync.domain.models import (
    BatchResult,
    ProcessingResult,
    Record,
    ResultStatus,
    SyncResult,
    SyncStats,
)
from recordsync.factories.registry import create_adapter, create_target
from recordsync.sync.classifier import ErrorClassifier
from recordsync.sync.events import EventSink, NullEventSink
from recordsync.sync.pipeline import apply_stages, compile_stages
from recordsync.sync.retry import RetryEngine
from recordsync.sync.tracker import SessionTracker
from recordsync.target.processor import TargetProcessor

logger = logging.getLogger(__name__)

MAX_ERROR_DETAILS = 100


@dataclass
class _SyncRun:
    """Mutable state of one run, owned by the orchestrator call."""

    config: SyncConfig
    adapter: SourceAdapter
    adapter_state: AdapterState
    processor: TargetProcessor
    actor: Optional[str]
    started: float
    session_id: str = ""
    stats: SyncStats = field(default_factory=SyncStats)
    failed_batches: int = 0
    error_details: List[Dict[str, Any]] = field(default_factory=list)
    halted: Optional[Dict[str, Any]] = None
    crash: Optional[BaseException] = None
    cancelled: bool = False
    exhausted: bool = False

    @property
    def operation(self) -> str:
        return f"{self.config.session_config.sync_type}.process_record"


class SyncOrchestrator:
    """Drives a sync run from source adapter to target store."""

    def __init__(
        self,
        tracker: Optional[SessionTracker] = None,
        retry_engine: Optional[RetryEngine] = None,
        event_sink: Optional[EventSink] = None,
        classifier: Optional[ErrorClassifier] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.event_sink: EventSink = event_sink or NullEventSink()
        self.classifier = classifier or ErrorClassifier()
        self.tracker = tracker or SessionTracker(event_sink=self.event_sink)
        self.retry_engine = retry_engine or RetryEngine(
            classifier=self.classifier, event_sink=self.event_sink
        )
        self._clock = clock

    def execute_sync(
        self,
        config: SyncConfig,
        actor: Optional[str] = None,
        dry_run: bool = False,
        session_id: Optional[str] = None,
    ) -> SyncResult:
        """Run a complete sync.

        Args:
            config: What to sync and how
            actor: Initiator; defaults to ``session_config.initiated_by``
            dry_run: Only validate and initialize; the target is not touched
            session_id: Optional id for the new session

        Returns:
            Result with aggregate statistics and structured error details

        Raises:
            ConfigValidationError: the configuration is invalid
            SyncInitializationError: the adapter or target could not be set up
        """
        started = self._clock()
        run = self._prepare(config, actor, started)
        if dry_run:
            logger.info("Dry run: configuration and connections are valid")
            return SyncResult.empty(ResultStatus.DRY_RUN, self._elapsed_ms(started))

        self._open_session(run, session_id)
        try:
            for _ in self._batches(run):
                pass
        except Exception as e:
            run.crash = e
            logger.exception(f"Sync session {run.session_id} crashed: {e}")
        except BaseException as e:
            run.crash = e
            self._finalize(run)
            raise
        return self._finalize(run)

    def stream_and_process(
        self,
        config: SyncConfig,
        actor: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Iterator[BatchResult]:
        """Yield one ``BatchResult`` per processed batch.

        The session is finalized when the iterator is exhausted, raises or is
        closed. Closing it early cancels the session.
        """
        run = self._prepare(config, actor, self._clock())
        self._open_session(run, session_id)
        try:
            yield from self._batches(run)
        except GeneratorExit:
            raise
        except BaseException as e:
            run.crash = e
            raise
        finally:
            if not run.exhausted and run.halted is None and run.crash is None and not run.cancelled:
                self._cancel_quietly(run.session_id, "stream closed by caller")
                run.cancelled = True
            self._finalize(run)

    def cancel_sync(self, session_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """Request cancellation; the run stops at its next batch boundary."""
        return self.tracker.cancel_session(session_id, reason).to_dict()

    def get_sync_status(self, session_id: str) -> Dict[str, Any]:
        return self.tracker.get_status(session_id)

    def _prepare(self, config: SyncConfig, actor: Optional[str], started: float) -> _SyncRun:
        validate_or_raise(config)

        try:
            adapter = create_adapter(config.source_adapter)
            adapter_state = adapter.initialize(config.source_config)
            adapter.validate_connection(adapter_state)
        except Exception as e:
            logger.error(f"Source adapter initialization failed: {e}")
            raise SyncInitializationError("source adapter", e) from e

        try:
            store = create_target(
                config.target_resource, config.target_config.unique_field, config.target_options
            )
            processor = TargetProcessor(store, config.target_config)
        except Exception as e:
            logger.error(f"Target initialization failed: {e}")
            raise SyncInitializationError("target", e) from e

        return _SyncRun(
            config=config,
            adapter=adapter,
            adapter_state=adapter_state,
            processor=processor,
            actor=actor or config.session_config.initiated_by,
            started=started,
        )

    def _open_session(self, run: _SyncRun, session_id: Optional[str]) -> None:
        try:
            total = run.adapter.get_total_count(run.adapter_state)
        except Exception as e:
            logger.warning(f"Could not estimate total record count: {e}")
            total = None
        limit = run.config.processing_config.limit
        estimated = min(total, limit) if total is not None else None

        session = self.tracker.start_session(
            run.config.session_config.sync_type,
            initiated_by=run.actor,
            estimated_total=estimated,
            session_id=session_id,
        )
        run.session_id = session.session_id
        self.tracker.mark_running(run.session_id)

    def _batches(self, run: _SyncRun) -> Iterator[BatchResult]:
        processing = run.config.processing_config
        predicates, transforms = compile_stages(processing.filters, processing.transformations)
        records = apply_stages(
            run.adapter.stream_records(run.adapter_state), predicates, transforms
        )
        source = islice(records, processing.limit)

        while True:
            if self._stop_if_cancelled(run, "before next batch"):
                return

            chunk: List[Record] = []
            stream_error: Optional[BaseException] = None
            try:
                for record in source:
                    chunk.append(record)
                    if len(chunk) >= processing.batch_size:
                        break
            except Exception as e:
                stream_error = e if isinstance(e, AdapterStreamError) else AdapterStreamError(str(e), cause=e)
                logger.error(f"Source stream failed after {len(chunk)} records: {e}")

            if not chunk and stream_error is None:
                run.exhausted = True
                return

            # Reading may block; a cancel can land while the chunk fills.
            if self._stop_if_cancelled(run, f"while reading; {len(chunk)} pulled records dropped"):
                return
            try:
                batch = self.tracker.start_batch(
                    run.session_id, len(chunk), [record.id for record in chunk]
                )
            except SessionTerminalError:
                logger.info(f"Session {run.session_id} ended before batch could start")
                run.cancelled = True
                return

            result = self._process_batch(run, batch.batch_number, chunk, stream_error)
            yield result

            if stream_error is not None:
                if not processing.continue_on_batch_error:
                    run.halted = result.error
                else:
                    run.exhausted = True
                return
            if result.failed and not processing.continue_on_batch_error:
                run.halted = result.error
                logger.error(f"Batch {result.batch_number} failed; halting session {run.session_id}")
                return

    def _stop_if_cancelled(self, run: _SyncRun, when: str) -> bool:
        if not self.tracker.is_cancelled(run.session_id):
            return False
        logger.info(f"Session {run.session_id} cancelled; stopping {when}")
        run.cancelled = True
        return True

    def _process_batch(
        self,
        run: _SyncRun,
        number: int,
        chunk: List[Record],
        stream_error: Optional[BaseException],
    ) -> BatchResult:
        processing = run.config.processing_config
        interval = processing.progress_interval

        def on_result(results: List[ProcessingResult]) -> None:
            if len(results) % interval == 0 and len(results) < len(chunk):
                self.tracker.update_batch_progress(
                    run.session_id, number, SyncStats.from_results(results)
                )

        try:
            results = run.processor.process_batch(
                chunk,
                actor=run.actor,
                parallel=processing.parallel,
                max_concurrency=processing.max_concurrency,
                timeout_s=processing.record_timeout_s,
                process=self._record_unit(run, len(chunk), number),
                on_result=on_result,
            )
        except Exception as e:
            self.tracker.fail_batch(run.session_id, number, SyncStats(), str(e))
            run.failed_batches += 1
            raise

        stats = SyncStats.from_results(results)
        run.stats = run.stats + stats
        self._collect_record_errors(run, results, number)

        if run.config.circuit_breaker.enabled and processing.enable_error_recovery:
            self.retry_engine.evaluate_batch(
                run.operation,
                [result.error if result.is_error else None for result in results],
                {"session_id": run.session_id, "batch_number": number},
                run.config.circuit_breaker,
            )

        failure: Optional[SyncError] = None
        if stream_error is not None:
            failure = BatchFailedError(number, f"source stream failed: {stream_error}")
        elif stats.errors and not processing.continue_on_batch_error:
            failure = BatchFailedError(number, f"{stats.errors} record errors")

        if failure is None:
            self.tracker.complete_batch(run.session_id, number, stats)
            logger.info(
                f"Batch {number} completed: created={stats.created}, updated={stats.updated}, "
                f"existing={stats.existing}, errors={stats.errors}"
            )
            return BatchResult(number, stats, results)

        self.tracker.fail_batch(run.session_id, number, stats, failure.message)
        run.failed_batches += 1
        cause = stream_error or failure
        error = {
            "batch_number": number,
            **self.classifier.user_message(
                self.classifier.classify(cause, {"operation": "streaming records"})
            ),
        }
        self._add_error(run, error)
        logger.warning(f"Batch {number} failed: {failure.message}")
        return BatchResult(number, stats, results, failed=True, error=error)

    def _record_unit(
        self, run: _SyncRun, batch_size: int, batch_number: int
    ) -> Callable[[Record], ProcessingResult]:
        config = run.config
        context = {
            "operation": run.operation,
            "resource_type": getattr(run.processor.store, "name", "target"),
            "batch_size": batch_size,
            "session_id": run.session_id,
            "batch_number": batch_number,
        }

        def process(record: Record) -> ProcessingResult:
            if not config.processing_config.enable_error_recovery:
                return run.processor.process_record(record, actor=run.actor)

            def attempt() -> ProcessingResult:
                result = run.processor.process_record(record, actor=run.actor)
                if result.is_error:
                    raise result.error or SyncError(f"Record {record.id} failed")
                return result

            try:
                return self.retry_engine.execute_with_retry(
                    run.operation,
                    attempt,
                    context,
                    policy=config.retry_policy,
                    circuit_breaker=config.circuit_breaker,
                )
            except Exception as e:
                return ProcessingResult.failed(record.id, e)

        return process

    def _collect_record_errors(
        self, run: _SyncRun, results: List[ProcessingResult], batch_number: int
    ) -> None:
        for result in results:
            if not result.is_error or result.error is None:
                continue
            classification = self.classifier.classify(
                result.error, {"operation": "processing records"}
            )
            self._add_error(
                run,
                {
                    "record_id": result.record_id,
                    "batch_number": batch_number,
                    **self.classifier.user_message(classification),
                },
            )

    @staticmethod
    def _add_error(run: _SyncRun, error: Dict[str, Any]) -> None:
        if len(run.error_details) < MAX_ERROR_DETAILS:
            run.error_details.append(error)

    def _finalize(self, run: _SyncRun) -> SyncResult:
        session_id = run.session_id
        if run.crash is not None:
            status = ResultStatus.FAILURE
            crash = run.crash
            if isinstance(crash, SyncError):
                error = crash.to_dict()
            else:
                error = self.classifier.user_message(
                    self.classifier.classify(crash, {"operation": "running the sync"})
                )
            self._add_error(run, error)
            self._fail_quietly(session_id, error)
        elif run.halted is not None:
            status = ResultStatus.FAILURE
            self._fail_quietly(session_id, run.halted)
        elif run.cancelled or self.tracker.is_cancelled(session_id):
            status = ResultStatus.PARTIAL
        else:
            try:
                self.tracker.complete_session(session_id)
                status = ResultStatus.PARTIAL if run.failed_batches else ResultStatus.SUCCESS
            except SessionTerminalError:
                # Cancelled between the last batch and finalization.
                status = ResultStatus.PARTIAL

        result = SyncResult(
            status=status,
            stats=run.stats,
            session_id=session_id,
            error_details=list(run.error_details),
            processing_time_ms=self._elapsed_ms(run.started),
        )
        # Finished sessions are served from the session store from here on.
        self.tracker.forget(session_id)
        logger.info(
            f"Sync session {session_id} finished with status {status.value}: "
            f"processed={run.stats.total_processed}, errors={run.stats.errors}"
        )
        return result

    def _fail_quietly(self, session_id: str, error: Dict[str, Any]) -> None:
        try:
            self.tracker.fail_session(session_id, error)
        except SessionTerminalError:
            logger.info(f"Session {session_id} already terminal; failure not recorded")

    def _cancel_quietly(self, session_id: str, reason: str) -> None:
        try:
            self.tracker.cancel_session(session_id, reason)
        except SessionTerminalError:
            pass

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)
