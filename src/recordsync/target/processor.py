"""Applies records to the target store with duplicate-aware upsert semantics."""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from math import ceil
from typing import Any, Callable, Dict, List, Optional, Sequence

from recordsync.config.manager import TargetConfig
from recordsync.domain.errors import (
    DuplicateKeyError,
    RecordTimeoutError,
    RecordValidationError,
    TransformationError,
)
from recordsync.domain.models import ProcessingResult, Record, SyncStats
from recordsync.target.store import TargetStore
from recordsync.target.transformer import RecordTransformer
from recordsync.target.validator import RecordValidator

logger = logging.getLogger(__name__)

PARALLEL_THRESHOLD = 10
START_POLL_SECONDS = 0.05


class TargetProcessor:
    """Validates, transforms, maps and writes records to a ``TargetStore``."""

    def __init__(self, store: TargetStore, config: TargetConfig, clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.config = config
        self._clock = clock
        self.validator = RecordValidator(config.validation_rules)
        self.transformer = RecordTransformer(config.transformations)

    def process_record(
        self,
        record: Record,
        config: Optional[TargetConfig] = None,
        actor: Optional[str] = None,
    ) -> ProcessingResult:
        """Apply one record to the target.

        Args:
            record: Record to apply
            config: Override for the processor's target config
            actor: Who initiated the write, for logging

        Returns:
            Exactly one result; errors are returned, never raised
        """
        config = config or self.config
        validator, transformer = self._pipeline(config)

        failures = validator.validate(record.fields)
        if failures:
            error = RecordValidationError(
                "; ".join(failure["message"] for failure in failures), failures
            )
            if not config.continue_on_validation_error:
                logger.debug(f"Record {record.id} failed validation: {error}")
                return ProcessingResult.failed(record.id, error)
            logger.warning(f"Record {record.id} failed validation, continuing: {error}")

        try:
            fields = transformer.transform(record.fields)
        except TransformationError as e:
            logger.warning(f"Record {record.id} transformation failed: {e}")
            return ProcessingResult.failed(record.id, e)

        attrs = self.map_fields(record, fields, config.field_mapping)

        try:
            created = self.store.create(attrs, action=config.create_action)
        except DuplicateKeyError as e:
            if e.field != config.unique_field:
                return ProcessingResult.failed(record.id, e)
            return self._handle_duplicate(record, attrs, config, e, actor)
        except Exception as e:
            logger.debug(f"Creating record {record.id} failed: {e}")
            return ProcessingResult.failed(record.id, e)

        logger.debug(f"Created record {record.id}" + (f" for {actor}" if actor else ""))
        return ProcessingResult.created(record.id, created)

    def process_batch(
        self,
        records: Sequence[Record],
        actor: Optional[str] = None,
        parallel: bool = False,
        max_concurrency: int = 4,
        timeout_s: float = 30.0,
        process: Optional[Callable[[Record], ProcessingResult]] = None,
        on_result: Optional[Callable[[List[ProcessingResult]], None]] = None,
    ) -> List[ProcessingResult]:
        """Process records in order, optionally fanning out to a thread pool.

        Parallel processing only kicks in for more than ``PARALLEL_THRESHOLD``
        records. A record exceeding ``timeout_s`` yields an error result; its
        worker thread cannot be interrupted and its eventual result is
        discarded.

        ``on_result`` is called with the results collected so far, in record
        order, each time another record finishes.
        """
        process = process or (lambda item: self.process_record(item, actor=actor))
        if not parallel or len(records) <= PARALLEL_THRESHOLD:
            results: List[ProcessingResult] = []
            for record in records:
                results.append(self._safe(process, record))
                if on_result is not None:
                    on_result(results)
            return results
        return self._process_parallel(list(records), process, max_concurrency, timeout_s, on_result)

    @staticmethod
    def get_batch_stats(results: Sequence[ProcessingResult]) -> Dict[str, int]:
        stats = SyncStats.from_results(list(results))
        return {
            "total": stats.total_processed,
            "created": stats.created,
            "updated": stats.updated,
            "existing": stats.existing,
            "errors": stats.errors,
        }

    @staticmethod
    def map_fields(
        record: Record, fields: Dict[str, Any], field_mapping: Optional[Dict[str, str]]
    ) -> Dict[str, Any]:
        """Map source fields to target attributes.

        Without an explicit mapping every field is copied and the source id is
        kept as ``source_id``.
        """
        if field_mapping:
            return {target: fields.get(source) for source, target in field_mapping.items()}
        attrs = dict(fields)
        attrs.setdefault("source_id", record.id)
        return attrs

    def _pipeline(self, config: TargetConfig):
        if config is self.config:
            return self.validator, self.transformer
        return RecordValidator(config.validation_rules), RecordTransformer(config.transformations)

    def _handle_duplicate(
        self,
        record: Record,
        attrs: Dict[str, Any],
        config: TargetConfig,
        duplicate: DuplicateKeyError,
        actor: Optional[str],
    ) -> ProcessingResult:
        strategy = config.duplicate_strategy
        if strategy in ("error", "create"):
            return ProcessingResult.failed(record.id, duplicate)

        try:
            existing = self.store.find_by(config.unique_field, duplicate.value)
        except Exception as e:
            logger.warning(f"Lookup of duplicate {duplicate.field}={duplicate.value!r} failed: {e}")
            return ProcessingResult.failed(record.id, e)
        if existing is None:
            return ProcessingResult.failed(record.id, duplicate)

        if strategy == "skip":
            return ProcessingResult.existing(record.id, existing)

        if all(existing.get(key) == value for key, value in attrs.items()):
            return ProcessingResult.existing(record.id, existing)

        try:
            updated = self.store.update(existing, attrs, action=config.update_action)
        except Exception as e:
            logger.warning(
                f"Update of existing record {duplicate.field}={duplicate.value!r} failed, "
                f"keeping it unchanged: {e}"
            )
            return ProcessingResult.existing(record.id, existing)

        logger.debug(f"Updated record {record.id}" + (f" for {actor}" if actor else ""))
        return ProcessingResult.updated(record.id, updated)

    @staticmethod
    def _safe(process: Callable[[Record], ProcessingResult], record: Record) -> ProcessingResult:
        try:
            return process(record)
        except Exception as e:
            logger.error(f"Unexpected error processing record {record.id}: {e}")
            return ProcessingResult.failed(record.id, e)

    def _process_parallel(
        self,
        records: List[Record],
        process: Callable[[Record], ProcessingResult],
        max_concurrency: int,
        timeout_s: float,
        on_result: Optional[Callable[[List[ProcessingResult]], None]] = None,
    ) -> List[ProcessingResult]:
        started_at: List[Optional[float]] = [None] * len(records)

        def run(index: int) -> ProcessingResult:
            started_at[index] = self._clock()
            return self._safe(process, records[index])

        executor = ThreadPoolExecutor(max_workers=max_concurrency, thread_name_prefix="recordsync")
        batch_deadline = self._clock() + timeout_s * ceil(len(records) / max_concurrency)
        try:
            futures = [executor.submit(run, index) for index in range(len(records))]
            results: List[ProcessingResult] = []
            for index, future in enumerate(futures):
                results.append(
                    self._await(future, started_at, index, records[index], timeout_s, batch_deadline)
                )
                if on_result is not None:
                    on_result(results)
            return results
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _await(
        self,
        future: "Future[ProcessingResult]",
        started_at: List[Optional[float]],
        index: int,
        record: Record,
        timeout_s: float,
        batch_deadline: float,
    ) -> ProcessingResult:
        while True:
            start = started_at[index]
            now = self._clock()
            if start is None:
                if now >= batch_deadline:
                    future.cancel()
                    break
                wait = min(START_POLL_SECONDS, batch_deadline - now)
            else:
                wait = timeout_s - (now - start)
                if wait <= 0:
                    break
            try:
                return future.result(timeout=wait)
            except FutureTimeoutError:
                if start is not None:
                    break

        logger.warning(f"Record {record.id} timed out after {timeout_s}s")
        return ProcessingResult.failed(
            record.id, RecordTimeoutError(f"Record {record.id} exceeded {timeout_s}s", timeout_s=timeout_s)
        )
