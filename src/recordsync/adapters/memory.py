"""In-memory source adapter for tests, demos and replaying exported data."""

import logging
from typing import Any, Dict, Iterator, List, Optional

from recordsync.adapters.base import AdapterState, SourceAdapter, normalize_record
from recordsync.domain.errors import AdapterError, AdapterStreamError
from recordsync.domain.models import Record

logger = logging.getLogger(__name__)


class InMemorySourceAdapter(SourceAdapter):
    """Streams records held in memory.

    Config keys:
        records: list of ``Record`` objects or raw dicts
        record_count: generate this many synthetic records instead
        id_field: key holding the identifier in raw dicts (default ``id``)
        page_size: simulate pagination; pages are counted in ``pages_served``
        repeat_pages: page numbers (1-based) that are served twice
        fail_after: raise ``AdapterStreamError`` after yielding this many records
    """

    name = "memory"

    def __init__(self, records: Optional[List[Any]] = None):
        self.records = records
        self.pages_served = 0

    def initialize(self, config: Dict[str, Any]) -> AdapterState:
        records = config.get("records", self.records)
        record_count = config.get("record_count")

        if records is None and record_count is None:
            raise AdapterError("memory adapter requires 'records' or 'record_count'")
        if records is None:
            if not isinstance(record_count, int) or record_count < 0:
                raise AdapterError(f"Invalid record_count: {record_count!r}")
            records = [
                {"id": f"rec-{index}", "name": f"Record {index}", "value": index}
                for index in range(1, record_count + 1)
            ]

        id_field = config.get("id_field", "id")
        normalized = [
            item if isinstance(item, Record) else normalize_record(item, id_field)
            for item in records
        ]
        self.pages_served = 0
        return AdapterState(config=dict(config), data={"records": normalized})

    def stream_records(self, state: AdapterState) -> Iterator[Record]:
        records: List[Record] = state.data["records"]
        page_size = state.config.get("page_size") or len(records) or 1
        repeat_pages = set(state.config.get("repeat_pages", []))
        fail_after = state.config.get("fail_after")

        yielded = 0
        for page_number, start in enumerate(range(0, len(records), page_size), start=1):
            page = records[start:start + page_size]
            served = [page, page] if page_number in repeat_pages else [page]
            for current in served:
                self.pages_served += 1
                logger.debug(f"Serving page {page_number} with {len(current)} records")
                for record in current:
                    if fail_after is not None and yielded >= fail_after:
                        raise AdapterStreamError(
                            f"Simulated stream failure after {yielded} records"
                        )
                    yielded += 1
                    yield record

    def get_total_count(self, state: AdapterState) -> Optional[int]:
        return len(state.data["records"])
