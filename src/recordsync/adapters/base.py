"""Source adapter contract."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from recordsync.domain.models import Record
from recordsync.utils.date_parser import parse_timestamp


@dataclass
class AdapterState:
    """Opaque state returned by ``initialize`` and threaded through the stream."""

    config: Dict[str, Any]
    data: Dict[str, Any] = field(default_factory=dict)


class SourceAdapter(ABC):
    """Streams normalized records from one external source.

    A stream is lazy and pull based; it can only be restarted by calling
    ``initialize`` again. Failures while pulling must surface as
    ``AdapterStreamError`` so the orchestrator can fail the batch instead of
    a single record.
    """

    name = "base"

    @abstractmethod
    def initialize(self, config: Dict[str, Any]) -> AdapterState:
        """Prepare the adapter. Raises ``AdapterError`` on bad configuration."""

    @abstractmethod
    def stream_records(self, state: AdapterState) -> Iterator[Record]:
        """Yield records from the source."""

    def validate_connection(self, state: AdapterState) -> None:
        """Raise if the source cannot be reached. Adapters without a check succeed."""

    def get_total_count(self, state: AdapterState) -> Optional[int]:
        """Total number of records, or None when the source cannot tell."""
        return None


def normalize_record(
    raw: Dict[str, Any],
    id_field: str = "id",
    fields_mapping: Optional[Dict[str, str]] = None,
) -> Record:
    """Turn a raw source row into a ``Record``.

    Args:
        raw: Row as returned by the source
        id_field: Key holding the source identifier
        fields_mapping: Optional source-key to field-name renames

    Returns:
        Normalized record
    """
    fields = dict(raw)
    if fields_mapping:
        fields = {fields_mapping.get(key, key): value for key, value in fields.items()}

    created_at = _timestamp(fields.get("created_at"))
    updated_at = _timestamp(fields.get("updated_at"))
    return Record(
        id=raw.get(id_field),
        fields=fields,
        created_at=created_at,
        updated_at=updated_at,
    )


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return parse_timestamp(str(value))
