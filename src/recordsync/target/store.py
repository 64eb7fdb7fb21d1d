"""Target store capability and its implementations."""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests

from recordsync.api.http_client import JsonApiClient
from recordsync.domain.errors import DataIntegrityError, DuplicateKeyError, RecordValidationError

logger = logging.getLogger(__name__)


class TargetStore(ABC):
    """Create/find/update capability the target processor writes through.

    ``create`` must raise ``DuplicateKeyError`` when the unique field collides
    with an existing record; any other failure is reported as-is.
    """

    name = "base"

    def __init__(self, unique_field: Optional[str] = None):
        self.unique_field = unique_field

    @abstractmethod
    def create(self, attrs: Dict[str, Any], action: str = "create") -> Dict[str, Any]:
        """Insert a record and return it as stored."""

    @abstractmethod
    def find_by(self, field: str, value: Any) -> Optional[Dict[str, Any]]:
        """Return the record whose ``field`` equals ``value``, if any."""

    @abstractmethod
    def update(
        self, existing: Dict[str, Any], attrs: Dict[str, Any], action: str = "update"
    ) -> Dict[str, Any]:
        """Apply ``attrs`` to an existing record and return the result."""

    def ping(self) -> bool:
        return True


class InMemoryTargetStore(TargetStore):
    """Thread-safe store with a unique index on ``unique_field``.

    Records keep the ``id`` they were written with; one is assigned when missing.
    """

    name = "memory"

    def __init__(self, unique_field: Optional[str] = None, **options: Any):
        super().__init__(unique_field)
        self._lock = threading.Lock()
        self._records: Dict[Any, Dict[str, Any]] = {}
        self._index: Dict[Any, Any] = {}
        self._ids = itertools.count(1)
        self.options = options

    def create(self, attrs: Dict[str, Any], action: str = "create") -> Dict[str, Any]:
        with self._lock:
            if self.unique_field:
                key = attrs.get(self.unique_field)
                if key in self._index:
                    raise DuplicateKeyError(
                        self.unique_field, key, existing=dict(self._records[self._index[key]])
                    )
            record_id = next(self._ids)
            stored = dict(attrs)
            stored.setdefault("id", record_id)
            self._records[record_id] = stored
            if self.unique_field:
                self._index[attrs.get(self.unique_field)] = record_id
            return dict(stored)

    def find_by(self, field: str, value: Any) -> Optional[Dict[str, Any]]:
        with self._lock:
            if field == self.unique_field:
                record_id = self._index.get(value)
                return dict(self._records[record_id]) if record_id is not None else None
            for stored in self._records.values():
                if stored.get(field) == value:
                    return dict(stored)
            return None

    def update(
        self, existing: Dict[str, Any], attrs: Dict[str, Any], action: str = "update"
    ) -> Dict[str, Any]:
        with self._lock:
            record_id = self._locate(existing)
            if record_id is None:
                raise DataIntegrityError(f"Record {existing.get('id')!r} no longer exists")
            updated = {**self._records[record_id], **attrs}
            self._records[record_id] = updated
            return dict(updated)

    def _locate(self, existing: Dict[str, Any]) -> Optional[int]:
        if self.unique_field and existing.get(self.unique_field) in self._index:
            return self._index[existing[self.unique_field]]
        for record_id, stored in self._records.items():
            if stored.get("id") == existing.get("id"):
                return record_id
        return None

    def all(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(stored) for stored in self._records.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class HttpTargetStore(TargetStore):
    """Writes records to a REST collection.

    ``POST {resource}`` creates, ``GET {resource}?{field}={value}`` finds and
    ``PATCH {resource}/{id}`` updates. Non-default actions are posted to
    ``{resource}/{action}``. HTTP 409 maps to ``DuplicateKeyError`` and 422 to
    ``RecordValidationError``.
    """

    name = "http"

    def __init__(
        self,
        unique_field: Optional[str] = None,
        base_url: str = "",
        resource: str = "records",
        api_token: Optional[str] = None,
        timeout: float = 30,
        results_key: str = "results",
        client: Optional[JsonApiClient] = None,
    ):
        super().__init__(unique_field)
        self.resource = resource.strip("/")
        self.results_key = results_key
        self.client = client or JsonApiClient(base_url, api_token=api_token, timeout=timeout)

    def create(self, attrs: Dict[str, Any], action: str = "create") -> Dict[str, Any]:
        endpoint = self.resource if action == "create" else f"{self.resource}/{action}"
        try:
            return self.client.request("POST", endpoint, json=attrs).json()
        except requests.HTTPError as e:
            self._raise_for_write(e, attrs)
            raise

    def find_by(self, field: str, value: Any) -> Optional[Dict[str, Any]]:
        payload = self.client.get_json(self.resource, params={field: value})
        rows = payload if isinstance(payload, list) else payload.get(self.results_key, [])
        for row in rows:
            if row.get(field) == value:
                return row
        return None

    def update(
        self, existing: Dict[str, Any], attrs: Dict[str, Any], action: str = "update"
    ) -> Dict[str, Any]:
        endpoint = f"{self.resource}/{existing['id']}"
        if action != "update":
            endpoint = f"{endpoint}/{action}"
        try:
            return self.client.request("PATCH", endpoint, json=attrs).json()
        except requests.HTTPError as e:
            self._raise_for_write(e, attrs)
            raise

    def ping(self) -> bool:
        return self.client.test_connection(self.resource)

    def _raise_for_write(self, error: requests.HTTPError, attrs: Dict[str, Any]) -> None:
        status = error.response.status_code if error.response is not None else None
        if status == 409 and self.unique_field:
            raise DuplicateKeyError(self.unique_field, attrs.get(self.unique_field)) from error
        if status == 422:
            raise RecordValidationError(f"Target rejected record: {error}") from error
