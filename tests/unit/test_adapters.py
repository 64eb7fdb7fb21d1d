"""Tests for source adapters, the JSON client and the HTTP target store."""

from unittest.mock import Mock, patch

import pytest
import requests

from recordsync.adapters.base import normalize_record
from recordsync.adapters.http import HttpSourceAdapter
from recordsync.adapters.memory import InMemorySourceAdapter
from recordsync.api.http_client import JsonApiClient
from recordsync.domain.errors import (
    AdapterError,
    AdapterStreamError,
    DuplicateKeyError,
    NetworkError,
    PerformanceError,
)
from recordsync.factories.registry import create_adapter, create_target, is_known_adapter
from recordsync.target.store import HttpTargetStore, InMemoryTargetStore


def response(payload=None, status=200, headers=None):
    mock = Mock(status_code=status, headers=headers or {})
    mock.json.return_value = payload
    if status >= 400:
        mock.raise_for_status.side_effect = requests.HTTPError(f"HTTP {status}", response=mock)
    return mock


def http_config(**overrides):
    config = {"base_url": "https://api.example.com/v1", "endpoint": "contacts", "page_size": 2}
    config.update(overrides)
    return config


class TestNormalizeRecord:
    """Test raw row normalization."""

    def test_timestamps_and_mapping(self):
        """Test timestamps are parsed and keys renamed."""
        record = normalize_record(
            {"uid": 9, "fullName": "Ada", "created_at": "2025-09-16T10:00:00Z"},
            id_field="uid",
            fields_mapping={"fullName": "name"},
        )

        assert record.id == 9
        assert record.fields["name"] == "Ada"
        assert record.created_at.year == 2025
        assert record.updated_at is None


class TestInMemorySourceAdapter:
    """Test the in-memory adapter."""

    def test_synthetic_records(self):
        """Test record_count generates records."""
        adapter = InMemorySourceAdapter()
        state = adapter.initialize({"record_count": 5})

        records = list(adapter.stream_records(state))

        assert [r.id for r in records] == ["rec-1", "rec-2", "rec-3", "rec-4", "rec-5"]
        assert adapter.get_total_count(state) == 5

    def test_repeated_pages(self):
        """Test a repeated page serves its records twice."""
        adapter = InMemorySourceAdapter()
        state = adapter.initialize({"record_count": 5, "page_size": 2, "repeat_pages": [1]})

        ids = [r.id for r in adapter.stream_records(state)]

        assert ids == ["rec-1", "rec-2", "rec-1", "rec-2", "rec-3", "rec-4", "rec-5"]
        assert adapter.pages_served == 4

    def test_fail_after(self):
        """Test the stream fails after the configured number of records."""
        adapter = InMemorySourceAdapter()
        state = adapter.initialize({"record_count": 5, "fail_after": 3})
        stream = adapter.stream_records(state)

        assert [next(stream).id for _ in range(3)] == ["rec-1", "rec-2", "rec-3"]
        with pytest.raises(AdapterStreamError):
            next(stream)

    def test_requires_records(self):
        """Test missing configuration is rejected."""
        with pytest.raises(AdapterError):
            InMemorySourceAdapter().initialize({})


class TestHttpSourceAdapter:
    """Test the paginated REST adapter."""

    @patch("requests.request")
    def test_offset_pagination(self, mock_request):
        """Test pages are fetched until a short page."""
        mock_request.side_effect = [
            response({"results": [{"id": 1}, {"id": 2}]}),
            response({"results": [{"id": 3}]}),
        ]
        adapter = HttpSourceAdapter()
        state = adapter.initialize(http_config(api_token="secret"))

        ids = [r.id for r in adapter.stream_records(state)]

        assert ids == [1, 2, 3]
        first, second = mock_request.call_args_list
        assert first.args == ("GET", "https://api.example.com/v1/contacts")
        assert first.kwargs["params"] == {"limit": 2, "offset": 0}
        assert second.kwargs["params"] == {"limit": 2, "offset": 2}
        assert first.kwargs["headers"]["Authorization"] == "Bearer secret"

    @patch("requests.request")
    def test_cursor_pagination(self, mock_request):
        """Test the cursor is followed until it runs out."""
        mock_request.side_effect = [
            response({"results": [{"id": 1}], "next": "abc"}),
            response({"results": [{"id": 2}], "next": None}),
        ]
        adapter = HttpSourceAdapter()
        state = adapter.initialize(http_config(pagination="cursor"))

        assert [r.id for r in adapter.stream_records(state)] == [1, 2]
        assert mock_request.call_args_list[1].kwargs["params"]["cursor"] == "abc"

    @patch("requests.request")
    def test_transport_failure_ends_stream(self, mock_request):
        """Test fetch failures surface as stream errors."""
        mock_request.side_effect = requests.ConnectionError("refused")
        adapter = HttpSourceAdapter()
        state = adapter.initialize(http_config())

        with pytest.raises(AdapterStreamError) as exc_info:
            list(adapter.stream_records(state))
        assert isinstance(exc_info.value.cause, NetworkError)

    @patch("requests.request")
    def test_total_count(self, mock_request):
        """Test the total is read from the configured key."""
        mock_request.return_value = response({"count": "42", "results": []})
        adapter = HttpSourceAdapter()
        state = adapter.initialize(http_config(total_key="count"))

        assert adapter.get_total_count(state) == 42

    def test_invalid_configuration(self):
        """Test missing URLs and unknown pagination are rejected."""
        with pytest.raises(AdapterError):
            HttpSourceAdapter().initialize({"endpoint": "contacts"})
        with pytest.raises(AdapterError):
            HttpSourceAdapter().initialize(http_config(pagination="scroll"))


class TestJsonApiClient:
    """Test error mapping in the JSON client."""

    @patch("requests.request")
    def test_throttling_is_performance_error(self, mock_request):
        """Test 429 maps to PerformanceError with Retry-After."""
        mock_request.return_value = response(status=429, headers={"Retry-After": "5"})

        with pytest.raises(PerformanceError) as exc_info:
            JsonApiClient("https://api.example.com").get_json("contacts")
        assert exc_info.value.details["retry_after"] == "5"

    @patch("requests.request")
    def test_server_error_is_network_error(self, mock_request):
        """Test 5xx responses map to NetworkError."""
        mock_request.return_value = response(status=502)

        with pytest.raises(NetworkError):
            JsonApiClient("https://api.example.com").get_json("contacts")

    @patch("requests.request")
    def test_connection_test(self, mock_request):
        """Test connection checks report failures as False."""
        mock_request.side_effect = requests.Timeout("slow")

        assert JsonApiClient("https://api.example.com").test_connection() is False


class TestHttpTargetStore:
    """Test the REST target store."""

    @patch("requests.request")
    def test_conflict_is_duplicate(self, mock_request):
        """Test HTTP 409 on create raises DuplicateKeyError."""
        mock_request.return_value = response(status=409)
        store = HttpTargetStore(unique_field="email", base_url="https://api.example.com")

        with pytest.raises(DuplicateKeyError) as exc_info:
            store.create({"email": "ada@example.com"})
        assert exc_info.value.field == "email"

    @patch("requests.request")
    def test_find_and_update(self, mock_request):
        """Test lookup by field and PATCH by id."""
        mock_request.side_effect = [
            response({"results": [{"id": 3, "email": "ada@example.com"}]}),
            response({"id": 3, "email": "ada@example.com", "name": "Ada"}),
        ]
        store = HttpTargetStore(unique_field="email", base_url="https://api.example.com", resource="people")

        existing = store.find_by("email", "ada@example.com")
        updated = store.update(existing, {"name": "Ada"})

        assert updated["name"] == "Ada"
        method, url = mock_request.call_args_list[1].args
        assert (method, url) == ("PATCH", "https://api.example.com/people/3")


class TestRegistry:
    """Test adapter and target resolution."""

    def test_resolves_names_and_instances(self):
        """Test registered names and instances both resolve."""
        adapter = InMemorySourceAdapter()
        store = InMemoryTargetStore()

        assert isinstance(create_adapter("memory"), InMemorySourceAdapter)
        assert create_adapter(adapter) is adapter
        assert create_target(store, "email").unique_field == "email"
        assert create_target("memory", "id").unique_field == "id"
        assert is_known_adapter("ftp") is False

    def test_unknown_names(self):
        """Test unknown handles raise KeyError."""
        with pytest.raises(KeyError):
            create_adapter("ftp")
        with pytest.raises(KeyError):
            create_target("mainframe", "id")
