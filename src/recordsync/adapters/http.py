"""Paginated REST source adapter."""

import logging
from typing import Any, Dict, Iterator, List, Optional

import requests

from recordsync.adapters.base import AdapterState, SourceAdapter, normalize_record
from recordsync.api.http_client import JsonApiClient
from recordsync.domain.errors import AdapterError, AdapterStreamError, SyncError
from recordsync.domain.models import Record

logger = logging.getLogger(__name__)

PAGINATION_MODES = ("offset", "page", "cursor")


class HttpSourceAdapter(SourceAdapter):
    """Streams records from a paginated JSON endpoint.

    Config keys:
        base_url, endpoint: where to fetch pages from (required)
        api_token: optional bearer token
        pagination: ``offset`` (default), ``page`` or ``cursor``
        page_size: records requested per page (default 100)
        results_key: key holding the records in a page (default ``results``)
        total_key: key holding the total count (default ``total``)
        cursor_key: key holding the next cursor in cursor mode (default ``next``)
        id_field: record identifier key (default ``id``)
        fields_mapping: optional key renames applied while normalizing
        params: extra query parameters
        max_pages: stop after this many pages
        timeout: request timeout in seconds
    """

    name = "http"

    def __init__(self, client: Optional[JsonApiClient] = None):
        self.client = client

    def initialize(self, config: Dict[str, Any]) -> AdapterState:
        missing = [key for key in ("base_url", "endpoint") if not config.get(key)]
        if missing and self.client is None:
            raise AdapterError(f"http adapter missing config: {', '.join(missing)}")

        pagination = config.get("pagination", "offset")
        if pagination not in PAGINATION_MODES:
            raise AdapterError(f"Unknown pagination mode: {pagination}")

        client = self.client or JsonApiClient(
            config["base_url"],
            api_token=config.get("api_token"),
            timeout=config.get("timeout", 30),
        )
        return AdapterState(config=dict(config), data={"client": client})

    def stream_records(self, state: AdapterState) -> Iterator[Record]:
        config = state.config
        client: JsonApiClient = state.data["client"]
        page_size = int(config.get("page_size", 100))
        pagination = config.get("pagination", "offset")
        max_pages = config.get("max_pages")

        offset = 0
        page_number = 1
        cursor: Optional[str] = None
        pages = 0

        while True:
            params = dict(config.get("params") or {})
            params["limit"] = page_size
            if pagination == "offset":
                params["offset"] = offset
            elif pagination == "page":
                params["page"] = page_number
            elif cursor:
                params["cursor"] = cursor

            page = self._fetch_page(client, config.get("endpoint", ""), params)
            rows = self._rows(page, config.get("results_key", "results"))
            pages += 1
            logger.debug(f"Fetched page {pages} with {len(rows)} records")

            for row in rows:
                yield normalize_record(
                    row,
                    id_field=config.get("id_field", "id"),
                    fields_mapping=config.get("fields_mapping"),
                )

            if max_pages is not None and pages >= max_pages:
                return
            if pagination == "cursor":
                cursor = page.get(config.get("cursor_key", "next")) if isinstance(page, dict) else None
                if not cursor:
                    return
            elif len(rows) < page_size:
                return

            offset += len(rows)
            page_number += 1

    def validate_connection(self, state: AdapterState) -> None:
        client: JsonApiClient = state.data["client"]
        if not client.test_connection(state.config.get("endpoint", "")):
            raise AdapterError(f"Cannot reach source at {client.base_url}")

    def get_total_count(self, state: AdapterState) -> Optional[int]:
        client: JsonApiClient = state.data["client"]
        try:
            page = client.get_json(
                state.config.get("endpoint", ""),
                params={**(state.config.get("params") or {}), "limit": 1},
            )
        except (SyncError, requests.RequestException, ValueError) as e:
            logger.warning(f"Could not determine total record count: {e}")
            return None
        total = page.get(state.config.get("total_key", "total")) if isinstance(page, dict) else None
        return int(total) if isinstance(total, (int, str)) and str(total).isdigit() else None

    @staticmethod
    def _fetch_page(client: JsonApiClient, endpoint: str, params: Dict[str, Any]) -> Any:
        try:
            return client.get_json(endpoint, params=params)
        except (SyncError, requests.RequestException, ValueError) as e:
            raise AdapterStreamError(f"Failed to fetch page from {endpoint}: {e}", cause=e) from e

    @staticmethod
    def _rows(page: Any, results_key: str) -> List[Dict[str, Any]]:
        if isinstance(page, list):
            return page
        if isinstance(page, dict):
            return list(page.get(results_key) or [])
        raise AdapterStreamError(f"Unexpected page payload: {type(page).__name__}")
