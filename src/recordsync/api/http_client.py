"""Minimal JSON REST client shared by the HTTP source adapter and target store."""

import logging
from typing import Any, Dict, Optional

import requests

from recordsync.domain.errors import NetworkError, PerformanceError

logger = logging.getLogger(__name__)

OVERLOAD_STATUS_CODES = (429, 503)


class JsonApiClient:
    """Simple JSON API client with bearer-token authentication."""

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        timeout: float = 30,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        """Initialize client.

        Args:
            base_url: API base URL
            api_token: Optional bearer token
            timeout: Request timeout in seconds
            headers: Extra headers sent with every request
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        if api_token:
            self.headers["Authorization"] = f"Bearer {api_token}"

    def request(self, method: str, endpoint: str, **kwargs: Any) -> requests.Response:
        """Make an authenticated request.

        Transport failures become ``NetworkError``, rate limiting and overload
        become ``PerformanceError``. Other HTTP errors are raised as
        ``requests.HTTPError`` for the caller to interpret.

        Args:
            method: HTTP method
            endpoint: Path relative to the base URL
            **kwargs: Additional request arguments

        Returns:
            Response object
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        try:
            response = requests.request(
                method, url, headers=self.headers, timeout=self.timeout, **kwargs
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.error(f"{method} {url} failed: {e}")
            raise NetworkError(str(e), url=url) from e

        if response.status_code in OVERLOAD_STATUS_CODES:
            logger.warning(f"{method} {url} throttled with HTTP {response.status_code}")
            raise PerformanceError(
                f"HTTP {response.status_code} from {url}",
                url=url,
                status_code=response.status_code,
                retry_after=response.headers.get("Retry-After"),
            )
        if response.status_code >= 500:
            logger.error(f"{method} {url} returned HTTP {response.status_code}")
            raise NetworkError(
                f"HTTP {response.status_code} from {url}",
                url=url,
                status_code=response.status_code,
            )

        response.raise_for_status()
        return response

    def get_json(self, endpoint: str, **kwargs: Any) -> Any:
        return self.request("GET", endpoint, **kwargs).json()

    def test_connection(self, endpoint: str = "") -> bool:
        """Test if API connection works.

        Returns:
            True if connection is successful
        """
        try:
            self.request("GET", endpoint)
            return True
        except Exception as e:
            logger.error(f"Connection test against {self.base_url} failed: {e}")
            return False
