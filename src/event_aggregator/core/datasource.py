"""
DataSource interface and supporting types.

This module defines the core abstraction for sources that read from a
third-party HTTP/JSON API. Each source provides request preparation,
authentication, and cursor pagination. Transport is pluggable so the retry
logic can be exercised without a network.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol
from urllib.parse import urlencode


@dataclass
class RequestSpec:
    """
    Specification for an HTTP request.

    Attributes:
        url: Full URL to request (replaced by the cursor on each page)
        method: HTTP method; the Graph API client only issues GET
        headers: HTTP headers as key-value pairs
        query_params: Query string parameters appended when the URL has none
        body: Always None for GET requests
    """
    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    query_params: dict[str, Any] = field(default_factory=dict)
    body: dict[str, Any] | None = None

    def resolved_url(self) -> str:
        """URL to fetch: verbatim if it carries a query string, else with query_params."""
        return build_page_url(self.url, self.query_params)


@dataclass
class HttpResponse:
    """
    Minimal view of an HTTP response.

    Attributes:
        status: HTTP status code
        body: Raw response body, text or undecoded bytes
        headers: Response headers
    """
    status: int
    body: str | bytes
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class HttpTransport(Protocol):
    """Issues one GET request. Returning None means no response was received."""

    async def get(self, url: str, headers: dict[str, str] | None = None) -> HttpResponse | None:
        ...


@dataclass
class Page:
    """
    A single page of results from a paginated API.

    Attributes:
        data: The actual data records in this page
        metadata: Additional metadata (next cursor, page number, etc.)
    """
    data: list[dict[str, Any]]
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def next_cursor(self) -> str | None:
        return self.metadata.get("next")

    @classmethod
    def from_response(cls, body: Any, page_number: int = 0) -> "Page":
        """
        Build a Page from a list response ``{data: [...], paging?: {next?}}``.

        A body with no recognizable ``data`` is treated as an empty page.
        """
        if not isinstance(body, dict):
            return cls(data=[], metadata={"page": page_number, "next": None})

        data = body.get("data")
        if not isinstance(data, list):
            data = []

        paging = body.get("paging")
        next_url = paging.get("next") if isinstance(paging, dict) else None
        if not isinstance(next_url, str) or not next_url:
            next_url = None

        return cls(data=data, metadata={"page": page_number, "next": next_url})


# Type alias for paginator callback
# Takes (current_page, total_fetched) and returns whether to continue
Paginator = Callable[[Page, int], bool]


def build_page_url(url: str, params: dict[str, Any] | None = None) -> str:
    """
    Resolve the URL for one pagination step.

    Cursors returned by the API already carry every parameter and are used
    verbatim; a bare URL gets the operation's own query string appended.
    """
    if "?" in url or not params:
        return url
    return f"{url}?{urlencode(params)}"


class DataSource(ABC):
    """
    Abstract base class for all data sources.

    Subclasses implement request preparation and pagination for their API.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """
        Unique identifier for this data source.

        Returns:
            The name of the data source (e.g., "facebook")
        """
        pass

    @abstractmethod
    def prepare_request(self, endpoint: str, params: dict[str, Any] | None = None) -> RequestSpec:
        """
        Prepare an HTTP request specification for the given endpoint.

        Args:
            endpoint: API endpoint path (relative to base URL)
            params: Optional parameters to include in the request

        Returns:
            A RequestSpec with url, method, headers, and query parameters
        """
        pass

    def auth(self, initial_headers: dict[str, str] | None = None) -> dict[str, str]:
        """
        Authentication hook to add auth headers to a request.

        Default implementation returns headers unchanged. The Graph API
        takes its access token as a query parameter instead.
        """
        return initial_headers.copy() if initial_headers else {}

    @abstractmethod
    def paginate(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        paginator: Paginator | None = None,
    ) -> AsyncIterator[Page]:
        """
        Iterate through pages of results from an endpoint.

        Args:
            endpoint: API endpoint path
            params: Optional parameters for the request
            paginator: Optional callback to control pagination.
                       Called with (current_page, total_records_fetched).
                       Return False to stop pagination.
                       If None, fetches all available pages.

        Yields:
            Page objects containing data and metadata
        """
        pass
