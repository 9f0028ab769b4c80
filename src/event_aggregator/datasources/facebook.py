"""
Facebook Graph API data source.

Reads pages, events and tokens from the Graph API with:
- Failure classification (expired credential, retryable, permanent,
  transport, malformed) done once, where status and body are visible
- Exponential backoff for retryable failures, suspending only at the
  backoff sleep
- Cursor pagination that follows ``paging.next`` until it disappears
"""
import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import aiohttp

from event_aggregator.core.config import GraphConfig
from event_aggregator.core.datasource import (
    DataSource,
    HttpResponse,
    HttpTransport,
    Page,
    Paginator,
    RequestSpec,
    build_page_url,
)
from event_aggregator.core.errors import (
    CredentialExpiredError,
    GraphAPIError,
    MalformedResponseError,
    PermanentUpstreamError,
    RetryableUpstreamError,
    RetryExhaustedError,
    TransportError,
    is_retryable_status,
)
from event_aggregator.core.telemetry import ServiceLogger, StdlibServiceLogger

logger = logging.getLogger(__name__)

# Raised by the transport before any HTTP status exists
NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)

TIME_FILTERS = ("upcoming", "past")

Sleep = Callable[[float], Awaitable[None]]


class AiohttpTransport:
    """HttpTransport backed by a lazily created aiohttp.ClientSession."""

    def __init__(
        self,
        timeout_s: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.timeout_s = timeout_s
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_s)
            )
            self._owns_session = True
        return self._session

    async def get(
        self, url: str, headers: Optional[dict[str, str]] = None
    ) -> Optional[HttpResponse]:
        session = await self._get_session()
        async with session.get(url, headers=headers) as response:
            body = await response.read()
            return HttpResponse(
                status=response.status,
                body=body,
                headers={k: v for k, v in response.headers.items()},
            )

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None


@dataclass
class AccessToken:
    """Token returned by the OAuth token endpoint."""

    access_token: str
    token_type: Optional[str] = None
    expires_in: Optional[int] = None


def parse_event_time(value: Any) -> Optional[datetime]:
    """
    Parse a Graph API timestamp such as ``2025-05-01T19:00:00+0200``.

    Naive values are taken as UTC. Returns None when unparseable.
    """
    if not isinstance(value, str) or not value:
        return None

    parsed: Optional[datetime] = None
    for fmt in ("%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S"):
        try:
            parsed = datetime.strptime(value, fmt)
            break
        except ValueError:
            continue

    if parsed is None:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class FacebookGraphClient(DataSource):
    """
    Retrying Graph API client.

    Every read goes through fetch_json, which owns the retry loop. The
    loop is strictly sequential per call; independent operations may run
    concurrently at the caller's discretion.
    """

    def __init__(
        self,
        config: Optional[GraphConfig] = None,
        transport: Optional[HttpTransport] = None,
        service_logger: Optional[ServiceLogger] = None,
        sleep: Optional[Sleep] = None,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
    ):
        """
        Initialize client.

        Args:
            config: Graph API settings (defaults to GraphConfig())
            transport: HTTP transport (defaults to AiohttpTransport)
            service_logger: Logger capability (defaults to stdlib logging)
            sleep: Coroutine used for backoff (defaults to asyncio.sleep)
            app_id: Application id, needed for token exchange
            app_secret: Application secret, needed for token exchange
        """
        self.config = config or GraphConfig()
        self.transport = transport or AiohttpTransport(timeout_s=self.config.request_timeout_s)
        self.log = service_logger or StdlibServiceLogger(stdlib_logger=logger)
        self._sleep = sleep or asyncio.sleep
        self.app_id = app_id
        self.app_secret = app_secret

    @property
    def name(self) -> str:
        """Return the data source name."""
        return "facebook"

    async def close(self) -> None:
        """Release the underlying transport, if it holds resources."""
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()

    async def __aenter__(self) -> "FacebookGraphClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def backoff_delay_ms(self, attempt: int) -> int:
        """Delay before the retry that follows attempt (1-based)."""
        return self.config.retry_delay_ms * (2 ** (attempt - 1))

    def _parse_json(self, response: HttpResponse) -> Any:
        body = response.body
        try:
            if isinstance(body, bytes):
                body = body.decode("utf-8")
            return json.loads(body)
        except (ValueError, UnicodeDecodeError) as exc:
            error = MalformedResponseError(f"JSON parse error: {exc}", response.status)
            self.log.error(
                "Facebook API returned a malformed body",
                error,
                {"status": response.status},
            )
            raise error from exc

    def _classify(self, response: HttpResponse) -> GraphAPIError:
        """Classify a non-OK response from its status and body."""
        data = self._parse_json(response)

        error_obj = data.get("error") if isinstance(data, dict) else None
        code = None
        message = None
        if isinstance(error_obj, dict):
            code = error_obj.get("code")
            message = error_obj.get("message")

        if code == self.config.token_invalid_code or response.status == 401:
            return CredentialExpiredError(code=code, status=response.status)

        if is_retryable_status(response.status):
            return RetryableUpstreamError(response.status, message)

        return PermanentUpstreamError(response.status, message)

    async def fetch_json(self, url: str, max_retries: Optional[int] = None) -> Any:
        """
        GET url and return the parsed JSON body, retrying transient failures.

        Args:
            url: Fully resolved URL
            max_retries: Attempt bound (defaults to config.max_retries)

        Raises:
            CredentialExpiredError: token invalid/expired; never retried
            PermanentUpstreamError: non-retryable HTTP status
            MalformedResponseError: body is not JSON; never retried
            TransportError: no response object at all
            RetryExhaustedError: retryable failures on every attempt
        """
        attempts = max_retries if max_retries is not None else self.config.max_retries
        if attempts < 1:
            raise ValueError("max_retries must be at least 1")

        for attempt in range(1, attempts + 1):
            try:
                response = await self.transport.get(url)
            except NETWORK_ERRORS as exc:
                error = TransportError(f"Facebook API request failed: {exc}")
                if attempt < attempts:
                    delay_ms = self.backoff_delay_ms(attempt)
                    self.log.warn(
                        "Facebook API request failed - retrying",
                        {
                            "error": str(exc),
                            "attempt": attempt,
                            "maxRetries": attempts,
                            "delayMs": delay_ms,
                        },
                    )
                    await self._sleep(delay_ms / 1000.0)
                    continue

                exhausted = RetryExhaustedError(error, attempt)
                self.log.error(
                    "Facebook API retry attempts exhausted",
                    exhausted,
                    {"attempts": attempt},
                )
                raise exhausted from exc

            if response is None:
                error = TransportError(
                    "No response received from Facebook API", retryable=False
                )
                self.log.error("Facebook API returned no response", error)
                raise error

            if not response.ok:
                error = self._classify(response)

                if isinstance(error, CredentialExpiredError):
                    self.log.error(
                        "Facebook token expired or invalid",
                        error,
                        {"errorCode": error.code, "status": response.status},
                    )
                    raise error

                if not error.retryable:
                    self.log.error(
                        "Facebook API responded with an error",
                        error,
                        {"status": response.status, "message": getattr(error, "upstream_message", None)},
                    )
                    raise error

                if attempt < attempts:
                    delay_ms = self.backoff_delay_ms(attempt)
                    self.log.warn(
                        "Facebook API error - retrying with backoff",
                        {
                            "status": response.status,
                            "delayMs": delay_ms,
                            "attempt": attempt,
                            "maxRetries": attempts,
                        },
                    )
                    await self._sleep(delay_ms / 1000.0)
                    continue

                exhausted = RetryExhaustedError(error, attempt)
                self.log.error(
                    "Facebook API retry attempts exhausted",
                    exhausted,
                    {"status": response.status, "attempts": attempt},
                )
                raise exhausted from error

            return self._parse_json(response)

        # Every iteration returns, raises or continues to a later attempt
        raise AssertionError("unreachable")

    async def fetch_page(self, url: str, page_number: int = 0) -> Page:
        """Fetch one page of a list endpoint."""
        body = await self.fetch_json(url)
        page = Page.from_response(body, page_number)
        self.log.debug(
            "Fetched Facebook API page",
            {"page": page_number, "count": len(page.data), "hasNext": page.next_cursor is not None},
        )
        return page

    async def _walk(self, url: str, params: Optional[dict[str, Any]]) -> AsyncIterator[Page]:
        next_url: Optional[str] = url
        page_number = 0
        while next_url:
            page = await self.fetch_page(build_page_url(next_url, params), page_number)
            yield page
            page_number += 1
            next_url = page.next_cursor

    async def fetch_all_pages(
        self, initial_url: str, params: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        """
        Follow cursors from initial_url and concatenate every page's items.

        Args:
            initial_url: First page URL
            params: Query parameters appended to URLs lacking a query string
        """
        items: list[dict[str, Any]] = []
        async for page in self._walk(initial_url, params):
            items.extend(page.data)
        return items

    def prepare_request(self, endpoint: str, params: Optional[dict[str, Any]] = None) -> RequestSpec:
        """
        Prepare a request to the versioned Graph API.

        Args:
            endpoint: API endpoint path (e.g., "/me/accounts")
            params: Optional query parameters
        """
        return RequestSpec(
            url=f"{self.config.graph_url}/{endpoint.lstrip('/')}",
            method="GET",
            headers=self.auth(),
            query_params=params or {},
        )

    async def paginate(
        self,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        paginator: Optional[Paginator] = None,
    ) -> AsyncIterator[Page]:
        """
        Paginate through Graph API results.

        Args:
            endpoint: API endpoint path
            params: Query parameters for the first request
            paginator: Optional pagination control callback

        Yields:
            Page objects in cursor order
        """
        spec = self.prepare_request(endpoint, params)
        total = 0
        async for page in self._walk(spec.url, spec.query_params):
            total += len(page.data)
            yield page
            if paginator is not None and not paginator(page, total):
                break

    def _list_params(self, access_token: str, fields: str, **extra: Any) -> dict[str, Any]:
        params = {"access_token": access_token, **extra, "fields": fields}
        params["limit"] = str(self.config.page_size)
        return params

    async def get_user_pages(self, access_token: str) -> list[dict[str, Any]]:
        """All pages the user token can manage, with their page tokens."""
        pages = await self.fetch_all_pages(
            f"{self.config.graph_url}/me/accounts",
            self._list_params(access_token, self.config.page_fields),
        )
        self.log.info("Fetched Facebook user pages", {"count": len(pages)})
        return pages

    async def get_page_events(
        self,
        page_id: str,
        access_token: str,
        time_filter: str = "upcoming",
    ) -> list[dict[str, Any]]:
        """
        Events of a page for one time segment.

        Args:
            page_id: Facebook page id
            access_token: Page access token
            time_filter: "upcoming" or "past"
        """
        if time_filter not in TIME_FILTERS:
            raise ValueError(f"time_filter must be one of {TIME_FILTERS}, got {time_filter!r}")

        params = self._list_params(
            access_token, self.config.event_fields, time_filter=time_filter
        )
        try:
            events = await self.fetch_all_pages(
                f"{self.config.graph_url}/{page_id}/events", params
            )
        except GraphAPIError as exc:
            self.log.error(
                "Error fetching Facebook page events",
                exc,
                {"pageId": page_id, "timeFilter": time_filter},
            )
            raise

        self.log.info(
            "Fetched Facebook page events",
            {"pageId": page_id, "timeFilter": time_filter, "totalCount": len(events)},
        )
        return events

    async def get_event_details(self, event_id: str, access_token: str) -> dict[str, Any]:
        """A single event object."""
        params = {"access_token": access_token, "fields": self.config.event_fields}
        event = await self.fetch_json(
            f"{self.config.graph_url}/{event_id}?{urlencode(params)}"
        )
        self.log.debug("Fetched Facebook event details", {"eventId": event_id})
        return event

    async def get_all_relevant_events(
        self,
        page_id: str,
        access_token: str,
        days_back: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        """
        Upcoming events plus past events that started within days_back.

        The two segments are unioned and de-duplicated by id; the first copy
        seen (upcoming before past) wins.
        """
        if days_back is None:
            days_back = self.config.past_events_days
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        cutoff = now - timedelta(days=days_back)

        upcoming = await self.get_page_events(page_id, access_token, "upcoming")
        past = await self.get_page_events(page_id, access_token, "past")

        recent_past = []
        for event in past:
            started = parse_event_time(event.get("start_time"))
            if started is not None and started >= cutoff:
                recent_past.append(event)

        unique: list[dict[str, Any]] = []
        seen: set[Any] = set()
        for event in [*upcoming, *recent_past]:
            event_id = event.get("id")
            if event_id in seen:
                continue
            seen.add(event_id)
            unique.append(event)

        self.log.info(
            "Aggregated relevant Facebook events",
            {
                "pageId": page_id,
                "upcomingCount": len(upcoming),
                "recentPastCount": len(recent_past),
                "totalUnique": len(unique),
                "daysBack": days_back,
            },
        )
        return unique

    async def exchange_for_long_lived_token(self, short_lived_token: str) -> AccessToken:
        """
        Trade a short-lived token for a long-lived one.

        Raises:
            ValueError: app id or secret not configured
            MalformedResponseError: response carries no access_token
        """
        if not self.app_id or not self.app_secret:
            raise ValueError("app_id and app_secret are required for token exchange")

        params = {
            "grant_type": "fb_exchange_token",
            "client_id": self.app_id,
            "client_secret": self.app_secret,
            "fb_exchange_token": short_lived_token,
        }
        data = await self.fetch_json(
            f"{self.config.base_url.rstrip('/')}/oauth/access_token?{urlencode(params)}"
        )

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise MalformedResponseError("No long-lived token received from Facebook")

        expires_in = data.get("expires_in")
        self.log.info("Exchanged short-lived token for long-lived token")
        return AccessToken(
            access_token=token,
            token_type=data.get("token_type"),
            expires_in=int(expires_in) if isinstance(expires_in, (int, float)) else None,
        )
