"""
Unit tests for the Graph API client.

Uses a scripted transport and a recording sleep, so retry schedules are
asserted exactly and no test waits on a real clock.

Test scenarios:
1. Retryable statuses back off 1000ms, 2000ms and then exhaust
2. Expired credentials, permanent errors and malformed bodies fail on
   the first attempt
3. Network errors retry like retryable statuses
4. Cursor pagination follows paging.next verbatim
5. Upcoming + past aggregation filters and de-duplicates
6. Short-lived to long-lived token exchange
"""
import asyncio
from datetime import datetime, timezone

import aiohttp
import pytest

from event_aggregator.core.config import GraphConfig
from event_aggregator.core.datasource import HttpResponse
from event_aggregator.core.errors import (
    CredentialExpiredError,
    ErrorKind,
    MalformedResponseError,
    PermanentUpstreamError,
    RetryableUpstreamError,
    RetryExhaustedError,
    TransportError,
)
from event_aggregator.core.telemetry import LogLevel, RecordingLogger
from event_aggregator.datasources.facebook import FacebookGraphClient, parse_event_time
from tests.fakes import (
    FakeTransport,
    RoutedTransport,
    SleepRecorder,
    graph_error,
    json_response,
)

GRAPH = "https://graph.test/v1.0"


@pytest.fixture
def graph_config():
    return GraphConfig(base_url="https://graph.test", api_version="v1.0")


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def log():
    return RecordingLogger()


@pytest.fixture
def make_client(graph_config, sleep, log):
    """Factory building a client around a scripted transport."""

    def make(transport, **kwargs):
        return FacebookGraphClient(
            config=graph_config,
            transport=transport,
            service_logger=log,
            sleep=sleep,
            **kwargs,
        )

    return make


class TestBackoff:
    def test_delay_doubles_per_attempt(self, make_client):
        client = make_client(FakeTransport())

        assert [client.backoff_delay_ms(n) for n in (1, 2, 3)] == [1000, 2000, 4000]

    def test_name(self, make_client):
        assert make_client(FakeTransport()).name == "facebook"


class TestRetryableFailures:
    """429 and 5xx are retried with exponential backoff."""

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 599])
    async def test_exhausts_after_max_retries(self, make_client, sleep, status):
        transport = FakeTransport(*[graph_error(status)] * 3)
        client = make_client(transport)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await client.fetch_json(f"{GRAPH}/me")

        error = exc_info.value
        assert transport.calls == 3
        assert sleep.delays_ms == [1000, 2000]
        assert error.attempts == 3
        assert error.status == status
        assert isinstance(error.last_error, RetryableUpstreamError)
        assert error.kind == ErrorKind.RETRYABLE_UPSTREAM
        assert error.__cause__ is error.last_error

    async def test_recovers_after_transient_failure(self, make_client, sleep):
        transport = FakeTransport(graph_error(503), json_response(200, {"id": "me"}))
        client = make_client(transport)

        body = await client.fetch_json(f"{GRAPH}/me")

        assert body == {"id": "me"}
        assert transport.calls == 2
        assert sleep.delays_ms == [1000]

    async def test_retry_logs(self, make_client, log):
        client = make_client(FakeTransport(*[graph_error(429)] * 3))

        with pytest.raises(RetryExhaustedError):
            await client.fetch_json(f"{GRAPH}/me")

        warnings = log.get_entries(LogLevel.WARN)
        assert [w.message for w in warnings] == ["Facebook API error - retrying with backoff"] * 2
        assert warnings[0].meta == {"status": 429, "delayMs": 1000, "attempt": 1, "maxRetries": 3}
        assert "Facebook API retry attempts exhausted" in log.messages(LogLevel.ERROR)

    async def test_single_attempt_never_sleeps(self, make_client, sleep):
        transport = FakeTransport(graph_error(500))
        client = make_client(transport)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await client.fetch_json(f"{GRAPH}/me", max_retries=1)

        assert exc_info.value.attempts == 1
        assert sleep.delays == []

    async def test_zero_attempts_rejected(self, make_client):
        with pytest.raises(ValueError):
            await make_client(FakeTransport()).fetch_json(f"{GRAPH}/me", max_retries=0)

    async def test_upstream_message_kept(self, make_client):
        client = make_client(FakeTransport(*[graph_error(500, message="Service down")] * 3))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await client.fetch_json(f"{GRAPH}/me")

        assert exc_info.value.last_error.message == "Facebook API error: 500 - Service down"


class TestImmediateFailures:
    """Failures retrying cannot fix surface on the first attempt."""

    async def test_401_is_credential_expired(self, make_client, sleep):
        transport = FakeTransport(graph_error(401))
        client = make_client(transport)

        with pytest.raises(CredentialExpiredError) as exc_info:
            await client.fetch_json(f"{GRAPH}/me")

        assert exc_info.value.status == 401
        assert transport.calls == 1
        assert sleep.delays == []

    @pytest.mark.parametrize("status", [400, 500])
    async def test_invalid_token_code_wins_over_status(self, make_client, sleep, status):
        """Test code 190 is a credential failure even on a retryable status."""
        transport = FakeTransport(graph_error(status, code=190, message="Session expired"))
        client = make_client(transport)

        with pytest.raises(CredentialExpiredError) as exc_info:
            await client.fetch_json(f"{GRAPH}/me")

        assert exc_info.value.code == 190
        assert exc_info.value.message == "Facebook token invalid (190)"
        assert transport.calls == 1
        assert sleep.delays == []

    async def test_credential_failure_logged(self, make_client, log):
        client = make_client(FakeTransport(graph_error(400, code=190)))

        with pytest.raises(CredentialExpiredError):
            await client.fetch_json(f"{GRAPH}/me")

        entry = log.get_entries(LogLevel.ERROR)[0]
        assert entry.message == "Facebook token expired or invalid"
        assert entry.meta == {"errorCode": 190, "status": 400}

    @pytest.mark.parametrize("status", [400, 403, 404])
    async def test_permanent_error(self, make_client, sleep, status):
        transport = FakeTransport(graph_error(status, code=100, message="Unsupported get request"))
        client = make_client(transport)

        with pytest.raises(PermanentUpstreamError) as exc_info:
            await client.fetch_json(f"{GRAPH}/me")

        assert exc_info.value.status == status
        assert exc_info.value.upstream_message == "Unsupported get request"
        assert exc_info.value.retryable is False
        assert transport.calls == 1
        assert sleep.delays == []

    async def test_malformed_success_body(self, make_client, sleep):
        transport = FakeTransport(HttpResponse(status=200, body="<html>not json</html>"))
        client = make_client(transport)

        with pytest.raises(MalformedResponseError) as exc_info:
            await client.fetch_json(f"{GRAPH}/me")

        assert exc_info.value.message.startswith("JSON parse error")
        assert transport.calls == 1
        assert sleep.delays == []

    async def test_malformed_error_body_not_retried(self, make_client, sleep):
        """Test an unparseable 503 body is a malformed response, not a retry."""
        transport = FakeTransport(HttpResponse(status=503, body="<html>Bad gateway</html>"))
        client = make_client(transport)

        with pytest.raises(MalformedResponseError) as exc_info:
            await client.fetch_json(f"{GRAPH}/me")

        assert exc_info.value.status == 503
        assert transport.calls == 1
        assert sleep.delays == []

    async def test_bytes_body_decoded(self, make_client):
        transport = FakeTransport(HttpResponse(status=200, body=b'{"id": "me", "name": "Caf\xc3\xa9"}'))

        body = await make_client(transport).fetch_json(f"{GRAPH}/me")

        assert body == {"id": "me", "name": "Café"}

    @pytest.mark.parametrize("status", [200, 503])
    async def test_undecodable_bytes_are_malformed(self, make_client, sleep, status):
        transport = FakeTransport(HttpResponse(status=status, body=b'{"data": ["\xff\xfe"]}'))
        client = make_client(transport)

        with pytest.raises(MalformedResponseError) as exc_info:
            await client.fetch_json(f"{GRAPH}/me")

        assert exc_info.value.status == status
        assert isinstance(exc_info.value.__cause__, UnicodeDecodeError)
        assert transport.calls == 1
        assert sleep.delays == []

    async def test_error_without_envelope(self, make_client):
        """Test a JSON error body lacking an error object still classifies by status."""
        client = make_client(FakeTransport(json_response(404, {"detail": "nope"})))

        with pytest.raises(PermanentUpstreamError) as exc_info:
            await client.fetch_json(f"{GRAPH}/me")

        assert exc_info.value.message == "Facebook API error: 404 - Unknown error"

    async def test_no_response(self, make_client, sleep):
        transport = FakeTransport(None)
        client = make_client(transport)

        with pytest.raises(TransportError) as exc_info:
            await client.fetch_json(f"{GRAPH}/me")

        assert exc_info.value.retryable is False
        assert exc_info.value.kind == ErrorKind.TRANSPORT
        assert transport.calls == 1
        assert sleep.delays == []


class TestNetworkFailures:
    """Exceptions raised before any status exists."""

    async def test_network_errors_retry_then_exhaust(self, make_client, sleep, log):
        cause = aiohttp.ClientConnectionError("connection reset")
        transport = FakeTransport(cause, cause, cause)
        client = make_client(transport)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await client.fetch_json(f"{GRAPH}/me")

        error = exc_info.value
        assert transport.calls == 3
        assert sleep.delays_ms == [1000, 2000]
        assert isinstance(error.last_error, TransportError)
        assert error.kind == ErrorKind.TRANSPORT
        assert error.__cause__ is cause
        assert log.messages(LogLevel.WARN) == ["Facebook API request failed - retrying"] * 2

    async def test_timeout_then_success(self, make_client, sleep):
        transport = FakeTransport(asyncio.TimeoutError(), json_response(200, {"ok": True}))
        client = make_client(transport)

        assert await client.fetch_json(f"{GRAPH}/me") == {"ok": True}
        assert sleep.delays_ms == [1000]

    async def test_mixed_network_and_status_failures(self, make_client, sleep):
        transport = FakeTransport(
            aiohttp.ClientConnectionError("reset"),
            graph_error(502),
            json_response(200, {"ok": True}),
        )
        client = make_client(transport)

        assert await client.fetch_json(f"{GRAPH}/me") == {"ok": True}
        assert sleep.delays_ms == [1000, 2000]

    async def test_programming_errors_are_not_retried(self, make_client, sleep):
        transport = FakeTransport(KeyError("bug"))
        client = make_client(transport)

        with pytest.raises(KeyError):
            await client.fetch_json(f"{GRAPH}/me")

        assert sleep.delays == []


class TestPagination:
    """Cursor pagination."""

    async def test_follows_next_until_absent(self, make_client):
        cursor = f"{GRAPH}/123/events?after=c1&access_token=tok"
        transport = FakeTransport(
            json_response(200, {"data": [{"id": "1"}, {"id": "2"}], "paging": {"next": cursor}}),
            json_response(200, {"data": [{"id": "3"}]}),
        )
        client = make_client(transport)

        items = await client.fetch_all_pages(f"{GRAPH}/123/events", {"limit": "100"})

        assert [i["id"] for i in items] == ["1", "2", "3"]
        assert transport.calls == 2
        assert transport.urls[0] == f"{GRAPH}/123/events?limit=100"
        assert transport.urls[1] == cursor

    async def test_retry_on_later_page(self, make_client, sleep):
        cursor = f"{GRAPH}/123/events?after=c1"
        transport = FakeTransport(
            json_response(200, {"data": [{"id": "1"}], "paging": {"next": cursor}}),
            graph_error(503),
            json_response(200, {"data": [{"id": "2"}]}),
        )
        client = make_client(transport)

        items = await client.fetch_all_pages(f"{GRAPH}/123/events")

        assert [i["id"] for i in items] == ["1", "2"]
        assert transport.urls[1:] == [cursor, cursor]
        assert sleep.delays_ms == [1000]

    async def test_failure_on_later_page_propagates(self, make_client):
        transport = FakeTransport(
            json_response(200, {"data": [{"id": "1"}], "paging": {"next": f"{GRAPH}/x?after=c"}}),
            graph_error(401),
        )
        client = make_client(transport)

        with pytest.raises(CredentialExpiredError):
            await client.fetch_all_pages(f"{GRAPH}/x")

    async def test_body_without_data_ends_walk(self, make_client):
        transport = FakeTransport(json_response(200, {"unexpected": True}))
        client = make_client(transport)

        assert await client.fetch_all_pages(f"{GRAPH}/x") == []
        assert transport.calls == 1

    async def test_page_debug_log_once_per_fetch(self, make_client, log):
        transport = FakeTransport(
            json_response(200, {"data": [{"id": "1"}], "paging": {"next": f"{GRAPH}/x?after=c"}}),
            json_response(200, {"data": []}),
        )
        client = make_client(transport)

        await client.fetch_all_pages(f"{GRAPH}/x")

        assert log.messages(LogLevel.DEBUG).count("Fetched Facebook API page") == 2

    async def test_paginate_stops_when_paginator_declines(self, make_client):
        transport = FakeTransport(
            json_response(200, {"data": [{"id": "1"}], "paging": {"next": f"{GRAPH}/x?after=c"}}),
        )
        client = make_client(transport)

        pages = [
            page async for page in client.paginate("/x", {"limit": "1"}, lambda page, total: total < 1)
        ]

        assert len(pages) == 1
        assert transport.urls == [f"{GRAPH}/x?limit=1"]

    def test_prepare_request(self, make_client):
        spec = make_client(FakeTransport()).prepare_request("/me/accounts", {"limit": "5"})

        assert spec.url == f"{GRAPH}/me/accounts"
        assert spec.method == "GET"
        assert spec.query_params == {"limit": "5"}


class TestGraphOperations:
    """Page, event and token operations."""

    async def test_get_user_pages(self, make_client, log):
        transport = FakeTransport(
            json_response(200, {"data": [{"id": "p1", "name": "Page", "access_token": "pt"}]})
        )
        client = make_client(transport)

        pages = await client.get_user_pages("user-token")

        assert pages == [{"id": "p1", "name": "Page", "access_token": "pt"}]
        url = transport.urls[0]
        assert url.startswith(f"{GRAPH}/me/accounts?")
        assert "access_token=user-token" in url
        assert "limit=100" in url
        info = log.get_entries(LogLevel.INFO)[-1]
        assert info.message == "Fetched Facebook user pages"
        assert info.meta == {"count": 1}

    async def test_get_page_events_filter(self, make_client):
        transport = FakeTransport(json_response(200, {"data": []}))
        client = make_client(transport)

        await client.get_page_events("123", "tok", "past")

        assert transport.urls[0].startswith(f"{GRAPH}/123/events?")
        assert "time_filter=past" in transport.urls[0]

    async def test_get_page_events_rejects_unknown_filter(self, make_client):
        with pytest.raises(ValueError):
            await make_client(FakeTransport()).get_page_events("123", "tok", "all")

    async def test_get_page_events_logs_and_reraises(self, make_client, log):
        client = make_client(FakeTransport(graph_error(403, message="Permissions error")))

        with pytest.raises(PermanentUpstreamError):
            await client.get_page_events("123", "tok")

        assert "Error fetching Facebook page events" in log.messages(LogLevel.ERROR)

    async def test_get_all_relevant_events_undecodable_page(self, make_client, log):
        transport = FakeTransport(HttpResponse(status=200, body=b'{"data": ["\xff"]}'))

        with pytest.raises(MalformedResponseError):
            await make_client(transport).get_all_relevant_events("123", "tok")

        assert "Error fetching Facebook page events" in log.messages(LogLevel.ERROR)

    async def test_get_event_details(self, make_client):
        transport = FakeTransport(json_response(200, {"id": "e1", "name": "Show"}))
        client = make_client(transport)

        event = await client.get_event_details("e1", "tok")

        assert event == {"id": "e1", "name": "Show"}
        assert transport.urls[0].startswith(f"{GRAPH}/e1?access_token=tok&fields=")

    async def test_get_all_relevant_events(self, make_client):
        now = datetime(2025, 5, 31, 12, 0, tzinfo=timezone.utc)
        upcoming = [
            {"id": "1", "name": "Up one", "start_time": "2025-06-01T19:00:00+0000"},
            {"id": "2", "name": "Up two", "start_time": "2025-06-02T19:00:00+0000"},
        ]
        past = [
            {"id": "2", "name": "Past copy", "start_time": "2025-05-30T19:00:00+0000"},
            {"id": "3", "name": "Recent", "start_time": "2025-05-20T10:00:00+0200"},
            {"id": "4", "name": "Old", "start_time": "2024-01-01T00:00:00+0000"},
            {"id": "5", "name": "No time"},
        ]
        transport = RoutedTransport({
            "time_filter=upcoming": json_response(200, {"data": upcoming}),
            "time_filter=past": json_response(200, {"data": past}),
        })
        client = make_client(transport)

        events = await client.get_all_relevant_events("123", "tok", now=now)

        assert [e["id"] for e in events] == ["1", "2", "3"]
        assert events[1]["name"] == "Up two"

    async def test_get_all_relevant_events_days_back(self, make_client):
        now = datetime(2025, 5, 31, 12, 0, tzinfo=timezone.utc)
        past = [
            {"id": "a", "start_time": "2025-05-30T12:00:00+0000"},
            {"id": "b", "start_time": "2025-05-20T12:00:00+0000"},
        ]
        transport = RoutedTransport({
            "time_filter=upcoming": json_response(200, {"data": []}),
            "time_filter=past": json_response(200, {"data": past}),
        })
        client = make_client(transport)

        events = await client.get_all_relevant_events("123", "tok", days_back=7, now=now)

        assert [e["id"] for e in events] == ["a"]

    async def test_exchange_for_long_lived_token(self, make_client):
        transport = FakeTransport(
            json_response(200, {"access_token": "long", "token_type": "bearer", "expires_in": 5183944})
        )
        client = make_client(transport, app_id="app", app_secret="secret")

        token = await client.exchange_for_long_lived_token("short")

        assert token.access_token == "long"
        assert token.token_type == "bearer"
        assert token.expires_in == 5183944
        url = transport.urls[0]
        assert url.startswith("https://graph.test/oauth/access_token?")
        assert "grant_type=fb_exchange_token" in url
        assert "fb_exchange_token=short" in url
        assert "client_id=app" in url

    async def test_exchange_without_token_in_response(self, make_client):
        client = make_client(
            FakeTransport(json_response(200, {"token_type": "bearer"})),
            app_id="app",
            app_secret="secret",
        )

        with pytest.raises(MalformedResponseError):
            await client.exchange_for_long_lived_token("short")

    async def test_exchange_requires_app_credentials(self, make_client):
        with pytest.raises(ValueError):
            await make_client(FakeTransport()).exchange_for_long_lived_token("short")

    async def test_context_manager_closes_transport(self, make_client):
        transport = FakeTransport()

        async with make_client(transport):
            pass

        assert transport.closed is True


class TestParseEventTime:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("2025-05-01T19:00:00+0200", datetime(2025, 5, 1, 17, 0, tzinfo=timezone.utc)),
            ("2025-05-01T19:00:00", datetime(2025, 5, 1, 19, 0, tzinfo=timezone.utc)),
            ("2025-05-01T19:00:00+00:00", datetime(2025, 5, 1, 19, 0, tzinfo=timezone.utc)),
        ],
    )
    def test_parses(self, value, expected):
        assert parse_event_time(value) == expected

    @pytest.mark.parametrize("value", [None, "", "soon", 1714590000])
    def test_unparseable(self, value):
        assert parse_event_time(value) is None
