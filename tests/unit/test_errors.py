"""Unit tests for the classified error hierarchy."""
import pytest

from event_aggregator.core.errors import (
    CredentialExpiredError,
    ErrorKind,
    GraphAPIError,
    MalformedResponseError,
    PermanentUpstreamError,
    RetryableUpstreamError,
    RetryExhaustedError,
    TransportError,
    is_retryable_status,
)


class TestClassification:
    def test_every_error_is_a_graph_api_error(self):
        errors = [
            CredentialExpiredError(code=190),
            RetryableUpstreamError(503),
            PermanentUpstreamError(400),
            TransportError("reset"),
            MalformedResponseError("JSON parse error"),
        ]

        assert all(isinstance(e, GraphAPIError) for e in errors)
        assert [e.kind for e in errors] == [
            ErrorKind.CREDENTIAL_EXPIRED,
            ErrorKind.RETRYABLE_UPSTREAM,
            ErrorKind.PERMANENT_UPSTREAM,
            ErrorKind.TRANSPORT,
            ErrorKind.MALFORMED,
        ]

    def test_retryable_flags(self):
        assert RetryableUpstreamError(429).retryable is True
        assert TransportError("reset").retryable is True
        assert TransportError("no response", retryable=False).retryable is False
        assert PermanentUpstreamError(404).retryable is False
        assert CredentialExpiredError().retryable is False
        assert MalformedResponseError("x").retryable is False

    def test_credential_message(self):
        assert CredentialExpiredError(code=190).message == "Facebook token invalid (190)"
        assert CredentialExpiredError(status=401).message == "Facebook token invalid (unknown)"

    def test_upstream_message(self):
        assert str(RetryableUpstreamError(502, "Bad gateway")) == "Facebook API error: 502 - Bad gateway"
        assert str(PermanentUpstreamError(400)) == "Facebook API error: 400 - Unknown error"


class TestRetryExhaustedError:
    def test_mirrors_last_error(self):
        last = RetryableUpstreamError(503, "down")

        error = RetryExhaustedError(last, attempts=3)

        assert error.kind == ErrorKind.RETRYABLE_UPSTREAM
        assert error.status == 503
        assert error.last_error is last
        assert error.message == "Facebook API retry attempts exhausted after 3 attempts"

    def test_callers_branch_on_kind_not_class(self):
        """Test exhaustion keeps its own class; the classification lives on kind."""
        error = RetryExhaustedError(RetryableUpstreamError(429), attempts=3)

        assert isinstance(error, GraphAPIError)
        assert not isinstance(error, RetryableUpstreamError)
        assert isinstance(error.last_error, RetryableUpstreamError)
        assert error.kind == ErrorKind.RETRYABLE_UPSTREAM
        assert error.retryable is False

    def test_to_dict(self):
        error = RetryExhaustedError(TransportError("reset"), attempts=2)

        assert error.to_dict() == {
            "kind": "transport",
            "status": None,
            "message": "Facebook API retry attempts exhausted after 2 attempts",
            "retryable": False,
            "attempts": 2,
            "last_error": "reset",
        }


@pytest.mark.parametrize(
    "status, retryable",
    [(429, True), (500, True), (503, True), (599, True), (400, False), (401, False), (404, False), (600, False)],
)
def test_is_retryable_status(status, retryable):
    assert is_retryable_status(status) is retryable
