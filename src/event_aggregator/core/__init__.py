"""Core interfaces and primitives for the Graph API layer."""

from event_aggregator.core.config import (
    AppConfig,
    ConfigValidationError,
    Credentials,
    GraphConfig,
    SlidingWindowConfig,
    TokenBucketConfig,
    TokenRefreshConfig,
    get_default_config,
    load_config,
    load_credentials,
    validate_config,
)
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
    ErrorKind,
    GraphAPIError,
    MalformedResponseError,
    PermanentUpstreamError,
    RetryableUpstreamError,
    RetryExhaustedError,
    TransportError,
)
from event_aggregator.core.integrity import (
    HmacVerification,
    StateTokenResult,
    compute_hmac,
    compute_hmac_signature,
    format_state_token,
    parse_and_verify_state_token,
    timing_safe_compare,
    verify,
    verify_webhook_signature,
)
from event_aggregator.core.rate_limiter import (
    BoundSlidingWindowLimiter,
    FakeTimeProvider,
    SlidingWindowRateLimiter,
    SlidingWindowStatus,
    SystemTimeProvider,
    TimeProvider,
    TokenBucket,
    TokenBucketRateLimiter,
    TokenBucketStatus,
    create_sliding_window_limiter,
    create_token_bucket_limiter,
)
from event_aggregator.core.telemetry import (
    LogEntry,
    LogLevel,
    NullServiceLogger,
    RecordingLogger,
    ServiceLogger,
    StdlibServiceLogger,
)

__all__ = [
    # config
    "AppConfig",
    "ConfigValidationError",
    "Credentials",
    "GraphConfig",
    "SlidingWindowConfig",
    "TokenBucketConfig",
    "TokenRefreshConfig",
    "get_default_config",
    "load_config",
    "load_credentials",
    "validate_config",
    # datasource
    "DataSource",
    "HttpResponse",
    "HttpTransport",
    "Page",
    "Paginator",
    "RequestSpec",
    "build_page_url",
    # errors
    "CredentialExpiredError",
    "ErrorKind",
    "GraphAPIError",
    "MalformedResponseError",
    "PermanentUpstreamError",
    "RetryableUpstreamError",
    "RetryExhaustedError",
    "TransportError",
    # integrity
    "HmacVerification",
    "StateTokenResult",
    "compute_hmac",
    "compute_hmac_signature",
    "format_state_token",
    "parse_and_verify_state_token",
    "timing_safe_compare",
    "verify",
    "verify_webhook_signature",
    # rate_limiter
    "BoundSlidingWindowLimiter",
    "FakeTimeProvider",
    "SlidingWindowRateLimiter",
    "SlidingWindowStatus",
    "SystemTimeProvider",
    "TimeProvider",
    "TokenBucket",
    "TokenBucketRateLimiter",
    "TokenBucketStatus",
    "create_sliding_window_limiter",
    "create_token_bucket_limiter",
    # telemetry
    "LogEntry",
    "LogLevel",
    "NullServiceLogger",
    "RecordingLogger",
    "ServiceLogger",
    "StdlibServiceLogger",
]
