"""
Composition root.

Builds the process-wide collaborators once from configuration: the Graph
API client and the two rate limiters. Handlers ask this object for the
services they need instead of reaching for module-level state.
"""
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from event_aggregator.core.config import (
    AppConfig,
    Credentials,
    load_config,
    load_credentials,
)
from event_aggregator.core.datasource import HttpTransport
from event_aggregator.core.integrity import (
    extract_bearer_token,
    format_state_token,
    parse_and_verify_state_token,
    StateTokenResult,
    verify_bearer_token,
)
from event_aggregator.core.rate_limiter import (
    BoundSlidingWindowLimiter,
    SystemTimeProvider,
    TimeProvider,
    TokenBucketRateLimiter,
    create_sliding_window_limiter,
    create_token_bucket_limiter,
)
from event_aggregator.core.telemetry import ServiceLogger, StdlibServiceLogger
from event_aggregator.datasources.facebook import FacebookGraphClient, Sleep
from event_aggregator.services.token_refresh import TokenRefresher, TokenStore
from event_aggregator.services.webhooks import (
    EventStore,
    SubscriptionValidation,
    TokenResolver,
    WebhookProcessor,
    validate_subscription,
)

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Long-lived collaborators shared by every request in the process."""

    config: AppConfig
    credentials: Credentials
    client: FacebookGraphClient
    webhook_limiter: BoundSlidingWindowLimiter
    refresh_limiter: TokenBucketRateLimiter
    service_logger: ServiceLogger

    def webhook_processor(
        self,
        event_store: EventStore,
        token_resolver: TokenResolver,
    ) -> WebhookProcessor:
        return WebhookProcessor(
            client=self.client,
            rate_limiter=self.webhook_limiter,
            event_store=event_store,
            token_resolver=token_resolver,
            app_secret=self.credentials.app_secret,
            service_logger=self.service_logger,
        )

    def token_refresher(self, token_store: TokenStore) -> TokenRefresher:
        return TokenRefresher(
            client=self.client,
            rate_limiter=self.refresh_limiter,
            token_store=token_store,
            config=self.config.token_refresh,
            service_logger=self.service_logger,
        )

    def sign_state(self, payload: str) -> str:
        """OAuth state token for payload, signed with the app secret."""
        if not self.credentials.app_secret:
            raise RuntimeError("Missing FACEBOOK_APP_SECRET")
        return format_state_token(payload, self.credentials.app_secret)

    def verify_state(self, token: Optional[str]) -> StateTokenResult:
        return parse_and_verify_state_token(token, self.credentials.app_secret)

    def verify_subscription(self, params: Mapping[str, str]) -> SubscriptionValidation:
        """Answer the GET ``hub.*`` handshake against the configured verify token."""
        result = validate_subscription(params, self.credentials.webhook_verify_token)
        if not result.valid:
            self.service_logger.warn(
                "Webhook subscription verification failed",
                {"status": result.status, "error": result.error},
            )
        return result

    def authorize_sync(self, auth_header: Optional[str]) -> bool:
        """
        Check the bearer token guarding scheduled sync runs.

        Raises:
            RuntimeError: SYNC_TOKEN is not configured
        """
        if not self.credentials.sync_token:
            raise RuntimeError("Missing SYNC_TOKEN")

        token = extract_bearer_token(auth_header)
        if not verify_bearer_token(token, self.credentials.sync_token):
            self.service_logger.warn(
                "Unauthorized sync request",
                {"error": "Invalid or missing bearer token"},
            )
            return False
        return True

    async def close(self) -> None:
        await self.client.close()


def build_services(
    config: Optional[AppConfig] = None,
    credentials: Optional[Credentials] = None,
    transport: Optional[HttpTransport] = None,
    service_logger: Optional[ServiceLogger] = None,
    time_provider: Optional[TimeProvider] = None,
    sleep: Optional[Sleep] = None,
) -> Services:
    """
    Wire the Graph API client and rate limiters.

    Args:
        config: Loaded configuration (defaults to load_config())
        credentials: App secrets (defaults to load_credentials())
        transport: HTTP transport override, mainly for tests
        service_logger: Logger capability shared by all services
        time_provider: Clock for the rate limiters
        sleep: Backoff sleep override for the client
    """
    config = config or load_config()
    credentials = credentials or load_credentials()
    service_logger = service_logger or StdlibServiceLogger()
    time_provider = time_provider or SystemTimeProvider()

    client = FacebookGraphClient(
        config=config.graph,
        transport=transport,
        service_logger=service_logger,
        sleep=sleep,
        app_id=credentials.app_id,
        app_secret=credentials.app_secret,
    )

    webhook_limit = config.webhook_limit
    webhook_limiter = create_sliding_window_limiter(
        webhook_limit.name,
        webhook_limit.max_requests,
        webhook_limit.window_ms,
        time_provider=time_provider,
    )

    refresh_limit = config.token_refresh_limit
    refresh_limiter = create_token_bucket_limiter(
        refresh_limit.capacity,
        refresh_limit.refill_rate,
        time_provider=time_provider,
    )

    logger.debug(
        f"Services built for {config.graph.graph_url} "
        f"(max_retries={config.graph.max_retries})"
    )

    return Services(
        config=config,
        credentials=credentials,
        client=client,
        webhook_limiter=webhook_limiter,
        refresh_limiter=refresh_limiter,
        service_logger=service_logger,
    )
