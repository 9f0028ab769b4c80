"""Services composed from the Graph API client and the rate limiters."""

from event_aggregator.services.normalizer import (
    NormalizedWebhookEvent,
    normalize_event,
    normalize_webhook_change,
)
from event_aggregator.services.token_refresh import (
    PageToken,
    RefreshReport,
    TokenRefresher,
    TokenStatus,
)
from event_aggregator.services.webhooks import (
    WebhookProcessor,
    WebhookRejected,
    WebhookResult,
    validate_subscription,
    validate_webhook_payload,
)

__all__ = [
    "NormalizedWebhookEvent",
    "normalize_event",
    "normalize_webhook_change",
    "PageToken",
    "RefreshReport",
    "TokenRefresher",
    "TokenStatus",
    "WebhookProcessor",
    "WebhookRejected",
    "WebhookResult",
    "validate_subscription",
    "validate_webhook_payload",
]
