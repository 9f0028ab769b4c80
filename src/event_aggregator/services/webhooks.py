"""
Inbound page webhooks.

Handles the provider's two webhook calls:
- GET subscription handshake (``hub.mode``/``hub.challenge``/``hub.verify_token``)
- POST deliveries signed with ``x-hub-signature-256: sha256=<hex>``

Deliveries are rate limited per page (sliding window) so bursts for the
same page are processed once. Each change is counted as processed or
failed; one bad change never aborts the batch.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Union

from event_aggregator.core.errors import GraphAPIError
from event_aggregator.core.integrity import verify_webhook_signature
from event_aggregator.core.telemetry import ServiceLogger, StdlibServiceLogger
from event_aggregator.datasources.facebook import FacebookGraphClient
from event_aggregator.services.normalizer import (
    normalize_event,
    normalize_webhook_change,
    resolve_event_id,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-hub-signature-256"

PROCESSED_EVENT_TYPES = frozenset({
    "event.create",
    "event.update",
    "event.delete",
    "post.create",
    "post.update",
    "post.delete",
})


class KeyedLimiter(Protocol):
    def check(self, key: str) -> bool:
        ...


class EventStore(Protocol):
    """Persistence collaborator for normalized events."""

    async def upsert_events(self, events: list[dict[str, Any]]) -> None:
        ...

    async def delete_event(self, page_id: str, event_id: str) -> None:
        ...


TokenResolver = Callable[[str], Awaitable[Optional[str]]]


class WebhookRejected(Exception):
    """Delivery refused before processing; status is the HTTP status to answer with."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


@dataclass
class SubscriptionValidation:
    valid: bool
    challenge: Optional[str] = None
    error: Optional[str] = None
    status: int = 200


@dataclass
class PayloadValidation:
    valid: bool
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class WebhookResult:
    """Per-delivery counters."""

    processed: int = 0
    failed: int = 0
    skipped: int = 0
    rate_limited_pages: list[str] = field(default_factory=list)

    def merge(self, other: "WebhookResult") -> None:
        self.processed += other.processed
        self.failed += other.failed
        self.skipped += other.skipped
        self.rate_limited_pages.extend(other.rate_limited_pages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "eventsProcessed": self.processed,
            "eventsFailed": self.failed,
            "eventsSkipped": self.skipped,
        }


def should_process_event_type(event_type: str) -> bool:
    return event_type in PROCESSED_EVENT_TYPES


def validate_subscription(
    params: Mapping[str, str],
    verify_token: Optional[str],
) -> SubscriptionValidation:
    """
    Check the GET handshake parameters.

    Returns status 400 for missing or wrong parameters and 403 for a verify
    token mismatch.
    """
    mode = params.get("hub.mode")
    challenge = params.get("hub.challenge")
    token = params.get("hub.verify_token")

    if not mode or not challenge or not token:
        return SubscriptionValidation(
            valid=False, error="Missing required webhook validation parameters", status=400
        )

    if mode != "subscribe":
        return SubscriptionValidation(valid=False, error="Invalid hub.mode", status=400)

    if not verify_token or token != verify_token:
        return SubscriptionValidation(valid=False, error="Invalid verify token", status=403)

    return SubscriptionValidation(valid=True, challenge=challenge)


def validate_webhook_payload(body: Any) -> PayloadValidation:
    """Structural checks on a parsed delivery body."""
    if not isinstance(body, dict):
        return PayloadValidation(valid=False, error="Invalid request body")

    if not body.get("object"):
        return PayloadValidation(valid=False, error="Missing 'object' field")

    if body["object"] not in ("page", "user"):
        return PayloadValidation(
            valid=False, error="Invalid 'object' value - must be 'page' or 'user'"
        )

    entries = body.get("entry")
    if not isinstance(entries, list):
        return PayloadValidation(valid=False, error="Missing or invalid 'entry' array")

    for entry in entries:
        if not isinstance(entry, dict):
            return PayloadValidation(valid=False, error="Invalid entry in array")

        if not entry.get("id"):
            return PayloadValidation(valid=False, error="Entry missing required 'id' field")

        if not isinstance(entry["id"], str):
            return PayloadValidation(valid=False, error="Entry 'id' must be a string")

        entry_time = entry.get("time")
        if entry_time is not None and (
            isinstance(entry_time, bool) or not isinstance(entry_time, (int, float))
        ):
            return PayloadValidation(
                valid=False, error="Entry 'time' must be a number if present"
            )

    return PayloadValidation(valid=True, data=body)


def extract_changes(entry: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Well-formed ``{field, value}`` changes of an entry."""
    changes = entry.get("changes")
    if not isinstance(changes, list):
        return []
    return [
        change for change in changes
        if isinstance(change, dict) and isinstance(change.get("field"), str)
    ]


class WebhookProcessor:
    """
    Verifies, de-duplicates and applies page webhook deliveries.

    Collaborators are injected: the Graph API client fetches event details,
    the limiter admits at most one delivery per page per window, the event
    store persists, and the token resolver maps a page id to its token.
    """

    def __init__(
        self,
        client: FacebookGraphClient,
        rate_limiter: KeyedLimiter,
        event_store: EventStore,
        token_resolver: TokenResolver,
        app_secret: Optional[str],
        service_logger: Optional[ServiceLogger] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.client = client
        self.rate_limiter = rate_limiter
        self.event_store = event_store
        self.token_resolver = token_resolver
        self.app_secret = app_secret
        self.log = service_logger or StdlibServiceLogger(stdlib_logger=logger)
        self._clock = clock or time.time

    async def handle_delivery(
        self,
        raw_body: Union[bytes, str],
        signature: Optional[str],
    ) -> WebhookResult:
        """
        Verify and process a POST delivery.

        Args:
            raw_body: Request body exactly as received
            signature: Value of the x-hub-signature-256 header

        Raises:
            WebhookRejected: 401 for a missing or bad signature, 400 for a
                body that is not valid JSON or fails validation
        """
        if not self.app_secret:
            raise RuntimeError("Missing FACEBOOK_APP_SECRET")

        if not signature:
            self.log.warn("Missing webhook signature header")
            raise WebhookRejected(401, "Missing signature")

        if not verify_webhook_signature(raw_body, signature, self.app_secret):
            self.log.warn("Invalid webhook signature")
            raise WebhookRejected(401, "Invalid signature")

        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            self.log.warn("Failed to parse webhook payload")
            raise WebhookRejected(400, "Invalid JSON") from exc

        validation = validate_webhook_payload(payload)
        if not validation.valid:
            self.log.warn("Invalid webhook payload", {"error": validation.error})
            raise WebhookRejected(400, validation.error or "Invalid payload")

        result = await self.process_payload(validation.data)
        self.log.info(
            "Webhook processing complete",
            {"eventsProcessed": result.processed, "eventsFailed": result.failed},
        )
        return result

    async def process_payload(self, payload: Mapping[str, Any]) -> WebhookResult:
        """Process every entry of a validated payload."""
        result = WebhookResult()
        for entry in payload.get("entry", []):
            page_id = entry["id"]

            if not self.rate_limiter.check(page_id):
                self.log.debug("Webhook rate limited for page", {"pageId": page_id})
                result.rate_limited_pages.append(page_id)
                continue

            changes = extract_changes(entry)
            if not changes:
                self.log.debug("No event changes in webhook for page", {"pageId": page_id})
                continue

            result.merge(await self.process_changes(page_id, changes))
        return result

    async def process_changes(
        self,
        page_id: str,
        changes: list[dict[str, Any]],
    ) -> WebhookResult:
        """Apply the changes of one page entry."""
        result = WebhookResult()
        to_upsert: list[dict[str, Any]] = []
        token_cache: dict[str, Optional[str]] = {}

        async def resolve_token() -> Optional[str]:
            if page_id not in token_cache:
                token_cache[page_id] = await self.token_resolver(page_id)
                if not token_cache[page_id]:
                    self.log.warn(
                        "No access token found for page when processing webhook",
                        {"pageId": page_id},
                    )
            return token_cache[page_id]

        now_ms = int(self._clock() * 1000)

        for change in changes:
            try:
                normalized = normalize_webhook_change(page_id, change, now_ms)

                if not should_process_event_type(normalized.event_type):
                    self.log.debug(
                        "Skipping webhook event type",
                        {"eventType": normalized.event_type, "pageId": page_id},
                    )
                    result.skipped += 1
                    continue

                event_id = resolve_event_id(change.get("value") or {}, normalized.event_id)
                if not event_id:
                    self.log.warn(
                        "Webhook change missing event id",
                        {"pageId": page_id, "valueKeys": sorted((change.get("value") or {}).keys())},
                    )
                    result.failed += 1
                    continue

                if normalized.action == "deleted":
                    await self.event_store.delete_event(page_id, event_id)
                    self.log.debug(
                        "Deleted event from webhook change",
                        {"pageId": page_id, "eventId": event_id},
                    )
                    result.processed += 1
                    continue

                access_token = await resolve_token()
                if not access_token:
                    result.failed += 1
                    continue

                try:
                    details = await self.client.get_event_details(event_id, access_token)
                except GraphAPIError as exc:
                    self.log.error(
                        "Failed to fetch event details for webhook change",
                        exc,
                        {"pageId": page_id, "eventId": event_id, "kind": exc.kind.value},
                    )
                    result.failed += 1
                    continue

                if not details:
                    self.log.warn(
                        "Event details not returned for webhook change",
                        {"pageId": page_id, "eventId": event_id},
                    )
                    result.failed += 1
                    continue

                to_upsert.append(normalize_event(details, page_id))
            except Exception as exc:
                self.log.error("Error processing webhook change", exc, {"pageId": page_id})
                result.failed += 1

        if to_upsert:
            try:
                await self.event_store.upsert_events(to_upsert)
                result.processed += len(to_upsert)
            except Exception as exc:
                self.log.error(
                    "Failed to persist webhook events",
                    exc,
                    {"pageId": page_id, "count": len(to_upsert)},
                )
                result.failed += len(to_upsert)

        return result
