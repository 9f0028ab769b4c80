"""Turn raw webhook changes and Graph API events into domain records."""
import time
from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional

ACTION_MAP = {
    "add": "created",
    "create": "created",
    "edit": "updated",
    "update": "updated",
    "delete": "deleted",
    "remove": "deleted",
}

EVENT_TYPE_MAP = {
    "add": "event.create",
    "create": "event.create",
    "edit": "event.update",
    "update": "event.update",
    "delete": "event.delete",
    "remove": "event.delete",
}

# Checked in order; nested event.id and object.id come last
EVENT_ID_KEYS = ("id", "event_id", "eventId", "parent_id", "parentId")
NESTED_ID_KEYS = ("event", "object")


@dataclass
class NormalizedWebhookEvent:
    """
    A webhook change in domain form.

    Attributes:
        page_id: Source page the delivery belongs to
        timestamp: Publish time in epoch milliseconds
        action: created, updated, deleted or unknown
        event_type: e.g. event.create; the raw field name for unmapped verbs
        event_id: Identifier of the changed item, if one could be found
        story: Human readable story text sent by the provider
    """
    page_id: str
    timestamp: int
    action: str
    event_type: str
    event_id: Optional[str] = None
    story: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def resolve_event_id(
    value: Mapping[str, Any],
    fallback: Optional[str] = None,
) -> Optional[str]:
    """First non-empty string among the candidate id keys."""
    candidates: list[Any] = [value.get(key) for key in EVENT_ID_KEYS]
    for nested_key in NESTED_ID_KEYS:
        nested = value.get(nested_key)
        if isinstance(nested, Mapping):
            candidates.append(nested.get("id"))
    if fallback:
        candidates.append(fallback)

    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def normalize_webhook_change(
    page_id: str,
    change: Mapping[str, Any],
    now_ms: Optional[int] = None,
) -> NormalizedWebhookEvent:
    """
    Normalize one ``{field, value}`` change of a page webhook entry.

    Args:
        page_id: Page the entry belongs to
        change: Raw change object
        now_ms: Fallback timestamp when the change has no ``published``
    """
    value = change.get("value")
    if not isinstance(value, Mapping):
        value = {}

    verb = value.get("verb")
    verb = verb.lower() if isinstance(verb, str) else "unknown"

    published = value.get("published")
    if isinstance(published, (int, float)) and not isinstance(published, bool):
        timestamp = int(published * 1000)
    elif now_ms is not None:
        timestamp = int(now_ms)
    else:
        timestamp = int(time.time()) * 1000

    story = value.get("story")

    return NormalizedWebhookEvent(
        page_id=page_id,
        timestamp=timestamp,
        action=ACTION_MAP.get(verb, "unknown"),
        event_type=EVENT_TYPE_MAP.get(verb, str(change.get("field", ""))),
        event_id=resolve_event_id(value),
        story=story if isinstance(story, str) else None,
    )


def normalize_event(
    facebook_event: Mapping[str, Any],
    page_id: str,
    cover_image_url: Optional[str] = None,
) -> dict[str, Any]:
    """
    Shape a Graph API event for persistence.

    Optional fields are only copied when present. A processed cover URL
    wins over the provider's.
    """
    cover = facebook_event.get("cover")
    cover = cover if isinstance(cover, Mapping) else {}
    final_cover_url = cover_image_url or cover.get("source")

    event_data: dict[str, Any] = {
        "id": facebook_event.get("id"),
        "name": facebook_event.get("name"),
        "start_time": facebook_event.get("start_time"),
    }
    for key in ("description", "end_time", "place"):
        if key in facebook_event:
            event_data[key] = facebook_event[key]

    if final_cover_url:
        event_data["cover"] = {"source": final_cover_url, "id": cover.get("id")}

    return {
        "page_id": int(page_id) if page_id.isdigit() else page_id,
        "event_id": facebook_event.get("id"),
        "event_data": event_data,
    }
