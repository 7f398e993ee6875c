"""Wire protocol — JSON text frames exchanged with WebSocket clients.

Learn: Validation happens at two separate levels:

1. Container level: the request must be a JSON object whose list field
   (`subscriptions` / `feedIds`) really is a list. Anything else raises
   RequestFormatError and the client gets a single `error` frame.
2. Element level: each entry inside that list is checked on its own.
   Bad entries are dropped silently; the rest of the batch still applies.

Outbound frames are plain dicts built here and serialised with json.dumps,
so every message shape lives in one file.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Union

from pydantic import BaseModel, Field, ValidationError

# ─── Message types ────────────────────────────────────────

SUBSCRIBE = "subscribe"
UNSUBSCRIBE = "unsubscribe"
PING = "ping"

CONNECTED = "connected"
PRICE_UPDATE = "priceUpdate"
SUBSCRIBED = "subscribed"
UNSUBSCRIBED = "unsubscribed"
PONG = "pong"
ERROR = "error"

INVALID_JSON = "Invalid JSON format"
INVALID_SUBSCRIPTION = "Invalid subscription format"
INVALID_UNSUBSCRIPTION = "Invalid unsubscription format"


class RequestFormatError(Exception):
    """A client frame is unusable as a whole (bad JSON, missing list field)."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ─── Inbound ──────────────────────────────────────────────


class SubscribeRequest(BaseModel):
    subscription_id: Any = Field(None, alias="subscriptionId")
    subscriptions: list[Any]


class UnsubscribeRequest(BaseModel):
    feed_ids: list[Any] = Field(alias="feedIds")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-standard JSON constant: {name}")


def decode(raw: Union[str, bytes]) -> dict[str, Any]:
    """Parse one inbound frame into a JSON object.

    NaN and Infinity are refused so they can never be echoed back in a
    frame a browser cannot parse. Deep nesting that exhausts the parser
    counts as bad JSON too.
    """
    try:
        message = json.loads(raw, parse_constant=_reject_constant)
    except (ValueError, RecursionError) as e:
        raise RequestFormatError(INVALID_JSON) from e
    if not isinstance(message, dict):
        raise RequestFormatError(INVALID_JSON)
    return message


def parse_subscribe(message: dict[str, Any]) -> SubscribeRequest:
    try:
        return SubscribeRequest.model_validate(message)
    except ValidationError as e:
        raise RequestFormatError(INVALID_SUBSCRIPTION) from e


def parse_unsubscribe(message: dict[str, Any]) -> UnsubscribeRequest:
    try:
        return UnsubscribeRequest.model_validate(message)
    except ValidationError as e:
        raise RequestFormatError(INVALID_UNSUBSCRIPTION) from e


def requested_feed_ids(subscriptions: Iterable[Any]) -> list[Any]:
    """Pull the raw `feedId` out of each `{"feedId": ...}` entry.

    Entries that are not objects yield None, which the registry rejects
    along with any other invalid id.
    """
    return [
        entry.get("feedId") if isinstance(entry, dict) else None
        for entry in subscriptions
    ]


# ─── Formatting ───────────────────────────────────────────


def iso_timestamp(at: Optional[datetime] = None) -> str:
    """UTC ISO-8601 with millisecond precision, e.g. 2024-05-01T12:00:00.123Z."""
    at = at or datetime.now(timezone.utc)
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    at = at.astimezone(timezone.utc)
    return at.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_decimal(value: Union[Decimal, int, float, str]) -> Decimal:
    """Coerce a published value to a finite Decimal.

    Floats go through str() so 200.1 becomes Decimal("200.1") rather than
    its binary expansion.
    """
    if isinstance(value, bool):
        raise ValueError(f"Price must be numeric, got {value!r}")
    if isinstance(value, float):
        value = str(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Price must be numeric, got {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"Price must be finite, got {value!r}")
    return result


def format_price(value: Decimal) -> str:
    """Decimal → text, keeping its scale and never using exponent notation."""
    return format(value, "f")


# ─── Outbound ─────────────────────────────────────────────


def connected(client_id: int, message: str) -> dict[str, Any]:
    return {"type": CONNECTED, "clientId": client_id, "message": message}


def price_update(
    feed_id: int,
    price: Decimal,
    at: Optional[datetime] = None,
) -> dict[str, Any]:
    return {
        "type": PRICE_UPDATE,
        "timestamp": iso_timestamp(at),
        "updates": [{"feedId": feed_id, "price": format_price(price)}],
    }


def subscribed(subscription_id: Any, feed_ids: list[int]) -> dict[str, Any]:
    return {
        "type": SUBSCRIBED,
        "subscriptionId": subscription_id,
        "subscribedFeeds": feed_ids,
    }


def unsubscribed(feed_ids: list[int]) -> dict[str, Any]:
    return {"type": UNSUBSCRIBED, "unsubscribedFeeds": feed_ids}


def pong(at: Optional[datetime] = None) -> dict[str, Any]:
    return {"type": PONG, "timestamp": iso_timestamp(at)}


def error(message: str) -> dict[str, Any]:
    return {"type": ERROR, "message": message}


def unknown_type(message_type: Any) -> dict[str, Any]:
    return error(f"Unknown message type: {message_type}")


def encode(message: dict[str, Any]) -> str:
    return json.dumps(message)
