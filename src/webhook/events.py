"""Classification of verified webhook bodies into typed events.

Only call ``classify`` on bytes that already passed signature verification.

The message payload shape differs between webhook schema versions, so each
routed field is resolved by an ordered tuple of extraction strategies; the
first strategy returning a non-empty value wins.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

from src.errors import MalformedPayload
from src.models import Event, MessageDirection, MessageEvent, OtherEvent, PingEvent

Extractor = Callable[[dict[str, Any]], Any]


def _path(*keys: str) -> Extractor:
    def extract(payload: dict[str, Any]) -> Any:
        node: Any = payload
        for key in keys:
            if not isinstance(node, dict):
                return None
            node = node.get(key)
        return node

    extract.__name__ = "payload." + ".".join(keys)
    return extract


CONVERSATION_ID_STRATEGIES: tuple[Extractor, ...] = (
    _path("value", "chat_id"),
    _path("chat_id"),
    _path("message", "chat_id"),
    _path("chat", "id"),
    _path("conversation_id"),
)

DIRECTION_STRATEGIES: tuple[Extractor, ...] = (
    _path("value", "direction"),
    _path("direction"),
    _path("message", "direction"),
)

TEXT_STRATEGIES: tuple[Extractor, ...] = (
    _path("value", "content", "text"),
    _path("message", "text"),
    _path("message", "content", "text"),
    _path("text"),
)

MESSAGE_ID_STRATEGIES: tuple[Extractor, ...] = (
    _path("value", "id"),
    _path("message", "id"),
    _path("id"),
)

AUTHOR_ID_STRATEGIES: tuple[Extractor, ...] = (
    _path("value", "author_id"),
    _path("author_id"),
    _path("message", "author_id"),
)

_DIRECTIONS = {
    "in": MessageDirection.INCOMING,
    "incoming": MessageDirection.INCOMING,
    "out": MessageDirection.OUTGOING,
    "outgoing": MessageDirection.OUTGOING,
}


def first_value(payload: dict[str, Any], strategies: tuple[Extractor, ...]) -> str | None:
    """Return the first non-empty scalar any strategy yields, as a string."""
    for strategy in strategies:
        value = strategy(payload)
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, int | str):
            text = str(value)
            if text:
                return text
    return None


def parse_direction(raw: str | None) -> MessageDirection:
    if raw is None:
        return MessageDirection.UNKNOWN
    return _DIRECTIONS.get(raw.strip().lower(), MessageDirection.UNKNOWN)


def classify(raw_body: bytes) -> Event:
    """Parse a verified body into a Ping, Message, or Other event.

    Raises MalformedPayload for undecodable JSON or an unexpected top-level
    shape. A message whose conversation id cannot be resolved comes back as
    an unroutable OtherEvent.
    """
    try:
        body = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayload("Body is not valid UTF-8 JSON") from exc
    if not isinstance(body, dict):
        raise MalformedPayload("Body must be a JSON object")

    payload = body.get("payload", {})
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise MalformedPayload("'payload' must be a JSON object")

    kind = body.get("event")
    if not isinstance(kind, str) or not kind:
        kind = payload.get("type") if isinstance(payload.get("type"), str) else ""
    kind = kind.strip().lower()

    if kind == "ping":
        return PingEvent()
    if kind != "message":
        return OtherEvent(raw_kind=kind)

    conversation_id = first_value(payload, CONVERSATION_ID_STRATEGIES)
    if conversation_id is None:
        return OtherEvent(raw_kind=kind, unroutable=True)

    return MessageEvent(
        conversation_id=conversation_id,
        direction=parse_direction(first_value(payload, DIRECTION_STRATEGIES)),
        text=first_value(payload, TEXT_STRATEGIES),
        message_id=first_value(payload, MESSAGE_ID_STRATEGIES),
        author_id=first_value(payload, AUTHOR_ID_STRATEGIES),
    )
