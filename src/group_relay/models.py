"""Data models used across the relay."""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from .utils import parse_timestamp

__all__ = [
    "ForwardOutcome",
    "ForwardResult",
    "Message",
    "RoutingDecision",
    "derive_message_key",
    "message_from_payload",
]


@dataclass(frozen=True, slots=True)
class Message:
    """A fully formed message observed in a source conversation."""

    origin_id: str
    sender_id: str
    timestamp: datetime | None
    text: str
    message_id: str | None = None
    origin_name: str | None = None
    sender_name: str | None = None

    def dedup_key(self) -> str:
        if self.message_id:
            return self.message_id
        return derive_message_key(self.origin_id, self.sender_id, self.timestamp, self.text)

    @property
    def origin_label(self) -> str:
        return self.origin_name or self.origin_id

    @property
    def sender_label(self) -> str:
        return self.sender_name or self.sender_id


def derive_message_key(
    origin_id: str, sender_id: str, timestamp: datetime | None, text: str
) -> str:
    """Digest used when the source cannot supply a stable message id."""

    stamp = timestamp.isoformat() if timestamp is not None else ""
    payload = "\n".join((origin_id, sender_id, stamp, text))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class RoutingDecision:
    """Text to deliver into one target conversation."""

    rule_name: str
    target: str
    text: str


class ForwardOutcome(str, Enum):
    DELIVERED = "delivered"
    TARGET_NOT_FOUND = "target_not_found"
    SEND_FAILED = "send_failed"


@dataclass(frozen=True, slots=True)
class ForwardResult:
    outcome: ForwardOutcome
    decision: RoutingDecision
    handle: str | None = None
    error: str | None = None

    @property
    def delivered(self) -> bool:
        return self.outcome is ForwardOutcome.DELIVERED


_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "origin_id": ("originId", "origin_id", "origin", "chatId", "chat_id"),
    "origin_name": ("originName", "origin_name", "chatName", "chat_name"),
    "sender_id": ("senderId", "sender_id", "author"),
    "sender_name": ("senderName", "sender_name", "authorName", "author_name"),
    "timestamp": ("timestamp", "time", "date"),
    "text": ("text", "body", "content"),
    "message_id": ("messageId", "message_id", "id"),
}


def message_from_payload(payload: Mapping[str, Any]) -> Message:
    """Build a :class:`Message` from a webhook event body.

    Raises ``ValueError`` when required fields are missing or malformed.
    """

    if not isinstance(payload, Mapping):
        raise ValueError("Message payload must be a JSON object")

    values = {field: _first_present(payload, aliases) for field, aliases in _FIELD_ALIASES.items()}

    origin_id = _optional_text(values["origin_id"])
    origin_name = _optional_text(values["origin_name"])
    if origin_id is None:
        origin_id = origin_name
    if origin_id is None:
        raise ValueError("Message payload must include 'originId' or 'originName'")

    text = values["text"]
    if text is None:
        raise ValueError("Message payload must include 'text'")
    if not isinstance(text, str):
        raise ValueError("Message field 'text' must be a string")

    return Message(
        origin_id=origin_id,
        origin_name=origin_name,
        sender_id=_optional_text(values["sender_id"]) or "",
        sender_name=_optional_text(values["sender_name"]),
        timestamp=parse_timestamp(values["timestamp"]),
        text=text,
        message_id=_optional_text(values["message_id"]),
    )


def _first_present(payload: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def _optional_text(value: Any) -> str | None:
    if value is None or isinstance(value, Mapping | list):
        return None
    text = str(value).strip()
    return text or None
