"""Reduce raw webhook payloads to MessageInput / StatusUpdateInput records."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Iterator, Optional

from .errors import MalformedPayload
from .schemas import MessageInput, MessageStatus, NormalizedPayload, StatusUpdateInput

logger = logging.getLogger(__name__)

# Numeric timestamps above this are milliseconds, at or below are seconds
MILLISECONDS_THRESHOLD = 10**12

DEFAULT_DISPLAY_NAME = "Unknown"

MESSAGES_KEYS = ("messages",)
STATUSES_KEYS = ("statuses", "message_status")

# change.field -> which arrays of change.value are read
_CHANGE_FIELDS = {
    "messages": (True, True),
    "statuses": (False, True),
    None: (True, True),
}


# ---------- Rules ----------


def _scalar_text(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _plain_text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _present(value: Any) -> Optional[Any]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and not value.strip():
        return None
    if isinstance(value, (dict, list)):
        return None
    return value


@dataclass(frozen=True)
class FieldRule:
    """Ordered extraction rule for one logical field.

    ``paths`` are tuples whose first element names a scope; the rest are keys
    (or list indexes) walked inside that scope. ``coerce`` turns a raw value
    into the field value, returning None when the value is unusable.
    """

    name: str
    paths: tuple[tuple[Any, ...], ...]
    coerce: Callable[[Any], Any] = _scalar_text
    default: Any = None

    def resolve(self, scopes: dict[str, Any]) -> Any:
        for path in self.paths:
            scope, keys = path[0], path[1:]
            value = dig(scopes.get(scope), keys)
            if value is None:
                continue
            resolved = self.coerce(value)
            if resolved is not None:
                return resolved
        return self.default


def dig(node: Any, keys: tuple[Any, ...]) -> Any:
    for key in keys:
        if isinstance(key, int):
            items = as_list(node)
            if key >= len(items):
                return None
            node = items[key]
        elif isinstance(node, dict):
            node = node.get(key)
        else:
            return None
        if node is None:
            return None
    return node


MESSAGE_ID = FieldRule("message_id", (("message", "id"), ("message", "msg_id")))

CONVERSATION_ID = FieldRule(
    "conversation_id",
    (
        ("message", "from"),
        ("message", "from", "id"),
        ("contact", "wa_id"),
        ("contact", "waId"),
        ("value", "wa_id"),
        ("value", "from", "id"),
        ("message", "wa_id"),
        ("payload", "wa_id"),
    ),
)

MESSAGE_CORRELATION_ID = FieldRule(
    "correlation_id",
    (("message", "context", "id"), ("message", "meta_msg_id")),
)

BODY = FieldRule(
    "body",
    (("message", "text", "body"), ("message", "text"), ("message", "message")),
    coerce=_plain_text,
    default="",
)

DISPLAY_NAME = FieldRule(
    "sender_display_name",
    (
        ("contact", "profile", "name"),
        ("value", "profile", "name"),
        ("payload", "profile", "name"),
    ),
    default=DEFAULT_DISPLAY_NAME,
)

TIMESTAMP = FieldRule(
    "timestamp",
    (("message", "timestamp"), ("value", "timestamp"), ("payload", "timestamp")),
    coerce=_present,
)

TARGET_MESSAGE_ID = FieldRule(
    "target_message_id",
    (
        ("status", "id"),
        ("status", "message_id"),
        ("status", "msg_id"),
        ("status", "meta_msg_id"),
    ),
)

STATUS_CORRELATION_ID = FieldRule(
    "correlation_id",
    (("status", "meta_msg_id"), ("status", "context", "id")),
)

STATUS_VALUE = FieldRule(
    "status",
    (
        ("status", "status"),
        ("status", "conversation", "status"),
        ("status", "message_status"),
    ),
)


# ---------- Timestamps ----------


def to_utc_datetime(value: Any, now: Optional[datetime] = None) -> datetime:
    """Epoch seconds/ms, ISO-8601 or RFC 2822 to aware UTC; else ``now``."""
    fallback = now or datetime.now(timezone.utc)

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return fallback
    elif not isinstance(value, (int, float)):
        return fallback

    try:
        number = float(value)
    except (OverflowError, ValueError):
        # huge ints overflow; non-numeric strings go to date parsing
        if not isinstance(value, str):
            return fallback
        return _parse_date_string(value) or fallback

    if not math.isfinite(number):
        return fallback
    seconds = number / 1000 if number > MILLISECONDS_THRESHOLD else number
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return fallback


def _parse_date_string(value: str) -> Optional[datetime]:
    parsed: Optional[datetime]
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ---------- Payload walking ----------


def as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def decode_payload(raw: Any) -> Any:
    """Decode bytes/str JSON; pass anything else through unchanged."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedPayload(f"payload is not UTF-8: {exc}") from exc
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except (ValueError, RecursionError) as exc:
            # JSONDecodeError, oversized integers, excessive nesting
            raise MalformedPayload(f"payload is not valid JSON: {exc}") from exc
    return raw


def _containers(root: dict) -> Iterator[tuple[dict, bool, bool]]:
    """Yield (container, read_messages, read_statuses) for every change."""
    entries = as_list(root.get("entry") or root.get("entries"))
    found = False
    for entry in entries:
        for change in as_list(_as_dict(entry).get("changes")):
            change = _as_dict(change)
            field = change.get("field")
            if field not in _CHANGE_FIELDS:
                logger.debug("skipping change with field %r", field)
                continue
            found = True
            read_messages, read_statuses = _CHANGE_FIELDS[field]
            yield _as_dict(change.get("value")), read_messages, read_statuses

    if not found and not entries:
        value = root.get("value")
        yield (value if isinstance(value, dict) else root), True, True


def _collect(container: dict, keys: tuple[str, ...]) -> list[dict]:
    for key in keys:
        if container.get(key):
            return [item for item in as_list(container[key]) if isinstance(item, dict)]
    return []


def _message_input(scopes: dict[str, Any], now: datetime) -> Optional[MessageInput]:
    message_id = MESSAGE_ID.resolve(scopes)
    if message_id is None:
        logger.debug("dropping message without id")
        return None
    return MessageInput(
        conversation_id=CONVERSATION_ID.resolve(scopes) or "",
        message_id=message_id,
        correlation_id=MESSAGE_CORRELATION_ID.resolve(scopes),
        body=BODY.resolve(scopes),
        created_at=to_utc_datetime(TIMESTAMP.resolve(scopes), now=now),
        sender_display_name=DISPLAY_NAME.resolve(scopes),
    )


def _status_input(scopes: dict[str, Any]) -> Optional[StatusUpdateInput]:
    target = TARGET_MESSAGE_ID.resolve(scopes)
    correlation = STATUS_CORRELATION_ID.resolve(scopes)
    if target is None and correlation is None:
        logger.debug("dropping status without message reference")
        return None
    raw_status = STATUS_VALUE.resolve(scopes)
    try:
        status = MessageStatus(str(raw_status).lower())
    except ValueError:
        logger.debug("dropping status %r for %s", raw_status, target or correlation)
        return None
    return StatusUpdateInput(
        target_message_id=target,
        correlation_id=correlation,
        status=status,
    )


def normalize(raw: Any, now: Optional[datetime] = None) -> NormalizedPayload:
    payload = decode_payload(raw)
    result = NormalizedPayload()
    if not isinstance(payload, dict):
        return result

    now = now or datetime.now(timezone.utc)
    root = payload.get("metaData") if isinstance(payload.get("metaData"), dict) else payload

    for container, read_messages, read_statuses in _containers(root):
        contact = _as_dict(dig(container, ("contacts", 0)))
        base = {"contact": contact, "value": container, "payload": root}

        if read_messages:
            for message in _collect(container, MESSAGES_KEYS):
                item = _message_input({**base, "message": message}, now)
                if item is not None:
                    result.messages.append(item)

        if read_statuses:
            for status in _collect(container, STATUSES_KEYS):
                item = _status_input({**base, "status": status})
                if item is not None:
                    result.statuses.append(item)

    return result
