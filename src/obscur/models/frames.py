"""
NIP-01 wire frames exchanged with relays.

Client-to-relay frames are built as compact JSON text:

```text
["REQ", <sub_id>, <filter>, ...]
["EVENT", <event>]
["CLOSE", <sub_id>]
```

Relay-to-client frames are parsed by
[parse_relay_frame()][obscur.models.frames.parse_relay_frame] into small
typed records. Anything that does not match one of the known shapes is
reported as ``None`` so callers can drop it without raising -- a buggy or
malicious relay must not be able to crash the receive pipeline.
"""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass, field
from typing import Any

from .event import Event


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def new_subscription_id() -> str:
    """Return a random 16-character lowercase hex subscription id."""
    return secrets.token_hex(8)


# ---------------------------------------------------------------------------
# Filters and subscriptions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Filter:
    """Subscription filter.

    Attributes:
        kinds: Event kinds to match.
        authors: Author public keys to match.
        ids: Event ids to match.
        tags: Single-letter tag filters, e.g. ``{"p": ("abc...",)}``
            serialized as ``"#p"``.
        since: Lower bound on ``created_at`` (inclusive).
        until: Upper bound on ``created_at`` (inclusive).
        limit: Maximum number of stored events the relay should return.
    """

    kinds: tuple[int, ...] | None = None
    authors: tuple[str, ...] | None = None
    ids: tuple[str, ...] | None = None
    tags: dict[str, tuple[str, ...]] = field(default_factory=dict, hash=False)
    since: int | None = None
    until: int | None = None
    limit: int | None = None

    def __post_init__(self) -> None:
        for name in self.tags:
            if len(name) != 1:
                raise ValueError(f"tag filter names must be a single letter, got {name!r}")
        if self.limit is not None and self.limit < 0:
            raise ValueError("limit must be non-negative")

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object relays expect."""
        data: dict[str, Any] = {}
        if self.ids is not None:
            data["ids"] = list(self.ids)
        if self.authors is not None:
            data["authors"] = list(self.authors)
        if self.kinds is not None:
            data["kinds"] = list(self.kinds)
        for name, values in self.tags.items():
            data[f"#{name}"] = list(values)
        if self.since is not None:
            data["since"] = self.since
        if self.until is not None:
            data["until"] = self.until
        if self.limit is not None:
            data["limit"] = self.limit
        return data


@dataclass(slots=True)
class Subscription:
    """A REQ issued by one controller for one logical concern.

    ``is_active`` is cleared as soon as the owner unsubscribes; frames that
    arrive afterwards for ``sub_id`` are ignored.
    """

    sub_id: str
    filters: tuple[Filter, ...]
    is_active: bool = True

    def req_frame(self) -> str:
        return req_frame(self.sub_id, *self.filters)

    def close_frame(self) -> str:
        return close_frame(self.sub_id)


# ---------------------------------------------------------------------------
# Client -> relay
# ---------------------------------------------------------------------------


def req_frame(sub_id: str, *filters: Filter) -> str:
    """Build ``["REQ", sub_id, filter, ...]``."""
    if not filters:
        raise ValueError("REQ requires at least one filter")
    return _dumps(["REQ", sub_id, *(f.to_dict() for f in filters)])


def event_frame(event: Event) -> str:
    """Build ``["EVENT", event]``."""
    return _dumps(["EVENT", event.to_dict()])


def close_frame(sub_id: str) -> str:
    """Build ``["CLOSE", sub_id]``."""
    return _dumps(["CLOSE", sub_id])


# ---------------------------------------------------------------------------
# Relay -> client
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EventMessage:
    """``["EVENT", sub_id, event]``; the event is left as a raw dict."""

    sub_id: str
    event: dict[str, Any] = field(hash=False)


@dataclass(frozen=True, slots=True)
class OkMessage:
    """``["OK", event_id, accepted, message]``."""

    event_id: str
    accepted: bool
    message: str = ""


@dataclass(frozen=True, slots=True)
class EoseMessage:
    """``["EOSE", sub_id]``."""

    sub_id: str


@dataclass(frozen=True, slots=True)
class NoticeMessage:
    """``["NOTICE", message]``."""

    message: str


@dataclass(frozen=True, slots=True)
class ClosedMessage:
    """``["CLOSED", sub_id, message]``."""

    sub_id: str
    message: str = ""


RelayMessage = EventMessage | OkMessage | EoseMessage | NoticeMessage | ClosedMessage


def parse_relay_frame(text: str | bytes) -> RelayMessage | None:
    """Parse one relay-to-client frame.

    Returns:
        The typed message, or ``None`` if the frame is not valid JSON, is
        not an array, has an unknown verb, or has fields of the wrong type.
    """
    try:
        data = json.loads(text)
    except (ValueError, TypeError):
        return None

    if not isinstance(data, list) or not data or not isinstance(data[0], str):
        return None

    verb, args = data[0], data[1:]

    if verb == "EVENT":
        if len(args) >= 2 and isinstance(args[0], str) and isinstance(args[1], dict):
            return EventMessage(sub_id=args[0], event=args[1])
        return None

    if verb == "OK":
        if len(args) >= 2 and isinstance(args[0], str) and isinstance(args[1], bool):
            message = args[2] if len(args) >= 3 and isinstance(args[2], str) else ""
            return OkMessage(event_id=args[0], accepted=args[1], message=message)
        return None

    if verb == "EOSE":
        if len(args) >= 1 and isinstance(args[0], str):
            return EoseMessage(sub_id=args[0])
        return None

    if verb == "NOTICE":
        if len(args) >= 1 and isinstance(args[0], str):
            return NoticeMessage(message=args[0])
        return None

    if verb == "CLOSED":
        if len(args) >= 1 and isinstance(args[0], str):
            message = args[1] if len(args) >= 2 and isinstance(args[1], str) else ""
            return ClosedMessage(sub_id=args[0], message=message)
        return None

    return None
