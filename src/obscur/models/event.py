"""
Immutable Nostr event models with canonical id computation.

[Event][obscur.models.event.Event] is the signed, hash-identified record
exchanged with relays; [UnsignedEvent][obscur.models.event.UnsignedEvent]
holds the same fields before an id and signature exist. Both validate
their shape eagerly in ``__post_init__`` so that a malformed payload from a
relay never produces a half-valid instance.

Signing and signature verification need key material and live in
[obscur.nips.nip01][obscur.nips.nip01]; this module only knows how to
compute the canonical id.

Examples:
    ```python
    event = Event.from_dict(json.loads(raw)["event"])
    event.kind                 # 4
    event.first_tag("p")       # recipient public key
    event.id == event.compute_id()
    ```
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any

from ._validation import (
    validate_hex,
    validate_instance,
    validate_str_no_null,
    validate_tags,
    validate_timestamp,
)
from .constants import EVENT_KIND_MAX


_EVENT_FIELDS = ("id", "pubkey", "created_at", "kind", "tags", "content", "sig")


def compute_event_id(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: tuple[tuple[str, ...], ...] | list[list[str]],
    content: str,
) -> str:
    """Compute the NIP-01 event id.

    The id is the lowercase hex SHA-256 of the compact JSON array
    ``[0, pubkey, created_at, kind, tags, content]`` encoded as UTF-8 with
    non-ASCII characters left unescaped.
    """
    serialized = json.dumps(
        [0, pubkey, created_at, kind, [list(tag) for tag in tags], content],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _validate_kind(kind: Any) -> None:
    if isinstance(kind, bool) or not isinstance(kind, int):
        raise TypeError(f"kind must be an int, got {type(kind).__name__}")
    if not 0 <= kind <= EVENT_KIND_MAX:
        raise ValueError(f"kind must be between 0 and {EVENT_KIND_MAX}")


class _TagAccessMixin:
    """Tag lookup helpers shared by signed and unsigned events."""

    __slots__ = ()

    tags: tuple[tuple[str, ...], ...]

    def tag_values(self, name: str) -> list[str]:
        """Return the first value of every tag named *name*, in order."""
        return [tag[1] for tag in self.tags if len(tag) >= 2 and tag[0] == name]

    def first_tag(self, name: str) -> str | None:
        """Return the first value of the first tag named *name*, or ``None``."""
        for tag in self.tags:
            if len(tag) >= 2 and tag[0] == name:
                return tag[1]
        return None

    def has_tag(self, name: str) -> bool:
        """Return True if any tag is named *name* (with or without a value)."""
        return any(tag[0] == name for tag in self.tags)


@dataclass(frozen=True, slots=True)
class UnsignedEvent(_TagAccessMixin):
    """Event fields before id computation and signing.

    Attributes:
        pubkey: Author public key (64 lowercase hex chars, x-only).
        created_at: Unix timestamp in seconds.
        kind: Integer kind discriminator.
        tags: Ordered tag tuples, first element is the tag name.
        content: Plaintext or ciphertext depending on kind.
    """

    pubkey: str
    created_at: int
    kind: int
    tags: tuple[tuple[str, ...], ...]
    content: str

    def __post_init__(self) -> None:
        validate_hex(self.pubkey, 64, "pubkey")
        validate_timestamp(self.created_at, "created_at")
        _validate_kind(self.kind)
        object.__setattr__(self, "tags", validate_tags(self.tags, "tags"))
        validate_str_no_null(self.content, "content")

    def compute_id(self) -> str:
        """Return the canonical id these fields would produce once signed."""
        return compute_event_id(self.pubkey, self.created_at, self.kind, self.tags, self.content)


@dataclass(frozen=True, slots=True)
class Event(_TagAccessMixin):
    """Immutable signed Nostr event.

    Construction validates field types and encodings but does **not**
    verify the signature -- that requires
    [verify_event_signature()][obscur.nips.nip01.verify_event_signature].

    Attributes:
        id: Event id (64 lowercase hex chars).
        pubkey: Author public key (64 lowercase hex chars).
        created_at: Unix timestamp in seconds.
        kind: Integer kind discriminator.
        tags: Ordered tag tuples.
        content: Event content.
        sig: BIP-340 Schnorr signature (128 lowercase hex chars).

    Raises:
        TypeError: If a field has the wrong type.
        ValueError: If a hex field is malformed, the kind is out of range,
            or any string contains null bytes.
    """

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: tuple[tuple[str, ...], ...]
    content: str
    sig: str

    def __post_init__(self) -> None:
        validate_hex(self.id, 64, "id")
        validate_hex(self.pubkey, 64, "pubkey")
        validate_timestamp(self.created_at, "created_at")
        _validate_kind(self.kind)
        object.__setattr__(self, "tags", validate_tags(self.tags, "tags"))
        validate_str_no_null(self.content, "content")
        validate_hex(self.sig, 128, "sig")

    def compute_id(self) -> str:
        """Recompute the canonical id from the unsigned fields."""
        return compute_event_id(self.pubkey, self.created_at, self.kind, self.tags, self.content)

    def to_dict(self) -> dict[str, Any]:
        """Return the NIP-01 JSON object representation."""
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(tag) for tag in self.tags],
            "content": self.content,
            "sig": self.sig,
        }

    def to_json(self) -> str:
        """Return the compact JSON encoding of [to_dict()][obscur.models.event.Event.to_dict]."""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Any) -> Event:
        """Build an event from a decoded JSON object.

        Raises:
            TypeError: If *data* is not a mapping or a field has the wrong type.
            ValueError: If a required field is missing or malformed.
        """
        validate_instance(data, dict, "event")
        missing = [k for k in _EVENT_FIELDS if k not in data]
        if missing:
            raise ValueError(f"event is missing fields: {', '.join(missing)}")
        return cls(
            id=data["id"],
            pubkey=data["pubkey"],
            created_at=data["created_at"],
            kind=data["kind"],
            tags=data["tags"],
            content=data["content"],
            sig=data["sig"],
        )
