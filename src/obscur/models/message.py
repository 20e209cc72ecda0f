"""
Engine-level message records.

A [Message][obscur.models.message.Message] is the decrypted, persisted view
of a direct message or group post; an
[OutgoingMessage][obscur.models.message.OutgoingMessage] is a queued unit
of delivery work waiting for a retry. Both are plain mutable dataclasses
owned by a single writer (the
[MessageStore][obscur.core.store.MessageStore]); everyone else works on
copies.

Small value objects ([Attachment][obscur.models.message.Attachment],
[ReplyTo][obscur.models.message.ReplyTo],
[RelayResult][obscur.models.message.RelayResult]) are frozen.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from ._validation import validate_str_not_empty, validate_timestamp
from .constants import MessageStatus
from .event import Event


def conversation_id_for(pubkey_a: str, pubkey_b: str) -> str:
    """Return the order-independent conversation id for two public keys."""
    return ":".join(sorted((pubkey_a, pubkey_b)))


class AttachmentKind(StrEnum):
    IMAGE = "image"
    VIDEO = "video"


@dataclass(frozen=True, slots=True)
class Attachment:
    """Media reference carried alongside a message."""

    kind: AttachmentKind
    url: str
    content_type: str
    file_name: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", AttachmentKind(self.kind))
        validate_str_not_empty(self.url, "url")

    def to_dict(self) -> dict[str, str]:
        return {
            "kind": self.kind.value,
            "url": self.url,
            "content_type": self.content_type,
            "file_name": self.file_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Attachment:
        return cls(
            kind=data["kind"],
            url=data["url"],
            content_type=data.get("content_type", ""),
            file_name=data.get("file_name", ""),
        )


@dataclass(frozen=True, slots=True)
class ReplyTo:
    """Pointer to the message being replied to, with a short preview."""

    message_id: str
    preview_text: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"message_id": self.message_id, "preview_text": self.preview_text}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReplyTo:
        return cls(message_id=data["message_id"], preview_text=data.get("preview_text", ""))


@dataclass(frozen=True, slots=True)
class RelayResult:
    """Outcome of publishing one event to one relay.

    Attributes:
        relay_url: Relay the event was sent to.
        success: True if the relay acknowledged with ``["OK", id, true, ...]``.
        error: Relay message or local failure reason when unsuccessful.
        latency: Seconds between send and acknowledgment, when known.
    """

    relay_url: str
    success: bool
    error: str | None = None
    latency: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "relay_url": self.relay_url,
            "success": self.success,
            "error": self.error,
            "latency": self.latency,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RelayResult:
        return cls(
            relay_url=data["relay_url"],
            success=bool(data["success"]),
            error=data.get("error"),
            latency=data.get("latency"),
        )


@dataclass(slots=True)
class Message:
    """Decrypted direct message or group post.

    ``id`` equals the event id once the message has been signed or
    received. ``timestamp`` is the event ``created_at`` in unix seconds and
    is used for display ordering only.

    Note:
        The fields ``content``, ``encrypted_content``, ``attachment``,
        ``reply_to`` and ``reactions`` are encrypted at rest by the store;
        everything else is kept as plaintext metadata for indexing.
    """

    id: str
    conversation_id: str
    content: str
    timestamp: int
    is_outgoing: bool
    status: MessageStatus
    sender_pubkey: str
    recipient_pubkey: str
    event_id: str | None = None
    event_created_at: int | None = None
    encrypted_content: str | None = None
    relay_results: list[RelayResult] = field(default_factory=list)
    synced_at: int | None = None
    retry_count: int = 0
    attachment: Attachment | None = None
    reply_to: ReplyTo | None = None
    reactions: dict[str, int] = field(default_factory=dict)
    deleted_at: int | None = None

    def __post_init__(self) -> None:
        validate_str_not_empty(self.id, "id")
        validate_str_not_empty(self.conversation_id, "conversation_id")
        validate_timestamp(self.timestamp, "timestamp")
        self.status = MessageStatus(self.status)

    def copy(self) -> Message:
        """Return a shallow copy with its own result list and reactions dict."""
        return replace(
            self,
            relay_results=list(self.relay_results),
            reactions=dict(self.reactions),
        )

    def sensitive_fields(self) -> dict[str, Any]:
        """Return the fields that are encrypted at rest, JSON-ready."""
        return {
            "content": self.content,
            "encrypted_content": self.encrypted_content,
            "attachment": self.attachment.to_dict() if self.attachment else None,
            "reply_to": self.reply_to.to_dict() if self.reply_to else None,
            "reactions": dict(self.reactions),
        }

    def metadata_fields(self) -> dict[str, Any]:
        """Return the plaintext metadata stored next to the encrypted blob."""
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "timestamp": self.timestamp,
            "is_outgoing": self.is_outgoing,
            "status": self.status.value,
            "sender_pubkey": self.sender_pubkey,
            "recipient_pubkey": self.recipient_pubkey,
            "event_id": self.event_id,
            "event_created_at": self.event_created_at,
            "relay_results": [r.to_dict() for r in self.relay_results],
            "synced_at": self.synced_at,
            "retry_count": self.retry_count,
            "deleted_at": self.deleted_at,
        }

    @classmethod
    def from_parts(cls, metadata: dict[str, Any], sensitive: dict[str, Any]) -> Message:
        """Rebuild a message from stored metadata and its decrypted blob."""
        attachment = sensitive.get("attachment")
        reply_to = sensitive.get("reply_to")
        return cls(
            id=metadata["id"],
            conversation_id=metadata["conversation_id"],
            content=sensitive.get("content", ""),
            timestamp=metadata["timestamp"],
            is_outgoing=metadata["is_outgoing"],
            status=MessageStatus(metadata["status"]),
            sender_pubkey=metadata["sender_pubkey"],
            recipient_pubkey=metadata["recipient_pubkey"],
            event_id=metadata.get("event_id"),
            event_created_at=metadata.get("event_created_at"),
            encrypted_content=sensitive.get("encrypted_content"),
            relay_results=[RelayResult.from_dict(r) for r in metadata.get("relay_results", [])],
            synced_at=metadata.get("synced_at"),
            retry_count=metadata.get("retry_count", 0),
            attachment=Attachment.from_dict(attachment) if attachment else None,
            reply_to=ReplyTo.from_dict(reply_to) if reply_to else None,
            reactions=dict(sensitive.get("reactions") or {}),
            deleted_at=metadata.get("deleted_at"),
        )


@dataclass(slots=True)
class OutgoingMessage:
    """Queued delivery attempt for a message that could not be confirmed.

    Created when a send fails; removed when the event is acknowledged by a
    relay or the retry budget is exhausted.

    Attributes:
        next_retry_at: Unix time (float seconds) after which the entry is due.
        signed_event: The already-signed event to republish unchanged, so
            that retries never mint a new event id.
    """

    id: str
    conversation_id: str
    content: str
    recipient_pubkey: str
    created_at: int
    retry_count: int = 0
    next_retry_at: float = 0.0
    signed_event: Event | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "content": self.content,
            "recipient_pubkey": self.recipient_pubkey,
            "created_at": self.created_at,
            "retry_count": self.retry_count,
            "next_retry_at": self.next_retry_at,
            "signed_event": self.signed_event.to_dict() if self.signed_event else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OutgoingMessage:
        signed = data.get("signed_event")
        return cls(
            id=data["id"],
            conversation_id=data["conversation_id"],
            content=data.get("content", ""),
            recipient_pubkey=data["recipient_pubkey"],
            created_at=data["created_at"],
            retry_count=data.get("retry_count", 0),
            next_retry_at=float(data.get("next_retry_at", 0.0)),
            signed_event=Event.from_dict(signed) if signed else None,
        )
