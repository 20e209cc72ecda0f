"""Pure dataclasses with zero I/O for events, messages, frames, and groups.

The models layer is the foundation of the diamond DAG. It has no dependencies
on any other obscur package. Immutable values use
``@dataclass(frozen=True, slots=True)``; records with a single owner
([Message][obscur.models.message.Message],
[OutgoingMessage][obscur.models.message.OutgoingMessage]) are mutable and
handed out as copies.

Attributes:
    Event: Signed, hash-identified Nostr event.
    UnsignedEvent: Event fields before id computation and signing.
    Message: Decrypted direct message or group post.
    OutgoingMessage: Queued delivery attempt.
    Filter: Subscription filter serialized into ``REQ`` frames.
    Relay: Normalized relay URL with network detection.
    GroupIdentifier: Parsed ``host'group-id`` address.
"""

from .constants import (
    EVENT_KIND_MAX,
    STATUS_TRANSITIONS,
    CircuitState,
    ConnectionStatus,
    EventKind,
    GroupRole,
    MembershipStatus,
    MessageStatus,
    NetworkType,
    ServiceName,
    is_valid_transition,
)
from .event import Event, UnsignedEvent, compute_event_id
from .frames import (
    ClosedMessage,
    EoseMessage,
    EventMessage,
    Filter,
    NoticeMessage,
    OkMessage,
    RelayMessage,
    Subscription,
    close_frame,
    event_frame,
    new_subscription_id,
    parse_relay_frame,
    req_frame,
)
from .group import GroupIdentifier, GroupMembership, GroupMetadata, parse_group_identifier
from .message import (
    Attachment,
    AttachmentKind,
    Message,
    OutgoingMessage,
    RelayResult,
    ReplyTo,
    conversation_id_for,
)
from .relay import Relay, normalize_relay_url


__all__ = [
    "EVENT_KIND_MAX",
    "STATUS_TRANSITIONS",
    "Attachment",
    "AttachmentKind",
    "CircuitState",
    "ClosedMessage",
    "ConnectionStatus",
    "EoseMessage",
    "Event",
    "EventKind",
    "EventMessage",
    "Filter",
    "GroupIdentifier",
    "GroupMembership",
    "GroupMetadata",
    "GroupRole",
    "MembershipStatus",
    "Message",
    "MessageStatus",
    "NetworkType",
    "NoticeMessage",
    "OkMessage",
    "OutgoingMessage",
    "Relay",
    "RelayMessage",
    "RelayResult",
    "ReplyTo",
    "ServiceName",
    "Subscription",
    "UnsignedEvent",
    "close_frame",
    "compute_event_id",
    "conversation_id_for",
    "event_frame",
    "is_valid_transition",
    "new_subscription_id",
    "normalize_relay_url",
    "parse_group_identifier",
    "parse_relay_frame",
    "req_frame",
]
