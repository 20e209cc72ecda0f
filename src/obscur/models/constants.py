"""Shared constants for the models layer.

Defines enumerations that are used across multiple model modules and by
the services layer. Placing them here avoids circular dependencies between
the models, core, and services packages.

See Also:
    [obscur.models.message][]: Uses
        [MessageStatus][obscur.models.constants.MessageStatus] for the
        delivery state machine.
    [obscur.core.retry][]: Uses
        [CircuitState][obscur.models.constants.CircuitState] for per-relay
        breakers.
    [obscur.services.groups][]: Uses
        [GroupRole][obscur.models.constants.GroupRole] and
        [MembershipStatus][obscur.models.constants.MembershipStatus].
"""

from __future__ import annotations

from enum import IntEnum, StrEnum


class NetworkType(StrEnum):
    """Network type enum for relay classification.

    Each relay URL is classified into exactly one network type during
    [Relay][obscur.models.relay.Relay] construction. Overlay networks are
    reached through a SOCKS5 proxy when one is configured.

    Attributes:
        CLEARNET: Public internet relay using ``wss://``.
        TOR: Tor hidden service identified by a ``.onion`` hostname.
        I2P: I2P eepsite identified by a ``.i2p`` hostname.
        LOKI: Lokinet service identified by a ``.loki`` hostname.
        LOCAL: Loopback or private address (development relays).
        UNKNOWN: Hostname that could not be classified (rejected).
    """

    CLEARNET = "clearnet"
    TOR = "tor"
    I2P = "i2p"
    LOKI = "loki"
    LOCAL = "local"
    UNKNOWN = "unknown"


class ServiceName(StrEnum):
    """Canonical service identifiers used in logging and metrics labels."""

    DM = "dm"
    GROUPS = "groups"
    RELAY_POOL = "relay_pool"


class EventKind(IntEnum):
    """Nostr event kinds handled by the messaging engine.

    Group kinds follow NIP-29: moderation events (9000-9020) are signed by
    group admins and accepted by the relay, while the 39000-range state
    events are signed by the relay itself.

    Attributes:
        METADATA: Kind 0 -- user profile metadata (NIP-01).
        ENCRYPTED_DM: Kind 4 -- NIP-04 encrypted direct message.
        GROUP_CHAT_MESSAGE: Kind 9 -- NIP-29 group chat message.
        GROUP_PUT_USER: Kind 9000 -- add a user (optionally with roles).
        GROUP_REMOVE_USER: Kind 9001 -- remove a user.
        GROUP_JOIN_REQUEST: Kind 9021 -- user asks to join.
        GROUP_LEAVE_REQUEST: Kind 9022 -- user leaves.
        GROUP_METADATA: Kind 39000 -- relay-signed group metadata.
        GROUP_ADMINS: Kind 39001 -- relay-signed admin list with roles.
        GROUP_MEMBERS: Kind 39002 -- relay-signed member list.
        GROUP_ROLES: Kind 39003 -- relay-signed role definitions.
    """

    METADATA = 0
    TEXT_NOTE = 1
    ENCRYPTED_DM = 4
    DELETION = 5
    REACTION = 7
    GROUP_CHAT_MESSAGE = 9
    GROUP_THREADED_MESSAGE = 10
    GROUP_PUT_USER = 9000
    GROUP_REMOVE_USER = 9001
    GROUP_EDIT_METADATA = 9002
    GROUP_DELETE_EVENT = 9005
    GROUP_CREATE = 9007
    GROUP_DELETE = 9008
    GROUP_JOIN_REQUEST = 9021
    GROUP_LEAVE_REQUEST = 9022
    GROUP_METADATA = 39_000
    GROUP_ADMINS = 39_001
    GROUP_MEMBERS = 39_002
    GROUP_ROLES = 39_003


EVENT_KIND_MAX = 65_535


class MessageStatus(StrEnum):
    """Delivery state of a [Message][obscur.models.message.Message].

    ``accepted`` means at least one relay acknowledged the event with an
    ``OK`` frame. ``delivered`` requires evidence that the recipient
    processed the message and is never inferred from relay acceptance.
    Incoming messages are ``received``.
    """

    SENDING = "sending"
    QUEUED = "queued"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DELIVERED = "delivered"
    FAILED = "failed"
    RECEIVED = "received"


STATUS_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.SENDING: frozenset(
        {
            MessageStatus.ACCEPTED,
            MessageStatus.REJECTED,
            MessageStatus.QUEUED,
            MessageStatus.FAILED,
        }
    ),
    MessageStatus.QUEUED: frozenset({MessageStatus.SENDING, MessageStatus.FAILED}),
    MessageStatus.ACCEPTED: frozenset({MessageStatus.DELIVERED}),
    MessageStatus.REJECTED: frozenset({MessageStatus.QUEUED, MessageStatus.FAILED}),
    MessageStatus.DELIVERED: frozenset(),
    MessageStatus.FAILED: frozenset({MessageStatus.QUEUED, MessageStatus.SENDING}),
    MessageStatus.RECEIVED: frozenset(),
}


def is_valid_transition(current: MessageStatus, new: MessageStatus) -> bool:
    """Return True if a message may move from *current* to *new*.

    Re-asserting the current status is always allowed so that replayed
    updates stay idempotent.
    """
    return current == new or new in STATUS_TRANSITIONS[current]


class ConnectionStatus(StrEnum):
    """Lifecycle state of a single relay connection."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERROR = "error"


class CircuitState(StrEnum):
    """Per-relay circuit breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class GroupRole(StrEnum):
    """Role of an identity inside a NIP-29 group.

    Only ``OWNER`` and ``MODERATOR`` may approve or deny join requests.
    """

    OWNER = "owner"
    MODERATOR = "moderator"
    MEMBER = "member"
    GUEST = "guest"

    @property
    def can_moderate(self) -> bool:
        return self in (GroupRole.OWNER, GroupRole.MODERATOR)


class MembershipStatus(StrEnum):
    """Membership status of the local identity in a group."""

    NONE = "none"
    REQUESTED = "requested"
    MEMBER = "member"
