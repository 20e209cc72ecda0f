"""
NIP-29 group models.

Groups are addressed as ``<relay host>'<group id>``; the relay hosting a
group is the source of truth for its metadata, admin list and member list.
[GroupMembership][obscur.models.group.GroupMembership] is the client's
reconciled view of one identity in one group and is never authoritative on
its own.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from ._validation import validate_str_not_empty
from .constants import GroupRole, MembershipStatus


_GROUP_ID_PATTERN = re.compile(r"^[a-z0-9_-]+$")


@dataclass(frozen=True, slots=True)
class GroupIdentifier:
    """Parsed group address.

    Attributes:
        host: Relay hostname (optionally with port).
        group_id: Group id local to the relay (``[a-z0-9_-]+``).
        relay_url: WebSocket URL of the hosting relay.
    """

    host: str
    group_id: str
    relay_url: str

    def __post_init__(self) -> None:
        validate_str_not_empty(self.host, "host")
        if not _GROUP_ID_PATTERN.match(self.group_id):
            raise ValueError(f"invalid group id: {self.group_id!r}")

    def __str__(self) -> str:
        return f"{self.host}'{self.group_id}"


def parse_group_identifier(value: str, default_relay_url: str | None = None) -> GroupIdentifier:
    """Parse ``host'group-id`` (or a bare id when *default_relay_url* is given).

    Raises:
        ValueError: If the identifier is empty, malformed, or a bare id is
            given without a default relay.
    """
    raw = value.strip()
    if not raw:
        raise ValueError("group identifier is empty")

    if "'" in raw:
        host, _, group_id = raw.partition("'")
        host = host.strip().removeprefix("wss://").removeprefix("ws://").rstrip("/")
        if not host:
            raise ValueError(f"group identifier has no host: {value!r}")
        return GroupIdentifier(host=host, group_id=group_id.strip(), relay_url=f"wss://{host}")

    if default_relay_url is None:
        raise ValueError(f"group identifier has no host: {value!r}")
    host = default_relay_url.split("://", 1)[-1].rstrip("/")
    return GroupIdentifier(host=host, group_id=raw, relay_url=default_relay_url)


@dataclass(frozen=True, slots=True)
class GroupMetadata:
    """Relay-signed group metadata (kind 39000)."""

    group_id: str
    name: str | None = None
    about: str | None = None
    picture: str | None = None
    is_private: bool = False
    is_closed: bool = False
    is_restricted: bool = False
    is_hidden: bool = False


@dataclass(slots=True)
class GroupMembership:
    """Reconciled membership of one identity in one group.

    Attributes:
        status: ``none``, ``requested`` or ``member``.
        role: Role backed by relay evidence, or ``None`` when unknown.
        decided_by: Id of the event that last changed ``status``.
        decided_at: ``created_at`` of that event.
    """

    group_id: str
    pubkey: str
    status: MembershipStatus = MembershipStatus.NONE
    role: GroupRole | None = None
    decided_by: str | None = None
    decided_at: int = 0

    @property
    def can_moderate(self) -> bool:
        return (
            self.status == MembershipStatus.MEMBER
            and self.role is not None
            and self.role.can_moderate
        )
