"""NIP-29 relay-based group events.

Builders return [UnsignedEvent][obscur.models.event.UnsignedEvent] values
tagged with ``["h", group_id]``; the caller signs them with
[sign_event()][obscur.nips.nip01.sign_event]. Parsers read the
relay-signed state events (39000-39002) into plain models and return
``None`` for events of the wrong kind or for another group.

See Also:
    [GroupMembershipMachine][obscur.services.groups.GroupMembershipMachine]:
        Folds these events into the local membership view.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from typing import NamedTuple

from obscur.models.constants import EventKind, GroupRole
from obscur.models.event import Event, UnsignedEvent
from obscur.models.group import GroupMetadata


# =============================================================================
# Types
# =============================================================================


class RoleGrant(NamedTuple):
    """One ``["p", pubkey, role, ...]`` entry from a put-user or admins event."""

    pubkey: str
    role: GroupRole


_ROLE_VALUES = frozenset(r.value for r in GroupRole)


def _now() -> int:
    return int(time.time())


def _parse_role(values: tuple[str, ...], default: GroupRole) -> GroupRole:
    """Pick the most privileged known role among *values*."""
    known = {GroupRole(v) for v in values if v in _ROLE_VALUES}
    for role in (GroupRole.OWNER, GroupRole.MODERATOR, GroupRole.MEMBER, GroupRole.GUEST):
        if role in known:
            return role
    return default


def group_id_of(event: Event) -> str | None:
    """Group id an event refers to: its ``h`` tag, or ``d`` for 39000-range state."""
    if event.kind >= EventKind.GROUP_METADATA:
        return event.first_tag("d")
    return event.first_tag("h")


# =============================================================================
# Builders (user and moderation events)
# =============================================================================


def build_join_request(
    pubkey: str,
    group_id: str,
    reason: str = "",
    invite_code: str | None = None,
    *,
    created_at: int | None = None,
) -> UnsignedEvent:
    """Kind 9021: ask to join *group_id*, optionally with an invite code."""
    tags: list[tuple[str, ...]] = [("h", group_id)]
    if invite_code:
        tags.append(("code", invite_code))
    return UnsignedEvent(
        pubkey=pubkey,
        created_at=created_at if created_at is not None else _now(),
        kind=EventKind.GROUP_JOIN_REQUEST,
        tags=tuple(tags),
        content=reason,
    )


def build_leave_request(
    pubkey: str, group_id: str, reason: str = "", *, created_at: int | None = None
) -> UnsignedEvent:
    """Kind 9022: leave *group_id*."""
    return UnsignedEvent(
        pubkey=pubkey,
        created_at=created_at if created_at is not None else _now(),
        kind=EventKind.GROUP_LEAVE_REQUEST,
        tags=(("h", group_id),),
        content=reason,
    )


def build_put_user(
    pubkey: str,
    group_id: str,
    target_pubkey: str,
    role: GroupRole = GroupRole.MEMBER,
    *,
    created_at: int | None = None,
) -> UnsignedEvent:
    """Kind 9000: add *target_pubkey* with *role* (moderator action)."""
    return UnsignedEvent(
        pubkey=pubkey,
        created_at=created_at if created_at is not None else _now(),
        kind=EventKind.GROUP_PUT_USER,
        tags=(("h", group_id), ("p", target_pubkey, GroupRole(role).value)),
        content="",
    )


def build_remove_user(
    pubkey: str,
    group_id: str,
    target_pubkey: str,
    reason: str = "",
    *,
    created_at: int | None = None,
) -> UnsignedEvent:
    """Kind 9001: remove *target_pubkey*; also used to deny a join request."""
    return UnsignedEvent(
        pubkey=pubkey,
        created_at=created_at if created_at is not None else _now(),
        kind=EventKind.GROUP_REMOVE_USER,
        tags=(("h", group_id), ("p", target_pubkey)),
        content=reason,
    )


def build_edit_metadata(
    pubkey: str,
    group_id: str,
    *,
    name: str | None = None,
    about: str | None = None,
    picture: str | None = None,
    created_at: int | None = None,
) -> UnsignedEvent:
    """Kind 9002: change the group's name, description or picture."""
    tags: list[tuple[str, ...]] = [("h", group_id)]
    if name is not None:
        tags.append(("name", name))
    if about is not None:
        tags.append(("about", about))
    if picture is not None:
        tags.append(("picture", picture))
    return UnsignedEvent(
        pubkey=pubkey,
        created_at=created_at if created_at is not None else _now(),
        kind=EventKind.GROUP_EDIT_METADATA,
        tags=tuple(tags),
        content="",
    )


def build_create_group(
    pubkey: str, group_id: str, *, created_at: int | None = None
) -> UnsignedEvent:
    """Kind 9007: create *group_id* on the relay."""
    return UnsignedEvent(
        pubkey=pubkey,
        created_at=created_at if created_at is not None else _now(),
        kind=EventKind.GROUP_CREATE,
        tags=(("h", group_id),),
        content="",
    )


def build_group_message(
    pubkey: str,
    group_id: str,
    content: str,
    reply_to: str | None = None,
    *,
    previous: Sequence[str] = (),
    created_at: int | None = None,
) -> UnsignedEvent:
    """Kind 9: plaintext chat message, optionally replying to an event id.

    *previous* holds short id prefixes of recent group events, sent as a
    ``previous`` tag so relays can detect timeline forks.
    """
    tags: list[tuple[str, ...]] = [("h", group_id)]
    if reply_to:
        tags.append(("e", reply_to, "", "reply"))
    if previous:
        tags.append(("previous", *previous))
    return UnsignedEvent(
        pubkey=pubkey,
        created_at=created_at if created_at is not None else _now(),
        kind=EventKind.GROUP_CHAT_MESSAGE,
        tags=tuple(tags),
        content=content,
    )


# =============================================================================
# Parsers (relay-signed state)
# =============================================================================


def parse_group_metadata(event: Event, group_id: str) -> GroupMetadata | None:
    """Parse a kind 39000 metadata event for *group_id*."""
    if event.kind != EventKind.GROUP_METADATA or event.first_tag("d") != group_id:
        return None
    flags = {t[0] for t in event.tags}
    return GroupMetadata(
        group_id=group_id,
        name=event.first_tag("name"),
        about=event.first_tag("about"),
        picture=event.first_tag("picture"),
        is_private="private" in flags,
        is_closed="closed" in flags,
        is_restricted="restricted" in flags,
        is_hidden="hidden" in flags,
    )


def parse_role_grants(event: Event, default: GroupRole = GroupRole.MEMBER) -> list[RoleGrant]:
    """Read ``["p", pubkey, role...]`` entries from a put-user or admins event.

    Unrecognised role labels map to *default*.
    """
    grants = []
    for tag in event.tags:
        if tag[0] == "p" and len(tag) >= 2:
            grants.append(RoleGrant(pubkey=tag[1], role=_parse_role(tag[2:], default)))
    return grants


def parse_admins(event: Event) -> dict[str, GroupRole] | None:
    """Parse a kind 39001 admin list into ``{pubkey: role}``."""
    if event.kind != EventKind.GROUP_ADMINS:
        return None
    return {g.pubkey: g.role for g in parse_role_grants(event, GroupRole.MODERATOR)}


def parse_members(event: Event) -> set[str] | None:
    """Parse a kind 39002 member list into a set of public keys."""
    if event.kind != EventKind.GROUP_MEMBERS:
        return None
    return set(event.tag_values("p"))
