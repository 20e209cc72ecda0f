"""Client-side NIP-29 membership state machine.

The relay is the authority on who belongs to a group. The machine keeps
the relay evidence it has seen for one group and one identity and derives
the local [GroupMembership][obscur.models.group.GroupMembership] from it:

- ``none -> requested``: a join request (kind 9021) by the local identity,
  or a local [request_join()][obscur.services.groups.GroupMembershipMachine.request_join].
- ``-> member``: a put-user event (kind 9000) naming the local identity and
  authored by a known owner or moderator.
- ``member -> none``: a remove-user event (kind 9001) naming the local
  identity and authored by a known owner or moderator, or a leave event
  (kind 9022) by the local identity.
- The newest relay-signed member list (kind 39002), when newer than every
  moderation decision, overrides membership: present means ``member``,
  absent turns ``member`` into ``none`` (a pending request stays pending).

Evidence is folded in ``(created_at, id)`` order and deduplicated by id, so
the result does not depend on the order relays delivered it in. Roles come
only from moderator-signed put-user role entries or the 39001 admin list;
the machine never assumes a role it cannot cite an event for.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING

from obscur.models.constants import EventKind, GroupRole, MembershipStatus
from obscur.models.group import GroupMembership, GroupMetadata
from obscur.nips.nip29 import (
    group_id_of,
    parse_admins,
    parse_group_metadata,
    parse_members,
    parse_role_grants,
)


if TYPE_CHECKING:
    from collections.abc import Iterable

    from obscur.models.event import Event
    from obscur.models.frames import OkMessage
    from obscur.models.message import Message


_STATE_KINDS = frozenset(
    {
        EventKind.GROUP_METADATA,
        EventKind.GROUP_ADMINS,
        EventKind.GROUP_MEMBERS,
        EventKind.GROUP_ROLES,
    }
)
_MEMBERSHIP_KINDS = frozenset(
    {
        EventKind.GROUP_PUT_USER,
        EventKind.GROUP_REMOVE_USER,
        EventKind.GROUP_JOIN_REQUEST,
        EventKind.GROUP_LEAVE_REQUEST,
    }
)

OrderKey = tuple[int, str]


def order_key(event: Event) -> OrderKey:
    return (event.created_at, event.id)


@dataclass(frozen=True, slots=True)
class PendingJoinRequest:
    """A join request seen on the relay that no moderation event has answered yet."""

    pubkey: str
    event_id: str
    reason: str
    created_at: int
    invite_code: str | None = None


class GroupMembershipMachine:
    """Reconciled membership of *pubkey* in *group_id*.

    Args:
        group_id: Group id local to the hosting relay.
        pubkey: Hex public key of the local identity.
        relay_pubkey: Key the relay signs state events with. When given,
            39000-range events by other authors are ignored.
    """

    def __init__(self, group_id: str, pubkey: str, *, relay_pubkey: str | None = None) -> None:
        self._group_id = group_id
        self._pubkey = pubkey
        self._relay_pubkey = relay_pubkey
        self._events: dict[str, Event] = {}
        self._local_request_at: OrderKey | None = None

        self._membership = GroupMembership(group_id=group_id, pubkey=pubkey)
        self._metadata: GroupMetadata | None = None
        self._admins: dict[str, GroupRole] = {}
        self._members: set[str] | None = None
        self._grants: dict[str, GroupRole] = {}
        self._pending: dict[str, PendingJoinRequest] = {}

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    @property
    def group_id(self) -> str:
        return self._group_id

    @property
    def membership(self) -> GroupMembership:
        return replace(self._membership)

    @property
    def metadata(self) -> GroupMetadata | None:
        return self._metadata

    @property
    def admins(self) -> dict[str, GroupRole]:
        return dict(self._admins)

    @property
    def members(self) -> set[str] | None:
        """Latest relay member list, or ``None`` if none has been seen."""
        return set(self._members) if self._members is not None else None

    @property
    def pending_requests(self) -> list[PendingJoinRequest]:
        """Open join requests, oldest first."""
        return sorted(self._pending.values(), key=lambda r: (r.created_at, r.event_id))

    def role_of(self, pubkey: str) -> GroupRole | None:
        """Role of *pubkey* backed by the admin list or a put-user grant."""
        return self._admins.get(pubkey) or self._grants.get(pubkey)

    def is_moderator(self, pubkey: str) -> bool:
        if self._relay_pubkey is not None and pubkey == self._relay_pubkey:
            return True
        role = self.role_of(pubkey)
        return role is not None and role.can_moderate

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def apply(self, event: Event) -> bool:
        """Fold one relay event into the state.

        Returns:
            True if the event was new and relevant to this group.
        """
        if event.id in self._events or not self._is_relevant(event):
            return False
        self._events[event.id] = event
        self._recompute()
        return True

    def reconcile(self, events: Iterable[Event]) -> int:
        """Fold a batch of events; return how many were new and relevant."""
        added = 0
        for event in sorted(events, key=order_key):
            if event.id in self._events or not self._is_relevant(event):
                continue
            self._events[event.id] = event
            added += 1
        if added:
            self._recompute()
        return added

    def request_join(self, now: int | None = None) -> MembershipStatus:
        """Record a local join request: ``none -> requested``; a member stays a member."""
        created_at = int(time.time()) if now is None else now
        self._local_request_at = (created_at, "")
        self._recompute()
        return self._membership.status

    def _is_relevant(self, event: Event) -> bool:
        if event.kind in _STATE_KINDS:
            if self._relay_pubkey is not None and event.pubkey != self._relay_pubkey:
                return False
            return group_id_of(event) == self._group_id
        if event.kind in _MEMBERSHIP_KINDS:
            return group_id_of(event) == self._group_id
        return False

    def _latest(self, kind: EventKind) -> Event | None:
        candidates = [e for e in self._events.values() if e.kind == kind]
        return max(candidates, key=order_key) if candidates else None

    def _recompute(self) -> None:
        metadata_event = self._latest(EventKind.GROUP_METADATA)
        self._metadata = (
            parse_group_metadata(metadata_event, self._group_id) if metadata_event else None
        )
        admins_event = self._latest(EventKind.GROUP_ADMINS)
        self._admins = (parse_admins(admins_event) or {}) if admins_event else {}
        members_event = self._latest(EventKind.GROUP_MEMBERS)
        self._members = parse_members(members_event) if members_event else None

        me = self._pubkey
        status = MembershipStatus.NONE
        decided_by: str | None = None
        decided_key: OrderKey = (0, "")
        grants: dict[str, GroupRole] = {}
        pending: dict[str, PendingJoinRequest] = {}
        # is_moderator() sees only grants folded so far
        self._grants = grants

        for event in sorted(self._events.values(), key=order_key):
            key = order_key(event)
            if event.kind == EventKind.GROUP_PUT_USER:
                if not self.is_moderator(event.pubkey):
                    continue
                for grant in parse_role_grants(event):
                    grants[grant.pubkey] = grant.role
                    pending.pop(grant.pubkey, None)
                    if grant.pubkey == me:
                        status, decided_by, decided_key = MembershipStatus.MEMBER, event.id, key

            elif event.kind == EventKind.GROUP_REMOVE_USER:
                if not self.is_moderator(event.pubkey):
                    continue
                for target in event.tag_values("p"):
                    grants.pop(target, None)
                    pending.pop(target, None)
                    if target == me:
                        status, decided_by, decided_key = MembershipStatus.NONE, event.id, key

            elif event.kind == EventKind.GROUP_JOIN_REQUEST:
                if event.pubkey == me:
                    if status == MembershipStatus.NONE:
                        status, decided_by, decided_key = MembershipStatus.REQUESTED, event.id, key
                elif event.pubkey not in grants:
                    pending[event.pubkey] = PendingJoinRequest(
                        pubkey=event.pubkey,
                        event_id=event.id,
                        reason=event.content,
                        created_at=event.created_at,
                        invite_code=event.first_tag("code"),
                    )

            elif event.kind == EventKind.GROUP_LEAVE_REQUEST:
                pending.pop(event.pubkey, None)
                grants.pop(event.pubkey, None)
                if event.pubkey == me:
                    status, decided_by, decided_key = MembershipStatus.NONE, event.id, key

        if members_event is not None and self._members is not None:
            for pubkey in self._members:
                pending.pop(pubkey, None)
            if order_key(members_event) > decided_key:
                if me in self._members:
                    status, decided_by = MembershipStatus.MEMBER, members_event.id
                    decided_key = order_key(members_event)
                elif status == MembershipStatus.MEMBER:
                    status, decided_by = MembershipStatus.NONE, members_event.id
                    decided_key = order_key(members_event)

        if (
            self._local_request_at is not None
            and status == MembershipStatus.NONE
            and self._local_request_at > decided_key
        ):
            status = MembershipStatus.REQUESTED

        role: GroupRole | None = None
        if status == MembershipStatus.MEMBER:
            role = self._admins.get(me) or grants.get(me)

        self._pending = pending
        self._membership = GroupMembership(
            group_id=self._group_id,
            pubkey=me,
            status=status,
            role=role,
            decided_by=decided_by,
            decided_at=decided_key[0],
        )


# ---------------------------------------------------------------------------
# Service snapshot
# ---------------------------------------------------------------------------


class GroupStatus(StrEnum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class GroupState:
    """Snapshot returned by [GroupMembershipService.state][obscur.services.groups.GroupMembershipService.state].

    Attributes:
        last_ok: Most recent ``OK`` frame from the group relay.
        last_notice: Most recent ``NOTICE`` text from the group relay.
    """

    status: GroupStatus
    group: str
    relay_url: str
    membership: GroupMembership
    metadata: GroupMetadata | None = None
    messages: tuple[Message, ...] = ()
    pending_requests: tuple[PendingJoinRequest, ...] = ()
    last_ok: OkMessage | None = None
    last_notice: str | None = None
    error: str | None = None
