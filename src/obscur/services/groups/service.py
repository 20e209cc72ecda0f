"""NIP-29 group membership service for obscur.

Connects a [GroupMembershipMachine][obscur.services.groups.GroupMembershipMachine]
to the relay hosting one group. [refresh()][obscur.services.groups.GroupMembershipService.refresh]
issues three REQs on the shared relay pool:

- relay-signed state (kinds 39000-39003, ``#d``) for metadata, admins and
  members;
- moderation events (kinds 9000, 9001, 9021, 9022, ``#h``) for membership
  decisions and open join requests;
- chat messages (kind 9, ``#h``).

Only frames from the group relay are considered, and every event must carry
a valid signature before it reaches the machine.

User actions ([request_join()][obscur.services.groups.GroupMembershipService.request_join],
[leave()][obscur.services.groups.GroupMembershipService.leave],
[approve_join()][obscur.services.groups.GroupMembershipService.approve_join],
[deny_join()][obscur.services.groups.GroupMembershipService.deny_join],
[send_message()][obscur.services.groups.GroupMembershipService.send_message])
sign an event and wait for the relay's ``OK``. A rejected or unanswered
publish raises [PublishingError][obscur.core.exceptions.PublishingError];
the local state only changes after the relay accepted the event.

Note:
    Moderation is gated on the local membership view (owner or moderator
    role backed by relay evidence). That check is advisory: the relay
    decides whether the resulting event takes effect, and the state only
    reflects it once the relay publishes the outcome.

See Also:
    [GroupConfig][obscur.services.groups.GroupConfig]: Configuration model
        for this service.
    [obscur.nips.nip29][obscur.nips.nip29]: Event builders and parsers.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, ClassVar

from obscur.core.base_service import BaseService
from obscur.core.exceptions import (
    ConfigurationError,
    GroupPermissionError,
    PublishingError,
    ValidationError,
)
from obscur.models.constants import EventKind, GroupRole, MessageStatus, ServiceName
from obscur.models.event import Event
from obscur.models.frames import (
    ClosedMessage,
    EoseMessage,
    EventMessage,
    Filter,
    NoticeMessage,
    OkMessage,
    Subscription,
    new_subscription_id,
    parse_relay_frame,
)
from obscur.models.message import Message, ReplyTo
from obscur.models.relay import normalize_relay_url
from obscur.nips import nip29
from obscur.nips.crypto import CryptoService
from obscur.services.common.utils import preview_text, reply_target
from obscur.utils.keys import parse_public_key

from .configs import GroupConfig
from .state import GroupMembershipMachine, GroupState, GroupStatus, PendingJoinRequest


if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType
    from typing import Self

    from obscur.core.context import EngineContext
    from obscur.models.event import UnsignedEvent
    from obscur.services.common.providers import IdentityProvider


_STATE_KINDS = (
    EventKind.GROUP_METADATA,
    EventKind.GROUP_ADMINS,
    EventKind.GROUP_MEMBERS,
    EventKind.GROUP_ROLES,
)
_MODERATION_KINDS = (
    EventKind.GROUP_PUT_USER,
    EventKind.GROUP_REMOVE_USER,
    EventKind.GROUP_JOIN_REQUEST,
    EventKind.GROUP_LEAVE_REQUEST,
)
_PREVIOUS_REFS = 3
_PREVIOUS_WINDOW = 50


class GroupMembershipService(BaseService[GroupConfig]):
    """Membership, moderation and chat for one NIP-29 group.

    Args:
        context: Shared engine components.
        config: Group configuration; required because it names the group.
        identity: Local identity. Actions raise
            [PublishingError][obscur.core.exceptions.PublishingError] while it
            is locked.
        crypto: Crypto service override, mainly for tests.

    Raises:
        ConfigurationError: If the group address cannot be parsed.
    """

    SERVICE_NAME: ClassVar[ServiceName] = ServiceName.GROUPS
    CONFIG_CLASS: ClassVar[type[GroupConfig]] = GroupConfig

    def __init__(
        self,
        context: EngineContext,
        config: GroupConfig | None = None,
        *,
        identity: IdentityProvider,
        crypto: CryptoService | None = None,
    ) -> None:
        if config is None:
            raise ConfigurationError("GroupMembershipService needs a GroupConfig naming the group")
        super().__init__(context=context, config=config)
        self._config: GroupConfig
        try:
            self._identifier = self._config.identifier()
            self._relay_url = normalize_relay_url(self._identifier.relay_url)
        except ValueError as e:
            raise ConfigurationError(f"invalid group address {config.group!r}: {e}") from e

        self._identity = identity
        self._crypto = crypto or CryptoService()
        self._pool = context.relay_pool
        self._machine = GroupMembershipMachine(
            self._identifier.group_id,
            identity.public_key,
            relay_pubkey=self._config.relay_pubkey,
        )

        self._status = GroupStatus.IDLE
        self._error: str | None = None
        self._subscriptions: dict[str, Subscription] = {}
        self._state_sub_id: str | None = None
        self._has_requested = False
        self._chat: dict[str, Message] = {}
        self._recent_ids: list[str] = []
        self._last_ok: OkMessage | None = None
        self._last_notice: str | None = None
        self._detach: Callable[[], None] | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> Self:
        await super().__aenter__()
        self.refresh()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self._close_subscriptions()
        if self._detach is not None:
            self._detach()
            self._detach = None
        await super().__aexit__(exc_type, exc_val, exc_tb)

    async def run(self) -> None:
        """Issue the group REQs once the relay is reachable and export gauges."""
        if not self._has_requested:
            self.refresh()

        membership = self._machine.membership
        members = self._machine.members
        self.set_gauge("pending_requests", len(self._machine.pending_requests))
        self.set_gauge("members", len(members) if members is not None else 0)
        self._logger.debug(
            "cycle_completed",
            group=str(self._identifier),
            status=self._status.value,
            membership=membership.status.value,
        )

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def machine(self) -> GroupMembershipMachine:
        return self._machine

    @property
    def relay_url(self) -> str:
        return self._relay_url

    @property
    def pending_requests(self) -> list[PendingJoinRequest]:
        return self._machine.pending_requests

    @property
    def state(self) -> GroupState:
        chat = sorted(self._chat.values(), key=lambda m: (m.timestamp, m.id))
        return GroupState(
            status=self._status,
            group=str(self._identifier),
            relay_url=self._relay_url,
            membership=self._machine.membership,
            metadata=self._machine.metadata,
            messages=tuple(m.copy() for m in chat),
            pending_requests=tuple(self._machine.pending_requests),
            last_ok=self._last_ok,
            last_notice=self._last_notice,
            error=self._error,
        )

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def refresh(self) -> bool:
        """(Re)issue the state, moderation and chat REQs to the group relay.

        Returns:
            False if the group relay is not open yet; the service stays
            ``loading`` and the next cycle tries again.
        """
        if self._relay_url not in self._pool.open_relay_urls():
            if self._status is GroupStatus.IDLE:
                self._status = GroupStatus.LOADING
            self._has_requested = False
            self._logger.debug("group_refresh_deferred", relay=self._relay_url)
            return False

        self._close_subscriptions()
        if self._detach is None:
            self._detach = self._pool.subscribe_to_messages(self._on_frame)

        gid = self._identifier.group_id
        subs = (
            Subscription(
                new_subscription_id(),
                (Filter(kinds=_STATE_KINDS, tags={"d": (gid,)}, limit=self._config.metadata_limit),),
            ),
            Subscription(
                new_subscription_id(),
                (
                    Filter(
                        kinds=_MODERATION_KINDS,
                        tags={"h": (gid,)},
                        limit=self._config.membership_limit,
                    ),
                ),
            ),
            Subscription(
                new_subscription_id(),
                (
                    Filter(
                        kinds=(EventKind.GROUP_CHAT_MESSAGE,),
                        tags={"h": (gid,)},
                        limit=self._config.message_limit,
                    ),
                ),
            ),
        )
        for sub in subs:
            self._subscriptions[sub.sub_id] = sub
            self._pool.send_to_open(sub.req_frame())
        self._state_sub_id = subs[0].sub_id
        self._has_requested = True
        if self._status is not GroupStatus.READY:
            self._status = GroupStatus.LOADING
        self._logger.info("group_refreshed", group=str(self._identifier), relay=self._relay_url)
        return True

    def _close_subscriptions(self) -> None:
        for sub in self._subscriptions.values():
            if sub.is_active:
                sub.is_active = False
                self._pool.send_to_open(sub.close_frame())
        self._subscriptions.clear()
        self._state_sub_id = None

    def _on_frame(self, relay_url: str, text: str) -> None:
        if relay_url != self._relay_url:
            return
        frame = parse_relay_frame(text)
        if frame is None:
            return

        if isinstance(frame, OkMessage):
            self._last_ok = frame
        elif isinstance(frame, NoticeMessage):
            self._last_notice = frame.message
            self._logger.info("relay_notice", relay=relay_url, message=frame.message)
        elif isinstance(frame, EoseMessage):
            if frame.sub_id == self._state_sub_id and self._status is GroupStatus.LOADING:
                self._status = GroupStatus.READY
        elif isinstance(frame, ClosedMessage):
            if frame.sub_id in self._subscriptions:
                self._logger.warning(
                    "group_subscription_closed", sub_id=frame.sub_id, message=frame.message
                )
        elif isinstance(frame, EventMessage):
            sub = self._subscriptions.get(frame.sub_id)
            if sub is not None and sub.is_active:
                self._on_event(frame.event)

    def _on_event(self, raw: Any) -> None:
        try:
            event = Event.from_dict(raw)
        except (TypeError, ValueError) as e:
            self._logger.debug("group_event_dropped", reason="malformed", error=str(e))
            return
        if not self._crypto.verify_event_signature(event):
            self._logger.debug("group_event_dropped", reason="invalid_signature", event_id=event.id)
            return
        self._ingest(event)

    def _ingest(self, event: Event) -> None:
        if event.kind == EventKind.GROUP_CHAT_MESSAGE:
            if nip29.group_id_of(event) == self._identifier.group_id:
                self._remember_chat(event)
            return

        before = self._machine.membership
        if not self._machine.apply(event):
            return
        self._note_recent(event)
        if event.kind == EventKind.GROUP_METADATA and self._status is not GroupStatus.READY:
            self._status = GroupStatus.READY

        after = self._machine.membership
        if (before.status, before.role) != (after.status, after.role):
            self._logger.info(
                "membership_changed",
                group=str(self._identifier),
                status=after.status.value,
                role=after.role.value if after.role else None,
                decided_by=after.decided_by,
            )

    def _remember_chat(self, event: Event) -> None:
        if event.id in self._chat:
            return
        me = self._identity.public_key
        reply_id = reply_target(event)
        reply = None
        if reply_id:
            target = self._chat.get(reply_id)
            reply = ReplyTo(reply_id, preview_text(target.content) if target else "")
        self._chat[event.id] = Message(
            id=event.id,
            conversation_id=f"group:{self._identifier}",
            content=event.content,
            timestamp=event.created_at,
            is_outgoing=event.pubkey == me,
            status=MessageStatus.ACCEPTED if event.pubkey == me else MessageStatus.RECEIVED,
            sender_pubkey=event.pubkey,
            recipient_pubkey=self._identifier.group_id,
            event_id=event.id,
            event_created_at=event.created_at,
            reply_to=reply,
        )
        self._note_recent(event)
        excess = len(self._chat) - self._config.message_history
        if excess > 0:
            for m in sorted(self._chat.values(), key=lambda m: (m.timestamp, m.id))[:excess]:
                del self._chat[m.id]

    def _note_recent(self, event: Event) -> None:
        if event.pubkey == self._identity.public_key:
            return
        self._recent_ids.insert(0, event.id)
        del self._recent_ids[_PREVIOUS_WINDOW:]

    def _previous_refs(self) -> list[str]:
        refs: list[str] = []
        for event_id in self._recent_ids:
            ref = event_id[:8]
            if ref not in refs:
                refs.append(ref)
            if len(refs) == _PREVIOUS_REFS:
                break
        return refs

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    async def request_join(self, reason: str = "", invite_code: str | None = None) -> Event:
        """Publish a join request (kind 9021); membership becomes ``requested``."""
        me = self._identity.public_key
        gid = self._identifier.group_id
        event = await self._publish(nip29.build_join_request(me, gid, reason.strip(), invite_code))
        self._machine.request_join(now=event.created_at)
        self._logger.info("group_join_requested", group=str(self._identifier))
        return event

    async def leave(self, reason: str = "") -> Event:
        """Publish a leave request (kind 9022)."""
        me = self._identity.public_key
        event = await self._publish(
            nip29.build_leave_request(me, self._identifier.group_id, reason.strip())
        )
        self._logger.info("group_left", group=str(self._identifier))
        return event

    async def approve_join(self, pubkey: str) -> Event:
        """Add *pubkey* as a member (kind 9000).

        Raises:
            GroupPermissionError: If the local role is not owner or moderator.
            ValidationError: If *pubkey* is not a valid public key.
        """
        self._require_moderator("approve join requests")
        target = self._parse_target(pubkey)
        event = await self._publish(
            nip29.build_put_user(
                self._identity.public_key, self._identifier.group_id, target, GroupRole.MEMBER
            )
        )
        self._logger.info("group_join_approved", group=str(self._identifier), pubkey=target)
        return event

    async def deny_join(self, pubkey: str, reason: str = "") -> Event:
        """Reject *pubkey*'s join request with a remove-user event (kind 9001).

        Raises:
            GroupPermissionError: If the local role is not owner or moderator.
            ValidationError: If *pubkey* is not a valid public key.
        """
        self._require_moderator("deny join requests")
        target = self._parse_target(pubkey)
        event = await self._publish(
            nip29.build_remove_user(
                self._identity.public_key, self._identifier.group_id, target, reason.strip()
            )
        )
        self._logger.info("group_join_denied", group=str(self._identifier), pubkey=target)
        return event

    async def send_message(self, content: str, reply_to: str | None = None) -> Event:
        """Publish a chat message (kind 9) with ``previous`` timeline references.

        Raises:
            ValidationError: If *content* is empty after trimming.
        """
        text = content.strip()
        if not text:
            raise ValidationError("message is empty")
        event = await self._publish(
            nip29.build_group_message(
                self._identity.public_key,
                self._identifier.group_id,
                text,
                reply_to,
                previous=self._previous_refs(),
            )
        )
        self._remember_chat(event)
        return event

    def _require_moderator(self, action: str) -> None:
        membership = self._machine.membership
        if not membership.can_moderate:
            role = membership.role.value if membership.role else "none"
            raise GroupPermissionError(
                f"only owners and moderators may {action} (local role: {role}, "
                f"status: {membership.status.value})"
            )

    @staticmethod
    def _parse_target(pubkey: str) -> str:
        try:
            return parse_public_key(pubkey)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    async def _publish(self, unsigned: UnsignedEvent) -> Event:
        """Sign *unsigned*, publish it to the group relay and wait for ``OK``.

        Raises:
            PublishingError: If the identity is locked or the relay did not
                accept the event.
        """
        keys = self._identity.keys
        if keys is None:
            self._error = "identity is locked"
            raise PublishingError(self._error)

        event = self._crypto.sign_event(unsigned, keys)
        start = time.monotonic()
        result = await self._pool.publish_to_relay(self._relay_url, event)
        if not result.success:
            self._error = f"{self._relay_url} did not accept kind {event.kind}: {result.error}"
            self._logger.warning(
                "group_publish_failed",
                relay=self._relay_url,
                kind=event.kind,
                error=result.error,
            )
            raise PublishingError(self._error)

        self._error = None
        self._ingest(event)
        self._logger.debug(
            "group_event_published",
            kind=event.kind,
            event_id=event.id,
            duration_s=round(time.monotonic() - start, 3),
        )
        return event
