"""Direct message controller for obscur.

Owns the NIP-04 direct message lifecycle for one local identity: the live
kind-4 subscription, the receive pipeline, the send pipeline with its
offline queue and retries, and missed-message sync after reconnects.

The receive pipeline for each ``EVENT`` frame:

1. Shape checks: a well-formed kind-4 event with a ``p`` tag naming the
   local identity, not already stored or in flight.
2. Signature verification through
   [CryptoService][obscur.nips.crypto.CryptoService].
3. Blocked senders are dropped.
4. Decryption (awaited in a worker thread). Failures are logged and
   dropped, never retried.
5. Classification: senders that are not accepted go to the
   [RequestsInbox][obscur.services.common.RequestsInbox]; accepted senders'
   messages are stored with status ``received``.

Steps 1-3 run synchronously in the frame handler, so an event delivered by
two relays is claimed by exactly one task before any await happens.

The send pipeline validates input, encrypts, signs, stores the message as
``sending`` and publishes to every open relay, waiting for ``OK`` frames:

- at least one ``OK true``: ``accepted``;
- every answering relay said ``OK false``: ``rejected`` and queued;
- no relay answered, or none is open: ``queued``.

Queued messages are republished with the same signed event by retry timers
from the [RetryManager][obscur.core.retry.RetryManager] and by
[process_offline_queue()][obscur.services.dm.DmController.process_offline_queue].
Once ``should_retry`` gives up the status becomes ``failed`` and the entry
is parked for a manual
[retry_failed_message()][obscur.services.dm.DmController.retry_failed_message].

Nothing in the receive pipeline raises: malformed frames, bad signatures
and undecryptable payloads are counted under ``messages_dropped_*``.

See Also:
    [DmControllerConfig][obscur.services.dm.DmControllerConfig]:
        Configuration model for this service.
    [OfflineQueueManager][obscur.services.dm.OfflineQueueManager]: Drains
        the durable queue one entry at a time.
    [EngineContext][obscur.core.context.EngineContext]: Shared relay pool,
        retry manager, store and cache.

Examples:
    ```python
    config = EngineConfig.from_yaml("config/engine.yaml")
    keys = load_keys_from_env(config.keys_env)
    identity = LocalIdentity(keys)

    async with EngineContext.create(config, identity.public_key) as ctx:
        async with DmController(ctx, identity=identity, trust=trust) as dm:
            result = await dm.send_dm("npub1...", "hello")
            await dm.run_forever()
    ```
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from functools import partial
from typing import TYPE_CHECKING, Any, ClassVar, Literal

from obscur.core.base_service import BaseService
from obscur.core.exceptions import CryptoError, InvalidEventError, PublishingError, StorageError
from obscur.core.relay_pool import ERROR_ALL_FAILED
from obscur.models.constants import (
    EventKind,
    MessageStatus,
    ServiceName,
    is_valid_transition,
)
from obscur.models.event import Event
from obscur.models.frames import (
    ClosedMessage,
    EoseMessage,
    EventMessage,
    Filter,
    NoticeMessage,
    Subscription,
    new_subscription_id,
    parse_relay_frame,
)
from obscur.models.message import Message, OutgoingMessage, ReplyTo, conversation_id_for
from obscur.nips.crypto import CryptoService
from obscur.services.common.providers import MemoryRequestsInbox, MemoryTrustProvider
from obscur.services.common.utils import preview_text, reply_target
from obscur.utils.keys import parse_public_key, secret_key_hex

from .configs import DmControllerConfig
from .offline_queue import OfflineQueueManager, QueueProcessingResult
from .types import (
    ControllerStatus,
    DmControllerState,
    NetworkState,
    SendResult,
    SyncProgress,
)
from .utils import build_dm_event, publish_outcome, relay_results_of


if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType
    from typing import Self

    from obscur.core.context import EngineContext
    from obscur.core.relay_pool import MultiRelayPublishResult
    from obscur.services.common.providers import IdentityProvider, RequestsInbox, TrustProvider


ERROR_OFFLINE = "no relays connected"
ERROR_IDENTITY_MISSING = "identity unavailable"
ERROR_IDENTITY_MISMATCH = "identity does not match the engine store"
ERROR_IDENTITY_LOCKED = "identity is locked"

_RETRYABLE = frozenset({MessageStatus.REJECTED, MessageStatus.FAILED, MessageStatus.QUEUED})


@dataclass(slots=True)
class _PendingQuery:
    """A short-lived REQ waiting for EOSE from every relay it was sent to."""

    kind: Literal["sync", "verify"]
    relays: frozenset[str]
    future: asyncio.Future[bool]
    author: str | None = None
    finished: set[str] = field(default_factory=set)
    event_ids: list[str] = field(default_factory=list)
    timed_out: bool = False


class DmController(BaseService[DmControllerConfig]):
    """NIP-04 direct message controller for one identity.

    Each [run()][obscur.services.dm.DmController.run] cycle refreshes the
    network view, (re)issues the kind-4 subscription on newly opened
    relays, drains due queue entries, and syncs missed messages after the
    engine comes back online.

    Args:
        context: Shared engine components.
        config: Controller configuration.
        identity: Local identity; ``None`` puts the controller in the
            ``error`` state on first use.
        trust: Accepted/blocked peers. Defaults to an empty in-memory
            provider, which routes every sender to the requests inbox.
        inbox: Sink for messages from peers that are not accepted.
        crypto: Crypto service override, mainly for tests.
    """

    SERVICE_NAME: ClassVar[ServiceName] = ServiceName.DM
    CONFIG_CLASS: ClassVar[type[DmControllerConfig]] = DmControllerConfig

    def __init__(
        self,
        context: EngineContext,
        config: DmControllerConfig | None = None,
        *,
        identity: IdentityProvider | None,
        trust: TrustProvider | None = None,
        inbox: RequestsInbox | None = None,
        crypto: CryptoService | None = None,
    ) -> None:
        super().__init__(context=context, config=config or DmControllerConfig())
        self._config: DmControllerConfig
        self._identity = identity
        self._trust: TrustProvider = trust if trust is not None else MemoryTrustProvider()
        self._inbox: RequestsInbox = inbox if inbox is not None else MemoryRequestsInbox()
        self._crypto = crypto or CryptoService(self._config.key_derivation)

        self._pool = context.relay_pool
        self._store = context.store
        self._cache = context.cache
        self._retry = context.retry_manager
        self._queue = OfflineQueueManager(
            self._store,
            max_retries=self._retry.retry_config.max_retries,
            is_online=self._is_online,
            pacing=self._config.queue_pacing,
        )

        self._status = ControllerStatus.IDLE
        self._error: str | None = None
        self._last_error: str | None = None
        self._messages: dict[str, Message] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._queries: dict[str, _PendingQuery] = {}
        self._dm_sub_id: str | None = None
        self._has_subscribed = False
        self._req_relays: frozenset[str] = frozenset()
        self._detach: Callable[[], None] | None = None
        self._processing_ids: set[str] = set()
        self._publishing_ids: set[str] = set()
        self._incoming_tasks: set[asyncio.Task[Message | None]] = set()
        self._sync = SyncProgress()
        self._was_online = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> Self:
        await super().__aenter__()
        self._was_online = self._is_online()
        self.subscribe_to_incoming_dms()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.unsubscribe_from_dms()
        for task in list(self._incoming_tasks):
            task.cancel()
        if self._incoming_tasks:
            await asyncio.gather(*self._incoming_tasks, return_exceptions=True)
        if self._detach is not None:
            self._detach()
            self._detach = None
        await super().__aexit__(exc_type, exc_val, exc_tb)

    async def run(self) -> None:
        """One housekeeping cycle: subscription upkeep, queue drain, catch-up sync."""
        online = self._is_online()
        came_back = online and not self._was_online
        self._was_online = online

        if self._status is not ControllerStatus.ERROR:
            if not self._has_subscribed:
                self.subscribe_to_incoming_dms()
            else:
                self._refresh_subscription()

        if online:
            result = await self.process_offline_queue(force=came_back)
            if result.processed:
                self._logger.info(
                    "queue_processed",
                    processed=result.processed,
                    succeeded=result.succeeded,
                    failed=result.failed,
                )
            if came_back:
                await self.sync_missed_messages()

        removed = self._store.enforce_retention()
        if removed:
            self._cache.clear()
            self._messages = {
                mid: m for mid, m in self._messages.items() if self._store.has_message(mid)
            }
            self._logger.info("retention_applied", removed=removed)

        network = self._network_state()
        queue = self._queue.get_queue_status()
        self.set_gauge("open_relays", network.open_relays)
        self.set_gauge("queued_messages", queue.total_queued)
        self._logger.debug(
            "cycle_completed",
            online=online,
            open_relays=network.open_relays,
            queued=queue.total_queued,
        )

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> DmControllerState:
        """Snapshot of the controller state; later changes do not affect it."""
        messages = sorted(self._messages.values(), key=lambda m: (m.timestamp, m.id))
        return DmControllerState(
            status=self._status,
            error=self._error,
            messages=tuple(m.copy() for m in messages),
            subscriptions=tuple(replace(s) for s in self._subscriptions.values()),
            message_status={m.id: m.status for m in messages},
            network_state=self._network_state(),
            last_error=self._last_error,
            queue_status=self._queue.get_queue_status(),
            sync_progress=self._sync,
        )

    def get_message_status(self, message_id: str) -> MessageStatus | None:
        message = self._messages.get(message_id)
        if message is not None:
            return message.status
        stored = self._store.get_message(message_id)
        return stored.status if stored is not None else None

    def get_messages_by_conversation(self, conversation_id: str, limit: int = 50) -> list[Message]:
        """Newest-first messages of one conversation, served from the cache when loaded."""
        cached = self._cache.get_messages(conversation_id)
        if cached is not None and len(cached) >= limit:
            return cached[:limit]
        messages = self._store.get_messages(conversation_id, limit=limit)
        if messages:
            self._cache.add_messages(conversation_id, messages)
        return messages

    def _is_online(self) -> bool:
        return bool(self._pool.open_relay_urls())

    def _network_state(self) -> NetworkState:
        open_relays = len(self._pool.open_relay_urls())
        return NetworkState(
            is_online=open_relays > 0,
            open_relays=open_relays,
            total_relays=len(self._pool.connections),
        )

    def _relay_urls(self) -> list[str]:
        return [c.url for c in self._pool.connections]

    def _identity_fault(self) -> str | None:
        if self._identity is None:
            return ERROR_IDENTITY_MISSING
        if self._identity.public_key != self._context.pubkey:
            return ERROR_IDENTITY_MISMATCH
        return None

    def _fail(self, error: str) -> None:
        if self._status is not ControllerStatus.ERROR:
            self._logger.error("controller_error", error=error)
        self._status = ControllerStatus.ERROR
        self._error = error
        self._last_error = error

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe_to_incoming_dms(self) -> bool:
        """Issue the live kind-4 subscription addressed to the local identity.

        Idempotent until [unsubscribe_from_dms()][obscur.services.dm.DmController.unsubscribe_from_dms]
        clears the has-subscribed flag.

        Returns:
            False if the identity is missing or does not match the engine.
        """
        fault = self._identity_fault()
        if fault is not None:
            self._fail(fault)
            return False
        if self._has_subscribed:
            return True

        self._listen()
        me = self._identity.public_key  # type: ignore[union-attr]
        sub = Subscription(
            sub_id=new_subscription_id(),
            filters=(
                Filter(
                    kinds=(EventKind.ENCRYPTED_DM,),
                    tags={"p": (me,)},
                    limit=self._config.subscription_limit,
                ),
            ),
        )
        self._subscriptions[sub.sub_id] = sub
        self._dm_sub_id = sub.sub_id
        self._has_subscribed = True
        sent = self._send_req(sub)

        self._status = ControllerStatus.READY
        self._error = None
        self._logger.info("dm_subscribed", sub_id=sub.sub_id, relays=sent)
        return True

    def unsubscribe_from_dms(self) -> int:
        """Close every tracked subscription and stop processing its frames.

        Returns:
            Number of subscriptions closed.
        """
        closed = 0
        for sub in self._subscriptions.values():
            if sub.is_active:
                sub.is_active = False
                self._pool.send_to_open(sub.close_frame())
                closed += 1
        for query in self._queries.values():
            if not query.future.done():
                query.future.set_result(False)

        self._subscriptions.clear()
        self._queries.clear()
        self._dm_sub_id = None
        self._has_subscribed = False
        self._req_relays = frozenset()
        if closed:
            self._logger.info("dm_unsubscribed", subscriptions=closed)
        return closed

    def _listen(self) -> None:
        if self._detach is None:
            self._detach = self._pool.subscribe_to_messages(self._on_frame)

    def _send_req(self, sub: Subscription) -> int:
        self._req_relays = frozenset(self._pool.open_relay_urls())
        return self._pool.send_to_open(sub.req_frame())

    def _refresh_subscription(self) -> None:
        """Re-send the live REQ when relays opened since it was last issued.

        A REQ with an existing id replaces the relay-side subscription, so
        relays that already had it only replay their stored backlog, which
        the dedup step absorbs.
        """
        sub = self._subscriptions.get(self._dm_sub_id or "")
        if sub is None or not sub.is_active:
            return
        current = frozenset(self._pool.open_relay_urls())
        if current - self._req_relays:
            sent = self._send_req(sub)
            self._logger.debug("dm_subscription_refreshed", relays=sent)
        else:
            self._req_relays = current

    def _close_subscription(self, sub_id: str) -> None:
        sub = self._subscriptions.pop(sub_id, None)
        self._queries.pop(sub_id, None)
        if sub is not None and sub.is_active:
            sub.is_active = False
            self._pool.send_to_open(sub.close_frame())

    async def _run_query(self, query: _PendingQuery, sub: Subscription, timeout: float) -> None:  # noqa: ASYNC109
        self._listen()
        self._subscriptions[sub.sub_id] = sub
        self._queries[sub.sub_id] = query
        self._pool.send_to_open(sub.req_frame())
        try:
            await asyncio.wait_for(query.future, timeout=timeout)
        except TimeoutError:
            query.timed_out = True
        finally:
            self._close_subscription(sub.sub_id)

    # -------------------------------------------------------------------------
    # Inbound frames
    # -------------------------------------------------------------------------

    def _on_frame(self, relay_url: str, text: str) -> None:
        frame = parse_relay_frame(text)
        if frame is None:
            self._drop("malformed_frame", relay=relay_url)
            return

        if isinstance(frame, EventMessage):
            self._on_event_frame(relay_url, frame)
        elif isinstance(frame, EoseMessage | ClosedMessage):
            self._on_end_of_stream(relay_url, frame)
        elif isinstance(frame, NoticeMessage):
            self._logger.info("relay_notice", relay=relay_url, message=frame.message)

    def _on_event_frame(self, relay_url: str, frame: EventMessage) -> None:
        sub = self._subscriptions.get(frame.sub_id)
        if sub is None or not sub.is_active:
            return

        query = self._queries.get(frame.sub_id)
        if query is not None and query.kind == "verify":
            if frame.event.get("pubkey") == query.author and not query.future.done():
                query.future.set_result(True)
            return

        event = self._screen_event(frame.event, relay_url)
        if event is None:
            return
        if query is not None:
            query.event_ids.append(event.id)
            self._sync = replace(self._sync, received=len(query.event_ids))

        self._processing_ids.add(event.id)
        task = asyncio.create_task(self._complete_incoming(event))
        self._incoming_tasks.add(task)
        task.add_done_callback(self._incoming_tasks.discard)

    def _on_end_of_stream(self, relay_url: str, frame: EoseMessage | ClosedMessage) -> None:
        query = self._queries.get(frame.sub_id)
        if isinstance(frame, ClosedMessage):
            self._logger.warning(
                "subscription_closed_by_relay",
                relay=relay_url,
                sub_id=frame.sub_id,
                message=frame.message,
            )
        if query is None:
            return
        query.finished.add(relay_url)
        if query.relays <= query.finished and not query.future.done():
            query.future.set_result(False)

    async def handle_incoming_event(self, raw: dict[str, Any]) -> Message | None:
        """Run the full receive pipeline on one decoded event object.

        Returns:
            A copy of the stored message, or ``None`` if the event was
            dropped or routed to the requests inbox.
        """
        event = self._screen_event(raw)
        if event is None:
            return None
        self._processing_ids.add(event.id)
        return await self._complete_incoming(event)

    def _screen_event(self, raw: Any, relay_url: str | None = None) -> Event | None:
        """Synchronous pipeline steps: shape, addressing, dedup, signature, block list."""
        if self._identity is None:
            return None
        try:
            event = Event.from_dict(raw)
        except (TypeError, ValueError) as e:
            self._drop("malformed_event", relay=relay_url, error=str(e))
            return None

        if event.kind != EventKind.ENCRYPTED_DM:
            self._drop("wrong_kind", event_id=event.id, kind=event.kind)
            return None
        if self._identity.public_key not in event.tag_values("p"):
            self._drop("not_addressed", event_id=event.id)
            return None
        if (
            event.id in self._processing_ids
            or event.id in self._messages
            or self._store.has_message(event.id)
        ):
            self._drop("duplicate", event_id=event.id)
            return None
        if not self._crypto.verify_event_signature(event):
            self._drop("invalid_signature", event_id=event.id, relay=relay_url)
            return None
        if self._trust.is_blocked(event.pubkey):
            self._drop("blocked", event_id=event.id)
            return None
        return event

    async def _complete_incoming(self, event: Event) -> Message | None:
        """Awaited pipeline steps: decrypt, classify, persist."""
        try:
            keys = self._identity.keys if self._identity is not None else None
            if keys is None:
                self._drop("identity_locked", event_id=event.id)
                return None

            try:
                plaintext = await self._crypto.decrypt_dm(
                    event.content, secret_key_hex(keys), event.pubkey
                )
            except CryptoError as e:
                self._drop("decrypt_failed", event_id=event.id, error=str(e))
                return None

            sender = event.pubkey
            if not self._trust.is_accepted(sender):
                self._inbox.upsert_incoming(sender, preview_text(plaintext), event.created_at)
                self.inc_counter("messages_requested")
                self._logger.info("dm_request_received", event_id=event.id, sender=sender)
                return None

            me = self._context.pubkey
            reply_id = reply_target(event)
            message = Message(
                id=event.id,
                conversation_id=conversation_id_for(me, sender),
                content=plaintext,
                timestamp=event.created_at,
                is_outgoing=False,
                status=MessageStatus.RECEIVED,
                sender_pubkey=sender,
                recipient_pubkey=me,
                event_id=event.id,
                event_created_at=event.created_at,
                encrypted_content=event.content,
                reply_to=self._reply_ref(reply_id) if reply_id else None,
            )
            self._save(message)
            self._remember(message)
            self.inc_counter("messages_received")
            self._logger.debug("dm_received", event_id=event.id, sender=sender)
            return message.copy()
        finally:
            self._processing_ids.discard(event.id)

    def _drop(self, reason: str, **context: Any) -> None:
        self.inc_counter(f"messages_dropped_{reason}")
        self._logger.debug("dm_dropped", reason=reason, **context)

    # -------------------------------------------------------------------------
    # Send pipeline
    # -------------------------------------------------------------------------

    async def send_dm(
        self, recipient: str, plaintext: str, *, reply_to: str | None = None
    ) -> SendResult:
        """Encrypt, sign and publish a direct message.

        Args:
            recipient: 64-char hex or ``npub1`` public key.
            plaintext: Message text, at most ``max_plaintext_chars``.
            reply_to: Id of the message being answered.

        Returns:
            A [SendResult][obscur.services.dm.SendResult]. Validation
            failures come back with ``message_id=None`` and no event built;
            delivery failures carry the id of the queued message.
        """
        fault = self._identity_fault()
        if fault is not None:
            return self._invalid(fault)
        keys = self._identity.keys  # type: ignore[union-attr]
        if keys is None:
            return self._invalid(ERROR_IDENTITY_LOCKED)
        try:
            recipient_hex = parse_public_key(recipient)
        except ValueError as e:
            return self._invalid(str(e))
        if not plaintext or not plaintext.strip():
            return self._invalid("message is empty")
        if len(plaintext) > self._config.max_plaintext_chars:
            return self._invalid(
                f"message exceeds {self._config.max_plaintext_chars} characters"
            )

        me = self._context.pubkey
        try:
            ciphertext = await self._crypto.encrypt_dm(
                plaintext, secret_key_hex(keys), recipient_hex
            )
            unsigned = build_dm_event(me, recipient_hex, ciphertext, int(time.time()), reply_to)
            event = self._crypto.sign_event(unsigned, keys)
        except (CryptoError, InvalidEventError) as e:
            return self._invalid(str(e))

        message = Message(
            id=event.id,
            conversation_id=conversation_id_for(me, recipient_hex),
            content=plaintext,
            timestamp=event.created_at,
            is_outgoing=True,
            status=MessageStatus.SENDING,
            sender_pubkey=me,
            recipient_pubkey=recipient_hex,
            event_id=event.id,
            event_created_at=event.created_at,
            encrypted_content=ciphertext,
            reply_to=self._reply_ref(reply_to) if reply_to else None,
        )
        self._save(message)
        self._remember(message)
        self._logger.info("dm_sending", message_id=message.id, recipient=recipient_hex)

        if not self._is_online():
            status = self._queue_for_retry(message, event, 0, MessageStatus.QUEUED)
            self._last_error = ERROR_OFFLINE
            return SendResult(
                success=False, message_id=message.id, error=ERROR_OFFLINE, status=status
            )

        result = await self._publish(event)
        return self._apply_publish(message, event, result, retry_count=0)

    async def process_offline_queue(self, *, force: bool = True) -> QueueProcessingResult:
        """Republish queued messages through the [OfflineQueueManager][obscur.services.dm.OfflineQueueManager].

        Args:
            force: Also retry entries whose backoff has not elapsed yet.
                Housekeeping cycles pass False.
        """
        result = await self._queue.process_queue(self._deliver_queued, due_only=not force)
        self.set_gauge("queued_messages", self._queue.get_queue_status().total_queued)
        return result

    async def retry_failed_message(self, message_id: str) -> SendResult:
        """Republish a ``rejected``, ``failed`` or ``queued`` message now.

        The stored signed event is reused, so the event id does not change.
        The retry budget starts over.
        """
        message = self._load_message(message_id)
        if message is None:
            return SendResult(success=False, message_id=message_id, error="message not found")
        if message.status not in _RETRYABLE:
            return SendResult(
                success=False,
                message_id=message_id,
                error=f"message is {message.status.value}, not retryable",
                status=message.status,
            )
        entry = self._store.get_queued_message(message_id)
        if entry is None or entry.signed_event is None:
            return SendResult(
                success=False,
                message_id=message_id,
                error="no signed event stored for message",
                status=message.status,
            )
        entry.retry_count = 0
        self._store.update_queued_message(entry)
        self._logger.info("dm_manual_retry", message_id=message_id, status=message.status.value)
        try:
            return await self._redeliver(entry)
        except PublishingError as e:
            self._last_error = str(e)
            return SendResult(
                success=False, message_id=message_id, error=str(e), status=message.status
            )

    async def _deliver_queued(self, entry: OutgoingMessage) -> bool:
        return (await self._redeliver(entry)).success

    async def _retry_due(self, message_id: str) -> None:
        """Retry timer callback; waits for the next reconnect while offline."""
        entry = self._store.get_queued_message(message_id)
        if entry is None:
            return
        if not self._is_online():
            self._logger.debug("retry_deferred", message_id=message_id, reason="offline")
            return
        await self._redeliver(entry)

    async def _redeliver(self, entry: OutgoingMessage) -> SendResult:
        """Republish a queue entry's signed event.

        Raises:
            PublishingError: If the entry has no signed event or its message
                is gone or in a state that cannot be resent. The entry is
                dropped from the queue in the first two cases.
        """
        message = self._load_message(entry.id)
        if entry.signed_event is None:
            self._store.remove_from_queue(entry.id)
            if message is not None:
                self._advance(message, MessageStatus.FAILED)
            raise PublishingError(f"queued message {entry.id} has no signed event")
        if message is None:
            self._store.remove_from_queue(entry.id)
            self._retry.cancel_retry(entry.id)
            raise PublishingError(f"queued message {entry.id} is no longer stored")
        if entry.id in self._publishing_ids:
            raise PublishingError(f"message {entry.id} is already being published")
        if not self._advance(message, MessageStatus.QUEUED, MessageStatus.SENDING):
            raise PublishingError(f"cannot resend a {message.status.value} message")

        self._retry.cancel_retry(entry.id)
        result = await self._publish(entry.signed_event)
        return self._apply_publish(
            message, entry.signed_event, result, retry_count=entry.retry_count + 1
        )

    async def _publish(self, event: Event) -> MultiRelayPublishResult:
        """Publish *event* to every open relay; one publish per message at a time."""
        self._publishing_ids.add(event.id)
        try:
            return await self._pool.publish_to_all(event)
        finally:
            self._publishing_ids.discard(event.id)

    def _apply_publish(
        self,
        message: Message,
        event: Event,
        result: MultiRelayPublishResult,
        *,
        retry_count: int,
    ) -> SendResult:
        message.relay_results = relay_results_of(result)
        relay_results = tuple(message.relay_results)
        outcome = publish_outcome(result)

        if outcome is MessageStatus.ACCEPTED:
            self._store.remove_from_queue(message.id)
            self._retry.cancel_retry(message.id)
            self._advance(message, MessageStatus.ACCEPTED)
            self.inc_counter("messages_sent")
            self._logger.info(
                "dm_accepted",
                message_id=message.id,
                accepted=result.success_count,
                total=result.total_relays,
            )
            return SendResult(
                success=True,
                message_id=message.id,
                relay_results=relay_results,
                status=message.status,
            )

        error = result.overall_error or ERROR_ALL_FAILED
        self._last_error = error
        status = self._queue_for_retry(message, event, retry_count, outcome)
        return SendResult(
            success=False,
            message_id=message.id,
            relay_results=relay_results,
            error=error,
            status=status,
        )

    def _queue_for_retry(
        self, message: Message, event: Event, retry_count: int, outcome: MessageStatus
    ) -> MessageStatus:
        """Queue *message* for another attempt, or mark it failed when out of budget.

        Failed messages keep a parked queue entry (retry count at the budget)
        so that a manual retry can reuse the signed event.
        """
        decision = self._retry.should_retry(retry_count, self._relay_urls())
        message.retry_count = retry_count
        entry = OutgoingMessage(
            id=message.id,
            conversation_id=message.conversation_id,
            content=event.content,
            recipient_pubkey=message.recipient_pubkey,
            created_at=message.timestamp,
            retry_count=retry_count,
            next_retry_at=decision.next_retry_at or 0.0,
            signed_event=event,
        )
        self._store.queue_outgoing_message(entry)

        if not decision.should_retry:
            self._retry.cancel_retry(message.id)
            self._advance(message, MessageStatus.FAILED)
            self.inc_counter("messages_failed")
            self._logger.warning(
                "dm_failed", message_id=message.id, retries=retry_count, reason=decision.reason
            )
            return message.status

        self._advance(message, outcome)
        self._retry.schedule_retry(
            message.id, entry.next_retry_at, partial(self._retry_due, message.id)
        )
        self._logger.info(
            "dm_queued",
            message_id=message.id,
            status=message.status.value,
            retries=retry_count,
            reason=decision.reason,
            next_retry_in_s=round(entry.next_retry_at - time.time(), 1),
        )
        return message.status

    def _invalid(self, error: str) -> SendResult:
        self._last_error = error
        self._logger.warning("dm_send_refused", error=error)
        return SendResult(success=False, error=error)

    # -------------------------------------------------------------------------
    # Sync and recipient checks
    # -------------------------------------------------------------------------

    async def sync_missed_messages(self, since: int | None = None) -> SyncProgress:
        """Fetch kind-4 events published while the engine was offline.

        Results go through the normal receive pipeline. The REQ is closed on
        EOSE from every relay it was sent to, or after ``sync_timeout``.

        Args:
            since: Lower bound on ``created_at``. Defaults to the newest
                stored message, or ``sync_default_lookback`` seconds ago.
        """
        if self._identity_fault() is not None or self._sync.is_syncing:
            return self._sync
        relays = frozenset(self._pool.open_relay_urls())
        if not relays:
            self._logger.debug("sync_skipped", reason="offline")
            return self._sync

        if since is None:
            last = self._store.get_last_message_timestamp()
            since = last if last is not None else int(time.time()) - self._config.sync_default_lookback

        me = self._context.pubkey
        sub = Subscription(
            sub_id=new_subscription_id(),
            filters=(
                Filter(
                    kinds=(EventKind.ENCRYPTED_DM,),
                    tags={"p": (me,)},
                    since=since,
                    limit=self._config.sync_limit,
                ),
            ),
        )
        query = _PendingQuery(
            kind="sync", relays=relays, future=asyncio.get_running_loop().create_future()
        )
        self._sync = SyncProgress(is_syncing=True, since=since)
        self._logger.info("sync_started", since=since, relays=len(relays))

        try:
            await self._run_query(query, sub, self._config.sync_timeout)
            pending = [t for t in self._incoming_tasks if not t.done()]
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            stored = [eid for eid in query.event_ids if eid in self._messages]
            if stored:
                self._store.mark_messages_synced(stored)
        finally:
            self._sync = SyncProgress(
                is_syncing=False,
                since=since,
                received=len(query.event_ids),
                completed_at=int(time.time()),
            )

        self._logger.info(
            "sync_completed",
            received=len(query.event_ids),
            stored=len(stored),
            timed_out=query.timed_out,
        )
        return self._sync

    async def verify_recipient(self, pubkey: str) -> bool:
        """Whether any open relay knows a kind-0 profile for *pubkey*."""
        try:
            author = parse_public_key(pubkey)
        except ValueError:
            return False
        relays = frozenset(self._pool.open_relay_urls())
        if not relays:
            return False

        sub = Subscription(
            sub_id=new_subscription_id(),
            filters=(Filter(kinds=(EventKind.METADATA,), authors=(author,), limit=1),),
        )
        query = _PendingQuery(
            kind="verify",
            relays=relays,
            future=asyncio.get_running_loop().create_future(),
            author=author,
        )
        await self._run_query(query, sub, self._config.verify_recipient_timeout)
        found = query.future.done() and not query.future.cancelled() and query.future.result()
        self._logger.debug("recipient_verified", pubkey=author, found=found)
        return found

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    def remove_conversation(self, conversation_id: str) -> list[str]:
        """Delete a conversation everywhere and cancel its pending retries.

        Returns:
            Ids of the removed messages.
        """
        removed = self._store.delete_conversation(conversation_id)
        cancelled = self._retry.cancel_retries(removed)
        self._cache.unload_conversation(conversation_id)
        for mid in [m.id for m in self._messages.values() if m.conversation_id == conversation_id]:
            del self._messages[mid]
        self._logger.info(
            "conversation_removed",
            conversation=conversation_id,
            messages=len(removed),
            cancelled_retries=cancelled,
        )
        return removed

    # -------------------------------------------------------------------------
    # Local bookkeeping
    # -------------------------------------------------------------------------

    def _load_message(self, message_id: str) -> Message | None:
        message = self._messages.get(message_id)
        if message is None:
            message = self._store.get_message(message_id)
            if message is not None:
                self._remember(message)
        return message

    def _reply_ref(self, message_id: str) -> ReplyTo:
        target = self._messages.get(message_id) or self._store.get_message(message_id)
        return ReplyTo(message_id, preview_text(target.content) if target else "")

    def _save(self, message: Message) -> None:
        try:
            evicted = self._store.persist_message(message)
        except StorageError as e:
            self._last_error = str(e)
            self._logger.error("message_persist_failed", message_id=message.id, error=str(e))
            return
        for mid in evicted:
            self._messages.pop(mid, None)

    def _remember(self, message: Message) -> None:
        self._messages[message.id] = message
        if self._cache.has_conversation(message.conversation_id):
            self._cache.add_messages(message.conversation_id, [message])
        excess = len(self._messages) - self._config.state_message_limit
        if excess > 0:
            oldest = sorted(self._messages.values(), key=lambda m: (m.timestamp, m.id))[:excess]
            for m in oldest:
                del self._messages[m.id]

    def _advance(self, message: Message, *statuses: MessageStatus) -> bool:
        """Walk *message* through *statuses*, skipping those it is already in.

        Nothing changes if any step is not an allowed transition.
        """
        current = message.status
        for status in statuses:
            if status == current:
                continue
            if not is_valid_transition(current, status):
                self._logger.warning(
                    "status_transition_refused",
                    message_id=message.id,
                    current=message.status.value,
                    requested=status.value,
                )
                return False
            current = status
        message.status = current
        self._save(message)
        self._cache.update_message(message)
        return True
