"""Read-only snapshots exposed by the DM controller.

Every type here is a frozen dataclass handed out by value: mutating the
controller's internal state never changes a snapshot a caller already
holds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from obscur.models.constants import MessageStatus
    from obscur.models.frames import Subscription
    from obscur.models.message import Message, RelayResult


class ControllerStatus(StrEnum):
    """Lifecycle state of a [DmController][obscur.services.dm.DmController]."""

    IDLE = "idle"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class NetworkState:
    is_online: bool = False
    open_relays: int = 0
    total_relays: int = 0


@dataclass(frozen=True, slots=True)
class QueueStatus:
    """Offline queue summary; ``oldest``/``newest`` are entry ``created_at`` values."""

    total_queued: int = 0
    oldest: int | None = None
    newest: int | None = None
    is_processing: bool = False


@dataclass(frozen=True, slots=True)
class SyncProgress:
    is_syncing: bool = False
    since: int | None = None
    received: int = 0
    completed_at: int | None = None


@dataclass(frozen=True, slots=True)
class SendResult:
    """Outcome of [send_dm()][obscur.services.dm.DmController.send_dm].

    Attributes:
        success: True once at least one relay accepted the event.
        message_id: Id of the stored message; ``None`` when validation
            failed before an event was built.
        relay_results: Per-relay outcomes of the publish attempt.
        error: Validation or delivery failure reason.
        status: Message status after the attempt.
    """

    success: bool
    message_id: str | None = None
    relay_results: tuple[RelayResult, ...] = ()
    error: str | None = None
    status: MessageStatus | None = None


@dataclass(frozen=True, slots=True)
class DmControllerState:
    """Snapshot returned by [DmController.state][obscur.services.dm.DmController.state].

    ``messages`` is ordered by ``timestamp`` (then id) for display only.
    """

    status: ControllerStatus
    error: str | None = None
    messages: tuple[Message, ...] = ()
    subscriptions: tuple[Subscription, ...] = ()
    message_status: dict[str, MessageStatus] = field(default_factory=dict)
    network_state: NetworkState = field(default_factory=NetworkState)
    last_error: str | None = None
    queue_status: QueueStatus = field(default_factory=QueueStatus)
    sync_progress: SyncProgress = field(default_factory=SyncProgress)
