"""Offline queue draining for the DM controller.

[OfflineQueueManager][obscur.services.dm.offline_queue.OfflineQueueManager]
walks the durable queue in ``next_retry_at`` order and hands each entry to
a delivery callback supplied by the controller. It owns no retry policy:
the callback decides what a failure means for the message (reschedule or
give up). The manager only guarantees that one drain runs at a time, that
redeliveries are paced, and that a failing entry never aborts the rest of
the batch.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from obscur.core.logger import Logger

from .types import QueueStatus


if TYPE_CHECKING:
    from obscur.core.store import MessageStore
    from obscur.models.message import OutgoingMessage


DeliverCallback = Callable[["OutgoingMessage"], Awaitable[bool]]


@dataclass(slots=True)
class QueueProcessingResult:
    """Counters for one drain; ``errors`` pairs a message id with its failure."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)


class OfflineQueueManager:
    """Serialize and pace redelivery of queued outgoing messages.

    Args:
        store: Store holding the queue.
        max_retries: Entries at or above this retry count are skipped.
        is_online: Returns False while no relay connection is open; a drain
            started offline returns an empty result.
        pacing: Seconds to pause between two redeliveries.
    """

    def __init__(
        self,
        store: MessageStore,
        *,
        max_retries: int,
        is_online: Callable[[], bool],
        pacing: float = 0.1,
    ) -> None:
        self._store = store
        self._max_retries = max_retries
        self._is_online = is_online
        self._pacing = pacing
        self._processing = False
        self._logger = Logger("offline_queue")

    @property
    def is_processing(self) -> bool:
        return self._processing

    async def process_queue(
        self, deliver: DeliverCallback, *, due_only: bool = True
    ) -> QueueProcessingResult:
        """Redeliver queued entries one by one.

        Args:
            deliver: Called per entry; returns True when a relay accepted it.
                Exceptions are recorded in ``errors`` and count as failures.
            due_only: Skip entries whose ``next_retry_at`` is in the future.
                Manual drains pass False to retry immediately.
        """
        result = QueueProcessingResult()
        if self._processing:
            self._logger.debug("queue_drain_skipped", reason="already_processing")
            return result
        if not self._is_online():
            self._logger.debug("queue_drain_skipped", reason="offline")
            return result

        self._processing = True
        try:
            if due_only:
                entries = self._store.get_queued_messages(self._max_retries)
            else:
                entries = [
                    q
                    for q in self._store.get_all_queued_messages()
                    if q.retry_count < self._max_retries
                ]
            if not entries:
                return result

            self._logger.info("queue_drain_started", entries=len(entries))
            for i, entry in enumerate(entries):
                if i and self._pacing:
                    await asyncio.sleep(self._pacing)
                result.processed += 1
                try:
                    delivered = await deliver(entry)
                except asyncio.CancelledError:
                    raise
                except Exception as e:  # Intentionally broad: one entry must not abort the drain
                    result.failed += 1
                    result.errors.append((entry.id, str(e)))
                    self._logger.warning("queue_entry_failed", message_id=entry.id, error=str(e))
                    continue
                if delivered:
                    result.succeeded += 1
                else:
                    result.failed += 1

            self._logger.info(
                "queue_drain_completed",
                processed=result.processed,
                succeeded=result.succeeded,
                failed=result.failed,
            )
            return result
        finally:
            self._processing = False

    def get_queue_status(self) -> QueueStatus:
        """Summary of entries still under the retry budget.

        Entries of messages that gave up stay parked in the queue so a
        manual retry can republish the same signed event; they are not
        counted here.
        """
        entries = [
            e for e in self._store.get_all_queued_messages() if e.retry_count < self._max_retries
        ]
        created = [e.created_at for e in entries]
        return QueueStatus(
            total_queued=len(entries),
            oldest=min(created) if created else None,
            newest=max(created) if created else None,
            is_processing=self._processing,
        )

    def clear_queue(self) -> int:
        """Drop every queue entry; return how many were removed."""
        entries = self._store.get_all_queued_messages()
        for entry in entries:
            self._store.remove_from_queue(entry.id)
        if entries:
            self._logger.info("queue_cleared", entries=len(entries))
        return len(entries)
