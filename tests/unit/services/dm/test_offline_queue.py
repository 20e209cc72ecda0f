"""
Unit tests for services.dm.offline_queue module.

Tests:
- Due-only and forced drains
- Online gating and single-drain guarantee
- Callback failures recorded without aborting the batch
- Queue status and clearing
"""

import asyncio
import time

import pytest

from obscur.core.store import MessageStore
from obscur.models.message import OutgoingMessage
from obscur.services.dm import OfflineQueueManager


ME = "a" * 64
PEER = "b" * 64


def _entry(n: int, *, next_retry_at: float = 0.0, retry_count: int = 0) -> OutgoingMessage:
    return OutgoingMessage(
        id=f"{n:064x}",
        conversation_id=f"{ME}:{PEER}",
        content=f"queued {n}",
        recipient_pubkey=PEER,
        created_at=1_700_000_000 + n,
        retry_count=retry_count,
        next_retry_at=next_retry_at,
    )


@pytest.fixture
def store() -> MessageStore:
    return MessageStore(ME)


@pytest.fixture
def online() -> dict[str, bool]:
    return {"value": True}


@pytest.fixture
def manager(store: MessageStore, online: dict[str, bool]) -> OfflineQueueManager:
    return OfflineQueueManager(
        store, max_retries=3, is_online=lambda: online["value"], pacing=0.0
    )


class _Recorder:
    """Delivery callback that records ids and answers from a script."""

    def __init__(self, answers: dict[str, bool | Exception] | None = None) -> None:
        self.answers = answers or {}
        self.calls: list[str] = []

    async def __call__(self, entry: OutgoingMessage) -> bool:
        self.calls.append(entry.id)
        answer = self.answers.get(entry.id, True)
        if isinstance(answer, Exception):
            raise answer
        return answer


# ============================================================================
# Draining
# ============================================================================


class TestProcessQueue:
    """OfflineQueueManager.process_queue()."""

    async def test_empty_queue(self, manager):
        result = await manager.process_queue(_Recorder())
        assert result.processed == 0

    async def test_due_only_skips_future_entries(self, manager, store):
        store.queue_outgoing_message(_entry(1))
        store.queue_outgoing_message(_entry(2, next_retry_at=time.time() + 3600))
        deliver = _Recorder()
        result = await manager.process_queue(deliver)
        assert deliver.calls == [f"{1:064x}"]
        assert (result.processed, result.succeeded) == (1, 1)

    async def test_forced_drain_includes_future_entries(self, manager, store):
        store.queue_outgoing_message(_entry(1))
        store.queue_outgoing_message(_entry(2, next_retry_at=time.time() + 3600))
        deliver = _Recorder()
        result = await manager.process_queue(deliver, due_only=False)
        assert len(deliver.calls) == 2
        assert result.processed == 2

    async def test_entries_over_budget_skipped(self, manager, store):
        store.queue_outgoing_message(_entry(1, retry_count=3))
        deliver = _Recorder()
        result = await manager.process_queue(deliver, due_only=False)
        assert deliver.calls == []
        assert result.processed == 0

    async def test_ordered_by_next_retry(self, manager, store):
        store.queue_outgoing_message(_entry(1, next_retry_at=20.0))
        store.queue_outgoing_message(_entry(2, next_retry_at=10.0))
        deliver = _Recorder()
        await manager.process_queue(deliver)
        assert deliver.calls == [f"{2:064x}", f"{1:064x}"]

    async def test_offline_returns_empty(self, manager, store, online):
        store.queue_outgoing_message(_entry(1))
        online["value"] = False
        deliver = _Recorder()
        result = await manager.process_queue(deliver)
        assert deliver.calls == []
        assert result.processed == 0

    async def test_failures_counted(self, manager, store):
        for n in (1, 2, 3):
            store.queue_outgoing_message(_entry(n, next_retry_at=float(n)))
        deliver = _Recorder({f"{1:064x}": False, f"{2:064x}": RuntimeError("boom")})
        result = await manager.process_queue(deliver)
        assert len(deliver.calls) == 3
        assert (result.processed, result.succeeded, result.failed) == (3, 1, 2)
        assert result.errors == [(f"{2:064x}", "boom")]

    async def test_single_drain_at_a_time(self, manager, store):
        store.queue_outgoing_message(_entry(1))
        gate = asyncio.Event()

        async def slow(entry: OutgoingMessage) -> bool:
            await gate.wait()
            return True

        first = asyncio.create_task(manager.process_queue(slow))
        await asyncio.sleep(0)
        assert manager.is_processing
        second = await manager.process_queue(slow)
        assert second.processed == 0

        gate.set()
        result = await first
        assert result.processed == 1
        assert not manager.is_processing

    async def test_cancellation_propagates(self, manager, store):
        store.queue_outgoing_message(_entry(1))

        async def cancelled(entry: OutgoingMessage) -> bool:
            raise asyncio.CancelledError

        with pytest.raises(asyncio.CancelledError):
            await manager.process_queue(cancelled)
        assert not manager.is_processing


# ============================================================================
# Status
# ============================================================================


class TestQueueStatus:
    """get_queue_status() and clear_queue()."""

    def test_empty(self, manager):
        status = manager.get_queue_status()
        assert status.total_queued == 0
        assert status.oldest is None
        assert status.newest is None

    def test_counts_entries_under_budget(self, manager, store):
        store.queue_outgoing_message(_entry(1))
        store.queue_outgoing_message(_entry(5))
        store.queue_outgoing_message(_entry(9, retry_count=3))
        status = manager.get_queue_status()
        assert status.total_queued == 2
        assert status.oldest == 1_700_000_001
        assert status.newest == 1_700_000_005

    def test_clear_queue(self, manager, store):
        store.queue_outgoing_message(_entry(1))
        store.queue_outgoing_message(_entry(2, retry_count=3))
        assert manager.clear_queue() == 2
        assert store.get_all_queued_messages() == []
        assert manager.clear_queue() == 0
