"""
Unit tests for core.retry module.

Tests:
- RetryConfig / CircuitBreakerConfig validation
- Exponential backoff with cap and jitter
- should_retry() budget and open-breaker deferral
- Circuit breaker transitions (closed -> open -> half-open -> closed)
- Retry timers (schedule, replace, cancel, past-due, coroutine callbacks)
- cleanup()
"""

import asyncio
import random
import time
from unittest.mock import MagicMock, patch

import pytest
from pydantic import ValidationError

from obscur.core.retry import (
    STALE_BREAKER_AGE,
    CircuitBreakerConfig,
    RetryConfig,
    RetryManager,
)
from obscur.models.constants import CircuitState


RELAY = "wss://relay-a.example.com"
OTHER = "wss://relay-b.example.com"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def time(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    fake = FakeClock()
    with patch("obscur.core.retry.time", fake):
        yield fake


@pytest.fixture
def manager():
    return RetryManager(
        RetryConfig(max_retries=3, base_delay=1.0, max_delay=10.0, jitter=0.0),
        CircuitBreakerConfig(failure_threshold=3, recovery_time=60.0, half_open_success_threshold=2),
    )


def _trip(manager: RetryManager, url: str = RELAY) -> None:
    for _ in range(manager.breaker_config.failure_threshold):
        manager.record_relay_failure(url, "boom")


# ============================================================================
# Configuration
# ============================================================================


class TestConfigs:
    """Config defaults and validation."""

    def test_retry_defaults(self):
        config = RetryConfig()
        assert config.max_retries == 5
        assert config.base_delay == 1.0
        assert config.max_delay == 300.0
        assert config.backoff_multiplier == 2.0
        assert config.jitter == 1.0

    def test_breaker_defaults(self):
        config = CircuitBreakerConfig()
        assert config.failure_threshold == 5
        assert config.recovery_time == 60.0
        assert config.half_open_success_threshold == 3

    def test_max_delay_below_base(self):
        with pytest.raises(ValidationError, match="max_delay"):
            RetryConfig(base_delay=10.0, max_delay=5.0)

    def test_multiplier_below_one(self):
        with pytest.raises(ValidationError):
            RetryConfig(backoff_multiplier=0.5)

    def test_zero_threshold(self):
        with pytest.raises(ValidationError):
            CircuitBreakerConfig(failure_threshold=0)


# ============================================================================
# Backoff
# ============================================================================


class TestCalculateNextRetry:
    """calculate_next_retry()."""

    @pytest.mark.parametrize(("count", "delay"), [(0, 1.0), (1, 2.0), (2, 4.0), (3, 8.0), (4, 10.0)])
    def test_exponential_with_cap(self, manager, clock, count, delay):
        assert manager.calculate_next_retry(count) == clock.now + delay

    def test_huge_retry_count_does_not_overflow(self, manager, clock):
        assert manager.calculate_next_retry(10_000) == clock.now + 10.0

    def test_jitter_bounds(self, clock):
        rm = RetryManager(
            RetryConfig(base_delay=5.0, max_delay=5.0, jitter=2.0), rng=random.Random(7)
        )
        for _ in range(50):
            at = rm.calculate_next_retry(0)
            assert clock.now + 3.0 <= at <= clock.now + 7.0

    def test_never_in_the_past(self, clock):
        rm = RetryManager(RetryConfig(base_delay=0.1, max_delay=0.1, jitter=5.0))
        for _ in range(50):
            assert rm.calculate_next_retry(0) >= clock.now


class TestShouldRetry:
    """should_retry()."""

    def test_within_budget(self, manager, clock):
        decision = manager.should_retry(0, [RELAY])
        assert decision.should_retry
        assert decision.next_retry_at == clock.now + 1.0
        assert decision.reason == "backoff"

    def test_budget_exhausted(self, manager, clock):
        decision = manager.should_retry(3, [RELAY])
        assert not decision.should_retry
        assert decision.next_retry_at is None
        assert decision.reason == "max retries exceeded"

    def test_all_relays_open_defers_to_recovery(self, manager, clock):
        _trip(manager, RELAY)
        _trip(manager, OTHER)
        decision = manager.should_retry(0, [RELAY, OTHER])
        assert decision.should_retry
        assert decision.reason == "all relays blocked"
        assert decision.next_retry_at == clock.now + 60.0

    def test_one_relay_still_closed(self, manager, clock):
        _trip(manager, RELAY)
        decision = manager.should_retry(0, [RELAY, OTHER])
        assert decision.reason == "backoff"

    def test_default_relays_are_known_breakers(self, manager, clock):
        _trip(manager, RELAY)
        assert manager.should_retry(0).reason == "all relays blocked"


# ============================================================================
# Circuit breaker
# ============================================================================


class TestCircuitBreaker:
    """Breaker state machine."""

    def test_unknown_relay_available(self, manager):
        assert manager.is_relay_available(RELAY)
        assert manager.get_circuit_breaker_status() == {}

    def test_opens_at_threshold(self, manager, clock):
        manager.record_relay_failure(RELAY)
        manager.record_relay_failure(RELAY)
        assert manager.is_relay_available(RELAY)
        manager.record_relay_failure(RELAY, "refused")
        breaker = manager.get_circuit_breaker_status()[RELAY]
        assert breaker.state == CircuitState.OPEN
        assert breaker.next_retry_at == clock.now + 60.0
        assert breaker.last_error == "refused"
        assert not manager.is_relay_available(RELAY)

    def test_success_decays_failures(self, manager, clock):
        manager.record_relay_failure(RELAY)
        manager.record_relay_failure(RELAY)
        manager.record_relay_success(RELAY)
        manager.record_relay_success(RELAY)
        manager.record_relay_success(RELAY)
        assert manager.get_circuit_breaker_status()[RELAY].failure_count == 0
        manager.record_relay_failure(RELAY)
        assert manager.get_circuit_breaker_status()[RELAY].state == CircuitState.CLOSED

    def test_half_open_after_recovery_single_probe(self, manager, clock):
        _trip(manager)
        clock.advance(60.0)
        assert manager.is_relay_available(RELAY)
        assert manager.get_circuit_breaker_status()[RELAY].state == CircuitState.HALF_OPEN
        assert not manager.is_relay_available(RELAY)

    def test_half_open_closes_after_successes(self, manager, clock):
        _trip(manager)
        clock.advance(61.0)
        assert manager.is_relay_available(RELAY)
        manager.record_relay_success(RELAY)
        assert manager.is_relay_available(RELAY)
        manager.record_relay_success(RELAY)
        breaker = manager.get_circuit_breaker_status()[RELAY]
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_half_open_failure_reopens(self, manager, clock):
        _trip(manager)
        clock.advance(61.0)
        manager.is_relay_available(RELAY)
        manager.record_relay_failure(RELAY)
        breaker = manager.get_circuit_breaker_status()[RELAY]
        assert breaker.state == CircuitState.OPEN
        assert breaker.next_retry_at == clock.now + 60.0

    def test_failure_while_open_extends_window(self, manager, clock):
        _trip(manager)
        clock.advance(30.0)
        manager.record_relay_failure(RELAY)
        assert manager.get_circuit_breaker_status()[RELAY].next_retry_at == clock.now + 60.0

    def test_success_for_unknown_relay_ignored(self, manager):
        manager.record_relay_success(RELAY)
        assert manager.get_circuit_breaker_status() == {}

    def test_status_returns_copies(self, manager, clock):
        _trip(manager)
        manager.get_circuit_breaker_status()[RELAY].state = CircuitState.CLOSED
        assert manager.get_circuit_breaker_status()[RELAY].state == CircuitState.OPEN

    def test_reset(self, manager, clock):
        _trip(manager)
        manager.reset_circuit_breaker(RELAY)
        assert manager.is_relay_available(RELAY)
        assert RELAY not in manager.get_circuit_breaker_status()

    def test_get_available_relays(self, manager, clock):
        _trip(manager, RELAY)
        assert manager.get_available_relays([RELAY, OTHER]) == [OTHER]


# ============================================================================
# Timers
# ============================================================================


class TestScheduleRetry:
    """schedule_retry() and cancellation."""

    async def test_future_retry_is_pending(self, manager):
        callback = MagicMock(return_value=None)
        manager.schedule_retry("m1", 10**12, callback)
        assert manager.has_pending_retry("m1")
        assert manager.pending_retries() == ["m1"]
        callback.assert_not_called()
        manager.cleanup()

    async def test_past_time_runs_immediately(self, manager):
        callback = MagicMock(return_value=None)
        manager.schedule_retry("m1", 0, callback)
        callback.assert_called_once()
        assert not manager.has_pending_retry("m1")

    async def test_reschedule_replaces_timer(self, manager):
        first, second = MagicMock(return_value=None), MagicMock(return_value=None)
        manager.schedule_retry("m1", 10**12, first)
        manager.schedule_retry("m1", 0, second)
        await asyncio.sleep(0)
        first.assert_not_called()
        second.assert_called_once()
        assert not manager.has_pending_retry("m1")

    async def test_timer_fires(self, manager):
        fired = asyncio.Event()
        manager.schedule_retry("m1", time.time() + 0.01, fired.set)
        await asyncio.wait_for(fired.wait(), timeout=2.0)
        assert not manager.has_pending_retry("m1")

    async def test_coroutine_callback_is_awaited(self, manager):
        done = asyncio.Event()

        async def callback():
            done.set()

        manager.schedule_retry("m1", 0, callback)
        await asyncio.wait_for(done.wait(), timeout=2.0)

    async def test_callback_errors_are_contained(self, manager):
        def boom():
            raise RuntimeError("nope")

        manager.schedule_retry("m1", 0, boom)
        assert not manager.has_pending_retry("m1")

    async def test_cancel(self, manager):
        manager.schedule_retry("m1", 10**12, MagicMock())
        manager.schedule_retry("m2", 10**12, MagicMock())
        assert manager.cancel_retry("m1")
        assert not manager.cancel_retry("m1")
        assert manager.cancel_retries(["m2", "m3"]) == 1
        assert manager.pending_retries() == []


class TestCleanup:
    """cleanup()."""

    async def test_cancels_timers(self, manager):
        callback = MagicMock()
        manager.schedule_retry("m1", 10**12, callback)
        manager.cleanup()
        assert manager.pending_retries() == []

    def test_prunes_stale_breakers(self, manager, clock):
        _trip(manager, RELAY)
        clock.advance(STALE_BREAKER_AGE + 1)
        manager.record_relay_failure(OTHER)
        manager.cleanup()
        status = manager.get_circuit_breaker_status()
        assert RELAY not in status
        assert OTHER in status
