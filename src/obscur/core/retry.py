"""
Per-relay circuit breakers and exponential backoff scheduling.

The [RetryManager][obscur.core.retry.RetryManager] answers three questions
for the send path:

* Is this relay worth trying right now?
  ([is_relay_available()][obscur.core.retry.RetryManager.is_relay_available])
* When should a failed message be tried again, if at all?
  ([should_retry()][obscur.core.retry.RetryManager.should_retry])
* Run this retry at that time, replacing any earlier timer for the same
  message. ([schedule_retry()][obscur.core.retry.RetryManager.schedule_retry])

Breaker state machine (one breaker per relay URL, created on first failure):

```text
closed --(failure_threshold failures)--> open
open --(recovery_time elapsed, next availability check)--> half-open
half-open --(half_open_success_threshold successes)--> closed
half-open --(any failure)--> open
```

Closed-state successes decrement ``failure_count`` (never below zero) so
isolated blips decay without a full reset. In half-open one probe is
allowed at a time; the next probe is released once the previous one's
outcome has been recorded.

All times are unix seconds from ``time.time()``. Instances are owned by the
[EngineContext][obscur.core.context.EngineContext]; there is no
module-level state.
"""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any

from pydantic import BaseModel, Field, ValidationInfo, field_validator

from obscur.models.constants import CircuitState

from .logger import Logger
from .metrics import CIRCUIT_BREAKERS


STALE_BREAKER_AGE = 24 * 60 * 60.0
_MAX_BACKOFF_EXPONENT = 64

RetryCallback = Callable[[], Awaitable[Any] | None]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RetryConfig(BaseModel):
    """Backoff policy for failed sends.

    ``next_retry_at = now + min(base_delay * backoff_multiplier ** retry_count,
    max_delay) ± jitter``, never earlier than ``now``.
    """

    max_retries: int = Field(default=5, ge=0, le=100, description="Give up after this many retries")
    base_delay: float = Field(default=1.0, gt=0.0, description="First backoff delay (seconds)")
    max_delay: float = Field(default=300.0, gt=0.0, description="Backoff cap (seconds)")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Exponential growth factor")
    jitter: float = Field(default=1.0, ge=0.0, description="Uniform ± jitter (seconds)")

    @field_validator("max_delay")
    @classmethod
    def validate_max_delay(cls, v: float, info: ValidationInfo) -> float:
        """Ensure max_delay >= base_delay."""
        base_delay = info.data.get("base_delay", 1.0)
        if v < base_delay:
            raise ValueError(f"max_delay ({v}) must be >= base_delay ({base_delay})")
        return v


class CircuitBreakerConfig(BaseModel):
    """Thresholds for the per-relay circuit breaker."""

    failure_threshold: int = Field(default=5, ge=1, description="Failures before opening")
    recovery_time: float = Field(default=60.0, gt=0.0, description="Open window (seconds)")
    half_open_success_threshold: int = Field(
        default=3, ge=1, description="Half-open successes before closing"
    )


# ---------------------------------------------------------------------------
# State records
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class CircuitBreaker:
    """Mutable breaker record for one relay URL."""

    relay_url: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_at: float | None = None
    next_retry_at: float | None = None
    probe_in_flight: bool = False
    last_error: str | None = None


@dataclass(frozen=True, slots=True)
class RetryDecision:
    """Result of [should_retry()][obscur.core.retry.RetryManager.should_retry]."""

    should_retry: bool
    next_retry_at: float | None = None
    reason: str = ""


# ---------------------------------------------------------------------------
# Retry manager
# ---------------------------------------------------------------------------


class RetryManager:
    """Circuit breaker registry and retry scheduler.

    Args:
        retry: Backoff policy. Defaults to [RetryConfig][obscur.core.retry.RetryConfig].
        circuit_breaker: Breaker thresholds.
        rng: Random source for jitter; injectable for deterministic tests.
    """

    def __init__(
        self,
        retry: RetryConfig | None = None,
        circuit_breaker: CircuitBreakerConfig | None = None,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self._retry = retry or RetryConfig()
        self._breaker = circuit_breaker or CircuitBreakerConfig()
        self._rng = rng or random.Random()  # noqa: S311  # jitter, not cryptography
        self._breakers: dict[str, CircuitBreaker] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._logger = Logger("retry")

    @property
    def retry_config(self) -> RetryConfig:
        return self._retry

    @property
    def breaker_config(self) -> CircuitBreakerConfig:
        return self._breaker

    # -------------------------------------------------------------------------
    # Backoff
    # -------------------------------------------------------------------------

    def calculate_next_retry(self, retry_count: int) -> float:
        """Return the unix time at which attempt ``retry_count + 1`` is due."""
        now = time.time()
        exponent = min(max(retry_count, 0), _MAX_BACKOFF_EXPONENT)
        delay = min(self._retry.base_delay * self._retry.backoff_multiplier**exponent,
                    self._retry.max_delay)
        jitter = self._rng.uniform(-self._retry.jitter, self._retry.jitter)
        return max(now, now + delay + jitter)

    def should_retry(
        self,
        retry_count: int,
        relay_urls: Iterable[str] | None = None,
    ) -> RetryDecision:
        """Decide whether a message that failed ``retry_count`` times gets another try.

        Args:
            retry_count: Retries already spent on the message.
            relay_urls: Relays the message would be sent to. Defaults to
                every relay with a breaker record.

        Returns:
            A [RetryDecision][obscur.core.retry.RetryDecision]. When every
            relay is blocked by an open breaker, ``next_retry_at`` is pushed
            to the earliest recovery time.
        """
        if retry_count >= self._retry.max_retries:
            return RetryDecision(should_retry=False, reason="max retries exceeded")

        next_retry_at = self.calculate_next_retry(retry_count)

        if relay_urls is None:
            breakers = list(self._breakers.values())
        else:
            breakers = [self._breakers.get(url) for url in relay_urls]  # type: ignore[misc]

        if breakers and all(
            b is not None and b.state == CircuitState.OPEN and b.next_retry_at is not None
            for b in breakers
        ):
            earliest = min(b.next_retry_at for b in breakers)  # type: ignore[union-attr,type-var]
            return RetryDecision(
                should_retry=True,
                next_retry_at=max(next_retry_at, earliest),
                reason="all relays blocked",
            )

        return RetryDecision(should_retry=True, next_retry_at=next_retry_at, reason="backoff")

    # -------------------------------------------------------------------------
    # Circuit breakers
    # -------------------------------------------------------------------------

    def record_relay_failure(self, relay_url: str, error: str | None = None) -> None:
        """Count a failure against *relay_url*, opening its breaker if needed."""
        now = time.time()
        breaker = self._breakers.get(relay_url)
        if breaker is None:
            breaker = CircuitBreaker(relay_url=relay_url)
            self._breakers[relay_url] = breaker

        breaker.failure_count += 1
        breaker.success_count = 0
        breaker.last_failure_at = now
        breaker.probe_in_flight = False
        breaker.last_error = error

        if breaker.state == CircuitState.HALF_OPEN:
            self._open(breaker, now, reason="probe_failed")
        elif breaker.state == CircuitState.OPEN:
            breaker.next_retry_at = now + self._breaker.recovery_time
        elif breaker.failure_count >= self._breaker.failure_threshold:
            self._open(breaker, now, reason="threshold_reached")

    def record_relay_success(self, relay_url: str) -> None:
        """Count a success for *relay_url*; unknown relays are ignored."""
        breaker = self._breakers.get(relay_url)
        if breaker is None:
            return

        breaker.success_count += 1
        breaker.probe_in_flight = False

        if breaker.state == CircuitState.HALF_OPEN:
            if breaker.success_count >= self._breaker.half_open_success_threshold:
                breaker.state = CircuitState.CLOSED
                breaker.failure_count = 0
                breaker.success_count = 0
                breaker.next_retry_at = None
                self._logger.info("breaker_closed", relay=relay_url)
                self._export_metrics()
        elif breaker.state == CircuitState.CLOSED:
            breaker.failure_count = max(0, breaker.failure_count - 1)

    def is_relay_available(self, relay_url: str) -> bool:
        """Return whether a send to *relay_url* should be attempted now.

        An open breaker whose recovery window has elapsed moves to
        half-open and admits exactly one probe.
        """
        breaker = self._breakers.get(relay_url)
        if breaker is None or breaker.state == CircuitState.CLOSED:
            return True

        if breaker.state == CircuitState.OPEN:
            if breaker.next_retry_at is not None and time.time() >= breaker.next_retry_at:
                breaker.state = CircuitState.HALF_OPEN
                breaker.success_count = 0
                breaker.probe_in_flight = True
                self._logger.info("breaker_half_open", relay=relay_url)
                self._export_metrics()
                return True
            return False

        if breaker.probe_in_flight:
            return False
        breaker.probe_in_flight = True
        return True

    def get_available_relays(self, relay_urls: Iterable[str]) -> list[str]:
        """Filter *relay_urls* down to the relays whose breaker admits a send."""
        return [url for url in relay_urls if self.is_relay_available(url)]

    def get_circuit_breaker_status(self) -> dict[str, CircuitBreaker]:
        """Return copies of every breaker record, keyed by relay URL."""
        return {url: replace(b) for url, b in self._breakers.items()}

    def reset_circuit_breaker(self, relay_url: str) -> None:
        """Forget all failure history for *relay_url*."""
        if self._breakers.pop(relay_url, None) is not None:
            self._logger.info("breaker_reset", relay=relay_url)
            self._export_metrics()

    def _open(self, breaker: CircuitBreaker, now: float, *, reason: str) -> None:
        breaker.state = CircuitState.OPEN
        breaker.next_retry_at = now + self._breaker.recovery_time
        self._logger.warning(
            "breaker_opened",
            relay=breaker.relay_url,
            reason=reason,
            failures=breaker.failure_count,
            retry_in_s=self._breaker.recovery_time,
        )
        self._export_metrics()

    def _export_metrics(self) -> None:
        counts = dict.fromkeys(CircuitState, 0)
        for b in self._breakers.values():
            counts[b.state] += 1
        for state, count in counts.items():
            CIRCUIT_BREAKERS.labels(state=state.value).set(count)

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    def schedule_retry(self, message_id: str, retry_at: float, callback: RetryCallback) -> None:
        """Run *callback* at *retry_at*, replacing any pending timer for *message_id*.

        Must be called from within a running event loop. A time in the past
        runs the callback immediately. Coroutine callbacks are wrapped in a
        task that the manager keeps alive until it finishes.
        """
        self.cancel_retry(message_id)
        delay = retry_at - time.time()
        if delay <= 0:
            self._run_callback(message_id, callback)
            return
        loop = asyncio.get_running_loop()
        self._timers[message_id] = loop.call_later(delay, self._fire, message_id, callback)
        self._logger.debug("retry_scheduled", message_id=message_id, delay_s=round(delay, 3))

    def cancel_retry(self, message_id: str) -> bool:
        """Cancel the pending timer for *message_id*; return True if one existed."""
        handle = self._timers.pop(message_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_retries(self, message_ids: Iterable[str]) -> int:
        """Cancel timers for several messages; return how many were pending."""
        return sum(self.cancel_retry(mid) for mid in message_ids)

    def pending_retries(self) -> list[str]:
        """Return the ids of messages with a pending retry timer."""
        return list(self._timers)

    def has_pending_retry(self, message_id: str) -> bool:
        return message_id in self._timers

    def _fire(self, message_id: str, callback: RetryCallback) -> None:
        self._timers.pop(message_id, None)
        self._run_callback(message_id, callback)

    def _run_callback(self, message_id: str, callback: RetryCallback) -> None:
        try:
            result = callback()
        except Exception as e:  # Intentionally broad: timer callbacks must not kill the loop
            self._logger.error("retry_callback_failed", message_id=message_id, error=str(e))
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(lambda t: self._on_task_done(message_id, t))

    def _on_task_done(self, message_id: str, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("retry_callback_failed", message_id=message_id, error=str(exc))

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def cleanup(self) -> None:
        """Drop breakers idle for 24 hours and cancel every pending timer."""
        cutoff = time.time() - STALE_BREAKER_AGE
        stale = [
            url
            for url, b in self._breakers.items()
            if b.last_failure_at is not None and b.last_failure_at < cutoff
        ]
        for url in stale:
            del self._breakers[url]

        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        for task in list(self._tasks):
            task.cancel()

        if stale:
            self._logger.info("breakers_pruned", count=len(stale))
        self._export_metrics()
