"""
WebSocket relay pool built on aiohttp.

One [RelayConnection][obscur.core.relay_pool.RelayConnection] owns the
socket lifecycle of one relay: connecting, a FIFO writer, a reader that
forwards every text frame, and reconnection with exponential backoff after
an unexpected close. The [RelayPool][obscur.core.relay_pool.RelayPool]
aggregates connections and merges their inbound traffic into one stream of
``(relay_url, text)`` pairs delivered to every registered handler.

Two send styles are offered:

* **Fire-and-forget** --
  [send_to_open()][obscur.core.relay_pool.RelayPool.send_to_open] writes to
  every open connection and returns immediately. Sending with zero open
  connections is a no-op, not an error.
* **Acknowledged** --
  [publish_to_all()][obscur.core.relay_pool.RelayPool.publish_to_all] sends
  an ``EVENT`` and waits for each relay's ``OK`` frame, reporting one
  [PublishResult][obscur.core.relay_pool.PublishResult] per relay.

Overlay relays (Tor, I2P, Lokinet) are reached through the configured
SOCKS5 proxy via ``aiohttp_socks.ProxyConnector``.

Examples:
    ```python
    async with RelayPool(RelayPoolConfig()) as pool:
        await pool.connect(["wss://relay.damus.io", "wss://nos.lol"])
        unsubscribe = pool.subscribe_to_messages(lambda url, text: print(url, text))
        result = await pool.publish_to_all(signed_event)
        unsubscribe()
    ```

See Also:
    [RetryManager][obscur.core.retry.RetryManager]: Circuit breakers
        consulted by ``publish_to_all`` when one is attached.
    [obscur.models.frames][obscur.models.frames]: Frame builders and parser.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from types import TracebackType
from typing import TYPE_CHECKING, Protocol, Self

import aiohttp
from aiohttp_socks import ProxyConnector
from pydantic import BaseModel, Field, ValidationInfo, field_validator

from obscur.models.constants import ConnectionStatus, NetworkType
from obscur.models.frames import OkMessage, event_frame, parse_relay_frame
from obscur.models.relay import Relay

from .logger import Logger
from .metrics import PUBLISH_LATENCY_SECONDS, RELAY_CONNECTIONS


if TYPE_CHECKING:
    from obscur.models.event import Event

    from .retry import RetryManager


MessageHandler = Callable[[str, str], None]

ERROR_RELAY_NOT_FOUND = "relay not found"
ERROR_RELAY_NOT_CONNECTED = "relay not connected"
ERROR_OK_TIMEOUT = "timeout waiting for OK"
ERROR_ALL_FAILED = "all relays failed to accept the message"
ERROR_NO_RELAYS = "no relays available"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RelayPoolConfig(BaseModel):
    """Timeouts, reconnection policy, and proxy settings for the relay pool."""

    connect_timeout: float = Field(default=10.0, gt=0.0, description="WebSocket handshake timeout")
    publish_timeout: float = Field(default=5.0, gt=0.0, description="Seconds to wait for OK")
    heartbeat: float | None = Field(default=30.0, gt=0.0, description="WebSocket ping interval")
    reconnect_initial_delay: float = Field(default=1.0, gt=0.0, description="First reconnect delay")
    reconnect_max_delay: float = Field(default=60.0, gt=0.0, description="Reconnect delay cap")
    max_reconnect_attempts: int = Field(
        default=0, ge=0, description="Give up after this many attempts (0 = unlimited)"
    )
    proxy_url: str | None = Field(
        default=None, description="SOCKS5 proxy for overlay relays (e.g. socks5://tor:9050)"
    )

    @field_validator("reconnect_max_delay")
    @classmethod
    def validate_max_delay(cls, v: float, info: ValidationInfo) -> float:
        """Ensure reconnect_max_delay >= reconnect_initial_delay."""
        initial = info.data.get("reconnect_initial_delay", 1.0)
        if v < initial:
            raise ValueError(
                f"reconnect_max_delay ({v}) must be >= reconnect_initial_delay ({initial})"
            )
        return v


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RelayConnectionInfo:
    """Read-only snapshot of one connection."""

    url: str
    status: ConnectionStatus


@dataclass(frozen=True, slots=True)
class PublishResult:
    """Outcome of publishing one event to one relay.

    Attributes:
        acknowledged: True if the relay answered with an ``OK`` frame,
            whether it accepted the event or not. False for timeouts and
            unreachable relays.
    """

    relay_url: str
    success: bool
    error: str | None = None
    latency: float | None = None
    acknowledged: bool = False


@dataclass(frozen=True, slots=True)
class MultiRelayPublishResult:
    """Aggregate outcome of [publish_to_all()][obscur.core.relay_pool.RelayPool.publish_to_all]."""

    success: bool
    success_count: int
    total_relays: int
    results: tuple[PublishResult, ...]
    overall_error: str | None = None


# ---------------------------------------------------------------------------
# Capability interface
# ---------------------------------------------------------------------------


class RelayPoolProtocol(Protocol):
    """What the services need from a relay pool; test doubles implement it too."""

    @property
    def connections(self) -> list[RelayConnectionInfo]: ...

    def open_relay_urls(self) -> list[str]: ...

    def send_to_open(self, payload: str) -> int: ...

    def broadcast_event(self, event: Event) -> int: ...

    def subscribe_to_messages(self, handler: MessageHandler) -> Callable[[], None]: ...

    async def publish_to_relay(self, url: str, event: Event) -> PublishResult: ...

    async def publish_to_all(self, event: Event) -> MultiRelayPublishResult: ...


# ---------------------------------------------------------------------------
# Single connection
# ---------------------------------------------------------------------------


class RelayConnection:
    """One WebSocket connection to one relay, reconnecting on unexpected close.

    Args:
        relay: Normalized relay endpoint.
        config: Pool configuration (timeouts, backoff, proxy).
        on_message: Called with ``(url, text)`` for every inbound text frame,
            in the order the frames were received.
        on_status: Called with ``(url, status)`` on every status change.
    """

    def __init__(
        self,
        relay: Relay,
        config: RelayPoolConfig,
        on_message: MessageHandler,
        on_status: Callable[[str, ConnectionStatus], None] | None = None,
    ) -> None:
        self._relay = relay
        self._config = config
        self._on_message = on_message
        self._on_status = on_status
        self._status = ConnectionStatus.CLOSED
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._first_attempt = asyncio.Event()
        self._closing = asyncio.Event()
        self._logger = Logger("relay_pool").bind(relay=relay.url)

    @property
    def url(self) -> str:
        return self._relay.url

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_open(self) -> bool:
        return self._status == ConnectionStatus.OPEN

    async def connect(self) -> bool:
        """Start the connection loop and wait for the first attempt to finish.

        Returns:
            True if the connection is open after the first attempt. A failed
            first attempt keeps reconnecting in the background.
        """
        if self._task is None or self._task.done():
            self._closing.clear()
            self._first_attempt.clear()
            self._task = asyncio.create_task(self._run(), name=f"relay:{self.url}")
        await self._first_attempt.wait()
        return self.is_open

    def send(self, text: str) -> bool:
        """Queue *text* for sending; return False if the connection is not open."""
        if not self.is_open:
            return False
        self._outbox.put_nowait(text)
        return True

    async def close(self) -> None:
        """Close the socket and stop reconnecting."""
        self._closing.set()
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._drain_outbox()
        self._set_status(ConnectionStatus.CLOSED)

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        self._status = status
        if self._on_status is not None:
            self._on_status(self.url, status)

    def _drain_outbox(self) -> None:
        while not self._outbox.empty():
            self._outbox.get_nowait()

    def _make_connector(self) -> aiohttp.BaseConnector:
        is_overlay = self._relay.network in (NetworkType.TOR, NetworkType.I2P, NetworkType.LOKI)
        if is_overlay and self._config.proxy_url:
            return ProxyConnector.from_url(self._config.proxy_url)
        return aiohttp.TCPConnector()

    def _reconnect_delay(self, attempt: int) -> float:
        delay = self._config.reconnect_initial_delay * (2 ** min(attempt, 32))
        return min(delay, self._config.reconnect_max_delay)

    async def _run(self) -> None:
        attempt = 0
        while not self._closing.is_set():
            self._set_status(ConnectionStatus.CONNECTING)
            opened = False
            try:
                opened = await self._session_once()
                self._set_status(ConnectionStatus.CLOSED)
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, TimeoutError, OSError) as e:
                self._logger.warning("relay_connection_error", error=str(e), attempt=attempt)
                self._set_status(ConnectionStatus.ERROR)
            finally:
                self._ws = None
                self._drain_outbox()
                self._first_attempt.set()

            if self._closing.is_set():
                break

            attempt = 0 if opened else attempt + 1
            if 0 < self._config.max_reconnect_attempts <= attempt:
                self._logger.error("relay_reconnect_exhausted", attempts=attempt)
                break

            delay = self._reconnect_delay(attempt)
            self._logger.debug("relay_reconnect_scheduled", delay_s=delay, attempt=attempt)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._closing.wait(), timeout=delay)

    async def _session_once(self) -> bool:
        """Run one connect/read cycle; return True if the socket was opened."""
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._config.connect_timeout)
        async with aiohttp.ClientSession(
            connector=self._make_connector(), timeout=timeout
        ) as session:
            ws = await asyncio.wait_for(
                session.ws_connect(self.url, heartbeat=self._config.heartbeat),
                timeout=self._config.connect_timeout,
            )
            self._ws = ws
            self._set_status(ConnectionStatus.OPEN)
            self._first_attempt.set()
            self._logger.info("relay_connected")

            writer = asyncio.create_task(self._write_loop(ws))
            try:
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        self._on_message(self.url, msg.data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        self._logger.warning("relay_ws_error", error=str(ws.exception()))
                        break
            finally:
                writer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await writer
                if not ws.closed:
                    await ws.close()
                self._logger.info("relay_disconnected", close_code=ws.close_code)
            return True

    async def _write_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while True:
            text = await self._outbox.get()
            try:
                await ws.send_str(text)
            except (aiohttp.ClientError, ConnectionResetError) as e:
                self._logger.warning("relay_send_failed", error=str(e))
                return


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


class RelayPool:
    """Set of relay connections with merged inbound traffic.

    Args:
        config: Pool configuration.
        retry_manager: Optional circuit breaker registry. When given,
            [publish_to_all()][obscur.core.relay_pool.RelayPool.publish_to_all]
            skips relays it reports unavailable and records every outcome.
    """

    def __init__(
        self,
        config: RelayPoolConfig | None = None,
        *,
        retry_manager: RetryManager | None = None,
    ) -> None:
        self._config = config or RelayPoolConfig()
        self._retry_manager = retry_manager
        self._connections: dict[str, RelayConnection] = {}
        self._handlers: list[MessageHandler] = []
        self._pending_oks: dict[tuple[str, str], asyncio.Future[OkMessage]] = {}
        self._logger = Logger("relay_pool")

    @property
    def config(self) -> RelayPoolConfig:
        return self._config

    @property
    def connections(self) -> list[RelayConnectionInfo]:
        """Snapshot of ``(url, status)`` for every connection."""
        return [RelayConnectionInfo(url=c.url, status=c.status) for c in self._connections.values()]

    def open_relay_urls(self) -> list[str]:
        return [url for url, c in self._connections.items() if c.is_open]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self, urls: Iterable[str]) -> None:
        """Open one connection per URL and close connections no longer listed.

        Invalid URLs are logged and skipped. Returns once every new
        connection has made its first attempt.
        """
        wanted: dict[str, Relay] = {}
        for raw in urls:
            try:
                relay = Relay(raw)
            except ValueError as e:
                self._logger.warning("relay_url_invalid", url=raw, error=str(e))
                continue
            wanted[relay.url] = relay

        stale = [url for url in self._connections if url not in wanted]
        for url in stale:
            await self._connections.pop(url).close()

        new = []
        for url, relay in wanted.items():
            if url not in self._connections:
                conn = RelayConnection(relay, self._config, self._dispatch, self._on_status)
                self._connections[url] = conn
                new.append(conn)

        if new:
            results = await asyncio.gather(*(c.connect() for c in new))
            self._logger.info(
                "relays_connected", opened=sum(results), attempted=len(new),
                total=len(self._connections),
            )

    async def close(self) -> None:
        """Close every connection and fail pending publishes."""
        connections = list(self._connections.values())
        self._connections.clear()
        await asyncio.gather(*(c.close() for c in connections), return_exceptions=True)
        for fut in self._pending_oks.values():
            if not fut.done():
                fut.cancel()
        self._pending_oks.clear()
        self._export_metrics()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Fire-and-forget
    # -------------------------------------------------------------------------

    def send_to_open(self, payload: str) -> int:
        """Write *payload* to every open connection; return how many took it."""
        return sum(c.send(payload) for c in self._connections.values())

    def broadcast_event(self, event: Event) -> int:
        """Send ``["EVENT", event]`` to every open connection without waiting for OK."""
        return self.send_to_open(event_frame(event))

    def subscribe_to_messages(self, handler: MessageHandler) -> Callable[[], None]:
        """Register *handler* for every inbound frame; return an unsubscribe callable."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._handlers.remove(handler)

        return unsubscribe

    # -------------------------------------------------------------------------
    # Acknowledged publish
    # -------------------------------------------------------------------------

    async def publish_to_relay(self, url: str, event: Event) -> PublishResult:
        """Send *event* to one relay and wait for its ``OK`` frame."""
        try:
            key_url = Relay(url).url
        except ValueError:
            key_url = url
        conn = self._connections.get(key_url)
        if conn is None:
            return PublishResult(relay_url=url, success=False, error=ERROR_RELAY_NOT_FOUND)
        if not conn.is_open:
            return PublishResult(relay_url=key_url, success=False, error=ERROR_RELAY_NOT_CONNECTED)

        key = (key_url, event.id)
        fut = self._pending_oks.get(key)
        if fut is None or fut.done():
            fut = asyncio.get_running_loop().create_future()
            self._pending_oks[key] = fut

        start = time.monotonic()
        if not conn.send(event_frame(event)):
            self._forget_pending(key, fut)
            return PublishResult(relay_url=key_url, success=False, error=ERROR_RELAY_NOT_CONNECTED)

        try:
            ok = await asyncio.wait_for(asyncio.shield(fut), timeout=self._config.publish_timeout)
        except TimeoutError:
            self._forget_pending(key, fut)
            return PublishResult(relay_url=key_url, success=False, error=ERROR_OK_TIMEOUT)

        self._forget_pending(key, fut)
        latency = time.monotonic() - start
        if ok.accepted:
            PUBLISH_LATENCY_SECONDS.observe(latency)
            return PublishResult(
                relay_url=key_url, success=True, latency=latency, acknowledged=True
            )
        return PublishResult(
            relay_url=key_url,
            success=False,
            error=ok.message or "rejected",
            latency=latency,
            acknowledged=True,
        )

    async def publish_to_all(self, event: Event) -> MultiRelayPublishResult:
        """Publish *event* to every open relay concurrently.

        Successful when at least one relay accepted the event.
        """
        targets = self.open_relay_urls()
        if self._retry_manager is not None:
            targets = self._retry_manager.get_available_relays(targets)

        if not targets:
            return MultiRelayPublishResult(
                success=False, success_count=0, total_relays=0, results=(),
                overall_error=ERROR_NO_RELAYS,
            )

        results = tuple(await asyncio.gather(*(self.publish_to_relay(u, event) for u in targets)))

        if self._retry_manager is not None:
            for r in results:
                if r.success:
                    self._retry_manager.record_relay_success(r.relay_url)
                else:
                    self._retry_manager.record_relay_failure(r.relay_url, r.error)

        success_count = sum(r.success for r in results)
        failed = len(results) - success_count
        if success_count == 0:
            overall_error: str | None = ERROR_ALL_FAILED
        elif failed:
            overall_error = f"{failed} of {len(results)} relays failed"
        else:
            overall_error = None

        self._logger.debug(
            "event_published", event_id=event.id, accepted=success_count, total=len(results)
        )
        return MultiRelayPublishResult(
            success=success_count > 0,
            success_count=success_count,
            total_relays=len(results),
            results=results,
            overall_error=overall_error,
        )

    def _forget_pending(self, key: tuple[str, str], fut: asyncio.Future[OkMessage]) -> None:
        if self._pending_oks.get(key) is fut:
            del self._pending_oks[key]

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    def _dispatch(self, url: str, text: str) -> None:
        if self._pending_oks:
            frame = parse_relay_frame(text)
            if isinstance(frame, OkMessage):
                fut = self._pending_oks.get((url, frame.event_id))
                if fut is not None and not fut.done():
                    fut.set_result(frame)

        for handler in list(self._handlers):
            try:
                handler(url, text)
            except Exception as e:  # Intentionally broad: one bad handler must not starve others
                self._logger.error("message_handler_failed", relay=url, error=str(e))

    def _on_status(self, url: str, status: ConnectionStatus) -> None:
        self._logger.debug("relay_status_changed", relay=url, status=status.value)
        self._export_metrics()

    def _export_metrics(self) -> None:
        counts = dict.fromkeys(ConnectionStatus, 0)
        for c in self._connections.values():
            counts[c.status] += 1
        for status, count in counts.items():
            RELAY_CONNECTIONS.labels(status=status.value).set(count)
