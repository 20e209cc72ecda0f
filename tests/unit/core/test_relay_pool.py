"""
Unit tests for core.relay_pool module.

Tests:
- RelayPoolConfig validation
- Connection lifecycle against a local aiohttp WebSocket relay
- Fire-and-forget sends and merged inbound dispatch
- publish_to_relay() OK handling: accept, reject, timeout, unknown relay
- publish_to_all() aggregation and circuit breaker integration
"""

import asyncio
import json

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer as AppServer
from pydantic import ValidationError

from obscur.core.relay_pool import (
    ERROR_ALL_FAILED,
    ERROR_NO_RELAYS,
    ERROR_OK_TIMEOUT,
    ERROR_RELAY_NOT_FOUND,
    RelayPool,
    RelayPoolConfig,
)
from obscur.core.retry import CircuitBreakerConfig, RetryManager
from obscur.models.constants import CircuitState, ConnectionStatus

from tests.conftest import make_unsigned_event


class ScriptedRelay:
    """Local WebSocket relay answering EVENT frames according to ``mode``."""

    def __init__(self, mode: str = "ok") -> None:
        self.mode = mode
        self.received: list[list] = []
        self.sockets: list[web.WebSocketResponse] = []
        self.server: AppServer | None = None

    @property
    def url(self) -> str:
        assert self.server is not None
        return f"ws://127.0.0.1:{self.server.port}"

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/", self._handle)
        self.server = AppServer(app, host="127.0.0.1")
        await self.server.start_server()

    async def stop(self) -> None:
        if self.server is not None:
            await self.server.close()

    async def broadcast(self, frame: list) -> None:
        for ws in self.sockets:
            await ws.send_str(json.dumps(frame))

    async def _handle(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.sockets.append(ws)
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            frame = json.loads(msg.data)
            self.received.append(frame)
            if frame[0] == "EVENT":
                event_id = frame[1]["id"]
                if self.mode == "ok":
                    await ws.send_str(json.dumps(["OK", event_id, True, ""]))
                elif self.mode == "reject":
                    await ws.send_str(json.dumps(["OK", event_id, False, "blocked: spam"]))
            elif frame[0] == "REQ":
                await ws.send_str(json.dumps(["EOSE", frame[1]]))
        return ws


@pytest.fixture
async def relay():
    r = ScriptedRelay()
    await r.start()
    yield r
    await r.stop()


@pytest.fixture
async def second_relay():
    r = ScriptedRelay()
    await r.start()
    yield r
    await r.stop()


@pytest.fixture
def config():
    return RelayPoolConfig(
        connect_timeout=2.0,
        publish_timeout=0.3,
        reconnect_initial_delay=0.05,
        reconnect_max_delay=0.1,
    )


async def _until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def _event(n: int = 0):
    return make_unsigned_event("a" * 64, 1, created_at=1_700_000_000 + n, content=f"n{n}")


# ============================================================================
# Configuration
# ============================================================================


class TestRelayPoolConfig:
    """RelayPoolConfig."""

    def test_defaults(self):
        config = RelayPoolConfig()
        assert config.publish_timeout == 5.0
        assert config.max_reconnect_attempts == 0
        assert config.proxy_url is None

    def test_max_delay_below_initial(self):
        with pytest.raises(ValidationError, match="reconnect_max_delay"):
            RelayPoolConfig(reconnect_initial_delay=5.0, reconnect_max_delay=1.0)


# ============================================================================
# Connections
# ============================================================================


class TestConnect:
    """connect() / close()."""

    async def test_opens_connection(self, relay, config):
        async with RelayPool(config) as pool:
            await pool.connect([relay.url])
            assert pool.open_relay_urls() == [relay.url]
            assert pool.connections[0].status == ConnectionStatus.OPEN
        assert pool.connections == []

    async def test_invalid_urls_skipped(self, relay, config):
        async with RelayPool(config) as pool:
            await pool.connect(["https://nope.example.com", relay.url])
            assert pool.open_relay_urls() == [relay.url]

    async def test_unreachable_relay_is_not_open(self, config):
        async with RelayPool(config.model_copy(update={"max_reconnect_attempts": 1})) as pool:
            await pool.connect(["ws://127.0.0.1:9"])
            assert pool.open_relay_urls() == []
            assert pool.connections[0].status in (ConnectionStatus.ERROR, ConnectionStatus.CLOSED)

    async def test_reconnect_replaces_stale(self, relay, second_relay, config):
        async with RelayPool(config) as pool:
            await pool.connect([relay.url])
            await pool.connect([second_relay.url])
            assert [c.url for c in pool.connections] == [second_relay.url]

    async def test_reconnects_after_server_close(self, relay, config):
        async with RelayPool(config) as pool:
            await pool.connect([relay.url])
            await relay.sockets[0].close()
            await _until(lambda: len(relay.sockets) == 2 and pool.open_relay_urls())


class TestMessaging:
    """send_to_open(), subscribe_to_messages()."""

    async def test_send_and_dispatch(self, relay, config):
        frames = []
        async with RelayPool(config) as pool:
            await pool.connect([relay.url])
            pool.subscribe_to_messages(lambda url, text: frames.append((url, json.loads(text))))
            assert pool.send_to_open('["REQ","s1",{}]') == 1
            await _until(lambda: frames)
        assert frames == [(relay.url, ["EOSE", "s1"])]
        assert relay.received == [["REQ", "s1", {}]]

    async def test_send_with_no_connections(self, config):
        pool = RelayPool(config)
        assert pool.send_to_open('["CLOSE","x"]') == 0

    async def test_unsubscribe(self, relay, config):
        frames = []
        async with RelayPool(config) as pool:
            await pool.connect([relay.url])
            unsubscribe = pool.subscribe_to_messages(lambda url, text: frames.append(text))
            unsubscribe()
            unsubscribe()
            pool.send_to_open('["REQ","s1",{}]')
            await _until(lambda: relay.received)
            await asyncio.sleep(0.05)
        assert frames == []

    async def test_failing_handler_does_not_block_others(self, relay, config):
        frames = []

        def broken(url, text):
            raise RuntimeError("bad handler")

        async with RelayPool(config) as pool:
            await pool.connect([relay.url])
            pool.subscribe_to_messages(broken)
            pool.subscribe_to_messages(lambda url, text: frames.append(text))
            await relay.broadcast(["NOTICE", "hello"])
            await _until(lambda: frames)

    async def test_broadcast_event(self, relay, config):
        event = _event()
        async with RelayPool(config) as pool:
            await pool.connect([relay.url])
            assert pool.broadcast_event(event) == 1
            await _until(lambda: relay.received)
        assert relay.received[0] == ["EVENT", event.to_dict()]


# ============================================================================
# Acknowledged publish
# ============================================================================


class TestPublishToRelay:
    """publish_to_relay()."""

    async def test_accepted(self, relay, config):
        async with RelayPool(config) as pool:
            await pool.connect([relay.url])
            result = await pool.publish_to_relay(relay.url, _event())
        assert result.success
        assert result.acknowledged
        assert result.latency is not None

    async def test_rejected(self, relay, config):
        relay.mode = "reject"
        async with RelayPool(config) as pool:
            await pool.connect([relay.url])
            result = await pool.publish_to_relay(relay.url, _event())
        assert not result.success
        assert result.acknowledged
        assert result.error == "blocked: spam"

    async def test_timeout(self, relay, config):
        relay.mode = "silent"
        async with RelayPool(config) as pool:
            await pool.connect([relay.url])
            result = await pool.publish_to_relay(relay.url, _event())
        assert not result.success
        assert not result.acknowledged
        assert result.error == ERROR_OK_TIMEOUT

    async def test_unknown_relay(self, config):
        result = await RelayPool(config).publish_to_relay("wss://x.example.com", _event())
        assert result.error == ERROR_RELAY_NOT_FOUND


class TestPublishToAll:
    """publish_to_all()."""

    async def test_no_relays(self, config):
        result = await RelayPool(config).publish_to_all(_event())
        assert not result.success
        assert result.total_relays == 0
        assert result.overall_error == ERROR_NO_RELAYS

    async def test_partial_success(self, relay, second_relay, config):
        second_relay.mode = "reject"
        async with RelayPool(config) as pool:
            await pool.connect([relay.url, second_relay.url])
            result = await pool.publish_to_all(_event())
        assert result.success
        assert result.success_count == 1
        assert result.total_relays == 2
        assert result.overall_error == "1 of 2 relays failed"

    async def test_all_failed(self, relay, config):
        relay.mode = "reject"
        async with RelayPool(config) as pool:
            await pool.connect([relay.url])
            result = await pool.publish_to_all(_event())
        assert not result.success
        assert result.overall_error == ERROR_ALL_FAILED

    async def test_breakers_record_outcomes_and_skip_open_relays(self, relay, config):
        relay.mode = "reject"
        manager = RetryManager(circuit_breaker=CircuitBreakerConfig(failure_threshold=2))
        async with RelayPool(config, retry_manager=manager) as pool:
            await pool.connect([relay.url])
            await pool.publish_to_all(_event(1))
            await pool.publish_to_all(_event(2))
            assert manager.get_circuit_breaker_status()[relay.url].state == CircuitState.OPEN
            sent_before = len(relay.received)
            result = await pool.publish_to_all(_event(3))
        assert result.overall_error == ERROR_NO_RELAYS
        assert len(relay.received) == sent_before
