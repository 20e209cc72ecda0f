"""
Pytest configuration and shared fixtures for obscur tests.

Provides:
- Deterministic Nostr keys for three identities (alice, bob, carol)
- A scripted relay pool implementing ``RelayPoolProtocol``
- An in-memory engine context wired to that pool
- Helpers that build signed events and NIP-04 direct messages
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any, Literal

import pytest
from nostr_sdk import Keys


# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from obscur.core.context import EngineConfig, EngineContext
from obscur.core.relay_pool import (
    ERROR_ALL_FAILED,
    ERROR_NO_RELAYS,
    ERROR_OK_TIMEOUT,
    ERROR_RELAY_NOT_CONNECTED,
    MultiRelayPublishResult,
    PublishResult,
    RelayConnectionInfo,
)
from obscur.core.retry import RetryConfig
from obscur.models.constants import ConnectionStatus, EventKind
from obscur.models.event import Event, UnsignedEvent
from obscur.nips import nip01, nip04


ALICE_SECRET = "6b911fd37cdf5c81d4c0adb1ab7fa822ed253ab0ad9aa18d77257c88b29b718e"  # pragma: allowlist secret
BOB_SECRET = "7f7ff03d123792d6ac594bfa67bf6d0c0ab55b6b1fdb6249303fe861f1ccba9a"  # pragma: allowlist secret
CAROL_SECRET = "3a7e5f8c2d9b4e6f1a0c8d7e5b3f2a1c9e8d7b6a5f4e3d2c1b0a9f8e7d6c5b4a"  # pragma: allowlist secret

RELAY_A = "wss://relay-a.example.com"
RELAY_B = "wss://relay-b.example.com"

PublishMode = Literal["ok", "reject", "timeout"]


# ============================================================================
# Logging Configuration
# ============================================================================


@pytest.fixture(scope="session", autouse=True)
def setup_logging() -> None:
    """Configure logging for tests."""
    logging.basicConfig(level=logging.DEBUG)


# ============================================================================
# Keys
# ============================================================================


@pytest.fixture
def alice_keys() -> Keys:
    return Keys.parse(ALICE_SECRET)


@pytest.fixture
def bob_keys() -> Keys:
    return Keys.parse(BOB_SECRET)


@pytest.fixture
def carol_keys() -> Keys:
    return Keys.parse(CAROL_SECRET)


@pytest.fixture
def alice_pubkey(alice_keys: Keys) -> str:
    return alice_keys.public_key().to_hex()


@pytest.fixture
def bob_pubkey(bob_keys: Keys) -> str:
    return bob_keys.public_key().to_hex()


@pytest.fixture
def carol_pubkey(carol_keys: Keys) -> str:
    return carol_keys.public_key().to_hex()


# ============================================================================
# Relay pool double
# ============================================================================


class FakeRelayPool:
    """Scripted relay pool.

    ``responses`` maps a relay URL to how it answers published events;
    relays not listed accept. ``emit()`` delivers a frame to every
    registered handler as if *url* had sent it.
    """

    def __init__(self, urls: tuple[str, ...] = (RELAY_A, RELAY_B)) -> None:
        self.urls = list(urls)
        self.open: set[str] = set(urls)
        self.responses: dict[str, PublishMode] = {}
        self.sent: list[tuple[str, list[Any]]] = []
        self.published: list[tuple[str, Event]] = []
        self._handlers: list[Callable[[str, str], None]] = []

    # -- controls -------------------------------------------------------------

    def go_offline(self) -> None:
        self.open.clear()

    def go_online(self, *urls: str) -> None:
        self.open.update(urls or self.urls)

    def respond(self, mode: PublishMode, *urls: str) -> None:
        for url in urls or self.urls:
            self.responses[url] = mode

    def emit(self, url: str, *frame: Any) -> None:
        text = json.dumps(list(frame))
        for handler in list(self._handlers):
            handler(url, text)

    def frames(self, verb: str) -> list[tuple[str, list[Any]]]:
        return [(url, f) for url, f in self.sent if f and f[0] == verb]

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    # -- RelayPoolProtocol ----------------------------------------------------

    @property
    def connections(self) -> list[RelayConnectionInfo]:
        return [
            RelayConnectionInfo(
                url=u, status=ConnectionStatus.OPEN if u in self.open else ConnectionStatus.CLOSED
            )
            for u in self.urls
        ]

    def open_relay_urls(self) -> list[str]:
        return [u for u in self.urls if u in self.open]

    def send_to_open(self, payload: str) -> int:
        targets = self.open_relay_urls()
        for url in targets:
            self.sent.append((url, json.loads(payload)))
        return len(targets)

    def broadcast_event(self, event: Event) -> int:
        return self.send_to_open(json.dumps(["EVENT", event.to_dict()]))

    def subscribe_to_messages(self, handler: Callable[[str, str], None]) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def publish_to_relay(self, url: str, event: Event) -> PublishResult:
        self.published.append((url, event))
        if url not in self.open:
            return PublishResult(relay_url=url, success=False, error=ERROR_RELAY_NOT_CONNECTED)
        mode = self.responses.get(url, "ok")
        if mode == "ok":
            return PublishResult(relay_url=url, success=True, latency=0.01, acknowledged=True)
        if mode == "reject":
            return PublishResult(
                relay_url=url,
                success=False,
                error="blocked: not allowed",
                latency=0.01,
                acknowledged=True,
            )
        return PublishResult(relay_url=url, success=False, error=ERROR_OK_TIMEOUT)

    async def publish_to_all(self, event: Event) -> MultiRelayPublishResult:
        targets = self.open_relay_urls()
        if not targets:
            return MultiRelayPublishResult(
                success=False,
                success_count=0,
                total_relays=0,
                results=(),
                overall_error=ERROR_NO_RELAYS,
            )
        results = tuple([await self.publish_to_relay(u, event) for u in targets])
        accepted = sum(r.success for r in results)
        failed = len(results) - accepted
        if not accepted:
            overall_error: str | None = ERROR_ALL_FAILED
        elif failed:
            overall_error = f"{failed} of {len(results)} relays failed"
        else:
            overall_error = None
        return MultiRelayPublishResult(
            success=accepted > 0,
            success_count=accepted,
            total_relays=len(results),
            results=results,
            overall_error=overall_error,
        )


@pytest.fixture
def fake_pool() -> FakeRelayPool:
    return FakeRelayPool()


# ============================================================================
# Engine context
# ============================================================================


@pytest.fixture
def engine_config() -> EngineConfig:
    """Two relays, in-memory store, deterministic backoff."""
    return EngineConfig(
        relays=[RELAY_A, RELAY_B],
        retry=RetryConfig(max_retries=3, base_delay=30.0, max_delay=300.0, jitter=0.0),
    )


@pytest.fixture
def engine_context(
    engine_config: EngineConfig, fake_pool: FakeRelayPool, alice_pubkey: str
) -> Iterator[EngineContext]:
    """Context for alice with the fake pool; pending retry timers are cancelled afterwards."""
    context = EngineContext.create(engine_config, alice_pubkey, relay_pool=fake_pool)
    yield context
    context.retry_manager.cleanup()
    context.store.close()


# ============================================================================
# Event helpers
# ============================================================================


def make_signed_event(
    keys: Keys,
    kind: int,
    content: str = "",
    tags: tuple[tuple[str, ...], ...] = (),
    created_at: int = 1_700_000_000,
) -> Event:
    """Sign an event with *keys* through the NIP-01 module."""
    unsigned = UnsignedEvent(
        pubkey=keys.public_key().to_hex(),
        created_at=created_at,
        kind=kind,
        tags=tags,
        content=content,
    )
    return nip01.sign_event(unsigned, keys)


def make_dm(
    sender: Keys,
    recipient_pubkey: str,
    plaintext: str,
    created_at: int = 1_700_000_000,
    extra_tags: tuple[tuple[str, ...], ...] = (),
) -> Event:
    """Build a signed kind-4 event from *sender* to *recipient_pubkey*."""
    ciphertext = nip04.encrypt(plaintext, sender.secret_key().to_hex(), recipient_pubkey)
    return make_signed_event(
        sender,
        EventKind.ENCRYPTED_DM,
        ciphertext,
        (("p", recipient_pubkey), *extra_tags),
        created_at,
    )


def make_unsigned_event(
    pubkey: str,
    kind: int,
    tags: tuple[tuple[str, ...], ...] = (),
    created_at: int = 1_700_000_000,
    content: str = "",
) -> Event:
    """Build an event with a correct id and a placeholder signature.

    For code that folds events without verifying signatures.
    """
    unsigned = UnsignedEvent(
        pubkey=pubkey, created_at=created_at, kind=kind, tags=tags, content=content
    )
    return Event(
        id=unsigned.compute_id(),
        pubkey=pubkey,
        created_at=created_at,
        kind=kind,
        tags=unsigned.tags,
        content=content,
        sig="0" * 128,
    )
