"""Collaborator interfaces consumed by the messaging services.

The engine does not own identity storage, contact lists or the requests
inbox; an embedding application supplies them through these protocols.
In-memory implementations are provided for the CLI and for tests.

Attributes:
    IdentityProvider: Local public key plus the private key while unlocked.
    TrustProvider: Accepted and blocked peers.
    RequestsInbox: Sink for messages from peers that are not yet accepted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable


if TYPE_CHECKING:
    from collections.abc import Iterable

    from nostr_sdk import Keys


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class IdentityProvider(Protocol):
    """Local identity. ``keys`` is ``None`` while the identity is locked."""

    @property
    def public_key(self) -> str: ...

    @property
    def keys(self) -> Keys | None: ...


@runtime_checkable
class TrustProvider(Protocol):
    def is_accepted(self, pubkey: str) -> bool: ...

    def is_blocked(self, pubkey: str) -> bool: ...


@runtime_checkable
class RequestsInbox(Protocol):
    def upsert_incoming(self, sender: str, preview: str, timestamp: int) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class LocalIdentity:
    """Identity backed by ``nostr_sdk.Keys`` held in memory.

    Args:
        keys: Unlocked keys, or ``None`` to start locked.
        public_key: Required when starting locked; ignored otherwise.
    """

    def __init__(self, keys: Keys | None = None, public_key: str | None = None) -> None:
        if keys is None and public_key is None:
            raise ValueError("a locked identity needs its public key")
        self._keys = keys
        self._public_key = keys.public_key().to_hex() if keys is not None else str(public_key)

    @property
    def public_key(self) -> str:
        return self._public_key

    @property
    def keys(self) -> Keys | None:
        return self._keys

    def lock(self) -> None:
        self._keys = None

    def unlock(self, keys: Keys) -> None:
        if keys.public_key().to_hex() != self._public_key:
            raise ValueError("keys do not belong to this identity")
        self._keys = keys


class MemoryTrustProvider:
    """Accepted and blocked sets kept in memory; blocking wins over accepting."""

    def __init__(self, accepted: Iterable[str] = (), blocked: Iterable[str] = ()) -> None:
        self._accepted = set(accepted)
        self._blocked = set(blocked)

    def is_accepted(self, pubkey: str) -> bool:
        return pubkey in self._accepted and pubkey not in self._blocked

    def is_blocked(self, pubkey: str) -> bool:
        return pubkey in self._blocked

    def accept(self, pubkey: str) -> None:
        self._accepted.add(pubkey)
        self._blocked.discard(pubkey)

    def block(self, pubkey: str) -> None:
        self._blocked.add(pubkey)

    def unblock(self, pubkey: str) -> None:
        self._blocked.discard(pubkey)


@dataclass(slots=True)
class RequestEntry:
    """Latest message preview from one unknown sender."""

    sender: str
    preview: str
    timestamp: int
    count: int = 1


class MemoryRequestsInbox:
    """Requests inbox keyed by sender; keeps the newest preview and a message count."""

    def __init__(self) -> None:
        self._entries: dict[str, RequestEntry] = {}

    def upsert_incoming(self, sender: str, preview: str, timestamp: int) -> None:
        entry = self._entries.get(sender)
        if entry is None:
            self._entries[sender] = RequestEntry(sender, preview, timestamp)
            return
        entry.count += 1
        if timestamp >= entry.timestamp:
            entry.preview = preview
            entry.timestamp = timestamp

    def get(self, sender: str) -> RequestEntry | None:
        return self._entries.get(sender)

    def entries(self) -> list[RequestEntry]:
        """Entries ordered newest first."""
        return sorted(self._entries.values(), key=lambda e: e.timestamp, reverse=True)

    def remove(self, sender: str) -> bool:
        return self._entries.pop(sender, None) is not None
