"""
Durable, per-identity message store with encryption at rest.

The [MessageStore][obscur.core.store.MessageStore] persists
[Message][obscur.models.message.Message] records, a per-conversation index
and the offline queue on top of a small key-value
[StorageBackend][obscur.core.store.StorageBackend]. Two embedded backends
ship with the engine: [MemoryBackend][obscur.core.store.MemoryBackend] for
tests and ephemeral sessions and [SqliteBackend][obscur.core.store.SqliteBackend]
for on-disk persistence.

Keys are namespaced by the owning identity:

```text
obscur:{pubkey}:msg:{message_id}        metadata + encrypted blob
obscur:{pubkey}:conv:{conversation_id}  [[message_id, timestamp], ...] oldest first
obscur:{pubkey}:queue:{message_id}      encrypted OutgoingMessage
```

Sensitive fields (content, ciphertext, attachment, reply, reactions) are
sealed with AES-256-GCM under ``SHA-256(pubkey hex)`` and a random 12-byte
IV; the stored blob is ``base64(iv || ciphertext)``. Metadata stays in
plaintext so the index can be maintained without decrypting anything.

Every write is idempotent: persisting the same id again overwrites the
record and keeps a single index entry. Index updates and the record writes
or evictions they imply go through one
[write_batch()][obscur.core.store.StorageBackend.write_batch] call, so a
crash never leaves dangling index entries.
"""

from __future__ import annotations

import base64
import bisect
import hashlib
import json
import os
import sqlite3
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel, Field

from obscur.models.constants import MessageStatus, is_valid_transition
from obscur.models.message import Message, OutgoingMessage

from .exceptions import CryptoError, StorageError
from .logger import Logger


_KEY_ROOT = "obscur"
_IV_LENGTH = 12


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class StoreConfig(BaseModel):
    """Backend selection and retention limits for the message store."""

    backend: Literal["memory", "sqlite"] = Field(default="memory", description="Storage backend")
    path: str = Field(default="obscur.db", min_length=1, description="SQLite database file")
    max_messages_per_conversation: int = Field(
        default=500, ge=1, description="Oldest messages beyond this count are evicted"
    )
    max_message_age: int = Field(
        default=0,
        ge=0,
        description="Seconds after which housekeeping deletes a message; 0 keeps messages forever",
    )


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class StorageBackend(ABC):
    """Minimal string key-value store."""

    @abstractmethod
    def get(self, key: str) -> str | None: ...

    @abstractmethod
    def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def keys(self, prefix: str) -> list[str]:
        """Return every key starting with *prefix*, sorted."""

    @abstractmethod
    def write_batch(self, sets: Mapping[str, str], deletes: Iterable[str] = ()) -> None:
        """Apply *sets* and *deletes* atomically."""

    def close(self) -> None:  # noqa: B027
        """Release backend resources. No-op by default."""


class MemoryBackend(StorageBackend):
    """Dictionary-backed storage; contents vanish with the process."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str) -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

    def write_batch(self, sets: Mapping[str, str], deletes: Iterable[str] = ()) -> None:
        for key in deletes:
            self._data.pop(key, None)
        self._data.update(sets)


class SqliteBackend(StorageBackend):
    """Single-table SQLite storage (``kv(key TEXT PRIMARY KEY, value TEXT)``).

    Raises:
        StorageError: Wrapping any ``sqlite3.Error``.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = str(path)
        try:
            self._conn = sqlite3.connect(self._path)
            with self._conn:
                self._conn.execute(
                    "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
                )
        except sqlite3.Error as e:
            raise StorageError(f"cannot open sqlite store {self._path}: {e}") from e

    def get(self, key: str) -> str | None:
        try:
            row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"sqlite read failed: {e}") from e
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        self.write_batch({key: value})

    def delete(self, key: str) -> None:
        self.write_batch({}, (key,))

    def keys(self, prefix: str) -> list[str]:
        upper = prefix[:-1] + chr(ord(prefix[-1]) + 1) if prefix else "\U0010ffff"
        try:
            rows = self._conn.execute(
                "SELECT key FROM kv WHERE key >= ? AND key < ? ORDER BY key", (prefix, upper)
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"sqlite scan failed: {e}") from e
        return [r[0] for r in rows]

    def write_batch(self, sets: Mapping[str, str], deletes: Iterable[str] = ()) -> None:
        try:
            with self._conn:
                self._conn.executemany("DELETE FROM kv WHERE key = ?", [(k,) for k in deletes])
                self._conn.executemany(
                    "INSERT INTO kv (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    list(sets.items()),
                )
        except sqlite3.Error as e:
            raise StorageError(f"sqlite write failed: {e}") from e

    def close(self) -> None:
        self._conn.close()


def create_backend(config: StoreConfig) -> StorageBackend:
    """Instantiate the backend named by *config*."""
    if config.backend == "sqlite":
        return SqliteBackend(config.path)
    return MemoryBackend()


# ---------------------------------------------------------------------------
# Encryption at rest
# ---------------------------------------------------------------------------


class AtRestCipher:
    """AES-256-GCM sealing keyed by ``SHA-256(pubkey)``."""

    def __init__(self, pubkey: str) -> None:
        self._aead = AESGCM(hashlib.sha256(pubkey.encode("utf-8")).digest())

    def seal(self, plaintext: str) -> str:
        iv = os.urandom(_IV_LENGTH)
        ct = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        return base64.b64encode(iv + ct).decode("ascii")

    def open(self, blob: str) -> str:
        """Decrypt a sealed blob.

        Raises:
            CryptoError: If the blob is not base64, is truncated, or fails
                authentication.
        """
        try:
            raw = base64.b64decode(blob, validate=True)
        except ValueError as e:
            raise CryptoError("sealed blob is not valid base64") from e
        if len(raw) <= _IV_LENGTH:
            raise CryptoError("sealed blob is truncated")
        try:
            return self._aead.decrypt(raw[:_IV_LENGTH], raw[_IV_LENGTH:], None).decode("utf-8")
        except (InvalidTag, UnicodeDecodeError) as e:
            raise CryptoError("sealed blob failed authentication") from e


# ---------------------------------------------------------------------------
# Message store
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StorageUsage:
    """Aggregate counters for observability."""

    total_messages: int
    total_size_bytes: int
    oldest_message: int | None
    newest_message: int | None


IndexEntry = tuple[str, int]


class MessageStore:
    """Persisted messages, conversation index, and offline queue for one identity.

    Args:
        pubkey: Hex public key of the owning identity. Namespaces every key
            and derives the at-rest encryption key.
        backend: Key-value backend. Defaults to an in-memory one.
        config: Retention settings.
    """

    def __init__(
        self,
        pubkey: str,
        backend: StorageBackend | None = None,
        config: StoreConfig | None = None,
    ) -> None:
        self._pubkey = pubkey
        self._backend = backend if backend is not None else MemoryBackend()
        self._config = config or StoreConfig()
        self._cipher = AtRestCipher(pubkey)
        self._prefix = f"{_KEY_ROOT}:{pubkey}:"
        self._logger = Logger("store")

    @property
    def pubkey(self) -> str:
        return self._pubkey

    def close(self) -> None:
        self._backend.close()

    # -------------------------------------------------------------------------
    # Keys and codecs
    # -------------------------------------------------------------------------

    def _msg_key(self, message_id: str) -> str:
        return f"{self._prefix}msg:{message_id}"

    def _conv_key(self, conversation_id: str) -> str:
        return f"{self._prefix}conv:{conversation_id}"

    def _queue_key(self, message_id: str) -> str:
        return f"{self._prefix}queue:{message_id}"

    def _encode_message(self, message: Message) -> str:
        blob = self._cipher.seal(json.dumps(message.sensitive_fields(), ensure_ascii=False))
        return json.dumps({"meta": message.metadata_fields(), "blob": blob})

    def _read_record(self, message_id: str) -> dict[str, Any] | None:
        raw = self._backend.get(self._msg_key(message_id))
        if raw is None:
            return None
        try:
            record = json.loads(raw)
        except ValueError:
            self._logger.error("record_corrupt", message_id=message_id)
            return None
        return record if isinstance(record, dict) else None

    def _load_index(self, conversation_id: str) -> list[IndexEntry]:
        raw = self._backend.get(self._conv_key(conversation_id))
        if raw is None:
            return []
        return [(str(mid), int(ts)) for mid, ts in json.loads(raw)]

    @staticmethod
    def _dump_index(index: list[IndexEntry]) -> str:
        return json.dumps([[mid, ts] for mid, ts in index])

    @staticmethod
    def _sort_key(entry: IndexEntry) -> tuple[int, str]:
        return (entry[1], entry[0])

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def persist_message(self, message: Message) -> list[str]:
        """Write *message* and update its conversation index.

        Returns:
            Ids evicted from the conversation to respect the retention cap.
        """
        cid = message.conversation_id
        index = [e for e in self._load_index(cid) if e[0] != message.id]
        entry = (message.id, message.timestamp)
        keys = [self._sort_key(e) for e in index]
        index.insert(bisect.bisect_right(keys, self._sort_key(entry)), entry)

        cap = self._config.max_messages_per_conversation
        evicted: list[str] = []
        if len(index) > cap:
            evicted = [mid for mid, _ in index[: len(index) - cap]]
            index = index[len(index) - cap :]

        sets = {self._conv_key(cid): self._dump_index(index)}
        if message.id not in evicted:
            sets[self._msg_key(message.id)] = self._encode_message(message)
        self._backend.write_batch(sets, [self._msg_key(mid) for mid in evicted])

        if evicted:
            self._logger.debug("messages_evicted", conversation=cid, count=len(evicted))
        return evicted

    def get_message(self, message_id: str) -> Message | None:
        """Load and decrypt one message; ``None`` if missing or unreadable."""
        record = self._read_record(message_id)
        if record is None:
            return None
        try:
            sensitive = json.loads(self._cipher.open(record["blob"]))
            return Message.from_parts(record["meta"], sensitive)
        except (CryptoError, KeyError, ValueError, TypeError) as e:
            self._logger.error("message_unreadable", message_id=message_id, error=str(e))
            return None

    def has_message(self, message_id: str) -> bool:
        """Whether a record exists for *message_id*, without decrypting it."""
        return self._backend.get(self._msg_key(message_id)) is not None

    def update_message_status(self, message_id: str, status: MessageStatus) -> bool:
        """Move a message to *status* if the transition is allowed.

        Returns:
            True if the stored status is now *status*.
        """
        record = self._read_record(message_id)
        if record is None:
            return False
        current = MessageStatus(record["meta"]["status"])
        status = MessageStatus(status)
        if not is_valid_transition(current, status):
            self._logger.warning(
                "status_transition_refused",
                message_id=message_id,
                current=current.value,
                requested=status.value,
            )
            return False
        record["meta"]["status"] = status.value
        self._backend.set(self._msg_key(message_id), json.dumps(record))
        return True

    def get_messages(
        self,
        conversation_id: str,
        *,
        limit: int | None = 50,
        offset: int = 0,
        before: int | None = None,
        after: int | None = None,
    ) -> list[Message]:
        """Return messages newest first, filtered by timestamp and then sliced.

        Args:
            before: Only messages with ``timestamp < before``.
            after: Only messages with ``timestamp > after``.
        """
        entries = list(reversed(self._load_index(conversation_id)))
        if before is not None:
            entries = [e for e in entries if e[1] < before]
        if after is not None:
            entries = [e for e in entries if e[1] > after]
        end = None if limit is None else offset + limit
        messages = []
        for mid, _ in entries[offset:end]:
            msg = self.get_message(mid)
            if msg is not None:
                messages.append(msg)
        return messages

    def delete_message(self, message_id: str) -> bool:
        record = self._read_record(message_id)
        if record is None:
            return False
        cid = record["meta"]["conversation_id"]
        index = [e for e in self._load_index(cid) if e[0] != message_id]
        self._backend.write_batch(
            {self._conv_key(cid): self._dump_index(index)}, [self._msg_key(message_id)]
        )
        return True

    def delete_conversation(self, conversation_id: str) -> list[str]:
        """Remove a conversation, its messages, and their queue entries.

        Returns:
            Ids of the removed messages.
        """
        ids = [mid for mid, _ in self._load_index(conversation_id)]
        queued = [q.id for q in self.get_all_queued_messages() if q.conversation_id == conversation_id]
        deletes = [self._conv_key(conversation_id)]
        deletes += [self._msg_key(mid) for mid in ids]
        deletes += [self._queue_key(mid) for mid in queued]
        self._backend.write_batch({}, deletes)
        self._logger.info("conversation_deleted", conversation=conversation_id, messages=len(ids))
        return sorted(set(ids) | set(queued))

    def get_conversation_ids(self) -> list[str]:
        conv_prefix = f"{self._prefix}conv:"
        return [k[len(conv_prefix) :] for k in self._backend.keys(conv_prefix)]

    def get_last_message_timestamp(self, conversation_id: str | None = None) -> int | None:
        """Newest message timestamp in one conversation, or across all of them."""
        cids = [conversation_id] if conversation_id is not None else self.get_conversation_ids()
        latest: int | None = None
        for cid in cids:
            index = self._load_index(cid)
            if index and (latest is None or index[-1][1] > latest):
                latest = index[-1][1]
        return latest

    def mark_messages_synced(self, message_ids: Iterable[str], synced_at: int | None = None) -> int:
        """Stamp ``synced_at`` on the given messages; return how many were found."""
        stamp = int(time.time()) if synced_at is None else synced_at
        sets = {}
        for mid in message_ids:
            record = self._read_record(mid)
            if record is None:
                continue
            record["meta"]["synced_at"] = stamp
            sets[self._msg_key(mid)] = json.dumps(record)
        if sets:
            self._backend.write_batch(sets)
        return len(sets)

    def cleanup_old_messages(self, cutoff: int) -> int:
        """Delete every message with ``timestamp < cutoff``; return the count."""
        removed = 0
        for cid in self.get_conversation_ids():
            index = self._load_index(cid)
            keep = [e for e in index if e[1] >= cutoff]
            drop = [mid for mid, ts in index if ts < cutoff]
            if not drop:
                continue
            deletes = [self._msg_key(mid) for mid in drop]
            if keep:
                self._backend.write_batch({self._conv_key(cid): self._dump_index(keep)}, deletes)
            else:
                self._backend.write_batch({}, [*deletes, self._conv_key(cid)])
            removed += len(drop)
        if removed:
            self._logger.info("old_messages_removed", count=removed, cutoff=cutoff)
        return removed

    def enforce_retention(self, now: float | None = None) -> int:
        """Apply ``max_message_age``; return how many messages were deleted."""
        if not self._config.max_message_age:
            return 0
        now = time.time() if now is None else now
        return self.cleanup_old_messages(int(now) - self._config.max_message_age)

    def get_storage_usage(self) -> StorageUsage:
        total_messages = 0
        oldest: int | None = None
        newest: int | None = None
        for cid in self.get_conversation_ids():
            index = self._load_index(cid)
            if not index:
                continue
            total_messages += len(index)
            if oldest is None or index[0][1] < oldest:
                oldest = index[0][1]
            if newest is None or index[-1][1] > newest:
                newest = index[-1][1]

        size = 0
        for key in self._backend.keys(self._prefix):
            value = self._backend.get(key) or ""
            size += len(key.encode("utf-8")) + len(value.encode("utf-8"))

        return StorageUsage(
            total_messages=total_messages,
            total_size_bytes=size,
            oldest_message=oldest,
            newest_message=newest,
        )

    # -------------------------------------------------------------------------
    # Offline queue
    # -------------------------------------------------------------------------

    def queue_outgoing_message(self, outgoing: OutgoingMessage) -> None:
        blob = self._cipher.seal(json.dumps(outgoing.to_dict(), ensure_ascii=False))
        self._backend.set(self._queue_key(outgoing.id), blob)

    def update_queued_message(self, outgoing: OutgoingMessage) -> bool:
        """Overwrite an existing queue entry; False if it is no longer queued."""
        if self._backend.get(self._queue_key(outgoing.id)) is None:
            return False
        self.queue_outgoing_message(outgoing)
        return True

    def get_queued_message(self, message_id: str) -> OutgoingMessage | None:
        raw = self._backend.get(self._queue_key(message_id))
        if raw is None:
            return None
        try:
            return OutgoingMessage.from_dict(json.loads(self._cipher.open(raw)))
        except (CryptoError, KeyError, ValueError, TypeError) as e:
            self._logger.error("queue_entry_corrupt", message_id=message_id, error=str(e))
            return None

    def get_all_queued_messages(self) -> list[OutgoingMessage]:
        """Every queue entry, ordered by ``next_retry_at``."""
        queue_prefix = f"{self._prefix}queue:"
        entries = []
        for key in self._backend.keys(queue_prefix):
            entry = self.get_queued_message(key[len(queue_prefix) :])
            if entry is not None:
                entries.append(entry)
        entries.sort(key=lambda q: (q.next_retry_at, q.created_at))
        return entries

    def get_queued_messages(self, max_retries: int, now: float | None = None) -> list[OutgoingMessage]:
        """Queue entries that are due (``next_retry_at <= now``) and under budget."""
        now = time.time() if now is None else now
        return [
            q
            for q in self.get_all_queued_messages()
            if q.next_retry_at <= now and q.retry_count < max_retries
        ]

    def remove_from_queue(self, message_id: str) -> bool:
        key = self._queue_key(message_id)
        if self._backend.get(key) is None:
            return False
        self._backend.delete(key)
        return True
