"""
In-memory LRU cache of recently viewed conversations.

A performance cache in front of the
[MessageStore][obscur.core.store.MessageStore]; the store stays
authoritative. Conversations are evicted least-recently-accessed first
whenever the number of cached conversations exceeds
``conversation_cache_size`` or the total number of cached messages exceeds
``max_messages_in_memory``. Eviction stops once the message total is back
under ``unload_threshold``.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from dataclasses import dataclass, field

from pydantic import BaseModel, Field, ValidationInfo, field_validator

from obscur.models.message import Message

from .logger import Logger


class CacheConfig(BaseModel):
    """Limits for the conversation cache."""

    max_messages_in_memory: int = Field(default=200, ge=1, description="Global message cap")
    unload_threshold: int = Field(default=150, ge=0, description="Evict down to this many")
    conversation_cache_size: int = Field(default=5, ge=1, description="Cached conversations cap")

    @field_validator("unload_threshold")
    @classmethod
    def validate_unload_threshold(cls, v: int, info: ValidationInfo) -> int:
        """Ensure unload_threshold <= max_messages_in_memory."""
        cap = info.data.get("max_messages_in_memory", 200)
        if v > cap:
            raise ValueError(f"unload_threshold ({v}) must be <= max_messages_in_memory ({cap})")
        return v


@dataclass(slots=True)
class _CachedConversation:
    messages: list[Message] = field(default_factory=list)
    last_accessed: float = 0.0


@dataclass(frozen=True, slots=True)
class MemoryStats:
    conversations: int
    total_messages: int
    max_messages: int


class MessageMemoryManager:
    """LRU-by-access-time cache of conversation message lists (newest first)."""

    def __init__(self, config: CacheConfig | None = None) -> None:
        self._config = config or CacheConfig()
        self._cache: dict[str, _CachedConversation] = {}
        self._logger = Logger("cache")

    def add_messages(self, conversation_id: str, messages: Iterable[Message]) -> None:
        """Merge *messages* into a conversation, replacing entries with the same id."""
        entry = self._cache.setdefault(conversation_id, _CachedConversation())
        merged = {m.id: m for m in entry.messages}
        for m in messages:
            merged[m.id] = m.copy()
        entry.messages = sorted(merged.values(), key=lambda m: (m.timestamp, m.id), reverse=True)
        entry.last_accessed = time.monotonic()
        self._evict(protect=conversation_id)

    def get_messages(self, conversation_id: str) -> list[Message] | None:
        """Return copies of the cached messages, or ``None`` on a cache miss."""
        entry = self._cache.get(conversation_id)
        if entry is None:
            return None
        entry.last_accessed = time.monotonic()
        return [m.copy() for m in entry.messages]

    def update_message(self, message: Message) -> bool:
        """Replace a cached message in place; False if it is not cached."""
        entry = self._cache.get(message.conversation_id)
        if entry is None:
            return False
        for i, cached in enumerate(entry.messages):
            if cached.id == message.id:
                entry.messages[i] = message.copy()
                return True
        return False

    def has_conversation(self, conversation_id: str) -> bool:
        return conversation_id in self._cache

    def unload_conversation(self, conversation_id: str) -> bool:
        return self._cache.pop(conversation_id, None) is not None

    def get_memory_stats(self) -> MemoryStats:
        return MemoryStats(
            conversations=len(self._cache),
            total_messages=self._total(),
            max_messages=self._config.max_messages_in_memory,
        )

    def clear(self) -> None:
        self._cache.clear()

    def _total(self) -> int:
        return sum(len(e.messages) for e in self._cache.values())

    def _evict(self, protect: str) -> None:
        over_count = len(self._cache) > self._config.conversation_cache_size
        over_messages = self._total() > self._config.max_messages_in_memory
        if not over_count and not over_messages:
            return

        candidates = sorted(
            (cid for cid in self._cache if cid != protect),
            key=lambda cid: self._cache[cid].last_accessed,
        )
        evicted = 0
        for cid in candidates:
            count_ok = len(self._cache) <= self._config.conversation_cache_size
            messages_ok = (
                not over_messages or self._total() <= self._config.unload_threshold
            )
            if count_ok and messages_ok:
                break
            del self._cache[cid]
            evicted += 1

        entry = self._cache.get(protect)
        excess = self._total() - self._config.max_messages_in_memory
        if entry is not None and excess > 0:
            # newest first, so the tail holds the oldest
            entry.messages = entry.messages[: max(0, len(entry.messages) - excess)]
            self._logger.debug("conversation_trimmed", dropped=excess)

        if evicted:
            self._logger.debug("conversations_unloaded", count=evicted, remaining=len(self._cache))
