"""
Process-wide engine configuration and component container.

[EngineContext][obscur.core.context.EngineContext] is constructed once at
startup and passed to every service. It owns the only instances of the
circuit breaker registry, the relay pool, the message store and the memory
cache, so there is no hidden module-level state anywhere in the engine.

[EngineConfig][obscur.core.context.EngineConfig] aggregates the component
configurations. Service sections (``dm``, ``groups``) in the same YAML file
are ignored here and parsed by the services themselves.

Examples:
    ```python
    config = EngineConfig.from_yaml("config/engine.yaml")
    async with EngineContext.create(config, pubkey=keys.public_key().to_hex()) as ctx:
        async with DmController(ctx, identity=LocalIdentity(keys)) as dm:
            await dm.run_forever()
    ```
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import Any, Self

from pydantic import BaseModel, Field, field_validator

from obscur.models.relay import normalize_relay_url

from .cache import CacheConfig, MessageMemoryManager
from .logger import Logger
from .relay_pool import RelayPool, RelayPoolConfig, RelayPoolProtocol
from .retry import CircuitBreakerConfig, RetryConfig, RetryManager
from .store import MessageStore, StorageBackend, StoreConfig, create_backend
from .yaml import load_yaml


DEFAULT_RELAYS: tuple[str, ...] = (
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.nostr.band",
)


class EngineConfig(BaseModel):
    """Top-level engine configuration.

    The private key is never part of the configuration file: ``keys_env``
    names the environment variable it is read from.
    """

    relays: list[str] = Field(
        default_factory=lambda: list(DEFAULT_RELAYS), description="Relay URLs to connect to"
    )
    keys_env: str = Field(
        default="PRIVATE_KEY", min_length=1, description="Environment variable holding the key"
    )
    relay_pool: RelayPoolConfig = Field(default_factory=RelayPoolConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)

    @field_validator("relays")
    @classmethod
    def validate_relays(cls, v: list[str]) -> list[str]:
        """Normalize relay URLs and drop duplicates, preserving order."""
        normalized: list[str] = []
        for url in v:
            try:
                n = normalize_relay_url(url)
            except ValueError as e:
                raise ValueError(f"invalid relay URL {url!r}: {e}") from e
            if n not in normalized:
                normalized.append(n)
        return normalized

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> EngineConfig:
        return cls.from_dict(load_yaml(config_path))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        return cls(**data)


@dataclass
class EngineContext:
    """Shared engine components for one identity.

    Attributes:
        config: The engine configuration the components were built from.
        pubkey: Hex public key of the local identity.
        retry_manager: Circuit breakers and retry timers.
        relay_pool: Relay pool (or a test double implementing the same
            protocol).
        store: Durable message store scoped to ``pubkey``.
        cache: In-memory conversation cache.
    """

    config: EngineConfig
    pubkey: str
    retry_manager: RetryManager
    relay_pool: RelayPoolProtocol
    store: MessageStore
    cache: MessageMemoryManager

    @classmethod
    def create(
        cls,
        config: EngineConfig,
        pubkey: str,
        *,
        relay_pool: RelayPoolProtocol | None = None,
        backend: StorageBackend | None = None,
    ) -> EngineContext:
        """Build every component from *config*.

        Args:
            relay_pool: Override the relay pool, e.g. with a test double.
            backend: Override the storage backend selected by ``config.store``.
        """
        retry_manager = RetryManager(config.retry, config.circuit_breaker)
        if relay_pool is None:
            relay_pool = RelayPool(config.relay_pool, retry_manager=retry_manager)
        store = MessageStore(
            pubkey,
            backend if backend is not None else create_backend(config.store),
            config.store,
        )
        return cls(
            config=config,
            pubkey=pubkey,
            retry_manager=retry_manager,
            relay_pool=relay_pool,
            store=store,
            cache=MessageMemoryManager(config.cache),
        )

    async def start(self) -> None:
        """Connect the relay pool to the configured relays."""
        if isinstance(self.relay_pool, RelayPool):
            await self.relay_pool.connect(self.config.relays)

    async def close(self) -> None:
        """Cancel retry timers, close relay connections, and close the store."""
        self.retry_manager.cleanup()
        if isinstance(self.relay_pool, RelayPool):
            await self.relay_pool.close()
        self.store.close()
        self.cache.clear()
        Logger("context").info("engine_closed")

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
