"""Core layer: transport, reliability, persistence, and the service base class.

Sits in the middle of the diamond DAG -- depends only on ``obscur.models``
and is depended upon by ``obscur.services``.

Attributes:
    RelayPool: aiohttp WebSocket pool with reconnect backoff and
        acknowledged publishing. See [RelayPool][obscur.core.relay_pool.RelayPool].
    RetryManager: Per-relay circuit breakers and exponential backoff timers.
        See [RetryManager][obscur.core.retry.RetryManager].
    MessageStore: Encrypted-at-rest message store, conversation index and
        offline queue. See [MessageStore][obscur.core.store.MessageStore].
    MessageMemoryManager: LRU conversation cache.
    EngineContext: Process-wide container handed to every service.
    BaseService: Abstract generic base class with lifecycle management and
        Prometheus metrics integration.
    Logger: Structured logger supporting key=value and JSON output modes.
"""

from .base_service import BaseService, BaseServiceConfig, ConfigT
from .cache import CacheConfig, MemoryStats, MessageMemoryManager
from .context import DEFAULT_RELAYS, EngineConfig, EngineContext
from .exceptions import (
    ConfigurationError,
    ConnectivityError,
    CryptoError,
    GroupPermissionError,
    InvalidEventError,
    ObscurError,
    ProtocolError,
    PublishingError,
    RelayTimeoutError,
    StorageError,
    ValidationError,
)
from .logger import Logger, StructuredFormatter, format_kv_pairs
from .metrics import (
    CIRCUIT_BREAKERS,
    CYCLE_DURATION_SECONDS,
    PUBLISH_LATENCY_SECONDS,
    RELAY_CONNECTIONS,
    SERVICE_COUNTER,
    SERVICE_GAUGE,
    SERVICE_INFO,
    MetricsConfig,
    MetricsServer,
    start_metrics_server,
)
from .relay_pool import (
    MultiRelayPublishResult,
    PublishResult,
    RelayConnection,
    RelayConnectionInfo,
    RelayPool,
    RelayPoolConfig,
    RelayPoolProtocol,
)
from .retry import (
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryConfig,
    RetryDecision,
    RetryManager,
)
from .store import (
    MemoryBackend,
    MessageStore,
    SqliteBackend,
    StorageBackend,
    StorageUsage,
    StoreConfig,
    create_backend,
)
from .yaml import load_yaml


__all__ = [
    "CIRCUIT_BREAKERS",
    "CYCLE_DURATION_SECONDS",
    "DEFAULT_RELAYS",
    "PUBLISH_LATENCY_SECONDS",
    "RELAY_CONNECTIONS",
    "SERVICE_COUNTER",
    "SERVICE_GAUGE",
    "SERVICE_INFO",
    "BaseService",
    "BaseServiceConfig",
    "CacheConfig",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "ConfigT",
    "ConfigurationError",
    "ConnectivityError",
    "CryptoError",
    "EngineConfig",
    "EngineContext",
    "GroupPermissionError",
    "InvalidEventError",
    "Logger",
    "MemoryBackend",
    "MemoryStats",
    "MessageMemoryManager",
    "MessageStore",
    "MetricsConfig",
    "MetricsServer",
    "MultiRelayPublishResult",
    "ObscurError",
    "ProtocolError",
    "PublishResult",
    "PublishingError",
    "RelayConnection",
    "RelayConnectionInfo",
    "RelayPool",
    "RelayPoolConfig",
    "RelayPoolProtocol",
    "RelayTimeoutError",
    "RetryConfig",
    "RetryDecision",
    "RetryManager",
    "SqliteBackend",
    "StorageBackend",
    "StorageError",
    "StorageUsage",
    "StoreConfig",
    "StructuredFormatter",
    "ValidationError",
    "create_backend",
    "format_kv_pairs",
    "load_yaml",
    "start_metrics_server",
]
