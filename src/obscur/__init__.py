r"""obscur -- Nostr relay messaging engine.

Encrypted direct messages (NIP-04) and relay-based group membership
(NIP-29) on top of a pool of relay WebSocket connections, with
acknowledged publishing, per-relay circuit breakers, an offline queue and
an encrypted-at-rest message store.

Architecture follows a **diamond DAG** dependency structure where imports
flow strictly downward:

```text
              services         DM controller, group membership
             /   |   \
          core  nips  utils    Transport, reliability, storage, crypto, keys
             \   |   /
              models           Pure dataclasses (zero I/O)
```

Attributes:
    models: Events, messages, wire frames and group types. Zero I/O.
    core: Relay pool, retry manager, message store, cache, base service,
        exceptions, logging, metrics.
    nips: NIP-01 signing, NIP-04 encryption, NIP-29 group events.
    utils: Key loading and public key parsing.
    services: DM controller and group membership service.

Note:
    Top-level imports (``from obscur import DmController``) use lazy
    loading and resolve on first access.
"""

import importlib
from importlib.metadata import version as _get_version


__version__ = _get_version("obscur")

__all__ = [
    "BaseService",
    "DmController",
    "DmControllerConfig",
    "EngineConfig",
    "EngineContext",
    "Event",
    "GroupConfig",
    "GroupMembershipService",
    "Logger",
    "Message",
    "MessageStatus",
    "MessageStore",
    "RelayPool",
    "RetryManager",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseService": ("obscur.core", "BaseService"),
    "EngineConfig": ("obscur.core", "EngineConfig"),
    "EngineContext": ("obscur.core", "EngineContext"),
    "Logger": ("obscur.core", "Logger"),
    "MessageStore": ("obscur.core", "MessageStore"),
    "RelayPool": ("obscur.core", "RelayPool"),
    "RetryManager": ("obscur.core", "RetryManager"),
    "Event": ("obscur.models", "Event"),
    "Message": ("obscur.models", "Message"),
    "MessageStatus": ("obscur.models", "MessageStatus"),
    "DmController": ("obscur.services", "DmController"),
    "DmControllerConfig": ("obscur.services", "DmControllerConfig"),
    "GroupConfig": ("obscur.services", "GroupConfig"),
    "GroupMembershipService": ("obscur.services", "GroupMembershipService"),
}


def __getattr__(name: str) -> object:
    if name in _LAZY_IMPORTS:
        module_path, attr_name = _LAZY_IMPORTS[name]
        module = importlib.import_module(module_path)
        value = getattr(module, attr_name)
        globals()[name] = value  # Cache for subsequent access
        return value
    raise AttributeError(f"module 'obscur' has no attribute {name!r}")


def __dir__() -> list[str]:
    return __all__
