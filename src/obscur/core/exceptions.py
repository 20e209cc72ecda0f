"""Obscur exception hierarchy.

Provides typed exceptions for every error category so that callers can
tell transient transport failures from protocol garbage and from caller
mistakes, while ``CancelledError`` propagates untouched.

Exception hierarchy:

```text
ObscurError (base -- never raised directly)
├── ConfigurationError      -- config validation, missing keys, bad YAML
├── ConnectivityError       -- relay unreachable, socket closed
│   └── RelayTimeoutError   -- connection or acknowledgment timed out
├── ProtocolError           -- malformed frame, bad event, failed decrypt
│   ├── InvalidEventError   -- event shape, id, or signature invalid
│   └── CryptoError         -- key material, encryption, or decryption failure
├── ValidationError         -- caller input rejected (recipient, plaintext)
├── StorageError            -- message store backend failure
├── PublishingError         -- event broadcast failure
└── GroupPermissionError    -- moderation attempted without a moderator role
```

Note:
    Receive-pipeline errors (``ProtocolError`` and its subclasses) are
    caught at the frame boundary in
    [DmController][obscur.services.dm.DmController] and logged; they never
    escape to the relay pool. ``ValidationError`` is converted into an
    unsuccessful [SendResult][obscur.services.dm.SendResult] rather than
    raised to the caller of ``send_dm``.
"""

from __future__ import annotations


class ObscurError(Exception):
    """Base exception for all obscur errors. Never raised directly."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(ObscurError):
    """Invalid or missing configuration (YAML, env vars, CLI flags)."""


# ---------------------------------------------------------------------------
# Connectivity
# ---------------------------------------------------------------------------


class ConnectivityError(ObscurError):
    """Base for relay/network connectivity errors.

    Recovered locally by reconnect backoff and the per-relay circuit
    breaker; surfaced to callers only as aggregate network state.
    """


class RelayTimeoutError(ConnectivityError):
    """Connection or acknowledgment timed out."""


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ProtocolError(ObscurError):
    """Malformed or untrustworthy data received from a relay."""


class InvalidEventError(ProtocolError):
    """Event has the wrong shape, a mismatched id, or an invalid signature."""


class CryptoError(ProtocolError):
    """Key material, encryption, or decryption failure.

    Raised instead of returning garbage plaintext: decryption fails closed.
    """


# ---------------------------------------------------------------------------
# Caller input
# ---------------------------------------------------------------------------


class ValidationError(ObscurError):
    """Caller-supplied input was rejected before any event was built."""


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageError(ObscurError):
    """Message store backend failure (I/O, corrupt record)."""


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


class PublishingError(ObscurError):
    """Failed to broadcast a Nostr event to relays."""


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


class GroupPermissionError(ObscurError):
    """A moderation action was attempted without owner or moderator evidence."""
