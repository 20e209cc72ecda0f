"""DM controller configuration models.

Retry, circuit breaker, store and cache settings are engine-wide and live in
[EngineConfig][obscur.core.context.EngineConfig]; this model only holds
what the controller itself decides.

See Also:
    [DmController][obscur.services.dm.DmController]: The service class that
        consumes this configuration.
    [BaseServiceConfig][obscur.core.base_service.BaseServiceConfig]:
        Base class providing ``interval``, ``max_consecutive_failures`` and
        ``metrics``.
"""

from __future__ import annotations

from pydantic import Field

from obscur.core.base_service import BaseServiceConfig
from obscur.nips.nip04 import KeyDerivation


class DmControllerConfig(BaseServiceConfig):
    """Configuration for the [DmController][obscur.services.dm.DmController].

    Note:
        ``max_plaintext_chars`` is a safety limit applied before encryption;
        relays enforce their own event size limits independently.
    """

    subscription_limit: int = Field(
        default=50, ge=1, le=5000, description="Limit on the live kind-4 subscription"
    )
    sync_limit: int = Field(
        default=100, ge=1, le=5000, description="Limit on each missed-message sync REQ"
    )
    sync_timeout: float = Field(
        default=10.0, ge=0.1, le=300.0, description="Seconds to wait for EOSE during a sync"
    )
    sync_default_lookback: int = Field(
        default=86_400,
        ge=60,
        description="Sync window in seconds when no message has been stored yet",
    )
    max_plaintext_chars: int = Field(
        default=4000, ge=1, description="Maximum characters accepted by send_dm"
    )
    verify_recipient_timeout: float = Field(
        default=3.0, ge=0.1, le=60.0, description="Seconds to wait for a recipient profile"
    )
    queue_pacing: float = Field(
        default=0.1, ge=0.0, le=10.0, description="Pause between redeliveries of queued messages"
    )
    state_message_limit: int = Field(
        default=500, ge=1, description="Messages kept in the controller state snapshot"
    )
    key_derivation: KeyDerivation = Field(
        default=KeyDerivation.STANDARD, description="NIP-04 shared secret derivation"
    )
