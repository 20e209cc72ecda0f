"""DM controller service package.

Sends and receives NIP-04 direct messages for one local identity, with
acknowledged publishing, a durable offline queue, circuit-breaker-aware
retries and missed-message sync.

Attributes:
    DmController: The service class.
    DmControllerConfig: Its configuration model.
    OfflineQueueManager: Serialized, paced redelivery of queued messages.
    DmControllerState: Snapshot type returned by ``DmController.state``.
"""

from .configs import DmControllerConfig
from .offline_queue import OfflineQueueManager, QueueProcessingResult
from .service import DmController
from .types import (
    ControllerStatus,
    DmControllerState,
    NetworkState,
    QueueStatus,
    SendResult,
    SyncProgress,
)


__all__ = [
    "ControllerStatus",
    "DmController",
    "DmControllerConfig",
    "DmControllerState",
    "NetworkState",
    "OfflineQueueManager",
    "QueueProcessingResult",
    "QueueStatus",
    "SendResult",
    "SyncProgress",
]
