"""Messaging services built on the shared engine context.

Services are the top layer of the diamond DAG, depending on
[obscur.core][obscur.core], [obscur.nips][obscur.nips],
[obscur.utils][obscur.utils], and [obscur.models][obscur.models].
Each service extends [BaseService][obscur.core.base_service.BaseService]
and implements ``async def run()`` for one housekeeping cycle.

Attributes:
    DmController: NIP-04 direct messages with acknowledged publishing, an
        offline queue, retries and missed-message sync.
    GroupMembershipService: NIP-29 membership, moderation and chat for one
        group.

Note:
    Both services take an [EngineContext][obscur.core.context.EngineContext]
    and share its relay pool, retry manager and store. The identity, trust
    list and requests inbox are supplied by the embedding application
    through the protocols in [common][obscur.services.common].

Examples:
    ```python
    from obscur.core import EngineConfig, EngineContext
    from obscur.services import DmController
    from obscur.services.common import LocalIdentity

    config = EngineConfig.from_yaml("config/engine.yaml")
    async with EngineContext.create(config, pubkey=keys.public_key().to_hex()) as ctx:
        async with DmController(ctx, identity=LocalIdentity(keys)) as dm:
            result = await dm.send_dm("npub1...", "hello")
    ```
"""

from .dm import (
    DmController,
    DmControllerConfig,
    DmControllerState,
    SendResult,
)
from .groups import (
    GroupConfig,
    GroupMembershipMachine,
    GroupMembershipService,
    GroupState,
)


__all__ = [
    "DmController",
    "DmControllerConfig",
    "DmControllerState",
    "GroupConfig",
    "GroupMembershipMachine",
    "GroupMembershipService",
    "GroupState",
    "SendResult",
]
