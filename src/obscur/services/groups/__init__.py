"""NIP-29 group membership service package.

Attributes:
    GroupMembershipService: Joins, leaves, moderates and chats in one group.
    GroupConfig: Its configuration model.
    GroupMembershipMachine: Pure membership state machine fed with relay
        evidence.
"""

from .configs import GroupConfig
from .service import GroupMembershipService
from .state import (
    GroupMembershipMachine,
    GroupState,
    GroupStatus,
    PendingJoinRequest,
    order_key,
)


__all__ = [
    "GroupConfig",
    "GroupMembershipMachine",
    "GroupMembershipService",
    "GroupState",
    "GroupStatus",
    "PendingJoinRequest",
    "order_key",
]
