"""Group membership service configuration models.

See Also:
    [GroupMembershipService][obscur.services.groups.GroupMembershipService]:
        The service class that consumes this configuration.
    [BaseServiceConfig][obscur.core.base_service.BaseServiceConfig]:
        Base class providing ``interval``, ``max_consecutive_failures`` and
        ``metrics``.
"""

from __future__ import annotations

from pydantic import Field, field_validator

from obscur.core.base_service import BaseServiceConfig
from obscur.models._validation import is_hex
from obscur.models.group import GroupIdentifier, parse_group_identifier


class GroupConfig(BaseServiceConfig):
    """Configuration for one [GroupMembershipService][obscur.services.groups.GroupMembershipService].

    Note:
        ``relay_pubkey`` is the public key the hosting relay signs its
        39000-range state events with. When set, state events from any
        other author are ignored and the relay counts as a moderator for
        removal events.
    """

    group: str = Field(min_length=1, description="Group address, host'group-id")
    relay_url: str | None = Field(
        default=None, description="Relay for a bare group id without a host"
    )
    relay_pubkey: str | None = Field(
        default=None, description="Hex public key the relay signs group state with"
    )
    metadata_limit: int = Field(default=10, ge=1, le=500, description="Limit on the state REQ")
    membership_limit: int = Field(
        default=100, ge=1, le=5000, description="Limit on the moderation events REQ"
    )
    message_limit: int = Field(default=50, ge=1, le=5000, description="Limit on the chat REQ")
    message_history: int = Field(
        default=100, ge=1, description="Chat messages kept in the service state"
    )

    @field_validator("relay_pubkey")
    @classmethod
    def validate_relay_pubkey(cls, v: str | None) -> str | None:
        """Require 64 lowercase hex characters when set."""
        if v is None:
            return v
        v = v.strip().lower()
        if not is_hex(v, 64):
            raise ValueError("relay_pubkey must be 64 hex characters")
        return v

    @field_validator("group")
    @classmethod
    def validate_group(cls, v: str) -> str:
        v = v.strip()
        if "'" in v:
            parse_group_identifier(v)
        return v

    def identifier(self) -> GroupIdentifier:
        """Parse ``group`` with ``relay_url`` as the default relay."""
        return parse_group_identifier(self.group, self.relay_url)
