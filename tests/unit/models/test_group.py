"""
Unit tests for models.group module.

Tests:
- parse_group_identifier() with host'id and bare ids
- GroupIdentifier validation
- GroupMembership.can_moderate
"""

import pytest

from obscur.models.constants import GroupRole, MembershipStatus
from obscur.models.group import GroupIdentifier, GroupMembership, parse_group_identifier


class TestParseGroupIdentifier:
    """parse_group_identifier()."""

    def test_host_and_id(self):
        ident = parse_group_identifier("groups.example.com'pizza-lovers")
        assert ident.host == "groups.example.com"
        assert ident.group_id == "pizza-lovers"
        assert ident.relay_url == "wss://groups.example.com"

    def test_scheme_prefix_stripped(self):
        ident = parse_group_identifier("wss://groups.example.com/'abc")
        assert ident.host == "groups.example.com"
        assert str(ident) == "groups.example.com'abc"

    def test_bare_id_with_default_relay(self):
        ident = parse_group_identifier("abc", default_relay_url="wss://groups.example.com")
        assert ident.group_id == "abc"
        assert ident.relay_url == "wss://groups.example.com"

    def test_bare_id_without_default_relay(self):
        with pytest.raises(ValueError, match="no host"):
            parse_group_identifier("abc")

    def test_empty(self):
        with pytest.raises(ValueError, match="empty"):
            parse_group_identifier("   ")

    def test_missing_host(self):
        with pytest.raises(ValueError, match="no host"):
            parse_group_identifier("'abc")

    @pytest.mark.parametrize("group_id", ["Upper", "has space", "", "emoji🙂"])
    def test_invalid_group_id(self, group_id):
        with pytest.raises(ValueError):
            parse_group_identifier(f"groups.example.com'{group_id}")


class TestGroupIdentifier:
    """GroupIdentifier construction."""

    def test_empty_host(self):
        with pytest.raises(ValueError):
            GroupIdentifier(host="", group_id="abc", relay_url="wss://x.example.com")


class TestGroupMembership:
    """GroupMembership.can_moderate."""

    def test_defaults(self):
        m = GroupMembership(group_id="abc", pubkey="a" * 64)
        assert m.status == MembershipStatus.NONE
        assert m.role is None
        assert not m.can_moderate

    def test_moderator_member(self):
        m = GroupMembership(
            group_id="abc", pubkey="a" * 64, status=MembershipStatus.MEMBER, role=GroupRole.MODERATOR
        )
        assert m.can_moderate

    def test_role_without_membership(self):
        m = GroupMembership(
            group_id="abc", pubkey="a" * 64, status=MembershipStatus.REQUESTED, role=GroupRole.OWNER
        )
        assert not m.can_moderate

    def test_plain_member(self):
        m = GroupMembership(
            group_id="abc", pubkey="a" * 64, status=MembershipStatus.MEMBER, role=GroupRole.MEMBER
        )
        assert not m.can_moderate
