"""
Unit tests for the obscur.__main__ CLI module.

Tests:
- parse_args argument parsing
- _split_config section handling and relay overrides
- _build_trust contact parsing
- Command helpers printing JSON
- main() exit codes for invalid configuration
"""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from obscur.__main__ import (
    ENGINE_CONFIG,
    SERVICE_SECTIONS,
    _build_trust,
    _load_yaml_dict,
    _split_config,
    main,
    parse_args,
    send_message,
    show_status,
    sync_messages,
)
from obscur.core.exceptions import ConfigurationError
from obscur.models.constants import MessageStatus
from obscur.models.message import RelayResult
from obscur.services.dm import ControllerStatus, DmControllerState, SendResult, SyncProgress
from obscur.services.dm.types import NetworkState, QueueStatus


# ============================================================================
# parse_args Tests
# ============================================================================


class TestParseArgs:
    """Tests for parse_args function."""

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            parse_args([])

    def test_run_defaults(self) -> None:
        args = parse_args(["run"])
        assert args.command == "run"
        assert args.config == ENGINE_CONFIG
        assert args.log_level == "INFO"
        assert args.relays is None

    def test_global_options(self) -> None:
        args = parse_args(
            [
                "--config",
                "custom.yaml",
                "--log-level",
                "DEBUG",
                "--relay",
                "wss://a.example.com",
                "--relay",
                "wss://b.example.com",
                "status",
            ]
        )
        assert args.config == Path("custom.yaml")
        assert args.log_level == "DEBUG"
        assert args.relays == ["wss://a.example.com", "wss://b.example.com"]

    def test_send(self) -> None:
        args = parse_args(["send", "--to", "npub1abc", "--message", "hi", "--reply-to", "e1"])
        assert (args.to, args.message, args.reply_to) == ("npub1abc", "hi", "e1")

    def test_send_requires_recipient(self) -> None:
        with pytest.raises(SystemExit):
            parse_args(["send", "--message", "hi"])

    def test_sync_since(self) -> None:
        assert parse_args(["sync", "--since", "1700000000"]).since == 1_700_000_000

    def test_invalid_log_level(self) -> None:
        with pytest.raises(SystemExit):
            parse_args(["--log-level", "TRACE", "run"])


# ============================================================================
# Config Tests
# ============================================================================


class TestSplitConfig:
    """Tests for _split_config and _load_yaml_dict."""

    def test_sections_separated(self) -> None:
        data = {
            "relays": ["wss://relay.example.com"],
            "dm": {"interval": 30},
            "groups": [{"group": "relay.example.com'pizza"}],
            "contacts": {"accepted": []},
        }
        engine, dm, groups, contacts = _split_config(data, None)
        assert engine.relays == ["wss://relay.example.com"]
        assert dm == {"interval": 30}
        assert groups == [{"group": "relay.example.com'pizza"}]
        assert contacts == {"accepted": []}

    def test_missing_sections_default_empty(self) -> None:
        engine, dm, groups, contacts = _split_config({}, None)
        assert engine.relays
        assert (dm, groups, contacts) == ({}, [], {})

    def test_relay_override(self) -> None:
        engine, *_ = _split_config({"relays": ["wss://a.example.com"]}, ["wss://b.example.com"])
        assert engine.relays == ["wss://b.example.com"]

    def test_groups_must_be_list(self) -> None:
        with pytest.raises(ConfigurationError):
            _split_config({"groups": {"group": "x"}}, None)

    def test_service_sections(self) -> None:
        assert set(SERVICE_SECTIONS) == {"dm", "groups", "contacts"}

    def test_missing_file(self, tmp_path: Path) -> None:
        assert _load_yaml_dict(tmp_path / "absent.yaml") == {}

    def test_existing_file(self, tmp_path: Path) -> None:
        path = tmp_path / "engine.yaml"
        path.write_text("relays:\n  - wss://relay.example.com\n")
        assert _load_yaml_dict(path) == {"relays": ["wss://relay.example.com"]}


class TestBuildTrust:
    """Tests for _build_trust."""

    def test_contacts(self, alice_keys, alice_pubkey, bob_pubkey) -> None:
        trust = _build_trust(
            {"accepted": [alice_keys.public_key().to_bech32()], "blocked": [bob_pubkey]}
        )
        assert trust.is_accepted(alice_pubkey)
        assert trust.is_blocked(bob_pubkey)

    def test_empty(self) -> None:
        trust = _build_trust({})
        assert not trust.is_accepted("a" * 64)

    def test_invalid_contact(self) -> None:
        with pytest.raises(ConfigurationError, match="invalid contact"):
            _build_trust({"accepted": ["nobody"]})


# ============================================================================
# Command Tests
# ============================================================================


def _dm_mock() -> MagicMock:
    dm = MagicMock()
    dm.__aenter__ = AsyncMock(return_value=dm)
    dm.__aexit__ = AsyncMock(return_value=None)
    return dm


class TestCommands:
    """Tests for the command helpers."""

    async def test_send_success(self, capsys) -> None:
        dm = _dm_mock()
        dm.send_dm = AsyncMock(
            return_value=SendResult(
                success=True,
                message_id="m1",
                relay_results=(RelayResult(relay_url="wss://a", success=True),),
                status=MessageStatus.ACCEPTED,
            )
        )
        code = await send_message(dm, "npub1x", "hi", None)

        assert code == 0
        dm.send_dm.assert_awaited_once_with("npub1x", "hi", reply_to=None)
        output = json.loads(capsys.readouterr().out)
        assert output["success"] is True
        assert output["status"] == "accepted"
        assert output["relays"][0]["relay_url"] == "wss://a"

    async def test_send_failure(self, capsys) -> None:
        dm = _dm_mock()
        dm.send_dm = AsyncMock(return_value=SendResult(success=False, error="message is empty"))
        assert await send_message(dm, "npub1x", "", None) == 1
        output = json.loads(capsys.readouterr().out)
        assert output["status"] is None
        assert output["error"] == "message is empty"

    async def test_sync(self, capsys) -> None:
        dm = _dm_mock()
        dm.sync_missed_messages = AsyncMock(return_value=SyncProgress(since=5, received=2))
        assert await sync_messages(dm, 5) == 0
        assert json.loads(capsys.readouterr().out) == {"since": 5, "received": 2}

    async def test_status(self, capsys) -> None:
        dm = MagicMock()
        dm.state = DmControllerState(
            status=ControllerStatus.READY,
            network_state=NetworkState(is_online=True, open_relays=1, total_relays=2),
            queue_status=QueueStatus(total_queued=3, oldest=10, newest=20),
        )
        assert await show_status(dm) == 0
        output = json.loads(capsys.readouterr().out)
        assert output["online"] is True
        assert output["open_relays"] == 1
        assert output["queued"] == 3
        assert output["oldest_queued"] == 10


# ============================================================================
# main Tests
# ============================================================================


class TestMain:
    """Tests for main() exit codes."""

    async def test_missing_private_key(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.delenv("PRIVATE_KEY", raising=False)
        with patch("obscur.__main__.setup_logging"):
            code = await main(["--config", str(tmp_path / "none.yaml"), "status"])
        assert code == 2

    async def test_invalid_dm_section(self, tmp_path: Path) -> None:
        path = tmp_path / "engine.yaml"
        path.write_text("dm:\n  sync_limit: 0\n")
        with patch("obscur.__main__.setup_logging"):
            code = await main(["--config", str(path), "status"])
        assert code == 2

    async def test_invalid_contact(self, tmp_path: Path) -> None:
        path = tmp_path / "engine.yaml"
        path.write_text("contacts:\n  blocked:\n    - nobody\n")
        with patch("obscur.__main__.setup_logging"):
            code = await main(["--config", str(path), "status"])
        assert code == 2
