"""CLI entry point for the obscur messaging engine.

Runs the DM controller (and any configured group services) continuously,
or performs a single operation against the configured relays.

Examples:
    ```bash
    python -m obscur run
    python -m obscur run --config config/engine.yaml --log-level DEBUG
    python -m obscur send --to npub1... --message "hello"
    python -m obscur sync --since 1700000000
    python -m obscur status --relay wss://nos.lol
    ```

The private key is read from the environment variable named by
``keys_env`` in the engine configuration (``PRIVATE_KEY`` by default).
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from obscur.core import EngineConfig, EngineContext, start_metrics_server
from obscur.core.base_service import BaseService
from obscur.core.exceptions import ConfigurationError
from obscur.core.logger import Logger, StructuredFormatter
from obscur.core.yaml import load_yaml
from obscur.services.common import LocalIdentity, MemoryRequestsInbox, MemoryTrustProvider
from obscur.services.dm import DmController, DmControllerConfig
from obscur.services.groups import GroupConfig, GroupMembershipService
from obscur.utils.keys import load_keys_from_env, parse_public_key


CONFIG_BASE = Path("config")
ENGINE_CONFIG = CONFIG_BASE / "engine.yaml"

# Sections of the engine file parsed by the CLI rather than EngineConfig
SERVICE_SECTIONS = ("dm", "groups", "contacts")

logger = Logger("cli")


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


def _load_yaml_dict(path: Path) -> dict[str, Any]:
    """Load a YAML file as a dict, returning ``{}`` if the file does not exist."""
    if not path.exists():
        logger.warning("config_not_found", path=str(path))
        return {}
    return load_yaml(str(path))


def _split_config(
    data: dict[str, Any], relays: list[str] | None
) -> tuple[EngineConfig, dict[str, Any], list[dict[str, Any]], dict[str, Any]]:
    """Separate the engine section from the service and contact sections.

    ``--relay`` flags replace the configured relay list.
    """
    engine_dict = {k: v for k, v in data.items() if k not in SERVICE_SECTIONS}
    if relays:
        engine_dict["relays"] = relays
    dm_dict = data.get("dm") or {}
    group_dicts = data.get("groups") or []
    contacts = data.get("contacts") or {}
    if not isinstance(group_dicts, list):
        raise ConfigurationError("'groups' must be a list of group sections")
    return EngineConfig.from_dict(engine_dict), dm_dict, group_dicts, contacts


def _build_trust(contacts: dict[str, Any]) -> MemoryTrustProvider:
    try:
        accepted = [parse_public_key(p) for p in contacts.get("accepted", [])]
        blocked = [parse_public_key(p) for p in contacts.get("blocked", [])]
    except ValueError as e:
        raise ConfigurationError(f"invalid contact: {e}") from e
    return MemoryTrustProvider(accepted=accepted, blocked=blocked)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def run_services(services: list[BaseService[Any]]) -> int:
    """Run every service continuously until a shutdown signal is received.

    A Prometheus metrics server is started from the first service's
    ``metrics`` configuration.

    Returns:
        Exit code: 0 for success, 1 for failure.
    """
    metrics_config = services[0].config.metrics
    metrics_server = await start_metrics_server(metrics_config)

    if metrics_config.enabled:
        logger.info(
            "metrics_server_started",
            host=metrics_config.host,
            port=metrics_config.port,
            path=metrics_config.path,
        )

    def handle_signal(sig: signal.Signals) -> None:
        logger.info("shutdown_signal", signal=sig.name)
        for service in services:
            service.request_shutdown()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    async def _run_one(service: BaseService[Any]) -> None:
        async with service:
            await service.run_forever()

    try:
        await asyncio.gather(*(_run_one(s) for s in services))
        return 0
    except Exception as e:  # Intentionally broad: CLI error boundary for continuous mode
        logger.error("run_failed", error=str(e))
        return 1
    finally:
        await metrics_server.stop()
        if metrics_config.enabled:
            logger.info("metrics_server_stopped")


async def send_message(dm: DmController, recipient: str, text: str, reply_to: str | None) -> int:
    """Send one DM; exit code 0 only if a relay accepted it."""
    async with dm:
        result = await dm.send_dm(recipient, text, reply_to=reply_to)
    print(
        json.dumps(
            {
                "success": result.success,
                "message_id": result.message_id,
                "status": result.status.value if result.status else None,
                "error": result.error,
                "relays": [r.to_dict() for r in result.relay_results],
            },
            indent=2,
        )
    )
    return 0 if result.success else 1


async def sync_messages(dm: DmController, since: int | None) -> int:
    """Fetch missed DMs once and report how many arrived."""
    async with dm:
        progress = await dm.sync_missed_messages(since)
    print(json.dumps({"since": progress.since, "received": progress.received}, indent=2))
    return 0


async def show_status(dm: DmController) -> int:
    """Print relay connectivity and offline queue status."""
    state = dm.state
    print(
        json.dumps(
            {
                "online": state.network_state.is_online,
                "open_relays": state.network_state.open_relays,
                "total_relays": state.network_state.total_relays,
                "queued": state.queue_status.total_queued,
                "oldest_queued": state.queue_status.oldest,
                "newest_queued": state.queue_status.newest,
                "last_error": state.last_error,
            },
            indent=2,
        )
    )
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="obscur",
        description="obscur Nostr messaging engine",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=ENGINE_CONFIG,
        help=f"Engine config path (default: {ENGINE_CONFIG})",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Log level (default: INFO)",
    )

    parser.add_argument(
        "--relay",
        action="append",
        dest="relays",
        metavar="URL",
        help="Relay URL to use instead of the configured list (repeatable)",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("run", help="Run the DM controller and group services continuously")

    send = commands.add_parser("send", help="Send one direct message")
    send.add_argument("--to", required=True, help="Recipient npub or hex public key")
    send.add_argument("--message", required=True, help="Message text")
    send.add_argument("--reply-to", help="Id of the message being answered")

    sync = commands.add_parser("sync", help="Fetch direct messages missed while offline")
    sync.add_argument("--since", type=int, help="Unix timestamp lower bound")

    commands.add_parser("status", help="Show relay connectivity and queue status")

    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    """Configure the root logger with structured formatting.

    Installs a ``StructuredFormatter`` on the root handler so that all
    log output -- from both ``Logger`` (with ``structured_kv`` extra) and
    plain ``logging.getLogger()`` calls in lower layers -- is unified as
    ``level name message key=value ...``.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level))


async def main(argv: list[str] | None = None) -> int:
    """Main entry point: parse args, build the engine context, run the command."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        data = _load_yaml_dict(args.config)
        engine_config, dm_dict, group_dicts, contacts = _split_config(data, args.relays)
        trust = _build_trust(contacts)
        dm_config = DmControllerConfig(**dm_dict)
        group_configs = [GroupConfig(**g) for g in group_dicts]
        keys = load_keys_from_env(engine_config.keys_env)
    except (ConfigurationError, ValueError) as e:
        logger.error("config_invalid", error=str(e))
        return 2

    identity = LocalIdentity(keys)
    try:
        async with EngineContext.create(engine_config, pubkey=identity.public_key) as context:
            dm = DmController(
                context,
                dm_config,
                identity=identity,
                trust=trust,
                inbox=MemoryRequestsInbox(),
            )

            if args.command == "send":
                return await send_message(dm, args.to, args.message, args.reply_to)
            if args.command == "sync":
                return await sync_messages(dm, args.since)
            if args.command == "status":
                return await show_status(dm)

            services: list[BaseService[Any]] = [dm]
            services.extend(
                GroupMembershipService(context, g, identity=identity) for g in group_configs
            )
            return await run_services(services)
    except ConfigurationError as e:
        logger.error("config_invalid", error=str(e))
        return 2
    except KeyboardInterrupt:
        logger.info("interrupted")
        return 130


def cli() -> None:
    """Synchronous entry point for console_scripts."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
