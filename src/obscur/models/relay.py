"""
Validated Nostr relay URL with network type detection.

Parses and normalizes WebSocket relay URLs (``ws://`` or ``wss://``) so that
the same relay written two ways maps to one pool connection and one circuit
breaker. The network type decides whether a SOCKS5 proxy is needed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from ipaddress import ip_address
from typing import Any, ClassVar

from rfc3986 import uri_reference
from rfc3986.exceptions import UnpermittedComponentError, ValidationError
from rfc3986.validators import Validator

from .constants import NetworkType


@dataclass(frozen=True, slots=True)
class Relay:
    """Immutable, normalized relay endpoint.

    The scheme is enforced per network:

    * **clearnet** -- ``wss://`` (TLS required on the public internet)
    * **tor / i2p / loki** -- ``ws://`` (encryption handled by the overlay)
    * **local** -- kept as given, for development relays on loopback or
      private addresses

    Attributes:
        url: Fully normalized URL including scheme.
        network: Detected [NetworkType][obscur.models.constants.NetworkType].
        host: Hostname or IP address (brackets stripped for IPv6).
        port: Explicit non-default port, or ``None``.

    Raises:
        ValueError: If the URL is malformed, uses an unsupported scheme,
            has an unclassifiable host, or contains null bytes.

    Examples:
        ```python
        Relay("wss://Relay.Example.com/").url   # 'wss://relay.example.com'
        Relay("ws://abc.onion").network          # NetworkType.TOR
        Relay("ws://localhost:7777").url         # 'ws://localhost:7777'
        ```
    """

    raw_url: str = field(repr=False)

    url: str = field(init=False)
    network: NetworkType = field(init=False)
    host: str = field(init=False)
    port: int | None = field(init=False)

    _PORT_WS: ClassVar[int] = 80
    _PORT_WSS: ClassVar[int] = 443

    _NETWORK_TLDS: ClassVar[dict[str, NetworkType]] = {
        ".onion": NetworkType.TOR,
        ".i2p": NetworkType.I2P,
        ".loki": NetworkType.LOKI,
    }

    def __post_init__(self) -> None:
        if "\x00" in self.raw_url:
            raise ValueError("Relay URL contains null bytes")

        parsed = self._parse(self.raw_url)
        if parsed["network"] == NetworkType.UNKNOWN:
            raise ValueError(f"Invalid host: '{parsed['host']}'")

        object.__setattr__(self, "url", parsed["url"])
        object.__setattr__(self, "network", parsed["network"])
        object.__setattr__(self, "host", parsed["host"])
        object.__setattr__(self, "port", parsed["port"])

    def __str__(self) -> str:
        return self.url

    @staticmethod
    def _detect_network(host: str) -> NetworkType:
        """Classify a hostname into a network type."""
        if not host:
            return NetworkType.UNKNOWN

        host_bare = host.lower().strip("[]")

        for tld, network in Relay._NETWORK_TLDS.items():
            if host_bare.endswith(tld):
                return network

        if host_bare in ("localhost", "localhost.localdomain"):
            return NetworkType.LOCAL

        try:
            ip = ip_address(host_bare)
        except ValueError:
            pass
        else:
            if ip.is_private or ip.is_loopback or ip.is_link_local:
                return NetworkType.LOCAL
            return NetworkType.CLEARNET

        if "." not in host_bare:
            return NetworkType.UNKNOWN

        labels = host_bare.split(".")
        valid = all(
            label and not label.startswith("-") and not label.endswith("-") for label in labels
        )
        return NetworkType.CLEARNET if valid else NetworkType.UNKNOWN

    @staticmethod
    def _parse(raw: str) -> dict[str, Any]:
        """Parse and normalize a raw relay URL string.

        Raises:
            ValueError: If the scheme is not ``ws``/``wss`` or the URI is invalid.
        """
        uri = uri_reference(raw.strip()).normalize()

        validator = (
            Validator()
            .require_presence_of("scheme", "host")
            .allow_schemes("ws", "wss")
            .check_validity_of("scheme", "host", "port", "path")
        )

        try:
            validator.validate(uri)
        except UnpermittedComponentError:
            raise ValueError("Invalid scheme: must be ws or wss") from None
        except ValidationError as e:
            raise ValueError(f"Invalid URL: {e}") from None

        if uri.fragment:
            raise ValueError(f"Relay URL must not contain a fragment: #{uri.fragment}")

        port = int(uri.port) if uri.port else None
        host = uri.host.strip("[]")

        path = uri.path or ""
        while "//" in path:
            path = path.replace("//", "/")
        path = path.rstrip("/")

        network = Relay._detect_network(host)
        if network == NetworkType.CLEARNET:
            scheme = "wss"
        elif network == NetworkType.LOCAL:
            scheme = uri.scheme
        else:
            scheme = "ws"

        formatted_host = f"[{host}]" if ":" in host else host
        default_port = Relay._PORT_WSS if scheme == "wss" else Relay._PORT_WS
        if port == default_port:
            port = None
        netloc = f"{formatted_host}:{port}" if port else formatted_host
        query = f"?{uri.query}" if uri.query else ""

        return {
            "url": f"{scheme}://{netloc}{path}{query}",
            "host": host,
            "port": port,
            "network": network,
        }


def normalize_relay_url(url: str) -> str:
    """Return the normalized form of *url*; shorthand for ``Relay(url).url``."""
    return Relay(url).url
