"""Nostr key handling for obscur.

Loads the local identity's private key from an environment variable and
parses peer public keys given by users as 64-char hex or ``npub1`` bech32.
Both formats go through ``nostr_sdk`` so that checksum and curve-point
validation match what relays and other clients do.

Warning:
    Private keys must **never** be stored in configuration files or logged.
    Always pass them through the environment variable named by
    [KeysConfig.keys_env][obscur.utils.keys.KeysConfig].

Examples:
    ```python
    os.environ["PRIVATE_KEY"] = "nsec1..."  # pragma: allowlist secret
    keys = load_keys_from_env("PRIVATE_KEY")
    parse_public_key("npub1...")  # -> 64-char hex
    ```
"""

from __future__ import annotations

import os
from typing import Any

from nostr_sdk import Keys, PublicKey
from pydantic import BaseModel, Field, model_validator


ENV_PRIVATE_KEY = "PRIVATE_KEY"  # pragma: allowlist secret  # Default env var name


def load_keys_from_env(env_var: str) -> Keys:
    """Load Nostr keys from an environment variable.

    Args:
        env_var: Name of the environment variable holding an ``nsec1`` or
            64-char hex private key.

    Raises:
        ValueError: If the environment variable is not set or is empty.
        nostr_sdk.NostrSdkError: If the key value is malformed.
    """
    value = os.getenv(env_var)

    if not value:
        raise ValueError(
            f"{env_var} environment variable is required. Generate one with: openssl rand -hex 32"
        )

    return Keys.parse(value)


def parse_public_key(value: str) -> str:
    """Normalize a user-supplied public key to lowercase hex.

    Args:
        value: 64-char hex or ``npub1`` bech32, surrounding whitespace ignored.

    Raises:
        ValueError: If *value* is not a valid public key.
    """
    raw = value.strip() if isinstance(value, str) else ""
    if not raw:
        raise ValueError("public key is empty")
    try:
        return PublicKey.parse(raw).to_hex()
    except Exception as e:  # nostr_sdk raises its own FFI error type
        raise ValueError(f"invalid public key: {raw[:16]}...") from e


def secret_key_hex(keys: Keys) -> str:
    """Return the hex secret key of *keys* for the NIP-04 primitives."""
    return keys.secret_key().to_hex()


class KeysConfig(BaseModel):
    """Pydantic model that auto-loads Nostr keys from an environment variable.

    Attributes:
        keys_env: Environment variable name for the private key.
        keys: Loaded ``nostr_sdk.Keys`` instance (private + derived public key).

    Warning:
        The ``keys`` field contains a live private key. Do not serialize this
        model. ``arbitrary_types_allowed`` is required because
        ``nostr_sdk.Keys`` is a Rust-backed FFI type.
    """

    model_config = {"arbitrary_types_allowed": True}

    keys_env: str = Field(
        default=ENV_PRIVATE_KEY,
        min_length=1,
        description="Environment variable name for private key",
    )
    keys: Keys = Field(description="Keys loaded from keys_env (required)")

    @model_validator(mode="before")
    @classmethod
    def _load_keys_from_env(cls, data: Any) -> Any:
        """Auto-populate the ``keys`` field from the environment variable."""
        if isinstance(data, dict) and "keys" not in data:
            env_var = data.get("keys_env", ENV_PRIVATE_KEY)
            data["keys"] = load_keys_from_env(env_var)
        return data
