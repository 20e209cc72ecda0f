"""Utility layer: key loading and public key parsing.

Depends only on third-party libraries (``nostr_sdk``, ``pydantic``) and is
shared by the NIPs and services layers.
"""

from .keys import (
    ENV_PRIVATE_KEY,
    KeysConfig,
    load_keys_from_env,
    parse_public_key,
    secret_key_hex,
)


__all__ = [
    "ENV_PRIVATE_KEY",
    "KeysConfig",
    "load_keys_from_env",
    "parse_public_key",
    "secret_key_hex",
]
