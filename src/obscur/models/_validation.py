"""Shared validation helpers for model dataclasses.

Private module -- not part of the public API. Used by ``__post_init__``
methods in sibling model modules to enforce runtime type constraints,
null-byte safety, and hex encoding of protocol identifiers.
"""

from __future__ import annotations

import string
from collections.abc import Mapping
from typing import Any


_HEX_DIGITS = frozenset(string.hexdigits.lower())


def validate_instance(value: Any, expected: type, name: str) -> None:
    """Raise ``TypeError`` if *value* is not an instance of *expected*."""
    if not isinstance(value, expected):
        article = "an" if expected.__name__[0] in "AEIOUaeiou" else "a"
        raise TypeError(f"{name} must be {article} {expected.__name__}, got {type(value).__name__}")


def validate_timestamp(value: Any, name: str) -> None:
    """Raise if *value* is not a non-negative ``int`` (``bool`` excluded)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative")


def validate_str_no_null(value: Any, name: str) -> None:
    """Raise if *value* is not a ``str`` or contains null bytes."""
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a str, got {type(value).__name__}")
    if "\x00" in value:
        raise ValueError(f"{name} contains null bytes")


def validate_str_not_empty(value: Any, name: str) -> None:
    """Raise if *value* is not a non-empty ``str`` without null bytes."""
    validate_str_no_null(value, name)
    if not value:
        raise ValueError(f"{name} must not be empty")


def validate_hex(value: Any, length: int, name: str) -> None:
    """Raise if *value* is not a lowercase hex string of exactly *length* chars."""
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a str, got {type(value).__name__}")
    if len(value) != length or not set(value) <= _HEX_DIGITS:
        raise ValueError(f"{name} must be {length} lowercase hex characters")


def is_hex(value: Any, length: int) -> bool:
    """Return True if *value* would pass [validate_hex][obscur.models._validation.validate_hex]."""
    return isinstance(value, str) and len(value) == length and set(value) <= _HEX_DIGITS


def validate_mapping(value: Any, name: str) -> None:
    """Raise ``TypeError`` if *value* is not a ``Mapping``."""
    if not isinstance(value, Mapping):
        raise TypeError(f"{name} must be a Mapping, got {type(value).__name__}")


def validate_tags(value: Any, name: str) -> tuple[tuple[str, ...], ...]:
    """Validate a Nostr tag list and return it as a tuple of string tuples.

    Every tag must be a non-empty sequence of strings without null bytes.
    Lists and tuples are both accepted so that JSON-decoded payloads can be
    passed through unchanged.
    """
    if not isinstance(value, list | tuple):
        raise TypeError(f"{name} must be a list, got {type(value).__name__}")
    frozen: list[tuple[str, ...]] = []
    for tag in value:
        if not isinstance(tag, list | tuple) or not tag:
            raise ValueError(f"{name} entries must be non-empty lists")
        for item in tag:
            validate_str_no_null(item, f"{name} value")
        frozen.append(tuple(tag))
    return tuple(frozen)
