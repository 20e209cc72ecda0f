"""Nostr Implementation Possibilities used by the messaging engine.

The NIPs layer sits in the middle of the diamond DAG next to
[obscur.core][obscur.core] and [obscur.utils][obscur.utils], depending on
[obscur.models][obscur.models] and on the shared exception hierarchy in
[obscur.core.exceptions][obscur.core.exceptions].

Attributes:
    sign_event, verify_event_signature: NIP-01 Schnorr signing through
        ``nostr_sdk``. Verification never raises.
    encrypt, decrypt: NIP-04 payload encryption (secp256k1 ECDH +
        AES-256-CBC). Every failure raises
        [CryptoError][obscur.core.exceptions.CryptoError].
    CryptoService: Async facade used by the DM controller.
    nip29: Group event builders and relay-state parsers.
"""

from . import nip29
from .crypto import CryptoService
from .nip01 import sign_event, verify_event_signature
from .nip04 import KeyDerivation, conversation_key, decrypt, encrypt
from .nip29 import (
    RoleGrant,
    build_create_group,
    build_edit_metadata,
    build_group_message,
    build_join_request,
    build_leave_request,
    build_put_user,
    build_remove_user,
    group_id_of,
    parse_admins,
    parse_group_metadata,
    parse_members,
    parse_role_grants,
)


__all__ = [
    "CryptoService",
    "KeyDerivation",
    "RoleGrant",
    "build_create_group",
    "build_edit_metadata",
    "build_group_message",
    "build_join_request",
    "build_leave_request",
    "build_put_user",
    "build_remove_user",
    "conversation_key",
    "decrypt",
    "encrypt",
    "group_id_of",
    "nip29",
    "parse_admins",
    "parse_group_metadata",
    "parse_members",
    "parse_role_grants",
    "sign_event",
    "verify_event_signature",
]
