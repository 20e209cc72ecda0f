"""NIP-01 event signing and verification.

Signing delegates to ``nostr_sdk`` (BIP-340 Schnorr over secp256k1) and
converts the result back into the engine's
[Event][obscur.models.event.Event]. Verification never raises: anything
that does not parse, whose id does not match its content, or whose
signature fails is reported as ``False``.
"""

from __future__ import annotations

import json
import logging

from nostr_sdk import Event as NostrEvent
from nostr_sdk import EventBuilder, Keys, Kind, Tag, Timestamp

from obscur.core.exceptions import CryptoError, InvalidEventError
from obscur.models.event import Event, UnsignedEvent


logger = logging.getLogger(__name__)


def sign_event(unsigned: UnsignedEvent, keys: Keys) -> Event:
    """Compute the id of *unsigned* and sign it with *keys*.

    Raises:
        CryptoError: If *keys* does not belong to ``unsigned.pubkey`` or
            signing fails.
        InvalidEventError: If the signed id does not match the locally
            computed one.
    """
    signer_pubkey = keys.public_key().to_hex()
    if signer_pubkey != unsigned.pubkey:
        raise CryptoError("signing key does not match the event author")

    try:
        builder = (
            EventBuilder(Kind(unsigned.kind), unsigned.content)
            .tags([Tag.parse(list(t)) for t in unsigned.tags])
            .custom_created_at(Timestamp.from_secs(unsigned.created_at))
        )
        signed = builder.sign_with_keys(keys)
    except Exception as e:  # nostr_sdk raises its own FFI error types
        raise CryptoError(f"event signing failed: {e}") from e

    event = Event.from_dict(json.loads(signed.as_json()))
    if event.id != unsigned.compute_id():
        raise InvalidEventError("signed event id does not match computed id")
    return event


def verify_event_signature(event: Event) -> bool:
    """Return True if *event* has a correct id and a valid Schnorr signature."""
    if event.id != event.compute_id():
        return False
    try:
        return bool(NostrEvent.from_json(event.to_json()).verify())
    except Exception as e:  # malformed input must never escape verification
        logger.debug("signature_verification_error error=%s", e)
        return False
