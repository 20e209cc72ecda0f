"""Crypto service consumed by the DM controller.

Bundles NIP-01 signing/verification and NIP-04 payload encryption behind
one object configured with a
[KeyDerivation][obscur.nips.nip04.KeyDerivation]. The symmetric work runs
in a worker thread through ``asyncio.to_thread`` so a burst of incoming
messages does not stall the event loop.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from . import nip01, nip04
from .nip04 import KeyDerivation


if TYPE_CHECKING:
    from nostr_sdk import Keys

    from obscur.models.event import Event, UnsignedEvent


class CryptoService:
    """Sign, verify, encrypt and decrypt for one key-derivation scheme.

    Examples:
        ```python
        crypto = CryptoService()
        payload = await crypto.encrypt_dm("hi", my_secret_hex, bob_pubkey_hex)
        event = crypto.sign_event(unsigned, keys)
        assert crypto.verify_event_signature(event)
        ```
    """

    def __init__(self, derivation: KeyDerivation = KeyDerivation.STANDARD) -> None:
        self._derivation = KeyDerivation(derivation)

    @property
    def derivation(self) -> KeyDerivation:
        return self._derivation

    def sign_event(self, unsigned: UnsignedEvent, keys: Keys) -> Event:
        return nip01.sign_event(unsigned, keys)

    def verify_event_signature(self, event: Event) -> bool:
        return nip01.verify_event_signature(event)

    async def encrypt_dm(
        self, plaintext: str, sender_secret_hex: str, recipient_pubkey_hex: str
    ) -> str:
        """Encrypt *plaintext* for the recipient; raises ``CryptoError`` on bad keys."""
        return await asyncio.to_thread(
            nip04.encrypt,
            plaintext,
            sender_secret_hex,
            recipient_pubkey_hex,
            derivation=self._derivation,
        )

    async def decrypt_dm(
        self, payload: str, recipient_secret_hex: str, sender_pubkey_hex: str
    ) -> str:
        """Decrypt a payload from the sender; raises ``CryptoError`` on any failure."""
        return await asyncio.to_thread(
            nip04.decrypt,
            payload,
            recipient_secret_hex,
            sender_pubkey_hex,
            derivation=self._derivation,
        )
