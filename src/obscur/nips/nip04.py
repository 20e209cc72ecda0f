"""NIP-04 encrypted direct message payloads.

The shared secret is the x-coordinate of the secp256k1 ECDH point between
the local secret key and the peer's x-only public key (lifted with the
even-y ``02`` prefix). It is used directly as the AES-256 key by
interoperable clients, or hashed with SHA-256 by older ones; see
[KeyDerivation][obscur.nips.nip04.KeyDerivation].

Payload format::

    base64(aes_256_cbc(pkcs7(plaintext))) + "?iv=" + base64(iv)

Every failure -- malformed keys, malformed payload, bad padding, invalid
UTF-8 -- raises [CryptoError][obscur.core.exceptions.CryptoError]; decrypt
never returns garbage plaintext.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from enum import StrEnum

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from obscur.core.exceptions import CryptoError
from obscur.models._validation import is_hex


IV_LENGTH = 16
_IV_SEPARATOR = "?iv="
_BLOCK_BITS = 128


class KeyDerivation(StrEnum):
    """How the ECDH x-coordinate becomes the AES key."""

    STANDARD = "standard"
    SHA256 = "sha256"


def _shared_secret(secret_hex: str, pubkey_hex: str) -> bytes:
    if not is_hex(secret_hex, 64):
        raise CryptoError("secret key must be 64 hex characters")
    if not is_hex(pubkey_hex, 64):
        raise CryptoError("public key must be 64 hex characters")
    try:
        private = ec.derive_private_key(int(secret_hex, 16), ec.SECP256K1())
        public = ec.EllipticCurvePublicKey.from_encoded_point(
            ec.SECP256K1(), b"\x02" + bytes.fromhex(pubkey_hex)
        )
        return private.exchange(ec.ECDH(), public)
    except ValueError as e:
        raise CryptoError(f"invalid key material: {e}") from e


def conversation_key(
    secret_hex: str,
    pubkey_hex: str,
    derivation: KeyDerivation = KeyDerivation.STANDARD,
) -> bytes:
    """Return the 32-byte AES key shared between two identities."""
    shared = _shared_secret(secret_hex, pubkey_hex)
    if derivation == KeyDerivation.SHA256:
        return hashlib.sha256(shared).digest()
    return shared


def encrypt(
    plaintext: str,
    sender_secret_hex: str,
    recipient_pubkey_hex: str,
    *,
    derivation: KeyDerivation = KeyDerivation.STANDARD,
) -> str:
    """Encrypt *plaintext* for *recipient_pubkey_hex*.

    Raises:
        CryptoError: If either key is malformed.
    """
    key = conversation_key(sender_secret_hex, recipient_pubkey_hex, derivation)
    iv = os.urandom(IV_LENGTH)

    padder = padding.PKCS7(_BLOCK_BITS).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return (
        base64.b64encode(ciphertext).decode("ascii")
        + _IV_SEPARATOR
        + base64.b64encode(iv).decode("ascii")
    )


def decrypt(
    payload: str,
    recipient_secret_hex: str,
    sender_pubkey_hex: str,
    *,
    derivation: KeyDerivation = KeyDerivation.STANDARD,
) -> str:
    """Decrypt a NIP-04 *payload* sent by *sender_pubkey_hex*.

    Raises:
        CryptoError: On malformed keys or payload, or when the ciphertext
            does not decrypt to valid padded UTF-8.
    """
    if not isinstance(payload, str) or payload.count(_IV_SEPARATOR) != 1:
        raise CryptoError("payload is not in NIP-04 format")

    ct_b64, iv_b64 = payload.split(_IV_SEPARATOR)
    try:
        ciphertext = base64.b64decode(ct_b64, validate=True)
        iv = base64.b64decode(iv_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CryptoError("payload is not valid base64") from e

    if len(iv) != IV_LENGTH:
        raise CryptoError(f"iv must be {IV_LENGTH} bytes")
    if not ciphertext or len(ciphertext) % (_BLOCK_BITS // 8):
        raise CryptoError("ciphertext length is not a multiple of the block size")

    key = conversation_key(recipient_secret_hex, sender_pubkey_hex, derivation)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    try:
        unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
        data = unpadder.update(padded) + unpadder.finalize()
        return data.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        raise CryptoError("decryption failed") from e
