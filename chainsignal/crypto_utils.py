"""Public-key primitives used to seal signalling messages.

Envelopes are encrypted with anonymous sealed boxes: Curve25519 key agreement
against an ephemeral key, XSalsa20-Poly1305 for the payload. Only the holder
of the recipient's private key can open them, and the relay never sees more
than ciphertext.
"""

from __future__ import annotations

import binascii
from typing import Tuple, Union

from nacl.exceptions import CryptoError
from nacl.public import PrivateKey, PublicKey, SealedBox

KEY_SIZE = PublicKey.SIZE

KeyLike = Union[str, bytes, bytearray, PublicKey]


def generate_keypair() -> Tuple[PrivateKey, PublicKey]:
    """Return a fresh Curve25519 private/public key pair."""

    private_key = PrivateKey.generate()
    return private_key, private_key.public_key


def _ensure_bytes(data: object) -> bytes:
    """Normalise *data* to a ``bytes`` instance."""

    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    raise TypeError("message must be bytes-like")


def encode_public_key(public_key: PublicKey) -> str:
    """Return the lowercase hex form of *public_key* for out-of-band sharing."""

    return bytes(public_key).hex()


def decode_public_key(value: KeyLike) -> PublicKey:
    """Parse *value* (hex text, raw bytes or a key object) into a ``PublicKey``."""

    if isinstance(value, PublicKey):
        return value
    if isinstance(value, str):
        text = value[2:] if value.startswith(("0x", "0X")) else value
        try:
            raw = bytes.fromhex(text)
        except ValueError as exc:
            raise ValueError("public key must be hex encoded") from exc
    elif isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        raise TypeError(f"unsupported public key type: {type(value).__name__}")

    if len(raw) != KEY_SIZE:
        raise ValueError(f"public key must be {KEY_SIZE} bytes, got {len(raw)}")
    return PublicKey(raw)


def decode_private_key(value: Union[str, bytes, PrivateKey]) -> PrivateKey:
    """Parse a hex or raw 32-byte private key."""

    if isinstance(value, PrivateKey):
        return value
    if isinstance(value, str):
        try:
            value = binascii.unhexlify(value[2:] if value.startswith("0x") else value)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("private key must be hex encoded") from exc
    if len(value) != PrivateKey.SIZE:
        raise ValueError(f"private key must be {PrivateKey.SIZE} bytes")
    return PrivateKey(bytes(value))


def encrypt_for(public_key: PublicKey, plaintext: bytes) -> bytes:
    """Seal *plaintext* so that only the owner of *public_key* can read it."""

    return SealedBox(public_key).encrypt(_ensure_bytes(plaintext))


def decrypt_with(private_key: PrivateKey, ciphertext: bytes) -> bytes:
    """Open a sealed box addressed to *private_key*.

    Raises :class:`nacl.exceptions.CryptoError` when the box was sealed for a
    different key or has been tampered with.
    """

    return SealedBox(private_key).decrypt(_ensure_bytes(ciphertext))


__all__ = [
    "CryptoError",
    "KEY_SIZE",
    "generate_keypair",
    "encode_public_key",
    "decode_public_key",
    "decode_private_key",
    "encrypt_for",
    "decrypt_with",
]
