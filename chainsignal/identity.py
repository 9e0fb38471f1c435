"""Local identities and the directory of known peers."""

from __future__ import annotations

import base64
import binascii
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Tuple

from eth_account import Account
from nacl import pwhash, secret, utils
from nacl.exceptions import CryptoError
from nacl.public import PrivateKey, PublicKey
from web3 import Web3

from . import crypto_utils
from .errors import DirectoryRequiredError, UnknownPeerError

NULL_ADDRESS = "0x" + "00" * 20

KEYFILE_VERSION = 1
KDF_OPSLIMIT = pwhash.argon2id.OPSLIMIT_INTERACTIVE
KDF_MEMLIMIT = pwhash.argon2id.MEMLIMIT_INTERACTIVE


def normalize_address(address: str) -> str:
    """Return the EIP-55 checksum form of a ledger account *address*."""

    if not isinstance(address, str) or not Web3.is_address(address):
        raise ValueError(f"invalid ledger address: {address!r}")
    return Web3.to_checksum_address(address)


def is_null_address(address: str) -> bool:
    return isinstance(address, str) and address.lower() == NULL_ADDRESS


def _derive_key(password: str, salt: bytes) -> bytes:
    return pwhash.argon2id.kdf(
        secret.SecretBox.KEY_SIZE,
        password.encode("utf-8"),
        salt,
        opslimit=KDF_OPSLIMIT,
        memlimit=KDF_MEMLIMIT,
    )


@dataclass(frozen=True)
class Identity:
    """A ledger account paired with the keypair used to open envelopes.

    The address is what the relay authenticates; the encryption key is only
    used for envelope confidentiality and never signs anything on the ledger.
    """

    address: str
    encryption_key: PrivateKey

    def __post_init__(self) -> None:
        object.__setattr__(self, "address", normalize_address(self.address))

    @classmethod
    def generate(cls, address: Optional[str] = None) -> Tuple["Identity", Optional[str]]:
        """Create an identity with a fresh encryption keypair.

        When *address* is omitted a new ledger account is created as well and
        its hex private key is returned as the second element; otherwise the
        second element is ``None``.
        """

        account_key = None
        if address is None:
            account = Account.create()
            address = account.address
            account_key = account.key.hex()
        private_key, _ = crypto_utils.generate_keypair()
        return cls(address, private_key), account_key

    @property
    def public_key(self) -> PublicKey:
        return self.encryption_key.public_key

    @property
    def public_key_hex(self) -> str:
        return crypto_utils.encode_public_key(self.public_key)

    def save_to_file(self, filename: str, password: str) -> None:
        """Encrypt and save the encryption key to *filename* using *password*."""

        salt = utils.random(pwhash.argon2id.SALTBYTES)
        box = secret.SecretBox(_derive_key(password, salt))
        encrypted = box.encrypt(bytes(self.encryption_key))

        with open(filename, "w", encoding="utf-8") as f:
            json.dump(
                {
                    "version": KEYFILE_VERSION,
                    "address": self.address,
                    "salt": base64.b64encode(salt).decode("ascii"),
                    "data": base64.b64encode(encrypted).decode("ascii"),
                },
                f,
            )

    @classmethod
    def load_from_file(cls, filename: str, password: str) -> "Identity":
        """Load and decrypt an identity from *filename* using *password*."""

        if not os.path.exists(filename):
            raise ValueError("Identity file not found")

        with open(filename, "r", encoding="utf-8") as f:
            blob = json.load(f)

        try:
            if blob["version"] != KEYFILE_VERSION:
                raise ValueError(f"Unsupported identity file version {blob['version']!r}")
            address = blob["address"]
            salt = base64.b64decode(blob["salt"])
            encrypted = base64.b64decode(blob["data"])
        except (KeyError, TypeError, binascii.Error) as exc:
            raise ValueError("Malformed identity file") from exc

        box = secret.SecretBox(_derive_key(password, salt))
        try:
            raw_key = box.decrypt(encrypted)
        except CryptoError as exc:
            raise ValueError("Invalid password or corrupt identity file") from exc
        return cls(address, PrivateKey(raw_key))


class PeerDirectory(Mapping):
    """Read-only map from peer address to that peer's encryption public key."""

    def __init__(self, keys: Mapping):
        if not keys:
            raise DirectoryRequiredError()
        self._keys: Dict[str, PublicKey] = {
            normalize_address(address): crypto_utils.decode_public_key(key)
            for address, key in keys.items()
        }

    def public_key_for(self, address: str) -> PublicKey:
        """Return the key for *address*, raising :class:`UnknownPeerError` if absent."""

        try:
            return self._keys[normalize_address(address)]
        except (KeyError, ValueError):
            raise UnknownPeerError(address) from None

    def __getitem__(self, address: str) -> PublicKey:
        try:
            return self._keys[normalize_address(address)]
        except ValueError:
            raise KeyError(address) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def __repr__(self) -> str:
        return f"PeerDirectory({sorted(self._keys)!r})"


__all__ = [
    "NULL_ADDRESS",
    "normalize_address",
    "is_null_address",
    "Identity",
    "PeerDirectory",
]
