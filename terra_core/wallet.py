"""
Wallet handles for Terra accounts.

A :class:`WalletHandle` wraps a secp256k1 signing key and its bech32 account
address (``terra1...``).  Handles are rebuilt from the encrypted keystore on
every request and are never cached by this package; the decrypted key lives
only as long as the caller keeps the handle.
"""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path

from bech32 import bech32_decode, bech32_encode, convertbits
from Crypto.Hash import RIPEMD160
from ecdsa import BadSignatureError, SECP256k1, SigningKey
from ecdsa.util import sigencode_string_canonize

from terra_core import keystore
from terra_core.errors import KeystoreFileNotFound, MissingPassphrase

logger = logging.getLogger("terra_wallet")

DEFAULT_PREFIX = "terra"


def hash160(data: bytes) -> bytes:
    """RIPEMD-160(SHA-256(data)), the Cosmos account-id digest."""
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


def derive_address(public_key: bytes, prefix: str = DEFAULT_PREFIX) -> str:
    """Bech32 account address for a 33-byte compressed public key."""
    words = convertbits(hash160(public_key), 8, 5)
    return bech32_encode(prefix, words)


def is_valid_address(address: str, prefix: str | None = None) -> bool:
    """True if *address* is a well-formed bech32 account address."""
    if not isinstance(address, str):
        return False
    hrp, data = bech32_decode(address)
    if hrp is None or data is None:
        return False
    if prefix is not None and hrp != prefix:
        return False
    decoded = convertbits(data, 5, 8, False)
    return decoded is not None and len(decoded) == 20


class WalletHandle:
    """Signable wallet bound to a live private key."""

    __slots__ = ("_signing_key", "public_key", "address", "prefix")

    def __init__(self, signing_key: SigningKey, prefix: str = DEFAULT_PREFIX):
        self._signing_key = signing_key
        self.public_key: bytes = signing_key.get_verifying_key().to_string("compressed")
        self.prefix = prefix
        self.address = derive_address(self.public_key, prefix)

    def sign(self, message: bytes) -> bytes:
        """64-byte ``r || s`` signature over SHA-256(message), low-S form."""
        return self._signing_key.sign_deterministic(
            message,
            hashfunc=hashlib.sha256,
            sigencode=sigencode_string_canonize,
        )

    def verify(self, message: bytes, signature: bytes) -> bool:
        vk = self._signing_key.get_verifying_key()
        try:
            return vk.verify(signature, message, hashfunc=hashlib.sha256)
        except BadSignatureError:
            return False

    def __repr__(self) -> str:
        return f"WalletHandle({self.address})"


class PassphraseHolder:
    """Process-wide keystore passphrase.

    The secret is taken from the constructor, or from ``TERRA_PASSPHRASE``
    when none is given.  An empty string counts as "not configured".
    """

    ENV_VAR = "TERRA_PASSPHRASE"

    def __init__(self, passphrase: str | None = None):
        if passphrase is None:
            passphrase = os.environ.get(self.ENV_VAR)
        self._passphrase = passphrase or None

    def read_passphrase(self) -> str | None:
        return self._passphrase

    def __repr__(self) -> str:
        state = "set" if self._passphrase else "unset"
        return f"PassphraseHolder({state})"


def _signing_key_from_hex(private_key: str) -> SigningKey:
    try:
        raw = bytes.fromhex(private_key.strip().removeprefix("0x"))
    except (AttributeError, ValueError):
        raise ValueError("Private key must be a hex string") from None
    if len(raw) != 32:
        raise ValueError(f"Private key must be 32 bytes, got {len(raw)}")
    secexp = int.from_bytes(raw, "big")
    if not 1 <= secexp < SECP256k1.order:
        raise ValueError("Private key is outside the secp256k1 range")
    return SigningKey.from_string(raw, curve=SECP256k1)


class WalletFactory:
    """Builds wallet handles from raw keys or from the encrypted keystore."""

    def __init__(self, wallet_dir: str | Path, passphrase: PassphraseHolder):
        self.wallet_dir = Path(wallet_dir)
        self.passphrase = passphrase

    def key_path(self, address: str) -> Path:
        return self.wallet_dir / f"{address}.json"

    def from_private_key(self, private_key: str, prefix: str = DEFAULT_PREFIX) -> WalletHandle:
        return WalletHandle(_signing_key_from_hex(private_key), prefix)

    def from_encrypted_file(self, address: str, prefix: str = DEFAULT_PREFIX) -> WalletHandle:
        """Decrypt ``<wallet_dir>/<address>.json`` into a wallet handle."""
        password = self.passphrase.read_passphrase()
        if not password:
            raise MissingPassphrase()

        path = self.key_path(address)
        if Path(address).name != address:
            raise KeystoreFileNotFound(address, str(path))
        try:
            record = keystore.read_record(path)
        except FileNotFoundError:
            raise KeystoreFileNotFound(address, str(path)) from None

        private_key = keystore.decrypt(record, password)
        return self.from_private_key(private_key, prefix)

    def add_wallet(self, private_key: str, prefix: str = DEFAULT_PREFIX) -> str:
        """Encrypt *private_key* into the keystore and return its address."""
        password = self.passphrase.read_passphrase()
        if not password:
            raise MissingPassphrase()
        wallet = self.from_private_key(private_key, prefix)
        keystore.write_record(self.key_path(wallet.address), keystore.encrypt(private_key, password))
        logger.info(f"Wallet added: {wallet.address}")
        return wallet.address
