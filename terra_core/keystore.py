"""
Password-encrypted private key storage.

Record format (one JSON file per address)::

    {
      "keyAlgorithm":    {"name": "PBKDF2", "salt": "<b64>",
                          "iterations": 500000, "hash": "SHA-256"},
      "cipherAlgorithm": {"name": "AES-GCM", "iv": "<b64>"},
      "ciphertext":      "<b64 of AES-GCM ciphertext || 16-byte tag>"
    }

PBKDF2-HMAC-SHA256 with 500 000 iterations derives a 256-bit key from the
passphrase; AES-256-GCM with a fresh 16-byte IV provides authenticated
encryption.  Salt and IV are regenerated on every :func:`encrypt` call.
The ciphertext/tag layout matches WebCrypto's ``AES-GCM`` output.

Every decryption failure (wrong passphrase, tampered data, malformed
record) raises the same :class:`AuthenticationFailure`.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from Crypto.Cipher import AES

from terra_core.errors import AuthenticationFailure

logger = logging.getLogger("terra_keystore")

PBKDF2_ITERATIONS = 500_000
SALT_BYTES = 16
IV_BYTES = 16
KEY_BYTES = 32
TAG_BYTES = 16

KDF_NAME = "PBKDF2"
KDF_HASH = "SHA-256"
CIPHER_NAME = "AES-GCM"


@dataclass(frozen=True)
class KeyDerivationSpec:
    salt: bytes
    iterations: int = PBKDF2_ITERATIONS
    name: str = KDF_NAME
    hash: str = KDF_HASH

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "salt": _b64encode(self.salt),
            "iterations": self.iterations,
            "hash": self.hash,
        }


@dataclass(frozen=True)
class CipherSpec:
    iv: bytes
    name: str = CIPHER_NAME

    def to_dict(self) -> dict:
        return {"name": self.name, "iv": _b64encode(self.iv)}


@dataclass(frozen=True)
class EncryptedKeyRecord:
    key_derivation: KeyDerivationSpec
    cipher: CipherSpec
    ciphertext: bytes

    def to_dict(self) -> dict:
        return {
            "keyAlgorithm": self.key_derivation.to_dict(),
            "cipherAlgorithm": self.cipher.to_dict(),
            "ciphertext": _b64encode(self.ciphertext),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> EncryptedKeyRecord:
        try:
            kdf = data["keyAlgorithm"]
            cipher = data["cipherAlgorithm"]
            iterations = kdf["iterations"]
            if isinstance(iterations, bool) or not isinstance(iterations, int):
                raise TypeError("iterations must be an integer")
            return cls(
                key_derivation=KeyDerivationSpec(
                    salt=_b64decode(kdf["salt"]),
                    iterations=iterations,
                    name=str(kdf["name"]),
                    hash=str(kdf["hash"]),
                ),
                cipher=CipherSpec(iv=_b64decode(cipher["iv"]), name=str(cipher["name"])),
                ciphertext=_b64decode(data["ciphertext"]),
            )
        except (KeyError, TypeError, ValueError, binascii.Error):
            raise AuthenticationFailure() from None

    @classmethod
    def from_json(cls, text: str | bytes) -> EncryptedKeyRecord:
        try:
            data = json.loads(text)
        except (ValueError, UnicodeDecodeError):
            raise AuthenticationFailure() from None
        return cls.from_dict(data)


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64decode(value: Any) -> bytes:
    if not isinstance(value, str):
        raise TypeError("expected base64 string")
    return base64.b64decode(value, validate=True)


def _derive_key(password: str, spec: KeyDerivationSpec) -> bytes:
    return hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), spec.salt, spec.iterations, dklen=KEY_BYTES,
    )


def encrypt(private_key: str, password: str) -> EncryptedKeyRecord:
    """Encrypt *private_key* under a key derived from *password*."""
    kdf = KeyDerivationSpec(salt=os.urandom(SALT_BYTES))
    cipher_spec = CipherSpec(iv=os.urandom(IV_BYTES))
    key = _derive_key(password, kdf)
    cipher = AES.new(key, AES.MODE_GCM, nonce=cipher_spec.iv, mac_len=TAG_BYTES)
    ciphertext, tag = cipher.encrypt_and_digest(private_key.encode("utf-8"))
    return EncryptedKeyRecord(kdf, cipher_spec, ciphertext + tag)


def decrypt(record: EncryptedKeyRecord, password: str) -> str:
    """Recover the private key from *record*; raises ``AuthenticationFailure``."""
    kdf = record.key_derivation
    if (
        kdf.name != KDF_NAME
        or kdf.hash != KDF_HASH
        or kdf.iterations <= 0
        or not kdf.salt
        or record.cipher.name != CIPHER_NAME
        or not record.cipher.iv
        or len(record.ciphertext) < TAG_BYTES
    ):
        raise AuthenticationFailure()

    key = _derive_key(password, kdf)
    body, tag = record.ciphertext[:-TAG_BYTES], record.ciphertext[-TAG_BYTES:]
    cipher = AES.new(key, AES.MODE_GCM, nonce=record.cipher.iv, mac_len=TAG_BYTES)
    try:
        plaintext = cipher.decrypt_and_verify(body, tag)
        return plaintext.decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        raise AuthenticationFailure() from None


def read_record(path: str | Path) -> EncryptedKeyRecord:
    """Load a record from disk.  A missing file raises ``FileNotFoundError``."""
    text = Path(path).read_text(encoding="utf-8")
    return EncryptedKeyRecord.from_json(text)


def write_record(path: str | Path, record: EncryptedKeyRecord) -> None:
    """Persist *record*, creating the parent directory if needed."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(p.suffix + ".tmp")
    tmp.write_text(record.to_json(), encoding="utf-8")
    os.replace(tmp, p)
    logger.info(f"Keystore record written: {p.name}")
