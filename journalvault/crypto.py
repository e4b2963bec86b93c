# -*- coding: utf-8 -*-
"""Crypto helpers and key handling for journalvault.

This module encapsulates *stateless* cryptographic helpers and the
in-memory Data Key container. It does **not** perform any storage I/O.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import hmac as _hmac
import secrets

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationError, FormatError, InvalidRecoverySecret, NotUnlocked

# ---------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------

PH = PasswordHasher(
    time_cost=2,
    memory_cost=102_400,
    parallelism=8,
    hash_len=32,
    salt_len=16,
)

SCRYPT_N = 2 ** 15
SCRYPT_R = 8
SCRYPT_P = 1

KEY_LEN = 32
SALT_LEN = 16
NONCE_LEN = 12
TAG_LEN = 16

RECOVERY_GROUPS = 6
RECOVERY_GROUP_LEN = 4
# Crockford-ish alphabet: no 0/O or 1/I/L confusion when read aloud.
RECOVERY_ALPHABET = "ABCDEFGHJKMNPQRSTVWXYZ23456789"


# ---------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class KdfParams:
    """scrypt work factor. Persisted next to the salt it was used with."""

    n: int = SCRYPT_N
    r: int = SCRYPT_R
    p: int = SCRYPT_P

    def to_dict(self) -> Dict[str, int]:
        return {"n": self.n, "r": self.r, "p": self.p}

    @classmethod
    def from_dict(cls, data: object) -> "KdfParams":
        if not isinstance(data, dict):
            raise FormatError("KDF parameters must be an object")
        try:
            params = cls(n=int(data["n"]), r=int(data["r"]), p=int(data["p"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise FormatError("Malformed KDF parameters") from exc
        params.validate()
        return params

    def validate(self) -> None:
        if self.n < 2 or self.n & (self.n - 1):
            raise FormatError("scrypt n must be a power of two greater than 1")
        if self.r < 1 or self.p < 1:
            raise FormatError("scrypt r and p must be positive")


class DataKey:
    """A symmetric key held only in memory.

    The material lives in a ``bytearray`` so :meth:`destroy` can overwrite it.
    Python may still hold transient copies (e.g. inside AESGCM), so zeroing is
    best effort.
    """

    __slots__ = ("_buf", "_destroyed")

    def __init__(self, material: bytes):
        if len(material) != KEY_LEN:
            raise FormatError(f"Data key must be {KEY_LEN} bytes")
        self._buf = bytearray(material)
        self._destroyed = False

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def material(self) -> bytes:
        if self._destroyed:
            raise NotUnlocked("Data key has been destroyed")
        return bytes(self._buf)

    def destroy(self) -> None:
        """Zero the key material. Safe to call more than once."""
        for i in range(len(self._buf)):
            self._buf[i] = 0
        self._destroyed = True

    def same_as(self, other: "DataKey") -> bool:
        """Constant-time comparison of two live keys."""
        return _hmac.compare_digest(self.material, other.material)

    def __repr__(self) -> str:
        state = "destroyed" if self._destroyed else "live"
        return f"<DataKey {state}>"

    __str__ = __repr__

    def __enter__(self) -> "DataKey":
        return self

    def __exit__(self, *exc_info) -> None:
        self.destroy()


# ---------------------------------------------------------------------
# KDF / AEAD helpers
# ---------------------------------------------------------------------

def scrypt_kdf(secret: str, salt: bytes, params: KdfParams, length: int = KEY_LEN) -> bytes:
    """Derive raw key bytes from a secret using scrypt."""
    kdf = Scrypt(salt=salt, length=length, n=params.n, r=params.r, p=params.p)
    return kdf.derive(secret.encode("utf-8"))


def derive_key(
    password: str,
    salt: Optional[bytes] = None,
    params: Optional[KdfParams] = None,
) -> Tuple[DataKey, bytes]:
    """Derive the Data Key for *password*; return ``(key, salt)``.

    Without *salt* a fresh random one is generated (vault creation). With a
    salt the result is deterministic (unlock). A wrong password is not
    detected here; that is the verification token's job.
    """
    params = params or KdfParams()
    params.validate()
    if salt is None:
        salt = secrets.token_bytes(SALT_LEN)
    elif not isinstance(salt, (bytes, bytearray)) or len(salt) < SALT_LEN:
        raise FormatError(f"Salt must be at least {SALT_LEN} bytes")
    salt = bytes(salt)
    return DataKey(scrypt_kdf(password, salt, params)), salt


def aesgcm_encrypt(key: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    """Encrypt *plaintext* with AES-GCM; return (nonce, ciphertext)."""
    nonce = secrets.token_bytes(NONCE_LEN)
    ct = AESGCM(key).encrypt(nonce, plaintext, aad)
    return nonce, ct


def aesgcm_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, aad: Optional[bytes] = None) -> bytes:
    """Decrypt AES-GCM *ciphertext* with *nonce*; return plaintext.

    Raises ``FormatError`` for structurally invalid input and
    ``AuthenticationError`` when the tag does not verify.
    """
    if not isinstance(nonce, (bytes, bytearray)) or len(nonce) != NONCE_LEN:
        raise FormatError(f"IV must be {NONCE_LEN} bytes")
    if not isinstance(ciphertext, (bytes, bytearray)) or len(ciphertext) < TAG_LEN:
        raise FormatError("Ciphertext is shorter than the authentication tag")
    try:
        return AESGCM(key).decrypt(bytes(nonce), bytes(ciphertext), aad)
    except InvalidTag as exc:
        raise AuthenticationError("Authentication tag mismatch") from exc


def seal_key(wrapping: DataKey, key: DataKey, aad: bytes) -> Tuple[bytes, bytes]:
    """Seal *key* under *wrapping*; return (nonce, ciphertext)."""
    return aesgcm_encrypt(wrapping.material, key.material, aad=aad)


def open_key(wrapping: DataKey, nonce: bytes, ciphertext: bytes, aad: bytes) -> DataKey:
    """Inverse of :func:`seal_key`."""
    return DataKey(aesgcm_decrypt(wrapping.material, nonce, ciphertext, aad=aad))


# ---------------------------------------------------------------------
# Recovery secret
# ---------------------------------------------------------------------

def generate_recovery_secret() -> str:
    """Return a random, human-transcribable recovery secret (XXXX-XXXX-...)."""
    groups = [
        "".join(secrets.choice(RECOVERY_ALPHABET) for _ in range(RECOVERY_GROUP_LEN))
        for _ in range(RECOVERY_GROUPS)
    ]
    return "-".join(groups)


def normalize_recovery_secret(secret: str) -> str:
    """Uppercase and drop separators/whitespace so transcription typos in
    formatting do not matter."""
    return "".join(ch for ch in secret.upper() if ch.isalnum())


def hash_recovery_secret(secret: str) -> str:
    """One-way argon2 hash of a recovery secret."""
    return PH.hash(normalize_recovery_secret(secret))


def check_recovery_secret(stored_hash: str, secret: str) -> None:
    """Raise ``InvalidRecoverySecret`` unless *secret* matches *stored_hash*."""
    try:
        PH.verify(stored_hash, normalize_recovery_secret(secret))
    except (VerifyMismatchError, VerificationError, InvalidHashError) as exc:
        raise InvalidRecoverySecret("Invalid recovery secret") from exc


def derive_recovery_kek(secret: str, salt: bytes, params: KdfParams) -> DataKey:
    """Key-encryption key derived from the recovery secret."""
    key, _ = derive_key(normalize_recovery_secret(secret), salt, params)
    return key
