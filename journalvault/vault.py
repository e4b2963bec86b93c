# -*- coding: utf-8 -*-
"""Vault metadata and the lock state machine.

The vault is one metadata blob per installation: the KDF salt and work
factor, a verification token sealed under the current Data Key, and the
optional recovery block. Whether a candidate key is correct is decided only
by opening the verification token; no password hash is stored.

States::

    UNINITIALIZED --create_vault--> UNLOCKED
    LOCKED --unlock--> UNLOCKED --lock--> LOCKED
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional
import asyncio
import base64
import binascii
import enum
import json
import logging
import secrets

from .crypto import (
    SALT_LEN,
    DataKey,
    KdfParams,
    aesgcm_decrypt,
    aesgcm_encrypt,
    check_recovery_secret,
    derive_key,
    derive_recovery_kek,
    hash_recovery_secret,
    open_key,
    seal_key,
)
from .errors import (
    AlreadyExists,
    AuthenticationError,
    FormatError,
    InvalidRecoverySecret,
    NotUnlocked,
    VaultNotInitialized,
    WrongPassword,
)
from .records import utc_now
from .storage import StorageBackend

logger = logging.getLogger(__name__)

METADATA_VERSION = 1
VERIFY_MARKER = "journalvault/verify"
VERIFY_AAD = b"journalvault/verify"
RECOVERY_WRAP_AAD = b"journalvault/recovery/data-key"
RECOVERY_KEK_AAD = b"journalvault/recovery/kek"
PENDING_AAD = b"journalvault/pending/data-key"


class VaultState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    LOCKED = "locked"
    UNLOCKED = "unlocked"


# ---------------------------------------------------------------------
# Metadata model
# ---------------------------------------------------------------------

def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _unb64(value: Any, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, TypeError, ValueError) as exc:
        raise FormatError(f"Vault metadata field {what!r} is not base64") from exc


def _require(data: Dict[str, Any], key: str) -> Any:
    try:
        return data[key]
    except (KeyError, TypeError) as exc:
        raise FormatError(f"Vault metadata is missing {key!r}") from exc


@dataclass(frozen=True)
class Sealed:
    """An AES-GCM ``(iv, ciphertext)`` pair."""

    iv: bytes
    ciphertext: bytes

    def to_dict(self) -> Dict[str, str]:
        return {"iv": _b64(self.iv), "ciphertext": _b64(self.ciphertext)}

    @classmethod
    def from_dict(cls, data: Any) -> "Sealed":
        return cls(
            iv=_unb64(_require(data, "iv"), "iv"),
            ciphertext=_unb64(_require(data, "ciphertext"), "ciphertext"),
        )


@dataclass(frozen=True)
class RecoveryBlock:
    """Recovery path: the Data Key sealed under a KEK derived from the
    recovery secret, and that KEK sealed under the Data Key so a password
    change can re-seal it without knowing the secret."""

    hash: str
    salt: bytes
    kdf: KdfParams
    wrapped_key: Sealed
    wrapped_kek: Sealed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "salt": _b64(self.salt),
            "kdf": self.kdf.to_dict(),
            "wrapped_key": self.wrapped_key.to_dict(),
            "wrapped_kek": self.wrapped_kek.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "RecoveryBlock":
        return cls(
            hash=str(_require(data, "hash")),
            salt=_unb64(_require(data, "salt"), "recovery.salt"),
            kdf=KdfParams.from_dict(_require(data, "kdf")),
            wrapped_key=Sealed.from_dict(_require(data, "wrapped_key")),
            wrapped_kek=Sealed.from_dict(_require(data, "wrapped_kek")),
        )


@dataclass(frozen=True)
class PendingRekey:
    """A re-key that has started but not committed.

    ``wrapped_key`` is the target key sealed under the *current* key, so
    whoever can unlock the vault can also finish or undo the migration.
    """

    salt: bytes
    kdf: KdfParams
    epoch: int
    wrapped_key: Sealed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "salt": _b64(self.salt),
            "kdf": self.kdf.to_dict(),
            "epoch": self.epoch,
            "wrapped_key": self.wrapped_key.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "PendingRekey":
        try:
            epoch = int(_require(data, "epoch"))
        except (TypeError, ValueError) as exc:
            raise FormatError("Pending epoch must be an integer") from exc
        return cls(
            salt=_unb64(_require(data, "salt"), "pending.salt"),
            kdf=KdfParams.from_dict(_require(data, "kdf")),
            epoch=epoch,
            wrapped_key=Sealed.from_dict(_require(data, "wrapped_key")),
        )


@dataclass(frozen=True)
class Vault:
    """Vault metadata. Only :class:`VaultManager` reads or writes it."""

    salt: bytes
    kdf: KdfParams
    epoch: int
    verification: Sealed
    created_at: str
    updated_at: str
    recovery: Optional[RecoveryBlock] = None
    pending: Optional[PendingRekey] = None
    version: int = METADATA_VERSION

    @property
    def recovery_key_hash(self) -> Optional[str]:
        return self.recovery.hash if self.recovery else None

    def to_bytes(self) -> bytes:
        doc: Dict[str, Any] = {
            "version": self.version,
            "salt": _b64(self.salt),
            "kdf": self.kdf.to_dict(),
            "epoch": self.epoch,
            "verification": self.verification.to_dict(),
            "recovery": self.recovery.to_dict() if self.recovery else None,
            "pending": self.pending.to_dict() if self.pending else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        return json.dumps(doc, sort_keys=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, blob: bytes) -> "Vault":
        try:
            data = json.loads(bytes(blob).decode("utf-8"))
        except (UnicodeDecodeError, ValueError, TypeError) as exc:
            raise FormatError("Vault metadata is not valid JSON") from exc
        if not isinstance(data, dict):
            raise FormatError("Vault metadata must be an object")
        version = data.get("version")
        if version != METADATA_VERSION:
            raise FormatError(f"Unsupported vault metadata version: {version!r}")
        salt = _unb64(_require(data, "salt"), "salt")
        if len(salt) < SALT_LEN:
            raise FormatError("Vault salt is too short")
        try:
            epoch = int(_require(data, "epoch"))
        except (TypeError, ValueError) as exc:
            raise FormatError("Vault epoch must be an integer") from exc
        recovery = data.get("recovery")
        pending = data.get("pending")
        return cls(
            salt=salt,
            kdf=KdfParams.from_dict(_require(data, "kdf")),
            epoch=epoch,
            verification=Sealed.from_dict(_require(data, "verification")),
            created_at=str(_require(data, "created_at")),
            updated_at=str(_require(data, "updated_at")),
            recovery=RecoveryBlock.from_dict(recovery) if recovery else None,
            pending=PendingRekey.from_dict(pending) if pending else None,
            version=version,
        )


# ---------------------------------------------------------------------
# Token / wrapping helpers
# ---------------------------------------------------------------------

def seal_verification(key: DataKey, epoch: int) -> Sealed:
    marker = json.dumps({"marker": VERIFY_MARKER, "epoch": epoch}, sort_keys=True)
    iv, ct = aesgcm_encrypt(key.material, marker.encode("utf-8"), aad=VERIFY_AAD)
    return Sealed(iv, ct)


def check_verification(vault: Vault, key: DataKey) -> None:
    """Raise ``AuthenticationError`` unless *key* opens the verification token."""
    raw = aesgcm_decrypt(key.material, vault.verification.iv, vault.verification.ciphertext, aad=VERIFY_AAD)
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise FormatError("Verification token is not valid JSON") from exc
    if not isinstance(data, dict) or data.get("marker") != VERIFY_MARKER:
        raise FormatError("Verification token carries an unknown marker")


def build_recovery_block(key: DataKey, secret: str, params: KdfParams) -> RecoveryBlock:
    """Create the recovery block for *key*. Slow: runs scrypt and argon2."""
    salt = secrets.token_bytes(SALT_LEN)
    with derive_recovery_kek(secret, salt, params) as kek:
        wrapped_key = Sealed(*seal_key(kek, key, RECOVERY_WRAP_AAD))
        wrapped_kek = Sealed(*seal_key(key, kek, RECOVERY_KEK_AAD))
    return RecoveryBlock(
        hash=hash_recovery_secret(secret),
        salt=salt,
        kdf=params,
        wrapped_key=wrapped_key,
        wrapped_kek=wrapped_kek,
    )


def rewrap_recovery_block(block: RecoveryBlock, old_key: DataKey, new_key: DataKey) -> RecoveryBlock:
    """Re-seal the recovery block for *new_key* without the recovery secret."""
    with open_key(old_key, block.wrapped_kek.iv, block.wrapped_kek.ciphertext, RECOVERY_KEK_AAD) as kek:
        wrapped_key = Sealed(*seal_key(kek, new_key, RECOVERY_WRAP_AAD))
        wrapped_kek = Sealed(*seal_key(new_key, kek, RECOVERY_KEK_AAD))
    return replace(block, wrapped_key=wrapped_key, wrapped_kek=wrapped_kek)


def open_recovery(block: RecoveryBlock, secret: str) -> DataKey:
    """Check *secret* against the stored hash and unwrap the Data Key."""
    check_recovery_secret(block.hash, secret)
    with derive_recovery_kek(secret, block.salt, block.kdf) as kek:
        try:
            return open_key(kek, block.wrapped_key.iv, block.wrapped_key.ciphertext, RECOVERY_WRAP_AAD)
        except AuthenticationError as exc:
            raise InvalidRecoverySecret("Recovery secret does not unwrap the data key") from exc


def seal_pending_key(current: DataKey, target: DataKey) -> Sealed:
    return Sealed(*seal_key(current, target, PENDING_AAD))


def open_pending_key(pending: PendingRekey, current: DataKey) -> DataKey:
    return open_key(current, pending.wrapped_key.iv, pending.wrapped_key.ciphertext, PENDING_AAD)


# ---------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------

class Session:
    """Handle on an unlocked vault.

    Holds no key itself: :attr:`data_key` asks the manager, and fails with
    ``NotUnlocked`` once the vault was locked or re-unlocked since this
    session was issued. Use as ``async with`` to lock on every exit path.
    """

    def __init__(self, manager: "VaultManager", generation: int):
        self._manager = manager
        self._generation = generation

    @property
    def manager(self) -> "VaultManager":
        return self._manager

    @property
    def backend(self) -> StorageBackend:
        return self._manager.backend

    @property
    def data_key(self) -> DataKey:
        return self._manager.require_key(self._generation)

    def require_unlocked(self) -> DataKey:
        """Return the live Data Key or raise ``NotUnlocked``."""
        return self._manager.require_key(self._generation)

    @property
    def is_unlocked(self) -> bool:
        try:
            self.require_unlocked()
        except NotUnlocked:
            return False
        return True

    def lock(self) -> None:
        if self.is_unlocked:
            self._manager.lock()

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.lock()


# ---------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------

class VaultManager:
    """Owns the vault metadata and the one live Data Key."""

    def __init__(
        self,
        backend: StorageBackend,
        kdf_params: Optional[KdfParams] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.backend = backend
        self.kdf_params = kdf_params or KdfParams()
        self.config: Dict[str, Any] = dict(config or {})
        self._state = VaultState.UNINITIALIZED
        self._key: Optional[DataKey] = None
        self._generation = 0
        self._vault: Optional[Vault] = None

    @property
    def state(self) -> VaultState:
        return self._state

    @property
    def vault(self) -> Optional[Vault]:
        """Metadata as last read or written (no I/O)."""
        return self._vault

    # Metadata I/O -------------------------------------------------------

    async def load_metadata(self) -> Optional[Vault]:
        blob = await self.backend.get_vault_metadata()
        self._vault = Vault.from_bytes(blob) if blob is not None else None
        return self._vault

    async def require_metadata(self) -> Vault:
        vault = await self.load_metadata()
        if vault is None:
            raise VaultNotInitialized("No vault has been created")
        return vault

    async def save_metadata(self, vault: Vault) -> None:
        await self.backend.put_vault_metadata(vault.to_bytes())
        self._vault = vault

    async def derive(self, password: str, salt: Optional[bytes], params: KdfParams):
        """Run the KDF off the event loop; return ``(key, salt)``."""
        return await asyncio.to_thread(derive_key, password, salt, params)

    # State machine ------------------------------------------------------

    async def initialize(self) -> VaultState:
        """Settle on UNINITIALIZED or LOCKED from what the backend holds."""
        vault = await self.load_metadata()
        if self._state is not VaultState.UNLOCKED:
            self._state = VaultState.LOCKED if vault else VaultState.UNINITIALIZED
        return self._state

    async def create_vault(self, password: str, recovery_secret: Optional[str] = None) -> Vault:
        """Create the vault and leave it unlocked under the new key."""
        if await self.backend.get_vault_metadata() is not None:
            raise AlreadyExists("A vault already exists")
        key, salt = await self.derive(password, None, self.kdf_params)
        try:
            recovery = None
            if recovery_secret:
                recovery = await asyncio.to_thread(build_recovery_block, key, recovery_secret, self.kdf_params)
            now = utc_now()
            vault = Vault(
                salt=salt,
                kdf=self.kdf_params,
                epoch=1,
                verification=seal_verification(key, 1),
                created_at=now,
                updated_at=now,
                recovery=recovery,
            )
            await self.save_metadata(vault)
        except BaseException:
            key.destroy()
            raise
        self._install(key)
        logger.info("Vault created (recovery %s)", "enabled" if recovery else "disabled")
        return vault

    async def unlock(self, password: str) -> Session:
        """Derive a candidate key and check it against the verification token."""
        vault = await self.require_metadata()
        candidate, _ = await self.derive(password, vault.salt, vault.kdf)
        try:
            check_verification(vault, candidate)
        except AuthenticationError as exc:
            candidate.destroy()
            logger.warning("Unlock rejected: wrong password")
            raise WrongPassword("Wrong password") from exc
        except FormatError:
            candidate.destroy()
            raise
        self._install(candidate)
        logger.info("Vault unlocked (epoch %d)", vault.epoch)
        return Session(self, self._generation)

    def lock(self) -> None:
        """Destroy the Data Key. No-op unless unlocked."""
        if self._key is not None:
            self._key.destroy()
            self._key = None
        if self._state is VaultState.UNLOCKED:
            self._state = VaultState.LOCKED
            self._generation += 1
            logger.info("Vault locked")

    async def verify(self, key: DataKey) -> bool:
        """Non-mutating check that *key* is the vault's current key."""
        if key.destroyed:
            return False
        vault = await self.load_metadata()
        if vault is None:
            return False
        try:
            check_verification(vault, key)
        except AuthenticationError:
            return False
        return True

    def session(self) -> Session:
        """A session for the current unlock."""
        self.require_key(self._generation)
        return Session(self, self._generation)

    def require_key(self, generation: int) -> DataKey:
        if (
            self._state is not VaultState.UNLOCKED
            or self._key is None
            or self._key.destroyed
            or generation != self._generation
        ):
            raise NotUnlocked("Vault is locked")
        return self._key

    def _install(self, key: DataKey) -> None:
        if self._key is not None and self._key is not key:
            self._key.destroy()
        self._key = key
        self._state = VaultState.UNLOCKED
        self._generation += 1

    # Re-key support -----------------------------------------------------

    async def commit(self, vault: Vault, new_key: DataKey, activate: bool = True) -> None:
        """Write *vault* as the new current metadata, then swap keys.

        Live sessions keep working under *new_key* when *activate* is set and
        the vault is unlocked; otherwise the new key is dropped and the vault
        ends locked.
        """
        await self.save_metadata(vault)
        if activate and self._state is VaultState.UNLOCKED and self._key is not None:
            old = self._key
            self._key = new_key
            if old is not new_key:
                old.destroy()
        else:
            new_key.destroy()
            self.lock()

    # Recovery / wipe ----------------------------------------------------

    async def set_recovery_secret(self, session: Session, secret: str) -> Vault:
        """Add or replace the recovery block for the current key."""
        key = session.data_key
        vault = await self.require_metadata()
        block = await asyncio.to_thread(build_recovery_block, key, secret, self.kdf_params)
        vault = replace(vault, recovery=block, updated_at=utc_now())
        await self.save_metadata(vault)
        logger.info("Recovery secret replaced")
        return vault

    async def wipe(self) -> None:
        """Delete every record and the vault itself."""
        await self.backend.clear_all()
        self.lock()
        self._vault = None
        self._state = VaultState.UNINITIALIZED
        logger.info("Vault wiped")
