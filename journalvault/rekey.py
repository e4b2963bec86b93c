# -*- coding: utf-8 -*-
"""Re-keying: move every ciphertext from one Data Key to another.

Order of writes, which is what keeps the vault recoverable at every point:

1. a ``pending`` marker (target salt + target key sealed under the current
   key) is added to the metadata; the current section is untouched,
2. every record is re-encrypted under the target key with a fresh IV,
3. only after all record writes succeed, the metadata is replaced: new salt,
   new verification token, re-sealed recovery block, no ``pending``.

A crash or cancellation before step 3 leaves the old password working. A
failed record or metadata write is rolled back on the spot, so live sessions
keep reading every record under the old key. When that rollback cannot run
either, a retry with the same new password reuses the pending salt, so records
already migrated open under the target key and are skipped, and
:meth:`RekeyCoordinator.rollback` runs again on the next unlock.
"""
from __future__ import annotations

from dataclasses import replace
from typing import List, Optional
import asyncio
import logging

from .crypto import DataKey
from .errors import (
    AuthenticationError,
    FormatError,
    InvalidRecoverySecret,
    ReEncryptionFailed,
    StorageError,
    WrongPassword,
)
from .records import EncryptedRecord, decrypt_record, encrypt_record, utc_now
from .vault import (
    PendingRekey,
    Vault,
    VaultManager,
    open_pending_key,
    open_recovery,
    rewrap_recovery_block,
    seal_pending_key,
    seal_verification,
)

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 8


class RekeyCoordinator:
    """Drives password change, recovery reset and rollback for one vault."""

    def __init__(self, manager: VaultManager, concurrency: int = DEFAULT_CONCURRENCY):
        self.manager = manager
        self.concurrency = max(1, int(concurrency))

    @property
    def backend(self):
        return self.manager.backend

    # Entry points -------------------------------------------------------

    async def change_password(self, old_password: str, new_password: str) -> DataKey:
        """Re-key from the key of *old_password* to one of *new_password*."""
        vault = await self.manager.require_metadata()
        old_key, _ = await self.manager.derive(old_password, vault.salt, vault.kdf)
        with old_key:
            if not await self.manager.verify(old_key):
                logger.warning("Password change rejected: wrong current password")
                raise WrongPassword("Current password is wrong")
            return await self._rekey_or_rollback(vault, old_key, new_password, activate=True)

    async def reset_via_recovery(self, recovery_secret: str, new_password: str) -> None:
        """Re-key using the recovery secret in place of the old password.

        The vault ends locked; unlock with *new_password* afterwards.
        """
        vault = await self.manager.require_metadata()
        if vault.recovery is None:
            raise InvalidRecoverySecret("No recovery secret is set for this vault")
        old_key = await asyncio.to_thread(open_recovery, vault.recovery, recovery_secret)
        with old_key:
            if not await self.manager.verify(old_key):
                raise InvalidRecoverySecret("Recovery block does not match the current key")
            await self._rekey_or_rollback(vault, old_key, new_password, activate=False)
        logger.info("Password reset via recovery secret")

    async def rollback(self, current_key: DataKey) -> bool:
        """Undo an uncommitted re-key. Returns True if there was one."""
        vault = await self.manager.require_metadata()
        if vault.pending is None:
            return False
        with self._open_pending(vault, current_key) as pending_key:
            moved = await self.migrate_records(pending_key, current_key, strict=False)
        await self.manager.save_metadata(replace(vault, pending=None, updated_at=utc_now()))
        logger.info("Rolled back interrupted re-key (%d record(s) restored)", moved)
        return True

    # Core algorithm -----------------------------------------------------

    async def _rekey_or_rollback(
        self, vault: Vault, old_key: DataKey, new_password: str, activate: bool
    ) -> DataKey:
        """Run :meth:`_rekey`; on failure, move records back under *old_key*.

        Without this, a live session would keep the old key while the records
        written before the failure only open under the pending key.
        """
        try:
            return await self._rekey(vault, old_key, new_password, activate)
        except (ReEncryptionFailed, StorageError):
            try:
                await self.rollback(old_key)
            except (ReEncryptionFailed, StorageError, FormatError) as exc:
                # The pending marker stays; a retry resumes, the next unlock rolls back.
                logger.warning("Could not roll back failed re-key: %s", exc)
            raise

    async def _rekey(self, vault: Vault, old_key: DataKey, new_password: str, activate: bool) -> DataKey:
        new_key, vault = await self._prepare_target(vault, old_key, new_password)
        pending = vault.pending
        try:
            moved = await self.migrate_records(old_key, new_key)
            recovery = vault.recovery
            if recovery is not None:
                recovery = rewrap_recovery_block(recovery, old_key, new_key)
            committed = replace(
                vault,
                salt=pending.salt,
                kdf=pending.kdf,
                epoch=pending.epoch,
                verification=seal_verification(new_key, pending.epoch),
                recovery=recovery,
                pending=None,
                updated_at=utc_now(),
            )
            # Happens-after barrier: every record write above has completed.
            await self.manager.commit(committed, new_key, activate=activate)
        except BaseException:
            new_key.destroy()
            raise
        logger.info("Re-key committed: epoch %d, %d record(s) re-encrypted", committed.epoch, moved)
        return new_key

    async def _prepare_target(self, vault: Vault, old_key: DataKey, new_password: str):
        """Return ``(new_key, vault_with_pending)``, resuming when possible."""
        if vault.pending is not None:
            pending = vault.pending
            with self._open_pending(vault, old_key) as pending_key:
                candidate, _ = await self.manager.derive(new_password, pending.salt, pending.kdf)
                if candidate.same_as(pending_key):
                    logger.info("Resuming interrupted re-key to epoch %d", pending.epoch)
                    return candidate, vault
                candidate.destroy()
                logger.info("Abandoning interrupted re-key for a different password")
                await self.migrate_records(pending_key, old_key, strict=False)
            vault = replace(vault, pending=None)
            await self.manager.save_metadata(vault)

        new_key, salt = await self.manager.derive(new_password, None, self.manager.kdf_params)
        pending = PendingRekey(
            salt=salt,
            kdf=self.manager.kdf_params,
            epoch=vault.epoch + 1,
            wrapped_key=seal_pending_key(old_key, new_key),
        )
        vault = replace(vault, pending=pending, updated_at=utc_now())
        try:
            await self.manager.save_metadata(vault)
        except StorageError as exc:
            new_key.destroy()
            raise ReEncryptionFailed(None, "could not record pending re-key") from exc
        return new_key, vault

    @staticmethod
    def _open_pending(vault: Vault, current_key: DataKey) -> DataKey:
        try:
            return open_pending_key(vault.pending, current_key)
        except (AuthenticationError, FormatError) as exc:
            raise ReEncryptionFailed(None, "pending re-key marker is unreadable") from exc

    # Record migration ---------------------------------------------------

    async def migrate_records(self, source: DataKey, target: DataKey, strict: bool = True) -> int:
        """Move every record from *source* to *target*; return how many moved.

        Records that already open under *target* are left alone. Any other
        failure aborts with ``ReEncryptionFailed`` naming the record. With
        ``strict=False`` (rollback) records that open under neither key are
        corrupt either way, so they are logged and left as they are.
        """
        try:
            listing = await self.backend.list_records()
        except StorageError as exc:
            raise ReEncryptionFailed(None, "could not list records") from exc
        if listing.errors:
            bad = listing.errors[0]
            if strict:
                raise ReEncryptionFailed(bad.record_id, "unreadable record row") from bad
            for err in listing.errors:
                logger.warning("Rollback skipped unreadable row %s", err.record_id)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(envelope: EncryptedRecord) -> bool:
            async with semaphore:
                return await self._migrate_one(envelope, source, target, strict)

        results = await asyncio.gather(*(_one(e) for e in listing), return_exceptions=True)
        failures: List[BaseException] = [r for r in results if isinstance(r, BaseException)]
        if failures:
            raise failures[0]
        return sum(1 for r in results if r is True)

    async def _migrate_one(
        self, envelope: EncryptedRecord, source: DataKey, target: DataKey, strict: bool = True
    ) -> bool:
        try:
            entry = decrypt_record(source, envelope)
        except AuthenticationError as exc:
            if self._opens_under(envelope, target):
                logger.debug("Record %s already migrated", envelope.id)
                return False
            if not strict:
                logger.warning("Record %s opens under neither key; left untouched", envelope.id)
                return False
            raise ReEncryptionFailed(envelope.id, "does not decrypt under either key") from exc
        except FormatError as exc:
            if not strict:
                logger.warning("Record %s is malformed; left untouched", envelope.id)
                return False
            raise ReEncryptionFailed(envelope.id, "malformed envelope") from exc

        try:
            await self.backend.put_record(encrypt_record(target, entry))
        except StorageError as exc:
            raise ReEncryptionFailed(envelope.id, "write failed") from exc
        logger.debug("Record %s re-encrypted", envelope.id)
        return True

    @staticmethod
    def _opens_under(envelope: EncryptedRecord, key: DataKey) -> bool:
        try:
            decrypt_record(key, envelope)
        except (AuthenticationError, FormatError):
            return False
        return True


def coordinator_for(manager: VaultManager, concurrency: Optional[int] = None) -> RekeyCoordinator:
    """Build a coordinator using the manager's configured concurrency."""
    if concurrency is None:
        concurrency = manager.config.get("rekey_concurrency", DEFAULT_CONCURRENCY)
    return RekeyCoordinator(manager, concurrency=concurrency)
