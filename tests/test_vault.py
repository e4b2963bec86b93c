"""Tests for vault metadata and the lock state machine."""

import json

import pytest

from journalvault.crypto import derive_key
from journalvault.errors import (
    AlreadyExists,
    FormatError,
    NotUnlocked,
    StorageError,
    VaultNotInitialized,
    WrongPassword,
)
from journalvault.storage import KeyValueBackend
from journalvault.vault import Vault, VaultManager, VaultState, check_verification

from conftest import FAST_KDF


# ── State machine ───────────────────────────────────────────────────


class TestStateMachine:

    @pytest.mark.asyncio
    async def test_starts_uninitialized(self, manager):
        assert manager.state is VaultState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_create_leaves_unlocked(self, manager):
        vault = await manager.create_vault("correct-horse")
        assert manager.state is VaultState.UNLOCKED
        assert vault.epoch == 1
        assert len(vault.salt) >= 16
        assert vault.recovery_key_hash is None
        assert manager.session().is_unlocked

    @pytest.mark.asyncio
    async def test_create_twice(self, manager):
        await manager.create_vault("a")
        with pytest.raises(AlreadyExists):
            await manager.create_vault("b")

    @pytest.mark.asyncio
    async def test_lock_then_unlock(self, manager):
        await manager.create_vault("correct-horse")
        manager.lock()
        assert manager.state is VaultState.LOCKED
        session = await manager.unlock("correct-horse")
        assert manager.state is VaultState.UNLOCKED
        assert session.is_unlocked

    @pytest.mark.asyncio
    async def test_wrong_password_keeps_locked_and_metadata(self, manager, backend):
        await manager.create_vault("correct-horse")
        manager.lock()
        before = await backend.get_vault_metadata()
        with pytest.raises(WrongPassword):
            await manager.unlock("wrong")
        assert manager.state is VaultState.LOCKED
        assert await backend.get_vault_metadata() == before

    @pytest.mark.asyncio
    async def test_unlock_without_vault(self, manager):
        with pytest.raises(VaultNotInitialized):
            await manager.unlock("anything")

    @pytest.mark.asyncio
    async def test_initialize_sees_existing_vault(self, manager, backend, cfg):
        await manager.create_vault("pw")
        fresh = VaultManager(backend, kdf_params=FAST_KDF, config=cfg)
        assert await fresh.initialize() is VaultState.LOCKED

    @pytest.mark.asyncio
    async def test_failed_create_destroys_key(self, manager, monkeypatch):
        derived = []
        derive = manager.derive

        async def _derive(*args):
            key, salt = await derive(*args)
            derived.append(key)
            return key, salt

        async def _fail(blob):
            raise StorageError("disk full")

        monkeypatch.setattr(manager, "derive", _derive)
        monkeypatch.setattr(manager.backend, "put_vault_metadata", _fail)
        with pytest.raises(StorageError):
            await manager.create_vault("pw")
        assert len(derived) == 1 and derived[0].destroyed
        assert manager.state is VaultState.UNINITIALIZED
        with pytest.raises(NotUnlocked):
            manager.session()

    @pytest.mark.asyncio
    async def test_lock_is_idempotent(self, manager):
        await manager.create_vault("pw")
        manager.lock()
        manager.lock()
        assert manager.state is VaultState.LOCKED

    @pytest.mark.asyncio
    async def test_wipe(self, manager, backend):
        await manager.create_vault("pw")
        await manager.wipe()
        assert manager.state is VaultState.UNINITIALIZED
        assert await backend.get_vault_metadata() is None
        await manager.create_vault("new")


# ── Sessions ────────────────────────────────────────────────────────


class TestSession:

    @pytest.mark.asyncio
    async def test_lock_invalidates_session_and_destroys_key(self, manager):
        await manager.create_vault("pw")
        session = manager.session()
        key = session.data_key
        manager.lock()
        assert key.destroyed
        with pytest.raises(NotUnlocked):
            session.data_key

    @pytest.mark.asyncio
    async def test_old_session_stays_dead_after_reunlock(self, manager):
        await manager.create_vault("pw")
        old = manager.session()
        manager.lock()
        new = await manager.unlock("pw")
        assert new.is_unlocked
        assert not old.is_unlocked

    @pytest.mark.asyncio
    async def test_async_context_locks_on_exit(self, manager):
        await manager.create_vault("pw")
        manager.lock()
        with pytest.raises(RuntimeError):
            async with await manager.unlock("pw") as session:
                assert session.is_unlocked
                raise RuntimeError("boom")
        assert manager.state is VaultState.LOCKED

    @pytest.mark.asyncio
    async def test_session_when_locked(self, manager):
        with pytest.raises(NotUnlocked):
            manager.session()

    @pytest.mark.asyncio
    async def test_require_unlocked_after_lock(self, manager):
        await manager.create_vault("pw")
        session = manager.session()
        assert session.require_unlocked() is session.data_key
        manager.lock()
        with pytest.raises(NotUnlocked):
            session.require_unlocked()


# ── Verification ────────────────────────────────────────────────────


class TestVerify:

    @pytest.mark.asyncio
    async def test_verify_current_key(self, manager):
        await manager.create_vault("pw")
        assert await manager.verify(manager.session().data_key)

    @pytest.mark.asyncio
    async def test_verify_other_key(self, manager):
        vault = await manager.create_vault("pw")
        other, _ = derive_key("other", vault.salt, vault.kdf)
        assert not await manager.verify(other)

    @pytest.mark.asyncio
    async def test_verify_destroyed_key(self, manager):
        await manager.create_vault("pw")
        key = manager.session().data_key
        manager.lock()
        assert not await manager.verify(key)

    @pytest.mark.asyncio
    async def test_same_password_same_key(self, manager):
        vault = await manager.create_vault("pw")
        key, _ = derive_key("pw", vault.salt, vault.kdf)
        check_verification(vault, key)


# ── Metadata ────────────────────────────────────────────────────────


class TestMetadata:

    @pytest.mark.asyncio
    async def test_blob_holds_no_secrets(self, manager, backend):
        await manager.create_vault("correct-horse-battery")
        blob = await backend.get_vault_metadata()
        assert b"correct-horse-battery" not in blob
        assert manager.session().data_key.material not in blob

    @pytest.mark.asyncio
    async def test_blob_round_trip(self, manager, backend):
        vault = await manager.create_vault("pw", recovery_secret="ABCD-EFGH")
        assert Vault.from_bytes(await backend.get_vault_metadata()) == vault
        assert vault.recovery_key_hash.startswith("$argon2")

    @pytest.mark.parametrize(
        "blob",
        [
            b"not json",
            b"[]",
            json.dumps({"version": 99}).encode(),
            json.dumps({"version": 1, "salt": "AAAA"}).encode(),
        ],
    )
    def test_malformed_blob(self, blob):
        with pytest.raises(FormatError):
            Vault.from_bytes(blob)

    @pytest.mark.asyncio
    async def test_corrupt_metadata_on_initialize(self):
        backend = KeyValueBackend()
        await backend.put_vault_metadata(b"garbage")
        with pytest.raises(FormatError):
            await VaultManager(backend, kdf_params=FAST_KDF).initialize()
