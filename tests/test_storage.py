"""Tests for the storage backend contract (run against both backends)."""

import json

import aiosqlite
import pytest

from journalvault.db import SqliteBackend, migrate_db
from journalvault.errors import StorageError
from journalvault.records import EncryptedRecord
from journalvault.storage import (
    RECORD_PREFIX,
    JsonFileStore,
    KeyValueBackend,
    MemoryStore,
    RecordListing,
    StorageBackend,
)


def _env(record_id, created_at, iv=b"\x01" * 12, ct=b"\x02" * 32):
    return EncryptedRecord(id=record_id, iv=iv, ciphertext=ct, created_at=created_at, updated_at=created_at)


# ── Contract ────────────────────────────────────────────────────────


class TestBackendContract:

    def test_conforms_to_protocol(self, backend):
        assert isinstance(backend, StorageBackend)

    @pytest.mark.asyncio
    async def test_put_get(self, backend):
        env = _env("a", "2025-01-01T00:00:00+00:00")
        await backend.put_record(env)
        assert await backend.get_record("a") == env

    @pytest.mark.asyncio
    async def test_get_missing(self, backend):
        assert await backend.get_record("nope") is None

    @pytest.mark.asyncio
    async def test_put_replaces(self, backend):
        await backend.put_record(_env("a", "2025-01-01T00:00:00+00:00"))
        newer = _env("a", "2025-01-01T00:00:00+00:00", iv=b"\x09" * 12, ct=b"\x08" * 40)
        await backend.put_record(newer)
        assert await backend.get_record("a") == newer
        assert await backend.count_records() == 1

    @pytest.mark.asyncio
    async def test_list_newest_first(self, backend):
        await backend.put_record(_env("old", "2024-01-01T00:00:00+00:00"))
        await backend.put_record(_env("new", "2025-06-01T00:00:00+00:00"))
        await backend.put_record(_env("mid", "2025-01-01T00:00:00+00:00"))
        listing = await backend.list_records()
        assert isinstance(listing, RecordListing)
        assert [e.id for e in listing] == ["new", "mid", "old"]
        assert listing.errors == []

    @pytest.mark.asyncio
    async def test_list_empty(self, backend):
        listing = await backend.list_records()
        assert list(listing) == []

    @pytest.mark.asyncio
    async def test_delete(self, backend):
        await backend.put_record(_env("a", "t"))
        await backend.delete_record("a")
        await backend.delete_record("a")
        assert await backend.get_record("a") is None
        assert await backend.count_records() == 0

    @pytest.mark.asyncio
    async def test_vault_metadata(self, backend):
        assert await backend.get_vault_metadata() is None
        await backend.put_vault_metadata(b"\x00blob\xff")
        assert await backend.get_vault_metadata() == b"\x00blob\xff"
        await backend.put_vault_metadata(b"second")
        assert await backend.get_vault_metadata() == b"second"

    @pytest.mark.asyncio
    async def test_flags(self, backend):
        assert await backend.get_flag("x") is None
        await backend.set_flag("x", "done")
        assert await backend.get_flag("x") == "done"

    @pytest.mark.asyncio
    async def test_clear_all(self, backend):
        await backend.put_record(_env("a", "t"))
        await backend.put_vault_metadata(b"m")
        await backend.set_flag("f", "1")
        await backend.clear_all()
        assert await backend.count_records() == 0
        assert await backend.get_vault_metadata() is None
        assert await backend.get_flag("f") is None


# ── Key-value specifics ─────────────────────────────────────────────


class TestKeyValueBackend:

    @pytest.mark.asyncio
    async def test_unreadable_row_is_reported_not_dropped_silently(self):
        store = MemoryStore()
        backend = KeyValueBackend(store)
        await backend.put_record(_env("good", "t1"))
        store[RECORD_PREFIX + "bad"] = "{not json"
        listing = await backend.list_records()
        assert [e.id for e in listing] == ["good"]
        assert len(listing.errors) == 1
        assert listing.errors[0].record_id == "bad"

    @pytest.mark.asyncio
    async def test_row_with_mismatched_id(self):
        store = MemoryStore()
        backend = KeyValueBackend(store)
        store[RECORD_PREFIX + "x"] = json.dumps(_env("y", "t").to_storage())
        with pytest.raises(StorageError):
            await backend.get_record("x")

    @pytest.mark.asyncio
    async def test_json_file_persists(self, tmp_path):
        path = tmp_path / "kv.json"
        first = KeyValueBackend(JsonFileStore(path))
        await first.put_record(_env("a", "t"))
        await first.put_vault_metadata(b"meta")

        second = KeyValueBackend(JsonFileStore(path))
        assert (await second.get_record("a")).id == "a"
        assert await second.get_vault_metadata() == b"meta"
        assert (path.stat().st_mode & 0o777) == 0o600

    def test_corrupt_json_file(self, tmp_path):
        path = tmp_path / "kv.json"
        path.write_text("[1, 2", encoding="utf-8")
        with pytest.raises(StorageError):
            JsonFileStore(path)

    @pytest.mark.asyncio
    async def test_failed_write_leaves_memory_matching_disk(self, tmp_path, monkeypatch):
        path = tmp_path / "kv.json"
        store = JsonFileStore(path)
        store["a"] = "1"
        backend = KeyValueBackend(store)
        await backend.put_vault_metadata(b"committed")

        def _fail(*args, **kwargs):
            raise OSError("disk full")

        with monkeypatch.context() as m:
            m.setattr("journalvault.storage.os.replace", _fail)
            with pytest.raises(OSError):
                store["b"] = "2"
            with pytest.raises(OSError):
                del store["a"]
            with pytest.raises(StorageError):
                await backend.put_vault_metadata(b"not committed")

        on_disk = json.loads(path.read_text(encoding="utf-8"))
        assert dict(store) == on_disk
        assert "b" not in store
        assert store["a"] == "1"
        assert await backend.get_vault_metadata() == b"committed"
        assert not (tmp_path / "kv.json.tmp").exists()


# ── SQLite specifics ────────────────────────────────────────────────


class TestSqliteBackend:

    @pytest.mark.asyncio
    async def test_non_binary_row_is_reported(self, tmp_path):
        backend = SqliteBackend(tmp_path / "db.sqlite3")
        await backend.put_record(_env("good", "t2"))
        async with aiosqlite.connect(backend.db_path) as db:
            await db.execute(
                "INSERT INTO records (id, iv, ciphertext, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                ("bad", "text-iv", "text-ct", "t1", "t1"),
            )
            await db.commit()
        listing = await backend.list_records()
        assert [e.id for e in listing] == ["good"]
        assert [e.record_id for e in listing.errors] == ["bad"]

    @pytest.mark.asyncio
    async def test_io_failure_becomes_storage_error(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        backend = SqliteBackend(blocker / "db.sqlite3")
        with pytest.raises(StorageError):
            await backend.get_vault_metadata()

    @pytest.mark.asyncio
    async def test_backup(self, tmp_path):
        backend = SqliteBackend(tmp_path / "db.sqlite3")
        await backend.put_record(_env("a", "t"))
        path = await backend.backup()
        assert path.exists()
        assert path.parent.name == "backups"
        copy = SqliteBackend(path)
        assert (await copy.get_record("a")).id == "a"

    @pytest.mark.asyncio
    async def test_migrates_table_without_updated_at(self, tmp_path):
        path = tmp_path / "old.sqlite3"
        async with aiosqlite.connect(path) as db:
            await db.execute(
                "CREATE TABLE records (id TEXT PRIMARY KEY, iv BLOB NOT NULL, "
                "ciphertext BLOB NOT NULL, created_at TEXT NOT NULL)"
            )
            await db.execute(
                "INSERT INTO records VALUES (?, ?, ?, ?)",
                ("a", b"\x01" * 12, b"\x02" * 32, "2025-01-01"),
            )
            await db.commit()

        backend = SqliteBackend(path)
        env = await backend.get_record("a")
        assert env.updated_at == "2025-01-01"
        assert await migrate_db(path) == []
