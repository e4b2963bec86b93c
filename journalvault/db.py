#! /usr/bin/python3
# -*- coding: utf-8 -*-
"""SQLite schema and async data access for journalvault."""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, List, Optional
import asyncio
import logging
import os
import sqlite3

import aiosqlite

from .errors import StorageError
from .records import EncryptedRecord
from .storage import RecordListing

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("JOURNALVAULT_DB", "journalvault.sqlite3")


# ---------------------------------------------------------------------
# Base schema (new installs)
# ---------------------------------------------------------------------

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS records (
    id              TEXT PRIMARY KEY,
    iv              BLOB NOT NULL,
    ciphertext      BLOB NOT NULL,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

-- Single row: the opaque vault metadata blob
CREATE TABLE IF NOT EXISTS vault_meta (
    id              INTEGER PRIMARY KEY CHECK (id = 1),
    blob            BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS flags (
    name            TEXT PRIMARY KEY,
    value           TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_records_created ON records(created_at);
"""


# ---------------------------------------------------------------------
# Migrations (existing installs)
# ---------------------------------------------------------------------

async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    """Return True if `column` is present in `table`."""
    cur = await db.execute(f"PRAGMA table_info({table})")
    rows = await cur.fetchall()
    await cur.close()
    for r in rows:
        # PRAGMA table_info columns: cid, name, type, notnull, default_value, pk
        if len(r) >= 2 and (r[1] == column or (hasattr(r, "keys") and r["name"] == column)):
            return True
    return False


async def migrate_db(db_path: os.PathLike) -> List[str]:
    """Idempotent migrations for databases that predate ``updated_at``.

    Returns the statements that were applied.
    """
    statements: List[str] = []
    async with aiosqlite.connect(db_path) as db:
        if not await _column_exists(db, "records", "updated_at"):
            statements.append("ALTER TABLE records ADD COLUMN updated_at TEXT NOT NULL DEFAULT '';")
            statements.append("UPDATE records SET updated_at = created_at WHERE updated_at = '';")

        for stmt in statements:
            await db.execute(stmt)

        if statements:
            await db.commit()
    return statements


# ---------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------

class SqliteBackend:
    """Table-oriented :class:`~journalvault.storage.StorageBackend`.

    Every call opens its own connection, so concurrent tasks never share a
    cursor. SQLite serializes the writes.
    """

    def __init__(self, db_path: Optional[os.PathLike] = None):
        self.db_path = Path(db_path or DB_PATH).expanduser()
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @asynccontextmanager
    async def _connect(self, record_id: Optional[str] = None) -> AsyncIterator[aiosqlite.Connection]:
        try:
            if not self._initialized:
                async with self._init_lock:
                    if not self._initialized:
                        await self.init_db()
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except (sqlite3.Error, OSError) as exc:
            raise StorageError(f"SQLite backend failed: {exc}", record_id=record_id) from exc

    async def init_db(self) -> None:
        """Create tables if they don't exist and run lightweight migrations."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        applied = await migrate_db(self.db_path)
        if applied:
            logger.info("Applied %d schema migration(s) to %s", len(applied), self.db_path)
        self._initialized = True

    @staticmethod
    def _row_to_envelope(row) -> EncryptedRecord:
        record_id = row["id"]
        iv, ct = row["iv"], row["ciphertext"]
        if not isinstance(iv, bytes) or not isinstance(ct, bytes):
            raise StorageError(f"Record row {record_id} has non-binary crypto columns", record_id=record_id)
        return EncryptedRecord(
            id=record_id,
            iv=iv,
            ciphertext=ct,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # Records ------------------------------------------------------------

    async def put_record(self, envelope: EncryptedRecord) -> None:
        """Insert or replace one envelope."""
        async with self._connect(envelope.id) as db:
            await db.execute(
                """
                INSERT INTO records (id, iv, ciphertext, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    iv = excluded.iv,
                    ciphertext = excluded.ciphertext,
                    updated_at = excluded.updated_at
                """,
                (
                    envelope.id,
                    envelope.iv,
                    envelope.ciphertext,
                    envelope.created_at,
                    envelope.updated_at,
                ),
            )
            await db.commit()

    async def get_record(self, record_id: str) -> Optional[EncryptedRecord]:
        async with self._connect(record_id) as db:
            cur = await db.execute(
                "SELECT id, iv, ciphertext, created_at, updated_at FROM records WHERE id = ?",
                (record_id,),
            )
            row = await cur.fetchone()
            await cur.close()
        if row is None:
            return None
        return self._row_to_envelope(row)

    async def list_records(self) -> RecordListing:
        """Return all envelopes, newest first; unreadable rows go to ``errors``."""
        async with self._connect() as db:
            cur = await db.execute(
                """
                SELECT id, iv, ciphertext, created_at, updated_at
                  FROM records
                 ORDER BY created_at DESC, id DESC
                """
            )
            rows = await cur.fetchall()
            await cur.close()
        listing = RecordListing()
        for row in rows:
            try:
                listing.append(self._row_to_envelope(row))
            except StorageError as exc:
                listing.errors.append(exc)
        return listing

    async def delete_record(self, record_id: str) -> None:
        async with self._connect(record_id) as db:
            await db.execute("DELETE FROM records WHERE id = ?", (record_id,))
            await db.commit()

    async def count_records(self) -> int:
        async with self._connect() as db:
            cur = await db.execute("SELECT COUNT(*) FROM records")
            row = await cur.fetchone()
            await cur.close()
        return int(row[0])

    # Vault metadata -----------------------------------------------------

    async def put_vault_metadata(self, blob: bytes) -> None:
        async with self._connect() as db:
            await db.execute(
                "INSERT OR REPLACE INTO vault_meta (id, blob) VALUES (1, ?)",
                (blob,),
            )
            await db.commit()

    async def get_vault_metadata(self) -> Optional[bytes]:
        async with self._connect() as db:
            cur = await db.execute("SELECT blob FROM vault_meta WHERE id = 1")
            row = await cur.fetchone()
            await cur.close()
        return bytes(row["blob"]) if row else None

    # Flags --------------------------------------------------------------

    async def get_flag(self, name: str) -> Optional[str]:
        async with self._connect() as db:
            cur = await db.execute("SELECT value FROM flags WHERE name = ?", (name,))
            row = await cur.fetchone()
            await cur.close()
        return row["value"] if row else None

    async def set_flag(self, name: str, value: str) -> None:
        async with self._connect() as db:
            await db.execute(
                "INSERT OR REPLACE INTO flags (name, value) VALUES (?, ?)",
                (name, value),
            )
            await db.commit()

    async def clear_all(self) -> None:
        """Delete every record, the vault metadata and all flags."""
        async with self._connect() as db:
            await db.execute("DELETE FROM records")
            await db.execute("DELETE FROM vault_meta")
            await db.execute("DELETE FROM flags")
            await db.commit()
        logger.info("SQLite store %s cleared", self.db_path)

    # Optional capability ------------------------------------------------

    async def backup(self) -> Path:
        """Create a timestamped backup copy of the SQLite database."""
        if not self.db_path.exists():
            raise StorageError("Database file not found for backup")

        backups_dir = self.db_path.parent / "backups"
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        backup_path = backups_dir / f"{self.db_path.name}.bak-{timestamp}"
        try:
            backups_dir.mkdir(parents=True, exist_ok=True)
            # The SQLite online backup API copies a consistent snapshot even with WAL.
            async with aiosqlite.connect(self.db_path) as src, aiosqlite.connect(backup_path) as dst:
                await src.backup(dst)
        except (sqlite3.Error, OSError) as exc:
            raise StorageError(f"Backup failed: {exc}") from exc
        logger.info("Database backed up to %s", backup_path)
        return backup_path
