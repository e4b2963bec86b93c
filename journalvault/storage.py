# -*- coding: utf-8 -*-
"""Storage backend contract and the key-value backend.

A backend persists opaque :class:`EncryptedRecord` envelopes and the vault
metadata blob. It never sees plaintext or keys. Two implementations ship:
``db.SqliteBackend`` (table-oriented) and :class:`KeyValueBackend` below,
which runs over any string-to-string mapping (in memory or a JSON file).
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterator, List, MutableMapping, Optional, Protocol, runtime_checkable
import asyncio
import base64
import binascii
import json
import logging
import os

from .errors import FormatError, StorageError
from .records import EncryptedRecord

logger = logging.getLogger(__name__)


class RecordListing(list):
    """Envelopes ordered by ``created_at`` descending.

    ``errors`` holds one ``StorageError`` per row the backend could not read.
    Such rows are left out of the list itself, never replaced by placeholders.
    """

    def __init__(self, records=(), errors: Optional[List[StorageError]] = None):
        super().__init__(records)
        self.errors: List[StorageError] = list(errors or [])


def sort_envelopes(records: List[EncryptedRecord]) -> List[EncryptedRecord]:
    return sorted(records, key=lambda r: (r.created_at, r.id), reverse=True)


@runtime_checkable
class StorageBackend(Protocol):
    """Capability set every backend provides.

    Backends serialize their own writes per key; the core does no locking.
    Any I/O failure surfaces as ``StorageError``. A backend may additionally
    offer ``async backup() -> Path``.
    """

    async def put_record(self, envelope: EncryptedRecord) -> None: ...

    async def get_record(self, record_id: str) -> Optional[EncryptedRecord]: ...

    async def list_records(self) -> RecordListing: ...

    async def delete_record(self, record_id: str) -> None: ...

    async def count_records(self) -> int: ...

    async def put_vault_metadata(self, blob: bytes) -> None: ...

    async def get_vault_metadata(self) -> Optional[bytes]: ...

    async def get_flag(self, name: str) -> Optional[str]: ...

    async def set_flag(self, name: str, value: str) -> None: ...

    async def clear_all(self) -> None: ...


# ---------------------------------------------------------------------
# Key-value stores
# ---------------------------------------------------------------------

class MemoryStore(dict):
    """Process-local store. Nothing survives the process."""


class JsonFileStore(MutableMapping[str, str]):
    """A flat JSON object on disk, rewritten atomically on every change."""

    def __init__(self, path: os.PathLike):
        self.path = Path(path).expanduser()
        self._data: Dict[str, str] = {}
        if self.path.exists():
            try:
                with self.path.open("r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as exc:
                raise StorageError(f"Cannot read key-value store {self.path}") from exc
            if not isinstance(data, dict):
                raise StorageError(f"Key-value store {self.path} is not a JSON object")
            self._data = {str(k): v for k, v in data.items()}

    def _commit(self, data: Dict[str, str]) -> None:
        """Write *data* to disk, then make it the in-memory view."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(data, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise
        self._data = data
        # Owner read/write only
        os.chmod(self.path, 0o600)

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __setitem__(self, key: str, value: str) -> None:
        data = dict(self._data)
        data[key] = value
        self._commit(data)

    def __delitem__(self, key: str) -> None:
        data = dict(self._data)
        del data[key]
        self._commit(data)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._data))

    def __len__(self) -> int:
        return len(self._data)

    def clear(self) -> None:
        self._commit({})


# ---------------------------------------------------------------------
# Key-value backend
# ---------------------------------------------------------------------

RECORD_PREFIX = "record:"
FLAG_PREFIX = "flag:"
VAULT_KEY = "vault:metadata"


class KeyValueBackend:
    """:class:`StorageBackend` over a ``MutableMapping[str, str]``."""

    def __init__(self, store: Optional[MutableMapping[str, str]] = None):
        self.store: MutableMapping[str, str] = store if store is not None else MemoryStore()
        self._write_lock = asyncio.Lock()

    async def _call(self, fn, *args, record_id: Optional[str] = None):
        try:
            return await asyncio.to_thread(fn, *args)
        except OSError as exc:
            raise StorageError(f"Key-value store I/O failed: {exc}", record_id=record_id) from exc

    async def _write(self, fn, *args, record_id: Optional[str] = None) -> None:
        async with self._write_lock:
            await self._call(fn, *args, record_id=record_id)

    def _decode(self, key: str, raw: str) -> EncryptedRecord:
        record_id = key[len(RECORD_PREFIX):]
        try:
            envelope = EncryptedRecord.from_storage(json.loads(raw))
        except (ValueError, TypeError, FormatError) as exc:
            raise StorageError(f"Unreadable record row {record_id}", record_id=record_id) from exc
        if envelope.id != record_id:
            raise StorageError(f"Record row {record_id} holds id {envelope.id}", record_id=record_id)
        return envelope

    # Records ------------------------------------------------------------

    async def put_record(self, envelope: EncryptedRecord) -> None:
        raw = json.dumps(envelope.to_storage())
        await self._write(self.store.__setitem__, RECORD_PREFIX + envelope.id, raw, record_id=envelope.id)

    async def get_record(self, record_id: str) -> Optional[EncryptedRecord]:
        key = RECORD_PREFIX + record_id
        raw = await self._call(self.store.get, key, record_id=record_id)
        if raw is None:
            return None
        return self._decode(key, raw)

    async def list_records(self) -> RecordListing:
        keys = [k for k in await self._call(list, self.store) if k.startswith(RECORD_PREFIX)]
        records: List[EncryptedRecord] = []
        errors: List[StorageError] = []
        for key in keys:
            raw = self.store.get(key)
            if raw is None:
                continue
            try:
                records.append(self._decode(key, raw))
            except StorageError as exc:
                errors.append(exc)
        return RecordListing(sort_envelopes(records), errors)

    async def delete_record(self, record_id: str) -> None:
        async with self._write_lock:
            if RECORD_PREFIX + record_id in self.store:
                await self._call(self.store.__delitem__, RECORD_PREFIX + record_id, record_id=record_id)

    async def count_records(self) -> int:
        return sum(1 for k in self.store if k.startswith(RECORD_PREFIX))

    # Vault metadata -----------------------------------------------------

    async def put_vault_metadata(self, blob: bytes) -> None:
        await self._write(self.store.__setitem__, VAULT_KEY, base64.b64encode(blob).decode("ascii"))

    async def get_vault_metadata(self) -> Optional[bytes]:
        raw = self.store.get(VAULT_KEY)
        if raw is None:
            return None
        try:
            return base64.b64decode(raw, validate=True)
        except (binascii.Error, TypeError) as exc:
            raise StorageError("Vault metadata row is not valid base64") from exc

    # Flags --------------------------------------------------------------

    async def get_flag(self, name: str) -> Optional[str]:
        return self.store.get(FLAG_PREFIX + name)

    async def set_flag(self, name: str, value: str) -> None:
        await self._write(self.store.__setitem__, FLAG_PREFIX + name, value)

    async def clear_all(self) -> None:
        await self._write(self.store.clear)
        logger.info("Key-value store cleared")
