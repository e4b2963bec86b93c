# -*- coding: utf-8 -*-
"""Application logic that composes storage, vault and crypto layers.

This module provides the public API used by front ends (editor, list and
export screens). It contains no UI code. All side effects (storage + config
I/O) are explicit and local.
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import json
import logging
import os

from . import db
from .crypto import KdfParams, generate_recovery_secret
from .errors import ReEncryptionFailed, RecordNotFound, StorageError
from .legacy import LEGACY_FLAG, migrate_legacy_blob
from .records import JournalEntry, decrypt_record, encrypt_record, new_record_id, utc_now
from .rekey import coordinator_for
from .storage import JsonFileStore, KeyValueBackend, StorageBackend
from .vault import Session, Vault, VaultManager, VaultState

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Config management (JSON on disk)
# ---------------------------------------------------------------------

APP_NAME = "journalvault"

DEFAULT_CONFIG: Dict[str, object] = {
    "backend": "sqlite",
    "db_path": db.DB_PATH,
    "kv_path": "journalvault.json",
    "kdf_n": 2 ** 15,
    "kdf_r": 8,
    "kdf_p": 1,
    "rekey_concurrency": 8,
    "backup_before_rekey": True,
    "legacy_blob_path": "",
}

ENV_OVERRIDES = {
    "JOURNALVAULT_BACKEND": "backend",
    "JOURNALVAULT_DB": "db_path",
    "JOURNALVAULT_KV": "kv_path",
}


def _config_dir() -> Path:
    """Return the config directory path for this platform."""
    if os.name == "nt":
        base = os.environ.get("APPDATA", os.path.expanduser("~\\AppData\\Roaming"))
        return Path(base) / APP_NAME
    base = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(base) / APP_NAME


def _config_path() -> Path:
    return _config_dir() / "config.json"


def load_config() -> Dict[str, object]:
    """Load the merged configuration (defaults + file + environment)."""
    path = _config_path()
    merged = json.loads(json.dumps(DEFAULT_CONFIG))
    if not path.exists():
        save_config(DEFAULT_CONFIG)
    else:
        with path.open("r", encoding="utf-8") as f:
            merged.update(json.load(f))
    for env, key in ENV_OVERRIDES.items():
        if os.environ.get(env):
            merged[key] = os.environ[env]
    return merged


def save_config(cfg: Dict[str, object]) -> None:
    """Persist *cfg* to the JSON config file."""
    _config_dir().mkdir(parents=True, exist_ok=True)
    with _config_path().open("w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=2)


def kdf_params_from_config(cfg: Dict[str, Any]) -> KdfParams:
    params = KdfParams(n=int(cfg["kdf_n"]), r=int(cfg["kdf_r"]), p=int(cfg["kdf_p"]))
    params.validate()
    return params


# ---------------------------------------------------------------------
# Backend selection
# ---------------------------------------------------------------------

def open_backend(cfg: Dict[str, Any]) -> StorageBackend:
    """Pick the storage backend named by the config."""
    kind = str(cfg.get("backend", "sqlite")).lower()
    if kind == "sqlite":
        return db.SqliteBackend(cfg.get("db_path") or db.DB_PATH)
    if kind in ("kv", "keyvalue", "json"):
        return KeyValueBackend(JsonFileStore(str(cfg["kv_path"])))
    if kind == "memory":
        return KeyValueBackend()
    raise ValueError(f"Unknown storage backend: {kind!r}")


async def open_vault(
    cfg: Optional[Dict[str, Any]] = None,
    backend: Optional[StorageBackend] = None,
) -> VaultManager:
    """Build a manager for the configured backend and read its state."""
    cfg = dict(cfg if cfg is not None else load_config())
    manager = VaultManager(
        backend if backend is not None else open_backend(cfg),
        kdf_params=kdf_params_from_config(cfg),
        config=cfg,
    )
    state = await manager.initialize()
    logger.info("Vault opened: %s", state.value)
    return manager


# ---------------------------------------------------------------------
# Auth and key management
# ---------------------------------------------------------------------

async def create_vault(
    manager: VaultManager,
    password: str,
    with_recovery: bool = True,
) -> Tuple[Session, Optional[str]]:
    """Create the vault; return the session and the recovery secret to show
    the user once (None when *with_recovery* is off)."""
    if not password:
        raise ValueError("Password required")
    secret = generate_recovery_secret() if with_recovery else None
    await manager.create_vault(password, recovery_secret=secret)
    return manager.session(), secret


async def unlock(manager: VaultManager, password: str) -> Session:
    """Unlock and, if a previous re-key was interrupted, undo it."""
    session = await manager.unlock(password)
    vault = manager.vault
    if vault is not None and vault.pending is not None:
        try:
            await coordinator_for(manager).rollback(session.data_key)
        except (ReEncryptionFailed, StorageError) as exc:
            # The old key is still current; retrying the password change
            # resumes or rolls back again.
            logger.warning("Could not roll back interrupted re-key: %s", exc)
    return session


def lock(session: Session) -> None:
    session.lock()


async def _backup_before_rekey(manager: VaultManager) -> None:
    if not manager.config.get("backup_before_rekey", False):
        return
    backup = getattr(manager.backend, "backup", None)
    if backup is not None:
        await backup()


async def change_password(session: Session, old_password: str, new_password: str) -> None:
    """Re-encrypt all data under a key derived from *new_password*.

    The session stays valid and switches to the new key on success.
    """
    session.require_unlocked()
    if not old_password:
        raise ValueError("Current password required")
    if not new_password:
        raise ValueError("New password required")
    await _backup_before_rekey(session.manager)
    await coordinator_for(session.manager).change_password(old_password, new_password)


async def reset_via_recovery(manager: VaultManager, recovery_secret: str, new_password: str) -> None:
    """Set a new password using the recovery secret. The vault ends locked."""
    if not recovery_secret:
        raise ValueError("Recovery secret required")
    if not new_password:
        raise ValueError("New password required")
    await _backup_before_rekey(manager)
    await coordinator_for(manager).reset_via_recovery(recovery_secret, new_password)


async def set_recovery_secret(session: Session, secret: Optional[str] = None) -> str:
    """Replace the recovery secret; return the one now in effect."""
    secret = secret or generate_recovery_secret()
    await session.manager.set_recovery_secret(session, secret)
    return secret


async def wipe_vault(manager: VaultManager) -> None:
    """Delete everything. Irreversible."""
    await manager.wipe()


def vault_state(manager: VaultManager) -> VaultState:
    return manager.state


def vault_info(manager: VaultManager) -> Optional[Vault]:
    return manager.vault


# ---------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------

class EntryListing(list):
    """Decrypted entries, newest first.

    ``warnings`` lists the ``StorageError`` of each row that could not be
    read from the backend and was therefore left out.
    """

    def __init__(self, entries=(), warnings: Optional[List[StorageError]] = None):
        super().__init__(entries)
        self.warnings: List[StorageError] = list(warnings or [])

    @property
    def partial(self) -> bool:
        return bool(self.warnings)


async def create_or_update_record(session: Session, entry: JournalEntry) -> str:
    """Encrypt and store *entry*; return its id.

    An existing id keeps its ``created_at``; ``updated_at`` is always now.
    Every write uses a fresh IV.
    """
    key = session.data_key
    now = utc_now()
    existing = await session.backend.get_record(entry.id) if entry.id else None
    if existing is not None:
        entry = replace(entry, created_at=existing.created_at, updated_at=now)
    else:
        entry = replace(
            entry,
            id=entry.id or new_record_id(),
            created_at=entry.created_at or now,
            updated_at=now,
        )
    envelope = encrypt_record(key, entry)
    await session.backend.put_record(envelope)
    return envelope.id


async def read_record(session: Session, record_id: str) -> JournalEntry:
    """Return the decrypted entry or raise ``RecordNotFound``."""
    key = session.data_key
    envelope = await session.backend.get_record(record_id)
    if envelope is None:
        raise RecordNotFound(record_id)
    return decrypt_record(key, envelope)


async def list_all_records(session: Session) -> EntryListing:
    """Decrypt every entry. Unreadable rows are skipped and reported."""
    key = session.data_key
    listing = await session.backend.list_records()
    entries = [decrypt_record(key, envelope) for envelope in listing]
    for err in listing.errors:
        logger.warning("Skipped unreadable record %s: %s", err.record_id, err)
    return EntryListing(entries, listing.errors)


async def delete_record(session: Session, record_id: str) -> None:
    session.require_unlocked()
    await session.backend.delete_record(record_id)


async def count_records(session: Session) -> int:
    session.require_unlocked()
    return await session.backend.count_records()


# ---------------------------------------------------------------------
# Export (plaintext leaves the vault here)
# ---------------------------------------------------------------------

async def export_all_plaintext(session: Session) -> List[JournalEntry]:
    """Every entry in plaintext. Refuses to produce a partial export."""
    listing = await list_all_records(session)
    if listing.warnings:
        raise listing.warnings[0]
    return list(listing)


async def export_as_json(session: Session) -> str:
    """Export journals as JSON with metadata for proper import."""
    journals = await export_all_plaintext(session)
    export_data = {
        "version": "1.0",
        "appName": APP_NAME,
        "exportDate": datetime.now(timezone.utc).isoformat(),
        "totalEntries": len(journals),
        "journals": [j.to_dict() for j in journals],
    }
    return json.dumps(export_data, indent=2, ensure_ascii=False)


# ---------------------------------------------------------------------
# Legacy migration
# ---------------------------------------------------------------------

async def migrate_legacy(session: Session, blob: bytes) -> int:
    """Import a legacy single-blob journal once; return records written."""
    key = session.data_key
    backend = session.backend
    if await backend.get_flag(LEGACY_FLAG):
        return 0
    written = 0
    for envelope in migrate_legacy_blob(blob, key):
        if await backend.get_record(envelope.id) is None:
            await backend.put_record(envelope)
            written += 1
    await backend.set_flag(LEGACY_FLAG, utc_now())
    logger.info("Legacy journal blob imported (%d record(s))", written)
    return written


async def migrate_legacy_file(session: Session, path: Optional[os.PathLike] = None) -> int:
    """Startup hook: import the legacy blob file if one is present."""
    path = path or session.manager.config.get("legacy_blob_path") or ""
    if not path:
        return 0
    legacy_path = Path(path).expanduser()
    if not legacy_path.exists():
        return 0
    return await migrate_legacy(session, legacy_path.read_bytes())
