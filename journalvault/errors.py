# -*- coding: utf-8 -*-
"""Error taxonomy for journalvault.

Every failure the vault can surface is one of these. Library errors
(``InvalidTag``, ``aiosqlite.Error``, ...) are translated where they occur and
chained, so callers only ever need to catch ``VaultError`` subclasses.
"""
from __future__ import annotations

from typing import Optional


class VaultError(Exception):
    """Base class for all journalvault errors."""


class WrongPassword(VaultError):
    """The key derived from the supplied password failed verification."""


class AuthenticationError(VaultError):
    """AEAD tag mismatch: wrong key or tampered data (indistinguishable)."""


class FormatError(VaultError):
    """Malformed envelope, metadata blob or salt."""


class NotUnlocked(VaultError):
    """An operation needed an unlocked session and did not get one."""


class AlreadyExists(VaultError):
    """A vault already exists in this backend."""


class VaultNotInitialized(VaultError):
    """No vault has been created in this backend yet."""


class InvalidRecoverySecret(VaultError):
    """The recovery secret does not match the stored recovery hash."""


class RecordNotFound(VaultError):
    """No record with the requested id."""

    def __init__(self, record_id: str):
        super().__init__(f"Record not found: {record_id}")
        self.record_id = record_id


class StorageError(VaultError):
    """Backend I/O failure. The original exception is chained as ``__cause__``."""

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message)
        self.record_id = record_id


class ReEncryptionFailed(VaultError):
    """Re-keying aborted; vault metadata still points at the old key."""

    def __init__(self, record_id: Optional[str], reason: str = ""):
        msg = f"Re-encryption failed for record {record_id}" if record_id else "Re-encryption failed"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.record_id = record_id
