# -*- coding: utf-8 -*-
"""Per-record authenticated encryption.

One journal entry becomes one :class:`EncryptedRecord`: a fresh 96-bit IV,
the AES-GCM ciphertext of the entry's canonical JSON, and the plaintext
timestamps needed to sort without decrypting. The record id and creation
time are bound as associated data, so moving ciphertext between records or
editing the timestamp is detected as tampering.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import base64
import binascii
import json
import uuid

from .crypto import DataKey, aesgcm_decrypt, aesgcm_encrypt
from .errors import FormatError

RECORD_AAD_PREFIX = b"journalvault/record/v1"

# Keys of the encrypted payload. Anything else on JournalEntry is plaintext.
PAYLOAD_FIELDS = ("date", "images", "mood", "text", "title")


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


def new_record_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------

@dataclass
class JournalEntry:
    """Decrypted journal entry as handed to and from callers.

    ``date`` is the day the entry is about. Left empty, it is stored as
    ``created_at``, so an entry with an empty ``date`` comes back with the
    creation time in that field. Entries with every field set round-trip
    unchanged.
    """

    text: str = ""
    title: str = ""
    mood: str = ""
    images: List[str] = field(default_factory=list)
    date: str = ""
    id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "images": list(self.images),
            "mood": self.mood,
            "text": self.text,
            "title": self.title,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Camel-cased dict matching the app's JSON export format."""
        return {
            "id": self.id,
            "date": self.date,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "title": self.title,
            "text": self.text,
            "mood": self.mood,
            "images": list(self.images),
        }


@dataclass(frozen=True)
class EncryptedRecord:
    """Persisted envelope. Backends store it without interpretation."""

    id: str
    iv: bytes
    ciphertext: bytes
    created_at: str
    updated_at: str

    def to_storage(self) -> Dict[str, str]:
        """Text-only representation for key-value backends."""
        return {
            "id": self.id,
            "iv": base64.b64encode(self.iv).decode("ascii"),
            "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_storage(cls, data: object) -> "EncryptedRecord":
        if not isinstance(data, dict):
            raise FormatError("Envelope must be an object")
        try:
            return cls(
                id=str(data["id"]),
                iv=base64.b64decode(data["iv"], validate=True),
                ciphertext=base64.b64decode(data["ciphertext"], validate=True),
                created_at=str(data["created_at"]),
                updated_at=str(data["updated_at"]),
            )
        except (KeyError, TypeError, binascii.Error) as exc:
            raise FormatError("Malformed envelope") from exc


# ---------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------

def _record_aad(record_id: str, created_at: str) -> bytes:
    return b"|".join((RECORD_AAD_PREFIX, record_id.encode("utf-8"), created_at.encode("utf-8")))


def serialize_payload(entry: JournalEntry) -> bytes:
    """Canonical bytes: sorted-key UTF-8 JSON, no escaping, no normalization."""
    return json.dumps(
        entry.payload(), ensure_ascii=False, sort_keys=True, separators=(",", ":")
    ).encode("utf-8")


def _parse_payload(raw: bytes) -> Dict[str, Any]:
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise FormatError("Record payload is not valid JSON") from exc
    if not isinstance(data, dict):
        raise FormatError("Record payload must be an object")
    images = data.get("images") or []
    if not isinstance(images, list) or not all(isinstance(i, str) for i in images):
        raise FormatError("Record images must be a list of strings")
    for key in ("date", "mood", "text", "title"):
        if not isinstance(data.get(key, ""), str):
            raise FormatError(f"Record field {key!r} must be a string")
    return data


# ---------------------------------------------------------------------
# Encrypt / decrypt
# ---------------------------------------------------------------------

def encrypt_record(key: DataKey, entry: JournalEntry) -> EncryptedRecord:
    """Encrypt *entry* under *key* with a fresh IV.

    Missing id / timestamps are filled in (create path); present ones are kept
    so the same function serves updates and re-keying.
    """
    now = utc_now()
    record_id = entry.id or new_record_id()
    created_at = entry.created_at or now
    updated_at = entry.updated_at or created_at
    if not entry.date:
        entry = replace(entry, date=created_at)
    iv, ct = aesgcm_encrypt(
        key.material,
        serialize_payload(entry),
        aad=_record_aad(record_id, created_at),
    )
    return EncryptedRecord(
        id=record_id,
        iv=iv,
        ciphertext=ct,
        created_at=created_at,
        updated_at=updated_at,
    )


def decrypt_record(key: DataKey, envelope: EncryptedRecord) -> JournalEntry:
    """Decrypt *envelope*; raise ``AuthenticationError`` or ``FormatError``."""
    if not isinstance(envelope, EncryptedRecord) or not envelope.id:
        raise FormatError("Not a valid record envelope")
    raw = aesgcm_decrypt(
        key.material,
        envelope.iv,
        envelope.ciphertext,
        aad=_record_aad(envelope.id, envelope.created_at),
    )
    data = _parse_payload(raw)
    return JournalEntry(
        text=data.get("text", ""),
        title=data.get("title", ""),
        mood=data.get("mood", ""),
        images=list(data.get("images") or []),
        date=data.get("date", "") or envelope.created_at,
        id=envelope.id,
        created_at=envelope.created_at,
        updated_at=envelope.updated_at,
    )


def reencrypt_record(old_key: DataKey, new_key: DataKey, envelope: EncryptedRecord) -> EncryptedRecord:
    """Decrypt under *old_key*, encrypt under *new_key*; timestamps unchanged."""
    return encrypt_record(new_key, decrypt_record(old_key, envelope))
