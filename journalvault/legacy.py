# -*- coding: utf-8 -*-
"""Import of the legacy single-blob journal format.

Before per-record encryption, all entries lived in one AES-GCM blob::

    {"version": 0, "iv": <b64>, "ciphertext": <b64>}

whose plaintext is a JSON array of camel-cased journal objects
(``id``, ``date``, ``createdAt``, ``updatedAt``, ``title``, ``text``,
``mood``, ``images``). The blob was sealed under the same Data Key.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List
import base64
import binascii
import json

from .crypto import DataKey, aesgcm_decrypt, aesgcm_encrypt
from .errors import FormatError
from .records import EncryptedRecord, JournalEntry, encrypt_record, new_record_id, utc_now

LEGACY_AAD = b"journalvault/legacy-blob"
LEGACY_FLAG = "legacy_blob_v1"


def _entry_from_legacy(item: Dict[str, Any]) -> JournalEntry:
    if not isinstance(item, dict):
        raise FormatError("Legacy journal item must be an object")
    images = item.get("images") or []
    if not isinstance(images, list):
        raise FormatError("Legacy journal images must be a list")
    created_at = item.get("createdAt") or item.get("date") or utc_now()
    return JournalEntry(
        text=str(item.get("text") or ""),
        title=str(item.get("title") or ""),
        mood=str(item.get("mood") or ""),
        images=[str(i) for i in images],
        date=str(item.get("date") or created_at),
        id=str(item.get("id") or new_record_id()),
        created_at=str(created_at),
        updated_at=str(item.get("updatedAt") or created_at),
    )


def migrate_legacy_blob(blob: bytes, key: DataKey) -> List[EncryptedRecord]:
    """Split a legacy blob into per-record envelopes, each with its own IV.

    Entries keep their ids, so importing the same blob twice overwrites
    instead of duplicating.
    """
    try:
        outer = json.loads(bytes(blob).decode("utf-8"))
        iv = base64.b64decode(outer["iv"], validate=True)
        ct = base64.b64decode(outer["ciphertext"], validate=True)
    except (UnicodeDecodeError, ValueError, KeyError, TypeError, binascii.Error) as exc:
        raise FormatError("Not a legacy journal blob") from exc

    raw = aesgcm_decrypt(key.material, iv, ct, aad=LEGACY_AAD)
    try:
        items = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise FormatError("Legacy blob payload is not valid JSON") from exc
    if not isinstance(items, list):
        raise FormatError("Legacy blob payload must be a list")
    return [encrypt_record(key, _entry_from_legacy(item)) for item in items]


def build_legacy_blob(key: DataKey, items: Iterable[Dict[str, Any]]) -> bytes:
    """Produce a blob in the legacy format (fixtures and downgrade tooling)."""
    payload = json.dumps(list(items), ensure_ascii=False).encode("utf-8")
    iv, ct = aesgcm_encrypt(key.material, payload, aad=LEGACY_AAD)
    doc = {
        "version": 0,
        "iv": base64.b64encode(iv).decode("ascii"),
        "ciphertext": base64.b64encode(ct).decode("ascii"),
    }
    return json.dumps(doc).encode("utf-8")
