# -*- coding: utf-8 -*-
"""journalvault package.

Modules:
    errors:   Error taxonomy.
    crypto:   Key derivation, AEAD helpers and the in-memory Data Key.
    records:  Per-record encryption of journal entries.
    storage:  Storage backend contract + key-value backend.
    db:       SQLite schema + async table backend.
    vault:    Vault metadata and the lock state machine.
    rekey:    Password change / recovery re-encryption.
    legacy:   Import of the old single-blob format.
    logic:    Public API that composes the above.
"""

__all__ = ["crypto", "db", "errors", "legacy", "logic", "records", "rekey", "storage", "vault"]
