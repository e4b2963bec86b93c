"""
Shared pytest fixtures for the journalvault test suite.

Autouse fixtures below isolate tests from the real environment:
  - Config directory -> temp directory (no writes to ~/.config/journalvault)
  - JOURNALVAULT_* env vars removed (a developer's shell cannot leak in)
  - argon2 hasher    -> minimum cost (recovery tests stay fast)
"""

import pytest
import pytest_asyncio
from argon2 import PasswordHasher

from journalvault import crypto, logic
from journalvault.crypto import KdfParams
from journalvault.db import SqliteBackend
from journalvault.errors import StorageError
from journalvault.storage import JsonFileStore, KeyValueBackend
from journalvault.vault import VaultManager

# Real deployments use 2**15; tests only need a valid power of two.
FAST_KDF = KdfParams(n=2 ** 10, r=8, p=1)


@pytest.fixture(autouse=True)
def _isolate_config(tmp_path, monkeypatch):
    """Point the config directory at a temp dir and drop env overrides."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("APPDATA", str(tmp_path / "config"))
    for name in logic.ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _cheap_argon2(monkeypatch):
    monkeypatch.setattr(
        crypto, "PH", PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)
    )


@pytest.fixture
def cfg(tmp_path):
    """Full config dict with cheap KDF settings and no backups."""
    data = dict(logic.DEFAULT_CONFIG)
    data.update(
        db_path=str(tmp_path / "journal.sqlite3"),
        kv_path=str(tmp_path / "journal.json"),
        kdf_n=FAST_KDF.n,
        kdf_r=FAST_KDF.r,
        kdf_p=FAST_KDF.p,
        backup_before_rekey=False,
    )
    return data


@pytest.fixture(params=["sqlite", "kv"])
def backend(request, tmp_path):
    """Each backend-level test runs against both implementations."""
    if request.param == "sqlite":
        return SqliteBackend(tmp_path / "journal.sqlite3")
    return KeyValueBackend(JsonFileStore(tmp_path / "journal.json"))


class FlakyBackend:
    """Wraps a backend and fails ``put_record`` once armed.

    ``arm(n)`` lets *n* more record writes through, then raises
    ``StorageError`` for every following write until ``disarm()``.
    ``arm(n, failures=k)`` fails only the next *k* writes after those.
    """

    def __init__(self, inner):
        self.inner = inner
        self._remaining = None
        self._failures = None
        self.failed_ids = []

    def arm(self, allowed_writes, failures=None):
        self._remaining = allowed_writes
        self._failures = failures

    def disarm(self):
        self._remaining = None

    async def put_record(self, envelope):
        if self._remaining is not None:
            if self._remaining <= 0:
                self.failed_ids.append(envelope.id)
                if self._failures is not None:
                    self._failures -= 1
                    if self._failures <= 0:
                        self.disarm()
                raise StorageError("injected write failure", record_id=envelope.id)
            self._remaining -= 1
        await self.inner.put_record(envelope)

    def __getattr__(self, name):
        return getattr(self.inner, name)


@pytest.fixture
def flaky_backend():
    return FlakyBackend(KeyValueBackend())


@pytest_asyncio.fixture
async def manager(backend, cfg):
    vm = VaultManager(backend, kdf_params=FAST_KDF, config=cfg)
    await vm.initialize()
    return vm


@pytest_asyncio.fixture
async def flaky_manager(flaky_backend, cfg):
    vm = VaultManager(flaky_backend, kdf_params=FAST_KDF, config=cfg)
    await vm.initialize()
    return vm
