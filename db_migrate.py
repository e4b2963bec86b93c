from __future__ import annotations

"""Manual DB migration helper."""

import asyncio
import sys

from journalvault.db import DB_PATH, SqliteBackend


async def migrate(db_path: str = DB_PATH) -> None:
    backend = SqliteBackend(db_path)
    # init_db creates missing tables and applies column migrations.
    await backend.init_db()


if __name__ == "__main__":
    asyncio.run(migrate(sys.argv[1] if len(sys.argv) > 1 else DB_PATH))
