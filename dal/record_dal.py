"""Async Data Access Layer for the RECORD table.

Each row holds one top-level store record (for example ``sessions/<id>``)
serialized as JSON. The `DocumentStore` writes through to this table and
reloads from it on startup.
"""

from __future__ import annotations

import json
import time
from typing import Any, List, Tuple

from utils.database_init import AsyncDatabaseInitializer


class RecordDAL:
    """Data access layer for persisted store records.

    The constructor accepts an `AsyncDatabaseInitializer` (or any object
    exposing an async `connection()` context manager that yields an
    `aiosqlite.Connection`).
    """

    def __init__(self, db_initializer: AsyncDatabaseInitializer) -> None:
        self._db = db_initializer

    async def upsert_record(self, path: str, value: Any) -> None:
        """Insert or replace the JSON value stored for `path`."""
        async with self._db.connection() as conn:
            await conn.execute(
                "INSERT INTO RECORD (path, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(path) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (path, json.dumps(value, separators=(",", ":")), int(time.time())),
            )
            await conn.commit()

    async def delete_record(self, path: str) -> bool:
        """Delete the record at `path`. Returns True if a row was deleted."""
        async with self._db.connection() as conn:
            await conn.execute("DELETE FROM RECORD WHERE path = ?", (path,))
            await conn.commit()
            cur = await conn.execute("SELECT changes()")
            changed = await cur.fetchone()
            return bool(changed and changed[0] > 0)

    async def delete_prefix(self, root: str) -> int:
        """Delete every record under `root/` and return the number removed."""
        async with self._db.connection() as conn:
            await conn.execute("DELETE FROM RECORD WHERE path LIKE ?", (f"{root}/%",))
            await conn.commit()
            cur = await conn.execute("SELECT changes()")
            changed = await cur.fetchone()
            return int(changed[0]) if changed and changed[0] is not None else 0

    async def list_records(self) -> List[Tuple[str, Any]]:
        """Return `(path, value)` pairs for every stored record, ordered by path."""
        async with self._db.connection() as conn:
            cur = await conn.execute("SELECT path, value FROM RECORD ORDER BY path")
            rows = await cur.fetchall()
        return [(row[0], json.loads(row[1])) for row in rows]
