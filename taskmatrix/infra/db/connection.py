# taskmatrix/infra/db/connection.py
from __future__ import annotations

from typing import Any, Optional, Sequence

import aiosqlite

from taskmatrix.domain.common.errors import BackendError


class Database:
    """
    Async SQLite helper:
    - opens a new connection per operation (simple + safe)
    - sets row_factory to aiosqlite.Row
    - enables WAL
    - re-raises sqlite failures as BackendError
    """

    def __init__(self, path: str) -> None:
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    async def executescript(self, sql: str) -> None:
        try:
            async with aiosqlite.connect(self._path) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA journal_mode=WAL;")
                await db.executescript(sql)
                await db.commit()
        except aiosqlite.Error as e:
            raise BackendError(f"sqlite script failed: {e}") from e

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        try:
            async with aiosqlite.connect(self._path) as db:
                db.row_factory = aiosqlite.Row
                await db.execute(sql, params)
                await db.commit()
        except aiosqlite.Error as e:
            raise BackendError(f"sqlite execute failed: {e}") from e

    async def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        try:
            async with aiosqlite.connect(self._path) as db:
                db.row_factory = aiosqlite.Row
                cur = await db.execute(sql, params)
                return await cur.fetchone()
        except aiosqlite.Error as e:
            raise BackendError(f"sqlite fetch failed: {e}") from e
