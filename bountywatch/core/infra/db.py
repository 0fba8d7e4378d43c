"""
Database infrastructure with SQLite and async support.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, List, Optional, Sequence, Tuple

import aiosqlite


logger = logging.getLogger(__name__)


class Database:
    """Async SQLite database wrapper.

    ``schema`` statements run on every connect, so they must be idempotent
    (``CREATE TABLE IF NOT EXISTS``).
    """

    def __init__(self, db_path: str = "data/bountywatch.db", schema: Sequence[str] = ()):
        # Handle SQLite URL format if provided
        if db_path.startswith("sqlite"):
            # Handle sqlite+aiosqlite:///path format
            if "///" in db_path:
                db_path = db_path.split("///")[-1]
            else:
                db_path = db_path.split("//")[-1]
        self.db_path = db_path
        self._schema = list(schema)
        self._connection: Optional[aiosqlite.Connection] = None
        # one connection is shared by concurrent scans; transactions must not interleave
        self._tx_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Connect to the database and create the schema."""
        if self._connection:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        # Open connection with a longer busy timeout
        self._connection = await aiosqlite.connect(self.db_path, timeout=30)
        self._connection.row_factory = aiosqlite.Row
        if self.db_path != ":memory:":
            await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA busy_timeout=30000;")
        for statement in self._schema:
            await self._connection.execute(statement)
        await self._connection.commit()
        logger.debug("Connected to %s", self.db_path)

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *_) -> None:
        await self.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Context manager for database transactions."""
        if not self._connection:
            await self.connect()

        async with self._tx_lock:
            try:
                await self._connection.execute("BEGIN")
                yield self._connection
                await self._connection.commit()
            except BaseException:
                # cancellation included
                await self._connection.rollback()
                raise

    async def execute(self, sql: str, params: Tuple[Any, ...] = ()) -> aiosqlite.Cursor:
        """Execute a SQL statement."""
        if not self._connection:
            await self.connect()
        return await self._connection.execute(sql, params)

    async def fetch_one(self, sql: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        """Fetch one row."""
        cursor = await self.execute(sql, params)
        return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        """Fetch all rows."""
        cursor = await self.execute(sql, params)
        return await cursor.fetchall()

    @staticmethod
    def upsert_sql(table: str, columns: Sequence[str], pk_columns: Sequence[str]) -> str:
        """Build an INSERT … ON CONFLICT DO UPDATE statement."""
        placeholders = ", ".join("?" * len(columns))
        update_columns = [col for col in columns if col not in pk_columns]
        if update_columns:
            update_clause = ", ".join(f"{col} = excluded.{col}" for col in update_columns)
            conflict_clause = f"ON CONFLICT({', '.join(pk_columns)}) DO UPDATE SET {update_clause}"
        else:
            conflict_clause = f"ON CONFLICT({', '.join(pk_columns)}) DO NOTHING"
        return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) {conflict_clause}"

    async def upsert_many(
        self,
        conn: aiosqlite.Connection,
        table: str,
        rows: Iterable[dict],
        pk_columns: Sequence[str],
    ) -> None:
        """Upsert rows inside an open transaction."""
        rows = list(rows)
        if not rows:
            return
        columns = list(rows[0].keys())
        sql = self.upsert_sql(table, columns, pk_columns)
        await conn.executemany(sql, [tuple(r[c] for c in columns) for r in rows])
