"""
Fingerprint Store – durable per-resource state in SQLite.

Tables
------
fingerprints      one row per watched resource (cheap signature, timestamps)
entity_snapshots  the last full snapshot per resource, as JSON
run_state         small key/value table (``last_full_scan_at``)

All timestamps are ISO-8601 strings and round-trip exactly.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, Optional

import aiosqlite

from .errors import PersistenceError
from .infra.db import Database
from .models import EntitySnapshot, Fingerprint

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS fingerprints (
        resource_id TEXT PRIMARY KEY,
        signature TEXT NOT NULL,
        last_checked_at TEXT NOT NULL,
        last_changed_at TEXT,
        entity_count_estimate INTEGER NOT NULL DEFAULT 0,
        snapshot_signature TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entity_snapshots (
        resource_id TEXT PRIMARY KEY,
        captured_at TEXT NOT NULL,
        payload TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS run_state (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
)

LAST_FULL_SCAN_KEY = "last_full_scan_at"


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class FingerprintStore:
    """Async facade over the SQLite state file."""

    def __init__(self, db_path: str = "data/bountywatch.db"):
        self.db = Database(db_path, schema=SCHEMA)

    async def open(self) -> None:
        try:
            await self.db.connect()
        except (aiosqlite.Error, OSError) as e:
            raise PersistenceError(f"cannot open fingerprint store {self.db.db_path}: {e}") from e

    async def close(self) -> None:
        await self.db.close()

    async def __aenter__(self) -> "FingerprintStore":
        await self.open()
        return self

    async def __aexit__(self, *_) -> None:
        await self.close()

    # ------------------------------------------------------------------ #
    # Reads
    @staticmethod
    def _row_to_fingerprint(row: aiosqlite.Row) -> Fingerprint:
        return Fingerprint(
            resource_id=row["resource_id"],
            signature=row["signature"],
            last_checked_at=_parse_ts(row["last_checked_at"]),
            last_changed_at=_parse_ts(row["last_changed_at"]),
            entity_count_estimate=row["entity_count_estimate"],
            snapshot_signature=row["snapshot_signature"],
        )

    async def load_all(self) -> Dict[str, Fingerprint]:
        """Every stored fingerprint, keyed by resource id."""
        try:
            rows = await self.db.fetch_all("SELECT * FROM fingerprints")
            return {row["resource_id"]: self._row_to_fingerprint(row) for row in rows}
        except (aiosqlite.Error, ValueError) as e:
            raise PersistenceError(f"cannot read fingerprints: {e}") from e

    async def get(self, resource_id: str) -> Optional[Fingerprint]:
        try:
            row = await self.db.fetch_one(
                "SELECT * FROM fingerprints WHERE resource_id = ?", (resource_id,)
            )
        except aiosqlite.Error as e:
            raise PersistenceError(f"cannot read fingerprint for {resource_id}: {e}") from e
        return self._row_to_fingerprint(row) if row else None

    async def load_snapshot(self, resource_id: str) -> Optional[EntitySnapshot]:
        try:
            row = await self.db.fetch_one(
                "SELECT payload FROM entity_snapshots WHERE resource_id = ?", (resource_id,)
            )
            if not row:
                return None
            return EntitySnapshot.model_validate_json(row["payload"])
        except (aiosqlite.Error, ValueError) as e:
            raise PersistenceError(f"cannot read snapshot for {resource_id}: {e}") from e

    async def get_last_full_scan_at(self) -> Optional[datetime]:
        try:
            row = await self.db.fetch_one(
                "SELECT value FROM run_state WHERE key = ?", (LAST_FULL_SCAN_KEY,)
            )
        except aiosqlite.Error as e:
            raise PersistenceError(f"cannot read run state: {e}") from e
        return _parse_ts(row["value"]) if row else None

    # ------------------------------------------------------------------ #
    # Writes – one transaction per resource
    async def save(self, fingerprint: Fingerprint, snapshot: Optional[EntitySnapshot] = None) -> None:
        """Persist a fingerprint and, optionally, the snapshot it was derived from."""
        row = {
            "resource_id": fingerprint.resource_id,
            "signature": fingerprint.signature,
            "last_checked_at": _ts(fingerprint.last_checked_at),
            "last_changed_at": _ts(fingerprint.last_changed_at),
            "entity_count_estimate": fingerprint.entity_count_estimate,
            "snapshot_signature": fingerprint.snapshot_signature,
        }
        try:
            async with self.db.transaction() as conn:
                await self.db.upsert_many(conn, "fingerprints", [row], ["resource_id"])
                if snapshot is not None:
                    await self.db.upsert_many(
                        conn,
                        "entity_snapshots",
                        [{
                            "resource_id": snapshot.resource_id,
                            "captured_at": _ts(snapshot.captured_at),
                            "payload": snapshot.model_dump_json(),
                        }],
                        ["resource_id"],
                    )
        except aiosqlite.Error as e:
            logger.error("Failed to persist state for %s: %s", fingerprint.resource_id, e)
            raise PersistenceError(f"cannot write state for {fingerprint.resource_id}: {e}") from e

    async def retire(self, resource_ids: Iterable[str]) -> None:
        """Delete all state for resources that are no longer watched."""
        for resource_id in resource_ids:
            try:
                async with self.db.transaction() as conn:
                    await conn.execute("DELETE FROM fingerprints WHERE resource_id = ?", (resource_id,))
                    await conn.execute("DELETE FROM entity_snapshots WHERE resource_id = ?", (resource_id,))
            except aiosqlite.Error as e:
                raise PersistenceError(f"cannot retire {resource_id}: {e}") from e
            logger.info("Retired state for %s", resource_id)

    async def set_last_full_scan_at(self, when: datetime) -> None:
        try:
            async with self.db.transaction() as conn:
                await self.db.upsert_many(
                    conn, "run_state", [{"key": LAST_FULL_SCAN_KEY, "value": _ts(when)}], ["key"]
                )
        except aiosqlite.Error as e:
            raise PersistenceError(f"cannot write run state: {e}") from e
