"""Persisted lock state backed by SQLite.

One row per lock, keyed by its stable identifier, holding the lock's
name and its last :class:`~powerlock._host.LockState` as JSON.  The
rows found at startup are the host's *cached* devices.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import NamedTuple

import aiosqlite

from powerlock._host import LockState

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"


class StoredLock(NamedTuple):
    """A lock row read back from the database."""

    name: str
    state: LockState


class StateStore:
    """Persistent lock state storage using SQLite."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._db is not None

    async def initialize(self) -> None:
        """Open the database and create the table if needed."""
        if self.db_path != MEMORY_DB:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS lock_state (
                stable_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                state_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        await self._db.commit()
        logger.debug("State database ready at %s", self.db_path)

    async def close(self) -> None:
        """Close the database connection.  Safe to call twice."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def save(self, stable_id: str, name: str, state: LockState) -> None:
        """Insert or replace the row for *stable_id*."""
        if self._db is None:
            return

        async with self._lock:
            now = datetime.now(UTC).isoformat()
            await self._db.execute(
                """
                INSERT OR REPLACE INTO lock_state
                (stable_id, name, state_json, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (stable_id, name, json.dumps(state.to_dict()), now),
            )
            await self._db.commit()

    async def load_all(self) -> dict[str, StoredLock]:
        """Return every stored lock keyed by stable id.

        Rows whose JSON cannot be decoded are logged and skipped.
        """
        if self._db is None:
            return {}

        async with self._lock:
            async with self._db.execute(
                "SELECT stable_id, name, state_json FROM lock_state"
            ) as cursor:
                rows = await cursor.fetchall()

        result: dict[str, StoredLock] = {}
        for stable_id, name, state_json in rows:
            try:
                state = LockState.from_dict(json.loads(state_json))
            except (KeyError, TypeError, ValueError):
                logger.warning("Ignoring unreadable state for %s", stable_id)
                continue
            result[stable_id] = StoredLock(name=name, state=state)
        return result

