"""
Durable store for finalized charging sessions, backed by async SQLite.

Finalized sessions are immutable, so the store is append-only: a session
is written once when the detector closes it and read back newest first.
Each row keeps the session id, its start time (for ordering) and the
full session as JSON.  Re-recording the same id replaces the row, which
keeps the store idempotent if a session is delivered twice.

Operations:
- record(session): INSERT OR REPLACE one finalized session.
- recent(limit): SELECT the newest sessions, newest first.
- count(): SELECT COUNT(*) of stored sessions.
- close(): Close the underlying database connection.

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

from evlink.src.models import ChargingSession

logger = logging.getLogger(__name__)

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    started_at TEXT NOT NULL,
    payload TEXT NOT NULL,
    recorded_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_INSERT_SQL = """\
INSERT OR REPLACE INTO sessions (id, started_at, payload) VALUES (?, ?, ?);
"""

_RECENT_SQL = """\
SELECT payload
FROM sessions
ORDER BY started_at DESC
LIMIT ?;
"""

_COUNT_SQL = "SELECT COUNT(*) FROM sessions;"


class SessionStore:
    """Append-only SQLite store of finalized :class:`ChargingSession` rows.

    Args:
        path: Filesystem path for the SQLite database file.

    Usage::

        async with SessionStore(path="/data/sessions.db") as store:
            await store.record(session)
            latest = await store.recent(10)
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the SQLite connection in WAL mode and create the schema."""
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SessionStore:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def _require(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SessionStore not opened. Call open() or use async with.")
        return self._db

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def record(self, session: ChargingSession) -> None:
        """Persist a finalized session.

        Args:
            session: A closed session (``ended_at`` set).

        Raises:
            ValueError: The session is still open.
        """
        if session.ended_at is None:
            raise ValueError(f"session {session.id} is still open")
        db = self._require()
        await db.execute(
            _INSERT_SQL,
            (session.id, session.started_at.isoformat(), session.model_dump_json()),
        )
        await db.commit()
        logger.info("Recorded charging session %s", session.id)

    async def recent(self, limit: int = 20) -> list[ChargingSession]:
        """Return up to *limit* sessions, newest first."""
        db = self._require()
        if limit < 1:
            return []
        cursor = await db.execute(_RECENT_SQL, (limit,))
        rows = await cursor.fetchall()
        return [ChargingSession.model_validate_json(row[0]) for row in rows]

    async def count(self) -> int:
        """Return the number of stored sessions."""
        db = self._require()
        cursor = await db.execute(_COUNT_SQL)
        row = await cursor.fetchone()
        return row[0]

