"""SQLite database layer for the execution history.

Manages the SQLite connection and schema creation. Uses aiosqlite for
async access with WAL mode so the CLI can read history while a running
engine is writing to it.
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS executions (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id            TEXT NOT NULL,
    agent_type         TEXT NOT NULL,
    phase              INTEGER NOT NULL,
    milestone          TEXT NOT NULL,
    status             TEXT NOT NULL,
    error_kind         TEXT,
    error              TEXT NOT NULL DEFAULT '',
    manual             INTEGER NOT NULL DEFAULT 0,
    duration           REAL NOT NULL DEFAULT 0.0,
    estimated_duration REAL NOT NULL DEFAULT 0.0,
    conflict_count     INTEGER NOT NULL DEFAULT 0,
    started_at         TEXT,
    completed_at       TEXT NOT NULL,
    state_version      INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_executions_agent ON executions(agent_type);
CREATE INDEX IF NOT EXISTS idx_executions_phase ON executions(phase);
CREATE INDEX IF NOT EXISTS idx_executions_completed ON executions(completed_at);
"""


async def init_db(db_path: str) -> aiosqlite.Connection:
    """Open the history database and create tables if needed.

    Args:
        db_path: Path to the SQLite database file. Supports ~ expansion
            and ``:memory:``.

    Returns:
        An open aiosqlite connection ready for use.
    """
    if db_path != ":memory:":
        resolved = Path(db_path).expanduser()
        resolved.parent.mkdir(parents=True, exist_ok=True)
        db_path = str(resolved)

    db = await aiosqlite.connect(db_path)
    await db.execute("PRAGMA journal_mode=WAL")
    await db.executescript(_SCHEMA)
    await db.commit()

    logger.info("History database initialized at %s", db_path)
    return db


async def close_db(db: aiosqlite.Connection) -> None:
    """Close the database connection."""
    await db.close()
