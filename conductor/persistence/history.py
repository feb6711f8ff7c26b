"""Execution history backed by SQLite.

Every task result the engine applies is recorded here, including failed
and conflict-paused tasks. The history is an audit and reporting aid
only; the engine never reads it to make decisions.
"""

from __future__ import annotations

import logging

import aiosqlite

from conductor.schemas.reports import ExecutionRecord, HistoryStats
from conductor.schemas.state import AgentStatus, AgentTask

logger = logging.getLogger(__name__)


class ExecutionHistory:
    """Append-only execution log.

    All methods are async and operate on an aiosqlite connection
    initialized by database.init_db().
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def record(
        self,
        task: AgentTask,
        duration: float,
        conflict_count: int = 0,
        state_version: int = 0,
    ) -> None:
        """Record one terminal task."""
        completed = task.completed_at or task.created_at
        await self._db.execute(
            """
            INSERT INTO executions
                (task_id, agent_type, phase, milestone, status, error_kind,
                 error, manual, duration, estimated_duration, conflict_count,
                 started_at, completed_at, state_version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                task.agent_type,
                task.phase,
                task.milestone,
                task.status.value,
                task.error_kind,
                task.error,
                int(task.manual),
                duration,
                task.estimated_duration,
                conflict_count,
                task.started_at.isoformat() if task.started_at else None,
                completed.isoformat(),
                state_version,
            ),
        )
        await self._db.commit()
        logger.debug("Recorded execution of %s (%s)", task.id, task.status)

    async def stats(self) -> list[HistoryStats]:
        """Per-agent execution totals, ordered by agent."""
        async with self._db.execute(
            """
            SELECT agent_type,
                   COUNT(*),
                   SUM(CASE WHEN status = ? THEN 1 ELSE 0 END),
                   SUM(CASE WHEN status = ? THEN 1 ELSE 0 END),
                   AVG(CASE WHEN status = ? THEN duration END)
            FROM executions
            GROUP BY agent_type
            ORDER BY agent_type
            """,
            (AgentStatus.COMPLETED.value, AgentStatus.FAILED.value, AgentStatus.COMPLETED.value),
        ) as cursor:
            rows = await cursor.fetchall()

        return [
            HistoryStats(
                agent_type=row[0],
                executions=row[1],
                successes=row[2] or 0,
                failures=row[3] or 0,
                average_duration=row[4] or 0.0,
            )
            for row in rows
        ]

    async def recent(self, limit: int = 20) -> list[ExecutionRecord]:
        """Most recent executions, newest first."""
        async with self._db.execute(
            "SELECT * FROM executions ORDER BY id DESC LIMIT ?", (limit,)
        ) as cursor:
            columns = [c[0] for c in cursor.description]
            rows = await cursor.fetchall()
        return [ExecutionRecord(**dict(zip(columns, row, strict=True))) for row in rows]

    async def count(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM executions") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0
