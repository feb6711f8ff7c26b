"""State persistence: file-backed state store and SQLite execution history."""

from conductor.persistence.database import close_db, init_db
from conductor.persistence.history import ExecutionHistory
from conductor.persistence.store import StateStore

__all__ = ["ExecutionHistory", "StateStore", "close_db", "init_db"]
