"""File-backed state store.

Owns the four persisted artifacts under the state directory:

- ``state.json``   the current OrchestratorState snapshot
- ``progress.md``  append-only timeline of what happened
- ``errors.log``   append-only failure entries
- ``lessons.json`` lesson pattern counters

Snapshots are written to a temporary file in the same directory and then
moved into place with ``os.replace``, so a concurrent reader sees either
the previous snapshot or the new one, never a partial file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from conductor.errors import BackupNotFoundError, StaleStateError, StateCorruptError
from conductor.schemas.lessons import LessonRecord
from conductor.schemas.state import ErrorEntry, OrchestratorState, utcnow

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
PROGRESS_FILE = "progress.md"
ERRORS_FILE = "errors.log"
LESSONS_FILE = "lessons.json"
_BACKUP_PREFIX = "state-backup-"

_PROGRESS_HEADER = "# Conductor progress\n\n"


def _atomic_write(path: Path, data: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_state(path: Path) -> OrchestratorState:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise StateCorruptError(f"Cannot read {path}: {e}") from e
    try:
        return OrchestratorState.model_validate_json(raw)
    except ValidationError as e:
        raise StateCorruptError(f"Invalid state in {path}: {e}") from e


def _append(path: Path, line: str, header: str = "") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    new_file = not path.exists()
    with open(path, "a", encoding="utf-8") as f:
        if new_file and header:
            f.write(header)
        f.write(line if line.endswith("\n") else line + "\n")


class StateStore:
    """Durable, versioned snapshot of orchestrator state plus audit trails.

    The store never decides anything: the engine hands it complete states
    to save and reads them back. Saves are idempotent for a given version
    and refuse to go backwards.
    """

    def __init__(self, state_dir: Path | str) -> None:
        self.state_dir = Path(state_dir).expanduser()

    @property
    def state_file(self) -> Path:
        return self.state_dir / STATE_FILE

    @property
    def progress_file(self) -> Path:
        return self.state_dir / PROGRESS_FILE

    @property
    def errors_file(self) -> Path:
        return self.state_dir / ERRORS_FILE

    @property
    def lessons_file(self) -> Path:
        return self.state_dir / LESSONS_FILE

    def exists(self) -> bool:
        return self.state_file.exists()

    # ── State snapshot ──

    def load(self) -> OrchestratorState | None:
        """Load the persisted state.

        Returns:
            The state, or None if nothing has been persisted yet.

        Raises:
            StateCorruptError: If the file is not valid JSON or does not
                match the state schema (including unknown fields).
        """
        if not self.state_file.exists():
            return None
        return _read_state(self.state_file)

    def persisted_version(self) -> int | None:
        """Version of the snapshot on disk, or None if there is no readable one."""
        on_disk = self._read_existing()
        return on_disk[0] if on_disk is not None else None

    def save(self, state: OrchestratorState) -> bool:
        """Atomically persist *state*.

        Saving a version that is already on disk with identical content is
        a no-op. Returns True when the file was written.

        Raises:
            StaleStateError: If the persisted version is newer than
                ``state.version``, or the same version holds different content.
        """
        data = state.model_dump_json(indent=2)
        on_disk = self._read_existing()
        if on_disk is not None:
            disk_version, disk_data = on_disk
            if disk_version > state.version:
                raise StaleStateError(
                    f"Refusing to overwrite state version {disk_version} "
                    f"with older version {state.version}"
                )
            if disk_version == state.version:
                if disk_data == data:
                    logger.debug("State version %d already persisted", state.version)
                    return False
                raise StaleStateError(
                    f"State version {state.version} is already persisted with different content"
                )

        _atomic_write(self.state_file, data)
        logger.debug("Saved state version %d to %s", state.version, self.state_file)
        return True

    def _read_existing(self) -> tuple[int, str] | None:
        if not self.state_file.exists():
            return None
        try:
            data = self.state_file.read_text(encoding="utf-8")
            version = int(json.loads(data).get("version", 0))
        except (OSError, ValueError, AttributeError):
            logger.warning("Existing state file %s is unreadable, overwriting", self.state_file)
            return None
        return version, data

    def backup(self, state: OrchestratorState, when: datetime | None = None) -> Path:
        """Write a timestamped copy of *state* next to the live snapshot."""
        stamp = (when or utcnow()).strftime("%Y%m%dT%H%M%S%fZ")
        path = self.state_dir / f"{_BACKUP_PREFIX}{stamp}-v{state.version}.json"
        _atomic_write(path, state.model_dump_json(indent=2))
        logger.info("State version %d backed up to %s", state.version, path)
        return path

    def backups(self) -> list[Path]:
        """Backup files, oldest first."""
        return sorted(self.state_dir.glob(f"{_BACKUP_PREFIX}*.json"))

    def load_backup(self, path: Path | str | None = None) -> tuple[Path, OrchestratorState]:
        """Read a backup, the newest one when *path* is None.

        Raises:
            BackupNotFoundError: If there is no such backup.
            StateCorruptError: If the backup does not match the state schema.
        """
        if path is None:
            found = self.backups()
            if not found:
                raise BackupNotFoundError(f"No backups in {self.state_dir}")
            path = found[-1]
        path = Path(path).expanduser()
        if not path.is_file():
            raise BackupNotFoundError(f"Backup not found: {path}")
        return path, _read_state(path)

    def prune_backups(self, keep: int) -> list[Path]:
        """Delete all but the *keep* newest backups. Returns the deleted paths."""
        found = self.backups()
        doomed = found[: max(len(found) - keep, 0)]
        for path in doomed:
            path.unlink(missing_ok=True)
        if doomed:
            logger.info("Pruned %d old backup(s) from %s", len(doomed), self.state_dir)
        return doomed

    # ── Audit trails ──

    def append_progress(self, message: str, when: datetime | None = None) -> None:
        """Append one timeline entry to progress.md."""
        stamp = (when or utcnow()).isoformat(timespec="seconds")
        _append(self.progress_file, f"- `{stamp}` {message}", header=_PROGRESS_HEADER)

    def append_error(self, entry: ErrorEntry) -> None:
        """Append one failure entry to errors.log."""
        parts = [
            entry.timestamp.isoformat(timespec="seconds"),
            f"[{entry.severity.value.upper()}]",
            f"phase={entry.phase}",
        ]
        if entry.agent:
            parts.append(f"agent={entry.agent}")
        if entry.milestone:
            parts.append(f"milestone={entry.milestone}")
        if entry.kind:
            parts.append(f"kind={entry.kind}")
        message = " ".join(entry.message.splitlines())
        _append(self.errors_file, " ".join(parts) + f" {message}")

    def read_progress(self, limit: int | None = None) -> list[str]:
        """Timeline entries from progress.md, the last *limit* when given."""
        if not self.progress_file.exists():
            return []
        lines = self.progress_file.read_text(encoding="utf-8").splitlines()
        entries = [ln for ln in lines if ln.startswith("- ")]
        return entries[-limit:] if limit else entries

    # ── Lessons ──

    def load_lessons(self) -> list[LessonRecord]:
        """Load lesson records. A missing file means no lessons yet."""
        if not self.lessons_file.exists():
            return []
        try:
            raw = json.loads(self.lessons_file.read_text(encoding="utf-8"))
            return [LessonRecord.model_validate(r) for r in raw.get("lessons", [])]
        except (ValueError, AttributeError, ValidationError) as e:
            raise StateCorruptError(f"Invalid lessons in {self.lessons_file}: {e}") from e

    def save_lessons(self, records: Sequence[LessonRecord]) -> None:
        payload = {"lessons": [r.model_dump(mode="json") for r in records]}
        _atomic_write(self.lessons_file, json.dumps(payload, indent=2))
