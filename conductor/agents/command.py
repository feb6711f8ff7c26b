"""Command agent: runs a shell command for each task.

The task is described to the command through environment variables
(``CONDUCTOR_TASK_ID``, ``CONDUCTOR_AGENT``, ``CONDUCTOR_PHASE``,
``CONDUCTOR_MILESTONE``, ``CONDUCTOR_DESCRIPTION``). Exit code 0 means
success. If the last line of output is a JSON object, it is merged into
the result metadata, which lets external tools report conflicts.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
import time
from collections.abc import Mapping
from pathlib import Path

from conductor.schemas.results import AgentResult, ErrorKind
from conductor.schemas.state import AgentTask

logger = logging.getLogger(__name__)

# Characters of command output kept on a result
_OUTPUT_LIMIT = 4000


async def run_command(
    command: str,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> tuple[int | None, str]:
    """Run *command* without a shell and capture combined output.

    Returns:
        Tuple of (exit code, output). The exit code is None when the
        command could not be started or timed out.
    """
    try:
        args = shlex.split(command)
    except ValueError as e:
        return None, f"Invalid command {command!r}: {e}"
    if not args:
        return None, "Empty command"

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        logger.warning("Could not start %r: %s", command, e)
        return None, str(e)

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("Command %r timed out after %ss", command, timeout)
        return None, f"Timed out after {timeout}s"

    return proc.returncode, stdout.decode("utf-8", errors="replace")


def _trailing_json(output: str) -> dict:
    lines = [ln for ln in output.strip().splitlines() if ln.strip()]
    if not lines or not lines[-1].lstrip().startswith("{"):
        return {}
    try:
        payload = json.loads(lines[-1])
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


class CommandAgent:
    """Executor that shells out to an external command."""

    def __init__(self, command: str, cwd: str = "") -> None:
        self._command = command
        self._cwd = cwd or None

    def _env(self, task: AgentTask) -> dict[str, str]:
        env = dict(os.environ)
        env.update({
            "CONDUCTOR_TASK_ID": task.id,
            "CONDUCTOR_AGENT": task.agent_type,
            "CONDUCTOR_PHASE": str(task.phase),
            "CONDUCTOR_MILESTONE": task.milestone,
            "CONDUCTOR_DESCRIPTION": task.description,
        })
        return env

    async def execute(self, task: AgentTask) -> AgentResult:
        start = time.monotonic()
        code, output = await run_command(self._command, cwd=self._cwd, env=self._env(task))
        duration = time.monotonic() - start

        metadata = _trailing_json(output)
        success = code == 0
        if success:
            logger.info("%s: %r succeeded for %s", task.agent_type, self._command, task.id)
        else:
            logger.warning(
                "%s: %r failed for %s (exit code %s)",
                task.agent_type, self._command, task.id, code,
            )

        return AgentResult(
            success=success,
            error_code=None if success else ErrorKind.EXECUTION_FAILURE,
            output=output[-_OUTPUT_LIMIT:],
            metadata=metadata,
            duration=duration,
        )
