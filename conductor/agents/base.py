"""Agent executor contract.

An executor turns one AgentTask into one AgentResult. Executors know
nothing about the engine, its state or other agents; the engine knows
nothing about what an executor does beyond this interface.
"""

from __future__ import annotations

import logging
import time
from typing import Protocol, runtime_checkable

from conductor.schemas.results import AgentResult, ErrorKind
from conductor.schemas.state import AgentTask

logger = logging.getLogger(__name__)


@runtime_checkable
class AgentExecutor(Protocol):
    """Anything that can execute an AgentTask.

    Implementations must return within finite time and must be safe to
    invoke twice for the same task, since tasks left in flight by a
    crashed process are re-run after restart.
    """

    async def execute(self, task: AgentTask) -> AgentResult: ...


async def run_executor(executor: AgentExecutor, task: AgentTask) -> AgentResult:
    """Execute *task* and always return a result.

    Exceptions raised by the executor become a failed result with error
    code ``AGENT_EXCEPTION``. A result without a duration gets the
    measured wall-clock time.
    """
    start = time.monotonic()
    try:
        result = await executor.execute(task)
    except Exception as e:
        elapsed = time.monotonic() - start
        logger.exception("Agent %s raised while executing %s", task.agent_type, task.id)
        return AgentResult(
            success=False,
            error_code=ErrorKind.AGENT_EXCEPTION,
            output=f"{type(e).__name__}: {e}",
            duration=elapsed,
        )

    if not result.duration:
        result = result.model_copy(update={"duration": time.monotonic() - start})
    return result
