"""Simulated agent: waits for a fixed delay and reports success."""

from __future__ import annotations

import asyncio
import logging

from conductor.schemas.results import AgentResult
from conductor.schemas.state import AgentTask

logger = logging.getLogger(__name__)


class SimulatedAgent:
    """Stand-in executor used for dry runs and demos."""

    def __init__(self, delay: float = 0.0) -> None:
        self._delay = delay

    async def execute(self, task: AgentTask) -> AgentResult:
        if self._delay:
            await asyncio.sleep(self._delay)
        logger.debug("Simulated %s finished %s", task.agent_type, task.milestone)
        return AgentResult(
            success=True,
            output=f"{task.agent_type} completed {task.milestone}",
            duration=self._delay,
        )
