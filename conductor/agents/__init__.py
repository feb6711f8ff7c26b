"""Agent executors and the factory that binds them to the registry."""

from __future__ import annotations

from pathlib import Path

from conductor.agents.base import AgentExecutor, run_executor
from conductor.agents.command import CommandAgent, run_command
from conductor.agents.security import SecurityScanAgent, scan_text
from conductor.agents.simulated import SimulatedAgent
from conductor.errors import ConfigurationError
from conductor.registry import AgentRegistry
from conductor.schemas.registry import AgentSpec, ExecutorKind


def build_executor(spec: AgentSpec, root: Path | None = None) -> AgentExecutor:
    """Create the executor configured for one agent."""
    cfg = spec.executor
    if cfg.kind == ExecutorKind.SIMULATED:
        return SimulatedAgent(delay=cfg.delay)
    if cfg.kind == ExecutorKind.COMMAND:
        if not cfg.command:
            raise ConfigurationError(f"Agent {spec.id} uses the command executor without a command")
        return CommandAgent(cfg.command, cwd=cfg.cwd or (str(root) if root else ""))
    if cfg.kind == ExecutorKind.SECURITY_SCAN:
        return SecurityScanAgent(cfg.documents, root=cfg.cwd or root)
    raise ConfigurationError(f"Agent {spec.id} has unknown executor kind {cfg.kind}")


def build_executors(registry: AgentRegistry, root: Path | None = None) -> dict[str, AgentExecutor]:
    """Create one executor per registered agent, keyed by agent id."""
    return {spec.id: build_executor(spec, root) for spec in registry.agents}


__all__ = [
    "AgentExecutor",
    "CommandAgent",
    "SecurityScanAgent",
    "SimulatedAgent",
    "build_executor",
    "build_executors",
    "run_command",
    "run_executor",
    "scan_text",
]
