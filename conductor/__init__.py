"""Conductor: autonomous phased orchestration engine."""

__version__ = "0.1.0"

from .engine import OrchestratorEngine
from .errors import ConductorError
from .registry import AgentRegistry, load_engine_config, load_registry

__all__ = [
    "AgentRegistry",
    "ConductorError",
    "OrchestratorEngine",
    "load_engine_config",
    "load_registry",
]
