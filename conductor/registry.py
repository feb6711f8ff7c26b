"""Agent registry and TOML configuration loader.

Loads the agent capability table from agents.toml, the phase plan from
phases.toml and engine defaults from defaults.toml. The resulting
AgentRegistry is immutable: lookups only, no mutation after construction.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping, Sequence
from pathlib import Path
from types import MappingProxyType

from pydantic import ValidationError

from conductor.errors import ConfigurationError, RegistryError, UnknownAgentError
from conductor.schemas.config import EngineConfig
from conductor.schemas.registry import AgentSpec, MilestoneSpec, PhaseSpec

# Default config directory relative to the conductor package
_CONFIG_DIR = Path(__file__).parent / "config"

# Environment overrides applied on top of defaults.toml
_ENV_PREFIX = "CONDUCTOR_"
_ENV_FIELDS: dict[str, str] = {
    "ENABLED": "enabled",
    "AUTO_ADVANCE": "auto_advance",
    "TICK_INTERVAL": "tick_interval",
    "STATE_DIR": "state_dir",
    "MAX_PARALLEL": "max_parallel_agents",
    "HISTORY": "history_enabled",
}


class AgentRegistry:
    """Immutable table of agents, their per-phase capabilities and the phase plan.

    Agent enumeration order is the order agents were declared in; it is
    the final tie-breaker for dispatch ordering.
    """

    def __init__(self, agents: Sequence[AgentSpec], phases: Sequence[PhaseSpec]) -> None:
        self._agents: Mapping[str, AgentSpec] = MappingProxyType({a.id: a for a in agents})
        self._order: tuple[str, ...] = tuple(a.id for a in agents)
        self._phases: tuple[PhaseSpec, ...] = tuple(sorted(phases, key=lambda p: p.number))
        self._milestones: Mapping[str, tuple[int, MilestoneSpec]] = MappingProxyType({
            m.id: (p.number, m) for p in self._phases for m in p.milestones
        })
        self._validate(agents)

    # ── Agents ──

    @property
    def agent_ids(self) -> tuple[str, ...]:
        return self._order

    @property
    def agents(self) -> tuple[AgentSpec, ...]:
        return tuple(self._agents[a] for a in self._order)

    def has_agent(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def get(self, agent_id: str) -> AgentSpec:
        try:
            return self._agents[agent_id]
        except KeyError:
            raise UnknownAgentError(f"Unknown agent: {agent_id}") from None

    def index(self, agent_id: str) -> int:
        return self._order.index(agent_id)

    def is_capable(self, agent_id: str, phase: int) -> bool:
        return bool(self.get(agent_id).capabilities_for(phase))

    def agents_for_phase(self, phase: int) -> list[str]:
        """Agents with a non-empty capability set in *phase*, in enumeration order."""
        return [a for a in self._order if self._agents[a].capabilities_for(phase)]

    def assignments(self, agent_id: str, phase: int) -> list[MilestoneSpec]:
        """Milestones of *phase* the agent contributes to, in phase order."""
        return [m for m in self.phase(phase).milestones if agent_id in m.agents]

    # ── Phases & milestones ──

    @property
    def phases(self) -> tuple[PhaseSpec, ...]:
        return self._phases

    @property
    def last_phase(self) -> int:
        return self._phases[-1].number

    def has_phase(self, number: int) -> bool:
        return 0 <= number <= self.last_phase

    def phase(self, number: int) -> PhaseSpec:
        if not self.has_phase(number):
            raise ConfigurationError(f"Unknown phase: {number}")
        return self._phases[number]

    def has_milestone(self, milestone_id: str) -> bool:
        return milestone_id in self._milestones

    def milestone(self, milestone_id: str) -> MilestoneSpec:
        return self._milestones[milestone_id][1]

    def milestone_phase(self, milestone_id: str) -> int:
        return self._milestones[milestone_id][0]

    # ── Validation ──

    def _validate(self, agents: Sequence[AgentSpec]) -> None:
        if len(self._order) != len(agents):
            raise RegistryError("Duplicate agent ids in roster")
        if not self._order:
            raise RegistryError("Agent roster is empty")
        if not self._phases:
            raise RegistryError("Phase plan is empty")

        numbers = [p.number for p in self._phases]
        if numbers != list(range(len(numbers))):
            raise RegistryError(f"Phases must be numbered contiguously from 0, got {numbers}")

        milestone_count = sum(len(p.milestones) for p in self._phases)
        if milestone_count != len(self._milestones):
            raise RegistryError("Duplicate milestone ids in phase plan")

        for phase in self._phases:
            if not phase.milestones:
                raise RegistryError(f"Phase {phase.number} has no milestones")
            for m in phase.milestones:
                if not m.agents:
                    raise RegistryError(f"Milestone {m.id} has no contributing agents")
                for agent_id in m.agents:
                    if agent_id not in self._agents:
                        raise RegistryError(f"Milestone {m.id} references unknown agent {agent_id}")
                    if not self._agents[agent_id].capabilities_for(phase.number):
                        raise RegistryError(
                            f"Agent {agent_id} serves milestone {m.id} but has no "
                            f"capability in phase {phase.number}"
                        )

        for spec in self._agents.values():
            for number in spec.capabilities:
                if not self.has_phase(number):
                    raise RegistryError(f"Agent {spec.id} declares capabilities for unknown phase {number}")
            for dep in spec.dependencies:
                if dep == spec.id:
                    raise RegistryError(f"Agent {spec.id} depends on itself")
                if dep not in self._agents:
                    raise RegistryError(f"Agent {spec.id} depends on unknown agent {dep}")

        self._check_cycles()

    def _check_cycles(self) -> None:
        visiting: set[str] = set()
        done: set[str] = set()

        def visit(agent_id: str, path: list[str]) -> None:
            if agent_id in done:
                return
            if agent_id in visiting:
                cycle = " -> ".join([*path, agent_id])
                raise RegistryError(f"Agent dependency cycle: {cycle}")
            visiting.add(agent_id)
            for dep in self._agents[agent_id].dependencies:
                visit(dep, [*path, agent_id])
            visiting.discard(agent_id)
            done.add(agent_id)

        for agent_id in self._order:
            visit(agent_id, [])


def _read_toml(path: Path, what: str) -> dict:
    if not path.exists():
        raise FileNotFoundError(f"{what} not found: {path}")
    with open(path, "rb") as f:
        try:
            return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_agents(config_path: Path | None = None) -> list[AgentSpec]:
    """Load the agent roster from a TOML file.

    Args:
        config_path: Path to agents.toml. Defaults to conductor/config/agents.toml.

    Returns:
        Agent specs in declaration order.

    Raises:
        FileNotFoundError: If the config file does not exist.
        RegistryError: If the TOML structure is invalid.
    """
    path = config_path or _CONFIG_DIR / "agents.toml"
    raw = _read_toml(path, "Agent roster")

    section = raw.get("agents")
    if not section or not isinstance(section, dict):
        raise RegistryError(f"No [agents] section found in {path}")

    specs: list[AgentSpec] = []
    for key, entry in section.items():
        if not isinstance(entry, dict):
            continue
        try:
            specs.append(AgentSpec(id=key, **entry))
        except ValidationError as e:
            raise RegistryError(f"Invalid agent '{key}' in {path}: {e}") from e
    return specs


def load_phases(config_path: Path | None = None) -> list[PhaseSpec]:
    """Load the phase plan from a TOML file.

    Each ``[[phases]]`` entry carries its ``[[phases.milestones]]`` list.
    """
    path = config_path or _CONFIG_DIR / "phases.toml"
    raw = _read_toml(path, "Phase plan")

    entries = raw.get("phases")
    if not entries or not isinstance(entries, list):
        raise RegistryError(f"No [[phases]] entries found in {path}")

    try:
        return [PhaseSpec(**entry) for entry in entries]
    except ValidationError as e:
        raise RegistryError(f"Invalid phase plan in {path}: {e}") from e


def load_registry(
    agents_path: Path | None = None,
    phases_path: Path | None = None,
) -> AgentRegistry:
    """Load and validate the full registry."""
    return AgentRegistry(load_agents(agents_path), load_phases(phases_path))


def load_engine_config(
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> EngineConfig:
    """Load engine defaults from TOML, then apply CONDUCTOR_* environment overrides.

    Environment values stay strings and are parsed by the type of the
    field they override, so CONDUCTOR_STATE_DIR=1 names the directory "1"
    while CONDUCTOR_HISTORY=1 enables history.

    Args:
        config_path: Path to defaults.toml. Defaults to conductor/config/defaults.toml.
        env: Environment mapping (defaults to ``os.environ``).

    Raises:
        FileNotFoundError: If the config file does not exist.
        ConfigurationError: If a value fails validation.
    """
    path = config_path or _CONFIG_DIR / "defaults.toml"
    raw = _read_toml(path, "Engine config")
    values = dict(raw.get("engine", {}))

    environ = os.environ if env is None else env
    for suffix, field_name in _ENV_FIELDS.items():
        value = environ.get(f"{_ENV_PREFIX}{suffix}")
        if value is not None and value != "":
            values[field_name] = value.strip()

    try:
        return EngineConfig(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid engine configuration: {e}") from e
