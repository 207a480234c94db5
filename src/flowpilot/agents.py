from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from flowpilot.graph import Step

WILDCARD_CAPABILITY = "ALL"


class AgentRole(str, Enum):
    ROUTER = "ROUTER"
    PLANNER = "PLANNER"
    VERIFIER = "VERIFIER"
    SPECIALIST = "SPECIALIST"
    INTEGRATOR = "INTEGRATOR"
    EXECUTOR = "EXECUTOR"

    @property
    def executes_steps(self) -> bool:
        return self in {AgentRole.SPECIALIST, AgentRole.INTEGRATOR, AgentRole.EXECUTOR}


@dataclass(slots=True, frozen=True)
class AgentIdentity:
    id: str
    name: str
    role: AgentRole
    capabilities: frozenset[str] = field(default_factory=frozenset)
    version: str = "1.0"

    def can_handle(self, action_type: str, *, allow_wildcard: bool = False) -> bool:
        if action_type in self.capabilities:
            return True
        return allow_wildcard and WILDCARD_CAPABILITY in self.capabilities

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role.value,
            "capabilities": sorted(self.capabilities),
            "version": self.version,
        }


def _agent(agent_id: str, name: str, role: AgentRole, *capabilities: str) -> AgentIdentity:
    return AgentIdentity(id=agent_id, name=name, role=role, capabilities=frozenset(capabilities))


DEFAULT_AGENTS: tuple[AgentIdentity, ...] = (
    _agent("router", "Router", AgentRole.ROUTER),
    _agent("planner", "Planner", AgentRole.PLANNER, "PLANNING"),
    _agent("verifier", "Verifier", AgentRole.VERIFIER, "VERIFICATION"),
    _agent("researcher", "Researcher", AgentRole.SPECIALIST, "RESEARCH", "ANALYSIS"),
    _agent("builder", "Builder", AgentRole.SPECIALIST, "CODE", "CREATION"),
    _agent("strategist", "Strategist", AgentRole.SPECIALIST, "CREATION", "DECISION"),
    _agent("integrator", "Integrator", AgentRole.INTEGRATOR, "INTEGRATION"),
    _agent("executor", "Executor", AgentRole.EXECUTOR, WILDCARD_CAPABILITY),
)


class AgentRegistry:
    """Static catalog of agent identities, built once per process."""

    def __init__(self, agents: Iterable[AgentIdentity]) -> None:
        self._agents: tuple[AgentIdentity, ...] = tuple(agents)
        if not self._agents:
            raise ValueError("Agent registry requires at least one agent.")
        ids = [agent.id for agent in self._agents]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate agent ids in registry: {ids}")
        self._by_id = {agent.id: agent for agent in self._agents}

    @classmethod
    def default(cls) -> AgentRegistry:
        return cls(DEFAULT_AGENTS)

    def __iter__(self):
        return iter(self._agents)

    def __len__(self) -> int:
        return len(self._agents)

    def get(self, agent_id: str | None) -> AgentIdentity | None:
        if agent_id is None:
            return None
        return self._by_id.get(agent_id)

    def first_with_role(self, role: AgentRole) -> AgentIdentity | None:
        for agent in self._agents:
            if agent.role is role:
                return agent
        return None

    @property
    def planner(self) -> AgentIdentity:
        return self.first_with_role(AgentRole.PLANNER) or self._agents[0]

    @property
    def verifier(self) -> AgentIdentity:
        return self.first_with_role(AgentRole.VERIFIER) or self._agents[0]

    @property
    def router(self) -> AgentIdentity:
        return self.first_with_role(AgentRole.ROUTER) or self._agents[0]

    def select_agent(self, step: Step, busy_agent_ids: set[str]) -> AgentIdentity:
        """Pick the executor for ``step`` given agents already claimed this tick.

        A pinned agent wins even when busy. Otherwise the first capable
        candidate is preferred, then any idle capable or wildcard candidate,
        then the capable candidate regardless of load, the generic executor,
        and finally the first registered agent.
        """
        pinned = self.get(step.assigned_agent_id)
        if pinned is not None:
            return pinned

        action = step.action_type.value
        candidates = [agent for agent in self._agents if agent.role.executes_steps]
        primary = next((agent for agent in candidates if agent.can_handle(action)), None)
        if primary is not None and primary.id not in busy_agent_ids:
            return primary

        for agent in candidates:
            if primary is not None and agent.id == primary.id:
                continue
            if agent.id in busy_agent_ids:
                continue
            if agent.can_handle(action, allow_wildcard=True):
                return agent

        if primary is not None:
            return primary
        executor = next((agent for agent in candidates if agent.role is AgentRole.EXECUTOR), None)
        if executor is not None:
            return executor
        if candidates:
            return candidates[0]
        return self._agents[0]
