from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ActionType(str, Enum):
    RESEARCH = "RESEARCH"
    CODE = "CODE"
    ANALYSIS = "ANALYSIS"
    DECISION = "DECISION"
    CREATION = "CREATION"
    INTEGRATION = "INTEGRATION"


class StepStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    WAITING_FOR_APPROVAL = "WAITING_FOR_APPROVAL"

    @property
    def terminal(self) -> bool:
        return self in {StepStatus.COMPLETED, StepStatus.FAILED}


class FailureKind(str, Enum):
    DIRECT = "direct"
    CASCADE = "cascade"
    REJECTED = "rejected"


class StepParseError(ValueError):
    """Raised when a step payload is missing fields or carries invalid values."""


@dataclass(slots=True, frozen=True)
class Citation:
    uri: str
    title: str = "Source"


@dataclass(slots=True)
class Step:
    id: str
    label: str
    description: str
    action_type: ActionType
    dependencies: list[str] = field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    assigned_agent_id: str | None = None
    tool_id: str | None = None
    parameters: dict[str, str] = field(default_factory=dict)
    output: str | None = None
    error: str | None = None
    citations: list[Citation] = field(default_factory=list)
    approval_granted: bool = False
    failure_kind: FailureKind | None = None
    replan_of: str | None = None
    executed_model: str | None = None

    @property
    def requires_approval(self) -> bool:
        return self.action_type is ActionType.INTEGRATION and not self.approval_granted

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Step:
        """Build a step from snake_case or camelCase keys.

        Status always starts at PENDING unless the payload names one, which
        lets saved snapshots round-trip while oracle output starts fresh.
        """
        if not isinstance(payload, dict):
            raise StepParseError(f"Step payload must be an object, got {type(payload).__name__}.")

        def _pick(*keys: str) -> Any:
            for key in keys:
                if key in payload and payload[key] is not None:
                    return payload[key]
            return None

        step_id = _pick("id")
        label = _pick("label")
        raw_action = _pick("action_type", "actionType")
        missing = [
            name
            for name, value in (("id", step_id), ("label", label), ("actionType", raw_action))
            if value in (None, "")
        ]
        if missing:
            raise StepParseError(f"Step payload missing required fields: {', '.join(missing)}")

        try:
            action_type = ActionType(str(raw_action).strip().upper())
        except ValueError as exc:
            raise StepParseError(f"Unknown action type: {raw_action!r}") from exc

        raw_dependencies = _pick("dependencies", "depends_on") or []
        if not isinstance(raw_dependencies, list):
            raise StepParseError(f"Step {step_id} dependencies must be a list.")

        raw_parameters = _pick("parameters") or {}
        if not isinstance(raw_parameters, dict):
            raise StepParseError(f"Step {step_id} parameters must be an object.")

        raw_status = _pick("status")
        try:
            status = StepStatus(raw_status) if raw_status else StepStatus.PENDING
        except ValueError as exc:
            raise StepParseError(f"Unknown step status: {raw_status!r}") from exc

        raw_failure = _pick("failure_kind", "failureKind")
        try:
            failure_kind = FailureKind(raw_failure) if raw_failure else None
        except ValueError as exc:
            raise StepParseError(f"Unknown failure kind: {raw_failure!r}") from exc

        raw_citations = _pick("citations") or []
        if not isinstance(raw_citations, list):
            raise StepParseError(f"Step {step_id} citations must be a list.")
        citations = [
            Citation(uri=str(item["uri"]), title=str(item.get("title") or "Source"))
            for item in raw_citations
            if isinstance(item, dict) and item.get("uri")
        ]
        return cls(
            id=str(step_id),
            label=str(label),
            description=str(_pick("description") or ""),
            action_type=action_type,
            dependencies=_dedupe(str(dep) for dep in raw_dependencies),
            status=status,
            assigned_agent_id=_optional_str(_pick("assigned_agent_id", "assignedAgentId")),
            tool_id=_optional_str(_pick("tool_id", "toolId")),
            parameters={str(key): str(value) for key, value in raw_parameters.items()},
            output=_optional_str(_pick("output")),
            error=_optional_str(_pick("error")),
            citations=citations,
            approval_granted=bool(_pick("approval_granted", "approvalGranted")),
            failure_kind=failure_kind,
            replan_of=_optional_str(_pick("replan_of", "replanOf")),
            executed_model=_optional_str(_pick("executed_model", "executedModel")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "action_type": self.action_type.value,
            "dependencies": list(self.dependencies),
            "status": self.status.value,
            "assigned_agent_id": self.assigned_agent_id,
            "tool_id": self.tool_id,
            "parameters": dict(self.parameters),
            "output": self.output,
            "error": self.error,
            "citations": [{"uri": item.uri, "title": item.title} for item in self.citations],
            "approval_granted": self.approval_granted,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "replan_of": self.replan_of,
            "executed_model": self.executed_model,
        }


@dataclass(slots=True)
class Workflow:
    goal: str
    steps: list[Step] = field(default_factory=list)
    version: str = "v1"
    revision: int = 0

    def get(self, step_id: str) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def ids(self) -> set[str]:
        return {step.id for step in self.steps}

    def count(self, status: StepStatus) -> int:
        return sum(1 for step in self.steps if step.status is status)

    def to_dict(self) -> dict[str, Any]:
        ranks = compute_ranks(self.steps)
        steps = []
        for step in self.steps:
            payload = step.to_dict()
            payload["rank"] = ranks.get(step.id, 0)
            steps.append(payload)
        return {
            "goal": self.goal,
            "version": self.version,
            "revision": self.revision,
            "steps": steps,
        }


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


def _dedupe(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def compute_ranks(steps: Sequence[Step]) -> dict[str, int]:
    """Topological depth of every step.

    A node revisited inside its own resolution chain ranks 0 instead of
    recursing, so a cyclic plan still lays out.
    """
    by_id = {step.id: step for step in steps}
    ranks: dict[str, int] = {}

    def _rank(step_id: str, visited: frozenset[str]) -> int:
        if step_id in ranks:
            return ranks[step_id]
        if step_id in visited:
            return 0
        step = by_id.get(step_id)
        if step is None or not step.dependencies:
            ranks[step_id] = 0
            return 0
        chain = visited | {step_id}
        rank = 1 + max(_rank(dep_id, chain) for dep_id in step.dependencies)
        ranks[step_id] = rank
        return rank

    for step in steps:
        _rank(step.id, frozenset())
    return {step.id: ranks[step.id] for step in steps}


def group_by_rank(steps: Sequence[Step]) -> list[list[Step]]:
    ranks = compute_ranks(steps)
    if not ranks:
        return []
    batches: list[list[Step]] = [[] for _ in range(max(ranks.values()) + 1)]
    for step in steps:
        batches[ranks[step.id]].append(step)
    return batches


def executable_steps(steps: Sequence[Step]) -> list[Step]:
    status_by_id = {step.id: step.status for step in steps}
    return [
        step
        for step in steps
        if step.status is StepStatus.PENDING
        and all(status_by_id.get(dep_id) is StepStatus.COMPLETED for dep_id in step.dependencies)
    ]


def downstream_of(steps: Sequence[Step], step_id: str) -> list[str]:
    """Ids of every step that depends on ``step_id`` directly or transitively."""
    dependents: dict[str, list[str]] = {}
    for step in steps:
        for dep_id in step.dependencies:
            dependents.setdefault(dep_id, []).append(step.id)

    found: list[str] = []
    seen = {step_id}
    frontier = [step_id]
    while frontier:
        current = frontier.pop(0)
        for child in dependents.get(current, []):
            if child in seen:
                continue
            seen.add(child)
            found.append(child)
            frontier.append(child)
    return found


def find_cycle(steps: Sequence[Step]) -> list[str] | None:
    by_id = {step.id: step for step in steps}
    state: dict[str, int] = {}
    path: list[str] = []

    def _visit(step_id: str) -> list[str] | None:
        state[step_id] = 1
        path.append(step_id)
        for dep_id in by_id[step_id].dependencies:
            if dep_id not in by_id:
                continue
            marker = state.get(dep_id, 0)
            if marker == 1:
                return path[path.index(dep_id):] + [dep_id]
            if marker == 0:
                cycle = _visit(dep_id)
                if cycle:
                    return cycle
        path.pop()
        state[step_id] = 2
        return None

    for step in steps:
        if state.get(step.id, 0) == 0:
            cycle = _visit(step.id)
            if cycle:
                return cycle
    return None
