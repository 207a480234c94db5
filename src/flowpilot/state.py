from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Coroutine, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from loguru import logger

from flowpilot.agents import AgentIdentity, AgentRegistry
from flowpilot.artifacts import Artifact
from flowpilot.config import FlowpilotConfig
from flowpilot.events import EventLevel, EventLog, EventType
from flowpilot.graph import (
    Citation,
    FailureKind,
    Step,
    StepStatus,
    Workflow,
    compute_ranks,
    downstream_of,
)
from flowpilot.metrics import MetricsAggregator
from flowpilot.oracle.base import Oracle

if TYPE_CHECKING:
    from flowpilot.pipeline import ApprovalHandler


class WorkflowError(RuntimeError):
    """Raised when an engine operation is not valid in the current state."""


class StepTransitionError(WorkflowError):
    """Raised on a step status change the state machine does not allow."""


class PlanValidationError(WorkflowError):
    """Raised when a plan is rejected before execution."""


class Phase(str, Enum):
    INIT = "INIT"
    PLANNING = "PLANNING"
    REVIEW_PLAN = "REVIEW_PLAN"
    EXECUTING = "EXECUTING"
    AWAITING_INPUT = "AWAITING_INPUT"
    REPLANNING = "REPLANNING"
    PAUSED = "PAUSED"
    MAINTENANCE = "MAINTENANCE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def in_flight(self) -> bool:
        """Phases during which the dispatcher loop keeps running."""
        return self in {
            Phase.EXECUTING,
            Phase.AWAITING_INPUT,
            Phase.REPLANNING,
            Phase.PAUSED,
        }


ALLOWED_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset(
        {StepStatus.RUNNING, StepStatus.WAITING_FOR_APPROVAL, StepStatus.FAILED}
    ),
    StepStatus.RUNNING: frozenset(
        {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.WAITING_FOR_APPROVAL}
    ),
    StepStatus.WAITING_FOR_APPROVAL: frozenset({StepStatus.RUNNING, StepStatus.FAILED}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.FAILED: frozenset(),
}


@dataclass(slots=True)
class StepOverlay:
    assigned_agent_id: str
    verified: bool | None = None
    verification_notes: str | None = None
    thoughts: list[str] = field(default_factory=list)
    active_model: str | None = None
    started_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "assigned_agent_id": self.assigned_agent_id,
            "verified": self.verified,
            "verification_notes": self.verification_notes,
            "thoughts": list(self.thoughts),
            "active_model": self.active_model,
            "started_at": self.started_at,
        }


@dataclass(slots=True, frozen=True)
class PendingApproval:
    step_id: str
    agent_id: str
    requested_at: float


class WorkflowState:
    def __init__(self, workflow: Workflow | None = None) -> None:
        self.phase = Phase.INIT
        self.workflow = workflow or Workflow(goal="")
        self.image: str | None = None
        self.overlay: dict[str, StepOverlay] = {}
        self.artifacts: list[Artifact] = []
        self.approvals: deque[PendingApproval] = deque()
        self.replans_in_flight = 0
        self.completion_order: list[str] = []

    @property
    def steps(self) -> list[Step]:
        return self.workflow.steps

    def step(self, step_id: str) -> Step:
        step = self.workflow.get(step_id)
        if step is None:
            raise WorkflowError(f"Unknown step: {step_id}")
        return step

    def load(self, goal: str, steps: Iterable[Step], image: str | None = None) -> None:
        self.workflow = Workflow(goal=goal, steps=list(steps))
        self.image = image
        self.overlay.clear()
        self.artifacts.clear()
        self.approvals.clear()
        self.replans_in_flight = 0
        self.completion_order.clear()

    def _touch(self) -> None:
        self.workflow.revision += 1

    @staticmethod
    def _check(step: Step, target: StepStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[step.status]:
            raise StepTransitionError(
                f"Step {step.id} cannot move from {step.status.value} to {target.value}"
            )

    def transition(self, step_id: str, target: StepStatus) -> Step:
        step = self.step(step_id)
        self._check(step, target)
        step.status = target
        self._touch()
        return step

    def mark_running(self, assignments: Sequence[tuple[Step, AgentIdentity]]) -> None:
        """Promote a whole dispatch batch to RUNNING in one mutation."""
        for step, _ in assignments:
            self._check(step, StepStatus.RUNNING)
        started_at = time.time()
        for step, agent in assignments:
            step.status = StepStatus.RUNNING
            step.assigned_agent_id = agent.id
            self.overlay[step.id] = StepOverlay(assigned_agent_id=agent.id, started_at=started_at)
        if assignments:
            self._touch()

    def complete_step(
        self,
        step_id: str,
        output: str,
        *,
        citations: Sequence[Citation] = (),
        model: str | None = None,
        artifacts: Sequence[Artifact] = (),
    ) -> Step:
        step = self.step(step_id)
        self._check(step, StepStatus.COMPLETED)
        step.status = StepStatus.COMPLETED
        step.output = output
        step.error = None
        step.citations = list(citations)
        step.executed_model = model
        self.artifacts.extend(artifacts)
        self.completion_order.append(step_id)
        self._touch()
        return step

    def fail_step(self, step_id: str, reason: str, kind: FailureKind = FailureKind.DIRECT) -> Step:
        step = self.step(step_id)
        self._check(step, StepStatus.FAILED)
        step.status = StepStatus.FAILED
        step.error = reason
        step.failure_kind = kind
        self._drop_approval(step_id)
        self._touch()
        return step

    def cascade_failure(self, origin_id: str) -> list[str]:
        """Fail every non-terminal transitive dependent of ``origin_id``."""
        failed: list[str] = []
        for step_id in downstream_of(self.steps, origin_id):
            step = self.step(step_id)
            if step.status.terminal:
                continue
            step.status = StepStatus.FAILED
            step.error = f"Cascade failure: upstream step {origin_id} failed"
            step.failure_kind = FailureKind.CASCADE
            self._drop_approval(step_id)
            failed.append(step_id)
        if failed:
            self._touch()
        return failed

    def append_steps(self, steps: Iterable[Step]) -> list[Step]:
        added = list(steps)
        existing = self.workflow.ids()
        clashes = [step.id for step in added if step.id in existing]
        if clashes:
            raise WorkflowError(f"Appended steps collide with existing ids: {clashes}")
        self.workflow.steps.extend(added)
        if added:
            self._touch()
        return added

    def replace_steps(self, steps: Iterable[Step]) -> None:
        self.workflow.steps = list(steps)
        self.overlay.clear()
        self._touch()

    def last_completed_id(self) -> str | None:
        return self.completion_order[-1] if self.completion_order else None

    def _drop_approval(self, step_id: str) -> None:
        remaining = [item for item in self.approvals if item.step_id != step_id]
        if len(remaining) != len(self.approvals):
            self.approvals = deque(remaining)

    def enqueue_approval(self, step_id: str, agent_id: str) -> bool:
        """Queue an approval request; returns True when it is now the head."""
        if any(item.step_id == step_id for item in self.approvals):
            return False
        self.approvals.append(
            PendingApproval(step_id=step_id, agent_id=agent_id, requested_at=time.time())
        )
        return len(self.approvals) == 1

    def grant_approval(self, step_id: str) -> Step:
        step = self.step(step_id)
        self._check(step, StepStatus.RUNNING)
        step.approval_granted = True
        step.status = StepStatus.RUNNING
        self._drop_approval(step_id)
        self._touch()
        return step

    @property
    def surfaced_approval(self) -> PendingApproval | None:
        return self.approvals[0] if self.approvals else None

    def busy_agent_ids(self) -> set[str]:
        return {
            step.assigned_agent_id
            for step in self.steps
            if step.assigned_agent_id
            and step.status in {StepStatus.RUNNING, StepStatus.WAITING_FOR_APPROVAL}
        }

    def has_open_steps(self) -> bool:
        return any(
            step.status
            in {StepStatus.PENDING, StepStatus.RUNNING, StepStatus.WAITING_FOR_APPROVAL}
            for step in self.steps
        )

    def has_work_in_flight(self) -> bool:
        return (
            bool(self.approvals)
            or self.replans_in_flight > 0
            or any(
                step.status in {StepStatus.RUNNING, StepStatus.WAITING_FOR_APPROVAL}
                for step in self.steps
            )
        )

    def is_settled(self) -> bool:
        return not self.has_open_steps() and not self.has_work_in_flight()

    def resume_phase(self) -> Phase:
        return Phase.AWAITING_INPUT if self.approvals else Phase.EXECUTING

    def totals(self) -> dict[str, int]:
        totals = {status.value: self.workflow.count(status) for status in StepStatus}
        totals["total"] = len(self.steps)
        return totals

    def snapshot(self) -> dict[str, Any]:
        ranks = compute_ranks(self.steps)
        return {
            "phase": self.phase.value,
            "workflow": self.workflow.to_dict(),
            "ranks": ranks,
            "overlay": {step_id: item.to_dict() for step_id, item in self.overlay.items()},
            "artifacts": [artifact.to_dict() for artifact in self.artifacts],
            "approvals": [item.step_id for item in self.approvals],
            "replans_in_flight": self.replans_in_flight,
        }


@dataclass
class EngineContext:
    """Dependency bundle handed to the dispatcher, pipeline and controller."""

    state: WorkflowState
    metrics: MetricsAggregator
    events: EventLog
    registry: AgentRegistry
    oracle: Oracle
    config: FlowpilotConfig
    approval_handler: ApprovalHandler | None = None
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)
    task_errors: list[BaseException] = field(default_factory=list)
    wake_event: asyncio.Event | None = None

    def change_phase(self, phase: Phase, message: str | None = None) -> bool:
        previous = self.state.phase
        if previous is phase:
            return False
        self.state.phase = phase
        level = EventLevel.ERROR if phase is Phase.FAILED else EventLevel.INFO
        self.events.emit(
            EventType.PHASE_CHANGE,
            self.registry.router.id,
            message or f"Phase {previous.value} -> {phase.value}",
            level=level,
            payload={"from": previous.value, "to": phase.value},
        )
        if phase is Phase.EXECUTING:
            self.wake()
        return True

    def wake(self) -> None:
        if self.wake_event is not None:
            self.wake_event.set()

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self.tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.opt(exception=error).error("Engine task crashed: {}", error)
            self.task_errors.append(error)
            self.wake()

    async def drain(self) -> None:
        """Cancel leftover tasks and surface the first crash, if any."""
        pending = [task for task in self.tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.tasks.clear()
        if self.task_errors:
            error = self.task_errors[0]
            self.task_errors.clear()
            raise error
