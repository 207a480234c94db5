from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from loguru import logger

from flowpilot.agents import AgentRegistry
from flowpilot.config import FlowpilotConfig
from flowpilot.events import EventLevel, EventLog, EventType
from flowpilot.graph import Step, StepStatus, Workflow, find_cycle
from flowpilot.maintenance import MaintenanceLoop
from flowpilot.metrics import MetricsAggregator
from flowpilot.oracle.base import MaintenanceReport, Oracle, OracleError
from flowpilot.pipeline import ApprovalHandler, ExecutionPipeline
from flowpilot.recovery import RecoveryController
from flowpilot.scheduler import Dispatcher
from flowpilot.state import (
    EngineContext,
    Phase,
    PlanValidationError,
    WorkflowError,
    WorkflowState,
)

PLAN_CONFIDENCE = 0.95
FORCE_FAIL_REASON = "Manually failed by operator"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class RunSummary:
    goal: str
    phase: str
    started_at: str
    ended_at: str
    total_steps: int
    completed_steps: int
    failed_steps: int
    replanned_steps: int
    artifacts: int
    tokens: int


def validate_plan(steps: Sequence[Step], *, reject_cycles: bool) -> None:
    if not steps:
        raise PlanValidationError("Plan contains no steps.")
    ids = [step.id for step in steps]
    duplicates = sorted({step_id for step_id in ids if ids.count(step_id) > 1})
    if duplicates:
        raise PlanValidationError(f"Plan has duplicate step ids: {', '.join(duplicates)}")
    if reject_cycles:
        cycle = find_cycle(steps)
        if cycle:
            raise PlanValidationError(f"Plan has a dependency cycle: {' -> '.join(cycle)}")


class WorkflowEngine:
    """Wires the scheduler, pipeline, recovery and maintenance around one state."""

    def __init__(
        self,
        oracle: Oracle,
        config: FlowpilotConfig | None = None,
        *,
        registry: AgentRegistry | None = None,
        approval_handler: ApprovalHandler | None = None,
        events: EventLog | None = None,
    ) -> None:
        self.config = config or FlowpilotConfig.default()
        self.registry = registry or AgentRegistry.default()
        self.state = WorkflowState()
        self.metrics = MetricsAggregator(
            (agent.id for agent in self.registry),
            history_limit=self.config.metrics.history_limit,
        )
        self.events = events or EventLog()
        self.context = EngineContext(
            state=self.state,
            metrics=self.metrics,
            events=self.events,
            registry=self.registry,
            oracle=oracle,
            config=self.config,
            approval_handler=approval_handler,
        )
        self.recovery = RecoveryController(self.context)
        self.pipeline = ExecutionPipeline(self.context, self.recovery)
        self.dispatcher = Dispatcher(self.context, self.pipeline)
        self.maintenance = MaintenanceLoop(self.context)
        self._started_at: str | None = None

    @property
    def phase(self) -> Phase:
        return self.state.phase

    @property
    def workflow(self) -> Workflow:
        return self.state.workflow

    def _require(self, *phases: Phase) -> None:
        if self.state.phase not in phases:
            allowed = ", ".join(phase.value for phase in phases)
            raise WorkflowError(
                f"Operation needs phase {allowed}; workflow is {self.state.phase.value}"
            )

    async def plan(self, goal: str, image: str | None = None) -> Workflow:
        if self.state.phase.in_flight or self.state.phase is Phase.PLANNING:
            raise WorkflowError(f"Workflow is busy ({self.state.phase.value})")
        goal = goal.strip()
        if not goal:
            raise WorkflowError("Goal must not be empty.")

        planner = self.registry.planner
        self.state.load(goal, [], image)
        self.context.change_phase(Phase.PLANNING, f"Planning: {goal}")
        self.events.emit(
            EventType.LOG, planner.id, f"Decomposing goal: {goal}", level=EventLevel.THOUGHT
        )
        try:
            result = await self.context.oracle.generate_plan(goal, image)
            validate_plan(result.steps, reject_cycles=self.config.graph.reject_cycles)
        except PlanValidationError as exc:
            self.context.change_phase(Phase.FAILED, f"Plan rejected: {exc}")
            raise
        except OracleError as exc:
            self.context.change_phase(Phase.FAILED, f"Plan generation failed: {exc}")
            raise WorkflowError(f"Plan generation failed: {exc}") from exc
        except Exception as exc:
            self.context.change_phase(Phase.FAILED, f"Plan generation crashed: {exc}")
            raise

        self.state.load(goal, result.steps, image)
        self.metrics.update(
            planner.id,
            confidence=PLAN_CONFIDENCE,
            step_completed=True,
            tokens=result.tokens_used,
        )
        self.context.change_phase(
            Phase.REVIEW_PLAN, f"Plan ready with {len(result.steps)} steps"
        )
        return self.state.workflow

    def replace_plan(self, steps: Sequence[Step]) -> Workflow:
        """Swap in an operator-edited plan while it is still under review."""
        self._require(Phase.REVIEW_PLAN)
        fresh = list(steps)
        validate_plan(fresh, reject_cycles=self.config.graph.reject_cycles)
        for step in fresh:
            if step.status is not StepStatus.PENDING:
                raise PlanValidationError(f"Edited step {step.id} must be PENDING.")
        self.state.replace_steps(fresh)
        self.events.emit(
            EventType.LOG,
            self.registry.planner.id,
            f"Plan edited: {len(fresh)} steps",
        )
        return self.state.workflow

    def approve_plan(self) -> None:
        self._require(Phase.REVIEW_PLAN)
        self._started_at = _utcnow_iso()
        self.context.change_phase(Phase.EXECUTING, "Plan approved")

    async def execute(self) -> RunSummary:
        if self.state.phase is Phase.REVIEW_PLAN:
            self.approve_plan()
        if not self.state.phase.in_flight:
            raise WorkflowError(f"Nothing to execute in phase {self.state.phase.value}")
        self._started_at = self._started_at or _utcnow_iso()
        await self.dispatcher.run()
        return self.summary()

    async def run(
        self, goal: str, image: str | None = None, *, maintenance_scans: int = 0
    ) -> RunSummary:
        await self.plan(goal, image)
        await self.execute()
        if maintenance_scans and self.state.phase is Phase.MAINTENANCE:
            await self.maintenance.run(max_scans=maintenance_scans)
        return self.summary()

    async def scan(self, max_scans: int | None = None) -> list[MaintenanceReport]:
        self._require(Phase.MAINTENANCE)
        return await self.maintenance.run(max_scans=max_scans)

    async def resolve_approval(self, step_id: str, approved: bool) -> bool:
        return await self.pipeline.resolve_approval(step_id, approved)

    async def force_fail(self, step_id: str, reason: str = FORCE_FAIL_REASON) -> None:
        """Fail a step by hand; any oracle call still running for it is abandoned."""
        step = self.state.step(step_id)
        if step.status.terminal:
            raise WorkflowError(f"Step {step_id} is already {step.status.value}")
        logger.info("Force failing {}: {}", step_id, reason)
        await self.pipeline.fail_and_recover(step_id, reason)

    def pause(self) -> None:
        self._require(Phase.EXECUTING, Phase.AWAITING_INPUT)
        self.context.change_phase(Phase.PAUSED, "Execution paused")

    def resume(self) -> None:
        self._require(Phase.PAUSED)
        target = (
            Phase.REPLANNING if self.state.replans_in_flight else self.state.resume_phase()
        )
        self.context.change_phase(target, "Execution resumed")

    def stop_maintenance(self) -> None:
        self._require(Phase.MAINTENANCE)
        self.context.change_phase(Phase.COMPLETED, "Maintenance stopped")

    def reset(self) -> None:
        if self.state.phase.in_flight or self.state.phase is Phase.PLANNING:
            raise WorkflowError(f"Cannot reset while {self.state.phase.value}")
        self.state.load("", [])
        self.state.phase = Phase.INIT
        self.metrics.reset()
        self.events.clear()
        self._started_at = None

    def status(self) -> dict[str, Any]:
        return {
            "goal": self.state.workflow.goal,
            "phase": self.state.phase.value,
            "revision": self.state.workflow.revision,
            "steps": self.state.totals(),
            "pending_approval": (
                self.state.surfaced_approval.step_id if self.state.surfaced_approval else None
            ),
            "tokens": self.metrics.total_tokens(),
        }

    def snapshot(self) -> dict[str, Any]:
        payload = self.state.snapshot()
        payload["metrics"] = self.metrics.snapshot()
        payload["events"] = [event.to_dict() for event in self.events.events()]
        payload["agents"] = [agent.to_dict() for agent in self.registry]
        return payload

    def summary(self) -> RunSummary:
        totals = self.state.totals()
        return RunSummary(
            goal=self.state.workflow.goal,
            phase=self.state.phase.value,
            started_at=self._started_at or _utcnow_iso(),
            ended_at=_utcnow_iso(),
            total_steps=totals["total"],
            completed_steps=totals[StepStatus.COMPLETED.value],
            failed_steps=totals[StepStatus.FAILED.value],
            replanned_steps=sum(1 for step in self.state.steps if step.replan_of),
            artifacts=len(self.state.artifacts),
            tokens=self.metrics.total_tokens(),
        )
