from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import replace

from loguru import logger

from flowpilot.events import EventLevel, EventType
from flowpilot.graph import Step, StepStatus
from flowpilot.state import EngineContext, Phase

REPLAN_CONFIDENCE = 0.8
REPLANNABLE_PHASES = {Phase.EXECUTING, Phase.AWAITING_INPUT, Phase.REPLANNING}


def remap_replacement_steps(
    steps: Sequence[Step],
    existing: Sequence[Step],
    *,
    failed_step_id: str,
    anchor_id: str | None,
    stamp_ms: int | None = None,
) -> list[Step]:
    """Give replan output fresh ids and graft it onto the live graph.

    Ids become ``replan-<stamp>-<local id>``; the stamp is bumped until no
    new id collides with an existing one. Dependencies on ids inside the
    response are rewritten, dependencies on COMPLETED pre-existing steps are
    kept, anything else is dropped. When the first step ends up with no
    dependencies it is wired to ``anchor_id``.
    """
    existing_ids = {step.id for step in existing}
    completed_ids = {step.id for step in existing if step.status is StepStatus.COMPLETED}
    stamp = stamp_ms if stamp_ms is not None else int(time.time() * 1000)

    while True:
        prefix = f"replan-{stamp}"
        mapping: dict[str, str] = {}
        new_ids: list[str] = []
        for index, step in enumerate(steps):
            new_id = f"{prefix}-{step.id}"
            if new_id in new_ids:
                new_id = f"{new_id}-{index}"
            mapping.setdefault(step.id, new_id)
            new_ids.append(new_id)
        if not existing_ids.intersection(new_ids):
            break
        stamp += 1

    remapped: list[Step] = []
    for index, step in enumerate(steps):
        new_id = new_ids[index]
        dependencies: list[str] = []
        for dep_id in step.dependencies:
            if dep_id in mapping:
                target = mapping[dep_id]
            elif dep_id in completed_ids:
                target = dep_id
            else:
                continue
            if target != new_id and target not in dependencies:
                dependencies.append(target)
        if index == 0 and not dependencies and anchor_id:
            dependencies = [anchor_id]
        remapped.append(
            replace(
                step,
                id=new_id,
                dependencies=dependencies,
                status=StepStatus.PENDING,
                output=None,
                error=None,
                citations=[],
                approval_granted=False,
                failure_kind=None,
                replan_of=failed_step_id,
                executed_model=None,
            )
        )
    return remapped


class RecoveryController:
    """Cascades a failure through the graph and splices in a recovery branch."""

    def __init__(self, context: EngineContext) -> None:
        self.context = context

    def begin(self, step_id: str) -> list[str]:
        """Count the replan in flight and fail every dependent of ``step_id``."""
        ctx = self.context
        ctx.state.replans_in_flight += 1
        if ctx.state.phase in REPLANNABLE_PHASES:
            ctx.change_phase(Phase.REPLANNING, f"Recovering from failure of {step_id}")

        cascaded = ctx.state.cascade_failure(step_id)
        if cascaded:
            ctx.events.emit(
                EventType.CASCADE_FAILURE,
                ctx.registry.router.id,
                f"Failure of {step_id} cascaded to {len(cascaded)} dependent step(s)",
                level=EventLevel.ERROR,
                step_id=step_id,
                payload={"origin": step_id, "cascaded": cascaded},
            )
        return cascaded

    async def replan(self, step_id: str, reason: str) -> list[Step]:
        ctx = self.context
        state = ctx.state
        workflow = state.workflow
        failed = state.step(step_id)
        planner = ctx.registry.planner
        try:
            try:
                result = await ctx.oracle.replan(failed, list(state.steps), reason, workflow.goal)
            except Exception as exc:
                logger.error("Replanning after {} failed: {}", step_id, exc)
                if state.workflow is workflow:
                    ctx.change_phase(Phase.FAILED, f"Replanning failed: {exc}")
                return []

            if state.workflow is not workflow or state.phase is Phase.FAILED:
                logger.debug("Discarding replan for {}: workflow changed", step_id)
                return []

            ctx.metrics.update(planner.id, confidence=REPLAN_CONFIDENCE, tokens=result.tokens_used)
            new_steps = remap_replacement_steps(
                result.steps,
                state.steps,
                failed_step_id=step_id,
                anchor_id=state.last_completed_id(),
            )
            state.append_steps(new_steps)
            ctx.events.emit(
                EventType.REPLAN,
                planner.id,
                f"Spliced {len(new_steps)} recovery step(s) after {failed.label}",
                level=EventLevel.WARNING,
                step_id=step_id,
                payload={"new_steps": [step.id for step in new_steps], "reason": reason},
            )
            return new_steps
        finally:
            if state.workflow is workflow:
                state.replans_in_flight = max(0, state.replans_in_flight - 1)
                if state.replans_in_flight == 0 and state.phase is Phase.REPLANNING:
                    ctx.change_phase(state.resume_phase(), "Recovery branch ready")
                ctx.wake()

    async def handle_failure(self, step_id: str, reason: str) -> list[Step]:
        self.begin(step_id)
        return await self.replan(step_id, reason)
