from __future__ import annotations

import asyncio
import re
from collections.abc import Sequence

from flowpilot.config import ModelsConfig
from flowpilot.graph import ActionType, Step, StepStatus, Workflow
from flowpilot.oracle.base import (
    MaintenanceReport,
    MaintenanceStatus,
    Oracle,
    PlanResult,
    StepExecution,
    Verification,
    estimate_tokens,
    model_for_action,
)

PLACEHOLDER_PATTERN = re.compile(r"\bTODO\b")


class OfflineOracle(Oracle):
    """Deterministic oracle with no I/O.

    Plans a research, analysis and creation chain; CODE steps yield a fenced
    snippet so artifact extraction has something to find. Verification
    rejects empty output and placeholder markers.
    """

    name = "offline"

    def __init__(self, models: ModelsConfig | None = None, *, latency_seconds: float = 0.0):
        self.models = models or ModelsConfig()
        self.latency_seconds = latency_seconds

    async def _pause(self) -> None:
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)
        else:
            await asyncio.sleep(0)

    async def generate_plan(self, goal: str, image: str | None = None) -> PlanResult:
        await self._pause()
        context = {"goal": goal}
        if image:
            context["image"] = "attached"
        steps = [
            Step(
                id="step-1",
                label="Gather context",
                description=f"Collect background material relevant to: {goal}",
                action_type=ActionType.RESEARCH,
                parameters=dict(context),
            ),
            Step(
                id="step-2",
                label="Analyze findings",
                description="Summarize the gathered material and pick an approach.",
                action_type=ActionType.ANALYSIS,
                dependencies=["step-1"],
            ),
            Step(
                id="step-3",
                label="Produce deliverable",
                description=f"Write the final deliverable for: {goal}",
                action_type=ActionType.CREATION,
                dependencies=["step-2"],
            ),
        ]
        return PlanResult(steps=steps, tokens_used=estimate_tokens(goal) * len(steps))

    async def execute_step(
        self, step: Step, prior_steps: Sequence[Step], goal: str
    ) -> StepExecution:
        await self._pause()
        by_id = {item.id: item for item in prior_steps}
        inputs = [by_id[dep_id].label for dep_id in step.dependencies if dep_id in by_id]
        lines = [
            f"# {step.label}",
            "",
            step.description or f"Completed {step.action_type.value.lower()} work.",
            f"Goal: {goal}",
        ]
        if inputs:
            lines.append(f"Built on: {', '.join(inputs)}")
        if step.action_type is ActionType.CODE:
            lines.extend(["", "```python", f'print("{step.label}")', "```"])
        output = "\n".join(lines)
        return StepExecution(
            output=output,
            reasoning=f"Offline execution of {step.action_type.value} step.",
            tokens_used=estimate_tokens(step.description, output),
            model_used=model_for_action(step.action_type, self.models),
        )

    async def verify_output(self, step: Step, output: str, goal: str) -> Verification:
        await self._pause()
        tokens = estimate_tokens(output)
        if not output.strip():
            return Verification(passed=False, reason="Output is empty.", tokens_used=tokens)
        if PLACEHOLDER_PATTERN.search(output):
            return Verification(
                passed=False, reason="Output contains placeholder markers.", tokens_used=tokens
            )
        return Verification(passed=True, reason="Output is complete.", tokens_used=tokens)

    async def replan(
        self,
        failed_step: Step,
        all_steps: Sequence[Step],
        error_reason: str,
        goal: str,
    ) -> PlanResult:
        await self._pause()
        step = Step(
            id="recovery-1",
            label=f"Recover {failed_step.label}",
            description=(
                f"Step '{failed_step.label}' failed with: {error_reason}. "
                f"Work around the failure and deliver its result for: {goal}"
            ),
            action_type=ActionType.ANALYSIS,
        )
        return PlanResult(steps=[step], tokens_used=estimate_tokens(error_reason, goal))

    async def maintenance_scan(self, workflow: Workflow) -> MaintenanceReport:
        await self._pause()
        total = len(workflow.steps)
        completed = workflow.count(StepStatus.COMPLETED)
        if total and completed == total:
            return MaintenanceReport(
                status=MaintenanceStatus.HEALTHY,
                message=f"All {total} steps completed.",
                tokens_used=1,
            )
        return MaintenanceReport(
            status=MaintenanceStatus.DEGRADED,
            message=f"{completed}/{total} steps completed.",
            tokens_used=1,
        )
