from __future__ import annotations

import json
import re
from collections.abc import Sequence
from typing import Any

from loguru import logger

from flowpilot.backends.base import AgentBackend, BackendExecutionError, BackendQuotaError
from flowpilot.config import ModelsConfig
from flowpilot.graph import ActionType, Citation, Step, StepParseError, StepStatus, Workflow
from flowpilot.oracle.base import (
    MaintenanceReport,
    MaintenanceStatus,
    Oracle,
    OracleError,
    OracleQuotaError,
    OracleSchemaError,
    PlanResult,
    StepExecution,
    Verification,
    estimate_tokens,
    model_for_action,
)

FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)
LINK_PATTERN = re.compile(r"\[([^\]]+)\]\((https?://[^\s)]+)\)")
VERIFY_OUTPUT_LIMIT = 5000

ACTION_TYPE_HELP = """\
- RESEARCH: data gathering and source lookup.
- CODE: writing software, scripts or markup.
- ANALYSIS: reasoning, summarizing, evaluating.
- DECISION: strategic choices between alternatives.
- CREATION: content generation.
- INTEGRATION: calling external systems or assembling outputs (requires operator approval)."""

STEP_SCHEMA_HELP = """\
Return ONLY a JSON object with a "steps" array. Each step has:
- id: string, unique within your answer (e.g. "step-1")
- label: short title
- description: detailed instruction for the executing agent
- actionType: one of the action types above
- dependencies: list of step ids that must finish first
- parameters: object of string key/value context"""

PLANNER_PROMPT = "You are a planner that turns goals into dependency-ordered steps."
EXECUTOR_PROMPT = """\
You are an autonomous agent executing one step of a larger plan.
Perform the task strictly. When writing code, return the full fenced code block.
When analyzing, be concise and logical."""
VERIFIER_PROMPT = "You are a QA verifier. Answer with JSON only."
WATCHDOG_PROMPT = "You are a system watchdog. Answer with JSON only."


def parse_json_object(raw: str) -> dict[str, Any]:
    """Parse a JSON object out of a model reply.

    Code fences are stripped first; if the remainder still does not parse, the
    span between the first ``{`` and the last ``}`` is tried.
    """
    cleaned = FENCE_PATTERN.sub("", raw).strip()
    candidates = [cleaned]
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        candidates.append(cleaned[start : end + 1])
    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    raise OracleSchemaError(f"Oracle reply is not a JSON object: {raw[:200]!r}")


def parse_steps(payload: dict[str, Any]) -> list[Step]:
    raw_steps = payload.get("steps")
    if not isinstance(raw_steps, list):
        raise OracleSchemaError("Oracle reply has no 'steps' array.")
    steps: list[Step] = []
    for item in raw_steps:
        try:
            step = Step.from_dict(item)
        except StepParseError as exc:
            raise OracleSchemaError(str(exc)) from exc
        step.status = StepStatus.PENDING
        step.approval_granted = False
        steps.append(step)
    return steps


def extract_citations(output: str) -> list[Citation]:
    seen: set[str] = set()
    citations: list[Citation] = []
    for title, uri in LINK_PATTERN.findall(output):
        if uri not in seen:
            seen.add(uri)
            citations.append(Citation(uri=uri, title=title or "Source"))
    return citations


class BackendOracle(Oracle):
    """Oracle that prompts a streaming ``AgentBackend`` and parses its replies."""

    name = "backend"

    def __init__(self, backend: AgentBackend, models: ModelsConfig | None = None) -> None:
        self.backend = backend
        self.models = models or ModelsConfig()

    async def _call(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str,
        context: dict[str, Any] | None = None,
    ) -> tuple[str, int]:
        run_context = dict(context or {})
        run_context["model"] = model
        try:
            chunks = [
                chunk
                async for chunk in self.backend.execute(system_prompt, user_prompt, run_context)
            ]
        except BackendQuotaError as exc:
            raise OracleQuotaError(str(exc)) from exc
        except BackendExecutionError as exc:
            raise OracleError(str(exc)) from exc
        except Exception as exc:
            raise OracleError(f"Backend call failed: {exc}") from exc
        reply = "".join(chunks).strip()
        return reply, estimate_tokens(system_prompt, user_prompt, reply)

    async def generate_plan(self, goal: str, image: str | None = None) -> PlanResult:
        prompt = (
            f'GOAL: "{goal}"\n\n'
            "Create an execution plan (a directed acyclic graph) of atomic steps.\n\n"
            f"Available action types:\n{ACTION_TYPE_HELP}\n\n{STEP_SCHEMA_HELP}"
        )
        context: dict[str, Any] = {}
        if image:
            prompt += "\n\nAlso consider the attached image in the plan."
            context["image"] = image
        reply, tokens = await self._call(
            PLANNER_PROMPT, prompt, model=self.models.planner, context=context
        )
        steps = parse_steps(parse_json_object(reply))
        logger.debug("Planner returned {} steps", len(steps))
        return PlanResult(steps=steps, tokens_used=tokens)

    async def execute_step(
        self, step: Step, prior_steps: Sequence[Step], goal: str
    ) -> StepExecution:
        model = model_for_action(step.action_type, self.models)
        by_id = {item.id: item for item in prior_steps}
        upstream = "\n\n".join(
            f"Output from {by_id[dep_id].label}:\n{by_id[dep_id].output or ''}"
            for dep_id in step.dependencies
            if dep_id in by_id
        )
        system_prompt = (
            f"{EXECUTOR_PROMPT}\nTask: {step.label}\n"
            f"Role: {step.action_type.value} specialist\nGlobal goal: {goal}"
        )
        user_prompt = (
            f"TASK DESCRIPTION:\n{step.description}\n\n"
            f"PARAMETERS:\n{json.dumps(step.parameters, ensure_ascii=False)}\n\n"
            f"CONTEXT FROM PREVIOUS STEPS:\n{upstream}"
        )
        output, tokens = await self._call(system_prompt, user_prompt, model=model)
        reasoning = (
            "Gathered sources and summarized findings."
            if step.action_type is ActionType.RESEARCH
            else "Task executed successfully."
        )
        return StepExecution(
            output=output,
            reasoning=reasoning,
            tokens_used=tokens,
            citations=extract_citations(output),
            model_used=model,
        )

    async def verify_output(self, step: Step, output: str, goal: str) -> Verification:
        prompt = (
            f'Goal: "{goal}"\nStep: "{step.label}"\nDescription: "{step.description}"\n\n'
            f"Generated output:\n{output[:VERIFY_OUTPUT_LIMIT]}\n\n"
            "Verify that the output satisfies the description, is complete (no placeholders "
            'like "TODO") and is not an error message.\n'
            'Return JSON: {"passed": boolean, "reason": "short explanation"}'
        )
        reply, tokens = await self._call(VERIFIER_PROMPT, prompt, model=self.models.executor)
        payload = parse_json_object(reply)
        passed = payload.get("passed")
        if not isinstance(passed, bool):
            raise OracleSchemaError("Verification reply has no boolean 'passed' field.")
        return Verification(
            passed=passed, reason=str(payload.get("reason") or ""), tokens_used=tokens
        )

    async def replan(
        self,
        failed_step: Step,
        all_steps: Sequence[Step],
        error_reason: str,
        goal: str,
    ) -> PlanResult:
        status_lines = "\n".join(f"- {item.label} ({item.status.value})" for item in all_steps)
        prompt = (
            f'Goal: "{goal}"\n\nCurrent plan status:\n{status_lines}\n\n'
            f'FAILURE at step "{failed_step.label}":\nError: {error_reason}\n\n'
            "Generate a recovery branch: new steps that handle this failure and get back on "
            "track to the goal. Start with a step that analyzes or fixes the error.\n\n"
            f"Available action types:\n{ACTION_TYPE_HELP}\n\n{STEP_SCHEMA_HELP}"
        )
        reply, tokens = await self._call(PLANNER_PROMPT, prompt, model=self.models.planner)
        return PlanResult(steps=parse_steps(parse_json_object(reply)), tokens_used=tokens)

    async def maintenance_scan(self, workflow: Workflow) -> MaintenanceReport:
        total = len(workflow.steps)
        completed = workflow.count(StepStatus.COMPLETED)
        percent = round(completed / total * 100) if total else 100
        prompt = (
            f'Project goal: "{workflow.goal}"\nCompletion status: {percent}%\n\n'
            'Is the system state healthy? Return JSON: {"status": "HEALTHY" | "DEGRADED", '
            '"message": "status report"}'
        )
        reply, tokens = await self._call(WATCHDOG_PROMPT, prompt, model=self.models.executor)
        payload = parse_json_object(reply)
        raw_status = payload.get("status") or "HEALTHY"
        try:
            status = MaintenanceStatus(str(raw_status).upper())
        except ValueError as exc:
            raise OracleSchemaError(f"Unknown maintenance status: {raw_status!r}") from exc
        return MaintenanceReport(
            status=status,
            message=str(payload.get("message") or "System nominal."),
            tokens_used=tokens,
        )
