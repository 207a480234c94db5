from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod

from loguru import logger

from flowpilot.agents import AgentIdentity
from flowpilot.artifacts import extract_artifacts
from flowpilot.events import EventLevel, EventType
from flowpilot.graph import FailureKind, Step, StepStatus
from flowpilot.metrics import MetricsAggregator
from flowpilot.oracle.base import StepExecution, Verification, model_for_action
from flowpilot.recovery import RecoveryController
from flowpilot.state import EngineContext, PendingApproval, Phase, StepOverlay

EXECUTION_CONFIDENCE = 0.88
REJECTION_REASON = "Operator rejected action"


class ApprovalHandler(ABC):
    @abstractmethod
    async def request_approval(self, step: Step, agent: AgentIdentity) -> bool:
        """Return True to approve the gated step, False to reject it."""


class AutoApprovalHandler(ApprovalHandler):
    async def request_approval(self, step: Step, agent: AgentIdentity) -> bool:
        return True


class TokenTicker:
    """Books estimated token usage while an oracle call is outstanding."""

    def __init__(
        self,
        metrics: MetricsAggregator,
        agent_id: str,
        *,
        interval_seconds: float,
        tokens_per_tick: int,
    ) -> None:
        self.metrics = metrics
        self.agent_id = agent_id
        self.interval_seconds = interval_seconds
        self.tokens_per_tick = tokens_per_tick
        self.estimated = 0
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self.interval_seconds > 0 and self.tokens_per_tick > 0:
            self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.metrics.record_tokens(self.agent_id, self.tokens_per_tick)
            self.estimated += self.tokens_per_tick

    async def stop(self) -> int:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        return self.estimated


class ExecutionPipeline:
    def __init__(self, context: EngineContext, recovery: RecoveryController) -> None:
        self.context = context
        self.recovery = recovery

    def _is_current(self, step_id: str) -> bool:
        step = self.context.state.workflow.get(step_id)
        return step is not None and step.status is StepStatus.RUNNING

    async def execute(self, step_id: str, agent: AgentIdentity) -> None:
        ctx = self.context
        state = ctx.state
        workflow = state.workflow
        step = state.step(step_id)
        if step.status is not StepStatus.RUNNING:
            logger.debug("Skipping {}: status is {}", step_id, step.status.value)
            return
        if step.requires_approval:
            self._park(step, agent)
            return

        model = model_for_action(step.action_type, ctx.config.models)
        overlay = state.overlay.setdefault(step_id, StepOverlay(assigned_agent_id=agent.id))
        overlay.active_model = model
        overlay.thoughts.append(f"{agent.name} picked up {step.label}")
        ctx.events.emit(
            EventType.EXECUTION_START,
            agent.id,
            f"Processing {step.label}",
            step_id=step_id,
            payload={"model": model},
        )
        ctx.metrics.record_confidence(agent.id, EXECUTION_CONFIDENCE)

        ticker = TokenTicker(
            ctx.metrics,
            agent.id,
            interval_seconds=ctx.config.scheduler.token_tick_seconds,
            tokens_per_tick=ctx.config.scheduler.estimated_tokens_per_tick,
        )
        ticker.start()
        result: StepExecution | None = None
        failure: Exception | None = None
        try:
            result = await ctx.oracle.execute_step(step, list(state.steps), workflow.goal)
        except Exception as exc:
            failure = exc
        finally:
            estimated = await ticker.stop()
            if result is None and estimated:
                ctx.metrics.record_tokens(agent.id, -estimated)

        if result is None:
            if state.workflow is not workflow or not self._is_current(step_id):
                logger.debug("Dropping error for stale step {}: {}", step_id, failure)
                return
            await self.fail_and_recover(step_id, f"Execution error: {failure}", agent=agent)
            return

        if state.workflow is not workflow or not self._is_current(step_id):
            if result.tokens_used != estimated:
                ctx.metrics.record_tokens(agent.id, result.tokens_used - estimated)
            logger.info("Discarding stale result for {}", step_id)
            return
        # Ticker estimates were already booked; only the remainder is added.
        ctx.metrics.update(
            agent.id, step_completed=True, tokens=result.tokens_used - estimated
        )
        if result.reasoning:
            overlay.thoughts.append(result.reasoning)

        verdict = await self._verify(step, result.output, workflow.goal)
        if state.workflow is not workflow or not self._is_current(step_id):
            logger.info("Discarding stale verification for {}", step_id)
            return
        overlay.verified = verdict.passed
        overlay.verification_notes = verdict.reason

        verifier = ctx.registry.verifier
        if not verdict.passed:
            ctx.events.emit(
                EventType.VERIFICATION_FAIL,
                verifier.id,
                f"{step.label} rejected: {verdict.reason}",
                level=EventLevel.ERROR,
                step_id=step_id,
            )
            await self.fail_and_recover(
                step_id, f"Verification failed: {verdict.reason}", agent=agent
            )
            return

        ctx.events.emit(
            EventType.VERIFICATION_PASS,
            verifier.id,
            f"{step.label} verified",
            level=EventLevel.SUCCESS,
            step_id=step_id,
            payload={"reason": verdict.reason},
        )
        artifacts = extract_artifacts(step, result.output)
        state.complete_step(
            step_id,
            result.output,
            citations=result.citations,
            model=result.model_used or model,
            artifacts=artifacts,
        )
        ctx.events.emit(
            EventType.EXECUTION_COMPLETE,
            agent.id,
            f"Completed {step.label}",
            level=EventLevel.SUCCESS,
            step_id=step_id,
            payload={"tokens": result.tokens_used},
        )
        for artifact in artifacts:
            ctx.events.emit(
                EventType.ARTIFACT_GENERATED,
                agent.id,
                f"Generated {artifact.title}",
                step_id=step_id,
                payload={"artifact_id": artifact.id, "type": artifact.type.value},
            )
        ctx.wake()

    async def _verify(self, step: Step, output: str, goal: str) -> Verification:
        ctx = self.context
        verifier = ctx.registry.verifier
        try:
            verdict = await ctx.oracle.verify_output(step, output, goal)
        except Exception as exc:
            if ctx.config.verification.pass_on_error:
                ctx.events.emit(
                    EventType.LOG,
                    verifier.id,
                    f"Verifier unavailable for {step.label}, accepting output: {exc}",
                    level=EventLevel.WARNING,
                    step_id=step.id,
                )
                verdict = Verification(passed=True, reason=f"Unverified: {exc}")
            else:
                verdict = Verification(passed=False, reason=f"Verifier unavailable: {exc}")
        ctx.metrics.update(
            verifier.id, verification=verdict.passed, tokens=verdict.tokens_used
        )
        return verdict

    async def fail_and_recover(
        self,
        step_id: str,
        reason: str,
        *,
        agent: AgentIdentity | None = None,
        kind: FailureKind = FailureKind.DIRECT,
    ) -> None:
        ctx = self.context
        state = ctx.state
        head = state.surfaced_approval
        step = state.fail_step(step_id, reason, kind)
        ctx.events.emit(
            EventType.EXECUTION_FAIL,
            agent.id if agent else ctx.registry.router.id,
            f"{step.label} failed ({kind.value}): {reason}",
            level=EventLevel.ERROR,
            step_id=step_id,
            payload={"kind": kind.value, "reason": reason},
        )
        self.recovery.begin(step_id)
        self._refresh_approvals(head)
        await self.recovery.replan(step_id, reason)

    def _park(self, step: Step, agent: AgentIdentity) -> None:
        state = self.context.state
        state.transition(step.id, StepStatus.WAITING_FOR_APPROVAL)
        overlay = state.overlay.setdefault(step.id, StepOverlay(assigned_agent_id=agent.id))
        overlay.thoughts.append("Waiting for operator approval")
        if state.enqueue_approval(step.id, agent.id):
            self._surface(state.approvals[0])
        else:
            logger.debug("Queued approval for {} behind {}", step.id, state.approvals[0].step_id)

    def _surface(self, request: PendingApproval) -> None:
        ctx = self.context
        step = ctx.state.step(request.step_id)
        agent = ctx.registry.get(request.agent_id) or ctx.registry.router
        if ctx.state.phase in {Phase.EXECUTING, Phase.AWAITING_INPUT}:
            ctx.change_phase(Phase.AWAITING_INPUT, f"Approval required for {step.label}")
        ctx.events.emit(
            EventType.APPROVAL_REQUESTED,
            agent.id,
            f"{agent.name} requests approval for {step.label}",
            level=EventLevel.WARNING,
            step_id=step.id,
            payload={"queued": len(ctx.state.approvals) - 1},
        )
        if ctx.approval_handler is not None:
            ctx.spawn(self._ask(step, agent))

    async def _ask(self, step: Step, agent: AgentIdentity) -> None:
        handler = self.context.approval_handler
        if handler is None:
            return
        approved = await handler.request_approval(step, agent)
        await self.resolve_approval(step.id, approved)

    def _refresh_approvals(self, previous: PendingApproval | None) -> None:
        ctx = self.context
        current = ctx.state.surfaced_approval
        if current is not None and current != previous:
            self._surface(current)
        elif current is None and ctx.state.phase is Phase.AWAITING_INPUT:
            ctx.change_phase(ctx.state.resume_phase())

    async def resolve_approval(self, step_id: str, approved: bool) -> bool:
        """Apply an operator decision to the surfaced approval request.

        Returns False without side effects when ``step_id`` is not the request
        currently surfaced, so repeated or late answers are harmless.
        """
        ctx = self.context
        state = ctx.state
        head = state.surfaced_approval
        if head is None or head.step_id != step_id:
            logger.debug("Ignoring approval decision for {}: not awaiting it", step_id)
            return False
        step = state.step(step_id)
        agent = ctx.registry.get(head.agent_id) or ctx.registry.select_agent(step, set())
        ctx.events.emit(
            EventType.APPROVAL_RESOLVED,
            agent.id,
            f"{step.label} {'approved' if approved else 'rejected'} by operator",
            level=EventLevel.SUCCESS if approved else EventLevel.WARNING,
            step_id=step_id,
            payload={"approved": approved},
        )

        if not approved:
            await self.fail_and_recover(
                step_id, REJECTION_REASON, agent=agent, kind=FailureKind.REJECTED
            )
            return True

        state.grant_approval(step_id)
        self._refresh_approvals(head)
        ctx.spawn(self.execute(step_id, agent))
        return True
