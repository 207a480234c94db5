from __future__ import annotations

import asyncio
import contextlib

from loguru import logger

from flowpilot.agents import AgentIdentity
from flowpilot.events import EventLevel, EventType
from flowpilot.graph import FailureKind, Step, StepStatus, executable_steps
from flowpilot.pipeline import ExecutionPipeline
from flowpilot.state import EngineContext, Phase

STRANDED_REASON = "Dependencies can never complete"


class Dispatcher:
    """Tick-driven scheduler that fans ready steps out to the pipeline.

    ``tick`` is synchronous: it claims agents, promotes the whole ready batch
    to RUNNING and spawns one pipeline task per step without awaiting any of
    them. Steps unblocked by those tasks are picked up on a later tick.
    """

    def __init__(self, context: EngineContext, pipeline: ExecutionPipeline) -> None:
        self.context = context
        self.pipeline = pipeline
        self.ticks = 0

    def tick(self) -> list[tuple[Step, AgentIdentity]]:
        ctx = self.context
        state = ctx.state
        if state.phase is not Phase.EXECUTING:
            return []
        self.ticks += 1

        ready = executable_steps(state.steps)
        if not ready:
            self._settle()
            return []

        busy = state.busy_agent_ids()
        batch: list[tuple[Step, AgentIdentity]] = []
        for step in ready:
            agent = ctx.registry.select_agent(step, busy)
            busy.add(agent.id)
            batch.append((step, agent))

        # Promote the whole batch before any task starts so no sibling sees PENDING.
        state.mark_running(batch)
        router = ctx.registry.router
        for step, agent in batch:
            ctx.events.emit(
                EventType.AGENT_HANDOFF,
                router.id,
                f"Routing {step.label} to {agent.name}",
                step_id=step.id,
                payload={"from": router.id, "to": agent.id},
            )
        for step, agent in batch:
            ctx.spawn(self.pipeline.execute(step.id, agent))
        logger.debug("Tick {} dispatched {}", self.ticks, [step.id for step, _ in batch])
        return batch

    def _settle(self) -> None:
        ctx = self.context
        state = ctx.state
        if state.has_work_in_flight():
            return
        stranded = [step for step in state.steps if step.status is StepStatus.PENDING]
        for step in stranded:
            state.fail_step(step.id, STRANDED_REASON, FailureKind.DIRECT)
            ctx.events.emit(
                EventType.EXECUTION_FAIL,
                ctx.registry.router.id,
                f"{step.label} can never run: {STRANDED_REASON.lower()}",
                level=EventLevel.ERROR,
                step_id=step.id,
                payload={"kind": FailureKind.DIRECT.value, "reason": STRANDED_REASON},
            )
        next_phase = Phase.MAINTENANCE if ctx.config.maintenance.enabled else Phase.COMPLETED
        totals = state.totals()
        ctx.change_phase(
            next_phase,
            f"Workflow settled: {totals['COMPLETED']}/{totals['total']} steps completed",
        )

    async def run(self) -> Phase:
        """Tick until the workflow leaves the in-flight phases."""
        ctx = self.context
        ctx.wake_event = asyncio.Event()
        try:
            while ctx.state.phase.in_flight and not ctx.task_errors:
                ctx.wake_event.clear()
                self.tick()
                if not ctx.state.phase.in_flight:
                    break
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        ctx.wake_event.wait(), timeout=ctx.config.scheduler.tick_seconds
                    )
        finally:
            ctx.wake_event = None
            await ctx.drain()
        return ctx.state.phase
