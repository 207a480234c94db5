import asyncio
from collections.abc import Callable, Sequence
from dataclasses import replace

from flowpilot.config import FlowpilotConfig
from flowpilot.engine import WorkflowEngine
from flowpilot.events import EventLevel, EventType
from flowpilot.graph import ActionType, FailureKind, Step, StepStatus
from flowpilot.oracle import OfflineOracle, OracleError, PlanResult, StepExecution, Verification
from flowpilot.pipeline import REJECTION_REASON, AutoApprovalHandler
from flowpilot.state import Phase


class ScriptedOracle(OfflineOracle):
    def __init__(
        self,
        steps: Sequence[Step],
        *,
        bad_outputs: Sequence[str] = (),
        execute_errors: Sequence[str] = (),
        verify_errors: Sequence[str] = (),
        execute_tokens: int | None = None,
        delay_seconds: float = 0.0,
        replan_error: Exception | None = None,
    ) -> None:
        super().__init__()
        self.steps = list(steps)
        self.bad_outputs = set(bad_outputs)
        self.execute_errors = set(execute_errors)
        self.verify_errors = set(verify_errors)
        self.execute_tokens = execute_tokens
        self.delay_seconds = delay_seconds
        self.replan_error = replan_error
        self.holds: dict[str, asyncio.Event] = {}
        self.started: set[str] = set()

    async def generate_plan(self, goal: str, image: str | None = None) -> PlanResult:
        return PlanResult(steps=[replace(step) for step in self.steps], tokens_used=10)

    async def execute_step(
        self, step: Step, prior_steps: Sequence[Step], goal: str
    ) -> StepExecution:
        self.started.add(step.id)
        if step.id in self.holds:
            await self.holds[step.id].wait()
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if step.id in self.execute_errors:
            raise OracleError(f"executor crashed on {step.id}")
        result = await super().execute_step(step, prior_steps, goal)
        if step.id in self.bad_outputs:
            result.output += "\nTODO: finish this"
        if self.execute_tokens is not None:
            result.tokens_used = self.execute_tokens
        return result

    async def verify_output(self, step: Step, output: str, goal: str) -> Verification:
        if step.id in self.verify_errors:
            raise OracleError("verifier offline")
        return await super().verify_output(step, output, goal)

    async def replan(
        self,
        failed_step: Step,
        all_steps: Sequence[Step],
        error_reason: str,
        goal: str,
    ) -> PlanResult:
        if self.replan_error is not None:
            raise self.replan_error
        return await super().replan(failed_step, all_steps, error_reason, goal)


def _fast_config() -> FlowpilotConfig:
    config = FlowpilotConfig.default()
    config.scheduler.tick_seconds = 0.01
    config.scheduler.token_tick_seconds = 0.0
    config.maintenance.interval_seconds = 0.0
    return config


def _step(step_id: str, *deps: str, action_type: ActionType = ActionType.RESEARCH) -> Step:
    return Step(
        id=step_id,
        label=f"Step {step_id}",
        description=f"do {step_id}",
        action_type=action_type,
        dependencies=list(deps),
    )


async def _wait_for(condition: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not condition():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


async def _settle_tasks(engine: WorkflowEngine) -> None:
    while engine.context.tasks:
        await asyncio.gather(*list(engine.context.tasks))


def _recovery_steps(engine: WorkflowEngine, origin: str) -> list[Step]:
    return [step for step in engine.state.steps if step.replan_of == origin]


def test_integration_step_waits_for_approval_and_resolution_is_idempotent() -> None:
    oracle = ScriptedOracle([_step("deploy", action_type=ActionType.INTEGRATION)])
    engine = WorkflowEngine(oracle, _fast_config())

    async def _run():
        await engine.plan("ship")
        runner = asyncio.create_task(engine.execute())
        await _wait_for(lambda: engine.phase is Phase.AWAITING_INPUT)
        assert engine.state.step("deploy").status is StepStatus.WAITING_FOR_APPROVAL
        assert "deploy" not in oracle.started
        assert engine.status()["pending_approval"] == "deploy"

        assert await engine.resolve_approval("deploy", True) is True
        assert await engine.resolve_approval("deploy", True) is False
        return await runner

    summary = asyncio.run(_run())

    step = engine.state.step("deploy")
    assert step.status is StepStatus.COMPLETED
    assert step.approval_granted is True
    assert step.assigned_agent_id == "integrator"
    assert summary.phase == Phase.MAINTENANCE.value
    assert len(engine.events.events(EventType.APPROVAL_REQUESTED)) == 1
    assert len(engine.events.events(EventType.APPROVAL_RESOLVED)) == 1


def test_rejection_fails_step_and_splices_recovery() -> None:
    engine = WorkflowEngine(
        ScriptedOracle([_step("deploy", action_type=ActionType.INTEGRATION)]), _fast_config()
    )

    async def _run():
        await engine.plan("ship")
        runner = asyncio.create_task(engine.execute())
        await _wait_for(lambda: engine.phase is Phase.AWAITING_INPUT)
        assert await engine.resolve_approval("deploy", False) is True
        return await runner

    summary = asyncio.run(_run())

    step = engine.state.step("deploy")
    assert step.status is StepStatus.FAILED
    assert step.error == REJECTION_REASON
    assert step.failure_kind is FailureKind.REJECTED
    recovery = _recovery_steps(engine, "deploy")
    assert len(recovery) == 1
    assert recovery[0].status is StepStatus.COMPLETED
    assert summary.replanned_steps == 1
    assert len(engine.events.events(EventType.REPLAN)) == 1


def test_queued_approvals_surface_one_at_a_time() -> None:
    oracle = ScriptedOracle(
        [
            _step("first", action_type=ActionType.INTEGRATION),
            _step("second", action_type=ActionType.INTEGRATION),
        ]
    )
    engine = WorkflowEngine(oracle, _fast_config())

    def _requested() -> list[str | None]:
        return [event.step_id for event in engine.events.events(EventType.APPROVAL_REQUESTED)]

    async def _run():
        await engine.plan("ship twice")
        runner = asyncio.create_task(engine.execute())
        await _wait_for(lambda: len(engine.state.approvals) == 2)
        assert _requested() == ["first"]
        assert engine.state.step("second").status is StepStatus.WAITING_FOR_APPROVAL

        assert await engine.resolve_approval("second", True) is False
        assert await engine.resolve_approval("first", True) is True
        assert _requested() == ["first", "second"]
        assert engine.phase is Phase.AWAITING_INPUT

        assert await engine.resolve_approval("second", True) is True
        return await runner

    summary = asyncio.run(_run())

    assert summary.completed_steps == 2
    assert {step.assigned_agent_id for step in engine.state.steps} == {"integrator", "executor"}


def test_auto_approval_handler_unblocks_gated_steps() -> None:
    engine = WorkflowEngine(
        ScriptedOracle([_step("deploy", action_type=ActionType.INTEGRATION)]),
        _fast_config(),
        approval_handler=AutoApprovalHandler(),
    )

    summary = asyncio.run(engine.run("ship"))

    assert summary.completed_steps == 1
    phases = [event.payload["to"] for event in engine.events.events(EventType.PHASE_CHANGE)]
    assert Phase.AWAITING_INPUT.value in phases
    assert phases[-1] == Phase.MAINTENANCE.value


def test_failed_verification_fails_step_and_replans() -> None:
    engine = WorkflowEngine(
        ScriptedOracle([_step("draft")], bad_outputs=["draft"]), _fast_config()
    )

    summary = asyncio.run(engine.run("write"))

    step = engine.state.step("draft")
    assert step.status is StepStatus.FAILED
    assert step.failure_kind is FailureKind.DIRECT
    assert step.error is not None and step.error.startswith("Verification failed:")
    assert engine.state.overlay["draft"].verified is False
    assert len(engine.events.events(EventType.VERIFICATION_FAIL)) == 1
    assert summary.replanned_steps == 1
    assert engine.metrics.get("verifier").verification_attempts == 2


def test_execution_error_fails_step_and_replans() -> None:
    engine = WorkflowEngine(
        ScriptedOracle([_step("fetch")], execute_errors=["fetch"]), _fast_config()
    )

    asyncio.run(engine.run("fetch data"))

    step = engine.state.step("fetch")
    assert step.status is StepStatus.FAILED
    assert step.error == "Execution error: executor crashed on fetch"
    assert _recovery_steps(engine, "fetch")[0].status is StepStatus.COMPLETED


def test_verifier_outage_is_lenient_by_default() -> None:
    engine = WorkflowEngine(
        ScriptedOracle([_step("draft")], verify_errors=["draft"]), _fast_config()
    )

    asyncio.run(engine.run("write"))

    assert engine.state.step("draft").status is StepStatus.COMPLETED
    overlay = engine.state.overlay["draft"]
    assert overlay.verified is True
    assert overlay.verification_notes == "Unverified: verifier offline"
    warnings = [
        event
        for event in engine.events.events(EventType.LOG)
        if event.level is EventLevel.WARNING
    ]
    assert len(warnings) == 1


def test_verifier_outage_fails_step_when_strict() -> None:
    config = _fast_config()
    config.verification.pass_on_error = False
    engine = WorkflowEngine(
        ScriptedOracle([_step("draft")], verify_errors=["draft"]), config
    )

    asyncio.run(engine.run("write"))

    step = engine.state.step("draft")
    assert step.status is StepStatus.FAILED
    assert step.error == "Verification failed: Verifier unavailable: verifier offline"
    assert engine.metrics.get("verifier").verification_successes == 1


def test_estimated_tokens_are_reconciled_with_actual_usage() -> None:
    config = _fast_config()
    config.scheduler.token_tick_seconds = 0.001
    config.scheduler.estimated_tokens_per_tick = 3
    engine = WorkflowEngine(
        ScriptedOracle([_step("fetch")], execute_tokens=50, delay_seconds=0.05), config
    )

    asyncio.run(engine.run("fetch data"))

    researcher = engine.metrics.get("researcher")
    assert researcher.token_usage == 50
    assert researcher.steps_executed == 1


def test_result_for_force_failed_step_is_discarded() -> None:
    oracle = ScriptedOracle([_step("slow")])
    engine = WorkflowEngine(oracle, _fast_config())

    async def _run() -> None:
        await engine.plan("wait")
        engine.approve_plan()
        oracle.holds["slow"] = asyncio.Event()
        engine.dispatcher.tick()
        await _wait_for(lambda: "slow" in oracle.started)

        await engine.force_fail("slow")
        oracle.holds["slow"].set()
        await _settle_tasks(engine)

    asyncio.run(_run())

    step = engine.state.step("slow")
    assert step.status is StepStatus.FAILED
    assert step.error == "Manually failed by operator"
    assert step.output is None
    assert engine.metrics.get("researcher").steps_executed == 0
    completed = [
        event
        for event in engine.events.events(EventType.EXECUTION_COMPLETE)
        if event.step_id == "slow"
    ]
    assert completed == []
    assert len(_recovery_steps(engine, "slow")) == 1
    assert engine.phase is Phase.EXECUTING


def test_stale_result_books_actual_tokens_instead_of_estimate() -> None:
    config = _fast_config()
    config.scheduler.token_tick_seconds = 0.001
    config.scheduler.estimated_tokens_per_tick = 3
    oracle = ScriptedOracle([_step("slow")], execute_tokens=40)
    engine = WorkflowEngine(oracle, config)
    researcher = engine.metrics.get("researcher")

    async def _run() -> None:
        await engine.plan("wait")
        engine.approve_plan()
        oracle.holds["slow"] = asyncio.Event()
        engine.dispatcher.tick()
        await _wait_for(lambda: researcher.token_usage > 0)

        await engine.force_fail("slow")
        oracle.holds["slow"].set()
        await _settle_tasks(engine)

    asyncio.run(_run())

    assert engine.state.step("slow").output is None
    assert researcher.token_usage == 40
    assert researcher.steps_executed == 0


def test_cancelled_pipelines_withdraw_estimates_and_stop_ticking() -> None:
    config = _fast_config()
    config.scheduler.token_tick_seconds = 0.001
    config.scheduler.estimated_tokens_per_tick = 3
    oracle = ScriptedOracle(
        [_step("slow"), _step("bad")],
        execute_errors=["bad"],
        replan_error=OracleError("planner unreachable"),
    )
    engine = WorkflowEngine(oracle, config)

    async def _run() -> tuple[int, list[asyncio.Task]]:
        await engine.plan("doomed")
        oracle.holds["slow"] = asyncio.Event()
        oracle.holds["bad"] = asyncio.Event()
        runner = asyncio.create_task(engine.execute())
        await _wait_for(lambda: engine.metrics.total_tokens() > 10)

        oracle.holds["bad"].set()
        await runner
        tokens_after_run = engine.metrics.total_tokens()
        await asyncio.sleep(0.05)
        leftover = [task for task in asyncio.all_tasks() if task is not asyncio.current_task()]
        return tokens_after_run, leftover

    tokens_after_run, leftover = asyncio.run(_run())

    assert engine.phase is Phase.FAILED
    assert tokens_after_run == 10
    assert engine.metrics.total_tokens() == 10
    assert leftover == []
    assert engine.context.tasks == set()


def test_direct_failure_cascades_down_a_chain() -> None:
    engine = WorkflowEngine(
        ScriptedOracle(
            [_step("a"), _step("b", "a"), _step("c", "b"), _step("d", "c")],
            execute_errors=["c"],
        ),
        _fast_config(),
    )

    asyncio.run(engine.run("chain"))

    for step_id in ("a", "b"):
        step = engine.state.step(step_id)
        assert step.status is StepStatus.COMPLETED
        assert step.failure_kind is None
        assert step.error is None
    failed = engine.state.step("c")
    assert failed.status is StepStatus.FAILED
    assert failed.failure_kind is FailureKind.DIRECT
    assert failed.error == "Execution error: executor crashed on c"
    cascaded = engine.state.step("d")
    assert cascaded.status is StepStatus.FAILED
    assert cascaded.failure_kind is FailureKind.CASCADE
    recovery = _recovery_steps(engine, "c")
    assert len(recovery) == 1
    assert recovery[0].dependencies == ["b"]
    assert recovery[0].status is StepStatus.COMPLETED
    assert engine.phase is Phase.MAINTENANCE
