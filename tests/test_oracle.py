import asyncio
import json
from collections.abc import AsyncIterator, Sequence
from typing import Any

import pytest

from flowpilot.backends.base import AgentBackend, BackendExecutionError, BackendQuotaError
from flowpilot.config import ModelsConfig
from flowpilot.graph import ActionType, Step, StepStatus, Workflow
from flowpilot.oracle import (
    BackendOracle,
    FallbackOracle,
    MaintenanceStatus,
    OfflineOracle,
    OracleError,
    OracleQuotaError,
    OracleSchemaError,
    StepExecution,
    model_for_action,
)
from flowpilot.oracle.backend import extract_citations, parse_json_object

MODELS = ModelsConfig(planner="big", reasoning="mid", executor="small")


class ScriptedBackend(AgentBackend):
    def __init__(self, *replies: str, error: Exception | None = None) -> None:
        self.replies = list(replies)
        self.error = error
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt
        self.calls.append((user_prompt, context))
        if self.error is not None:
            raise self.error
        reply = self.replies.pop(0)
        for index in range(0, len(reply), 7):
            yield reply[index : index + 7]


class CountingOracle(OfflineOracle):
    def __init__(self, error: Exception | None = None) -> None:
        super().__init__()
        self.error = error
        self.calls = 0

    async def execute_step(
        self, step: Step, prior_steps: Sequence[Step], goal: str
    ) -> StepExecution:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return await super().execute_step(step, prior_steps, goal)

    async def generate_plan(self, goal: str, image: str | None = None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return await super().generate_plan(goal, image)


def _step(step_id: str, action_type: ActionType = ActionType.ANALYSIS, *deps: str) -> Step:
    return Step(
        id=step_id,
        label=step_id.title(),
        description=f"work on {step_id}",
        action_type=action_type,
        dependencies=list(deps),
    )


def test_parse_json_object_strips_fences_and_chatter() -> None:
    raw = 'Sure! Here is the plan:\n```json\n{"steps": [{"id": "a"}]}\n```\nGood luck.'

    assert parse_json_object(raw) == {"steps": [{"id": "a"}]}
    assert parse_json_object('{"passed": true}') == {"passed": True}


@pytest.mark.parametrize("raw", ["", "no json here", "[1, 2, 3]", "{broken"])
def test_parse_json_object_rejects_non_objects(raw: str) -> None:
    with pytest.raises(OracleSchemaError):
        parse_json_object(raw)


def test_model_for_action_routes_by_action_type() -> None:
    assert model_for_action(ActionType.CODE, MODELS) == "mid"
    assert model_for_action(ActionType.RESEARCH, MODELS) == "mid"
    assert model_for_action(ActionType.DECISION, MODELS) == "big"
    assert model_for_action(ActionType.CREATION, MODELS) == "small"
    assert model_for_action(ActionType.INTEGRATION, MODELS) == "small"


def test_backend_oracle_generates_plan_from_streamed_json() -> None:
    payload = {
        "steps": [
            {"id": "s1", "label": "Find", "description": "d", "actionType": "RESEARCH"},
            {
                "id": "s2",
                "label": "Write",
                "description": "d",
                "actionType": "CODE",
                "dependencies": ["s1"],
                "status": "COMPLETED",
            },
        ]
    }
    backend = ScriptedBackend(f"```json\n{json.dumps(payload)}\n```")
    oracle = BackendOracle(backend, MODELS)

    result = asyncio.run(oracle.generate_plan("ship it", image="aW1n"))

    assert [step.id for step in result.steps] == ["s1", "s2"]
    assert result.steps[1].dependencies == ["s1"]
    assert all(step.status is StepStatus.PENDING for step in result.steps)
    assert result.tokens_used > 0
    prompt, context = backend.calls[0]
    assert "ship it" in prompt
    assert context == {"image": "aW1n", "model": "big"}


def test_backend_oracle_schema_errors() -> None:
    bad_step = json.dumps({"steps": [{"id": "s1", "label": "x", "actionType": "DANCE"}]})
    oracle = BackendOracle(ScriptedBackend(bad_step, '{"plan": []}'), MODELS)

    with pytest.raises(OracleSchemaError):
        asyncio.run(oracle.generate_plan("goal"))
    with pytest.raises(OracleSchemaError):
        asyncio.run(oracle.generate_plan("goal"))


def test_backend_oracle_executes_with_action_model_and_citations() -> None:
    link = "[Docs](https://example.com/docs)"
    backend = ScriptedBackend(f"See {link} and again {link}")
    oracle = BackendOracle(backend, MODELS)
    upstream = _step("gather")
    upstream.output = "facts"
    step = _step("write", ActionType.CODE, "gather")

    result = asyncio.run(oracle.execute_step(step, [upstream, step], "goal"))

    assert result.model_used == "mid"
    assert [citation.uri for citation in result.citations] == ["https://example.com/docs"]
    prompt, context = backend.calls[0]
    assert "Output from Gather:\nfacts" in prompt
    assert context == {"model": "mid"}


def test_backend_oracle_verification_requires_boolean() -> None:
    oracle = BackendOracle(
        ScriptedBackend('{"passed": false, "reason": "incomplete"}', '{"passed": "yes"}'), MODELS
    )

    verdict = asyncio.run(oracle.verify_output(_step("a"), "out", "goal"))
    assert verdict.passed is False
    assert verdict.reason == "incomplete"

    with pytest.raises(OracleSchemaError):
        asyncio.run(oracle.verify_output(_step("a"), "out", "goal"))


def test_backend_oracle_maps_backend_errors() -> None:
    quota = BackendOracle(ScriptedBackend(error=BackendQuotaError("429")), MODELS)
    broken = BackendOracle(ScriptedBackend(error=BackendExecutionError("down")), MODELS)

    with pytest.raises(OracleQuotaError):
        asyncio.run(quota.execute_step(_step("a"), [], "goal"))
    with pytest.raises(OracleError):
        asyncio.run(broken.replan(_step("a"), [], "boom", "goal"))


def test_backend_oracle_wraps_unexpected_backend_errors() -> None:
    oracle = BackendOracle(ScriptedBackend(error=PermissionError("no exec bit")), MODELS)

    with pytest.raises(OracleError, match="no exec bit") as excinfo:
        asyncio.run(oracle.execute_step(_step("a"), [], "goal"))

    assert isinstance(excinfo.value.__cause__, PermissionError)


def test_unknown_failure_kind_is_a_schema_error() -> None:
    reply = json.dumps(
        {"steps": [{"id": "a", "label": "A", "actionType": "CODE", "failureKind": "bogus"}]}
    )

    with pytest.raises(OracleSchemaError, match="failure kind"):
        asyncio.run(BackendOracle(ScriptedBackend(reply), MODELS).generate_plan("goal"))

    oracle = FallbackOracle(BackendOracle(ScriptedBackend(reply), MODELS), OfflineOracle())
    plan = asyncio.run(oracle.generate_plan("goal"))

    assert [step.id for step in plan.steps] == ["step-1", "step-2", "step-3"]
    assert oracle.switched is False


def test_backend_oracle_maintenance_scan() -> None:
    oracle = BackendOracle(ScriptedBackend('{"status": "degraded", "message": "slow"}'), MODELS)
    workflow = Workflow(goal="g", steps=[_step("a")])

    report = asyncio.run(oracle.maintenance_scan(workflow))

    assert report.status is MaintenanceStatus.DEGRADED
    assert report.message == "slow"


def test_offline_oracle_is_deterministic() -> None:
    oracle = OfflineOracle(MODELS)

    plan = asyncio.run(oracle.generate_plan("launch"))
    again = asyncio.run(oracle.generate_plan("launch"))

    assert plan == again
    assert [step.dependencies for step in plan.steps] == [[], ["step-1"], ["step-2"]]
    code = asyncio.run(oracle.execute_step(_step("c", ActionType.CODE), [], "launch"))
    assert "```python" in code.output
    assert code.model_used == "mid"


def test_offline_oracle_verification_rejects_placeholders() -> None:
    oracle = OfflineOracle()

    assert asyncio.run(oracle.verify_output(_step("a"), "all done", "g")).passed is True
    assert asyncio.run(oracle.verify_output(_step("a"), "TODO: finish", "g")).passed is False
    assert asyncio.run(oracle.verify_output(_step("a"), "   ", "g")).passed is False


def test_offline_oracle_scan_reflects_completion() -> None:
    oracle = OfflineOracle()
    step = _step("a")
    workflow = Workflow(goal="g", steps=[step])

    assert asyncio.run(oracle.maintenance_scan(workflow)).status is MaintenanceStatus.DEGRADED
    step.status = StepStatus.COMPLETED
    assert asyncio.run(oracle.maintenance_scan(workflow)).status is MaintenanceStatus.HEALTHY


def test_fallback_oracle_switches_permanently_on_quota() -> None:
    primary = CountingOracle(error=OracleQuotaError("quota"))
    fallback = CountingOracle()
    oracle = FallbackOracle(primary, fallback)

    async def _run() -> None:
        await oracle.execute_step(_step("a"), [], "g")
        await oracle.execute_step(_step("b"), [], "g")

    asyncio.run(_run())

    assert oracle.switched is True
    assert primary.calls == 1
    assert fallback.calls == 2


def test_fallback_oracle_plans_offline_on_any_error_without_switching() -> None:
    primary = CountingOracle(error=OracleSchemaError("garbled"))
    fallback = CountingOracle()
    oracle = FallbackOracle(primary, fallback)

    plan = asyncio.run(oracle.generate_plan("g"))

    assert len(plan.steps) == 3
    assert oracle.switched is False
    with pytest.raises(OracleSchemaError):
        asyncio.run(oracle.execute_step(_step("a"), [], "g"))


def test_citation_extraction_ignores_non_http_links() -> None:
    citations = extract_citations("[a](https://a.dev) [b](ftp://b.dev) [c](http://c.dev/x)")

    assert [(item.title, item.uri) for item in citations] == [
        ("a", "https://a.dev"),
        ("c", "http://c.dev/x"),
    ]
