from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from loguru import logger

from flowpilot.graph import Step, Workflow
from flowpilot.oracle.base import (
    MaintenanceReport,
    Oracle,
    OracleError,
    OracleQuotaError,
    PlanResult,
    StepExecution,
    Verification,
)

T = TypeVar("T")


class FallbackOracle(Oracle):
    """Routes calls to ``primary`` until it runs out of quota, then to ``fallback``.

    The switch is permanent for the lifetime of the instance. Plan
    generation also falls back on any other oracle error, since a run has no
    way to start without a plan.
    """

    name = "fallback"

    def __init__(self, primary: Oracle, fallback: Oracle) -> None:
        self.primary = primary
        self.fallback = fallback
        self.switched = False

    @property
    def active(self) -> Oracle:
        return self.fallback if self.switched else self.primary

    def _switch(self, reason: Exception) -> None:
        if not self.switched:
            logger.warning(
                "Oracle {} unavailable ({}); switching to {}",
                self.primary.name,
                reason,
                self.fallback.name,
            )
            self.switched = True

    async def _route(self, call: Callable[[Oracle], Awaitable[T]]) -> T:
        if self.switched:
            return await call(self.fallback)
        try:
            return await call(self.primary)
        except OracleQuotaError as exc:
            self._switch(exc)
            return await call(self.fallback)

    async def generate_plan(self, goal: str, image: str | None = None) -> PlanResult:
        if self.switched:
            return await self.fallback.generate_plan(goal, image)
        try:
            return await self.primary.generate_plan(goal, image)
        except OracleQuotaError as exc:
            self._switch(exc)
        except OracleError as exc:
            logger.warning("Plan generation failed ({}); using {} plan", exc, self.fallback.name)
        return await self.fallback.generate_plan(goal, image)

    async def execute_step(
        self, step: Step, prior_steps: Sequence[Step], goal: str
    ) -> StepExecution:
        return await self._route(lambda oracle: oracle.execute_step(step, prior_steps, goal))

    async def verify_output(self, step: Step, output: str, goal: str) -> Verification:
        return await self._route(lambda oracle: oracle.verify_output(step, output, goal))

    async def replan(
        self,
        failed_step: Step,
        all_steps: Sequence[Step],
        error_reason: str,
        goal: str,
    ) -> PlanResult:
        return await self._route(
            lambda oracle: oracle.replan(failed_step, all_steps, error_reason, goal)
        )

    async def maintenance_scan(self, workflow: Workflow) -> MaintenanceReport:
        return await self._route(lambda oracle: oracle.maintenance_scan(workflow))
