from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from flowpilot.config import ModelsConfig
from flowpilot.graph import ActionType, Citation, Step, Workflow


class OracleError(RuntimeError):
    """Raised when the oracle cannot produce a usable answer."""


class OracleQuotaError(OracleError):
    """Raised when the oracle's provider is out of quota."""


class OracleSchemaError(OracleError):
    """Raised when oracle output does not match the expected shape."""


@dataclass(slots=True)
class PlanResult:
    steps: list[Step]
    tokens_used: int = 0


@dataclass(slots=True)
class StepExecution:
    output: str
    reasoning: str = ""
    tokens_used: int = 0
    citations: list[Citation] = field(default_factory=list)
    model_used: str | None = None


@dataclass(slots=True)
class Verification:
    passed: bool
    reason: str = ""
    tokens_used: int = 0


class MaintenanceStatus(str, Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"


@dataclass(slots=True)
class MaintenanceReport:
    status: MaintenanceStatus
    message: str
    tokens_used: int = 0


def estimate_tokens(*texts: str) -> int:
    return max(1, sum(len(text) for text in texts) // 4)


def model_for_action(action_type: ActionType, models: ModelsConfig) -> str:
    if action_type in {ActionType.RESEARCH, ActionType.CODE, ActionType.ANALYSIS}:
        return models.reasoning
    if action_type is ActionType.DECISION:
        return models.planner
    return models.executor


class Oracle(ABC):
    """External planner, executor and verifier the engine treats as opaque."""

    name: str = "oracle"

    @abstractmethod
    async def generate_plan(self, goal: str, image: str | None = None) -> PlanResult:
        """Produce the initial step list for ``goal``."""

    @abstractmethod
    async def execute_step(
        self, step: Step, prior_steps: Sequence[Step], goal: str
    ) -> StepExecution:
        """Run one step with the outputs of its predecessors as context."""

    @abstractmethod
    async def verify_output(self, step: Step, output: str, goal: str) -> Verification:
        """Judge whether ``output`` satisfies ``step``."""

    @abstractmethod
    async def replan(
        self,
        failed_step: Step,
        all_steps: Sequence[Step],
        error_reason: str,
        goal: str,
    ) -> PlanResult:
        """Propose recovery steps; ids are local to the response."""

    @abstractmethod
    async def maintenance_scan(self, workflow: Workflow) -> MaintenanceReport:
        """Report on the health of a finished workflow."""
