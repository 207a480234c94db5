from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from loguru import logger


class EventType(str, Enum):
    LOG = "LOG"
    PHASE_CHANGE = "PHASE_CHANGE"
    AGENT_HANDOFF = "AGENT_HANDOFF"
    EXECUTION_START = "EXECUTION_START"
    EXECUTION_COMPLETE = "EXECUTION_COMPLETE"
    EXECUTION_FAIL = "EXECUTION_FAIL"
    VERIFICATION_PASS = "VERIFICATION_PASS"
    VERIFICATION_FAIL = "VERIFICATION_FAIL"
    APPROVAL_REQUESTED = "APPROVAL_REQUESTED"
    APPROVAL_RESOLVED = "APPROVAL_RESOLVED"
    CASCADE_FAILURE = "CASCADE_FAILURE"
    REPLAN = "REPLAN"
    ARTIFACT_GENERATED = "ARTIFACT_GENERATED"
    MAINTENANCE_SCAN = "MAINTENANCE_SCAN"
    MAINTENANCE_REPORT = "MAINTENANCE_REPORT"


class EventLevel(str, Enum):
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"
    THOUGHT = "THOUGHT"

    @property
    def log_level(self) -> str:
        return "DEBUG" if self is EventLevel.THOUGHT else self.value


@dataclass(slots=True, frozen=True)
class WorkflowEvent:
    id: str
    timestamp: float
    type: EventType
    agent_id: str
    message: str
    level: EventLevel = EventLevel.INFO
    step_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type.value,
            "agent_id": self.agent_id,
            "message": self.message,
            "level": self.level.value,
            "step_id": self.step_id,
            "payload": dict(self.payload),
        }


EventHook = Callable[[WorkflowEvent], None]


class EventLog:
    """Append-only stream of engine events for presentation layers."""

    def __init__(self, hooks: list[EventHook] | None = None) -> None:
        self._events: list[WorkflowEvent] = []
        self._hooks: list[EventHook] = list(hooks or [])

    def __len__(self) -> int:
        return len(self._events)

    def subscribe(self, hook: EventHook) -> None:
        self._hooks.append(hook)

    def emit(
        self,
        event_type: EventType,
        agent_id: str,
        message: str,
        *,
        level: EventLevel = EventLevel.INFO,
        step_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> WorkflowEvent:
        event = WorkflowEvent(
            id=uuid4().hex[:12],
            timestamp=time.time(),
            type=event_type,
            agent_id=agent_id,
            message=message,
            level=level,
            step_id=step_id,
            payload=dict(payload or {}),
        )
        self._events.append(event)
        logger.bind(agent=agent_id, step=step_id, event=event_type.value).log(
            level.log_level, message
        )
        for hook in self._hooks:
            hook(event)
        return event

    def events(self, event_type: EventType | None = None) -> list[WorkflowEvent]:
        if event_type is None:
            return list(self._events)
        return [event for event in self._events if event.type is event_type]

    def for_step(self, step_id: str) -> list[WorkflowEvent]:
        return [event for event in self._events if event.step_id == step_id]

    def tail(self, count: int = 20) -> list[WorkflowEvent]:
        return self._events[-count:]

    def clear(self) -> None:
        self._events.clear()
