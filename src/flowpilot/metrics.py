from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Iterable
from dataclasses import asdict, dataclass, replace
from typing import Any


@dataclass(slots=True)
class AgentMetrics:
    steps_executed: int = 0
    average_confidence: float = 0.0
    verification_pass_rate: float = 0.0
    token_usage: int = 0
    total_confidence: float = 0.0
    confidence_samples: int = 0
    verification_attempts: int = 0
    verification_successes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class MetricHistoryPoint:
    timestamp: float
    agent_id: str
    metrics: AgentMetrics

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "agent_id": self.agent_id,
            "metrics": self.metrics.to_dict(),
        }


class MetricsAggregator:
    """Per-agent running statistics with a bounded history of snapshots.

    Every mutation is one read-modify-write under a lock and appends exactly
    one history point, oldest points evicted first.
    """

    def __init__(self, agent_ids: Iterable[str] = (), *, history_limit: int = 100) -> None:
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        self._agent_ids = tuple(agent_ids)
        self._lock = threading.Lock()
        self._metrics: dict[str, AgentMetrics] = {}
        self._history: deque[MetricHistoryPoint] = deque(maxlen=history_limit)
        self.reset()

    @property
    def history_limit(self) -> int:
        return self._history.maxlen or 0

    def reset(self) -> None:
        with self._lock:
            self._metrics = {agent_id: AgentMetrics() for agent_id in self._agent_ids}
            self._history.clear()

    def get(self, agent_id: str) -> AgentMetrics:
        with self._lock:
            return replace(self._metrics.get(agent_id) or AgentMetrics())

    def all(self) -> dict[str, AgentMetrics]:
        with self._lock:
            return {agent_id: replace(value) for agent_id, value in self._metrics.items()}

    def history(self) -> list[MetricHistoryPoint]:
        with self._lock:
            return list(self._history)

    def update(
        self,
        agent_id: str,
        *,
        confidence: float | None = None,
        step_completed: bool = False,
        verification: bool | None = None,
        tokens: int = 0,
    ) -> AgentMetrics:
        with self._lock:
            current = self._metrics.get(agent_id) or AgentMetrics()
            updated = replace(current)
            if confidence is not None:
                updated.total_confidence += confidence
                updated.confidence_samples += 1
                updated.average_confidence += (
                    confidence - updated.average_confidence
                ) / updated.confidence_samples
            if step_completed:
                updated.steps_executed += 1
            if tokens:
                updated.token_usage += int(tokens)
            if verification is not None:
                updated.verification_attempts += 1
                if verification:
                    updated.verification_successes += 1
                updated.verification_pass_rate = (
                    updated.verification_successes / updated.verification_attempts
                )
            self._metrics[agent_id] = updated
            self._history.append(
                MetricHistoryPoint(
                    timestamp=time.time(), agent_id=agent_id, metrics=replace(updated)
                )
            )
            return replace(updated)

    def record_confidence(self, agent_id: str, confidence: float) -> AgentMetrics:
        return self.update(agent_id, confidence=confidence)

    def record_step_completion(self, agent_id: str) -> AgentMetrics:
        return self.update(agent_id, step_completed=True)

    def record_tokens(self, agent_id: str, tokens: int) -> AgentMetrics:
        return self.update(agent_id, tokens=tokens)

    def record_verification(self, agent_id: str, passed: bool) -> AgentMetrics:
        return self.update(agent_id, verification=passed)

    def total_tokens(self) -> int:
        with self._lock:
            return sum(value.token_usage for value in self._metrics.values())

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "agents": {agent_id: value.to_dict() for agent_id, value in self._metrics.items()},
                "history": [point.to_dict() for point in self._history],
                "history_limit": self.history_limit,
            }
