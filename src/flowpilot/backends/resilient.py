from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from flowpilot.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendQuotaError,
    BackendTimeoutError,
)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 2
    backoff_seconds: float = 2.0
    timeout_seconds: float = 120.0


class ResilientBackend(AgentBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover.

    Transient errors retry with exponential backoff. Quota errors stop the
    current backend immediately and, when every backend ran out of quota,
    surface as ``BackendQuotaError`` so callers can switch strategy.
    """

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook
        self._sleep = sleep

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _collect_chunks(
        self,
        backend: AgentBackend,
        *,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        async def _consume() -> list[str]:
            chunks: list[str] = []
            async for chunk in backend.execute(system_prompt, user_prompt, context):
                chunks.append(chunk)
            return chunks

        try:
            return await asyncio.wait_for(_consume(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        attempts: list[tuple[str, AgentBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))

        errors: list[str] = []
        quota_exhausted: list[str] = []
        chunks: list[str] | None = None
        for index, (backend_name, backend) in enumerate(attempts):
            if index > 0:
                self._emit({"event": "backend_failover_start", "backend": backend_name})
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await self._sleep(delay)
                try:
                    chunks = await self._collect_chunks(
                        backend,
                        system_prompt=system_prompt,
                        user_prompt=user_prompt,
                        context=context,
                    )
                except BackendExecutionError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if isinstance(exc, BackendQuotaError):
                        quota_exhausted.append(backend_name)
                    if not exc.retriable:
                        break
                    continue
                except Exception as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": True,
                        }
                    )
                    continue
                if backend_name != self.primary_name:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                        }
                    )
                break
            if chunks is not None:
                break

        if chunks is None:
            summary = "; ".join(errors[-6:])
            if quota_exhausted and len(quota_exhausted) == len(attempts):
                raise BackendQuotaError(f"Quota exhausted on every backend. {summary}")
            raise BackendExecutionError(
                f"All backend attempts failed. {summary}",
                retriable=False,
            )
        for chunk in chunks:
            yield chunk
