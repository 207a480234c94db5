from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

QUOTA_PATTERN = re.compile(
    r"\b(429|rate[ _-]?limit(?:ed)?|quota|resource[ _]exhausted|usage limit)\b",
    re.IGNORECASE,
)


class BackendExecutionError(RuntimeError):
    """Raised when a backend call fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


class BackendQuotaError(BackendExecutionError):
    """Raised when the provider reports quota or rate-limit exhaustion."""

    def __init__(self, message: str, *, backend: str | None = None, exit_code: int | None = None):
        super().__init__(message, backend=backend, exit_code=exit_code, retriable=False)


def looks_like_quota_error(text: str) -> bool:
    return bool(QUOTA_PATTERN.search(text))


class AgentBackend(ABC):
    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Run one model call and stream textual chunks."""
