from flowpilot.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendQuotaError,
    BackendTimeoutError,
)
from flowpilot.backends.claude import ClaudeCodeBackend
from flowpilot.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendQuotaError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "ResilientBackend",
    "RetryPolicy",
]
