from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from flowpilot.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendQuotaError,
    looks_like_quota_error,
)


class ClaudeCodeBackend(AgentBackend):
    """Runs prompts through the ``claude`` CLI in print mode with streamed JSON."""

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(
        self, system_prompt: str, user_prompt: str, model: str | None = None
    ) -> list[str]:
        command = [
            self.binary,
            "-p",
            user_prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--append-system-prompt",
            system_prompt,
        ]
        if model:
            command.extend(["--model", model])
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        if event.get("type") == "assistant":
            message = event.get("message")
            if isinstance(message, dict):
                event = message
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        model = context.get("model") if isinstance(context.get("model"), str) else None
        payload = {key: value for key, value in context.items() if key != "model"}
        if payload:
            user_prompt = (
                f"{user_prompt}\n\nContext JSON:\n"
                f"{json.dumps(payload, ensure_ascii=False, indent=2)}"
            )

        command = self.build_command(system_prompt, user_prompt, model)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Claude backend did not expose stdout.", backend="claude", retriable=False
            )

        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                yield line
                continue

            if isinstance(event, dict) and event.get("type") == "result":
                if event.get("is_error"):
                    detail = str(event.get("result") or "unknown error")
                    if looks_like_quota_error(detail):
                        raise BackendQuotaError(detail, backend="claude")
                    raise BackendExecutionError(detail, backend="claude", retriable=True)
                continue
            content = self._extract_content(event) if isinstance(event, dict) else ""
            if content:
                yield content

        if parse_buffer:
            yield parse_buffer

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            message = f"Claude backend failed with exit code {return_code}: {stderr_output}"
            if looks_like_quota_error(stderr_output):
                raise BackendQuotaError(message, backend="claude", exit_code=return_code)
            raise BackendExecutionError(
                message,
                backend="claude",
                exit_code=return_code,
                retriable=True,
            )
