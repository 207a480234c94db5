from __future__ import annotations

import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import uuid4

from flowpilot.graph import Step

CODE_BLOCK_PATTERN = re.compile(r"```(\w+)?\n(.*?)```", re.DOTALL)
IMAGE_PREFIX = "data:image"
EXTENSIONS = {
    "python": "py",
    "py": "py",
    "javascript": "js",
    "js": "js",
    "typescript": "ts",
    "ts": "ts",
    "html": "html",
    "css": "css",
    "json": "json",
    "bash": "sh",
    "sh": "sh",
    "sql": "sql",
    "yaml": "yaml",
}


class ArtifactType(str, Enum):
    CODE = "CODE"
    IMAGE = "IMAGE"


@dataclass(slots=True, frozen=True)
class Artifact:
    id: str
    step_id: str
    type: ArtifactType
    title: str
    content: str
    language: str | None = None
    created_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "step_id": self.step_id,
            "type": self.type.value,
            "title": self.title,
            "content": self.content,
            "language": self.language,
            "created_at": self.created_at,
        }


def _slug(label: str) -> str:
    return re.sub(r"\s+", "_", label.strip()) or "step"


def extract_artifacts(step: Step, output: str) -> list[Artifact]:
    """Pull fenced code blocks and inline image payloads out of a step output."""
    created_at = time.time()
    artifacts: list[Artifact] = []
    for match in CODE_BLOCK_PATTERN.finditer(output):
        language = (match.group(1) or "text").lower()
        extension = EXTENSIONS.get(language, "txt")
        artifacts.append(
            Artifact(
                id=uuid4().hex[:12],
                step_id=step.id,
                type=ArtifactType.CODE,
                title=f"{_slug(step.label)}_script.{extension}",
                content=match.group(2),
                language=language,
                created_at=created_at,
            )
        )
    if output.startswith(IMAGE_PREFIX):
        artifacts.append(
            Artifact(
                id=uuid4().hex[:12],
                step_id=step.id,
                type=ArtifactType.IMAGE,
                title=f"{step.label} Asset",
                content=output,
                created_at=created_at,
            )
        )
    return artifacts
