from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "offline"]
LogLevel = Literal["DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR"]


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "claude"
    max_retries: int = 2
    retry_backoff_seconds: float = 2.0
    timeout_seconds: float = 120.0
    offline_fallback: bool = True


@dataclass(slots=True)
class ModelsConfig:
    planner: str = "claude-opus-4-1"
    reasoning: str = "claude-sonnet-4-5"
    executor: str = "claude-haiku-4-5"


@dataclass(slots=True)
class SchedulerConfig:
    tick_seconds: float = 1.0
    token_tick_seconds: float = 0.2
    estimated_tokens_per_tick: int = 3


@dataclass(slots=True)
class VerificationConfig:
    pass_on_error: bool = True


@dataclass(slots=True)
class GraphConfig:
    reject_cycles: bool = False


@dataclass(slots=True)
class MetricsConfig:
    history_limit: int = 100


@dataclass(slots=True)
class MaintenanceConfig:
    enabled: bool = True
    interval_seconds: float = 15.0


@dataclass(slots=True)
class ApprovalConfig:
    auto_approve: bool = False


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "INFO"
    file: str = ""
    rotation: str = "10 MB"


@dataclass(slots=True)
class FlowpilotConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> FlowpilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> FlowpilotConfig:
        return cls(
            backend=BackendConfig(**data.get("backend", {})),
            models=ModelsConfig(**data.get("models", {})),
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            verification=VerificationConfig(**data.get("verification", {})),
            graph=GraphConfig(**data.get("graph", {})),
            metrics=MetricsConfig(**data.get("metrics", {})),
            maintenance=MaintenanceConfig(**data.get("maintenance", {})),
            approval=ApprovalConfig(**data.get("approval", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {section: asdict(getattr(self, section)) for section in SECTION_ORDER}


SECTION_ORDER = [
    "backend",
    "models",
    "scheduler",
    "verification",
    "graph",
    "metrics",
    "maintenance",
    "approval",
    "logging",
]


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: FlowpilotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_ORDER:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> FlowpilotConfig:
    if not path.exists():
        return FlowpilotConfig.default()
    return FlowpilotConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: FlowpilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
